"""Entity rule table.

Per-store sync configuration plus the per-entity-type rules that decide
direction, conflict policy, priority and enablement.
"""

from .manager import DEFAULT_RULES, DOWNLOAD_DIRECTIONS, UPLOAD_DIRECTIONS, RuleTable

__all__ = [
    "DEFAULT_RULES",
    "DOWNLOAD_DIRECTIONS",
    "UPLOAD_DIRECTIONS",
    "RuleTable",
]
