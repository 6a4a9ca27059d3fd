"""Conflict detection, resolution policies and the operator backlog.

ConflictManager lives in conflicts.manager.
"""

from .detector import ChangeKind, ConflictCheck, conflicting_fields, detect_conflict, payloads_differ
from .models import SyncConflict
from .resolver import (
    ConflictPolicy,
    HqWinsPolicy,
    LatestTimestampPolicy,
    ManualPolicy,
    Resolution,
    StoreWinsPolicy,
    policy_for,
)
from .schemas import ConflictResponse, ConflictSummary

__all__ = [
    "ChangeKind",
    "ConflictCheck",
    "conflicting_fields",
    "detect_conflict",
    "payloads_differ",
    "SyncConflict",
    "ConflictPolicy",
    "HqWinsPolicy",
    "LatestTimestampPolicy",
    "ManualPolicy",
    "Resolution",
    "StoreWinsPolicy",
    "policy_for",
    "ConflictResponse",
    "ConflictSummary",
]
