"""Conflict detection.

A conflict exists only when both replicas changed since their last common
sync point and ended up with different contents. Everything here is pure:
the common point is passed in, never read from shared state.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from ..repository import VersionedValue


class ChangeKind(str, Enum):
    """How local and remote versions relate to the common sync point."""

    NEW = "new"  # no local version
    REMOTE_ONLY = "remote_only"  # only the remote side changed
    LOCAL_ONLY = "local_only"  # only the local side changed
    STALE = "stale"  # neither changed and remote is older than local
    IDENTICAL = "identical"  # both changed to the same contents
    CONFLICT = "conflict"  # both changed, contents differ


@dataclass(frozen=True)
class ConflictCheck:
    """Result of comparing two versions against a common point."""

    kind: ChangeKind
    common_point: datetime
    local_changed: bool
    remote_changed: bool

    @property
    def is_conflict(self) -> bool:
        return self.kind == ChangeKind.CONFLICT

    @property
    def apply_remote(self) -> bool:
        """Remote value is authoritative without consulting a resolver."""
        return self.kind in (ChangeKind.NEW, ChangeKind.REMOTE_ONLY)


def _canonical(payload: Optional[dict[str, Any]]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def payloads_differ(a: Optional[dict[str, Any]], b: Optional[dict[str, Any]]) -> bool:
    """Compare payloads by canonical JSON, ignoring key order."""
    return _canonical(a) != _canonical(b)


def conflicting_fields(a: Optional[dict[str, Any]], b: Optional[dict[str, Any]]) -> list[str]:
    """Top-level keys whose values differ between two payloads."""
    a = a or {}
    b = b or {}
    return sorted(
        key for key in set(a) | set(b)
        if key not in a or key not in b or _canonical(a[key]) != _canonical(b[key])
    )


def detect_conflict(
    local: Optional[VersionedValue],
    remote: VersionedValue,
    common_point: Optional[datetime],
) -> ConflictCheck:
    """Classify a remote version against the local one.

    Args:
        local: Current local version, None if the entity does not exist here
        remote: Incoming version
        common_point: Last confirmed common sync point, None if never synced

    Returns:
        ConflictCheck describing which side changed
    """
    point = common_point or datetime.min
    remote_changed = remote.timestamp > point

    if local is None:
        return ConflictCheck(ChangeKind.NEW, point, False, remote_changed)

    local_changed = local.timestamp > point

    if not local_changed:
        if not remote_changed and remote.timestamp < local.timestamp:
            return ConflictCheck(ChangeKind.STALE, point, False, False)
        return ConflictCheck(ChangeKind.REMOTE_ONLY, point, False, remote_changed)

    if not remote_changed:
        return ConflictCheck(ChangeKind.LOCAL_ONLY, point, True, False)

    same = local.deleted == remote.deleted and not payloads_differ(local.payload, remote.payload)
    kind = ChangeKind.IDENTICAL if same else ChangeKind.CONFLICT
    return ConflictCheck(kind, point, True, True)
