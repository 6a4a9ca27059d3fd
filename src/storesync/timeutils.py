"""Timestamp helpers.

All timestamps are stored as naive UTC datetimes so that values read back
from SQLite compare cleanly with freshly created ones.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to naive UTC. Naive input is assumed to be UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_timestamp(ts: Optional[str]) -> Optional[datetime]:
    """Parse ISO timestamp string to naive UTC datetime."""
    if not ts:
        return None
    try:
        return as_utc(datetime.fromisoformat(ts.replace("Z", "+00:00")))
    except ValueError:
        return None
