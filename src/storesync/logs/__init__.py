"""Sync log and metrics.

Append-only audit of engine operations plus the statistics and health
views built on top of it.
"""

from .manager import SyncLogManager, calculate_health
from .models import SyncLog
from .schemas import StoreSyncStatus, SyncLogResponse, SyncStatistics

__all__ = [
    "SyncLogManager",
    "calculate_health",
    "SyncLog",
    "StoreSyncStatus",
    "SyncLogResponse",
    "SyncStatistics",
]
