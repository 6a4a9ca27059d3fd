"""Database module for local SQLite storage."""

from .models import Base, SyncConfiguration, SyncEntityRule
from .schemas import (
    ConflictWinner,
    EntityRuleCreate,
    EntityRuleResponse,
    NodeRole,
    RecordOutcome,
    SyncBatchStatus,
    SyncConfigurationResponse,
    SyncConfigurationUpdate,
    SyncDirection,
    SyncHealthStatus,
    SyncOperation,
    SyncPriority,
    SyncQueueStatus,
)
from .sqlite import Database, get_db, reset_db

__all__ = [
    "Base",
    "SyncConfiguration",
    "SyncEntityRule",
    "ConflictWinner",
    "EntityRuleCreate",
    "EntityRuleResponse",
    "NodeRole",
    "RecordOutcome",
    "SyncBatchStatus",
    "SyncConfigurationResponse",
    "SyncConfigurationUpdate",
    "SyncDirection",
    "SyncHealthStatus",
    "SyncOperation",
    "SyncPriority",
    "SyncQueueStatus",
    "Database",
    "get_db",
    "reset_db",
]
