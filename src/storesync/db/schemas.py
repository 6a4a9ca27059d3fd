"""Pydantic schemas and shared enums.

Enums are stored by value in the database; schemas validate configuration
input and shape responses for the CLI and operator interface.
"""

from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional

from pydantic import BaseModel, Field


class NodeRole(str, Enum):
    """Which side of the replication this node is."""

    HQ = "hq"
    STORE = "store"


class SyncDirection(str, Enum):
    """Direction an entity type flows in."""

    UPLOAD = "upload"  # store -> HQ
    DOWNLOAD = "download"  # HQ -> store
    BIDIRECTIONAL = "bidirectional"


class ConflictWinner(str, Enum):
    """Conflict policy tag, also used to record who won a resolved conflict."""

    HQ = "hq"
    STORE = "store"
    LATEST_TIMESTAMP = "latest_timestamp"
    MANUAL = "manual"


class SyncPriority(IntEnum):
    """Queue priority tier. Higher values are assembled first."""

    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


class SyncOperation(str, Enum):
    """Type of sync operation."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncQueueStatus(str, Enum):
    """Status of sync queue items."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    CONFLICT = "conflict"


class SyncBatchStatus(str, Enum):
    """Status of a transmission batch."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_BATCH_STATUSES = frozenset(
    {
        SyncBatchStatus.COMPLETED,
        SyncBatchStatus.PARTIALLY_COMPLETED,
        SyncBatchStatus.FAILED,
        SyncBatchStatus.CANCELLED,
    }
)


class RecordOutcome(str, Enum):
    """Per-record result inside a batch."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CONFLICT = "conflict"  # deferred to an operator


class SyncHealthStatus(str, Enum):
    """Store sync health as shown to operators."""

    HEALTHY = "healthy"
    WARNING = "warning"
    DEGRADED = "degraded"
    CRITICAL = "critical"


# ============================================================================
# Configuration Schemas
# ============================================================================


class SyncConfigurationUpdate(BaseModel):
    """Fields an operator may change on a store configuration."""

    sync_interval_seconds: Optional[int] = Field(None, gt=0)
    is_enabled: Optional[bool] = None
    auto_sync_on_startup: Optional[bool] = None
    max_batch_size: Optional[int] = Field(None, gt=0)
    retry_attempts: Optional[int] = Field(None, gt=0)
    retry_delay_seconds: Optional[int] = Field(None, gt=0)


class SyncConfigurationResponse(BaseModel):
    """Schema for sync configuration responses."""

    id: int
    store_id: int
    sync_interval_seconds: int
    is_enabled: bool
    auto_sync_on_startup: bool
    max_batch_size: int
    retry_attempts: int
    retry_delay_seconds: int
    last_successful_sync: Optional[datetime] = None
    last_attempted_sync: Optional[datetime] = None
    last_sync_error: Optional[str] = None

    model_config = {"from_attributes": True}


class EntityRuleCreate(BaseModel):
    """Schema for creating or replacing an entity rule."""

    entity_type: str = Field(..., min_length=1, max_length=100)
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    conflict_resolution: ConflictWinner = ConflictWinner.HQ
    priority: int = Field(100, ge=0)
    is_enabled: bool = True
    flag_conflicts_for_review: bool = False


class EntityRuleResponse(EntityRuleCreate):
    """Schema for entity rule responses."""

    id: int
    sync_configuration_id: int
    last_synced_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
