"""Pydantic schemas for sync logs, statistics and store status."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ..db.schemas import SyncHealthStatus


class SyncLogResponse(BaseModel):
    """Schema for sync log responses."""

    id: int
    store_id: Optional[int] = None
    sync_batch_id: Optional[int] = None
    operation: str
    entity_type: Optional[str] = None
    is_success: bool
    error_message: Optional[str] = None
    details: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class SyncStatistics(BaseModel):
    """Batch and record totals for a store over a time window."""

    store_id: int
    total_batches: int = 0
    successful_batches: int = 0
    failed_batches: int = 0
    total_records_synced: int = 0
    total_conflicts: int = 0
    resolved_conflicts: int = 0
    average_duration_ms: float = 0.0
    first_sync_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    records_by_entity_type: dict[str, int] = Field(default_factory=dict)

    @property
    def failure_rate_percent(self) -> int:
        if self.total_batches == 0:
            return 0
        return round(self.failed_batches * 100 / self.total_batches)


class StoreSyncStatus(BaseModel):
    """Operator view of one store's sync health."""

    store_id: int
    is_configured: bool = False
    is_enabled: bool = False
    is_online: bool = False
    last_successful_sync: Optional[datetime] = None
    last_attempted_sync: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    pending_items: int = 0
    failed_items: int = 0
    conflict_items: int = 0
    critical_pending: int = 0
    active_batches: int = 0
    unresolved_conflicts: int = 0
    health: SyncHealthStatus = SyncHealthStatus.HEALTHY
    health_message: str = ""
