"""Pydantic schemas for the change queue."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class QueueItemResponse(BaseModel):
    """Schema for queue item responses."""

    id: int
    store_id: int
    entity_type: str
    entity_id: str
    operation: str
    priority: int
    status: str
    retry_count: int
    max_retries: int
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    sync_batch_id: Optional[int] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class QueueSummary(BaseModel):
    """Queue counts for one store, or every store when store_id is None."""

    store_id: Optional[int] = None
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    pending_by_priority: dict[int, int] = Field(default_factory=dict)
    pending_by_entity_type: dict[str, int] = Field(default_factory=dict)
    critical_pending: int = 0
    oldest_pending_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None

    @property
    def pending(self) -> int:
        return self.by_status.get("pending", 0)

    @property
    def failed(self) -> int:
        return self.by_status.get("failed", 0)

    @property
    def in_progress(self) -> int:
        return self.by_status.get("in_progress", 0)

    @property
    def is_empty(self) -> bool:
        return self.pending == 0 and self.in_progress == 0
