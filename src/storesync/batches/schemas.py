"""Pydantic schemas for batch results and responses."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ..db.schemas import RecordOutcome, SyncBatchStatus


class RecordResult(BaseModel):
    """Outcome of one record, as stored and as acknowledged to the sender."""

    record_uid: str
    entity_id: str
    outcome: RecordOutcome
    retryable: bool = False
    error: Optional[str] = None
    ignored: bool = False


class BatchResult(BaseModel):
    """Roll-up of one applied batch."""

    batch_id: int
    batch_uid: str
    status: SyncBatchStatus
    success: int = 0
    failed: int = 0
    conflicts: int = 0
    outcomes: list[RecordResult] = Field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.success + self.failed


class SyncBatchResponse(BaseModel):
    """Schema for batch responses."""

    id: int
    batch_uid: str
    store_id: int
    direction: str
    entity_type: str
    is_incoming: bool
    status: SyncBatchStatus
    record_count: int
    processed_count: int
    success_count: int
    failed_count: int
    conflict_count: int
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}
