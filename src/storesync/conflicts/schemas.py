"""Pydantic schemas for conflicts."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class ConflictResponse(BaseModel):
    """Schema for conflict responses."""

    id: int
    store_id: int
    sync_batch_id: int
    entity_type: str
    entity_id: str
    local_timestamp: datetime
    remote_timestamp: datetime
    policy: str
    resolution: Optional[str] = None
    is_resolved: bool
    is_ignored: bool
    flagged_for_review: bool
    resolved_by_user_id: Optional[str] = None
    resolution_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime
    local_payload: Optional[dict[str, Any]] = None
    remote_payload: Optional[dict[str, Any]] = None

    model_config = {"from_attributes": True}


class ConflictSummary(BaseModel):
    """Conflict backlog counts."""

    total: int = 0
    unresolved: int = 0
    resolved: int = 0
    ignored: int = 0
    flagged_for_review: int = 0
    unresolved_by_entity_type: dict[str, int] = Field(default_factory=dict)
    by_resolution: dict[str, int] = Field(default_factory=dict)
