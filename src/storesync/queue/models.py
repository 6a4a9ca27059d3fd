"""SQLAlchemy model for the change queue.

Tables:
- sync_queue: Local mutations waiting to be assembled into a batch
"""

import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..db.models import Base
from ..db.schemas import SyncPriority, SyncQueueStatus
from ..timeutils import utcnow


class SyncQueueItem(Base):
    """One pending local mutation.

    An item may be claimed by several batches over its life (re-assembly
    after a batch-level failure); sync_batch_id points at the latest one.
    """

    __tablename__ = "sync_queue"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=SyncPriority.NORMAL.value)
    status: Mapped[str] = mapped_column(
        String(20), default=SyncQueueStatus.PENDING.value, index=True
    )
    payload: Mapped[Optional[str]] = mapped_column(Text)  # JSON
    entity_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    # Retry state
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    last_error: Mapped[Optional[str]] = mapped_column(String(1000))
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    sync_batch_id: Mapped[Optional[int]] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_sync_queue_claim", "store_id", "entity_type", "status"),
    )

    @property
    def payload_dict(self) -> Optional[dict[str, Any]]:
        """Decoded payload, None for deletes without data."""
        return json.loads(self.payload) if self.payload else None

    def __repr__(self) -> str:
        return (
            f"<SyncQueueItem(id={self.id}, {self.entity_type}:{self.entity_id}, "
            f"op={self.operation}, status={self.status})>"
        )
