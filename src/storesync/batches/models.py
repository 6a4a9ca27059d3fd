"""SQLAlchemy models for batches.

Tables:
- sync_batches: Units of transmission, outgoing and received
- sync_records: One entity mutation inside a batch
- sync_points: Last confirmed common sync point per entity
"""

import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..db.models import Base
from ..db.schemas import RecordOutcome, SyncBatchStatus, TERMINAL_BATCH_STATUSES
from ..timeutils import utcnow


class SyncBatch(Base):
    """A batch for one (store, direction, entity type).

    Counters are rolled up from the batch's records. Once the status is
    terminal the row is not modified again.
    """

    __tablename__ = "sync_batches"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    batch_uid: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    store_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    is_incoming: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(
        String(30), default=SyncBatchStatus.PENDING.value, index=True
    )

    # Counters
    record_count: Mapped[int] = mapped_column(Integer, default=0)
    processed_count: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
    conflict_count: Mapped[int] = mapped_column(Integer, default=0)

    batch_data: Mapped[Optional[str]] = mapped_column(Text)  # serialized BatchEnvelope
    error_message: Mapped[Optional[str]] = mapped_column(String(1000))

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_terminal(self) -> bool:
        return SyncBatchStatus(self.status) in TERMINAL_BATCH_STATUSES

    def __repr__(self) -> str:
        return (
            f"<SyncBatch(id={self.id}, store={self.store_id}, {self.entity_type}, "
            f"status={self.status}, {self.processed_count}/{self.record_count})>"
        )


class SyncRecord(Base):
    """One mutation in a batch. Processed exactly once."""

    __tablename__ = "sync_records"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    sync_batch_id: Mapped[int] = mapped_column(
        ForeignKey("sync_batches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    record_uid: Mapped[str] = mapped_column(String(36), nullable=False)
    queue_item_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)
    sequence: Mapped[int] = mapped_column(Integer, default=0)

    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_data: Mapped[Optional[str]] = mapped_column(Text)  # JSON
    entity_timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Outcome
    outcome: Mapped[str] = mapped_column(String(20), default=RecordOutcome.PENDING.value)
    is_processed: Mapped[bool] = mapped_column(Boolean, default=False)
    is_success: Mapped[bool] = mapped_column(Boolean, default=False)
    is_retryable: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[Optional[str]] = mapped_column(String(1000))
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("sync_batch_id", "record_uid", name="uq_sync_record_batch_uid"),
    )

    @property
    def payload(self) -> Optional[dict[str, Any]]:
        return json.loads(self.entity_data) if self.entity_data else None

    def __repr__(self) -> str:
        return (
            f"<SyncRecord(id={self.id}, {self.entity_type}:{self.entity_id}, "
            f"outcome={self.outcome})>"
        )


class SyncPoint(Base):
    """Newest timestamp both replicas agreed on for one entity of one store."""

    __tablename__ = "sync_points"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    synced_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("store_id", "entity_type", "entity_id", name="uq_sync_point_entity"),
    )
