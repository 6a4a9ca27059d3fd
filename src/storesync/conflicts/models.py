"""SQLAlchemy model for detected conflicts.

Tables:
- sync_conflicts: Divergences between a local and a remote version of an entity
"""

import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..db.models import Base
from ..timeutils import utcnow


class SyncConflict(Base):
    """A detected divergence. Immutable once is_resolved is set."""

    __tablename__ = "sync_conflicts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    sync_batch_id: Mapped[int] = mapped_column(Integer, nullable=False)
    sync_record_id: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)

    local_data: Mapped[Optional[str]] = mapped_column(Text)
    local_timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    remote_data: Mapped[Optional[str]] = mapped_column(Text)
    remote_timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Resolution
    policy: Mapped[str] = mapped_column(String(20), nullable=False)
    resolution: Mapped[Optional[str]] = mapped_column(String(20))  # ConflictWinner
    is_resolved: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    is_ignored: Mapped[bool] = mapped_column(Boolean, default=False)
    flagged_for_review: Mapped[bool] = mapped_column(Boolean, default=False)
    resolved_payload: Mapped[Optional[str]] = mapped_column(Text)
    resolved_by_user_id: Mapped[Optional[str]] = mapped_column(String(100))
    resolution_notes: Mapped[Optional[str]] = mapped_column(String(1000))
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Operator decision waiting for the engine to apply it
    pending_decision: Mapped[Optional[str]] = mapped_column(String(10))  # resolve | ignore
    pending_payload: Mapped[Optional[str]] = mapped_column(Text)
    pending_user_id: Mapped[Optional[str]] = mapped_column(String(100))
    pending_notes: Mapped[Optional[str]] = mapped_column(String(1000))
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    @property
    def local_payload(self) -> Optional[dict[str, Any]]:
        return json.loads(self.local_data) if self.local_data else None

    @property
    def remote_payload(self) -> Optional[dict[str, Any]]:
        return json.loads(self.remote_data) if self.remote_data else None

    @property
    def pending_value(self) -> Optional[dict[str, Any]]:
        return json.loads(self.pending_payload) if self.pending_payload else None

    def __repr__(self) -> str:
        return (
            f"<SyncConflict(id={self.id}, {self.entity_type}:{self.entity_id}, "
            f"resolved={self.is_resolved})>"
        )
