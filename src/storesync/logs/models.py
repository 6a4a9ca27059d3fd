"""SQLAlchemy model for the sync audit log.

Tables:
- sync_logs: Append-only record of engine operations
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..db.models import Base
from ..timeutils import utcnow


class SyncLog(Base):
    """One engine operation. Never updated after insert."""

    __tablename__ = "sync_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    store_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)
    sync_batch_id: Mapped[Optional[int]] = mapped_column(Integer)
    operation: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[Optional[str]] = mapped_column(String(100))
    is_success: Mapped[bool] = mapped_column(Boolean, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(String(1000))
    details: Mapped[Optional[str]] = mapped_column(Text)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    def __repr__(self) -> str:
        return f"<SyncLog(id={self.id}, op={self.operation}, success={self.is_success})>"
