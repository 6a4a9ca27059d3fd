"""SQLAlchemy ORM models for the sync configuration tables.

Tables:
- sync_configurations: Per-store sync policy and health timestamps
- sync_entity_rules: Per (configuration, entity type) direction and conflict policy

Queue, batch, conflict and log tables live in their feature packages and
register against the same Base. Relationships are plain foreign-key columns;
the engine resolves them with explicit lookups.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..timeutils import utcnow
from .schemas import ConflictWinner, SyncDirection


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class SyncConfiguration(Base):
    """Sync policy for one store. Never deleted, only updated."""

    __tablename__ = "sync_configurations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True, index=True)
    sync_interval_seconds: Mapped[int] = mapped_column(Integer, default=30)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    auto_sync_on_startup: Mapped[bool] = mapped_column(Boolean, default=False)
    max_batch_size: Mapped[int] = mapped_column(Integer, default=100)
    retry_attempts: Mapped[int] = mapped_column(Integer, default=3)
    retry_delay_seconds: Mapped[int] = mapped_column(Integer, default=60)

    # Health
    last_successful_sync: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_attempted_sync: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_sync_error: Mapped[Optional[str]] = mapped_column(String(1000))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<SyncConfiguration(id={self.id}, store_id={self.store_id}, enabled={self.is_enabled})>"


class SyncEntityRule(Base):
    """Direction, conflict policy and priority for one entity type of a store."""

    __tablename__ = "sync_entity_rules"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    sync_configuration_id: Mapped[int] = mapped_column(
        ForeignKey("sync_configurations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    direction: Mapped[str] = mapped_column(
        String(20), default=SyncDirection.BIDIRECTIONAL.value
    )
    conflict_resolution: Mapped[str] = mapped_column(
        String(20), default=ConflictWinner.HQ.value
    )
    flag_conflicts_for_review: Mapped[bool] = mapped_column(Boolean, default=False)
    priority: Mapped[int] = mapped_column(Integer, default=100)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    # Per-(store, entity type) cursor: newest timestamp confirmed by both sides
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "sync_configuration_id", "entity_type", name="uq_entity_rule_config_type"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<SyncEntityRule(id={self.id}, entity_type={self.entity_type}, "
            f"direction={self.direction}, policy={self.conflict_resolution})>"
        )
