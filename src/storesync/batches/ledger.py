"""Record settlement, batch roll-up and per-entity sync points.

Shared by the processor (records applied here) and by acknowledgement
handling (records applied by the peer).
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.schemas import RecordOutcome, SyncBatchStatus
from ..db.sqlite import Database, get_db
from ..timeutils import as_utc, utcnow
from .models import SyncBatch, SyncPoint, SyncRecord
from .schemas import RecordResult


def record_result(record: SyncRecord) -> RecordResult:
    """Stored outcome of a record."""
    return RecordResult(
        record_uid=record.record_uid,
        entity_id=record.entity_id,
        outcome=RecordOutcome(record.outcome),
        retryable=record.is_retryable,
        error=record.error_message,
    )


def settle_record(
    session: Session,
    batch: SyncBatch,
    record: SyncRecord,
    outcome: RecordOutcome,
    error: Optional[str] = None,
    retryable: bool = False,
    now: Optional[datetime] = None,
) -> bool:
    """Mark a record processed and roll the outcome into its batch.

    A record is settled once. Returns False, leaving everything untouched,
    if it was already processed or the outcome is still pending.
    """
    if record.is_processed or outcome == RecordOutcome.PENDING:
        return False

    now = now or utcnow()
    record.outcome = outcome.value
    record.is_processed = True
    record.is_success = outcome == RecordOutcome.SUCCESS
    record.is_retryable = retryable and outcome == RecordOutcome.FAILED
    record.error_message = error[:1000] if error else None
    record.processed_at = now

    if outcome == RecordOutcome.SUCCESS:
        batch.success_count += 1
    elif outcome == RecordOutcome.FAILED:
        batch.failed_count += 1
    else:
        batch.conflict_count += 1
    batch.processed_count = batch.success_count + batch.failed_count

    if batch.success_count + batch.failed_count + batch.conflict_count >= batch.record_count:
        finish_batch(batch, now)
    return True


def finish_batch(batch: SyncBatch, now: Optional[datetime] = None) -> None:
    """Set the terminal status of a fully processed batch."""
    if batch.success_count == batch.record_count:
        batch.status = SyncBatchStatus.COMPLETED.value
    elif batch.failed_count == batch.record_count:
        batch.status = SyncBatchStatus.FAILED.value
    else:
        batch.status = SyncBatchStatus.PARTIALLY_COMPLETED.value
    batch.completed_at = now or utcnow()


def cancel_batch_row(batch: SyncBatch, reason: str, now: Optional[datetime] = None) -> None:
    """Move a non-terminal batch to cancelled. Settled records keep their outcome."""
    batch.status = SyncBatchStatus.CANCELLED.value
    batch.error_message = reason[:1000]
    batch.completed_at = now or utcnow()


def batch_records(session: Session, batch_id: int) -> list[SyncRecord]:
    """Records of a batch in arrival order."""
    stmt = (
        select(SyncRecord)
        .where(SyncRecord.sync_batch_id == batch_id)
        .order_by(SyncRecord.sequence, SyncRecord.id)
    )
    return list(session.execute(stmt).scalars().all())


class SyncPointStore:
    """Reads and advances per-entity common sync points."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_db()

    def get(self, store_id: int, entity_type: str, entity_id: str) -> Optional[datetime]:
        """Last confirmed common sync point, or None if never synced."""
        with self.db.get_session() as session:
            return session.execute(
                select(SyncPoint.synced_at).where(
                    SyncPoint.store_id == store_id,
                    SyncPoint.entity_type == entity_type,
                    SyncPoint.entity_id == entity_id,
                )
            ).scalar_one_or_none()

    def advance(
        self, store_id: int, entity_type: str, entity_id: str, timestamp: datetime
    ) -> datetime:
        """Move the point forward to timestamp. Never moves it back.

        Returns:
            The point after the update
        """
        timestamp = as_utc(timestamp)
        with self.db.get_session() as session:
            point = session.execute(
                select(SyncPoint).where(
                    SyncPoint.store_id == store_id,
                    SyncPoint.entity_type == entity_type,
                    SyncPoint.entity_id == entity_id,
                )
            ).scalar_one_or_none()
            if point is None:
                point = SyncPoint(
                    store_id=store_id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    synced_at=timestamp,
                )
                session.add(point)
            elif timestamp > point.synced_at:
                point.synced_at = timestamp
            return point.synced_at
