"""Batch history: operator queries over sent and received batches."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select

from ..conflicts.models import SyncConflict
from ..db.schemas import SyncBatchStatus, TERMINAL_BATCH_STATUSES
from ..db.sqlite import Database, get_db
from ..timeutils import as_utc, utcnow
from .ledger import batch_records
from .models import SyncBatch, SyncRecord

logger = logging.getLogger(__name__)


class BatchHistory:
    """Lists batches and prunes old ones."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_db()

    def get_batch(self, batch_id: int) -> Optional[SyncBatch]:
        """Get a batch by id."""
        with self.db.get_session() as session:
            batch = session.get(SyncBatch, batch_id)
            if batch:
                session.expunge(batch)
            return batch

    def list_batches(
        self,
        store_id: Optional[int] = None,
        status: Optional[SyncBatchStatus] = None,
        limit: int = 100,
    ) -> list[SyncBatch]:
        """Batches newest first, optionally for one store or one status."""
        with self.db.get_session() as session:
            stmt = select(SyncBatch).order_by(SyncBatch.created_at.desc(), SyncBatch.id.desc())
            if store_id is not None:
                stmt = stmt.where(SyncBatch.store_id == store_id)
            if status is not None:
                stmt = stmt.where(SyncBatch.status == SyncBatchStatus(status).value)
            batches = session.execute(stmt.limit(limit)).scalars().all()
            for b in batches:
                session.expunge(b)
            return list(batches)

    def active_batches(self, store_id: Optional[int] = None) -> list[SyncBatch]:
        """Batches being sent or applied right now."""
        return self.list_batches(store_id, SyncBatchStatus.IN_PROGRESS, limit=1000)

    def pending_batches(self, store_id: Optional[int] = None) -> list[SyncBatch]:
        """Assembled batches that have not been sent yet."""
        return self.list_batches(store_id, SyncBatchStatus.PENDING, limit=1000)

    def failed_batches(self, store_id: Optional[int] = None) -> list[SyncBatch]:
        return self.list_batches(store_id, SyncBatchStatus.FAILED, limit=1000)

    def records(self, batch_id: int) -> list[SyncRecord]:
        """Records of a batch in arrival order."""
        with self.db.get_session() as session:
            records = batch_records(session, batch_id)
            for r in records:
                session.expunge(r)
            return records

    def cleanup_old_batches(self, days_to_keep: int = 30, now: Optional[datetime] = None) -> int:
        """Delete finished batches and their records older than the cutoff.

        Batches still referenced by an unresolved conflict are kept, since
        the operator resolution needs their record.

        Returns:
            Number of batches deleted
        """
        cutoff = (as_utc(now) or utcnow()) - timedelta(days=days_to_keep)
        with self.db.get_session() as session:
            held = select(SyncConflict.sync_batch_id).where(SyncConflict.is_resolved.is_(False))
            batch_ids = session.execute(
                select(SyncBatch.id).where(
                    SyncBatch.status.in_([s.value for s in TERMINAL_BATCH_STATUSES]),
                    SyncBatch.completed_at < cutoff,
                    SyncBatch.id.not_in(held),
                )
            ).scalars().all()
            if batch_ids:
                session.execute(delete(SyncRecord).where(SyncRecord.sync_batch_id.in_(batch_ids)))
                session.execute(delete(SyncBatch).where(SyncBatch.id.in_(batch_ids)))

        logger.info("Removed %s batches older than %s days", len(batch_ids), days_to_keep)
        return len(batch_ids)
