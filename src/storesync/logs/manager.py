"""Sync log manager: audit trail, statistics and store health."""

import json
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Generator, Optional

from sqlalchemy import delete, func, select

from ..batches.models import SyncBatch, SyncRecord
from ..conflicts.models import SyncConflict
from ..db.models import SyncConfiguration
from ..db.schemas import SyncBatchStatus, SyncHealthStatus, SyncPriority, SyncQueueStatus
from ..db.sqlite import Database, get_db
from ..queue.models import SyncQueueItem
from ..timeutils import as_utc, utcnow
from .models import SyncLog
from .schemas import StoreSyncStatus, SyncStatistics

logger = logging.getLogger(__name__)

ONLINE_WINDOW = timedelta(minutes=5)


def calculate_health(
    pending: int,
    failed: int,
    critical_pending: int,
    last_sync: Optional[datetime],
    is_online: bool,
    now: Optional[datetime] = None,
) -> tuple[SyncHealthStatus, str]:
    """Classify store health from queue counts and sync recency.

    Returns:
        Tuple of (health status, operator message)
    """
    now = now or utcnow()
    hours_since = (now - last_sync).total_seconds() / 3600 if last_sync else None

    if critical_pending > 0:
        return SyncHealthStatus.CRITICAL, f"Critical: {critical_pending} critical items pending sync"
    if failed > 10:
        return SyncHealthStatus.CRITICAL, f"Critical: {failed} sync failures need attention"
    if hours_since is not None and hours_since > 24:
        return SyncHealthStatus.CRITICAL, "Critical: Sync has not completed in over 24 hours"

    if failed > 0:
        return SyncHealthStatus.DEGRADED, f"Degraded: {failed} items failed to sync"
    if pending > 100:
        return SyncHealthStatus.DEGRADED, f"Degraded: {pending} items waiting to sync"
    if not is_online and pending > 0:
        return SyncHealthStatus.DEGRADED, "Degraded: Offline with pending items"

    if pending > 0:
        return SyncHealthStatus.WARNING, f"Warning: {pending} items pending sync"
    if hours_since is not None and hours_since > 1:
        return SyncHealthStatus.WARNING, "Warning: No recent sync activity"

    return SyncHealthStatus.HEALTHY, "All data synced successfully"


class SyncLogManager:
    """Writes and queries the append-only sync log."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_db()

    def log(
        self,
        operation: str,
        success: bool = True,
        store_id: Optional[int] = None,
        entity_type: Optional[str] = None,
        batch_id: Optional[int] = None,
        error: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        duration_ms: Optional[int] = None,
    ) -> SyncLog:
        """Append one log row.

        Args:
            operation: Short operation name (assemble, send, apply, ...)
            success: Whether the operation succeeded
            store_id: Store the operation concerns
            entity_type: Entity type, if any
            batch_id: Local batch id, if any
            error: Error text for failures
            details: Extra JSON-serializable context
            duration_ms: Measured duration

        Returns:
            The stored log row
        """
        with self.db.get_session() as session:
            entry = SyncLog(
                store_id=store_id,
                sync_batch_id=batch_id,
                operation=operation,
                entity_type=entity_type,
                is_success=success,
                error_message=error[:1000] if error else None,
                details=json.dumps(details, default=str) if details else None,
                duration_ms=duration_ms,
            )
            session.add(entry)
            session.commit()
            session.refresh(entry)
            session.expunge(entry)

        logger.debug("sync log: %s store=%s success=%s", operation, store_id, success)
        return entry

    @contextmanager
    def track(
        self,
        store_id: Optional[int],
        operation: str,
        batch_id: Optional[int] = None,
        entity_type: Optional[str] = None,
    ) -> Generator[dict[str, Any], None, None]:
        """Time a block and log its outcome.

        Yields a details dict the block may fill in. Exceptions are logged
        as failures and re-raised.
        """
        details: dict[str, Any] = {}
        started = time.perf_counter()
        try:
            yield details
        except Exception as e:
            self.log(
                operation,
                success=False,
                store_id=store_id,
                entity_type=entity_type,
                batch_id=details.get("batch_id", batch_id),
                error=str(e),
                details=details,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            raise
        self.log(
            operation,
            success=True,
            store_id=store_id,
            entity_type=entity_type,
            batch_id=details.get("batch_id", batch_id),
            details=details,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

    def recent(self, store_id: Optional[int] = None, limit: int = 50) -> list[SyncLog]:
        """Most recent log rows, newest first."""
        with self.db.get_session() as session:
            stmt = select(SyncLog).order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
            if store_id is not None:
                stmt = stmt.where(SyncLog.store_id == store_id)
            rows = session.execute(stmt.limit(limit)).scalars().all()
            for r in rows:
                session.expunge(r)
            return list(rows)

    def errors(
        self,
        store_id: Optional[int] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[SyncLog]:
        """Failed operations, newest first."""
        with self.db.get_session() as session:
            stmt = (
                select(SyncLog)
                .where(SyncLog.is_success.is_(False))
                .order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
            )
            if store_id is not None:
                stmt = stmt.where(SyncLog.store_id == store_id)
            if since is not None:
                stmt = stmt.where(SyncLog.created_at >= since)
            rows = session.execute(stmt.limit(limit)).scalars().all()
            for r in rows:
                session.expunge(r)
            return list(rows)

    def prune(self, days_to_keep: int = 90, now: Optional[datetime] = None) -> int:
        """Delete log rows older than the cutoff. Returns the count."""
        cutoff = (as_utc(now) or utcnow()) - timedelta(days=days_to_keep)
        with self.db.get_session() as session:
            result = session.execute(delete(SyncLog).where(SyncLog.created_at < cutoff))
            count = result.rowcount

        logger.info("Pruned %s sync log rows older than %s days", count, days_to_keep)
        return count

    def statistics(
        self,
        store_id: int,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> SyncStatistics:
        """Batch, record and conflict totals for a store."""
        with self.db.get_session() as session:
            stmt = select(SyncBatch).where(SyncBatch.store_id == store_id)
            if from_date:
                stmt = stmt.where(SyncBatch.created_at >= from_date)
            if to_date:
                stmt = stmt.where(SyncBatch.created_at <= to_date)
            batches = session.execute(stmt).scalars().all()
            batch_ids = [b.id for b in batches]

            records_by_type: dict[str, int] = {}
            synced = 0
            total_conflicts = 0
            resolved_conflicts = 0
            if batch_ids:
                rows = session.execute(
                    select(SyncRecord.entity_type, func.count(SyncRecord.id))
                    .where(SyncRecord.sync_batch_id.in_(batch_ids))
                    .group_by(SyncRecord.entity_type)
                ).all()
                records_by_type = {entity_type: count for entity_type, count in rows}
                synced = session.execute(
                    select(func.count(SyncRecord.id)).where(
                        SyncRecord.sync_batch_id.in_(batch_ids),
                        SyncRecord.is_success.is_(True),
                    )
                ).scalar_one()
                conflicts = session.execute(
                    select(SyncConflict.is_resolved).where(
                        SyncConflict.sync_batch_id.in_(batch_ids)
                    )
                ).scalars().all()
                total_conflicts = len(conflicts)
                resolved_conflicts = sum(1 for resolved in conflicts if resolved)

            avg_duration = session.execute(
                select(func.avg(SyncLog.duration_ms)).where(
                    SyncLog.store_id == store_id, SyncLog.duration_ms.is_not(None)
                )
            ).scalar_one()

            created = [b.created_at for b in batches]
            return SyncStatistics(
                store_id=store_id,
                total_batches=len(batches),
                successful_batches=sum(
                    1 for b in batches if b.status == SyncBatchStatus.COMPLETED.value
                ),
                failed_batches=sum(1 for b in batches if b.status == SyncBatchStatus.FAILED.value),
                total_records_synced=synced,
                total_conflicts=total_conflicts,
                resolved_conflicts=resolved_conflicts,
                average_duration_ms=float(avg_duration or 0.0),
                first_sync_at=min(created) if created else None,
                last_sync_at=max(created) if created else None,
                records_by_entity_type=records_by_type,
            )

    def store_status(self, store_id: int, now: Optional[datetime] = None) -> StoreSyncStatus:
        """Health snapshot for one store."""
        now = now or utcnow()
        with self.db.get_session() as session:
            config = session.execute(
                select(SyncConfiguration).where(SyncConfiguration.store_id == store_id)
            ).scalar_one_or_none()

            counts = dict(
                session.execute(
                    select(SyncQueueItem.status, func.count(SyncQueueItem.id))
                    .where(SyncQueueItem.store_id == store_id, SyncQueueItem.is_active.is_(True))
                    .group_by(SyncQueueItem.status)
                ).all()
            )
            critical_pending = session.execute(
                select(func.count(SyncQueueItem.id)).where(
                    SyncQueueItem.store_id == store_id,
                    SyncQueueItem.is_active.is_(True),
                    SyncQueueItem.status == SyncQueueStatus.PENDING.value,
                    SyncQueueItem.priority >= SyncPriority.CRITICAL.value,
                )
            ).scalar_one()
            active_batches = session.execute(
                select(func.count(SyncBatch.id)).where(
                    SyncBatch.store_id == store_id,
                    SyncBatch.status.in_(
                        [SyncBatchStatus.PENDING.value, SyncBatchStatus.IN_PROGRESS.value]
                    ),
                )
            ).scalar_one()
            unresolved = session.execute(
                select(func.count(SyncConflict.id)).where(
                    SyncConflict.store_id == store_id, SyncConflict.is_resolved.is_(False)
                )
            ).scalar_one()

        last_success = config.last_successful_sync if config else None
        is_online = last_success is not None and now - last_success <= ONLINE_WINDOW
        pending = counts.get(SyncQueueStatus.PENDING.value, 0)
        failed = counts.get(SyncQueueStatus.FAILED.value, 0)
        health, message = calculate_health(
            pending=pending,
            failed=failed,
            critical_pending=critical_pending,
            last_sync=last_success,
            is_online=is_online,
            now=now,
        )

        return StoreSyncStatus(
            store_id=store_id,
            is_configured=config is not None,
            is_enabled=bool(config and config.is_enabled),
            is_online=is_online,
            last_successful_sync=last_success,
            last_attempted_sync=config.last_attempted_sync if config else None,
            last_sync_error=config.last_sync_error if config else None,
            pending_items=pending,
            failed_items=failed,
            conflict_items=counts.get(SyncQueueStatus.CONFLICT.value, 0),
            critical_pending=critical_pending,
            active_batches=active_batches,
            unresolved_conflicts=unresolved,
            health=health,
            health_message=message,
        )
