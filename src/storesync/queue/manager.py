"""Change queue: per-store ordered queue of local mutations."""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import case, delete, func, or_, select, update

from ..db.schemas import SyncOperation, SyncPriority, SyncQueueStatus
from ..db.sqlite import Database, get_db
from ..errors import InvalidTransitionError, NotFoundError, UnknownEntityTypeError
from ..logs.manager import SyncLogManager
from ..retry.scheduler import RetryScheduler
from ..rules.manager import RuleTable
from ..timeutils import as_utc, utcnow
from .models import SyncQueueItem
from .schemas import QueueSummary

logger = logging.getLogger(__name__)

CLAIM_ORDER = (
    SyncQueueItem.priority.desc(),
    SyncQueueItem.created_at.asc(),
    SyncQueueItem.id.asc(),
)


def _eligible(store_id: int, now: datetime) -> tuple:
    """Filters for pending items of a store whose backoff has expired."""
    return (
        SyncQueueItem.store_id == store_id,
        SyncQueueItem.status == SyncQueueStatus.PENDING.value,
        SyncQueueItem.is_active.is_(True),
        or_(SyncQueueItem.next_retry_at.is_(None), SyncQueueItem.next_retry_at <= now),
    )


def _coalesce_operation(existing: str, incoming: str) -> str:
    """Operation of a pending item after a newer mutation of the same entity.

    The newest mutation decides. The only exception is a create followed by
    an update, which the peer has still never seen and so stays a create.
    """
    if existing == SyncOperation.CREATE.value and incoming == SyncOperation.UPDATE.value:
        return SyncOperation.CREATE.value
    return incoming


class ChangeQueue:
    """Enqueues, claims and settles local mutations."""

    def __init__(
        self,
        db: Optional[Database] = None,
        rules: Optional[RuleTable] = None,
        retry_scheduler: Optional[RetryScheduler] = None,
        log_manager: Optional[SyncLogManager] = None,
    ):
        """Initialize change queue.

        Args:
            db: Database instance
            rules: Rule table used for enqueue checks and retry budgets
            retry_scheduler: Owner of failure and backoff transitions
            log_manager: Sync log writer
        """
        self.db = db or get_db()
        self.rules = rules or RuleTable(self.db)
        self.log_manager = log_manager or SyncLogManager(self.db)
        self.retry_scheduler = retry_scheduler or RetryScheduler(
            self.db, log_manager=self.log_manager
        )

    # -------------------------------------------------------------------------
    # Producers
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        store_id: int,
        entity_type: str,
        entity_id: Any,
        operation: SyncOperation,
        payload: Optional[dict[str, Any]] = None,
        priority: SyncPriority = SyncPriority.NORMAL,
        timestamp: Optional[datetime] = None,
    ) -> Optional[SyncQueueItem]:
        """Queue a committed local mutation.

        A pending item for the same entity is updated in place: the newer
        payload and operation win, and the higher priority is kept.

        Args:
            store_id: Store the change belongs to
            entity_type: Entity type name
            entity_id: Entity identifier
            operation: Create, update or delete
            payload: Serializable entity data
            priority: Priority tier
            timestamp: Logical version of the change (defaults to now)

        Returns:
            The new or coalesced item, or None if the rule is disabled or
            does not allow outbound sync from this node

        Raises:
            UnknownEntityTypeError: If the store has no rule for the type
        """
        rule = self.rules.rule_for(store_id, entity_type)
        if rule is None:
            raise UnknownEntityTypeError(entity_type, store_id)
        if not self.rules.is_enqueue_allowed(store_id, entity_type):
            logger.info(
                "Skipped enqueue of %s:%s for store %s (rule disabled or inbound only)",
                entity_type,
                entity_id,
                store_id,
            )
            return None

        entity_id = str(entity_id)
        operation = SyncOperation(operation)
        timestamp = as_utc(timestamp) or utcnow()
        data = json.dumps(payload, sort_keys=True, default=str) if payload is not None else None
        config = self.rules.ensure_configuration(store_id)

        with self.db.get_session() as session:
            existing = session.execute(
                select(SyncQueueItem).where(
                    SyncQueueItem.store_id == store_id,
                    SyncQueueItem.entity_type == entity_type,
                    SyncQueueItem.entity_id == entity_id,
                    SyncQueueItem.status == SyncQueueStatus.PENDING.value,
                    SyncQueueItem.is_active.is_(True),
                )
            ).scalar_one_or_none()

            if existing is not None:
                existing.operation = _coalesce_operation(existing.operation, operation.value)
                existing.payload = data
                existing.priority = max(existing.priority, int(priority))
                existing.entity_timestamp = max(existing.entity_timestamp, timestamp)
                item = existing
            else:
                item = SyncQueueItem(
                    store_id=store_id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    operation=operation.value,
                    priority=int(priority),
                    status=SyncQueueStatus.PENDING.value,
                    payload=data,
                    entity_timestamp=timestamp,
                    max_retries=config.retry_attempts,
                )
                session.add(item)

            session.commit()
            session.refresh(item)
            session.expunge(item)

        logger.debug(
            "Enqueued %s %s:%s for store %s (item %s)",
            operation.value,
            entity_type,
            entity_id,
            store_id,
            item.id,
        )
        return item

    # -------------------------------------------------------------------------
    # Assembly
    # -------------------------------------------------------------------------

    def claim(
        self,
        store_id: int,
        entity_type: str,
        limit: int,
        now: Optional[datetime] = None,
    ) -> list[SyncQueueItem]:
        """Claim up to limit eligible items, highest priority then FIFO.

        Each item moves pending -> in_progress through a conditional update,
        so two concurrent claimers never receive the same row.
        """
        now = as_utc(now) or utcnow()
        with self.db.get_session() as session:
            candidate_ids = session.execute(
                select(SyncQueueItem.id)
                .where(
                    SyncQueueItem.entity_type == entity_type,
                    *_eligible(store_id, now),
                )
                .order_by(*CLAIM_ORDER)
                .limit(limit)
            ).scalars().all()

            claimed_ids = []
            for item_id in candidate_ids:
                result = session.execute(
                    update(SyncQueueItem)
                    .where(
                        SyncQueueItem.id == item_id,
                        SyncQueueItem.status == SyncQueueStatus.PENDING.value,
                    )
                    .values(status=SyncQueueStatus.IN_PROGRESS.value, last_attempt_at=now)
                )
                if result.rowcount == 1:
                    claimed_ids.append(item_id)
            session.commit()

            if not claimed_ids:
                return []
            items = session.execute(
                select(SyncQueueItem).where(SyncQueueItem.id.in_(claimed_ids)).order_by(*CLAIM_ORDER)
            ).scalars().all()
            for i in items:
                session.expunge(i)
            return list(items)

    def next_entity_type(
        self,
        store_id: int,
        entity_types: Iterable[str],
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """Entity type of the most urgent eligible item among entity_types.

        A critical item of any type goes before normal and low items of every
        other type. Between types in the same priority tier, the earlier type
        in entity_types wins, then the oldest item.

        Args:
            store_id: Store whose queue is inspected
            entity_types: Candidate types, most important first
            now: Clock override for retry eligibility
        """
        rank = {entity_type: i for i, entity_type in enumerate(entity_types)}
        if not rank:
            return None
        now = as_utc(now) or utcnow()
        with self.db.get_session() as session:
            return session.execute(
                select(SyncQueueItem.entity_type)
                .where(SyncQueueItem.entity_type.in_(list(rank)), *_eligible(store_id, now))
                .order_by(
                    SyncQueueItem.priority.desc(),
                    case(rank, value=SyncQueueItem.entity_type),
                    SyncQueueItem.created_at,
                    SyncQueueItem.id,
                )
                .limit(1)
            ).scalar_one_or_none()

    def attach_batch(self, item_ids: Iterable[int], batch_id: int) -> None:
        """Point claimed items at the batch that now carries them."""
        item_ids = list(item_ids)
        if not item_ids:
            return
        with self.db.get_session() as session:
            session.execute(
                update(SyncQueueItem)
                .where(SyncQueueItem.id.in_(item_ids))
                .values(sync_batch_id=batch_id)
            )

    # -------------------------------------------------------------------------
    # Settlement
    # -------------------------------------------------------------------------

    def mark_completed(self, item_id: int) -> SyncQueueItem:
        """Batch applied and acknowledged by the remote side."""
        return self._transition(
            item_id,
            SyncQueueStatus.COMPLETED,
            allowed=(SyncQueueStatus.IN_PROGRESS, SyncQueueStatus.CONFLICT),
        )

    def mark_conflict(self, item_id: int) -> SyncQueueItem:
        """Remote side is holding the change for manual resolution."""
        return self._transition(
            item_id, SyncQueueStatus.CONFLICT, allowed=(SyncQueueStatus.IN_PROGRESS,)
        )

    def mark_failed(
        self,
        item_id: int,
        error: str,
        retryable: bool = True,
        now: Optional[datetime] = None,
    ) -> SyncQueueItem:
        """Record a failed attempt.

        Retryable failures consume retry budget through the retry scheduler;
        permanent failures are dead-lettered immediately.
        """
        if not retryable:
            return self.dead_letter(item_id, error)
        return self.retry_scheduler.record_failure(item_id, error, now=now)

    def dead_letter(self, item_id: int, error: str) -> SyncQueueItem:
        """Move an item to terminal failed without consuming retry budget."""
        with self.db.get_session() as session:
            item = self._load(session, item_id)
            if item.status not in (
                SyncQueueStatus.PENDING.value,
                SyncQueueStatus.IN_PROGRESS.value,
            ):
                raise InvalidTransitionError(
                    f"Queue item {item_id} is {item.status} and cannot be dead-lettered"
                )
            item.status = SyncQueueStatus.FAILED.value
            item.last_error = error[:1000]
            item.next_retry_at = None
            session.commit()
            session.refresh(item)
            session.expunge(item)

        logger.error(
            "Queue item %s (%s:%s) dead-lettered: %s",
            item_id,
            item.entity_type,
            item.entity_id,
            error,
        )
        self.log_manager.log(
            "dead_letter",
            success=False,
            store_id=item.store_id,
            entity_type=item.entity_type,
            batch_id=item.sync_batch_id,
            error=error,
            details={"queue_item_id": item_id, "permanent": True},
        )
        return item

    def release(self, item_ids: Iterable[int]) -> int:
        """Return in-progress items to pending without consuming retries.

        Returns:
            Number of items released
        """
        item_ids = list(item_ids)
        if not item_ids:
            return 0
        with self.db.get_session() as session:
            result = session.execute(
                update(SyncQueueItem)
                .where(
                    SyncQueueItem.id.in_(item_ids),
                    SyncQueueItem.status == SyncQueueStatus.IN_PROGRESS.value,
                )
                .values(status=SyncQueueStatus.PENDING.value)
            )
            return result.rowcount

    def cancel(self, item_id: int) -> SyncQueueItem:
        """Operator cancellation. Terminal, never retried."""
        item = self._transition(
            item_id,
            SyncQueueStatus.CANCELLED,
            allowed=(
                SyncQueueStatus.PENDING,
                SyncQueueStatus.IN_PROGRESS,
                SyncQueueStatus.CONFLICT,
            ),
        )
        logger.info("Queue item %s cancelled", item_id)
        self.log_manager.log(
            "cancel",
            store_id=item.store_id,
            entity_type=item.entity_type,
            details={"queue_item_id": item_id},
        )
        return item

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_item(self, item_id: int) -> Optional[SyncQueueItem]:
        """Get a queue item by id."""
        with self.db.get_session() as session:
            item = session.get(SyncQueueItem, item_id)
            if item:
                session.expunge(item)
            return item

    def pending_items(
        self,
        store_id: Optional[int] = None,
        entity_type: Optional[str] = None,
        limit: int = 100,
    ) -> list[SyncQueueItem]:
        """Pending items in claim order."""
        return self._list(SyncQueueStatus.PENDING, store_id, entity_type, limit)

    def failed_items(
        self,
        store_id: Optional[int] = None,
        limit: int = 100,
    ) -> list[SyncQueueItem]:
        """Dead-lettered items awaiting operator action."""
        return self._list(SyncQueueStatus.FAILED, store_id, None, limit)

    def summary(self, store_id: Optional[int] = None) -> QueueSummary:
        """Queue counts by status, priority and entity type."""
        with self.db.get_session() as session:
            scope = [SyncQueueItem.is_active.is_(True)]
            if store_id is not None:
                scope.append(SyncQueueItem.store_id == store_id)
            pending = scope + [SyncQueueItem.status == SyncQueueStatus.PENDING.value]

            by_status = dict(
                session.execute(
                    select(SyncQueueItem.status, func.count(SyncQueueItem.id))
                    .where(*scope)
                    .group_by(SyncQueueItem.status)
                ).all()
            )
            by_priority = dict(
                session.execute(
                    select(SyncQueueItem.priority, func.count(SyncQueueItem.id))
                    .where(*pending)
                    .group_by(SyncQueueItem.priority)
                ).all()
            )
            by_type = dict(
                session.execute(
                    select(SyncQueueItem.entity_type, func.count(SyncQueueItem.id))
                    .where(*pending)
                    .group_by(SyncQueueItem.entity_type)
                ).all()
            )
            oldest_pending = session.execute(
                select(func.min(SyncQueueItem.created_at)).where(*pending)
            ).scalar_one()
            last_completed = session.execute(
                select(func.max(SyncQueueItem.updated_at)).where(
                    *scope, SyncQueueItem.status == SyncQueueStatus.COMPLETED.value
                )
            ).scalar_one()

        return QueueSummary(
            store_id=store_id,
            total=sum(by_status.values()),
            by_status=by_status,
            pending_by_priority=by_priority,
            pending_by_entity_type=by_type,
            critical_pending=sum(
                count for priority, count in by_priority.items()
                if priority >= SyncPriority.CRITICAL.value
            ),
            oldest_pending_at=oldest_pending,
            last_completed_at=last_completed,
        )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def reset_stuck_items(
        self, timeout_minutes: int = 30, now: Optional[datetime] = None
    ) -> int:
        """Release in-progress items whose claim is older than the timeout.

        Covers claims orphaned by a crash between assembly and settlement.
        """
        now = as_utc(now) or utcnow()
        cutoff = now - timedelta(minutes=timeout_minutes)
        with self.db.get_session() as session:
            result = session.execute(
                update(SyncQueueItem)
                .where(
                    SyncQueueItem.status == SyncQueueStatus.IN_PROGRESS.value,
                    or_(
                        SyncQueueItem.last_attempt_at.is_(None),
                        SyncQueueItem.last_attempt_at < cutoff,
                    ),
                )
                .values(status=SyncQueueStatus.PENDING.value)
            )
            count = result.rowcount

        if count:
            logger.warning("Reset %s stuck queue items", count)
        return count

    def cleanup_completed(self, days_old: int = 7, now: Optional[datetime] = None) -> int:
        """Delete completed items older than days_old. Returns the count."""
        now = as_utc(now) or utcnow()
        cutoff = now - timedelta(days=days_old)
        with self.db.get_session() as session:
            result = session.execute(
                delete(SyncQueueItem).where(
                    SyncQueueItem.status == SyncQueueStatus.COMPLETED.value,
                    SyncQueueItem.updated_at < cutoff,
                )
            )
            count = result.rowcount

        logger.info("Removed %s completed queue items older than %s days", count, days_old)
        return count

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _load(self, session, item_id: int) -> SyncQueueItem:
        item = session.get(SyncQueueItem, item_id)
        if item is None:
            raise NotFoundError(f"Queue item {item_id} not found")
        return item

    def _transition(
        self,
        item_id: int,
        target: SyncQueueStatus,
        allowed: tuple[SyncQueueStatus, ...],
    ) -> SyncQueueItem:
        with self.db.get_session() as session:
            item = self._load(session, item_id)
            if item.status == target.value:
                session.expunge(item)
                return item
            if item.status not in {s.value for s in allowed}:
                raise InvalidTransitionError(
                    f"Queue item {item_id} cannot move from {item.status} to {target.value}"
                )
            item.status = target.value
            item.next_retry_at = None
            session.commit()
            session.refresh(item)
            session.expunge(item)
            return item

    def _list(
        self,
        status: SyncQueueStatus,
        store_id: Optional[int],
        entity_type: Optional[str],
        limit: int,
    ) -> list[SyncQueueItem]:
        with self.db.get_session() as session:
            stmt = (
                select(SyncQueueItem)
                .where(
                    SyncQueueItem.status == status.value,
                    SyncQueueItem.is_active.is_(True),
                )
                .order_by(*CLAIM_ORDER)
                .limit(limit)
            )
            if store_id is not None:
                stmt = stmt.where(SyncQueueItem.store_id == store_id)
            if entity_type is not None:
                stmt = stmt.where(SyncQueueItem.entity_type == entity_type)
            items = session.execute(stmt).scalars().all()
            for i in items:
                session.expunge(i)
            return list(items)
