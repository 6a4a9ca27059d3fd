"""Retry scheduler: exponential backoff and dead-lettering for queue items."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select

from ..db.models import SyncConfiguration
from ..db.schemas import SyncQueueStatus
from ..db.sqlite import Database, get_db
from ..errors import InvalidTransitionError, NotFoundError
from ..logs.manager import SyncLogManager
from ..queue.models import SyncQueueItem
from ..timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters.

    delay = base_delay_seconds * 2 ** (retry_count - 1), capped at
    max_delay_seconds.
    """

    base_delay_seconds: int = 60
    max_delay_seconds: int = 3600
    max_retries: int = 3

    def delay_for(self, retry_count: int) -> timedelta:
        """Delay before the next attempt after retry_count failures."""
        if retry_count < 1:
            return timedelta(0)
        seconds = self.base_delay_seconds * (2 ** (retry_count - 1))
        return timedelta(seconds=min(seconds, self.max_delay_seconds))


class RetryScheduler:
    """Owns retry state transitions of queue items."""

    def __init__(
        self,
        db: Optional[Database] = None,
        policy: Optional[RetryPolicy] = None,
        log_manager: Optional[SyncLogManager] = None,
    ):
        """Initialize retry scheduler.

        Args:
            db: Database instance
            policy: Fallback policy for stores without a configuration
            log_manager: Sync log writer for exhaustion events
        """
        self.db = db or get_db()
        self.policy = policy or RetryPolicy()
        self.log_manager = log_manager or SyncLogManager(self.db)

    def policy_for_store(self, config: Optional[SyncConfiguration]) -> RetryPolicy:
        """Backoff policy built from a store configuration."""
        if config is None:
            return self.policy
        return RetryPolicy(
            base_delay_seconds=config.retry_delay_seconds,
            max_delay_seconds=max(self.policy.max_delay_seconds, config.retry_delay_seconds),
            max_retries=config.retry_attempts,
        )

    def record_failure(
        self,
        item_id: int,
        error: str,
        now: Optional[datetime] = None,
    ) -> SyncQueueItem:
        """Count a failed attempt.

        The item goes back to pending with next_retry_at set, or to terminal
        failed once retry_count reaches max_retries.

        Raises:
            NotFoundError: If the item does not exist
        """
        now = as_utc(now) or utcnow()
        with self.db.get_session() as session:
            item = session.get(SyncQueueItem, item_id)
            if item is None:
                raise NotFoundError(f"Queue item {item_id} not found")
            if item.status not in (
                SyncQueueStatus.PENDING.value,
                SyncQueueStatus.IN_PROGRESS.value,
            ):
                raise InvalidTransitionError(
                    f"Queue item {item_id} is {item.status} and cannot fail again"
                )

            config = session.execute(
                select(SyncConfiguration).where(SyncConfiguration.store_id == item.store_id)
            ).scalar_one_or_none()
            policy = self.policy_for_store(config)

            item.retry_count = min(item.retry_count + 1, item.max_retries)
            item.last_error = error[:1000]
            item.last_attempt_at = now

            if item.retry_count < item.max_retries:
                item.status = SyncQueueStatus.PENDING.value
                item.next_retry_at = now + policy.delay_for(item.retry_count)
                exhausted = False
            else:
                item.status = SyncQueueStatus.FAILED.value
                item.next_retry_at = None
                exhausted = True

            session.commit()
            session.refresh(item)
            session.expunge(item)

        if exhausted:
            logger.error(
                "Queue item %s (%s:%s) exhausted %s retries: %s",
                item.id,
                item.entity_type,
                item.entity_id,
                item.max_retries,
                error,
            )
            self.log_manager.log(
                "dead_letter",
                success=False,
                store_id=item.store_id,
                entity_type=item.entity_type,
                error=error,
                details={"queue_item_id": item.id, "retry_count": item.retry_count},
            )
        else:
            logger.warning(
                "Queue item %s failed (attempt %s/%s), next retry at %s",
                item.id,
                item.retry_count,
                item.max_retries,
                item.next_retry_at,
            )
        return item

    @staticmethod
    def is_eligible(item: SyncQueueItem, now: Optional[datetime] = None) -> bool:
        """True if the item may be claimed for assembly now."""
        now = as_utc(now) or utcnow()
        if item.status != SyncQueueStatus.PENDING.value or not item.is_active:
            return False
        return item.next_retry_at is None or item.next_retry_at <= now

    def due_items(
        self, store_id: Optional[int] = None, now: Optional[datetime] = None
    ) -> list[SyncQueueItem]:
        """Pending retries whose backoff has elapsed, oldest due first."""
        now = as_utc(now) or utcnow()
        with self.db.get_session() as session:
            stmt = (
                select(SyncQueueItem)
                .where(
                    SyncQueueItem.status == SyncQueueStatus.PENDING.value,
                    SyncQueueItem.is_active.is_(True),
                    SyncQueueItem.retry_count > 0,
                    or_(
                        SyncQueueItem.next_retry_at.is_(None),
                        SyncQueueItem.next_retry_at <= now,
                    ),
                )
                .order_by(SyncQueueItem.next_retry_at, SyncQueueItem.id)
            )
            if store_id is not None:
                stmt = stmt.where(SyncQueueItem.store_id == store_id)
            items = session.execute(stmt).scalars().all()
            for i in items:
                session.expunge(i)
            return list(items)

    def requeue(self, item_id: int) -> SyncQueueItem:
        """Operator replay of a dead-lettered item with a fresh retry budget.

        Raises:
            NotFoundError: If the item does not exist
            InvalidTransitionError: If the item is not in failed status
        """
        with self.db.get_session() as session:
            item = session.get(SyncQueueItem, item_id)
            if item is None:
                raise NotFoundError(f"Queue item {item_id} not found")
            if item.status != SyncQueueStatus.FAILED.value:
                raise InvalidTransitionError(
                    f"Queue item {item_id} is {item.status}, only failed items can be retried"
                )
            item.status = SyncQueueStatus.PENDING.value
            item.retry_count = 0
            item.next_retry_at = None
            session.commit()
            session.refresh(item)
            session.expunge(item)

        logger.info("Queue item %s requeued by operator", item_id)
        self.log_manager.log(
            "requeue",
            store_id=item.store_id,
            entity_type=item.entity_type,
            details={"queue_item_id": item_id},
        )
        return item
