"""Tests for the change queue."""

from datetime import timedelta

import pytest

from storesync.db.schemas import SyncOperation, SyncPriority, SyncQueueStatus
from storesync.errors import InvalidTransitionError, NotFoundError, UnknownEntityTypeError
from storesync.queue.manager import ChangeQueue
from storesync.timeutils import utcnow

STORE_ID = 1


class TestEnqueue:
    """Tests for enqueueing local mutations."""

    def test_enqueue_creates_pending_item(self, queue: ChangeQueue):
        """A new change becomes a pending item."""
        item = queue.enqueue(STORE_ID, "product", 42, SyncOperation.UPDATE, {"name": "Cola"})

        assert item.id is not None
        assert item.status == SyncQueueStatus.PENDING.value
        assert item.entity_id == "42"
        assert item.payload_dict == {"name": "Cola"}
        assert item.max_retries == 3

    def test_unknown_entity_type(self, queue: ChangeQueue):
        """Types without a rule are rejected."""
        with pytest.raises(UnknownEntityTypeError):
            queue.enqueue(STORE_ID, "spaceship", 1, SyncOperation.CREATE, {})

    def test_inbound_only_type_is_not_queued(self, queue: ChangeQueue):
        """A store does not queue download-only types."""
        assert queue.enqueue(STORE_ID, "category", 1, SyncOperation.UPDATE, {}) is None

    def test_disabled_rule_is_not_queued(self, queue: ChangeQueue, rules):
        """Disabled rules drop new changes."""
        rules.set_rule_enabled(STORE_ID, "product", False)
        assert queue.enqueue(STORE_ID, "product", 1, SyncOperation.UPDATE, {}) is None


class TestCoalescing:
    """Tests for merging changes to the same entity."""

    def test_updates_coalesce(self, queue: ChangeQueue, t):
        """Two updates leave one item with the newest payload."""
        first = queue.enqueue(STORE_ID, "product", 5, SyncOperation.UPDATE, {"price": 1}, timestamp=t(1))
        second = queue.enqueue(STORE_ID, "product", 5, SyncOperation.UPDATE, {"price": 2}, timestamp=t(2))

        assert first.id == second.id
        assert second.payload_dict == {"price": 2}
        assert second.entity_timestamp == t(2)
        assert len(queue.pending_items(STORE_ID)) == 1

    def test_create_then_update_stays_create(self, queue: ChangeQueue):
        queue.enqueue(STORE_ID, "product", 5, SyncOperation.CREATE, {"price": 1})
        item = queue.enqueue(STORE_ID, "product", 5, SyncOperation.UPDATE, {"price": 2})
        assert item.operation == SyncOperation.CREATE.value

    def test_update_then_delete(self, queue: ChangeQueue):
        queue.enqueue(STORE_ID, "product", 5, SyncOperation.UPDATE, {"price": 1})
        item = queue.enqueue(STORE_ID, "product", 5, SyncOperation.DELETE)
        assert item.operation == SyncOperation.DELETE.value
        assert item.payload_dict is None

    def test_delete_then_create(self, queue: ChangeQueue, t):
        """A re-create after an unsent delete is sent as the create."""
        queue.enqueue(STORE_ID, "product", 5, SyncOperation.DELETE, timestamp=t(1))
        item = queue.enqueue(
            STORE_ID, "product", 5, SyncOperation.CREATE, {"name": "New"}, timestamp=t(2)
        )
        assert item.operation == SyncOperation.CREATE.value
        assert item.payload_dict == {"name": "New"}
        assert item.entity_timestamp == t(2)

    def test_delete_then_update(self, queue: ChangeQueue):
        queue.enqueue(STORE_ID, "product", 5, SyncOperation.DELETE)
        item = queue.enqueue(STORE_ID, "product", 5, SyncOperation.UPDATE, {"price": 3})
        assert item.operation == SyncOperation.UPDATE.value

    def test_higher_priority_kept(self, queue: ChangeQueue):
        queue.enqueue(STORE_ID, "product", 5, SyncOperation.UPDATE, {}, SyncPriority.HIGH)
        item = queue.enqueue(STORE_ID, "product", 5, SyncOperation.UPDATE, {}, SyncPriority.LOW)
        assert item.priority == SyncPriority.HIGH

    def test_claimed_item_is_not_coalesced(self, queue: ChangeQueue):
        """A change made after a claim gets its own item."""
        first = queue.enqueue(STORE_ID, "product", 5, SyncOperation.UPDATE, {"price": 1})
        queue.claim(STORE_ID, "product", 10)
        second = queue.enqueue(STORE_ID, "product", 5, SyncOperation.UPDATE, {"price": 2})
        assert second.id != first.id


class TestClaim:
    """Tests for claim ordering and exclusivity."""

    def test_priority_then_fifo(self, queue: ChangeQueue):
        """Critical items come first; FIFO holds within a tier."""
        order = [
            (1, SyncPriority.NORMAL),
            (2, SyncPriority.LOW),
            (3, SyncPriority.CRITICAL),
            (4, SyncPriority.HIGH),
            (5, SyncPriority.NORMAL),
            (6, SyncPriority.CRITICAL),
        ]
        for entity_id, priority in order:
            queue.enqueue(STORE_ID, "product", entity_id, SyncOperation.UPDATE, {}, priority)

        claimed = queue.claim(STORE_ID, "product", 10)
        assert [i.entity_id for i in claimed] == ["3", "6", "4", "1", "5", "2"]
        assert all(i.status == SyncQueueStatus.IN_PROGRESS.value for i in claimed)

    def test_claim_respects_limit(self, queue: ChangeQueue):
        for entity_id in range(5):
            queue.enqueue(STORE_ID, "product", entity_id, SyncOperation.UPDATE, {})
        assert len(queue.claim(STORE_ID, "product", 3)) == 3
        assert len(queue.claim(STORE_ID, "product", 3)) == 2

    def test_item_claimed_once(self, queue: ChangeQueue):
        """A second claimer never receives an already claimed item."""
        queue.enqueue(STORE_ID, "product", 1, SyncOperation.UPDATE, {})
        assert len(queue.claim(STORE_ID, "product", 10)) == 1
        assert queue.claim(STORE_ID, "product", 10) == []

    def test_backoff_hides_item(self, queue: ChangeQueue):
        """Items waiting for a retry are not claimable until due."""
        item = queue.enqueue(STORE_ID, "product", 1, SyncOperation.UPDATE, {})
        queue.claim(STORE_ID, "product", 10)
        failed = queue.mark_failed(item.id, "timeout")

        assert queue.claim(STORE_ID, "product", 10, now=utcnow()) == []
        later = failed.next_retry_at + timedelta(seconds=1)
        assert [i.id for i in queue.claim(STORE_ID, "product", 10, now=later)] == [item.id]


class TestSettlement:
    """Tests for queue item transitions."""

    def test_mark_completed(self, queue: ChangeQueue):
        item = queue.enqueue(STORE_ID, "product", 1, SyncOperation.UPDATE, {})
        queue.claim(STORE_ID, "product", 10)
        assert queue.mark_completed(item.id).status == SyncQueueStatus.COMPLETED.value

    def test_pending_item_cannot_complete(self, queue: ChangeQueue):
        item = queue.enqueue(STORE_ID, "product", 1, SyncOperation.UPDATE, {})
        with pytest.raises(InvalidTransitionError):
            queue.mark_completed(item.id)

    def test_conflict_then_completed(self, queue: ChangeQueue):
        """An item held for a remote conflict completes when it is resolved."""
        item = queue.enqueue(STORE_ID, "product", 1, SyncOperation.UPDATE, {})
        queue.claim(STORE_ID, "product", 10)
        assert queue.mark_conflict(item.id).status == SyncQueueStatus.CONFLICT.value
        assert queue.mark_completed(item.id).status == SyncQueueStatus.COMPLETED.value

    def test_permanent_failure_dead_letters(self, queue: ChangeQueue):
        """Non-retryable failures skip the retry budget."""
        item = queue.enqueue(STORE_ID, "product", 1, SyncOperation.UPDATE, {})
        queue.claim(STORE_ID, "product", 10)
        failed = queue.mark_failed(item.id, "bad payload", retryable=False)

        assert failed.status == SyncQueueStatus.FAILED.value
        assert failed.retry_count == 0
        assert [i.id for i in queue.failed_items(STORE_ID)] == [item.id]

    def test_release_returns_to_pending(self, queue: ChangeQueue):
        item = queue.enqueue(STORE_ID, "product", 1, SyncOperation.UPDATE, {})
        queue.claim(STORE_ID, "product", 10)
        assert queue.release([item.id]) == 1
        assert queue.get_item(item.id).status == SyncQueueStatus.PENDING.value

    def test_cancel(self, queue: ChangeQueue):
        item = queue.enqueue(STORE_ID, "product", 1, SyncOperation.UPDATE, {})
        assert queue.cancel(item.id).status == SyncQueueStatus.CANCELLED.value
        assert queue.claim(STORE_ID, "product", 10) == []

    def test_cancel_completed_rejected(self, queue: ChangeQueue):
        item = queue.enqueue(STORE_ID, "product", 1, SyncOperation.UPDATE, {})
        queue.claim(STORE_ID, "product", 10)
        queue.mark_completed(item.id)
        with pytest.raises(InvalidTransitionError):
            queue.cancel(item.id)

    def test_unknown_item(self, queue: ChangeQueue):
        with pytest.raises(NotFoundError):
            queue.mark_completed(12345)


class TestSummaryAndMaintenance:
    """Tests for queue counts and housekeeping."""

    def test_summary(self, queue: ChangeQueue):
        queue.enqueue(STORE_ID, "product", 1, SyncOperation.UPDATE, {}, SyncPriority.CRITICAL)
        queue.enqueue(STORE_ID, "product", 2, SyncOperation.UPDATE, {})
        queue.enqueue(STORE_ID, "receipt", 3, SyncOperation.CREATE, {})

        summary = queue.summary(STORE_ID)
        assert summary.total == 3
        assert summary.pending == 3
        assert summary.critical_pending == 1
        assert summary.pending_by_entity_type == {"product": 2, "receipt": 1}
        assert not summary.is_empty

    def test_reset_stuck_items(self, queue: ChangeQueue):
        """Claims older than the timeout go back to pending."""
        item = queue.enqueue(STORE_ID, "product", 1, SyncOperation.UPDATE, {})
        queue.claim(STORE_ID, "product", 10)

        assert queue.reset_stuck_items(timeout_minutes=30) == 0
        later = utcnow() + timedelta(minutes=31)
        assert queue.reset_stuck_items(timeout_minutes=30, now=later) == 1
        assert queue.get_item(item.id).status == SyncQueueStatus.PENDING.value

    def test_cleanup_completed(self, queue: ChangeQueue):
        item = queue.enqueue(STORE_ID, "product", 1, SyncOperation.UPDATE, {})
        queue.claim(STORE_ID, "product", 10)
        queue.mark_completed(item.id)

        assert queue.cleanup_completed(days_old=7) == 0
        assert queue.cleanup_completed(days_old=7, now=utcnow() + timedelta(days=8)) == 1
        assert queue.get_item(item.id) is None
