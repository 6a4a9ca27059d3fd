"""Tests for batch listing and cleanup."""

from datetime import timedelta

import pytest

from storesync.batches import BatchHistory
from storesync.batches.assembler import BatchAssembler
from storesync.batches.ledger import cancel_batch_row
from storesync.batches.models import SyncBatch
from storesync.conflicts.manager import ConflictManager
from storesync.db.schemas import ConflictWinner, SyncBatchStatus, SyncOperation
from storesync.repository import VersionedValue

STORE_ID = 1


@pytest.fixture
def history(db) -> BatchHistory:
    return BatchHistory(db)


@pytest.fixture
def two_batches(db, rules, queue, t):
    """A receipt batch then a product batch, both pending."""
    queue.enqueue(STORE_ID, "receipt", "r1", SyncOperation.CREATE, {"total": 5}, timestamp=t(1))
    queue.enqueue(STORE_ID, "product", "42", SyncOperation.UPDATE, {"name": "Cola"}, timestamp=t(1))
    assembler = BatchAssembler(db, rules, queue)
    return assembler.assemble(STORE_ID, "receipt"), assembler.assemble(STORE_ID, "product")


def finish(db, batch_id, when):
    with db.get_session() as session:
        cancel_batch_row(session.get(SyncBatch, batch_id), "done", now=when)


class TestListing:
    """Tests for batch queries."""

    def test_newest_first(self, history, two_batches):
        receipts, products = two_batches
        assert [b.id for b in history.list_batches(STORE_ID)] == [products.id, receipts.id]

    def test_status_filters(self, db, history, two_batches, t):
        receipts, products = two_batches
        finish(db, receipts.id, t(5))

        assert [b.id for b in history.pending_batches(STORE_ID)] == [products.id]
        assert [b.id for b in history.list_batches(status=SyncBatchStatus.CANCELLED)] == [receipts.id]
        assert history.active_batches() == []
        assert history.failed_batches() == []
        assert history.list_batches(store_id=2) == []

    def test_records(self, history, two_batches):
        receipts, _ = two_batches
        assert [r.entity_id for r in history.records(receipts.id)] == ["r1"]

    def test_unknown_batch(self, history):
        assert history.get_batch(999) is None


class TestCleanup:
    """Tests for cleanup_old_batches."""

    def test_old_finished_batches_removed(self, db, history, two_batches, t):
        receipts, products = two_batches
        finish(db, receipts.id, t(0))

        removed = history.cleanup_old_batches(30, now=t(0) + timedelta(days=31))

        assert removed == 1
        assert history.get_batch(receipts.id) is None
        assert history.records(receipts.id) == []
        assert history.get_batch(products.id) is not None

    def test_recent_batches_kept(self, db, history, two_batches, t):
        receipts, _ = two_batches
        finish(db, receipts.id, t(0))
        assert history.cleanup_old_batches(30, now=t(0) + timedelta(days=1)) == 0

    def test_batch_with_open_conflict_kept(self, db, history, two_batches, t):
        receipts, _ = two_batches
        finish(db, receipts.id, t(0))
        ConflictManager(db).record(
            store_id=STORE_ID,
            batch_id=receipts.id,
            record_id=history.records(receipts.id)[0].id,
            entity_type="receipt",
            entity_id="r1",
            local=VersionedValue({"total": 4}, t(0)),
            remote=VersionedValue({"total": 5}, t(1)),
            policy=ConflictWinner.MANUAL,
        )

        assert history.cleanup_old_batches(30, now=t(0) + timedelta(days=31)) == 0
