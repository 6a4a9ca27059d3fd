"""Tests for applying incoming batches."""

import uuid

import pytest

from storesync.batches.envelope import BatchEnvelope, RecordEnvelope
from storesync.batches.processor import BatchProcessor
from storesync.concurrency import CancellationToken
from storesync.db.schemas import (
    NodeRole,
    RecordOutcome,
    SyncBatchStatus,
    SyncDirection,
    SyncOperation,
)
from storesync.errors import TransientSyncError
from storesync.repository import InMemoryRepository, VersionedValue

STORE_ID = 1


class FlakyRepository(InMemoryRepository):
    """Fails writes for chosen entity ids."""

    def __init__(self, entity_type, failures):
        super().__init__(entity_type)
        self.failures = failures

    def put(self, entity_id, payload, timestamp):
        if entity_id in self.failures:
            raise self.failures[entity_id]
        super().put(entity_id, payload, timestamp)


class CancellingRepository(InMemoryRepository):
    """Cancels a token after its first write."""

    def __init__(self, entity_type, token):
        super().__init__(entity_type)
        self.token = token

    def put(self, entity_id, payload, timestamp):
        super().put(entity_id, payload, timestamp)
        self.token.cancel()


def make_batch(entity_type, records, direction=SyncDirection.UPLOAD):
    """records: (entity_id, timestamp, payload) tuples; payload None means delete."""
    return BatchEnvelope(
        batch_uid=str(uuid.uuid4()),
        store_id=STORE_ID,
        direction=direction,
        entity_type=entity_type,
        created_at=records[0][1] if records else None,
        records=[
            RecordEnvelope(
                record_uid=str(uuid.uuid4()),
                entity_type=entity_type,
                entity_id=entity_id,
                operation=SyncOperation.DELETE if payload is None else SyncOperation.UPDATE,
                timestamp=timestamp,
                payload=payload,
            )
            for entity_id, timestamp, payload in records
        ],
    )


@pytest.fixture
def hq_processor(db, hq_rules, repositories):
    """Processor on HQ receiving uploads from store 1."""
    echoes = []
    processor = BatchProcessor(
        db,
        hq_rules,
        repositories,
        node_role=NodeRole.HQ,
        echo=lambda *args: echoes.append(args),
    )
    processor.echoes = echoes
    return processor


@pytest.fixture
def store_processor(db, rules, repositories):
    """Processor on store 1 receiving downloads from HQ."""
    return BatchProcessor(db, rules, repositories, node_role=NodeRole.STORE)


class TestApply:
    """Tests for the normal apply path."""

    def test_new_entities_applied(self, hq_processor, repositories, hq_rules, t):
        batch = make_batch("product", [("42", t(1), {"name": "Cola"}), ("7", t(2), {"name": "Tea"})])
        result = hq_processor.apply(batch)

        assert result.status == SyncBatchStatus.COMPLETED
        assert result.success == 2
        assert [o.entity_id for o in result.outcomes] == ["42", "7"]
        assert repositories["product"].get("42").payload == {"name": "Cola"}
        assert hq_processor.points.get(STORE_ID, "product", "7") == t(2)
        assert hq_rules.get_cursor(STORE_ID, "product") == t(2)

    def test_delete_writes_tombstone(self, hq_processor, repositories, t):
        repositories["product"].put("5", {"name": "Old"}, t(0))
        hq_processor.points.advance(STORE_ID, "product", "5", t(0))

        hq_processor.apply(make_batch("product", [("5", t(1), None)]))
        assert repositories["product"].get("5").deleted is True
        assert repositories["product"].ids() == []

    def test_empty_batch_completes(self, hq_processor, t):
        batch = BatchEnvelope(
            batch_uid="empty",
            store_id=STORE_ID,
            direction=SyncDirection.UPLOAD,
            entity_type="product",
            created_at=t(0),
        )
        assert hq_processor.apply(batch).status == SyncBatchStatus.COMPLETED

    def test_replay_is_idempotent(self, hq_processor, repositories, t):
        """A batch applied twice writes once and returns the same outcomes."""
        batch = make_batch("product", [("1", t(1), {"v": 1}), ("2", t(1), {"v": 2})])
        first = hq_processor.apply(batch)
        writes = repositories["product"].writes

        second = hq_processor.apply(batch.to_json())
        assert repositories["product"].writes == writes
        assert second.batch_id == first.batch_id
        assert second.outcomes == first.outcomes

    def test_local_only_keeps_local(self, hq_processor, repositories, t):
        """A remote copy of the agreed version does not overwrite a newer local edit."""
        repositories["inventory"].put("sku1", {"qty": 9}, t(5))
        hq_processor.points.advance(STORE_ID, "inventory", "sku1", t(3))

        result = hq_processor.apply(make_batch("inventory", [("sku1", t(3), {"qty": 4})]))
        assert result.outcomes[0].outcome == RecordOutcome.SUCCESS
        assert repositories["inventory"].get("sku1").payload == {"qty": 9}

    def test_stale_remote_skipped(self, hq_processor, repositories, t):
        repositories["inventory"].put("sku1", {"qty": 9}, t(5))
        hq_processor.points.advance(STORE_ID, "inventory", "sku1", t(5))

        result = hq_processor.apply(make_batch("inventory", [("sku1", t(2), {"qty": 1})]))
        assert result.success == 1
        assert repositories["inventory"].get("sku1").payload == {"qty": 9}

    def test_identical_change_advances_point(self, hq_processor, repositories, t):
        repositories["inventory"].put("sku1", {"qty": 3}, t(4))
        hq_processor.apply(make_batch("inventory", [("sku1", t(5), {"qty": 3})]))

        assert hq_processor.conflicts.list_conflicts(STORE_ID, include_resolved=True) == []
        assert hq_processor.points.get(STORE_ID, "inventory", "sku1") == t(5)


class TestConflicts:
    """Tests for conflicts met while applying."""

    def test_store_wins_on_hq(self, hq_processor, repositories, t):
        """Receipts follow the store: HQ adopts the incoming value."""
        repositories["receipt"].put("r1", {"total": 10}, t(2))
        hq_processor.points.advance(STORE_ID, "receipt", "r1", t(1))

        result = hq_processor.apply(make_batch("receipt", [("r1", t(3), {"total": 12})]))
        assert result.success == 1
        assert repositories["receipt"].get("r1").payload == {"total": 12}
        conflict = hq_processor.conflicts.list_conflicts(STORE_ID, include_resolved=True)[0]
        assert conflict.resolution == "store"
        assert hq_processor.echoes == []

    def test_hq_keeps_product_and_echoes(self, hq_processor, repositories, t):
        """HQ keeps its product and sends it back stamped with the agreed time."""
        repositories["product"].put("p1", {"price": 5}, t(2))
        hq_processor.points.advance(STORE_ID, "product", "p1", t(1))

        result = hq_processor.apply(make_batch("product", [("p1", t(3), {"price": 6})]))
        assert result.success == 1
        assert repositories["product"].get("p1").payload == {"price": 5}
        assert hq_processor.echoes == [
            (STORE_ID, "product", "p1", VersionedValue({"price": 5}, t(3)))
        ]
        assert hq_processor.points.get(STORE_ID, "product", "p1") == t(3)

    def test_store_adopts_hq_product(self, store_processor, repositories, t):
        repositories["product"].put("p1", {"price": 6}, t(3))
        store_processor.points.advance(STORE_ID, "product", "p1", t(1))

        batch = make_batch("product", [("p1", t(2), {"price": 5})], SyncDirection.DOWNLOAD)
        result = store_processor.apply(batch)
        assert result.success == 1
        assert repositories["product"].get("p1").payload == {"price": 5}

    def test_latest_timestamp_tie_goes_to_hq(self, store_processor, repositories, t):
        repositories["inventory"].put("sku", {"qty": 1}, t(2))
        store_processor.points.advance(STORE_ID, "inventory", "sku", t(1))

        batch = make_batch("inventory", [("sku", t(2), {"qty": 7})], SyncDirection.DOWNLOAD)
        store_processor.apply(batch)
        assert repositories["inventory"].get("sku").payload == {"qty": 7}

    def test_mixed_batch_accounting(self, db, hq_rules, repositories, t):
        """Success, manual conflict and failure are counted separately."""
        repositories.register(
            "loyalty_member",
            FlakyRepository("loyalty_member", {"m3": ValueError("bad member data")}),
        )
        processor = BatchProcessor(db, hq_rules, repositories, node_role=NodeRole.HQ)
        repositories["loyalty_member"].put("m2", {"points": 10}, t(2))
        processor.points.advance(STORE_ID, "loyalty_member", "m2", t(1))

        batch = make_batch(
            "loyalty_member",
            [
                ("m1", t(3), {"points": 1}),
                ("m2", t(3), {"points": 20}),
                ("m3", t(3), {"points": 3}),
            ],
        )
        result = processor.apply(batch)

        assert result.status == SyncBatchStatus.PARTIALLY_COMPLETED
        assert (result.success, result.conflicts, result.failed) == (1, 1, 1)
        outcomes = {o.entity_id: o for o in result.outcomes}
        assert outcomes["m2"].outcome == RecordOutcome.CONFLICT
        assert outcomes["m3"].outcome == RecordOutcome.FAILED
        assert outcomes["m3"].retryable is False
        assert "bad member data" in outcomes["m3"].error
        assert repositories["loyalty_member"].get("m2").payload == {"points": 10}

        conflict = processor.conflicts.list_conflicts(STORE_ID)[0]
        assert conflict.entity_id == "m2"
        assert conflict.flagged_for_review is True
        assert conflict.is_resolved is False

    def test_replay_does_not_duplicate_conflict(self, hq_processor, repositories, t):
        repositories["loyalty_member"].put("m2", {"points": 10}, t(2))
        hq_processor.points.advance(STORE_ID, "loyalty_member", "m2", t(1))
        batch = make_batch("loyalty_member", [("m2", t(3), {"points": 20})])

        hq_processor.apply(batch)
        hq_processor.apply(batch)
        assert len(hq_processor.conflicts.list_conflicts(STORE_ID)) == 1

    def test_apply_resolution(self, hq_processor, repositories, t):
        """The chosen value is written newer than both versions."""
        repositories["loyalty_member"].put("m2", {"points": 10}, t(2))
        hq_processor.points.advance(STORE_ID, "loyalty_member", "m2", t(1))
        hq_processor.apply(make_batch("loyalty_member", [("m2", t(3), {"points": 20})]))
        conflict = hq_processor.conflicts.list_conflicts(STORE_ID)[0]

        value = hq_processor.apply_resolution(conflict, {"points": 15})
        assert value.timestamp > t(3)
        assert repositories["loyalty_member"].get("m2").payload == {"points": 15}
        assert hq_processor.points.get(STORE_ID, "loyalty_member", "m2") == value.timestamp


class TestFailures:
    """Tests for record-level failures."""

    def test_inbound_rejected_type(self, hq_processor, t):
        """HQ does not accept category uploads."""
        result = hq_processor.apply(make_batch("category", [("c1", t(1), {"name": "Drinks"})]))

        assert result.status == SyncBatchStatus.FAILED
        assert result.outcomes[0].outcome == RecordOutcome.FAILED
        assert result.outcomes[0].retryable is False

    def test_transient_failure_is_retryable(self, db, hq_rules, repositories, t):
        repositories.register(
            "product", FlakyRepository("product", {"1": TransientSyncError("disk busy")})
        )
        processor = BatchProcessor(db, hq_rules, repositories, node_role=NodeRole.HQ)

        result = processor.apply(make_batch("product", [("1", t(1), {"v": 1}), ("2", t(1), {"v": 2})]))
        outcomes = {o.entity_id: o for o in result.outcomes}
        assert outcomes["1"].outcome == RecordOutcome.FAILED
        assert outcomes["1"].retryable is True
        assert outcomes["2"].outcome == RecordOutcome.SUCCESS
        assert result.status == SyncBatchStatus.PARTIALLY_COMPLETED


class TestCancellation:
    """Tests for cooperative cancellation between records."""

    def test_cancel_between_records(self, db, hq_rules, repositories, t):
        token = CancellationToken()
        repositories.register("order", CancellingRepository("order", token))
        processor = BatchProcessor(db, hq_rules, repositories, node_role=NodeRole.HQ)
        batch = make_batch("order", [("o1", t(1), {"n": 1}), ("o2", t(1), {"n": 2}), ("o3", t(1), {"n": 3})])

        result = processor.apply(batch, token=token)
        assert result.status == SyncBatchStatus.CANCELLED
        assert result.success == 1
        assert [o.outcome for o in result.outcomes] == [
            RecordOutcome.SUCCESS,
            RecordOutcome.PENDING,
            RecordOutcome.PENDING,
        ]
        assert repositories["order"].ids() == ["o1"]

        replay = processor.apply(batch)
        assert replay.status == SyncBatchStatus.CANCELLED
        assert repositories["order"].ids() == ["o1"]
