"""Sync engine: one node's end of the store <-> HQ synchronization.

The engine wires the rule table, change queue, assembler, processor,
conflict manager and retry scheduler together and drives a sync cycle:

1. Deliver acknowledgements that failed earlier, then apply operator
   conflict decisions recorded since the last cycle.
2. Send outbound batches, always taking next the entity type whose head
   item is most urgent, so a critical item never waits behind bulk updates
   of another type. Within a priority tier, rule priority picks the type.
   Queue items settle from the peer's acknowledgement.
3. Drain batches the peer pushed and acknowledge them.

The same class runs on HQ and on a store; the node role in Config decides
which rule directions are outbound.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from sqlalchemy import select

from ..batches.envelope import BatchEnvelope, parse_envelope
from ..batches.assembler import BatchAssembler
from ..batches.history import BatchHistory
from ..batches.ledger import batch_records, cancel_batch_row, settle_record
from ..batches.models import SyncBatch, SyncRecord
from ..batches.processor import BatchProcessor
from ..batches.schemas import RecordResult
from ..concurrency import CancellationToken, EntityLockRegistry, raise_if_cancelled
from ..config import Config, get_config
from ..conflicts.detector import payloads_differ
from ..conflicts.manager import DECISION_IGNORE, ConflictManager
from ..conflicts.models import SyncConflict
from ..db.schemas import (
    NodeRole,
    RecordOutcome,
    SyncBatchStatus,
    SyncOperation,
    SyncPriority,
)
from ..db.sqlite import Database, get_db
from ..errors import (
    ConfigurationError,
    InvalidTransitionError,
    NotFoundError,
    PayloadValidationError,
    PermanentSyncError,
    SyncCancelledError,
    SyncError,
    is_transient,
)
from ..logs.manager import SyncLogManager
from ..queue.manager import ChangeQueue
from ..queue.models import SyncQueueItem
from ..repository import RepositoryRegistry, VersionedValue
from ..retry.scheduler import RetryPolicy, RetryScheduler
from ..rules.manager import RuleTable
from ..timeutils import as_utc, utcnow
from ..transport.base import Transport, TransportAck

logger = logging.getLogger(__name__)


@dataclass
class SyncCycleResult:
    """Summary of one sync cycle for a store."""

    store_id: int
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    batches_sent: int = 0
    records_sent: int = 0
    succeeded: int = 0
    failed: int = 0
    conflicted: int = 0
    batches_received: int = 0
    errors: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.errors and not self.cancelled

    def as_details(self) -> dict[str, Any]:
        return {
            "batches_sent": self.batches_sent,
            "records_sent": self.records_sent,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "conflicted": self.conflicted,
            "batches_received": self.batches_received,
            "errors": len(self.errors),
        }


class SyncEngine:
    """Drives sync cycles for the stores this node talks to."""

    def __init__(
        self,
        db: Optional[Database] = None,
        config: Optional[Config] = None,
        transport: Optional[Transport] = None,
        repositories: Optional[RepositoryRegistry] = None,
        entity_locks: Optional[EntityLockRegistry] = None,
    ):
        """Initialize sync engine.

        Args:
            db: Database instance
            config: Node configuration (role, node id, defaults)
            transport: Transport to the peer node
            repositories: Local repositories by entity type
            entity_locks: Per-entity locks, shared if several engines write
                the same repositories
        """
        self.db = db or get_db()
        self.config = config or get_config()
        self.transport = transport
        self.repositories = repositories or RepositoryRegistry()

        self.log_manager = SyncLogManager(self.db)
        self.rules = RuleTable(self.db, self.config)
        self.retry = RetryScheduler(
            self.db,
            RetryPolicy(
                base_delay_seconds=self.config.retry_delay_seconds,
                max_delay_seconds=self.config.retry_max_delay_seconds,
                max_retries=self.config.retry_attempts,
            ),
            self.log_manager,
        )
        self.queue = ChangeQueue(self.db, self.rules, self.retry, self.log_manager)
        self.assembler = BatchAssembler(self.db, self.rules, self.queue, self.log_manager)
        self.conflicts = ConflictManager(self.db, self.log_manager)
        self.processor = BatchProcessor(
            self.db,
            self.rules,
            self.repositories,
            node_role=NodeRole(self.config.node_role),
            conflict_manager=self.conflicts,
            entity_locks=entity_locks,
            log_manager=self.log_manager,
            echo=self._echo,
        )

        self._active_tokens: dict[str, CancellationToken] = {}
        self._tokens_lock = threading.Lock()
        self._undelivered_acks: list[TransportAck] = []
        self._acks_lock = threading.Lock()

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
        """Queue a committed local mutation. See ChangeQueue.enqueue."""
        return self.queue.enqueue(
            store_id, entity_type, entity_id, operation, payload, priority, timestamp
        )

    # -------------------------------------------------------------------------
    # Sync cycle
    # -------------------------------------------------------------------------

    def sync_store(
        self,
        store_id: int,
        token: Optional[CancellationToken] = None,
        now: Optional[datetime] = None,
    ) -> SyncCycleResult:
        """Run one full sync cycle for a store.

        Transport failures are recorded on the result and the queue items,
        never raised. Cancellation stops the cycle between batches and
        between records.

        Args:
            store_id: Store to sync
            token: Cancellation token
            now: Clock override for retry eligibility

        Returns:
            SyncCycleResult for the cycle

        Raises:
            NotFoundError: If the store has no sync configuration
            ConfigurationError: If the engine has no transport
        """
        if self.transport is None:
            raise ConfigurationError("Sync engine has no transport configured")
        config = self.rules.get_configuration(store_id)
        if config is None:
            raise NotFoundError(f"Store {store_id} has no sync configuration")

        result = SyncCycleResult(store_id=store_id)
        if not config.is_enabled:
            logger.info("Sync disabled for store %s, skipping cycle", store_id)
            result.finished_at = utcnow()
            return result

        logger.info("Starting sync cycle for store %s", store_id)
        try:
            with self.log_manager.track(store_id, "sync_cycle") as details:
                self._flush_acks(result)
                self.apply_pending_decisions(store_id, result)
                self._send_outbound(store_id, result, token, now)
                self._receive_all(result, token)
                details.update(result.as_details())
        except SyncCancelledError:
            result.cancelled = True
            logger.warning("Sync cycle for store %s cancelled", store_id)

        result.finished_at = utcnow()
        error = "; ".join(result.errors) or ("cancelled" if result.cancelled else None)
        self.rules.record_attempt(
            store_id, success=result.success, error=error, when=result.finished_at
        )
        logger.info(
            "Sync cycle for store %s finished: sent=%s ok=%s failed=%s conflicts=%s received=%s",
            store_id,
            result.records_sent,
            result.succeeded,
            result.failed,
            result.conflicted,
            result.batches_received,
        )
        return result

    def _send_outbound(
        self,
        store_id: int,
        result: SyncCycleResult,
        token: Optional[CancellationToken],
        now: Optional[datetime],
    ) -> None:
        # Rule priority order. A type drops out once it is empty or a batch of
        # it fails to settle.
        entity_types = [
            rule.entity_type
            for rule in self.rules.list_rules(store_id)
            if self.rules.is_enqueue_allowed(store_id, rule.entity_type)
        ]
        while entity_types:
            raise_if_cancelled(token)
            entity_type = self.queue.next_entity_type(store_id, entity_types, now=now)
            if entity_type is None:
                return
            batch = self.assembler.assemble(store_id, entity_type, now=now)
            if batch is None or not self._send(batch, result):
                entity_types.remove(entity_type)

    def _send(self, batch: SyncBatch, result: SyncCycleResult) -> bool:
        """Send one assembled batch. Returns True if every record settled."""
        envelope = self.assembler.envelope_for(batch)
        with self.db.get_session() as session:
            row = session.get(SyncBatch, batch.id)
            row.status = SyncBatchStatus.IN_PROGRESS.value
            row.started_at = utcnow()

        result.batches_sent += 1
        result.records_sent += batch.record_count

        try:
            ack = self.transport.send(envelope)
        except PermanentSyncError as e:
            logger.error("Batch %s rejected permanently: %s", batch.batch_uid, e)
            result.failed += self._fail_batch(batch.id, str(e), retryable=False)
            result.errors.append(f"batch {batch.batch_uid}: {e}")
            return False
        except Exception as e:
            if not is_transient(e):
                logger.exception("Unexpected transport error for batch %s", batch.batch_uid)
            else:
                logger.warning("Batch %s not delivered: %s", batch.batch_uid, e)
            result.failed += self._fail_batch(batch.id, str(e) or e.__class__.__name__, retryable=True)
            result.errors.append(f"batch {batch.batch_uid}: {e}")
            return False

        counts = {outcome: 0 for outcome in RecordOutcome}
        for outcome in ack.outcomes:
            counts[outcome.outcome] += 1
        result.succeeded += counts[RecordOutcome.SUCCESS]
        result.failed += counts[RecordOutcome.FAILED]
        result.conflicted += counts[RecordOutcome.CONFLICT]

        self.handle_ack(ack)
        self.log_manager.log(
            "send",
            success=ack.status != SyncBatchStatus.FAILED,
            store_id=batch.store_id,
            entity_type=batch.entity_type,
            batch_id=batch.id,
            details={"batch_uid": batch.batch_uid, "status": ack.status.value},
        )
        return (
            counts[RecordOutcome.PENDING] == 0
            and len(ack.outcomes) >= batch.record_count
        )

    def _fail_batch(self, batch_id: int, error: str, retryable: bool) -> int:
        """Fail every unsettled record of an outgoing batch and its queue items.

        Returns:
            Number of records failed
        """
        with self.db.get_session() as session:
            batch = session.get(SyncBatch, batch_id)
            item_ids = []
            for record in batch_records(session, batch_id):
                if settle_record(session, batch, record, RecordOutcome.FAILED, error, retryable):
                    if record.queue_item_id is not None:
                        item_ids.append(record.queue_item_id)
            batch.error_message = error[:1000]
            store_id = batch.store_id
            entity_type = batch.entity_type

        for item_id in item_ids:
            self.queue.mark_failed(item_id, error, retryable=retryable)

        self.log_manager.log(
            "send",
            success=False,
            store_id=store_id,
            entity_type=entity_type,
            batch_id=batch_id,
            error=error,
            details={"records": len(item_ids), "retryable": retryable},
        )
        return len(item_ids)

    def _receive_all(self, result: SyncCycleResult, token: Optional[CancellationToken]) -> None:
        while True:
            raise_if_cancelled(token)
            envelope = self.transport.receive()
            if envelope is None:
                return
            try:
                ack = self.receive_batch(envelope, token)
            except PermanentSyncError as e:
                logger.error("Rejected incoming batch: %s", e)
                result.errors.append(str(e))
                continue
            result.batches_received += 1
            self._deliver_ack(ack, result)

    # -------------------------------------------------------------------------
    # Acknowledgements
    # -------------------------------------------------------------------------

    def handle_ack(self, ack: TransportAck) -> None:
        """Settle an outgoing batch from the peer's acknowledgement.

        Also handles late acknowledgements: a record the peer held for
        manual resolution is completed (or cancelled, if the peer ignored
        the conflict) when the operator decides.
        """
        actions = []
        with self.db.get_session() as session:
            batch = session.execute(
                select(SyncBatch).where(
                    SyncBatch.batch_uid == ack.batch_uid,
                    SyncBatch.is_incoming.is_(False),
                )
            ).scalar_one_or_none()
            if batch is None:
                logger.warning("Acknowledgement for unknown batch %s ignored", ack.batch_uid)
                return

            records = {r.record_uid: r for r in batch_records(session, batch.id)}
            for outcome in ack.outcomes:
                record = records.get(outcome.record_uid)
                if record is None:
                    logger.warning(
                        "Acknowledgement for unknown record %s in batch %s",
                        outcome.record_uid,
                        ack.batch_uid,
                    )
                    continue
                late = record.outcome == RecordOutcome.CONFLICT.value
                settled = settle_record(
                    session,
                    batch,
                    record,
                    outcome.outcome,
                    error=outcome.error,
                    retryable=outcome.retryable,
                )
                if settled or late or outcome.outcome == RecordOutcome.PENDING:
                    actions.append(
                        (
                            outcome,
                            record.queue_item_id,
                            batch.store_id,
                            record.entity_type,
                            record.entity_id,
                            record.entity_timestamp,
                        )
                    )

            if ack.status == SyncBatchStatus.CANCELLED and not batch.is_terminal:
                cancel_batch_row(batch, "Cancelled by peer")

        released = []
        for outcome, item_id, store_id, entity_type, entity_id, timestamp in actions:
            if outcome.ignored:
                # The peer kept its own value and will send it back.
                if item_id is not None:
                    self.queue.cancel(item_id)
                self.processor.points.advance(store_id, entity_type, entity_id, timestamp)
            elif outcome.outcome == RecordOutcome.PENDING:
                if item_id is not None:
                    released.append(item_id)
            elif outcome.outcome == RecordOutcome.SUCCESS:
                if item_id is not None:
                    self.queue.mark_completed(item_id)
                self.processor.points.advance(store_id, entity_type, entity_id, timestamp)
                self.rules.advance_cursor(store_id, entity_type, timestamp)
            elif outcome.outcome == RecordOutcome.FAILED:
                if item_id is not None:
                    self.queue.mark_failed(
                        item_id, outcome.error or "rejected by peer", retryable=outcome.retryable
                    )
            elif item_id is not None:
                self.queue.mark_conflict(item_id)

        if released:
            self.queue.release(released)

    def _deliver_ack(self, ack: TransportAck, result: Optional[SyncCycleResult] = None) -> bool:
        try:
            self.transport.acknowledge(ack)
        except SyncError as e:
            logger.warning("Acknowledgement for batch %s not delivered: %s", ack.batch_uid, e)
            with self._acks_lock:
                self._undelivered_acks.append(ack)
            if result is not None:
                result.errors.append(f"ack {ack.batch_uid}: {e}")
            return False
        return True

    def _flush_acks(self, result: SyncCycleResult) -> None:
        with self._acks_lock:
            pending, self._undelivered_acks = self._undelivered_acks, []
        for ack in pending:
            self._deliver_ack(ack, result)

    # -------------------------------------------------------------------------
    # Remote entry points
    # -------------------------------------------------------------------------

    def receive_batch(
        self,
        envelope: Union[BatchEnvelope, str, dict[str, Any]],
        token: Optional[CancellationToken] = None,
    ) -> TransportAck:
        """Apply a batch pushed by the peer and build its acknowledgement.

        Raises:
            SchemaMismatchError: If the envelope version is unsupported
            PayloadValidationError: If the envelope is malformed or meant
                for another store
        """
        envelope = parse_envelope(envelope)
        if not self.config.is_hq and envelope.store_id != self.config.node_id:
            raise PayloadValidationError(
                f"Batch {envelope.batch_uid} is for store {envelope.store_id}, "
                f"this node is store {self.config.node_id}"
            )

        token = token or CancellationToken()
        with self._tokens_lock:
            self._active_tokens[envelope.batch_uid] = token
        try:
            result = self.processor.apply(envelope, token)
        finally:
            with self._tokens_lock:
                self._active_tokens.pop(envelope.batch_uid, None)

        return TransportAck(
            batch_uid=result.batch_uid,
            store_id=envelope.store_id,
            status=result.status,
            outcomes=result.outcomes,
        )

    def cancel_batch(self, batch_id: int) -> SyncBatch:
        """Cancel a batch that has not finished.

        An incoming batch being applied stops at the next record boundary.
        Any other non-terminal batch is cancelled now and its unsettled
        queue items go back to pending.

        Raises:
            NotFoundError: If the batch does not exist
            InvalidTransitionError: If the batch already finished
        """
        with self.db.get_session() as session:
            batch = session.get(SyncBatch, batch_id)
            if batch is None:
                raise NotFoundError(f"Batch {batch_id} not found")
            if batch.is_terminal:
                raise InvalidTransitionError(f"Batch {batch_id} is already {batch.status}")

            with self._tokens_lock:
                token = self._active_tokens.get(batch.batch_uid)
            if batch.is_incoming and token is not None:
                token.cancel()
                session.expunge(batch)
                logger.info("Cancellation requested for batch %s", batch.batch_uid)
                return batch

            cancel_batch_row(batch, "Cancelled by operator")
            item_ids = [
                r.queue_item_id
                for r in batch_records(session, batch_id)
                if not r.is_processed and r.queue_item_id is not None
            ]
            session.commit()
            session.refresh(batch)
            session.expunge(batch)

        released = self.queue.release(item_ids)
        logger.info("Batch %s cancelled, %s queue items released", batch.batch_uid, released)
        self.log_manager.log(
            "cancel",
            store_id=batch.store_id,
            entity_type=batch.entity_type,
            batch_id=batch.id,
            details={"batch_uid": batch.batch_uid, "released": released},
        )
        return batch

    # -------------------------------------------------------------------------
    # Operator decisions
    # -------------------------------------------------------------------------

    def resolve_conflict(
        self,
        conflict_id: int,
        payload: Optional[dict[str, Any]],
        user_id: str,
        notes: Optional[str] = None,
    ) -> SyncConflict:
        """Apply an operator-chosen value and tell the peer.

        The peer's held queue item is completed, and the chosen value is
        queued back to the peer when it differs from what the peer sent.

        Raises:
            NotFoundError: If the conflict does not exist
            ConflictResolutionError: If user_id is missing or the conflict is
                already resolved
        """
        applied: Optional[VersionedValue] = None

        def apply(conflict: SyncConflict, winning: Optional[dict[str, Any]]) -> None:
            nonlocal applied
            applied = self.processor.apply_resolution(conflict, winning)

        conflict = self.conflicts.resolve_conflict(
            conflict_id, payload, user_id, notes, apply=apply
        )
        self._acknowledge_resolution(conflict, ignored=False)
        if applied is not None and payloads_differ(applied.payload, conflict.remote_payload):
            self._echo(conflict.store_id, conflict.entity_type, conflict.entity_id, applied)
        return conflict

    def ignore_conflict(
        self, conflict_id: int, user_id: str, notes: Optional[str] = None
    ) -> SyncConflict:
        """Close a conflict keeping the local value, and tell the peer.

        The peer drops its held change. The local value is re-stamped newer
        than both versions and queued back so the peer converges on it.
        """
        conflict = self.conflicts.ignore_conflict(conflict_id, user_id, notes)
        self._acknowledge_resolution(conflict, ignored=True)

        repo = self.repositories.get(conflict.entity_type)
        local = repo.get(conflict.entity_id) if repo is not None else None
        if local is not None:
            kept = self.processor.apply_resolution(
                conflict, None if local.deleted else local.payload
            )
            self._echo(conflict.store_id, conflict.entity_type, conflict.entity_id, kept)
        return conflict

    def apply_pending_decisions(
        self, store_id: Optional[int] = None, result: Optional[SyncCycleResult] = None
    ) -> int:
        """Apply operator decisions recorded with ConflictManager.queue_decision.

        Each decision goes through resolve_conflict or ignore_conflict, so the
        value is written, the peer acknowledged and the kept value echoed. A
        decision that fails stays queued and is tried again next cycle.

        Returns:
            Number of decisions applied
        """
        applied = 0
        for conflict in self.conflicts.pending_decisions(store_id):
            try:
                if conflict.pending_decision == DECISION_IGNORE:
                    self.ignore_conflict(conflict.id, conflict.pending_user_id, conflict.pending_notes)
                else:
                    self.resolve_conflict(
                        conflict.id,
                        conflict.pending_value,
                        conflict.pending_user_id,
                        conflict.pending_notes,
                    )
            except SyncError as e:
                logger.error("Decision for conflict %s not applied: %s", conflict.id, e)
                if result is not None:
                    result.errors.append(f"conflict {conflict.id}: {e}")
                continue
            applied += 1

        if applied:
            logger.info("Applied %s operator decisions", applied)
        return applied

    def _acknowledge_resolution(self, conflict: SyncConflict, ignored: bool) -> None:
        with self.db.get_session() as session:
            record = session.get(SyncRecord, conflict.sync_record_id)
            batch = session.get(SyncBatch, conflict.sync_batch_id)
            if record is None or batch is None or not batch.is_incoming:
                return
            ack = TransportAck(
                batch_uid=batch.batch_uid,
                store_id=batch.store_id,
                status=SyncBatchStatus(batch.status),
                outcomes=[
                    RecordResult(
                        record_uid=record.record_uid,
                        entity_id=record.entity_id,
                        outcome=RecordOutcome.SUCCESS,
                        ignored=ignored,
                    )
                ],
            )
        if self.transport is not None:
            self._deliver_ack(ack)

    def _echo(
        self, store_id: int, entity_type: str, entity_id: str, value: VersionedValue
    ) -> None:
        """Queue the value this node kept so the peer converges on it."""
        if not self.rules.is_enqueue_allowed(store_id, entity_type):
            return
        self.queue.enqueue(
            store_id,
            entity_type,
            entity_id,
            SyncOperation.DELETE if value.deleted else SyncOperation.UPDATE,
            payload=value.payload,
            priority=SyncPriority.HIGH,
            timestamp=value.timestamp,
        )

    # -------------------------------------------------------------------------
    # Scheduling helpers
    # -------------------------------------------------------------------------

    def stores_needing_sync(self, now: Optional[datetime] = None) -> list[int]:
        """Enabled stores whose last successful sync is older than their interval."""
        now = as_utc(now) or utcnow()
        due = []
        for config in self.rules.list_configurations():
            if not config.is_enabled:
                continue
            last = config.last_successful_sync
            if last is None or now - last >= timedelta(seconds=config.sync_interval_seconds):
                due.append(config.store_id)
        return due

    def maintenance(self, now: Optional[datetime] = None) -> int:
        """Release claims orphaned by a crash. Returns the number released."""
        return self.queue.reset_stuck_items(self.config.stuck_timeout_minutes, now=now)

    def cleanup(self, days_to_keep: int = 30, now: Optional[datetime] = None) -> dict[str, int]:
        """Prune finished batches, completed queue items, old logs and resolved conflicts.

        Returns:
            Rows removed per table
        """
        removed = {
            "batches": BatchHistory(self.db).cleanup_old_batches(days_to_keep, now=now),
            "queue_items": self.queue.cleanup_completed(days_to_keep, now=now),
            "conflicts": self.conflicts.purge_resolved(days_to_keep, now=now),
            "logs": self.log_manager.prune(days_to_keep, now=now),
        }
        logger.info("Cleanup removed %s", removed)
        return removed
