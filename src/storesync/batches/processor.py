"""Batch processor: applies an incoming batch record by record.

Each record is looked up locally, checked against its common sync point,
resolved per the entity rule when both sides changed, and settled exactly
once. A failing record never stops the rest of the batch.
"""

import json
import logging
import time
from datetime import datetime
from typing import Any, Callable, Optional, Union

from sqlalchemy import select

from ..concurrency import CancellationToken, EntityLockRegistry, KeyedLocks
from ..conflicts.detector import ChangeKind, detect_conflict
from ..conflicts.manager import ConflictManager
from ..conflicts.models import SyncConflict
from ..conflicts.resolver import policy_for
from ..db.schemas import NodeRole, RecordOutcome, SyncBatchStatus, SyncOperation
from ..db.sqlite import Database, get_db
from ..errors import UnknownEntityTypeError, is_transient
from ..logs.manager import SyncLogManager
from ..repository import LocalRepository, RepositoryRegistry, VersionedValue
from ..rules.manager import RuleTable
from ..timeutils import utcnow
from .envelope import BatchEnvelope, parse_envelope
from .ledger import (
    SyncPointStore,
    batch_records,
    cancel_batch_row,
    finish_batch,
    record_result,
    settle_record,
)
from .models import SyncBatch, SyncRecord
from .schemas import BatchResult

logger = logging.getLogger(__name__)

EchoCallback = Callable[[int, str, str, VersionedValue], None]


class BatchProcessor:
    """Applies received batches to the local repositories."""

    def __init__(
        self,
        db: Optional[Database] = None,
        rules: Optional[RuleTable] = None,
        repositories: Optional[RepositoryRegistry] = None,
        node_role: Optional[NodeRole] = None,
        conflict_manager: Optional[ConflictManager] = None,
        entity_locks: Optional[EntityLockRegistry] = None,
        log_manager: Optional[SyncLogManager] = None,
        echo: Optional[EchoCallback] = None,
    ):
        """Initialize batch processor.

        Args:
            db: Database instance
            rules: Rule table for policies and inbound checks
            repositories: Local repositories by entity type
            node_role: Role of this node, defaults to the configured role
            conflict_manager: Conflict persistence
            entity_locks: Per-entity locks shared with other processors
            log_manager: Sync log writer
            echo: Called with (store_id, entity_type, entity_id, value) when a
                resolution keeps the local value, so it can be sent back to the peer
        """
        self.db = db or get_db()
        self.rules = rules or RuleTable(self.db)
        self.repositories = repositories or RepositoryRegistry()
        self.node_role = NodeRole(node_role or self.rules.config.node_role)
        self.log_manager = log_manager or SyncLogManager(self.db)
        self.conflicts = conflict_manager or ConflictManager(self.db, self.log_manager)
        self.entity_locks = entity_locks or EntityLockRegistry()
        self.points = SyncPointStore(self.db)
        self._batch_locks = KeyedLocks()
        self.echo = echo

    def apply(
        self,
        envelope: Union[BatchEnvelope, str, dict[str, Any]],
        token: Optional[CancellationToken] = None,
    ) -> BatchResult:
        """Apply a batch.

        Replaying a batch uid that was seen before reuses the stored rows:
        settled records return their stored outcome and are not applied again.

        Args:
            envelope: Batch envelope or its raw form
            token: Cancellation token checked between records

        Returns:
            BatchResult with per-record outcomes

        Raises:
            SchemaMismatchError: If the envelope version is unsupported
            PayloadValidationError: If the envelope is malformed
        """
        envelope = parse_envelope(envelope)

        with self._batch_locks.hold(envelope.batch_uid):
            batch_id = self._load_or_create(envelope)
            started = time.perf_counter()

            with self.db.get_session() as session:
                batch = session.get(SyncBatch, batch_id)
                if batch.is_terminal:
                    logger.info(
                        "Batch %s already %s, replaying stored outcomes",
                        batch.batch_uid,
                        batch.status,
                    )
                    return self._result(session, batch)
                if batch.status == SyncBatchStatus.PENDING.value:
                    batch.status = SyncBatchStatus.IN_PROGRESS.value
                    batch.started_at = utcnow()
                pending_ids = [r.id for r in batch_records(session, batch_id) if not r.is_processed]

            cancelled = False
            for record_id in pending_ids:
                if token is not None and token.is_cancelled():
                    cancelled = True
                    break
                self._apply_record(batch_id, record_id, envelope.store_id)

            with self.db.get_session() as session:
                batch = session.get(SyncBatch, batch_id)
                if cancelled and not batch.is_terminal:
                    cancel_batch_row(batch, "Cancelled between records")
                    logger.warning(
                        "Batch %s cancelled after %s of %s records",
                        batch.batch_uid,
                        batch.success_count + batch.failed_count + batch.conflict_count,
                        batch.record_count,
                    )
                elif not batch.is_terminal and batch.record_count == 0:
                    finish_batch(batch)
                session.flush()
                result = self._result(session, batch)

        self.log_manager.log(
            "cancel" if cancelled else "apply",
            success=result.status != SyncBatchStatus.FAILED,
            store_id=envelope.store_id,
            entity_type=envelope.entity_type,
            batch_id=batch_id,
            details={
                "batch_uid": envelope.batch_uid,
                "status": result.status.value,
                "success": result.success,
                "failed": result.failed,
                "conflicts": result.conflicts,
            },
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return result

    def apply_resolution(
        self, conflict: SyncConflict, payload: Optional[dict[str, Any]]
    ) -> VersionedValue:
        """Write an operator-chosen value through the apply path.

        The value gets a fresh timestamp, newer than both conflicting
        versions, and becomes the entity's common sync point.

        Raises:
            UnknownEntityTypeError: If no repository handles the entity type
        """
        repo = self.repositories.get(conflict.entity_type)
        if repo is None:
            raise UnknownEntityTypeError(conflict.entity_type, conflict.store_id)

        timestamp = max(utcnow(), conflict.local_timestamp, conflict.remote_timestamp)
        value = VersionedValue(payload, timestamp, deleted=payload is None)
        with self.entity_locks.entity(conflict.entity_type, conflict.entity_id):
            self._write(repo, conflict.entity_id, value)
            self.points.advance(
                conflict.store_id, conflict.entity_type, conflict.entity_id, timestamp
            )
        self.rules.advance_cursor(conflict.store_id, conflict.entity_type, timestamp)
        logger.info(
            "Applied manual resolution for %s:%s", conflict.entity_type, conflict.entity_id
        )
        return value

    # -------------------------------------------------------------------------
    # Per-record apply
    # -------------------------------------------------------------------------

    def _apply_record(self, batch_id: int, record_id: int, store_id: int) -> None:
        with self.db.get_session() as session:
            record = session.get(SyncRecord, record_id)
            session.expunge(record)

        outcome = RecordOutcome.SUCCESS
        error = None
        retryable = False

        try:
            outcome = self._resolve_and_write(record, store_id)
        except Exception as e:
            outcome = RecordOutcome.FAILED
            error = str(e) or e.__class__.__name__
            retryable = is_transient(e)
            logger.warning(
                "Record %s (%s:%s) failed: %s",
                record.record_uid,
                record.entity_type,
                record.entity_id,
                error,
            )

        with self.db.get_session() as session:
            batch = session.get(SyncBatch, batch_id)
            row = session.get(SyncRecord, record_id)
            settle_record(session, batch, row, outcome, error=error, retryable=retryable)

    def _resolve_and_write(self, record: SyncRecord, store_id: int) -> RecordOutcome:
        entity_type = record.entity_type
        entity_id = record.entity_id
        rule = self.rules.rule_for(store_id, entity_type)
        repo = self.repositories.get(entity_type)
        if rule is None or repo is None:
            raise UnknownEntityTypeError(entity_type, store_id)
        if not self.rules.accepts_inbound(store_id, entity_type):
            raise UnknownEntityTypeError(entity_type, store_id)

        remote = VersionedValue(
            record.payload,
            record.entity_timestamp,
            deleted=record.operation == SyncOperation.DELETE.value,
        )

        with self.entity_locks.entity(entity_type, entity_id):
            local = repo.get(entity_id)
            point = self.points.get(store_id, entity_type, entity_id)
            check = detect_conflict(local, remote, point)

            if check.apply_remote:
                self._write(repo, entity_id, remote)
                self._advance(store_id, entity_type, entity_id, remote.timestamp)
                return RecordOutcome.SUCCESS

            if check.kind in (ChangeKind.LOCAL_ONLY, ChangeKind.STALE):
                return RecordOutcome.SUCCESS

            agreed = max(local.timestamp, remote.timestamp)
            if check.kind == ChangeKind.IDENTICAL:
                self._advance(store_id, entity_type, entity_id, agreed)
                return RecordOutcome.SUCCESS

            resolution = policy_for(rule.conflict_resolution).resolve(local, remote, self.node_role)
            if self.conflicts.conflict_for_record(record.id) is None:
                self.conflicts.record(
                    store_id=store_id,
                    batch_id=record.sync_batch_id,
                    record_id=record.id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    local=local,
                    remote=remote,
                    policy=rule.conflict_resolution,
                    resolution=None if resolution.requires_manual else resolution.winner,
                    resolved_value=resolution.value,
                    flagged_for_review=rule.flag_conflicts_for_review,
                )

            if resolution.requires_manual:
                return RecordOutcome.CONFLICT

            if resolution.use_remote:
                self._write(repo, entity_id, remote)
            self._advance(store_id, entity_type, entity_id, agreed)
            if not resolution.use_remote and self.echo is not None:
                self.echo(
                    store_id,
                    entity_type,
                    entity_id,
                    VersionedValue(local.payload, agreed, deleted=local.deleted),
                )
            return RecordOutcome.SUCCESS

    def _advance(self, store_id: int, entity_type: str, entity_id: str, timestamp: datetime) -> None:
        self.points.advance(store_id, entity_type, entity_id, timestamp)
        self.rules.advance_cursor(store_id, entity_type, timestamp)

    @staticmethod
    def _write(repo: LocalRepository, entity_id: str, value: VersionedValue) -> None:
        if value.deleted:
            repo.delete(entity_id, value.timestamp)
        else:
            repo.put(entity_id, value.payload or {}, value.timestamp)

    # -------------------------------------------------------------------------
    # Batch rows
    # -------------------------------------------------------------------------

    def _load_or_create(self, envelope: BatchEnvelope) -> int:
        with self.db.get_session() as session:
            existing = session.execute(
                select(SyncBatch.id).where(SyncBatch.batch_uid == envelope.batch_uid)
            ).scalar_one_or_none()
            if existing is not None:
                return existing

            batch = SyncBatch(
                batch_uid=envelope.batch_uid,
                store_id=envelope.store_id,
                direction=envelope.direction.value,
                entity_type=envelope.entity_type,
                is_incoming=True,
                record_count=len(envelope.records),
                batch_data=envelope.to_json(),
            )
            session.add(batch)
            session.flush()
            for sequence, rec in enumerate(envelope.records):
                session.add(
                    SyncRecord(
                        sync_batch_id=batch.id,
                        record_uid=rec.record_uid,
                        sequence=sequence,
                        entity_type=rec.entity_type,
                        entity_id=rec.entity_id,
                        operation=rec.operation.value,
                        entity_data=(
                            None if rec.payload is None
                            else json.dumps(rec.payload, sort_keys=True, default=str)
                        ),
                        entity_timestamp=rec.timestamp,
                    )
                )
            session.flush()
            return batch.id

    @staticmethod
    def _result(session, batch: SyncBatch) -> BatchResult:
        return BatchResult(
            batch_id=batch.id,
            batch_uid=batch.batch_uid,
            status=SyncBatchStatus(batch.status),
            success=batch.success_count,
            failed=batch.failed_count,
            conflicts=batch.conflict_count,
            outcomes=[record_result(r) for r in batch_records(session, batch.id)],
        )
