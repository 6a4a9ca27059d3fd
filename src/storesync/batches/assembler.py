"""Batch assembler: groups claimed queue items into an outgoing batch."""

import logging
import time
import uuid
from datetime import datetime
from typing import Optional

from ..concurrency import KeyedLocks
from ..db.schemas import SyncDirection, SyncOperation
from ..db.sqlite import Database, get_db
from ..errors import UnknownEntityTypeError
from ..logs.manager import SyncLogManager
from ..queue.manager import ChangeQueue
from ..rules.manager import RuleTable
from ..timeutils import as_utc, utcnow
from .envelope import BatchEnvelope, RecordEnvelope, parse_envelope
from .models import SyncBatch, SyncRecord

logger = logging.getLogger(__name__)


class BatchAssembler:
    """Builds outgoing batches for (store, entity type) pairs.

    Calls for different pairs run concurrently; calls for the same pair are
    serialized so one claim cycle finishes before the next starts.
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        rules: Optional[RuleTable] = None,
        queue: Optional[ChangeQueue] = None,
        log_manager: Optional[SyncLogManager] = None,
    ):
        self.db = db or get_db()
        self.rules = rules or RuleTable(self.db)
        self.log_manager = log_manager or SyncLogManager(self.db)
        self.queue = queue or ChangeQueue(self.db, self.rules, log_manager=self.log_manager)
        self._pair_locks = KeyedLocks()

    @property
    def direction(self) -> SyncDirection:
        """Flow direction of batches built on this node."""
        return SyncDirection.DOWNLOAD if self.rules.config.is_hq else SyncDirection.UPLOAD

    def assemble(
        self,
        store_id: int,
        entity_type: str,
        max_batch_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[SyncBatch]:
        """Claim eligible items and write them as a pending batch.

        Args:
            store_id: Store whose queue is drained
            entity_type: Entity type to batch
            max_batch_size: Upper bound on records, defaults to the store config
            now: Clock override for retry eligibility

        Returns:
            The new batch, or None if the rule is disabled or nothing is eligible

        Raises:
            UnknownEntityTypeError: If the store has no rule for the type
        """
        rule = self.rules.rule_for(store_id, entity_type)
        if rule is None:
            raise UnknownEntityTypeError(entity_type, store_id)
        if not self.rules.is_enqueue_allowed(store_id, entity_type):
            logger.debug("Not assembling %s for store %s: rule disabled", entity_type, store_id)
            return None

        if max_batch_size is None:
            config = self.rules.get_configuration(store_id)
            max_batch_size = config.max_batch_size if config else self.rules.config.max_batch_size
        now = as_utc(now) or utcnow()

        with self._pair_locks.hold((store_id, entity_type)):
            started = time.perf_counter()
            items = self.queue.claim(store_id, entity_type, max_batch_size, now=now)
            if not items:
                return None

            try:
                batch = self._write_batch(store_id, entity_type, items, now)
            except Exception:
                self.queue.release(i.id for i in items)
                raise
            self.queue.attach_batch((i.id for i in items), batch.id)

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Assembled batch %s for store %s: %s %s records",
            batch.id,
            store_id,
            batch.record_count,
            entity_type,
        )
        self.log_manager.log(
            "assemble",
            store_id=store_id,
            entity_type=entity_type,
            batch_id=batch.id,
            details={"records": batch.record_count, "batch_uid": batch.batch_uid},
            duration_ms=duration_ms,
        )
        return batch

    def envelope_for(self, batch: SyncBatch) -> BatchEnvelope:
        """Wire envelope stored with an assembled batch."""
        return parse_envelope(batch.batch_data)

    def _write_batch(self, store_id, entity_type, items, now) -> SyncBatch:
        envelope = BatchEnvelope(
            batch_uid=str(uuid.uuid4()),
            store_id=store_id,
            direction=self.direction,
            entity_type=entity_type,
            created_at=now,
            records=[
                RecordEnvelope(
                    record_uid=str(uuid.uuid4()),
                    entity_type=item.entity_type,
                    entity_id=item.entity_id,
                    operation=SyncOperation(item.operation),
                    timestamp=item.entity_timestamp,
                    payload=item.payload_dict,
                )
                for item in items
            ],
        )

        with self.db.get_session() as session:
            batch = SyncBatch(
                batch_uid=envelope.batch_uid,
                store_id=store_id,
                direction=envelope.direction.value,
                entity_type=entity_type,
                is_incoming=False,
                record_count=len(items),
                batch_data=envelope.to_json(),
            )
            session.add(batch)
            session.flush()

            for sequence, (item, record) in enumerate(zip(items, envelope.records)):
                session.add(
                    SyncRecord(
                        sync_batch_id=batch.id,
                        record_uid=record.record_uid,
                        queue_item_id=item.id,
                        sequence=sequence,
                        entity_type=item.entity_type,
                        entity_id=item.entity_id,
                        operation=item.operation,
                        entity_data=item.payload,
                        entity_timestamp=item.entity_timestamp,
                    )
                )
            session.commit()
            session.refresh(batch)
            session.expunge(batch)
            return batch
