"""Conflict manager: persistence and the operator resolution workflow."""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import delete, select

from ..db.schemas import ConflictWinner
from ..db.sqlite import Database, get_db
from ..errors import ConflictResolutionError, NotFoundError
from ..logs.manager import SyncLogManager
from ..repository import VersionedValue
from ..timeutils import as_utc, utcnow
from .models import SyncConflict
from .schemas import ConflictSummary

logger = logging.getLogger(__name__)

IGNORED_PREFIX = "[IGNORED]"
DECISION_RESOLVE = "resolve"
DECISION_IGNORE = "ignore"

ApplyCallback = Callable[[SyncConflict, Optional[dict[str, Any]]], None]


def _dump(payload: Optional[dict[str, Any]]) -> Optional[str]:
    return json.dumps(payload, sort_keys=True, default=str) if payload is not None else None


class ConflictManager:
    """Stores detected conflicts and applies operator decisions."""

    def __init__(
        self,
        db: Optional[Database] = None,
        log_manager: Optional[SyncLogManager] = None,
    ):
        self.db = db or get_db()
        self.log_manager = log_manager or SyncLogManager(self.db)

    def record(
        self,
        store_id: int,
        batch_id: int,
        record_id: int,
        entity_type: str,
        entity_id: str,
        local: VersionedValue,
        remote: VersionedValue,
        policy: ConflictWinner,
        resolution: Optional[ConflictWinner] = None,
        resolved_value: Optional[VersionedValue] = None,
        flagged_for_review: bool = False,
    ) -> SyncConflict:
        """Persist a detected conflict.

        Args:
            store_id: Store the batch belongs to
            batch_id: Local id of the batch carrying the remote version
            record_id: Local id of the record carrying the remote version
            entity_type: Entity type
            entity_id: Entity id
            local: Local version at detection time
            remote: Incoming version
            policy: Rule policy that was applied
            resolution: Winning side for automatic resolutions, None for manual
            resolved_value: Value that won an automatic resolution
            flagged_for_review: Keep the conflict visible for review even if resolved

        Returns:
            Stored conflict
        """
        now = utcnow()
        with self.db.get_session() as session:
            conflict = SyncConflict(
                store_id=store_id,
                sync_batch_id=batch_id,
                sync_record_id=record_id,
                entity_type=entity_type,
                entity_id=entity_id,
                local_data=_dump(local.payload),
                local_timestamp=local.timestamp,
                remote_data=_dump(remote.payload),
                remote_timestamp=remote.timestamp,
                policy=ConflictWinner(policy).value,
                flagged_for_review=flagged_for_review,
            )
            if resolution is not None:
                conflict.resolution = resolution.value
                conflict.is_resolved = True
                conflict.resolved_at = now
                conflict.resolved_payload = _dump(resolved_value.payload if resolved_value else None)
            session.add(conflict)
            session.commit()
            session.refresh(conflict)
            session.expunge(conflict)

        if conflict.is_resolved:
            logger.info(
                "Conflict on %s:%s (store %s) resolved automatically: %s wins",
                entity_type,
                entity_id,
                store_id,
                conflict.resolution,
            )
        else:
            logger.warning(
                "Conflict on %s:%s (store %s) needs manual resolution (conflict %s)",
                entity_type,
                entity_id,
                store_id,
                conflict.id,
            )
        self.log_manager.log(
            "conflict_detected",
            store_id=store_id,
            entity_type=entity_type,
            batch_id=batch_id,
            details={
                "conflict_id": conflict.id,
                "entity_id": entity_id,
                "policy": conflict.policy,
                "resolution": conflict.resolution,
            },
        )
        return conflict

    def get_conflict(self, conflict_id: int) -> Optional[SyncConflict]:
        """Get a conflict by id."""
        with self.db.get_session() as session:
            conflict = session.get(SyncConflict, conflict_id)
            if conflict:
                session.expunge(conflict)
            return conflict

    def conflict_for_record(self, record_id: int) -> Optional[SyncConflict]:
        """Conflict already recorded for a batch record, if any."""
        with self.db.get_session() as session:
            conflict = session.execute(
                select(SyncConflict).where(SyncConflict.sync_record_id == record_id)
            ).scalar_one_or_none()
            if conflict:
                session.expunge(conflict)
            return conflict

    def list_conflicts(
        self,
        store_id: Optional[int] = None,
        include_resolved: bool = False,
        flagged_only: bool = False,
        limit: int = 100,
    ) -> list[SyncConflict]:
        """List conflicts, oldest first.

        Args:
            store_id: Restrict to one store
            include_resolved: Also return resolved and ignored conflicts
            flagged_only: Only conflicts flagged for review
            limit: Maximum rows

        Returns:
            List of conflicts
        """
        with self.db.get_session() as session:
            stmt = select(SyncConflict).order_by(SyncConflict.created_at, SyncConflict.id)
            if store_id is not None:
                stmt = stmt.where(SyncConflict.store_id == store_id)
            if not include_resolved:
                stmt = stmt.where(SyncConflict.is_resolved.is_(False))
            if flagged_only:
                stmt = stmt.where(SyncConflict.flagged_for_review.is_(True))
            conflicts = session.execute(stmt.limit(limit)).scalars().all()
            for c in conflicts:
                session.expunge(c)
            return list(conflicts)

    def summary(self, store_id: Optional[int] = None) -> ConflictSummary:
        """Backlog counts for one store or all stores."""
        conflicts = self.list_conflicts(store_id, include_resolved=True, limit=1_000_000)
        result = ConflictSummary(total=len(conflicts))
        for c in conflicts:
            if c.flagged_for_review:
                result.flagged_for_review += 1
            if not c.is_resolved:
                result.unresolved += 1
                result.unresolved_by_entity_type[c.entity_type] = (
                    result.unresolved_by_entity_type.get(c.entity_type, 0) + 1
                )
                continue
            if c.is_ignored:
                result.ignored += 1
            else:
                result.resolved += 1
            if c.resolution:
                result.by_resolution[c.resolution] = result.by_resolution.get(c.resolution, 0) + 1
        return result

    def batch_conflicts(self, batch_id: int) -> list[SyncConflict]:
        """Conflicts raised by the records of one batch."""
        with self.db.get_session() as session:
            conflicts = session.execute(
                select(SyncConflict)
                .where(SyncConflict.sync_batch_id == batch_id)
                .order_by(SyncConflict.id)
            ).scalars().all()
            for c in conflicts:
                session.expunge(c)
            return list(conflicts)

    # -------------------------------------------------------------------------
    # Queued operator decisions
    # -------------------------------------------------------------------------

    def queue_decision(
        self,
        conflict_id: int,
        user_id: str,
        winning_payload: Optional[dict[str, Any]] = None,
        ignore: bool = False,
        notes: Optional[str] = None,
    ) -> SyncConflict:
        """Record an operator decision for the engine to apply.

        The conflict stays open until the engine has written the value and
        acknowledged the peer. A later decision replaces an earlier one.

        Raises:
            NotFoundError: If the conflict does not exist
            ConflictResolutionError: If user_id is missing or the conflict is
                already resolved
        """
        self._open_conflict(conflict_id, user_id)
        with self.db.get_session() as session:
            row = session.get(SyncConflict, conflict_id)
            row.pending_decision = DECISION_IGNORE if ignore else DECISION_RESOLVE
            row.pending_payload = None if ignore else _dump(winning_payload)
            row.pending_user_id = user_id
            row.pending_notes = notes[:1000] if notes else None
            row.decided_at = utcnow()
            session.commit()
            session.refresh(row)
            session.expunge(row)

        logger.info("Decision %s queued for conflict %s by %s", row.pending_decision, conflict_id, user_id)
        self.log_manager.log(
            "conflict_decision",
            store_id=row.store_id,
            entity_type=row.entity_type,
            batch_id=row.sync_batch_id,
            details={"conflict_id": conflict_id, "user_id": user_id, "decision": row.pending_decision},
        )
        return row

    def queue_bulk_decision(
        self,
        conflict_ids: list[int],
        keep: str,
        user_id: str,
        notes: Optional[str] = None,
    ) -> int:
        """Queue the same side for many conflicts.

        Args:
            conflict_ids: Conflicts to decide
            keep: "local" or "remote"
            user_id: Operator making the decision
            notes: Optional notes stored on every conflict

        Returns:
            Number of conflicts decided. Missing or resolved ones are skipped.

        Raises:
            ConflictResolutionError: If keep is not local or remote
        """
        if keep not in ("local", "remote"):
            raise ConflictResolutionError(f"Keep must be 'local' or 'remote', not {keep!r}")

        count = 0
        for conflict_id in conflict_ids:
            conflict = self.get_conflict(conflict_id)
            if conflict is None or conflict.is_resolved:
                continue
            payload = conflict.local_payload if keep == "local" else conflict.remote_payload
            self.queue_decision(conflict_id, user_id, payload, notes=notes)
            count += 1
        return count

    def pending_decisions(self, store_id: Optional[int] = None) -> list[SyncConflict]:
        """Open conflicts with a queued decision, oldest decision first."""
        with self.db.get_session() as session:
            stmt = (
                select(SyncConflict)
                .where(
                    SyncConflict.is_resolved.is_(False),
                    SyncConflict.pending_decision.is_not(None),
                )
                .order_by(SyncConflict.decided_at, SyncConflict.id)
            )
            if store_id is not None:
                stmt = stmt.where(SyncConflict.store_id == store_id)
            conflicts = session.execute(stmt).scalars().all()
            for c in conflicts:
                session.expunge(c)
            return list(conflicts)

    def resolve_conflict(
        self,
        conflict_id: int,
        winning_payload: Optional[dict[str, Any]],
        user_id: str,
        notes: Optional[str] = None,
        apply: Optional[ApplyCallback] = None,
    ) -> SyncConflict:
        """Resolve a conflict with an operator-chosen value.

        The value is applied first; the conflict is only marked resolved if
        applying succeeds.

        Args:
            conflict_id: Conflict to resolve
            winning_payload: Value to keep, None to delete the entity
            user_id: Operator making the decision
            notes: Optional resolution notes
            apply: Callback that writes the value through the apply path

        Returns:
            The resolved conflict

        Raises:
            NotFoundError: If the conflict does not exist
            ConflictResolutionError: If user_id is missing or the conflict is
                already resolved
        """
        conflict = self._open_conflict(conflict_id, user_id)
        if apply is not None:
            apply(conflict, winning_payload)

        with self.db.get_session() as session:
            row = session.get(SyncConflict, conflict_id)
            if row.is_resolved:
                raise ConflictResolutionError(f"Conflict {conflict_id} is already resolved")
            row.resolution = ConflictWinner.MANUAL.value
            row.is_resolved = True
            row.resolved_payload = _dump(winning_payload)
            row.resolved_by_user_id = user_id
            row.resolution_notes = notes[:1000] if notes else None
            row.resolved_at = utcnow()
            row.pending_decision = None
            session.commit()
            session.refresh(row)
            session.expunge(row)

        logger.info("Conflict %s resolved by %s", conflict_id, user_id)
        self.log_manager.log(
            "conflict_resolved",
            store_id=row.store_id,
            entity_type=row.entity_type,
            batch_id=row.sync_batch_id,
            details={"conflict_id": conflict_id, "user_id": user_id},
        )
        return row

    def ignore_conflict(
        self, conflict_id: int, user_id: str, notes: Optional[str] = None
    ) -> SyncConflict:
        """Close a conflict without applying anything. The local value stays."""
        self._open_conflict(conflict_id, user_id)
        with self.db.get_session() as session:
            row = session.get(SyncConflict, conflict_id)
            row.resolution = ConflictWinner.MANUAL.value
            row.is_resolved = True
            row.is_ignored = True
            row.resolved_by_user_id = user_id
            row.resolution_notes = f"{IGNORED_PREFIX} {notes or ''}".strip()[:1000]
            row.resolved_at = utcnow()
            row.pending_decision = None
            session.commit()
            session.refresh(row)
            session.expunge(row)

        logger.info("Conflict %s ignored by %s", conflict_id, user_id)
        self.log_manager.log(
            "conflict_ignored",
            store_id=row.store_id,
            entity_type=row.entity_type,
            batch_id=row.sync_batch_id,
            details={"conflict_id": conflict_id, "user_id": user_id},
        )
        return row

    def purge_resolved(self, older_than_days: int = 90, now: Optional[datetime] = None) -> int:
        """Delete resolved conflicts older than the cutoff. Returns the count."""
        cutoff = (as_utc(now) or utcnow()) - timedelta(days=older_than_days)
        with self.db.get_session() as session:
            result = session.execute(
                delete(SyncConflict).where(
                    SyncConflict.is_resolved.is_(True),
                    SyncConflict.resolved_at < cutoff,
                )
            )
            return result.rowcount

    def _open_conflict(self, conflict_id: int, user_id: str) -> SyncConflict:
        if not user_id or not user_id.strip():
            raise ConflictResolutionError("Manual resolution requires a user id")
        conflict = self.get_conflict(conflict_id)
        if conflict is None:
            raise NotFoundError(f"Conflict {conflict_id} not found")
        if conflict.is_resolved:
            raise ConflictResolutionError(f"Conflict {conflict_id} is already resolved")
        return conflict
