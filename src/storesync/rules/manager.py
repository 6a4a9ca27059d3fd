"""Entity rule table: per-store sync configuration and entity rules.

Rules are looked up on every enqueue and every applied record, so reads go
through a per-store cache keyed by entity type. Any rule write drops the
store's cache entry.
"""

import logging
import threading
from datetime import datetime
from typing import Optional

from sqlalchemy import select

from ..config import Config, get_config
from ..db.models import SyncConfiguration, SyncEntityRule
from ..db.schemas import (
    ConflictWinner,
    EntityRuleCreate,
    EntityRuleResponse,
    SyncConfigurationUpdate,
    SyncDirection,
)
from ..db.sqlite import Database, get_db
from ..errors import NotFoundError
from ..timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

UPLOAD_DIRECTIONS = frozenset({SyncDirection.UPLOAD.value, SyncDirection.BIDIRECTIONAL.value})
DOWNLOAD_DIRECTIONS = frozenset({SyncDirection.DOWNLOAD.value, SyncDirection.BIDIRECTIONAL.value})


# Lower priority value is synced first among items of the same priority tier.
DEFAULT_RULES: list[EntityRuleCreate] = [
    EntityRuleCreate(
        entity_type="receipt",
        direction=SyncDirection.UPLOAD,
        conflict_resolution=ConflictWinner.STORE,
        priority=10,
    ),
    EntityRuleCreate(
        entity_type="order",
        direction=SyncDirection.UPLOAD,
        conflict_resolution=ConflictWinner.STORE,
        priority=10,
    ),
    EntityRuleCreate(
        entity_type="product",
        direction=SyncDirection.BIDIRECTIONAL,
        conflict_resolution=ConflictWinner.HQ,
        priority=30,
    ),
    EntityRuleCreate(
        entity_type="category",
        direction=SyncDirection.DOWNLOAD,
        conflict_resolution=ConflictWinner.HQ,
        priority=30,
    ),
    EntityRuleCreate(
        entity_type="inventory",
        direction=SyncDirection.BIDIRECTIONAL,
        conflict_resolution=ConflictWinner.LATEST_TIMESTAMP,
        priority=40,
    ),
    EntityRuleCreate(
        entity_type="stock_movement",
        direction=SyncDirection.UPLOAD,
        conflict_resolution=ConflictWinner.STORE,
        priority=40,
    ),
    EntityRuleCreate(
        entity_type="loyalty_member",
        direction=SyncDirection.BIDIRECTIONAL,
        conflict_resolution=ConflictWinner.MANUAL,
        priority=50,
        flag_conflicts_for_review=True,
    ),
]


class RuleTable:
    """Manages store sync configurations and their entity rules."""

    def __init__(self, db: Optional[Database] = None, config: Optional[Config] = None):
        """Initialize rule table.

        Args:
            db: Database instance
            config: Node config supplying defaults for new store configurations
        """
        self.db = db or get_db()
        self.config = config or get_config()
        self._cache: dict[int, dict[str, EntityRuleResponse]] = {}
        self._cache_lock = threading.Lock()
        # Bumped on every rule write so a load that raced a write is not cached
        self._generations: dict[int, int] = {}

    # -------------------------------------------------------------------------
    # Store configuration
    # -------------------------------------------------------------------------

    def get_configuration(self, store_id: int) -> Optional[SyncConfiguration]:
        """Get the sync configuration for a store, or None."""
        with self.db.get_session() as session:
            stmt = select(SyncConfiguration).where(SyncConfiguration.store_id == store_id)
            config = session.execute(stmt).scalar_one_or_none()
            if config:
                session.expunge(config)
            return config

    def ensure_configuration(self, store_id: int, **overrides) -> SyncConfiguration:
        """Get the store configuration, creating it from node defaults if absent.

        Args:
            store_id: Store identifier
            **overrides: Column values used instead of the node defaults on create

        Returns:
            Existing or newly created configuration
        """
        existing = self.get_configuration(store_id)
        if existing:
            return existing

        values = {
            "sync_interval_seconds": self.config.sync_interval_seconds,
            "max_batch_size": self.config.max_batch_size,
            "retry_attempts": self.config.retry_attempts,
            "retry_delay_seconds": self.config.retry_delay_seconds,
        }
        values.update(overrides)

        with self.db.get_session() as session:
            config = SyncConfiguration(store_id=store_id, **values)
            session.add(config)
            session.commit()
            session.refresh(config)
            session.expunge(config)

        logger.info("Created sync configuration for store %s", store_id)
        return config

    def update_configuration(
        self, store_id: int, data: SyncConfigurationUpdate
    ) -> SyncConfiguration:
        """Apply an operator update to a store configuration.

        Raises:
            NotFoundError: If the store has no configuration
        """
        with self.db.get_session() as session:
            config = self._load_configuration(session, store_id)
            for field, value in data.model_dump(exclude_unset=True).items():
                if value is not None and hasattr(config, field):
                    setattr(config, field, value)
            session.commit()
            session.refresh(config)
            session.expunge(config)
            return config

    def set_enabled(self, store_id: int, enabled: bool) -> SyncConfiguration:
        """Enable or disable sync for a whole store."""
        return self.update_configuration(store_id, SyncConfigurationUpdate(is_enabled=enabled))

    def list_configurations(self) -> list[SyncConfiguration]:
        """List every store configuration ordered by store id."""
        with self.db.get_session() as session:
            stmt = select(SyncConfiguration).order_by(SyncConfiguration.store_id)
            configs = session.execute(stmt).scalars().all()
            for c in configs:
                session.expunge(c)
            return list(configs)

    def record_attempt(
        self,
        store_id: int,
        success: bool,
        error: Optional[str] = None,
        when: Optional[datetime] = None,
    ) -> None:
        """Stamp the health fields after a sync cycle."""
        when = as_utc(when) or utcnow()
        with self.db.get_session() as session:
            config = self._load_configuration(session, store_id)
            config.last_attempted_sync = when
            if success:
                config.last_successful_sync = when
                config.last_sync_error = None
            else:
                config.last_sync_error = (error or "unknown error")[:1000]

    # -------------------------------------------------------------------------
    # Entity rules
    # -------------------------------------------------------------------------

    def rule_for(self, store_id: int, entity_type: str) -> Optional[EntityRuleResponse]:
        """Look up the rule for an entity type of a store.

        Returns:
            Rule snapshot, or None if the type is unknown to this store
        """
        with self._cache_lock:
            rules = self._cache.get(store_id)
            generation = self._generations.get(store_id, 0)
        if rules is None:
            rules = {rule.entity_type: rule for rule in self._load_rules(store_id)}
            with self._cache_lock:
                if self._generations.get(store_id, 0) == generation:
                    self._cache[store_id] = rules
        return rules.get(entity_type)

    def list_rules(self, store_id: int) -> list[EntityRuleResponse]:
        """List a store's rules, lowest priority value first."""
        return sorted(self._load_rules(store_id), key=lambda r: (r.priority, r.entity_type))

    def set_rule(self, store_id: int, data: EntityRuleCreate) -> EntityRuleResponse:
        """Create or replace the rule for an entity type.

        The store configuration is created with node defaults when missing.
        The sync cursor of an existing rule is preserved.
        """
        config = self.ensure_configuration(store_id)
        with self.db.get_session() as session:
            stmt = select(SyncEntityRule).where(
                SyncEntityRule.sync_configuration_id == config.id,
                SyncEntityRule.entity_type == data.entity_type,
            )
            rule = session.execute(stmt).scalar_one_or_none()
            if rule is None:
                rule = SyncEntityRule(
                    sync_configuration_id=config.id, entity_type=data.entity_type
                )
                session.add(rule)

            rule.direction = data.direction.value
            rule.conflict_resolution = data.conflict_resolution.value
            rule.priority = data.priority
            rule.is_enabled = data.is_enabled
            rule.flag_conflicts_for_review = data.flag_conflicts_for_review
            session.commit()
            session.refresh(rule)
            response = self._to_response(rule)

        self._invalidate(store_id)
        logger.info(
            "Rule set for store %s: %s %s/%s",
            store_id,
            data.entity_type,
            data.direction.value,
            data.conflict_resolution.value,
        )
        return response

    def set_rule_enabled(self, store_id: int, entity_type: str, enabled: bool) -> EntityRuleResponse:
        """Enable or disable one entity type.

        Batches already assembled for the type are not touched; disabling
        only stops new items from being enqueued or assembled.

        Raises:
            NotFoundError: If the store has no rule for the type
        """
        with self.db.get_session() as session:
            rule = self._load_rule(session, store_id, entity_type)
            rule.is_enabled = enabled
            session.commit()
            session.refresh(rule)
            response = self._to_response(rule)

        self._invalidate(store_id)
        logger.info(
            "Rule %s for store %s %s", entity_type, store_id, "enabled" if enabled else "disabled"
        )
        return response

    def remove_rule(self, store_id: int, entity_type: str) -> bool:
        """Delete a rule. Returns False if it did not exist."""
        with self.db.get_session() as session:
            try:
                rule = self._load_rule(session, store_id, entity_type)
            except NotFoundError:
                return False
            session.delete(rule)

        self._invalidate(store_id)
        return True

    def seed_default_rules(self, store_id: int, overwrite: bool = False) -> int:
        """Install DEFAULT_RULES for a store.

        Args:
            store_id: Store identifier
            overwrite: Replace rules that already exist

        Returns:
            Number of rules written
        """
        written = 0
        for rule in DEFAULT_RULES:
            if not overwrite and self.rule_for(store_id, rule.entity_type) is not None:
                continue
            self.set_rule(store_id, rule)
            written += 1
        return written

    @property
    def outbound_directions(self) -> frozenset[str]:
        """Rule directions this node sends. A store uploads, HQ downloads."""
        return DOWNLOAD_DIRECTIONS if self.config.is_hq else UPLOAD_DIRECTIONS

    @property
    def inbound_directions(self) -> frozenset[str]:
        """Rule directions this node accepts from its peer."""
        return UPLOAD_DIRECTIONS if self.config.is_hq else DOWNLOAD_DIRECTIONS

    def is_enqueue_allowed(self, store_id: int, entity_type: str) -> bool:
        """True if new changes of this type may enter the store's queue.

        The rule must exist, be enabled and flow outbound from this node.
        """
        rule = self.rule_for(store_id, entity_type)
        return bool(
            rule and rule.is_enabled and rule.direction.value in self.outbound_directions
        )

    def accepts_inbound(self, store_id: int, entity_type: str) -> bool:
        """True if records of this type may be applied from the peer.

        Enablement is not checked so that batches already in flight still
        apply after a rule is disabled.
        """
        rule = self.rule_for(store_id, entity_type)
        return bool(rule and rule.direction.value in self.inbound_directions)

    # -------------------------------------------------------------------------
    # Cursor
    # -------------------------------------------------------------------------

    def get_cursor(self, store_id: int, entity_type: str) -> Optional[datetime]:
        """Newest timestamp both sides agreed on for this (store, entity type)."""
        rule = self.rule_for(store_id, entity_type)
        return rule.last_synced_at if rule else None

    def advance_cursor(self, store_id: int, entity_type: str, timestamp: datetime) -> None:
        """Move the cursor forward. Older timestamps are ignored."""
        timestamp = as_utc(timestamp)
        with self.db.get_session() as session:
            rule = self._load_rule(session, store_id, entity_type)
            if rule.last_synced_at is None or timestamp > rule.last_synced_at:
                rule.last_synced_at = timestamp
            else:
                return
        self._invalidate(store_id)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _invalidate(self, store_id: int) -> None:
        with self._cache_lock:
            self._cache.pop(store_id, None)
            self._generations[store_id] = self._generations.get(store_id, 0) + 1

    def _load_rules(self, store_id: int) -> list[EntityRuleResponse]:
        with self.db.get_session() as session:
            stmt = (
                select(SyncEntityRule)
                .join(
                    SyncConfiguration,
                    SyncConfiguration.id == SyncEntityRule.sync_configuration_id,
                )
                .where(SyncConfiguration.store_id == store_id)
            )
            return [self._to_response(r) for r in session.execute(stmt).scalars().all()]

    def _load_configuration(self, session, store_id: int) -> SyncConfiguration:
        stmt = select(SyncConfiguration).where(SyncConfiguration.store_id == store_id)
        config = session.execute(stmt).scalar_one_or_none()
        if config is None:
            raise NotFoundError(f"No sync configuration for store {store_id}")
        return config

    def _load_rule(self, session, store_id: int, entity_type: str) -> SyncEntityRule:
        stmt = (
            select(SyncEntityRule)
            .join(
                SyncConfiguration,
                SyncConfiguration.id == SyncEntityRule.sync_configuration_id,
            )
            .where(
                SyncConfiguration.store_id == store_id,
                SyncEntityRule.entity_type == entity_type,
            )
        )
        rule = session.execute(stmt).scalar_one_or_none()
        if rule is None:
            raise NotFoundError(f"No rule for {entity_type!r} on store {store_id}")
        return rule

    @staticmethod
    def _to_response(rule: SyncEntityRule) -> EntityRuleResponse:
        return EntityRuleResponse.model_validate(rule)
