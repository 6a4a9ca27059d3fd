"""Pytest configuration and shared fixtures.

This module provides fixtures for testing storesync: temporary databases,
node configurations for HQ and store roles, seeded rule tables, in-memory
repositories and a loopback-connected HQ/store engine pair.
"""

import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Generator

import pytest

from storesync.config import Config, reset_config
from storesync.db.sqlite import Database, reset_db
from storesync.engine import SyncEngine
from storesync.queue.manager import ChangeQueue
from storesync.repository import RepositoryRegistry
from storesync.rules import DEFAULT_RULES, RuleTable
from storesync.transport import LoopbackNetwork, LoopbackTransport

STORE_ID = 1
ENTITY_TYPES = [rule.entity_type for rule in DEFAULT_RULES]


def make_config(db_path: Path, role: str = "store", node_id: int = STORE_ID, **overrides) -> Config:
    """Build a Config without touching the environment."""
    values = dict(
        db_path=Path(db_path),
        node_role=role,
        node_id=node_id,
        sync_interval_seconds=30,
        max_batch_size=10,
        retry_attempts=3,
        retry_delay_seconds=60,
        retry_max_delay_seconds=3600,
        worker_count=2,
        stuck_timeout_minutes=30,
        log_level="INFO",
    )
    values.update(overrides)
    return Config(**values)


def make_database(path: Path) -> Database:
    database = Database(str(path))
    database.create_tables()
    return database


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture(scope="function")
def temp_db_path() -> Generator[Path, None, None]:
    """Create a temporary database file path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)
    yield db_path
    # Cleanup
    if db_path.exists():
        db_path.unlink()


@pytest.fixture(scope="function")
def db(temp_db_path: Path) -> Generator[Database, None, None]:
    """Create a test database instance."""
    reset_db()
    reset_config()

    database = make_database(temp_db_path)
    yield database

    database.engine.dispose()
    reset_db()


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def store_config(temp_db_path: Path) -> Config:
    """Config for store node 1."""
    return make_config(temp_db_path, role="store")


@pytest.fixture
def hq_config(temp_db_path: Path) -> Config:
    """Config for the HQ node."""
    return make_config(temp_db_path, role="hq", node_id=0)


@pytest.fixture
def rules(db: Database, store_config: Config) -> RuleTable:
    """Store-side rule table with the default rules for store 1."""
    table = RuleTable(db, store_config)
    table.ensure_configuration(STORE_ID)
    table.seed_default_rules(STORE_ID)
    return table


@pytest.fixture
def hq_rules(db: Database, hq_config: Config) -> RuleTable:
    """HQ-side rule table with the default rules for store 1."""
    table = RuleTable(db, hq_config)
    table.ensure_configuration(STORE_ID)
    table.seed_default_rules(STORE_ID)
    return table


@pytest.fixture
def queue(db: Database, rules: RuleTable) -> ChangeQueue:
    """Store-side change queue."""
    return ChangeQueue(db, rules)


@pytest.fixture
def repositories() -> RepositoryRegistry:
    """In-memory repositories for every default entity type."""
    return RepositoryRegistry.in_memory(ENTITY_TYPES)


@pytest.fixture
def base_time() -> datetime:
    """A fixed point in the past, well before any utcnow() in the tests."""
    return datetime(2025, 1, 15, 12, 0, 0)


@pytest.fixture
def t(base_time: datetime):
    """Minute offsets from base_time: t(2) is base_time + 2 minutes."""

    def offset(minutes: float) -> datetime:
        return base_time + timedelta(minutes=minutes)

    return offset


# ============================================================================
# Engine Pair Fixtures
# ============================================================================


@dataclass
class SyncPair:
    """HQ and store 1 engines joined by a loopback network."""

    network: LoopbackNetwork
    hq: SyncEngine
    store: SyncEngine
    hq_transport: LoopbackTransport
    store_transport: LoopbackTransport
    hq_repos: RepositoryRegistry
    store_repos: RepositoryRegistry


@pytest.fixture
def sync_pair() -> Generator[SyncPair, None, None]:
    """Two nodes with separate databases, seeded with the default rules."""
    reset_db()
    reset_config()

    with tempfile.TemporaryDirectory() as tmp:
        tmp_path = Path(tmp)
        hq_db = make_database(tmp_path / "hq.db")
        store_db = make_database(tmp_path / "store.db")

        network = LoopbackNetwork()
        hq_transport = network.transport_for_hq()
        store_transport = network.transport_for_store(STORE_ID)
        hq_repos = RepositoryRegistry.in_memory(ENTITY_TYPES)
        store_repos = RepositoryRegistry.in_memory(ENTITY_TYPES)

        hq = SyncEngine(
            hq_db, make_config(tmp_path / "hq.db", role="hq", node_id=0), hq_transport, hq_repos
        )
        store = SyncEngine(
            store_db, make_config(tmp_path / "store.db", role="store"), store_transport, store_repos
        )
        network.attach_hq(hq)
        network.attach_store(STORE_ID, store)

        for engine in (hq, store):
            engine.rules.ensure_configuration(STORE_ID)
            engine.rules.seed_default_rules(STORE_ID)

        yield SyncPair(
            network=network,
            hq=hq,
            store=store,
            hq_transport=hq_transport,
            store_transport=store_transport,
            hq_repos=hq_repos,
            store_repos=store_repos,
        )

        hq_db.engine.dispose()
        store_db.engine.dispose()
