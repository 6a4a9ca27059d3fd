"""Tests for the CLI interface."""

import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from typer.testing import CliRunner

from storesync.cli import app
from storesync.config import get_config, reset_config
from storesync.conflicts.manager import ConflictManager
from storesync.db.schemas import ConflictWinner
from storesync.db.sqlite import get_db, reset_db
from storesync.engine import SyncEngine
from storesync.queue.manager import ChangeQueue
from storesync.repository import RepositoryRegistry, VersionedValue
from storesync.rules import RuleTable
from storesync.timeutils import utcnow


@pytest.fixture(autouse=True)
def setup_test_db():
    """Set up a test database for each test."""
    reset_db()
    reset_config()

    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    os.environ["STORESYNC_DB_PATH"] = db_path
    os.environ["STORESYNC_NODE_ROLE"] = "store"

    yield

    # Cleanup
    reset_db()
    reset_config()
    for name in ("STORESYNC_DB_PATH", "STORESYNC_NODE_ROLE"):
        os.environ.pop(name, None)
    if Path(db_path).exists():
        Path(db_path).unlink()


def _manager() -> ConflictManager:
    return ConflictManager(get_db(str(get_config().db_path)))


@pytest.fixture
def runner():
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def initialized(runner: CliRunner):
    """Store 1 configured with the default rules."""
    result = runner.invoke(app, ["init", "1"])
    assert result.exit_code == 0
    return result


@pytest.fixture
def open_conflict(initialized):
    """A manual conflict waiting for an operator."""
    manager = ConflictManager(get_db(str(get_config().db_path)))
    return manager.record(
        store_id=1,
        batch_id=1,
        record_id=1,
        entity_type="loyalty_member",
        entity_id="m1",
        local=VersionedValue({"points": 10}, datetime(2025, 1, 15, 12, 0)),
        remote=VersionedValue({"points": 12}, datetime(2025, 1, 15, 12, 5)),
        policy=ConflictWinner.MANUAL,
        flagged_for_review=True,
    )


class TestCLIBasics:
    """Tests for basic CLI functionality."""

    def test_help(self, runner: CliRunner):
        """Test that help command works."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Store and HQ data synchronization" in result.stdout

    def test_version(self, runner: CliRunner):
        """Test version command."""
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.stdout


class TestSetupCommands:
    """Tests for init, config and rules commands."""

    def test_init(self, initialized):
        assert "Store 1 configured (7 rules installed)" in initialized.stdout

    def test_config_show(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["config", "show", "1"])
        assert result.exit_code == 0
        assert "Max batch size" in result.stdout

    def test_config_show_unknown(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["config", "show", "9"])
        assert result.exit_code == 1

    def test_config_set(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["config", "set", "1", "--interval", "120", "--disabled"])
        assert result.exit_code == 0
        assert "configuration updated" in result.stdout

        stored = RuleTable(get_db(str(get_config().db_path)), get_config()).get_configuration(1)
        assert stored.sync_interval_seconds == 120
        assert stored.is_enabled is False

    def test_rules_list(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["rules", "list", "1"])
        assert result.exit_code == 0
        assert "receipt" in result.stdout
        assert "category" in result.stdout

    def test_rules_seed_again(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["rules", "seed", "1"])
        assert result.exit_code == 0
        assert "Installed 0 rules for store 1" in result.stdout

    def test_rules_disable_unknown(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["rules", "disable", "1", "spaceship"])
        assert result.exit_code == 1


class TestQueueCommands:
    """Tests for enqueue, queue, failed, retry and cancel."""

    def test_enqueue(self, runner: CliRunner, initialized):
        result = runner.invoke(
            app, ["enqueue", "1", "product", "42", "--payload", '{"name": "Cola"}']
        )
        assert result.exit_code == 0
        assert "Queued update product:42" in result.stdout

    def test_enqueue_inbound_only(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["enqueue", "1", "category", "3"])
        assert result.exit_code == 0
        assert "not queued" in result.stdout

    def test_enqueue_bad_payload(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["enqueue", "1", "product", "42", "--payload", "[1]"])
        assert result.exit_code == 1

    def test_enqueue_bad_priority(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["enqueue", "1", "product", "42", "--priority", "urgent"])
        assert result.exit_code == 1

    def test_enqueue_unknown_type(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["enqueue", "1", "spaceship", "1"])
        assert result.exit_code == 1

    def test_queue_summary(self, runner: CliRunner, initialized):
        runner.invoke(app, ["enqueue", "1", "receipt", "1", "--operation", "create"])
        runner.invoke(app, ["enqueue", "1", "receipt", "2", "--operation", "create"])

        result = runner.invoke(app, ["queue", "--store", "1"])
        assert result.exit_code == 0
        assert "pending: 2" in result.stdout

    def test_queue_shows_items_due_for_retry(self, runner: CliRunner, initialized):
        runner.invoke(app, ["enqueue", "1", "receipt", "1", "--operation", "create"])
        db = get_db(str(get_config().db_path))
        queue = ChangeQueue(db, RuleTable(db, get_config()))
        queue.claim(1, "receipt", 10)
        queue.mark_failed(1, "timeout", now=utcnow() - timedelta(hours=2))

        result = runner.invoke(app, ["queue", "--store", "1"])
        assert result.exit_code == 0
        assert "Due for retry: 1" in result.stdout

    def test_empty_queue(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["queue"])
        assert result.exit_code == 0
        assert "Queue is empty." in result.stdout

    def test_failed_empty(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["failed"])
        assert result.exit_code == 0
        assert "No failed items." in result.stdout

    def test_cancel(self, runner: CliRunner, initialized):
        runner.invoke(app, ["enqueue", "1", "receipt", "1"])
        result = runner.invoke(app, ["cancel", "1"])
        assert result.exit_code == 0
        assert "Item 1 cancelled" in result.stdout

        result = runner.invoke(app, ["cancel", "1"])
        assert result.exit_code == 0

    def test_retry_requires_failed_item(self, runner: CliRunner, initialized):
        runner.invoke(app, ["enqueue", "1", "receipt", "1"])
        result = runner.invoke(app, ["retry", "1"])
        assert result.exit_code == 1

    def test_retry_unknown_item(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["retry", "99"])
        assert result.exit_code == 1


class TestConflictCommands:
    """Tests for the conflicts command group."""

    def test_list_empty(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["conflicts", "list"])
        assert result.exit_code == 0
        assert "No conflicts." in result.stdout

    def test_list_and_show(self, runner: CliRunner, open_conflict):
        result = runner.invoke(app, ["conflicts", "list", "--flagged"])
        assert result.exit_code == 0
        assert "Conflicts" in result.stdout

        result = runner.invoke(app, ["conflicts", "show", str(open_conflict.id)])
        assert result.exit_code == 0
        assert "points" in result.stdout

    def test_resolve_keep_remote(self, runner: CliRunner, open_conflict):
        result = runner.invoke(
            app, ["conflicts", "resolve", str(open_conflict.id), "--user", "ops", "--keep", "remote"]
        )
        assert result.exit_code == 0
        assert "decision recorded by ops" in result.stdout

        stored = _manager().get_conflict(open_conflict.id)
        assert stored.is_resolved is False
        assert stored.pending_decision == "resolve"
        assert stored.pending_value == {"points": 12}

    def test_resolution_applied_by_engine(self, runner: CliRunner, open_conflict):
        runner.invoke(
            app, ["conflicts", "resolve", str(open_conflict.id), "--user", "ops", "--keep", "remote"]
        )
        repos = RepositoryRegistry.in_memory(["loyalty_member"])
        engine = SyncEngine(get_db(str(get_config().db_path)), get_config(), repositories=repos)

        assert engine.apply_pending_decisions(1) == 1
        assert repos.get("loyalty_member").get("m1").payload == {"points": 12}
        stored = _manager().get_conflict(open_conflict.id)
        assert stored.is_resolved is True
        assert stored.resolved_by_user_id == "ops"
        assert stored.pending_decision is None

        again = runner.invoke(
            app, ["conflicts", "resolve", str(open_conflict.id), "--user", "ops", "--keep", "remote"]
        )
        assert again.exit_code == 1

    def test_second_decision_replaces_first(self, runner: CliRunner, open_conflict):
        runner.invoke(
            app, ["conflicts", "resolve", str(open_conflict.id), "--user", "ops", "--keep", "remote"]
        )
        result = runner.invoke(
            app, ["conflicts", "resolve", str(open_conflict.id), "--user", "lead", "--payload", '{"points": 11}']
        )
        assert result.exit_code == 0

        stored = _manager().get_conflict(open_conflict.id)
        assert stored.pending_user_id == "lead"
        assert stored.pending_value == {"points": 11}

    def test_resolve_needs_a_value(self, runner: CliRunner, open_conflict):
        result = runner.invoke(app, ["conflicts", "resolve", str(open_conflict.id), "--user", "ops"])
        assert result.exit_code == 1

    def test_ignore(self, runner: CliRunner, open_conflict):
        result = runner.invoke(app, ["conflicts", "ignore", str(open_conflict.id), "--user", "ops"])
        assert result.exit_code == 0
        assert "ignored on the next sync cycle" in result.stdout
        assert _manager().get_conflict(open_conflict.id).pending_decision == "ignore"

        engine = SyncEngine(
            get_db(str(get_config().db_path)),
            get_config(),
            repositories=RepositoryRegistry.in_memory(["loyalty_member"]),
        )
        assert engine.apply_pending_decisions() == 1
        stored = _manager().get_conflict(open_conflict.id)
        assert stored.is_resolved is True
        assert stored.is_ignored is True

    def test_bulk_resolve(self, runner: CliRunner, open_conflict):
        result = runner.invoke(
            app,
            ["conflicts", "bulk-resolve", str(open_conflict.id), "77", "--user", "ops", "--keep", "local"],
        )
        assert result.exit_code == 0
        assert "Decision recorded for 1 of 2 conflicts" in result.stdout
        assert _manager().get_conflict(open_conflict.id).pending_value == {"points": 10}

    def test_bulk_resolve_bad_side(self, runner: CliRunner, open_conflict):
        result = runner.invoke(
            app, ["conflicts", "bulk-resolve", str(open_conflict.id), "--user", "ops", "--keep", "both"]
        )
        assert result.exit_code == 1

    def test_show_unknown(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["conflicts", "show", "42"])
        assert result.exit_code == 1


class TestBatchCommands:
    """Tests for the batches command group and cleanup."""

    def test_list_empty(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["batches", "list"])
        assert result.exit_code == 0
        assert "No batches." in result.stdout

    def test_list_show_and_cancel(self, runner: CliRunner, initialized):
        runner.invoke(app, ["enqueue", "1", "receipt", "1", "--operation", "create"])
        engine = SyncEngine(get_db(str(get_config().db_path)), get_config())
        batch = engine.assembler.assemble(1, "receipt")

        result = runner.invoke(app, ["batches", "list", "--store", "1", "--status", "pending"])
        assert result.exit_code == 0
        assert "receipt" in result.stdout

        result = runner.invoke(app, ["batches", "show", str(batch.id)])
        assert result.exit_code == 0
        assert "receipt:1" in result.stdout

        result = runner.invoke(app, ["batches", "cancel", str(batch.id)])
        assert result.exit_code == 0
        assert f"Batch {batch.id} (receipt) cancelled" in result.stdout

        again = runner.invoke(app, ["batches", "cancel", str(batch.id)])
        assert again.exit_code == 1

    def test_list_bad_status(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["batches", "list", "--status", "lost"])
        assert result.exit_code == 1

    def test_show_unknown(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["batches", "show", "42"])
        assert result.exit_code == 1

    def test_cancel_unknown(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["batches", "cancel", "42"])
        assert result.exit_code == 1

    def test_cleanup(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["cleanup", "--days", "7"])
        assert result.exit_code == 0
        assert "batches: 0" in result.stdout
        assert "Removed" in result.stdout


class TestHealthCommands:
    """Tests for status and logs."""

    def test_status_all(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "Sync Health" in result.stdout

    def test_status_store(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["status", "1"])
        assert result.exit_code == 0
        assert "HEALTHY" in result.stdout

    def test_status_unknown_store(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["status", "9"])
        assert result.exit_code == 1

    def test_logs(self, runner: CliRunner, initialized):
        runner.invoke(app, ["enqueue", "1", "receipt", "1"])
        runner.invoke(app, ["cancel", "1"])

        result = runner.invoke(app, ["logs", "--store", "1"])
        assert result.exit_code == 0
        assert "cancel" in result.stdout

    def test_logs_errors_empty(self, runner: CliRunner, initialized):
        result = runner.invoke(app, ["logs", "--errors"])
        assert result.exit_code == 0
        assert "No log entries." in result.stdout
