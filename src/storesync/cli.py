"""Command-line interface for storesync.

Operator tools for inspecting and steering a node: store configurations,
entity rules, the change queue, dead letters, batches, conflicts and sync
health.
Built with Typer for commands and Rich for output.
"""

import json
from typing import Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import get_config
from .db import get_db
from .db.schemas import (
    ConflictWinner,
    SyncBatchStatus,
    SyncConfigurationUpdate,
    SyncDirection,
    SyncHealthStatus,
    SyncOperation,
    SyncPriority,
)
from .errors import SyncError

# Create the main app
app = typer.Typer(
    name="storesync",
    help="Store and HQ data synchronization.",
    no_args_is_help=True,
)

# Create sub-apps for command groups
config_app = typer.Typer(help="Show and change store sync configurations.")
app.add_typer(config_app, name="config")

rules_app = typer.Typer(help="Manage per-store entity rules.")
app.add_typer(rules_app, name="rules")

conflicts_app = typer.Typer(help="Review and resolve sync conflicts.")
app.add_typer(conflicts_app, name="conflicts")

batches_app = typer.Typer(help="Inspect and cancel sync batches.")
app.add_typer(batches_app, name="batches")

# Rich console for pretty output
console = Console()

HEALTH_STYLES = {
    SyncHealthStatus.HEALTHY: "green",
    SyncHealthStatus.WARNING: "yellow",
    SyncHealthStatus.DEGRADED: "dark_orange",
    SyncHealthStatus.CRITICAL: "bold red",
}


# ============================================================================
# Helper Functions
# ============================================================================


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[bold red]Error:[/bold red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[bold green]Success:[/bold green] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[bold yellow]Warning:[/bold yellow] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[dim]{message}[/dim]")


def _db():
    return get_db(str(get_config().db_path))


def _rules():
    from .rules import RuleTable

    return RuleTable(_db(), get_config())


def _queue():
    from .queue.manager import ChangeQueue

    rules = _rules()
    return ChangeQueue(rules.db, rules)


def _conflicts():
    from .conflicts.manager import ConflictManager

    return ConflictManager(_db())


def _logs():
    from .logs.manager import SyncLogManager

    return SyncLogManager(_db())


def _batches():
    from .batches import BatchHistory

    return BatchHistory(_db())


def _engine():
    from .engine import SyncEngine

    return SyncEngine(_db(), get_config())


def _parse_payload(raw: Optional[str]) -> Optional[dict[str, Any]]:
    if raw is None:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        print_error(f"Invalid JSON payload: {e}")
        raise typer.Exit(1)
    if not isinstance(payload, dict):
        print_error("Payload must be a JSON object")
        raise typer.Exit(1)
    return payload


def _fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def format_queue_table(items: list, title: str = "Queue") -> Table:
    """Create a rich table for displaying queue items."""
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("ID", justify="right")
    table.add_column("Store", justify="right")
    table.add_column("Entity", style="cyan")
    table.add_column("Op", style="green")
    table.add_column("Priority", justify="center")
    table.add_column("Status", style="yellow")
    table.add_column("Retries", justify="center")
    table.add_column("Last error", max_width=40)

    for item in items:
        table.add_row(
            str(item.id),
            str(item.store_id),
            f"{item.entity_type}:{item.entity_id}",
            item.operation,
            SyncPriority(item.priority).name.lower(),
            item.status,
            f"{item.retry_count}/{item.max_retries}",
            item.last_error or "-",
        )

    return table


# ============================================================================
# Setup Commands
# ============================================================================


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Store and HQ data synchronization."""
    from .logging_setup import configure_logging

    configure_logging("DEBUG" if verbose else get_config().log_level)


@app.command()
def init(
    store_ids: list[int] = typer.Argument(..., help="Stores to configure"),
    seed: bool = typer.Option(True, "--seed/--no-seed", help="Install the default entity rules"),
) -> None:
    """Create the database and a sync configuration for each store."""
    config = get_config()
    problems = config.validate()
    if problems:
        for problem in problems:
            print_error(problem)
        raise typer.Exit(1)

    rules = _rules()
    for store_id in store_ids:
        rules.ensure_configuration(store_id)
        written = rules.seed_default_rules(store_id) if seed else 0
        print_success(f"Store {store_id} configured ({written} rules installed)")
    print_info(f"Database: {config.db_path} (role: {config.node_role})")


# ============================================================================
# Configuration Commands
# ============================================================================


@config_app.command("show")
def config_show(
    store_id: Optional[int] = typer.Argument(None, help="Store to show, all stores if omitted"),
) -> None:
    """Show store sync configurations."""
    rules = _rules()

    if store_id is None:
        node = get_config()
        console.print(
            f"[bold]Node:[/bold] {node.node_role} #{node.node_id}  [dim]{node.db_path}[/dim]"
        )
        configs = rules.list_configurations()
        if not configs:
            print_info("No stores configured. Run 'storesync init STORE_ID'.")
            return

        table = Table(title="Store Configurations", show_header=True, header_style="bold magenta")
        table.add_column("Store", justify="right")
        table.add_column("Enabled", justify="center")
        table.add_column("Interval", justify="right")
        table.add_column("Batch", justify="right")
        table.add_column("Retries", justify="right")
        table.add_column("Last success")
        for c in configs:
            table.add_row(
                str(c.store_id),
                "[green]yes[/green]" if c.is_enabled else "[red]no[/red]",
                f"{c.sync_interval_seconds}s",
                str(c.max_batch_size),
                f"{c.retry_attempts} x {c.retry_delay_seconds}s",
                _fmt_time(c.last_successful_sync),
            )
        console.print(table)
        return

    c = rules.get_configuration(store_id)
    if c is None:
        print_error(f"Store {store_id} has no sync configuration")
        raise typer.Exit(1)

    lines = [
        f"[bold]Enabled:[/bold] {c.is_enabled}",
        f"[bold]Auto sync on startup:[/bold] {c.auto_sync_on_startup}",
        f"[bold]Interval:[/bold] {c.sync_interval_seconds}s",
        f"[bold]Max batch size:[/bold] {c.max_batch_size}",
        f"[bold]Retry attempts:[/bold] {c.retry_attempts}",
        f"[bold]Retry delay:[/bold] {c.retry_delay_seconds}s",
        f"[bold]Last successful sync:[/bold] {_fmt_time(c.last_successful_sync)}",
        f"[bold]Last attempted sync:[/bold] {_fmt_time(c.last_attempted_sync)}",
    ]
    if c.last_sync_error:
        lines.append(f"[bold]Last error:[/bold] [red]{c.last_sync_error}[/red]")
    console.print(Panel("\n".join(lines), title=f"Store {store_id}", border_style="blue"))


@config_app.command("set")
def config_set(
    store_id: int = typer.Argument(..., help="Store to update"),
    interval: Optional[int] = typer.Option(None, "--interval", help="Sync interval in seconds"),
    enabled: Optional[bool] = typer.Option(None, "--enabled/--disabled", help="Enable or disable sync"),
    auto_start: Optional[bool] = typer.Option(
        None, "--auto-start/--no-auto-start", help="Sync as soon as the scheduler starts"
    ),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", help="Max records per batch"),
    retry_attempts: Optional[int] = typer.Option(None, "--retry-attempts", help="Retries before dead letter"),
    retry_delay: Optional[int] = typer.Option(None, "--retry-delay", help="Base retry delay in seconds"),
) -> None:
    """Update a store sync configuration."""
    try:
        update = SyncConfigurationUpdate(
            sync_interval_seconds=interval,
            is_enabled=enabled,
            auto_sync_on_startup=auto_start,
            max_batch_size=batch_size,
            retry_attempts=retry_attempts,
            retry_delay_seconds=retry_delay,
        )
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    try:
        _rules().update_configuration(store_id, update)
    except SyncError as e:
        print_error(str(e))
        raise typer.Exit(1)
    print_success(f"Store {store_id} configuration updated")


# ============================================================================
# Rule Commands
# ============================================================================


@rules_app.command("list")
def rules_list(
    store_id: int = typer.Argument(..., help="Store to list rules for"),
) -> None:
    """List entity rules in sync order."""
    rules = _rules().list_rules(store_id)
    if not rules:
        print_info(f"Store {store_id} has no rules. Run 'storesync rules seed {store_id}'.")
        return

    table = Table(title=f"Rules for store {store_id}", show_header=True, header_style="bold magenta")
    table.add_column("Priority", justify="right")
    table.add_column("Entity type", style="cyan")
    table.add_column("Direction", style="green")
    table.add_column("Conflicts", style="yellow")
    table.add_column("Review", justify="center")
    table.add_column("Enabled", justify="center")
    table.add_column("Last synced")
    for rule in rules:
        table.add_row(
            str(rule.priority),
            rule.entity_type,
            rule.direction.value,
            rule.conflict_resolution.value,
            "yes" if rule.flag_conflicts_for_review else "-",
            "[green]yes[/green]" if rule.is_enabled else "[red]no[/red]",
            _fmt_time(rule.last_synced_at),
        )
    console.print(table)


@rules_app.command("set")
def rules_set(
    store_id: int = typer.Argument(..., help="Store to update"),
    entity_type: str = typer.Argument(..., help="Entity type name"),
    direction: SyncDirection = typer.Option(
        SyncDirection.BIDIRECTIONAL, "--direction", "-d", help="Flow direction"
    ),
    policy: ConflictWinner = typer.Option(ConflictWinner.HQ, "--policy", "-p", help="Conflict policy"),
    priority: int = typer.Option(100, "--priority", help="Lower syncs first"),
    review: bool = typer.Option(False, "--review/--no-review", help="Flag conflicts for review"),
    enabled: bool = typer.Option(True, "--enabled/--disabled", help="Rule enabled"),
) -> None:
    """Create or replace an entity rule."""
    from .db.schemas import EntityRuleCreate

    rule = _rules().set_rule(
        store_id,
        EntityRuleCreate(
            entity_type=entity_type,
            direction=direction,
            conflict_resolution=policy,
            priority=priority,
            is_enabled=enabled,
            flag_conflicts_for_review=review,
        ),
    )
    print_success(
        f"Rule {rule.entity_type} for store {store_id}: {rule.direction.value}, "
        f"{rule.conflict_resolution.value} wins"
    )


@rules_app.command("disable")
def rules_disable(
    store_id: int = typer.Argument(..., help="Store to update"),
    entity_type: str = typer.Argument(..., help="Entity type name"),
    enable: bool = typer.Option(False, "--enable", help="Re-enable the rule instead"),
) -> None:
    """Stop (or resume) syncing an entity type for a store."""
    try:
        _rules().set_rule_enabled(store_id, entity_type, enable)
    except SyncError as e:
        print_error(str(e))
        raise typer.Exit(1)
    print_success(f"Rule {entity_type} for store {store_id} {'enabled' if enable else 'disabled'}")


@rules_app.command("seed")
def rules_seed(
    store_id: int = typer.Argument(..., help="Store to seed"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace existing rules"),
) -> None:
    """Install the default entity rules."""
    rules = _rules()
    rules.ensure_configuration(store_id)
    written = rules.seed_default_rules(store_id, overwrite=overwrite)
    print_success(f"Installed {written} rules for store {store_id}")


# ============================================================================
# Queue Commands
# ============================================================================


@app.command()
def enqueue(
    store_id: int = typer.Argument(..., help="Store the change belongs to"),
    entity_type: str = typer.Argument(..., help="Entity type name"),
    entity_id: str = typer.Argument(..., help="Entity id"),
    operation: SyncOperation = typer.Option(SyncOperation.UPDATE, "--operation", "-o", help="Change kind"),
    payload: Optional[str] = typer.Option(None, "--payload", help="Entity data as a JSON object"),
    priority: str = typer.Option("normal", "--priority", help="low, normal, high or critical"),
) -> None:
    """Queue a local change for sync."""
    try:
        tier = SyncPriority[priority.upper()]
    except KeyError:
        print_error(f"Invalid priority: {priority}")
        raise typer.Exit(1)

    data = _parse_payload(payload)
    try:
        item = _queue().enqueue(store_id, entity_type, entity_id, operation, data, tier)
    except SyncError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if item is None:
        print_warning(f"{entity_type} is disabled or inbound only for store {store_id}, not queued")
        return
    print_success(f"Queued {item.operation} {entity_type}:{entity_id} (item {item.id})")


@app.command()
def queue(
    store_id: Optional[int] = typer.Option(None, "--store", "-s", help="Restrict to one store"),
    limit: int = typer.Option(20, "--limit", "-l", help="Pending items to list"),
) -> None:
    """Show queue counts and the next pending items."""
    from .retry import RetryScheduler

    manager = _queue()
    summary = manager.summary(store_id)

    scope = f"store {store_id}" if store_id is not None else "all stores"
    console.print(Panel(f"[bold]Sync queue[/bold] ({scope})", style="blue"))
    if summary.total == 0:
        print_info("Queue is empty.")
        return

    for status, count in sorted(summary.by_status.items()):
        console.print(f"  {status}: {count}")
    if summary.critical_pending:
        print_warning(f"{summary.critical_pending} critical items pending")
    if summary.oldest_pending_at:
        console.print(f"  [dim]Oldest pending: {_fmt_time(summary.oldest_pending_at)}[/dim]")
    due = RetryScheduler(manager.db).due_items(store_id)
    if due:
        console.print(f"  Due for retry: {len(due)}")

    items = manager.pending_items(store_id, limit=limit)
    if items:
        console.print(format_queue_table(items, title="Next pending"))


@app.command()
def failed(
    store_id: Optional[int] = typer.Option(None, "--store", "-s", help="Restrict to one store"),
    limit: int = typer.Option(50, "--limit", "-l", help="Max items"),
) -> None:
    """List dead-lettered queue items."""
    items = _queue().failed_items(store_id, limit=limit)
    if not items:
        print_info("No failed items.")
        return
    console.print(format_queue_table(items, title="Dead letters"))
    print_info("Use 'storesync retry ITEM_ID' to replay an item.")


@app.command()
def retry(
    item_id: int = typer.Argument(..., help="Failed queue item to replay"),
) -> None:
    """Put a dead-lettered item back in the queue with a fresh retry budget."""
    from .retry import RetryScheduler

    try:
        item = RetryScheduler(_db()).requeue(item_id)
    except SyncError as e:
        print_error(str(e))
        raise typer.Exit(1)
    print_success(f"Item {item.id} ({item.entity_type}:{item.entity_id}) requeued")


@app.command()
def cancel(
    item_id: int = typer.Argument(..., help="Queue item to cancel"),
) -> None:
    """Cancel a queued change. It will not be synced."""
    try:
        item = _queue().cancel(item_id)
    except SyncError as e:
        print_error(str(e))
        raise typer.Exit(1)
    print_success(f"Item {item.id} cancelled")


# ============================================================================
# Conflict Commands
# ============================================================================


@conflicts_app.command("list")
def conflicts_list(
    store_id: Optional[int] = typer.Option(None, "--store", "-s", help="Restrict to one store"),
    include_resolved: bool = typer.Option(False, "--all", "-a", help="Include resolved conflicts"),
    flagged: bool = typer.Option(False, "--flagged", help="Only conflicts flagged for review"),
    limit: int = typer.Option(50, "--limit", "-l", help="Max conflicts"),
) -> None:
    """List conflicts, oldest first."""
    conflicts = _conflicts().list_conflicts(store_id, include_resolved, flagged, limit)
    if not conflicts:
        print_info("No conflicts.")
        return

    table = Table(title="Conflicts", show_header=True, header_style="bold magenta")
    table.add_column("ID", justify="right")
    table.add_column("Store", justify="right")
    table.add_column("Entity", style="cyan")
    table.add_column("Policy")
    table.add_column("Resolution", style="yellow")
    table.add_column("Review", justify="center")
    table.add_column("Detected")
    for c in conflicts:
        resolution = c.resolution or "[red]pending[/red]"
        if c.is_ignored:
            resolution = "ignored"
        elif c.pending_decision:
            resolution = f"{c.pending_decision} (next sync)"
        table.add_row(
            str(c.id),
            str(c.store_id),
            f"{c.entity_type}:{c.entity_id}",
            c.policy,
            resolution,
            "yes" if c.flagged_for_review else "-",
            _fmt_time(c.created_at),
        )
    console.print(table)


@conflicts_app.command("show")
def conflicts_show(
    conflict_id: int = typer.Argument(..., help="Conflict to show"),
) -> None:
    """Show both versions of a conflict side by side."""
    from .conflicts.detector import conflicting_fields

    c = _conflicts().get_conflict(conflict_id)
    if c is None:
        print_error(f"Conflict {conflict_id} not found")
        raise typer.Exit(1)

    console.print(
        Panel(
            f"[bold]{c.entity_type}:{c.entity_id}[/bold] (store {c.store_id}, policy {c.policy})",
            style="blue",
        )
    )
    local, remote = c.local_payload, c.remote_payload
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Field", style="cyan")
    table.add_column(f"Local ({_fmt_time(c.local_timestamp)})")
    table.add_column(f"Remote ({_fmt_time(c.remote_timestamp)})")
    for name in conflicting_fields(local, remote):
        table.add_row(
            name,
            json.dumps((local or {}).get(name), default=str),
            json.dumps((remote or {}).get(name), default=str),
        )
    console.print(table)

    if c.is_resolved:
        who = f" by {c.resolved_by_user_id}" if c.resolved_by_user_id else ""
        console.print(f"[green]Resolved ({c.resolution}){who} at {_fmt_time(c.resolved_at)}[/green]")
        if c.resolution_notes:
            console.print(f"[dim]{c.resolution_notes}[/dim]")
    elif c.pending_decision:
        console.print(
            f"[yellow]Decision {c.pending_decision} by {c.pending_user_id} waiting for the next sync[/yellow]"
        )


@conflicts_app.command("resolve")
def conflicts_resolve(
    conflict_id: int = typer.Argument(..., help="Conflict to resolve"),
    user: str = typer.Option(..., "--user", "-u", help="Operator making the decision"),
    keep: Optional[str] = typer.Option(None, "--keep", help="Keep the 'local' or 'remote' version"),
    payload: Optional[str] = typer.Option(None, "--payload", help="Custom value as a JSON object"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n", help="Resolution notes"),
) -> None:
    """Record an operator decision for a conflict.

    The node's engine writes the winning value, acknowledges the peer and
    closes the conflict on its next sync cycle. Deciding again before then
    replaces the earlier decision.
    """
    manager = _conflicts()
    conflict = manager.get_conflict(conflict_id)
    if conflict is None:
        print_error(f"Conflict {conflict_id} not found")
        raise typer.Exit(1)

    if payload is not None:
        winning = _parse_payload(payload)
    elif keep == "local":
        winning = conflict.local_payload
    elif keep == "remote":
        winning = conflict.remote_payload
    else:
        print_error("Pass --keep local|remote or --payload JSON")
        raise typer.Exit(1)

    try:
        manager.queue_decision(conflict_id, user, winning, notes=notes)
    except SyncError as e:
        print_error(str(e))
        raise typer.Exit(1)
    print_success(f"Conflict {conflict_id} decision recorded by {user}")
    print_info("It is applied on the next sync cycle.")


@conflicts_app.command("ignore")
def conflicts_ignore(
    conflict_id: int = typer.Argument(..., help="Conflict to ignore"),
    user: str = typer.Option(..., "--user", "-u", help="Operator making the decision"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n", help="Why it is ignored"),
) -> None:
    """Keep the local value. Applied on the next sync cycle."""
    try:
        _conflicts().queue_decision(conflict_id, user, ignore=True, notes=notes)
    except SyncError as e:
        print_error(str(e))
        raise typer.Exit(1)
    print_success(f"Conflict {conflict_id} will be ignored on the next sync cycle")


@conflicts_app.command("bulk-resolve")
def conflicts_bulk_resolve(
    conflict_ids: list[int] = typer.Argument(..., help="Conflicts to decide"),
    user: str = typer.Option(..., "--user", "-u", help="Operator making the decision"),
    keep: str = typer.Option(..., "--keep", help="Keep the 'local' or 'remote' version"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n", help="Resolution notes"),
) -> None:
    """Record the same decision for many conflicts. Resolved ones are skipped."""
    try:
        count = _conflicts().queue_bulk_decision(conflict_ids, keep, user, notes)
    except SyncError as e:
        print_error(str(e))
        raise typer.Exit(1)
    print_success(f"Decision recorded for {count} of {len(conflict_ids)} conflicts")


# ============================================================================
# Batch Commands
# ============================================================================


@batches_app.command("list")
def batches_list(
    store_id: Optional[int] = typer.Option(None, "--store", "-s", help="Restrict to one store"),
    status_filter: Optional[str] = typer.Option(None, "--status", help="Only batches in this status"),
    active: bool = typer.Option(False, "--active", help="Only batches in progress"),
    failed_only: bool = typer.Option(False, "--failed", help="Only failed batches"),
    limit: int = typer.Option(30, "--limit", "-l", help="Max batches"),
) -> None:
    """List batches, newest first."""
    history = _batches()
    if active:
        batches = history.active_batches(store_id)
    elif failed_only:
        batches = history.failed_batches(store_id)
    else:
        try:
            batch_status = SyncBatchStatus(status_filter) if status_filter else None
        except ValueError:
            valid = ", ".join(s.value for s in SyncBatchStatus)
            print_error(f"Invalid status '{status_filter}'. Use one of: {valid}")
            raise typer.Exit(1)
        batches = history.list_batches(store_id, batch_status, limit)

    if not batches:
        print_info("No batches.")
        return

    table = Table(title="Batches", show_header=True, header_style="bold magenta")
    table.add_column("ID", justify="right")
    table.add_column("Store", justify="right")
    table.add_column("Entity", style="cyan")
    table.add_column("Status", style="yellow")
    table.add_column("Records", justify="right")
    table.add_column("Result", justify="right")
    table.add_column("Created")
    for b in batches[:limit]:
        table.add_row(
            str(b.id),
            str(b.store_id),
            b.entity_type,
            b.status,
            f"{b.processed_count}/{b.record_count}",
            f"{b.success_count}/{b.failed_count}/{b.conflict_count}",
            _fmt_time(b.created_at),
        )
    console.print(table)


@batches_app.command("show")
def batches_show(
    batch_id: int = typer.Argument(..., help="Batch to show"),
) -> None:
    """Show a batch with its records and conflicts."""
    history = _batches()
    batch = history.get_batch(batch_id)
    if batch is None:
        print_error(f"Batch {batch_id} not found")
        raise typer.Exit(1)

    lines = [
        f"[bold]UID:[/bold] {batch.batch_uid}",
        f"[bold]Store:[/bold] {batch.store_id} ({'incoming' if batch.is_incoming else 'outgoing'})",
        f"[bold]Entity type:[/bold] {batch.entity_type}",
        f"[bold]Status:[/bold] {batch.status}",
        f"[bold]Started:[/bold] {_fmt_time(batch.started_at)}",
        f"[bold]Completed:[/bold] {_fmt_time(batch.completed_at)}",
    ]
    if batch.error_message:
        lines.append(f"[bold red]Error:[/bold red] {batch.error_message}")
    console.print(Panel("\n".join(lines), title=f"Batch {batch.id}", border_style="blue"))

    records = history.records(batch_id)
    if records:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("#", justify="right")
        table.add_column("Entity", style="cyan")
        table.add_column("Op")
        table.add_column("Outcome", style="yellow")
        table.add_column("Error", max_width=50)
        for r in records:
            table.add_row(
                str(r.sequence),
                f"{r.entity_type}:{r.entity_id}",
                r.operation,
                r.outcome,
                r.error_message or "",
            )
        console.print(table)

    conflicts = _conflicts().batch_conflicts(batch_id)
    if conflicts:
        open_count = sum(1 for c in conflicts if not c.is_resolved)
        console.print(f"[yellow]{len(conflicts)} conflicts ({open_count} open)[/yellow]")


@batches_app.command("cancel")
def batches_cancel(
    batch_id: int = typer.Argument(..., help="Batch to cancel"),
) -> None:
    """Cancel an unfinished batch. Its unsent queue items go back to pending."""
    try:
        batch = _engine().cancel_batch(batch_id)
    except SyncError as e:
        print_error(str(e))
        raise typer.Exit(1)
    print_success(f"Batch {batch.id} ({batch.entity_type}) cancelled")


@app.command()
def cleanup(
    days: int = typer.Option(30, "--days", "-d", help="Keep rows newer than this many days"),
) -> None:
    """Delete finished batches, completed queue items, resolved conflicts and old logs."""
    removed = _engine().cleanup(days)
    for name, count in removed.items():
        console.print(f"  {name}: {count}")
    print_success(f"Removed {sum(removed.values())} rows older than {days} days")


# ============================================================================
# Health Commands
# ============================================================================


@app.command()
def status(
    store_id: Optional[int] = typer.Argument(None, help="Store to inspect, all stores if omitted"),
) -> None:
    """Show sync health."""
    logs = _logs()

    if store_id is not None:
        s = logs.store_status(store_id)
        if not s.is_configured:
            print_error(f"Store {store_id} has no sync configuration")
            raise typer.Exit(1)
        style = HEALTH_STYLES[s.health]
        lines = [
            f"[{style}]{s.health.value.upper()}[/{style}]: {s.health_message}",
            f"[bold]Online:[/bold] {'yes' if s.is_online else 'no'}",
            f"[bold]Last successful sync:[/bold] {_fmt_time(s.last_successful_sync)}",
            f"[bold]Last attempted sync:[/bold] {_fmt_time(s.last_attempted_sync)}",
            f"[bold]Pending:[/bold] {s.pending_items} ({s.critical_pending} critical)",
            f"[bold]Failed:[/bold] {s.failed_items}",
            f"[bold]Held for conflicts:[/bold] {s.conflict_items}",
            f"[bold]Unresolved conflicts:[/bold] {s.unresolved_conflicts}",
            f"[bold]Active batches:[/bold] {s.active_batches}",
        ]
        if s.last_sync_error:
            lines.append(f"[bold]Last error:[/bold] [red]{s.last_sync_error}[/red]")
        console.print(Panel("\n".join(lines), title=f"Store {store_id}", border_style=style))
        return

    configs = _rules().list_configurations()
    if not configs:
        print_info("No stores configured.")
        return

    table = Table(title="Sync Health", show_header=True, header_style="bold magenta")
    table.add_column("Store", justify="right")
    table.add_column("Health")
    table.add_column("Pending", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Conflicts", justify="right")
    table.add_column("Last success")
    for c in configs:
        s = logs.store_status(c.store_id)
        style = HEALTH_STYLES[s.health]
        table.add_row(
            str(c.store_id),
            f"[{style}]{s.health.value}[/{style}]",
            str(s.pending_items),
            str(s.failed_items),
            str(s.unresolved_conflicts),
            _fmt_time(s.last_successful_sync),
        )
    console.print(table)


@app.command()
def logs(
    store_id: Optional[int] = typer.Option(None, "--store", "-s", help="Restrict to one store"),
    errors_only: bool = typer.Option(False, "--errors", "-e", help="Only failed operations"),
    limit: int = typer.Option(30, "--limit", "-l", help="Max rows"),
) -> None:
    """Show recent sync log entries, newest first."""
    manager = _logs()
    rows = manager.errors(store_id, limit=limit) if errors_only else manager.recent(store_id, limit)
    if not rows:
        print_info("No log entries.")
        return

    table = Table(title="Sync Log", show_header=True, header_style="bold magenta")
    table.add_column("Time")
    table.add_column("Store", justify="right")
    table.add_column("Operation", style="cyan")
    table.add_column("Entity")
    table.add_column("OK", justify="center")
    table.add_column("ms", justify="right")
    table.add_column("Error", max_width=50)
    for row in rows:
        table.add_row(
            _fmt_time(row.created_at),
            str(row.store_id) if row.store_id is not None else "-",
            row.operation,
            row.entity_type or "-",
            "[green]✓[/green]" if row.is_success else "[red]✗[/red]",
            str(row.duration_ms) if row.duration_ms is not None else "-",
            row.error_message or "",
        )
    console.print(table)


# ============================================================================
# Version Command
# ============================================================================


@app.command()
def version() -> None:
    """Show version information."""
    from . import __version__

    console.print(f"storesync version {__version__}")


# ============================================================================
# Main Entry Point
# ============================================================================


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
