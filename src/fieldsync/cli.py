"""Command-line interface for FieldSync."""

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import FieldSyncConfig, create_sample_config, load_config
from .core.client import OfflineClient
from .core.daemon import FieldSyncDaemon
from .error_handling import (
    ConfigurationError,
    FieldSyncError,
    graceful_exit,
    handle_error,
)
from .process_lock import ProcessLock
from .queue.models import OperationStatus, OperationType
from .services.ntfy import NtfyNotifier
from .storage.cache_store import CacheCategory
from .storage.database import Database
from .storage.queue_store import QueueStore

console = Console()

T = TypeVar("T")


def setup_logging(
    *,
    verbose: bool = False,
    config: FieldSyncConfig | None = None,
) -> None:
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO

    # Clean up existing handlers first to prevent resource leaks
    cleanup_logging()

    show_path = level == logging.DEBUG
    handlers: list[logging.Handler] = [
        RichHandler(console=console, rich_tracebacks=True, show_path=show_path),
    ]

    if config and config.log_dir:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        log_file = config.log_dir / "fieldsync.log"
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            ),
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def cleanup_logging() -> None:
    """Clean up logging handlers to prevent ResourceWarnings."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        if isinstance(handler, logging.FileHandler):
            handler.close()
            root_logger.removeHandler(handler)


def _open_queue_store(config: FieldSyncConfig) -> tuple[Database, QueueStore]:
    config.ensure_directories()
    database = Database(config)
    return database, QueueStore(database, config.max_retry_attempts)


def _with_client(
    config: FieldSyncConfig,
    action: Callable[[OfflineClient], Awaitable[T]],
) -> T:
    """Run ``action`` against a short-lived client after probing the network."""

    async def _main() -> T:
        client = OfflineClient(config)
        try:
            if client.monitor is not None:
                await client.monitor.check_now()
            return await action(client)
        finally:
            await client.stop()
            close = getattr(client.transport, "close", None)
            if close is not None:
                await close()
            client.close()

    return asyncio.run(_main())


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Configuration file path",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, config: Path | None, verbose: bool) -> None:
    """FieldSync - offline-first operation queue and synchronization client."""
    try:
        ctx.ensure_object(dict)
        loaded_config = load_config(config)
        ctx.obj["config"] = loaded_config
        ctx.obj["verbose"] = verbose

        setup_logging(verbose=verbose, config=loaded_config)
    except (OSError, ValueError, RuntimeError) as e:
        config_error = ConfigurationError(
            f"Failed to load configuration: {e}",
            config_path=config,
            solution="Run 'fieldsync config validate' to check your configuration file",
        )
        console.print(f"[red]Configuration Error:[/red] {config_error}")
        sys.exit(1)


@cli.group("config")
@click.pass_context
def config_cmd(ctx: click.Context) -> None:
    """Configuration management commands."""


@config_cmd.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current configuration."""
    config: FieldSyncConfig = ctx.obj["config"]

    table = Table()
    table.add_column("Setting")
    table.add_column("Value")

    table.add_row("Data Directory", str(config.data_dir))
    table.add_row("Log Directory", str(config.log_dir))
    table.add_row("API URL", config.api_url)
    table.add_row("API Token", "***" if config.api_token else "Not configured")
    table.add_row("Auto Sync", "Enabled" if config.auto_sync_enabled else "Disabled")
    table.add_row("Sync Interval", f"{config.sync_interval_minutes} min")
    table.add_row("Max Retry Attempts", str(config.max_retry_attempts))
    table.add_row("Cache Expiry", f"{config.cache_expiry_hours} h")
    table.add_row("Continuity Window", f"{config.continuity_window_days} days")
    table.add_row("Retention", f"{config.retention_days} days")
    table.add_row("Ntfy Topic", config.ntfy_topic or "Not configured")

    console.print(table)


@config_cmd.command("validate")
@click.pass_context
def config_validate(ctx: click.Context) -> None:
    """Validate current configuration."""
    config: FieldSyncConfig = ctx.obj["config"]

    console.print("[bold]Configuration Validation[/bold]")
    errors = []

    for name, path in [("Data", config.data_dir), ("Log", config.log_dir)]:
        try:
            path.mkdir(parents=True, exist_ok=True)
            console.print(f"[green]✓[/green] {name} directory: {path}")
        except OSError as e:
            console.print(f"[red]✗[/red] {name} directory: {e}")
            errors.append(f"{name} directory: {e}")

    if not config.api_token:
        console.print("[red]✗[/red] API token not configured")
        errors.append("API token not configured")
    else:
        console.print("[green]✓[/green] API token configured")

    unknown = [
        name
        for name in config.required_categories
        if name not in {category.value for category in CacheCategory}
    ]
    if unknown:
        console.print(f"[red]✗[/red] Unknown cache categories: {', '.join(unknown)}")
        errors.append("Unknown cache categories")
    else:
        console.print("[green]✓[/green] Required cache categories")

    if errors:
        console.print(f"\n[red]Found {len(errors)} configuration errors[/red]")
        sys.exit(1)
    else:
        console.print("\n[green]Configuration is valid[/green]")


@config_cmd.command("init")
@click.option(
    "--path",
    "-p",
    type=click.Path(path_type=Path),
    default=Path.home() / ".config" / "fieldsync" / "config.toml",
    help="Path for the configuration file",
)
def config_init(path: Path) -> None:
    """Create a sample configuration file."""
    try:
        create_sample_config(path)
        console.print(f"[green]Created sample configuration at {path}[/green]")
        console.print("Please edit the configuration file with your settings.")
    except OSError as e:
        console.print(f"[red]Error creating configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show service, queue and cache status."""
    config: FieldSyncConfig = ctx.obj["config"]

    console.print("[bold]System Status[/bold]")
    pid = ProcessLock(config).find_running_pid()
    if pid:
        console.print(f"🟢 FieldSync: [green]Running (PID {pid})[/green]")
    else:
        console.print("🔴 FieldSync: [red]Not running[/red]")

    if config.ntfy_topic:
        console.print("📱 Notifications: Configured")
    else:
        console.print("📱 Notifications: [yellow]Not configured[/yellow]")

    database, store = _open_queue_store(config)
    try:
        health = database.check_database_health()
        if health["integrity_check"]:
            console.print(f"🗄️ Database: {format_file_size(health['size_bytes'])}")
        else:
            console.print("🗄️ Database: [red]Integrity check failed[/red]")

        console.print("\n[bold]Queue Status[/bold]")
        _print_status_counts(store.count_by_status())
    finally:
        database.close()


def _print_status_counts(counts: dict[OperationStatus, int]) -> None:
    if not counts:
        console.print("Queue is empty")
        return

    table = Table()
    table.add_column("Status")
    table.add_column("Count", justify="right")
    for operation_status, count in counts.items():
        color = get_status_color(operation_status)
        table.add_row(
            f"[{color}]{operation_status.value.title()}[/{color}]",
            str(count),
        )
    console.print(table)


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run the sync service in the foreground until interrupted."""
    config: FieldSyncConfig = ctx.obj["config"]

    daemon = FieldSyncDaemon(config)
    try:
        daemon.run()
    except RuntimeError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@cli.command()
@click.pass_context
def stop(ctx: click.Context) -> None:
    """Stop a running FieldSync service."""
    config: FieldSyncConfig = ctx.obj["config"]
    pid = ProcessLock(config).find_running_pid()

    if not pid:
        console.print("[yellow]FieldSync is not running[/yellow]")
        return

    console.print(f"[blue]Stopping FieldSync (PID {pid})...[/blue]")
    if ProcessLock.stop_process(pid):
        console.print("[green]FieldSync stopped[/green]")
    else:
        console.print(f"[red]Failed to stop FieldSync process {pid}[/red]")
        sys.exit(1)


@cli.group()
@click.pass_context
def queue(ctx: click.Context) -> None:
    """Queue management commands."""


@queue.command("status")
@click.pass_context
def queue_status(ctx: click.Context) -> None:
    """Show queue status information."""
    config: FieldSyncConfig = ctx.obj["config"]
    database, store = _open_queue_store(config)
    try:
        pending = store.pending_counts_by_type()
        _print_status_counts(store.count_by_status())

        table = Table(title="Pending by type")
        table.add_column("Type")
        table.add_column("Pending", justify="right")
        for operation_type, count in pending.items():
            table.add_row(operation_type.value.replace("_", " ").title(), str(count))
        console.print(table)
        console.print(f"Failed with retries left: {store.failed_retryable_count()}")
    finally:
        database.close()


@queue.command("list")
@click.option(
    "--status",
    "status_filter",
    type=click.Choice([s.value for s in OperationStatus]),
    help="Only show operations with this status",
)
@click.option(
    "--type",
    "type_filter",
    type=click.Choice([t.value for t in OperationType]),
    help="Only show operations of this type",
)
@click.option("--limit", "-n", type=int, default=50, help="Maximum rows to show")
@click.pass_context
def queue_list(
    ctx: click.Context,
    status_filter: str | None,
    type_filter: str | None,
    limit: int,
) -> None:
    """List queued operations in dequeue order."""
    config: FieldSyncConfig = ctx.obj["config"]
    database, store = _open_queue_store(config)
    try:
        items = store.list_operations(
            OperationStatus(status_filter) if status_filter else None,
            OperationType(type_filter) if type_filter else None,
            limit,
        )
    finally:
        database.close()

    if not items:
        console.print("Queue is empty")
        return

    console.print(format_queue_table(items))


@queue.command("reset")
@click.argument("operation_id", type=int)
@click.pass_context
def queue_reset(ctx: click.Context, operation_id: int) -> None:
    """Give a failed operation a fresh set of attempts."""
    config: FieldSyncConfig = ctx.obj["config"]
    database, store = _open_queue_store(config)
    try:
        reset = store.reset_failed(operation_id)
    finally:
        database.close()

    if reset:
        console.print(f"[green]Operation {operation_id} reset to pending[/green]")
    else:
        console.print(f"[yellow]Operation {operation_id} is not in failed status[/yellow]")
        sys.exit(1)


@queue.command("cancel")
@click.argument("operation_id", type=int)
@click.pass_context
def queue_cancel(ctx: click.Context, operation_id: int) -> None:
    """Cancel a pending operation."""
    config: FieldSyncConfig = ctx.obj["config"]
    database, store = _open_queue_store(config)
    try:
        cancelled = store.cancel(operation_id)
    finally:
        database.close()

    if cancelled:
        console.print(f"[green]Operation {operation_id} cancelled[/green]")
    else:
        console.print(f"[yellow]Operation {operation_id} is not pending[/yellow]")
        sys.exit(1)


@queue.command("cleanup")
@click.option("--days", type=int, help="Retention period (defaults to configuration)")
@click.pass_context
def queue_cleanup(ctx: click.Context, days: int | None) -> None:
    """Remove synced and cancelled operations past the retention period."""
    config: FieldSyncConfig = ctx.obj["config"]
    database, store = _open_queue_store(config)
    try:
        count = store.cleanup(config.retention_days if days is None else days)
    finally:
        database.close()
    console.print(f"[green]Removed {count} completed operations[/green]")


@cli.group()
@click.pass_context
def sync(ctx: click.Context) -> None:
    """Synchronization commands."""


@sync.command("now")
@click.pass_context
def sync_now(ctx: click.Context) -> None:
    """Run one synchronization cycle immediately."""
    config: FieldSyncConfig = ctx.obj["config"]

    try:
        result = _with_client(config, lambda client: client.force_sync_now())
    except FieldSyncError as e:
        e.display_to_user()
        graceful_exit()

    table = Table(title="Synchronization")
    table.add_column("Category")
    table.add_column("Synced", justify="right")
    table.add_column("Failed", justify="right")
    table.add_row(
        "Registrations",
        str(result.registrations_synced),
        str(result.registrations_failed),
    )
    table.add_row(
        "Verifications",
        str(result.verifications_synced),
        str(result.verifications_failed),
    )
    table.add_row(
        "Record updates",
        str(result.record_updates_synced),
        str(result.record_updates_failed),
    )
    console.print(table)

    if result.deferred:
        console.print(f"Deferred to next cycle: {result.deferred}")
    for error in result.errors:
        console.print(f"[dim]• {error}[/dim]")

    if result.success:
        console.print(f"[green]{result.message}[/green]")
    else:
        console.print(f"[red]{result.message}[/red]")
        sys.exit(1)


@cli.group()
@click.pass_context
def cache(ctx: click.Context) -> None:
    """Reference data cache commands."""


@cache.command("status")
@click.pass_context
def cache_status(ctx: click.Context) -> None:
    """Show cached data age, counts and offline readiness."""
    config: FieldSyncConfig = ctx.obj["config"]

    async def _stats(client: OfflineClient) -> Any:
        return client.get_cache_statistics()

    try:
        stats = _with_client(config, _stats)
    except FieldSyncError as e:
        handle_error(e)
        graceful_exit()

    table = Table()
    table.add_column("Category")
    table.add_column("Records", justify="right")
    table.add_column("Last Updated")
    table.add_column("Age")
    table.add_column("State")
    for entry in stats.categories.values():
        table.add_row(
            entry.category.title(),
            str(entry.record_count),
            entry.last_updated.strftime("%Y-%m-%d %H:%M") if entry.last_updated else "-",
            f"{entry.age_hours:.1f} h" if entry.age_hours is not None else "-",
            "[red]Stale[/red]" if entry.is_stale else "[green]Fresh[/green]",
        )
    console.print(table)

    if stats.continuity_ready:
        console.print("[green]✓ Ready for offline operation[/green]")
    else:
        console.print("[yellow]⚠ Cached data cannot sustain offline operation[/yellow]")
    console.print(f"Database size: {format_file_size(stats.database_size_bytes)}")


@cache.command("refresh")
@click.option("--scope", "scopes", multiple=True, help="Organizational unit id (repeatable)")
@click.pass_context
def cache_refresh(ctx: click.Context, scopes: tuple[str, ...]) -> None:
    """Download reference data now."""
    config: FieldSyncConfig = ctx.obj["config"]

    result = _with_client(config, lambda client: client.refresh_cache(list(scopes) or None))
    for error in result.errors:
        console.print(f"[dim]• {error}[/dim]")
    if result.success:
        console.print(f"[green]{result.message}[/green]")
    else:
        console.print(f"[red]{result.message}[/red]")
        sys.exit(1)


@cache.command("clear")
@click.confirmation_option(prompt="Remove all cached reference data?")
@click.pass_context
def cache_clear(ctx: click.Context) -> None:
    """Remove all cached reference data."""
    config: FieldSyncConfig = ctx.obj["config"]
    result = _with_client(config, lambda client: client.cache.clear_cache())
    console.print(f"[green]{result.message}[/green]")


@cli.command("test-notify")
@click.pass_context
def test_notify(ctx: click.Context) -> None:
    """Send a test notification."""
    config: FieldSyncConfig = ctx.obj["config"]
    notifier = NtfyNotifier(config)
    try:
        sent = notifier.test_notification()
    finally:
        notifier.close()

    if sent:
        console.print("[green]Test notification sent successfully[/green]")
    else:
        console.print("[red]Failed to send test notification[/red]")


# CLI utility functions
def format_file_size(size_bytes: int) -> str:
    """Format file size in bytes to human readable format."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    if size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"


def get_status_color(status: object) -> str:
    """Get color code for status display."""
    status_colors = {
        "pending": "yellow",
        "syncing": "blue",
        "synced": "green",
        "failed": "red",
        "cancelled": "dim",
    }
    status_str = status.value if hasattr(status, "value") else str(status)
    return status_colors.get(status_str.lower(), "white")


def format_queue_table(items: list) -> Table:
    """Format queued operations into a table."""
    table = Table()
    table.add_column("ID", justify="right")
    table.add_column("Type")
    table.add_column("Roll Number")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Created")
    table.add_column("Last Error")

    for item in items:
        color = get_status_color(item.status)
        table.add_row(
            str(item.id),
            item.operation_type.value.replace("_", " ").title(),
            item.natural_key or "?",
            f"[{color}]{item.status.value.title()}[/{color}]",
            f"{item.attempts}/{item.max_attempts}",
            item.created_at.strftime("%Y-%m-%d %H:%M"),
            (item.last_error or "-")[:40],
        )

    return table


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
