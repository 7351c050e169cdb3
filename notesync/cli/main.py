"""Command-line interface for NoteSync."""

import asyncio
import logging
import os
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from notesync import __version__
from notesync.core.config import AppConfig, load_config
from notesync.core.errors import SyncError, describe_error
from notesync.core.models import MergeStrategy, ReconcileResult, SyncResult
from notesync.core.service import SyncService
from notesync.utils.logging import setup_logging

# Create Typer app
app = typer.Typer(
    name="notesync",
    help="Sync notes and AI conversations through a shared folder or WebDAV, optionally end-to-end encrypted",
    add_completion=False,
)

# Create console for rich output
console = Console()

PASSPHRASE_ENV = "NOTESYNC_PASSPHRASE"


class CliHost:
    """Prints sync engine events to the console."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def on_before_shutdown(self, handler: Callable[[], Awaitable[Any]]) -> None:
        # A CLI run ends when its command returns
        return None

    def notify_ui(self, event: str, payload: dict[str, Any]) -> None:
        if event == "syncProgress" and self.verbose:
            console.print(f"[dim]{payload.get('operation')}: {payload.get('state')}[/dim]")
        elif event == "syncFailed":
            console.print(f"[red]✗ {payload.get('message')}[/red]")


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file",
        exists=True,
        dir_okay=False,
    ),
    log_level: str = typer.Option(
        "INFO",
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    ),
) -> None:
    """NoteSync - note sync with optional end-to-end encryption."""
    ctx.ensure_object(dict)
    cfg = load_config(config_file)
    ctx.obj["config"] = cfg

    # Set up logging based on config or CLI arg
    if log_level == "INFO" and cfg.general.log_level != "INFO":
        log_level = cfg.general.log_level
    setup_logging(cfg, level_name=log_level, log_to_file=False)


@app.command()
def version() -> None:
    """Show version information."""
    import platform

    table = Table(title="NoteSync Version Information")
    table.add_column("Property", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("Python", platform.python_version())
    table.add_row("Platform", platform.platform())
    table.add_row("Architecture", platform.machine())

    console.print(table)


@app.command()
def config(
    ctx: typer.Context,
    show: bool = typer.Option(
        False,
        "--show",
        "-s",
        help="Show current configuration",
    ),
    init: bool = typer.Option(
        False,
        "--init",
        "-i",
        help="Create a default configuration file",
    ),
) -> None:
    """Manage configuration."""
    cfg: AppConfig = ctx.obj["config"]

    if init:
        config_path = cfg.default_config_path

        if config_path.exists():
            console.print(f"[yellow]Config file already exists:[/yellow] {config_path}")
            overwrite = typer.confirm("Overwrite existing config?")
            if not overwrite:
                console.print("[dim]Config creation cancelled[/dim]")
                raise typer.Exit(0)

        try:
            cfg.save_to_file(config_path)
        except OSError as e:
            console.print(f"[red]Failed to write config file: {e}[/red]")
            raise typer.Exit(1) from e

        console.print(f"[green]✓ Config file created:[/green] {config_path}")
        return

    if show:
        table = Table(title="NoteSync Configuration")
        table.add_column("Setting", style="cyan", no_wrap=True)
        table.add_column("Value", style="green")

        table.add_row("Data Directory", str(cfg.general.data_dir))
        table.add_row("Config File", str(cfg.general.config_file or "Not set"))
        table.add_row("Log Level", cfg.general.log_level)
        table.add_row("Database", str(cfg.db_path))

        table.add_row("", "")  # Separator
        table.add_row("[bold]Remote[/bold]", "")
        table.add_row("Kind", cfg.remote.kind)
        if cfg.remote.kind == "webdav":
            table.add_row("WebDAV URL", cfg.remote.webdav_url or "Not set")
            table.add_row("WebDAV Username", cfg.remote.webdav_username or "Not set")
            table.add_row("WebDAV Path", cfg.remote.webdav_path)
        else:
            table.add_row("Folder", str(cfg.remote_folder))

        table.add_row("", "")
        table.add_row("[bold]Sync[/bold]", "")
        table.add_row("Auto Sync", "✓" if cfg.sync.auto_sync else "✗")
        table.add_row("Interval", f"{cfg.sync.interval_minutes} min")
        table.add_row("Strategy", cfg.sync.strategy.value)
        table.add_row("Shutdown Timeout", f"{cfg.sync.shutdown_timeout_seconds:g}s")

        table.add_row("", "")
        table.add_row("[bold]Media[/bold]", "")
        table.add_row("Enabled", "✓" if cfg.media.enabled else "✗")
        table.add_row("Directory", str(cfg.media_dir))

        console.print(table)
    else:
        console.print(f"[yellow]Configuration file:[/yellow] {cfg.general.config_file or 'Not set'}")
        console.print(f"[yellow]Data directory:[/yellow] {cfg.general.data_dir}")
        console.print("\n[dim]Use --show to display full configuration[/dim]")
        console.print("[dim]Use --init to create a default config file[/dim]")


def _strategy(value: str) -> MergeStrategy:
    try:
        return MergeStrategy(value.lower())
    except ValueError as e:
        valid = ", ".join(s.value for s in MergeStrategy)
        console.print(f"[red]Unknown strategy '{value}' (expected one of: {valid})[/red]")
        raise typer.Exit(1) from e


async def _open_service(cfg: AppConfig, passphrase: Optional[str], verbose: bool = False) -> SyncService:
    host = CliHost(verbose=verbose)
    service = await SyncService.from_config(cfg, notify=host.notify_ui)
    passphrase = passphrase or os.environ.get(PASSPHRASE_ENV)
    if passphrase:
        await service.set_passphrase(passphrase)
    elif service.encryption.enabled and sys.stdin.isatty():
        entered = typer.prompt("Encryption passphrase", hide_input=True)
        await service.set_passphrase(entered)
    return service


def _run_service(
    ctx: typer.Context,
    passphrase: Optional[str],
    operation: Callable[[SyncService], Awaitable[Any]],
    verbose: bool = False,
) -> Any:
    """Build a service, run ``operation`` with it and close it again."""
    cfg: AppConfig = ctx.obj["config"]

    async def run() -> Any:
        service = await _open_service(cfg, passphrase, verbose)
        try:
            return await operation(service)
        finally:
            await service.close()

    try:
        return asyncio.run(run())
    except SyncError as e:
        console.print(f"[red]{describe_error(e)}[/red]")
        raise typer.Exit(1) from e
    except Exception as e:
        console.print(f"[red]Operation failed: {e}[/red]")
        logging.exception("CLI operation failed")
        raise typer.Exit(1) from e


def _print_media(media: ReconcileResult) -> None:
    if media.operation_count == 0 and not media.errors:
        console.print("[dim]Media already in sync[/dim]")
        return

    table = Table(title="Media")
    table.add_column("Operation", style="cyan")
    table.add_column("Count", justify="right", style="green")
    table.add_row("Uploaded", str(len(media.uploaded)))
    table.add_row("Downloaded", str(len(media.downloaded)))
    table.add_row("Deleted (remote)", str(len(media.deleted_remote)))
    table.add_row("Deleted (local)", str(len(media.deleted_local)))
    console.print(table)

    for name, error in media.errors.items():
        console.print(f"[yellow]⚠ {name}: {error}[/yellow]")


def _print_result(result: SyncResult) -> None:
    if not result.success:
        console.print(f"[red]✗ {result.message or describe_error(result.error)}[/red]")
        raise typer.Exit(1)

    action = result.action.value if result.action else "none"
    console.print(f"[green]✓ Sync finished:[/green] {action}")
    if result.message:
        console.print(f"[dim]{result.message}[/dim]")

    if result.stats:
        table = Table(title="Changes")
        table.add_column("Kind", style="cyan")
        table.add_column("Count", justify="right", style="green")
        for key, value in result.stats.items():
            table.add_row(key.capitalize(), str(value))
        console.print(table)

    for conflict in result.conflicts:
        console.print(
            f"[yellow]⚠ Conflict on {conflict.get('entity', 'note')} {conflict.get('id')}: "
            f"kept {conflict.get('winner', 'local')} copy[/yellow]"
        )

    if result.media is not None:
        _print_media(result.media)


PassphraseOption = Annotated[
    Optional[str],
    typer.Option(
        "--passphrase",
        "-p",
        help=f"Encryption passphrase for this run (or set {PASSPHRASE_ENV})",
        hide_input=True,
    ),
]


@app.command()
def sync(
    ctx: typer.Context,
    strategy: Annotated[
        Optional[str],
        typer.Option("--strategy", "-s", help="Import strategy for downloads: merge, replace or force"),
    ] = None,
    passphrase: PassphraseOption = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show sync progress")] = False,
) -> None:
    """Synchronize local notes with the remote snapshot."""
    cfg: AppConfig = ctx.obj["config"]
    chosen = _strategy(strategy) if strategy else cfg.sync.strategy

    result = _run_service(ctx, passphrase, lambda s: s.coordinator.sync(strategy=chosen), verbose)
    _print_result(result)


@app.command()
def upload(ctx: typer.Context, passphrase: PassphraseOption = None) -> None:
    """Upload the local state, replacing the remote snapshot."""
    result = _run_service(ctx, passphrase, lambda s: s.coordinator.upload())
    _print_result(result)


@app.command()
def download(
    ctx: typer.Context,
    strategy: Annotated[
        str,
        typer.Option("--strategy", "-s", help="Import strategy: merge, replace or force"),
    ] = MergeStrategy.MERGE.value,
    passphrase: PassphraseOption = None,
) -> None:
    """Download the remote snapshot and import it locally."""
    chosen = _strategy(strategy)
    result = _run_service(ctx, passphrase, lambda s: s.coordinator.download(chosen))
    _print_result(result)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show synchronization status."""
    cfg: AppConfig = ctx.obj["config"]
    info = _run_service(ctx, None, lambda s: s.coordinator.status())
    metadata = info["metadata"]
    encryption = info["encryption"]

    table = Table(title="NoteSync Status")
    table.add_column("Property", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")

    table.add_row("Remote", cfg.remote.kind)
    table.add_row("Authenticated", "✓" if (info["remote"] or {}).get("authenticated") else "✗")
    table.add_row("Last Sync", metadata.get("last_sync") or "Never")
    table.add_row("Remote Version", str(metadata.get("remote_sync_version", 0)))
    table.add_row("Local Checksum", (metadata.get("local_checksum") or "-")[:16])
    table.add_row("Encryption", "enabled" if encryption["enabled"] else "disabled")
    table.add_row("Database", str(cfg.db_path))

    console.print(table)

    if not metadata.get("last_sync"):
        console.print("\n[yellow]Nothing has been synced yet[/yellow]")
        console.print("[dim]Run 'notesync sync' to start syncing[/dim]")


@app.command()
def media(ctx: typer.Context) -> None:
    """Reconcile media attachments with the remote."""
    cfg: AppConfig = ctx.obj["config"]
    if not cfg.media.enabled:
        console.print("[red]Media sync is not enabled in configuration[/red]")
        raise typer.Exit(1)

    result = _run_service(ctx, None, lambda s: s.coordinator.reconcile_media())
    _print_media(result)
    if result.errors:
        raise typer.Exit(1)


@app.command()
def reset(
    ctx: typer.Context,
    confirm: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip confirmation prompt",
    ),
) -> None:
    """Delete the remote snapshot and forget all sync metadata."""
    if not confirm:
        console.print("[yellow]⚠ Warning: This will delete the remote snapshot![/yellow]")
        console.print("[dim]Local notes are NOT deleted. The next sync will upload them again.[/dim]\n")

        response = typer.confirm("Are you sure you want to reset sync?")
        if not response:
            console.print("[dim]Reset cancelled[/dim]")
            raise typer.Exit(0)

    result = _run_service(ctx, None, lambda s: s.coordinator.reset_remote())
    _print_result(result)
    console.print("[dim]Run 'notesync sync' to start fresh[/dim]")


# Remote subcommand group
remote_app = typer.Typer(help="Manage the remote store credentials")
app.add_typer(remote_app, name="remote")


def _webdav_username(cfg: AppConfig, username: Optional[str]) -> str:
    username = username or cfg.remote.webdav_username
    if not username:
        console.print("[red]Username not specified and not found in config[/red]")
        console.print("[dim]Use --username or set NOTESYNC_REMOTE__WEBDAV_USERNAME[/dim]")
        raise typer.Exit(1)
    return username


@remote_app.command("set-password")
def remote_set_password(
    ctx: typer.Context,
    username: Optional[str] = typer.Option(
        None,
        "--username",
        "-u",
        help="WebDAV username (default: from config)",
    ),
) -> None:
    """Store the WebDAV password securely in the system keyring."""
    from notesync.utils.credentials import CredentialStore

    username = _webdav_username(ctx.obj["config"], username)

    password = typer.prompt(f"Enter WebDAV password for {username}", hide_input=True)
    password_confirm = typer.prompt("Confirm password", hide_input=True)

    if password != password_confirm:
        console.print("[red]Passwords do not match[/red]")
        raise typer.Exit(1)

    try:
        CredentialStore().set_webdav_password(username, password)
    except Exception as e:
        console.print(f"[red]Failed to store password: {e}[/red]")
        raise typer.Exit(1) from e

    console.print(f"[green]✓ Password stored securely for user: {username}[/green]")
    console.print("[dim]You can now remove NOTESYNC_REMOTE__WEBDAV_PASSWORD from your environment[/dim]")


@remote_app.command("delete-password")
def remote_delete_password(
    ctx: typer.Context,
    username: Optional[str] = typer.Option(
        None,
        "--username",
        "-u",
        help="WebDAV username (default: from config)",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip confirmation prompt",
    ),
) -> None:
    """Delete the WebDAV password from the system keyring."""
    from notesync.utils.credentials import CredentialStore

    username = _webdav_username(ctx.obj["config"], username)

    if not yes:
        confirmed = typer.confirm(f"Delete stored password for {username}?")
        if not confirmed:
            console.print("[dim]Cancelled[/dim]")
            raise typer.Exit(0)

    try:
        deleted = CredentialStore().delete_webdav_password(username)
    except Exception as e:
        console.print(f"[red]Failed to delete password: {e}[/red]")
        raise typer.Exit(1) from e

    if deleted:
        console.print(f"[green]✓ Password deleted for user: {username}[/green]")
    else:
        console.print(f"[yellow]No password found for user: {username}[/yellow]")


@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", "-h", help="Host to bind to")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Port to bind to")] = 8000,
    reload: Annotated[bool, typer.Option("--reload", help="Enable auto-reload (development)")] = False,
) -> None:
    """Start the NoteSync API server.

    Examples:
        # Start server on default port
        notesync serve

        # Start on specific host and port
        notesync serve --host 0.0.0.0 --port 8080
    """
    import uvicorn

    console.print(Panel.fit(
        f"[bold cyan]NoteSync API Server[/bold cyan]\n\n"
        f"[white]Starting server on {host}:{port}[/white]",
        border_style="cyan"
    ))

    try:
        console.print(f"[green]Server running at: http://{host}:{port}[/green]")
        console.print(f"[dim]API docs: http://{host}:{port}/api/docs[/dim]")
        console.print("[dim]Press Ctrl+C to stop[/dim]\n")

        uvicorn.run(
            "notesync.api.app:app",
            host=host,
            port=port,
            reload=reload,
            log_level="info",
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped[/yellow]")


def main_entry() -> None:
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main_entry()
