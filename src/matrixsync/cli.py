"""CLI interface for matrixsync.

Settings come from ~/.matrixsync/config.yaml and MATRIXSYNC_* environment
variables; options given here win.

Quick start:
    matrixsync run                               # log in (first time) and sync
    matrixsync run --homeserver matrix.org       # skip the homeserver prompt
    matrixsync status                            # what is stored, no secrets
    matrixsync reset                             # forget the session
"""

import asyncio
import logging
import shutil
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table
from rich.text import Text

from matrixsync import __version__
from matrixsync.config import Settings, get_settings
from matrixsync.errors import (
    ConfigurationError,
    CorruptSession,
    MatrixSyncError,
    SessionNotFound,
    UserCancelled,
)
from matrixsync.homeserver import HomeserverClient, MatrixHomeserver, SyncBatch
from matrixsync.login.prompter import RichPrompter
from matrixsync.session.manager import ClientFactory, SessionManager
from matrixsync.session.store import CredentialStore
from matrixsync.sync.checkpoint import SyncCheckpointLoop

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="matrixsync",
    help="Matrix client that logs in once and resumes sync where it left off",
    no_args_is_help=True,
)

console = Console()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _load_settings(**overrides) -> Settings:
    try:
        return get_settings(overrides)
    except ConfigurationError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)


def _client_factory(settings: Settings) -> ClientFactory:
    def build(homeserver: str) -> HomeserverClient:
        return MatrixHomeserver(
            homeserver,
            device_display_name=settings.device_display_name,
            sync_timeout_ms=settings.sync_timeout_ms,
            lazy_load_members=settings.lazy_load_members,
            sso_callback_host=settings.sso_callback_host,
        )
    return build


async def _print_room_messages(batch: SyncBatch) -> None:
    for msg in batch.room_messages():
        console.print(Text(f"[{msg.room_name}] {msg.sender}: {msg.body}"))


async def _run(settings: Settings) -> None:
    logger.debug(f"matrixsync {__version__}, data dir {settings.data_dir}")
    store = CredentialStore(settings.session_path)
    manager = SessionManager(
        store,
        RichPrompter(console),
        _client_factory(settings),
        settings.data_dir,
        homeserver=settings.homeserver,
    )

    session, checkpoint = await manager.start()
    console.print(f"[green]✓[/green] Logged in as [bold]{escape(session.user_id)}[/bold]")

    loop = SyncCheckpointLoop(
        session.client,
        store,
        checkpoint=checkpoint,
        retry_delay=settings.catchup_retry_delay,
    )
    loop.add_handler(_print_room_messages)
    try:
        await loop.run()
    finally:
        await session.client.close()


@app.command()
def run(
    homeserver: str = typer.Option(
        None, "--homeserver", "-s", help="Homeserver URL (skips the prompt)"),
    data_dir: Path = typer.Option(
        None, "--data-dir", "-d", help="Directory holding the session"),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Log in if needed, then sync and print incoming messages."""
    settings = _load_settings(
        homeserver=homeserver,
        data_dir=data_dir,
        log_level="DEBUG" if verbose else None,
    )
    _configure_logging(settings.log_level)

    try:
        asyncio.run(_run(settings))
    except UserCancelled:
        console.print("[yellow]Cancelled.[/yellow]")
        raise typer.Exit(1)
    except MatrixSyncError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped.[/dim]")
        raise typer.Exit(130)


@app.command()
def status(
    data_dir: Path = typer.Option(
        None, "--data-dir", "-d", help="Directory holding the session"),
) -> None:
    """Show the stored session (no secrets)."""
    settings = _load_settings(data_dir=data_dir)
    store = CredentialStore(settings.session_path)

    try:
        record = store.load()
    except SessionNotFound:
        console.print(f"[dim]○[/dim] No session stored in {settings.data_dir}")
        return
    except MatrixSyncError as e:
        console.print(f"[red]✗[/red] {escape(str(e))}")
        raise typer.Exit(1)

    table = Table(show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("User", record.identity.user_id)
    table.add_row("Device", record.identity.device_id)
    table.add_row("Homeserver", record.profile.homeserver)
    table.add_row("Session file", str(store.path))
    storage_ok = record.profile.store_path.is_dir()
    table.add_row(
        "Local storage",
        f"{record.profile.store_path}" + ("" if storage_ok else " [red](missing)[/red]"),
    )
    table.add_row("Checkpoint", "yes" if record.checkpoint else "[dim]none yet[/dim]")
    console.print(table)


@app.command()
def reset(
    data_dir: Path = typer.Option(
        None, "--data-dir", "-d", help="Directory holding the session"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete the session file and its local storage. The next run logs in again.

    Nothing else under the data directory is touched.
    """
    settings = _load_settings(data_dir=data_dir)
    store = CredentialStore(settings.session_path)

    if not store.exists():
        console.print(f"[dim]Nothing to reset in {settings.data_dir}[/dim]")
        return

    storage: Path | None = None
    try:
        storage = store.load().profile.store_path
    except CorruptSession as e:
        console.print(f"[yellow]![/yellow] {escape(str(e))}")
        console.print("[dim]Only the session file will be removed.[/dim]")
    except MatrixSyncError as e:
        console.print(f"[red]✗[/red] {escape(str(e))}")
        raise typer.Exit(1)

    if storage is not None and storage.parent.resolve() != settings.data_dir.resolve():
        console.print(f"[yellow]![/yellow] Leaving {storage} alone: it is outside {settings.data_dir}")
        storage = None

    targets = [store.path] + ([storage] if storage is not None and storage.exists() else [])
    listing = "\n".join(f"  {t}" for t in targets)
    if not yes and not typer.confirm(f"Delete\n{listing}\nand log out this client?"):
        raise typer.Exit(1)

    try:
        if storage is not None and storage.exists():
            shutil.rmtree(storage)
            console.print(f"[green]✓[/green] Removed {storage}")
        store.delete()
    except (OSError, MatrixSyncError) as e:
        console.print(f"[red]✗[/red] {escape(str(e))}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Removed {store.path}")


@app.command()
def version() -> None:
    """Print the version."""
    console.print(f"matrixsync {__version__}")


if __name__ == "__main__":
    app()
