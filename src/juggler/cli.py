"""Command-line interface for juggler."""

import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from juggler import __version__
from juggler.config import DEFAULT_CALLBACK_PORT, Config, get_data_dir
from juggler.errors import AuthError, ConfigError, JugglerError, ReconciliationError
from juggler.google import OAuthConfig, TokenManager
from juggler.sync import ChangeLog, adopt_legacy_tasks, build_gateway, run_sync
from juggler.utils import (
    KeyringCredentialStore,
    StorageManager,
    SystemClock,
    TaskStore,
    get_logger,
    setup_logging,
)
from juggler.utils.audit import create_audited_client

app = typer.Typer(help="Juggle your TODOs and push them to Google Tasks")
console = Console()
logger = get_logger(__name__)

DataDirOption = typer.Option(
    None,
    "--data-dir",
    help="Data directory. Defaults to $JUGGLER_DIR or ~/.juggler/",
)
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable verbose logging.")


def _load_config(data_dir: Optional[Path], verbose: bool) -> Config:
    config = Config(data_dir)
    setup_logging(
        log_level=logging.DEBUG if verbose else logging.INFO,
        data_dir=config.data_dir,
    )
    return config


def _print_changes(changes: ChangeLog) -> None:
    title = "Sync Plan (dry run)" if changes.dry_run else "Sync Results"
    table = Table(title=title)
    table.add_column("Change", style="cyan")
    table.add_column("Count", style="magenta")
    for name, count in changes.counts().items():
        table.add_row(name.capitalize(), str(count))
    console.print(table)

    for label, records in (
        ("created", changes.created),
        ("updated", changes.updated),
        ("deleted", changes.deleted),
    ):
        for record in records:
            detail = f" ({record.detail})" if record.detail else ""
            console.print(f"  {label}: " + escape(f"{record.title} [{record.remote_id}]{detail}"))

    if changes.foreign:
        console.print("\n[yellow]Left untouched (not created by juggler):[/yellow]")
        for record in changes.foreign:
            console.print("  - " + escape(f"{record.title} [{record.remote_id}]"))


def _report_auth_error(e: AuthError) -> None:
    logger.error(f"Authentication failed: {e}")
    console.print(f"[red]Authentication failed: {escape(str(e))}[/red]")
    console.print(e.hint)


@app.command()
def sync(
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Log actions without executing them.",
    ),
    verbose: bool = VerboseOption,
    data_dir: Optional[Path] = DataDirOption,
) -> None:
    """Push local TODOs to the 'juggler' list in Google Tasks."""
    config = _load_config(data_dir, verbose)
    logger.info(f"juggler v{__version__}")

    task_store = TaskStore(config.todos_file)
    credential_store = KeyringCredentialStore(config.storage)

    try:
        tasks = task_store.load()
    except (OSError, ConfigError) as e:
        console.print(f"[red]Could not read {config.todos_file}: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    mode_str = "[bold cyan]DRY RUN[/bold cyan]" if dry_run else "[bold green]SYNC[/bold green]"
    console.print(f"Starting {mode_str} of {len(tasks)} TODOs...")

    with create_audited_client() as http_client:
        try:
            outcome = run_sync(
                tasks,
                config=config,
                credential_store=credential_store,
                http_client=http_client,
                clock=SystemClock(),
                dry_run=dry_run,
            )
        except AuthError as e:
            _report_auth_error(e)
            raise typer.Exit(code=1)
        except ReconciliationError as e:
            # Keep the links of everything that did reach Google so a rerun resumes.
            if not dry_run:
                task_store.save(e.tasks)
            _print_changes(e.changes)
            if isinstance(e.cause, AuthError):
                _report_auth_error(e.cause)
            else:
                console.print(f"[red]Error syncing with Google Tasks: {escape(str(e))}[/red]")
            raise typer.Exit(code=1)
        except JugglerError as e:
            logger.error(f"Sync failed: {e}")
            console.print(f"[red]Error syncing with Google Tasks: {escape(str(e))}[/red]")
            raise typer.Exit(code=1)

    if outcome.should_persist:
        task_store.save(outcome.tasks)
    _print_changes(outcome.changes)
    console.print("[green]Sync completed successfully![/green]")


@app.command()
def login(
    port: int = typer.Option(
        DEFAULT_CALLBACK_PORT,
        "--port",
        help="Local port for the OAuth callback.",
    ),
    verbose: bool = VerboseOption,
    data_dir: Optional[Path] = DataDirOption,
) -> None:
    """Authorize juggler to manage your Google Tasks."""
    config = _load_config(data_dir, verbose)
    credential_store = KeyringCredentialStore(config.storage)

    with create_audited_client() as http_client:
        token_manager = TokenManager(
            OAuthConfig(config.client_id, config.client_secret),
            credential_store,
            http_client,
            clock=SystemClock(),
        )
        console.print("[cyan]Opening browser for Google authorization...[/cyan]")
        try:
            token_manager.authorize_interactive(port, timeout=config.callback_timeout)
        except JugglerError as e:
            logger.error(f"Authentication failed: {e}")
            console.print(f"[red]✗ Authentication failed: {escape(str(e))}[/red]")
            raise typer.Exit(code=1)

    console.print("[green]✓ Authentication successful[/green]")
    console.print("Your refresh token has been saved. Sync your TODOs with:")
    console.print("  juggler sync")
    console.print("Use --dry-run to preview changes.")


@app.command()
def logout(
    data_dir: Optional[Path] = DataDirOption,
) -> None:
    """Forget the stored Google credentials."""
    try:
        config = _load_config(data_dir, verbose=False)
    except ConfigError as e:
        console.print(f"[yellow]Ignoring unreadable configuration: {escape(str(e))}[/yellow]")
        KeyringCredentialStore(StorageManager(get_data_dir(data_dir))).delete()
    else:
        with create_audited_client() as http_client:
            TokenManager(
                OAuthConfig(config.client_id, config.client_secret),
                KeyringCredentialStore(config.storage),
                http_client,
            ).revoke()
    console.print("Logged out: refresh token removed.")


@app.command("migrate-legacy")
def migrate_legacy(
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show which tasks would be adopted.",
    ),
    verbose: bool = VerboseOption,
    data_dir: Optional[Path] = DataDirOption,
) -> None:
    """Adopt unlinked 'j:' tasks created before ownership markers existed.

    Adopted tasks are deleted by the next sync unless a local TODO links them.
    """
    config = _load_config(data_dir, verbose)
    try:
        tasks = TaskStore(config.todos_file).load()
    except (OSError, ConfigError) as e:
        console.print(f"[red]Could not read {config.todos_file}: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    with create_audited_client() as http_client:
        gateway = build_gateway(
            config,
            KeyringCredentialStore(config.storage),
            http_client,
            SystemClock(),
            dry_run=dry_run,
        )
        try:
            changes = adopt_legacy_tasks(gateway, tasks)
        except AuthError as e:
            _report_auth_error(e)
            raise typer.Exit(code=1)
        except JugglerError as e:
            console.print(f"[red]Migration failed: {escape(str(e))}[/red]")
            raise typer.Exit(code=1)

    verb = "Would adopt" if dry_run else "Adopted"
    console.print(f"{verb} {len(changes.updated)} legacy task(s)")
    for record in changes.updated:
        console.print("  - " + escape(f"{record.title} [{record.remote_id}]"))


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"juggler v{__version__}")


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        console.print(f"[red]Unexpected error: {escape(str(e))}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
