"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import json
import logging
import os
import signal
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from modelscope_cli import __version__
from modelscope_cli.api.client import RepositoryClient
from modelscope_cli.core.orchestrator import DownloadOrchestrator
from modelscope_cli.exceptions import ModelScopeCliError
from modelscope_cli.media.transfer import FileTransfer
from modelscope_cli.models.config import DownloadConfig
from modelscope_cli.models.stats import DownloadStats
from modelscope_cli.storage import (
    ConfigManager,
    DownloadLedger,
    SqliteLedgerStore,
    create_ledger_store,
)
from modelscope_cli.utils.structured_logger import create_event_logger

from .formatters import (
    format_error_with_suggestions,
    print_config,
    print_ledger_table,
    print_summary_panel,
    print_validation_table,
)
from .progress_manager import ProgressManager

console = Console()

logging.basicConfig(
    level="WARNING",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("modelscope_cli")

app = typer.Typer(
    name="modelscope-cli",
    help=(
        "A resumable downloader for ModelScope model repositories. Use"
        " 'mscli <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if override := os.getenv("MODELSCOPE_CLI_CONFIG_DIR"):
        return Path(override).expanduser()
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "modelscope-cli"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"


def _open_ledger() -> DownloadLedger:
    backend = ConfigManager(CONFIG_FILE).get_config_as_dict()["ledger_backend"]
    return DownloadLedger(create_ledger_store(backend, CONFIG_DIR))


def save_session_stats(config: DownloadConfig, stats: DownloadStats) -> None:
    """Appends the finished run's stats to a history file in the config directory."""
    stats_file = Path(config.config_path) / "session_history.jsonl"
    try:
        stats_file.parent.mkdir(parents=True, exist_ok=True)
        with open(stats_file, "a", encoding="utf-8") as f:
            json.dump(
                {
                    "timestamp": int(time.time()),
                    "repository": config.repository,
                    "model_id": stats.model_id,
                    "destination": stats.destination,
                    "total_files": stats.total_files,
                    "files_downloaded": stats.files_downloaded,
                    "files_skipped": stats.files_skipped,
                    "bytes_downloaded": stats.bytes_downloaded,
                    "duration_seconds": round(stats.duration_s, 2),
                },
                f,
            )
            f.write("\n")
    except OSError as e:
        log.warning(f"[yellow]Could not save session stats:[/] {e}")


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the current configuration."
    ),
):
    """ModelScope Downloader CLI"""
    if version:
        console.print(f"[bold]modelscope-cli[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "WARNING"
    if verbose == 1:
        log_level = "INFO"
    elif verbose >= 2:
        log_level = "DEBUG"
    logging.getLogger("modelscope_cli").setLevel(log_level)

    if show_config:
        if not CONFIG_FILE.is_file():
            console.print(
                "[red]✗ Config file not found.[/] Run [cyan]modelscope-cli init[/cyan]"
                " first."
            )
            raise typer.Exit(code=1)
        print_config(CONFIG_FILE, ConfigManager(CONFIG_FILE).get_config_as_dict())
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    repository: str = typer.Option(
        ..., "--repository", "-r", help="Repository id, e.g. 'owner/name'."
    ),
    destination: str = typer.Option(
        "", "--dest", "-d", help="Download root (default: your documents folder)."
    ),
    endpoint: str | None = typer.Option(None, "--endpoint", help="Hub base URL."),
    api_token: str | None = typer.Option(
        None, "--token", help="Access token for private repositories."
    ),
    workers: int | None = typer.Option(
        None, "-w", "--workers", help="Number of simultaneous file transfers."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration without asking."
    ),
):
    """Create the configuration file."""
    if (
        CONFIG_FILE.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    settings = {
        key: value
        for key, value in {
            "repository": repository,
            "destination": destination,
            "endpoint": endpoint,
            "api_token": api_token,
            "max_workers": workers,
        }.items()
        if value is not None
    }
    try:
        # Validate before writing anything.
        DownloadConfig(**settings, config_path=str(CONFIG_DIR))
        ConfigManager(CONFIG_FILE).save_new_config(settings)
    except ModelScopeCliError as e:
        console.print(format_error_with_suggestions(e))
        raise typer.Exit(code=1) from e
    except ValueError as e:
        console.print(f"[red]✗ Invalid settings: {e}[/red]")
        raise typer.Exit(code=1) from e

    console.print(f"\n[bold green]✓ Configuration saved to '{CONFIG_FILE}'[/bold green]")
    console.print("Ready to download! Try: [cyan]modelscope-cli download <MODEL>[/cyan]")


@app.command(name="download")
def download_command(
    model_id: str = typer.Argument(
        ..., help="Name of the top-level model folder in the repository."
    ),
    repository: str | None = typer.Option(
        None, "--repository", "-r", help="Repository id, overrides the config."
    ),
    destination: str | None = typer.Option(
        None, "--dest", "-d", help="Download root, overrides the config."
    ),
    workers: int | None = typer.Option(
        None, "-w", "--workers", help="Number of simultaneous file transfers."
    ),
    attempts: int | None = typer.Option(
        None, "--attempts", help="Transfer attempts per file before giving up."
    ),
    progress_policy: str | None = typer.Option(
        None,
        "--progress-count",
        help="'full' counts every file first; 'shallow' uses the root listing size.",
    ),
    endpoint: str | None = typer.Option(None, "--endpoint", help="Hub base URL."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Hide the progress bar."),
):
    """Download one model folder, skipping files that are already up to date."""
    cli_options = {
        "repository": repository,
        "destination": destination,
        "max_workers": workers,
        "transfer_attempts": attempts,
        "progress_policy": progress_policy,
        "endpoint": endpoint,
    }

    async def _download_async() -> tuple[DownloadConfig, DownloadStats, dict]:
        config = ConfigManager(CONFIG_FILE).load_config(cli_options)

        client = RepositoryClient(config.endpoint, config.api_token, config.max_workers)
        transfer = FileTransfer(
            config.endpoint,
            config.api_token,
            max_attempts=config.transfer_attempts,
            max_workers=config.max_workers,
        )
        ledger = DownloadLedger(create_ledger_store(config.ledger_backend, CONFIG_DIR))
        base_logger, events = create_event_logger(
            Path(config.log_dir).expanduser() if config.log_dir else None
        )
        orchestrator = DownloadOrchestrator(
            config.repository,
            ledger,
            client,
            transfer,
            max_workers=config.max_workers,
            progress_policy=config.progress_policy,
            event_logger=events,
        )

        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        except (NotImplementedError, RuntimeError):
            pass

        try:
            async with ProgressManager(console, model_id, quiet=quiet) as progress:
                stats = await orchestrator.download_model(
                    config.destination,
                    model_id,
                    on_progress=progress.on_progress,
                    cancel_event=cancel_event,
                )
            return config, stats, progress.get_statistics()
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass
            await client.close()
            await transfer.close()
            base_logger.close()

    try:
        config, stats, progress_stats = asyncio.run(_download_async())
    except ModelScopeCliError as e:
        console.print(format_error_with_suggestions(e, {"model": model_id}))
        raise typer.Exit(code=1) from e

    print_summary_panel(stats, progress_stats)
    save_session_stats(config, stats)


@app.command()
def validate():
    """Validate the current configuration."""
    try:
        config = ConfigManager(CONFIG_FILE).load_config()
        print_validation_table(config)
    except ModelScopeCliError as e:
        console.print(f"[red]✗ Configuration is invalid: {e}[/red]")
        raise typer.Exit(code=1) from e


@app.command()
def ledger():
    """Show statistics from the download ledger."""
    print_ledger_table(_open_ledger().stats())


@app.command()
def vacuum():
    """Optimize the SQLite download ledger."""
    console.print("[cyan]Optimizing ledger database...[/cyan]")
    if SqliteLedgerStore(CONFIG_DIR).vacuum():
        console.print("[green]✓ Database optimized.[/green]")
    else:
        console.print("[red]✗ Optimization failed.[/red]")
        raise typer.Exit(code=1)


@app.command(name="clear-ledger")
def clear_ledger(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Bypass the confirmation prompt.",
    ),
):
    """Forget every recorded download; the next run re-downloads all files."""
    if not force and not typer.confirm(
        "Are you sure you want to clear the download ledger? "
        "Every file will be downloaded again on the next run."
    ):
        console.print("[yellow]Operation cancelled.[/yellow]")
        raise typer.Abort()

    async def _clear_async() -> int:
        return await _open_ledger().clear()

    try:
        removed = asyncio.run(_clear_async())
    except ModelScopeCliError as e:
        console.print(f"[red]✗ Failed to clear the ledger: {e}[/red]")
        raise typer.Exit(code=1) from e
    console.print(f"[green]✓ Ledger cleared ({removed} records removed).[/green]")
