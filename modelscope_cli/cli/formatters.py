"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from modelscope_cli.models.config import DownloadConfig
from modelscope_cli.models.stats import DownloadStats
from modelscope_cli.utils.formatting import format_duration, format_size

SUGGESTIONS = {
    "NetworkError": [
        "• Check your internet connection and the configured endpoint.",
        "• The ModelScope hub might be temporarily unavailable.",
        "• Run the same command again: completed files are not downloaded twice.",
    ],
    "FilesystemError": [
        "• Check that the destination folder is writable.",
        "• Make sure the disk is not full.",
    ],
    "ModelNotFoundError": [
        "• Check the model name; it must match a top-level folder of the repository.",
        "• Check the repository id ('owner/name').",
    ],
    "LedgerError": [
        "• The download ledger could not be accessed.",
        "• Run `modelscope-cli clear-ledger` to reset it.",
    ],
    "DownloadCancelledError": [
        "• Run the same command again to resume.",
    ],
    "ConfigurationError": [
        "• Run `modelscope-cli init --repository <owner/name>` to create a config.",
        "• Run `modelscope-cli validate` to check the current settings.",
    ],
}


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__

    suggestions = SUGGESTIONS.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(str(error))

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, config_data: dict[str, Any]):
    """Displays the current configuration, hiding the API token."""
    console = Console()
    lines = []
    for key, value in config_data.items():
        if key == "api_token" and value:
            value = "[hidden]"
        lines.append(f"{key} = {value}")

    console.print(
        Panel(
            "\n".join(lines),
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_validation_table(config: DownloadConfig):
    """Displays a summary of the current settings."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    table.add_row("Endpoint:", config.endpoint)
    table.add_row("Repository:", f"[green]{config.repository}[/green]")
    table.add_row("Destination:", config.destination or "[dim](documents folder)[/dim]")
    table.add_row("Max Workers:", str(config.max_workers))
    table.add_row("Transfer Attempts:", str(config.transfer_attempts))
    table.add_row("Progress Count:", config.progress_policy)
    table.add_row("Ledger Backend:", config.ledger_backend)
    table.add_row("API Token:", "✓ Set" if config.api_token else "✗ Not set")

    console.print(
        Panel(
            table,
            title="[bold green]✓ Validated Settings[/bold green]",
            border_style="green",
        )
    )


def print_ledger_table(stats_data: dict[str, Any]):
    """Displays download ledger statistics."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan", justify="right")
    table.add_column()

    table.add_row("Files Recorded:", f"[green]{stats_data['total_files']}[/green]")
    table.add_row("Recorded Size:", format_size(stats_data["total_bytes"]))
    last = stats_data.get("last_modified")
    table.add_row(
        "Last Write:", last.strftime("%Y-%m-%d %H:%M:%S %Z") if last else "[dim]never[/dim]"
    )
    table.add_row("Store:", f"[dim]{stats_data['store']}[/dim]")

    console.print(Panel(table, title="[bold]Download Ledger[/bold]", border_style="blue"))


def print_summary_panel(stats: DownloadStats, progress_stats: dict | None = None):
    """Displays the final summary of a download run."""
    console = Console()

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column(style="bold cyan", justify="right", width=18)
    stats_table.add_column(style="white", justify="left")

    stats_table.add_row("Model:", f"[bold]{stats.model_id}[/bold]")
    stats_table.add_row("Destination:", f"[dim]{stats.destination}[/dim]")
    stats_table.add_row("", "")
    stats_table.add_row(
        "✓ Downloaded:", f"[bold green]{stats.files_downloaded}[/bold green]"
    )
    if stats.files_skipped > 0:
        stats_table.add_row(
            "○ Up to date:", f"[yellow]{stats.files_skipped}[/yellow]"
        )
    stats_table.add_row("", "")
    stats_table.add_row(
        "Total Size:", f"[cyan]{format_size(stats.bytes_downloaded)}[/cyan]"
    )

    avg_speed = (
        stats.bytes_downloaded / stats.duration_s if stats.duration_s > 0 else 0
    )
    stats_table.add_row(
        "Avg. Speed:", f"[magenta]{format_size(int(avg_speed))}/s[/magenta]"
    )
    stats_table.add_row(
        "Time Elapsed:", f"[blue]{format_duration(stats.duration_s)}[/blue]"
    )

    if (
        progress_stats
        and progress_stats.get("updates")
        and progress_stats["last_fraction"] != 1.0
    ):
        stats_table.add_row(
            "Final Progress:",
            f"[dim]{progress_stats['last_fraction'] * 100:.0f}% "
            "(shallow file count)[/dim]",
        )

    console.print()
    console.print(
        Panel(
            stats_table,
            title="📦 [bold]Download Complete![/bold]",
            border_style="green",
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )
    console.print()
