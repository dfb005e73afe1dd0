"""
Rich progress display for a download run.

The orchestrator reports a single fraction after every file decision; this
module turns that stream into a live progress bar plus a short status line.
"""

import logging
from datetime import datetime

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from modelscope_cli.utils.formatting import format_percent

log = logging.getLogger("modelscope_cli")

_BAR_RESOLUTION = 1000


class ProgressManager:
    """Tracks the reported fractions of one run and renders them with Rich."""

    def __init__(self, console: Console, description: str, quiet: bool = False):
        self.console = console
        self.description = description
        self.quiet = quiet

        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=40),
            TextColumn("{task.fields[percent]}"),
            "•",
            TextColumn("[cyan]{task.fields[decisions]}[/cyan] files"),
            "•",
            TimeElapsedColumn(),
            console=console,
            transient=False,
        )
        self._task_id: TaskID | None = None
        self._stats = {
            "updates": 0,
            "last_fraction": 0.0,
            "start_time": None,
        }

    def on_progress(self, fraction: float) -> None:
        """Progress callback handed to the orchestrator."""
        self._stats["updates"] += 1
        self._stats["last_fraction"] = fraction
        if self._task_id is None:
            return
        self.progress.update(
            self._task_id,
            completed=min(fraction, 1.0) * _BAR_RESOLUTION,
            percent=format_percent(fraction),
            decisions=self._stats["updates"],
        )

    def get_statistics(self) -> dict:
        return self._stats.copy()

    async def __aenter__(self):
        self._stats["start_time"] = datetime.now()
        if self.quiet:
            return self
        self._task_id = self.progress.add_task(
            self.description,
            total=_BAR_RESOLUTION,
            percent=format_percent(0.0),
            decisions=0,
        )
        self.progress.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if not self.quiet:
            self.progress.stop()
        return False
