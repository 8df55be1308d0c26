"""Download progress display driven by lifecycle state snapshots."""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from pocketlm.state import DownloadPhase, LifecycleState

if TYPE_CHECKING:
    from rich.progress import TaskID

_LOG_DECILES = 10


class DownloadProgressReporter:
    """Rich-based progress bar for a model download.

    Subscribe :meth:`callback` to the state store. Renders a live bar on
    TTY stderr; falls back to a log line every 10% otherwise.
    """

    def __init__(self, console: Console, quiet: bool = False) -> None:
        self._console = console
        self._quiet = quiet
        self._progress: Progress | None = None
        self._task_id: TaskID | None = None
        self._last_decile: int = 0
        self._is_tty: bool = sys.stderr.isatty()
        self._logger: logging.Logger = logging.getLogger("pocketlm.progress")

    def start(self, description: str) -> None:
        """Start the progress display."""
        if self._quiet:
            return

        if self._is_tty:
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                TimeElapsedColumn(),
                console=self._console,
            )
            self._progress.start()
            self._task_id = self._progress.add_task(f"[cyan]{description}", total=1.0)
        else:
            self._logger.info("Download started -- %s", description)

    def callback(self, state: LifecycleState) -> None:
        """Handle a state snapshot -- update progress display."""
        if self._quiet or state.download.phase is not DownloadPhase.IN_PROGRESS:
            return

        progress = state.download.progress
        if self._progress is not None and self._task_id is not None:
            self._progress.update(self._task_id, completed=progress)
        elif not self._is_tty:
            decile = int(progress * _LOG_DECILES + 1e-9)
            if decile > self._last_decile:
                self._last_decile = decile
                self._logger.info("Downloaded %d%%", decile * 10)

    def finish(self, state: LifecycleState) -> None:
        """Stop progress and print the outcome."""
        if self._progress is not None:
            self._progress.stop()
            self._progress = None
            self._task_id = None

        if self._quiet:
            return

        if state.download.phase is DownloadPhase.COMPLETE:
            self._console.print(f"[green]Downloaded[/green] {state.model_path}")
        elif state.last_error:
            self._console.print(f"[red]{state.last_error}[/red]")


def status_table(state: LifecycleState, model_exists: bool) -> Table:
    """Summarize a lifecycle snapshot as a two-column table."""
    table = Table(title="Model Status", show_header=True)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Model path", state.model_path or "-")
    table.add_row("On disk", "Yes" if model_exists else "[red]No[/red]")
    table.add_row("Download", f"{state.download.phase.value} ({state.download.progress:.0%})")
    table.add_row("Engine", state.init_status.value)
    table.add_row("Generation", state.generation_status.value)
    table.add_row("Needs initialization", "Yes" if state.needs_initialization else "No")
    if state.last_error:
        table.add_row("Last error", f"[red]{state.last_error}[/red]")
    return table
