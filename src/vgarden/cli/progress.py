"""Terminal progress reporting for task graph runs."""

from __future__ import annotations

from typing import Optional

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TaskID, TextColumn

from vgarden.cli.ux import _is_interactive, console
from vgarden.flow.progress import ProgressReporter, ProgressStats
from vgarden.flow.results import TaskStatus

_STATUS_STYLES = {
    TaskStatus.SUCCEEDED: "success",
    TaskStatus.SKIPPED: "muted",
    TaskStatus.FAILED: "error",
    TaskStatus.CANCELLED: "warning",
    TaskStatus.NOT_RUN: "warning",
}


class RichProgressReporter(ProgressReporter):
    """Progress bar on interactive terminals, one line per task otherwise."""

    def __init__(self, output: Optional[Console] = None, live: Optional[bool] = None) -> None:
        self._console = output or console
        self._live = _is_interactive() if live is None else live
        self._progress: Optional[Progress] = None
        self._task: Optional[TaskID] = None

    def start(self, graph_name: str, total: int) -> None:
        if not self._live:
            self._console.print(f"[bold]{graph_name}[/bold] ({total} tasks)")
            return
        self._progress = Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=self._console,
        )
        self._progress.start()
        self._task = self._progress.add_task(graph_name, total=total)

    def report(self, stats: ProgressStats) -> None:
        style = _STATUS_STYLES.get(stats.status, "info")
        line = (
            f"[{stats.completed}/{stats.total}] {stats.task_name}: "
            f"[{style}]{stats.status.value}[/{style}]"
        )
        if self._progress is None or self._task is None:
            self._console.print(line)
            return
        self._progress.console.print(line)
        self._progress.update(self._task, completed=stats.completed)

    def stop(self) -> None:
        if self._progress is not None:
            self._progress.stop()
            self._progress = None
            self._task = None
