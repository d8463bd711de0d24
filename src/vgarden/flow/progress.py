"""Progress reporting for task graph runs."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from vgarden.flow.results import TaskStatus


@dataclass(frozen=True)
class ProgressStats:
    """Snapshot emitted after a task reached a terminal state."""

    graph_name: str
    task_name: str
    status: TaskStatus
    completed: int
    total: int

    @property
    def ratio(self) -> float:
        if self.total == 0:
            return 1.0
        return self.completed / self.total

    @property
    def percent(self) -> int:
        return int(self.ratio * 100)


class ProgressReporter(ABC):
    """Sink for progress events.

    The executor calls ``report`` from the event loop thread only, one call
    at a time, so implementations need no locking of their own.
    """

    def start(self, graph_name: str, total: int) -> None:
        """Called once before the first task is admitted."""

    @abstractmethod
    def report(self, stats: ProgressStats) -> None:
        ...

    def stop(self) -> None:
        """Called once after the run finished."""


class ImmediateProgressReporter(ProgressReporter):
    """Forwards every progress event to a callback as soon as it happens."""

    def __init__(self, callback: Callable[[ProgressStats], None]) -> None:
        self._callback = callback

    def report(self, stats: ProgressStats) -> None:
        self._callback(stats)


class LoggingProgressReporter(ProgressReporter):
    """Logs progress events with structlog."""

    def __init__(self, logger: Optional[Any] = None) -> None:
        self._logger = logger or structlog.get_logger()

    def start(self, graph_name: str, total: int) -> None:
        self._logger.info("progress_started", graph=graph_name, total=total)

    def report(self, stats: ProgressStats) -> None:
        self._logger.info(
            "progress",
            graph=stats.graph_name,
            task=stats.task_name,
            status=stats.status.value,
            completed=stats.completed,
            total=stats.total,
            percent=stats.percent,
        )
