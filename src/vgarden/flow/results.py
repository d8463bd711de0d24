"""Result types for task graph runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from vgarden.core.errors import RunCancelledError, TaskFailedError


class TaskStatus(str, Enum):
    """Lifecycle state of a task within one run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"
    NOT_RUN = "not_run"

    @property
    def is_terminal(self) -> bool:
        return self not in (TaskStatus.PENDING, TaskStatus.RUNNING)

    @property
    def satisfies_dependents(self) -> bool:
        """Whether dependents of a task in this state may start."""
        return self in (TaskStatus.SUCCEEDED, TaskStatus.SKIPPED)


@dataclass(frozen=True)
class TaskOutcome:
    """Terminal outcome of a single task."""

    name: str
    status: TaskStatus
    error: Optional[BaseException] = None
    duration_seconds: float = 0.0


@dataclass
class RunResult:
    """Aggregated outcome of running an execution plan."""

    graph_name: str
    outcomes: Dict[str, TaskOutcome] = field(default_factory=dict)
    first_failure: Optional[TaskOutcome] = None
    cancelled: bool = False
    duration_seconds: float = 0.0

    def _names_with(self, status: TaskStatus) -> List[str]:
        return [name for name, outcome in self.outcomes.items() if outcome.status is status]

    @property
    def succeeded(self) -> List[str]:
        return self._names_with(TaskStatus.SUCCEEDED)

    @property
    def skipped(self) -> List[str]:
        return self._names_with(TaskStatus.SKIPPED)

    @property
    def failed(self) -> List[str]:
        return self._names_with(TaskStatus.FAILED)

    @property
    def not_run(self) -> List[str]:
        return self._names_with(TaskStatus.NOT_RUN)

    @property
    def success(self) -> bool:
        """Whether every task that was not skipped succeeded."""
        return all(
            outcome.status.satisfies_dependents for outcome in self.outcomes.values()
        )

    def status_of(self, name: str) -> TaskStatus:
        return self.outcomes[name].status

    def raise_for_status(self) -> None:
        """Raise if the run failed or was cancelled."""
        if self.first_failure is not None:
            raise TaskFailedError(
                self.first_failure.name, self.first_failure.error
            ) from self.first_failure.error
        if self.cancelled or not self.success:
            raise RunCancelledError(
                f"Run of {self.graph_name!r} was cancelled",
                {"not_run": len(self.not_run)},
            )
