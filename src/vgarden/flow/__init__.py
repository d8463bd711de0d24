"""Flow package: dependency-graph task orchestration."""

from vgarden.flow.executor import Executor, RunOptions, TaskContext
from vgarden.flow.graph import ExecutionPlan, Graph, Task
from vgarden.flow.progress import (
    ImmediateProgressReporter,
    LoggingProgressReporter,
    ProgressReporter,
    ProgressStats,
)
from vgarden.flow.results import RunResult, TaskOutcome, TaskStatus

__all__ = [
    "ExecutionPlan",
    "Executor",
    "Graph",
    "ImmediateProgressReporter",
    "LoggingProgressReporter",
    "ProgressReporter",
    "ProgressStats",
    "RunOptions",
    "RunResult",
    "Task",
    "TaskContext",
    "TaskOutcome",
    "TaskStatus",
]
