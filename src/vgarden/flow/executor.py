"""
Level-by-level executor for compiled task graphs.

Tasks of one level share no declared dependency and run concurrently as
asyncio tasks. A level is admitted only after every task of the previous
level reached a terminal state. On the first failure the executor lets the
rest of the current level finish and then stops admitting levels. A task
that ends cancelled halts the run the same way.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from vgarden.core.errors import TaskCancelledError
from vgarden.flow.graph import ExecutionPlan, Task
from vgarden.flow.progress import ProgressReporter, ProgressStats
from vgarden.flow.results import RunResult, TaskOutcome, TaskStatus

logger = structlog.get_logger()


@dataclass
class RunOptions:
    """Options for a single run of an execution plan."""

    cancel_event: Optional[asyncio.Event] = None
    logger: Optional[Any] = None
    progress_reporter: Optional[ProgressReporter] = None
    max_concurrency: Optional[int] = None
    context: Any = None

    def __post_init__(self) -> None:
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")


@dataclass
class TaskContext:
    """Per-task view of the run handed to every task body."""

    task_name: str
    graph_name: str
    logger: Any
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    context: Any = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        """Stop a task body at an external-call boundary once the run is cancelled."""
        if self.cancel_event.is_set():
            raise TaskCancelledError(
                f"Task {self.task_name!r} was cancelled", {"task": self.task_name}
            )


class Executor:
    """Runs an ``ExecutionPlan`` to completion or first failure."""

    def __init__(self, plan: ExecutionPlan) -> None:
        self._plan = plan

    async def run(self, options: Optional[RunOptions] = None, **kwargs: Any) -> RunResult:
        options = options or RunOptions(**kwargs)
        run = _Run(self._plan, options)
        return await run.execute()


class _Run:
    """State of one execution; discarded once the run is over."""

    def __init__(self, plan: ExecutionPlan, options: RunOptions) -> None:
        self.plan = plan
        self.options = options
        self.log = (options.logger or logger).bind(graph=plan.name)
        self.cancel_event = options.cancel_event or asyncio.Event()
        self.reporter = options.progress_reporter
        self.semaphore = (
            asyncio.Semaphore(options.max_concurrency) if options.max_concurrency else None
        )
        self.outcomes: Dict[str, TaskOutcome] = {}
        self.first_failure: Optional[TaskOutcome] = None
        self.saw_cancel = False

    async def execute(self) -> RunResult:
        started = time.monotonic()
        self.log.info("flow_started", tasks=self.plan.total, levels=len(self.plan.levels))
        if self.reporter is not None:
            self.reporter.start(self.plan.name, self.plan.total)

        try:
            for level in self.plan.levels:
                if self._halted():
                    for name in level:
                        self._record(TaskOutcome(name, TaskStatus.NOT_RUN))
                    continue
                await self._run_level(level)
        finally:
            if self.reporter is not None:
                self.reporter.stop()

        result = RunResult(
            graph_name=self.plan.name,
            outcomes={name: self.outcomes[name] for name in self.plan.tasks},
            first_failure=self.first_failure,
            cancelled=self.saw_cancel or self.cancel_event.is_set(),
            duration_seconds=time.monotonic() - started,
        )
        self.log.info(
            "flow_finished",
            success=result.success,
            cancelled=result.cancelled,
            failed_task=self.first_failure.name if self.first_failure else None,
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result

    def _halted(self) -> bool:
        if self.cancel_event.is_set():
            self.saw_cancel = True
        # a cancelled task never satisfies its dependents
        return self.saw_cancel or self.first_failure is not None

    async def _run_level(self, level: tuple) -> None:
        admitted: List[Task] = []
        for name in level:
            task = self.plan.tasks[name]
            try:
                skip = task.should_skip()
            except Exception as exc:
                self.log.error("skip_predicate_failed", task=name, error=str(exc))
                self._record(TaskOutcome(name, TaskStatus.FAILED, error=exc))
                continue
            if skip:
                self.log.info("task_skipped", task=name)
                self._record(TaskOutcome(name, TaskStatus.SKIPPED))
            else:
                admitted.append(task)

        if not admitted:
            return
        results = await asyncio.gather(
            *(self._run_task(task) for task in admitted), return_exceptions=True
        )
        for task, result in zip(admitted, results):
            if isinstance(result, asyncio.CancelledError):
                # raised inside the body; cancelling the run itself raises out of gather
                self.saw_cancel = True
                self.log.warning("task_cancelled", task=task.name)
                self._record(TaskOutcome(task.name, TaskStatus.CANCELLED, error=result))
            elif isinstance(result, BaseException):
                raise result

    async def _run_task(self, task: Task) -> None:
        if self.semaphore is None:
            await self._invoke(task)
            return
        async with self.semaphore:
            await self._invoke(task)

    async def _invoke(self, task: Task) -> None:
        if self.cancel_event.is_set():
            self.saw_cancel = True
            self._record(TaskOutcome(task.name, TaskStatus.NOT_RUN))
            return

        task_log = self.log.bind(task=task.name)
        ctx = TaskContext(
            task_name=task.name,
            graph_name=self.plan.name,
            logger=task_log,
            cancel_event=self.cancel_event,
            context=self.options.context,
        )
        task_log.info("task_started")
        started = time.monotonic()
        try:
            await task.fn(ctx)
        except TaskCancelledError as exc:
            self.saw_cancel = True
            task_log.warning("task_cancelled")
            outcome = TaskOutcome(
                task.name, TaskStatus.CANCELLED, error=exc, duration_seconds=time.monotonic() - started
            )
        except Exception as exc:
            task_log.error("task_failed", error=str(exc), error_type=type(exc).__name__)
            outcome = TaskOutcome(
                task.name, TaskStatus.FAILED, error=exc, duration_seconds=time.monotonic() - started
            )
        else:
            outcome = TaskOutcome(
                task.name, TaskStatus.SUCCEEDED, duration_seconds=time.monotonic() - started
            )
            task_log.info("task_succeeded", duration_seconds=round(outcome.duration_seconds, 3))
        self._record(outcome)

    def _record(self, outcome: TaskOutcome) -> None:
        # Runs on the event loop thread without awaiting, so reports never overlap.
        self.outcomes[outcome.name] = outcome
        if outcome.status is TaskStatus.FAILED and self.first_failure is None:
            self.first_failure = outcome
        if self.reporter is None:
            return
        try:
            self.reporter.report(
                ProgressStats(
                    graph_name=self.plan.name,
                    task_name=outcome.name,
                    status=outcome.status,
                    completed=len(self.outcomes),
                    total=self.plan.total,
                )
            )
        except Exception as exc:
            self.log.error(
                "progress_report_failed",
                task=outcome.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
