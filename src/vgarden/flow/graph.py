"""
Task graph declaration and compilation.

A ``Graph`` collects named tasks with declared dependencies. ``compile()``
validates the graph and turns it into an immutable ``ExecutionPlan`` whose
levels hold mutually independent tasks:

    graph = Graph("Virtual Garden Deletion")
    etcd = graph.add_task("delete-etcd", delete_etcd)
    graph.add_task("delete-backup-bucket", delete_bucket, dependencies=[etcd])
    result = await graph.compile().run(RunOptions(...))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
)

from vgarden.core.errors import CycleError, DuplicateNameError, UnknownDependencyError

if TYPE_CHECKING:
    from vgarden.flow.executor import RunOptions, TaskContext
    from vgarden.flow.results import RunResult

TaskFn = Callable[["TaskContext"], Awaitable[None]]
SkipPredicate = Callable[[], bool]


@dataclass(frozen=True)
class Task:
    """A named unit of work with declared dependencies."""

    name: str
    fn: TaskFn
    dependencies: FrozenSet[str] = field(default_factory=frozenset)
    skip_if: Optional[SkipPredicate] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("task name must not be empty")
        object.__setattr__(self, "dependencies", frozenset(self.dependencies))

    def should_skip(self) -> bool:
        return bool(self.skip_if()) if self.skip_if is not None else False


class Graph:
    """Mutable collection of tasks, built once and then compiled."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._tasks: Dict[str, Task] = {}

    def add(self, task: Task) -> str:
        """Register a task and return its name for use as a dependency."""
        if task.name in self._tasks:
            raise DuplicateNameError(task.name)
        self._tasks[task.name] = task
        return task.name

    def add_task(
        self,
        name: str,
        fn: TaskFn,
        dependencies: Iterable[str] = (),
        skip_if: Optional[SkipPredicate] = None,
    ) -> str:
        return self.add(Task(name=name, fn=fn, dependencies=frozenset(dependencies), skip_if=skip_if))

    @property
    def tasks(self) -> Mapping[str, Task]:
        return MappingProxyType(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    def compile(self) -> "ExecutionPlan":
        """Validate the graph and compute its execution levels."""
        for task in self._tasks.values():
            for dependency in sorted(task.dependencies):
                if dependency not in self._tasks:
                    raise UnknownDependencyError(task.name, dependency)

        successors: Dict[str, List[str]] = {name: [] for name in self._tasks}
        for task in self._tasks.values():
            for dependency in task.dependencies:
                successors[dependency].append(task.name)

        in_degree = {name: len(task.dependencies) for name, task in self._tasks.items()}
        current = [name for name, degree in in_degree.items() if degree == 0]
        levels: List[Tuple[str, ...]] = []
        placed = 0

        while current:
            levels.append(tuple(current))
            placed += len(current)
            ready = set()
            for name in current:
                for successor in successors[name]:
                    in_degree[successor] -= 1
                    if in_degree[successor] == 0:
                        ready.add(successor)
            # keep declaration order within a level
            current = [name for name in self._tasks if name in ready]

        if placed != len(self._tasks):
            remaining = [name for name, degree in in_degree.items() if degree > 0]
            raise CycleError(self._find_cycle(remaining))

        return ExecutionPlan(
            name=self.name,
            tasks=dict(self._tasks),
            successors={name: tuple(names) for name, names in successors.items()},
            levels=tuple(levels),
        )

    def _find_cycle(self, remaining: List[str]) -> List[str]:
        """Walk unresolved dependencies until a task repeats.

        Every task left over by the layered sort still has an unresolved
        dependency among the leftovers, so the walk always closes a loop.
        The returned path reads "a depends on b depends on ... a".
        """
        leftover = set(remaining)
        order = {name: index for index, name in enumerate(self._tasks)}
        path: List[str] = []
        seen: Dict[str, int] = {}
        node = remaining[0]
        while node not in seen:
            seen[node] = len(path)
            path.append(node)
            node = min(
                (dep for dep in self._tasks[node].dependencies if dep in leftover),
                key=order.__getitem__,
            )
        cycle = path[seen[node]:]
        cycle.append(node)
        return cycle


@dataclass(frozen=True, eq=False)
class ExecutionPlan:
    """Compiled, topologically leveled form of a graph."""

    name: str
    tasks: Mapping[str, Task]
    successors: Mapping[str, Tuple[str, ...]]
    levels: Tuple[Tuple[str, ...], ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "tasks", MappingProxyType(dict(self.tasks)))
        object.__setattr__(self, "successors", MappingProxyType(dict(self.successors)))
        index = {name: i for i, level in enumerate(self.levels) for name in level}
        object.__setattr__(self, "_level_index", MappingProxyType(index))

    @property
    def total(self) -> int:
        return len(self.tasks)

    def level_of(self, name: str) -> int:
        return self._level_index[name]  # type: ignore[attr-defined]

    def dependencies_of(self, name: str) -> FrozenSet[str]:
        return self.tasks[name].dependencies

    def descendants_of(self, name: str) -> FrozenSet[str]:
        """All tasks that transitively depend on ``name``."""
        found: set = set()
        stack = list(self.successors[name])
        while stack:
            current = stack.pop()
            if current not in found:
                found.add(current)
                stack.extend(self.successors[current])
        return frozenset(found)

    async def run(self, options: Optional["RunOptions"] = None, **kwargs: Any) -> "RunResult":
        """Run this plan with a fresh ``Executor``."""
        from vgarden.flow.executor import Executor

        return await Executor(self).run(options, **kwargs)
