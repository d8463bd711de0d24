"""
Unified error handling for vgarden.

This module provides the error taxonomy of the orchestration engine and the
resource layer, plus standardized exit codes for the CLI.

Exit Codes:
- 0: Success
- 10: Configuration error
- 11: Store error (resource store failure)
- 12: Compile error (malformed task graph)
- 13: Task failed
- 127: Unknown/internal error
- 130: Cancelled
"""

from __future__ import annotations

import functools
import sys
import traceback
from enum import IntEnum
from typing import Any, Callable, Sequence, TypeVar

import structlog

logger = structlog.get_logger()


class ExitCode(IntEnum):
    """Standardized exit codes for CLI commands."""

    SUCCESS = 0
    CONFIG_ERROR = 10
    STORE_ERROR = 11
    COMPILE_ERROR = 12
    TASK_FAILED = 13
    UNKNOWN_ERROR = 127
    CANCELLED = 130


class VGardenError(Exception):
    """Base exception for vgarden errors with exit code support."""

    exit_code: ExitCode = ExitCode.UNKNOWN_ERROR
    show_traceback: bool = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(VGardenError):
    """Raised for invalid settings or imports."""

    exit_code = ExitCode.CONFIG_ERROR


class StoreError(VGardenError):
    """Raised when the external resource store fails.

    ``transient`` is decided by the store implementation; the engine never
    retries on its own.
    """

    exit_code = ExitCode.STORE_ERROR

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.transient = transient


class CompileError(VGardenError):
    """Raised when a task graph is malformed."""

    exit_code = ExitCode.COMPILE_ERROR


class DuplicateNameError(CompileError):
    """Raised when a task name is added to a graph twice."""

    def __init__(self, name: str):
        super().__init__(f"Task {name!r} is already part of the graph", {"task": name})
        self.name = name


class UnknownDependencyError(CompileError):
    """Raised when a task depends on a name that is not in the graph."""

    def __init__(self, task: str, dependency: str):
        super().__init__(
            f"Task {task!r} depends on unknown task {dependency!r}",
            {"task": task, "dependency": dependency},
        )
        self.task = task
        self.dependency = dependency


class CycleError(CompileError):
    """Raised when the dependency relation of a graph contains a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(self.cycle)}",
            {"cycle": self.cycle},
        )


class TaskFailedError(VGardenError):
    """Raised for a run whose first failing task is ``task``."""

    exit_code = ExitCode.TASK_FAILED

    def __init__(self, task: str, error: BaseException | None):
        super().__init__(f"Task {task!r} failed: {error}", {"task": task})
        self.task = task
        self.error = error


class TaskCancelledError(VGardenError):
    """Raised by a task body that stopped early because the run was cancelled."""

    exit_code = ExitCode.CANCELLED


class RunCancelledError(VGardenError):
    """Raised for a run that was stopped by its cancellation signal."""

    exit_code = ExitCode.CANCELLED


# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., int])


def main_with_error_handling(
    *,
    show_traceback: bool = False,
    log_errors: bool = True,
) -> Callable[[F], F]:
    """
    Decorator for CLI main functions that provides unified error handling.

    Catches exceptions and converts them to appropriate exit codes with
    consistent error reporting.

    Args:
        show_traceback: If True, show full traceback for unexpected errors
        log_errors: If True, log errors to structlog

    Exit codes:
        - VGardenError subclasses: Uses the error's exit_code
        - KeyboardInterrupt: Returns 130 (standard for SIGINT)
        - Other exceptions: Returns 127 (unknown error)
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return func(*args, **kwargs)
            except VGardenError as e:
                if log_errors:
                    logger.error(
                        "command_error",
                        error_type=type(e).__name__,
                        message=e.message,
                        exit_code=e.exit_code,
                        **e.details,
                    )
                if e.show_traceback or show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return e.exit_code
            except KeyboardInterrupt:
                if log_errors:
                    logger.info("command_interrupted")
                return ExitCode.CANCELLED
            except Exception as e:
                if log_errors:
                    logger.error(
                        "unexpected_error",
                        error_type=type(e).__name__,
                        message=str(e),
                        exit_code=ExitCode.UNKNOWN_ERROR,
                    )
                if show_traceback:
                    traceback.print_exc(file=sys.stderr)
                return ExitCode.UNKNOWN_ERROR

        return wrapper  # type: ignore[return-value]

    return decorator


def format_error_message(error: VGardenError) -> str:
    """Format an error message for display to users."""
    msg = error.message
    if error.details:
        detail_str = ", ".join(f"{k}={v}" for k, v in error.details.items())
        msg = f"{msg} ({detail_str})"
    return msg
