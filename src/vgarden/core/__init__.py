"""Core modules for vgarden - centralized error definitions."""

from vgarden.core.errors import (
    CompileError,
    ConfigurationError,
    CycleError,
    DuplicateNameError,
    ExitCode,
    RunCancelledError,
    StoreError,
    TaskCancelledError,
    TaskFailedError,
    UnknownDependencyError,
    VGardenError,
    format_error_message,
    main_with_error_handling,
)

__all__ = [
    "ExitCode",
    "VGardenError",
    "ConfigurationError",
    "StoreError",
    "CompileError",
    "DuplicateNameError",
    "UnknownDependencyError",
    "CycleError",
    "TaskFailedError",
    "TaskCancelledError",
    "RunCancelledError",
    "main_with_error_handling",
    "format_error_message",
]
