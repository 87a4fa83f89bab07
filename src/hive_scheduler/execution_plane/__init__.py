"""Execution plane: the callback boundary that runs phase directives on external workers."""

from hive_scheduler.execution_plane.executor import (
    ExecutionRequest,
    ExecutionResult,
    Executor,
    SubprocessExecutor,
)

__all__ = [
    "ExecutionRequest",
    "ExecutionResult",
    "Executor",
    "SubprocessExecutor",
]
