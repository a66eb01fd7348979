"""Error taxonomy shared by the planner and the chain execution engine."""

from __future__ import annotations

from typing import Optional


class GoalflowError(RuntimeError):
    pass


class GoalValidationError(GoalflowError):
    """A goal could not be normalised. The planner absorbs this error."""


class DependencyError(GoalflowError):
    """A declared dependency is unknown or circular."""


class ChainNotFoundError(GoalflowError, KeyError):
    def __init__(self, chain_id: str) -> None:
        super().__init__(f"Unknown chain {chain_id}")
        self.chain_id = chain_id

    def __str__(self) -> str:
        return self.args[0]


class ChainStateError(GoalflowError):
    """Raised when an operation is not valid for the chain's current status."""


class ChainCancelledError(GoalflowError):
    def __init__(self, chain_id: str) -> None:
        super().__init__(f"Chain {chain_id} was cancelled")
        self.chain_id = chain_id


class TaskError(GoalflowError):
    """Base class for failures attributed to a single task of a chain."""

    def __init__(
        self,
        message: str,
        *,
        chain_id: Optional[str] = None,
        task_id: Optional[str] = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.chain_id = chain_id
        self.task_id = task_id
        self.attempts = attempts


class ExecutorNotFoundError(TaskError):
    def __init__(self, task_type: str, **kwargs) -> None:
        super().__init__(f"No executor registered for task type {task_type!r}", **kwargs)
        self.task_type = task_type


class TaskTimeoutError(TaskError):
    def __init__(self, timeout_ms: int, **kwargs) -> None:
        super().__init__(f"Task execution timeout after {timeout_ms}ms", **kwargs)
        self.timeout_ms = timeout_ms


class TaskExecutionError(TaskError):
    """Executor failure, or the final error of a task that exhausted its retries."""


__all__ = [
    "ChainCancelledError",
    "ChainNotFoundError",
    "ChainStateError",
    "DependencyError",
    "ExecutorNotFoundError",
    "GoalValidationError",
    "GoalflowError",
    "TaskError",
    "TaskExecutionError",
    "TaskTimeoutError",
]
