"""Exception taxonomy for task admission, dispatch, and execution."""

from __future__ import annotations


class TaskflowError(Exception):
    """Base class for scheduler errors."""


class TaskValidationError(TaskflowError, ValueError):
    """Task definition rejected at creation time."""


class InvalidScheduleError(TaskflowError, ValueError):
    """Queue admission rejected: negative delay or priority out of range."""


class InvalidScheduleExpressionError(TaskValidationError):
    """Malformed recurrence expression."""

    def __init__(self, expression: str, reason: str) -> None:
        super().__init__(f"Invalid schedule expression {expression!r}: {reason}")
        self.expression = expression
        self.reason = reason


class TaskNotFoundError(TaskflowError, LookupError):
    """Job references a task that no longer exists."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskInactiveError(TaskflowError):
    """Task is paused or deleted; its jobs are skipped, not failed."""

    def __init__(self, task_id: str, status: str) -> None:
        super().__init__(f"Task {task_id} is not active (status={status})")
        self.task_id = task_id
        self.status = status


class TaskTimeoutError(TaskflowError, TimeoutError):
    """Handler did not finish within the task timeout."""

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Task execution timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class HandlerError(TaskflowError):
    """Task handler raised; wraps the original exception as ``__cause__``."""


class InvalidPayloadError(HandlerError):
    """Handler rejected its payload; retrying cannot succeed."""


class QueueUnavailableError(TaskflowError):
    """Dispatch queue storage could not be reached."""
