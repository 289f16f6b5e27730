"""Domain models for task scheduling, dispatch, and execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

MIN_PRIORITY = 0
MAX_PRIORITY = 10


class TaskType(str, Enum):
    """How a task is scheduled."""

    ONE_TIME = "ONE_TIME"
    RECURRING = "RECURRING"
    DELAYED = "DELAYED"


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"


class ExecutionStatus(str, Enum):
    """Attempt lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


class FailureKind(str, Enum):
    """Normalized failure kinds used by retry policy."""

    HANDLER_ERROR = "HandlerError"
    TIMEOUT = "TimeoutError"
    TASK_NOT_FOUND = "TaskNotFoundError"
    INVALID_PAYLOAD = "InvalidPayloadError"
    STALLED = "StalledError"


class JobState(str, Enum):
    """Visibility state of a queue-resident job."""

    QUEUED = "queued"
    LEASED = "leased"


class RetryAction(str, Enum):
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    name: str
    type: TaskType
    owner_id: str | None = None
    description: str | None = None
    schedule_expression: str | None = None
    scheduled_at: datetime | None = None
    priority: int = 0
    payload: dict[str, Any] = field(default_factory=dict)
    max_retries: int = 3
    timeout_ms: int = 30_000
    rate_limit: int | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for admission and worker logic."""

    task_id: str
    owner_id: str
    name: str
    description: str | None
    type: TaskType
    status: TaskStatus
    schedule_expression: str | None
    scheduled_at: datetime | None
    priority: int
    payload: dict[str, Any]
    max_retries: int
    timeout_ms: int
    rate_limit: int | None
    last_run_at: datetime | None
    next_run_at: datetime | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == TaskStatus.ACTIVE


@dataclass(slots=True)
class JobCreate:
    """Input payload for queue admission of one job."""

    task_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    attempts_allowed: int = 1
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Queue-resident job snapshot, including the lease held on it."""

    job_id: str
    task_id: str
    schedule_key: str | None
    schedule_expression: str | None
    payload: dict[str, Any]
    priority: int
    attempts_allowed: int
    attempts_made: int
    nack_count: int
    state: JobState
    run_after: datetime
    lease_owner: str | None
    lease_token: str | None
    lease_expires_at: datetime | None
    enqueued_at: datetime

    @property
    def is_recurring(self) -> bool:
        return self.schedule_key is not None


@dataclass(slots=True)
class ExecutionError:
    """Structured failure captured for one attempt."""

    message: str
    kind: FailureKind
    detail: str | None = None
    retriable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "kind": self.kind.value,
            "detail": self.detail,
            "retriable": self.retriable,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ExecutionError:
        return cls(
            message=str(raw.get("message", "")),
            kind=FailureKind(raw.get("kind", FailureKind.HANDLER_ERROR.value)),
            detail=raw.get("detail"),
            retriable=bool(raw.get("retriable", True)),
        )


@dataclass(slots=True)
class JobExecutionView:
    """Per-attempt ledger row."""

    id: int
    task_id: str
    job_id: str
    status: ExecutionStatus
    disposition: ExecutionStatus | None
    attempts: int
    worker_id: str | None
    started_at: datetime
    completed_at: datetime | None
    duration_ms: int | None
    result: Any
    error: ExecutionError | None
    created_at: datetime

    @property
    def observed_status(self) -> ExecutionStatus:
        """Status as seen from outside: the retry/dead-letter routing wins when set."""

        return self.disposition or self.status


@dataclass(slots=True)
class RetryRecordView:
    """One failed attempt in the retry sub-log."""

    id: int
    execution_id: int
    attempt_number: int
    error: ExecutionError
    attempted_at: datetime


@dataclass(slots=True)
class DeadLetterView:
    """Terminal quarantine record for a job that exhausted its retries."""

    id: int
    task_id: str
    job_id: str
    payload: dict[str, Any]
    error: ExecutionError
    attempts: int
    created_at: datetime


@dataclass(slots=True)
class QueueDepth:
    """Queue size broken down by visibility state."""

    ready: int = 0
    delayed: int = 0
    leased: int = 0
    stalled: int = 0
    paused: bool = False

    @property
    def total(self) -> int:
        return self.ready + self.delayed + self.leased + self.stalled

    def to_dict(self) -> dict[str, int | bool]:
        return {
            "ready": self.ready,
            "delayed": self.delayed,
            "leased": self.leased,
            "stalled": self.stalled,
            "total": self.total,
            "paused": self.paused,
        }


@dataclass(slots=True)
class RetryDecision:
    """Outcome of the retry/backoff policy for one failed attempt."""

    action: RetryAction
    delay_ms: int = 0
    reason: str = ""
    next_run_at: datetime | None = None
