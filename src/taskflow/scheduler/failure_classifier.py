"""Deterministic attempt failure classification for worker retry policy."""

from __future__ import annotations

import traceback
from dataclasses import dataclass

from taskflow.scheduler.errors import (
    HandlerError,
    InvalidPayloadError,
    TaskNotFoundError,
    TaskTimeoutError,
)
from taskflow.scheduler.models import ExecutionError, FailureKind

FAILURE_CLASSIFIER_VERSION = 1
MAX_DETAIL_CHARS = 8_000

NON_RETRIABLE_KINDS: frozenset[FailureKind] = frozenset(
    {
        FailureKind.TASK_NOT_FOUND,
        FailureKind.INVALID_PAYLOAD,
    },
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: FailureKind
    retriable: bool
    reason_code: str
    message: str
    detail: str | None

    def to_execution_error(self) -> ExecutionError:
        return ExecutionError(
            message=self.message,
            kind=self.kind,
            detail=self.detail,
            retriable=self.retriable,
        )

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for metrics events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_kind": self.kind.value,
            "retriable": self.retriable,
            "reason_code": self.reason_code,
        }


def classify_failure(error: BaseException) -> FailureClassification:
    """Classify an attempt failure by exception type, never by message text."""

    if isinstance(error, TaskTimeoutError):
        return _classification(error, FailureKind.TIMEOUT, "attempt_timeout")
    if isinstance(error, TaskNotFoundError):
        return _classification(error, FailureKind.TASK_NOT_FOUND, "task_not_found")
    if isinstance(error, InvalidPayloadError):
        return _classification(error, FailureKind.INVALID_PAYLOAD, "payload_rejected")
    if isinstance(error, HandlerError):
        return _classification(error, FailureKind.HANDLER_ERROR, "handler_raised")
    return _classification(
        error,
        FailureKind.HANDLER_ERROR,
        f"handler_raised_{type(error).__name__.lower()}",
    )


def classify_stalled(*, worker_id: str | None) -> FailureClassification:
    """Classification for an attempt whose lease expired without ack/nack."""

    owner = worker_id or "unknown"
    return FailureClassification(
        kind=FailureKind.STALLED,
        retriable=True,
        reason_code="lease_expired",
        message=f"Attempt abandoned: lease held by {owner} expired",
        detail=None,
    )


def is_retriable(kind: FailureKind) -> bool:
    return kind not in NON_RETRIABLE_KINDS


def _classification(
    error: BaseException,
    kind: FailureKind,
    reason_code: str,
) -> FailureClassification:
    return FailureClassification(
        kind=kind,
        retriable=is_retriable(kind),
        reason_code=reason_code,
        message=_error_message(error),
        detail=_error_detail(error),
    )


def _error_message(error: BaseException) -> str:
    message = str(error).strip()
    if message:
        return message
    return type(error).__name__


def _error_detail(error: BaseException) -> str | None:
    if error.__traceback__ is None and error.__cause__ is None:
        return f"{type(error).__name__}: {_error_message(error)}"
    formatted = "".join(traceback.format_exception(error)).strip()
    if len(formatted) > MAX_DETAIL_CHARS:
        return formatted[-MAX_DETAIL_CHARS:]
    return formatted
