from __future__ import annotations

import allure

from taskflow.scheduler.errors import (
    HandlerError,
    InvalidPayloadError,
    TaskNotFoundError,
    TaskTimeoutError,
)
from taskflow.scheduler.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_failure,
    classify_stalled,
    is_retriable,
)
from taskflow.scheduler.models import FailureKind

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


def test_timeout_is_retriable() -> None:
    classified = classify_failure(TaskTimeoutError(250))

    assert classified.kind == FailureKind.TIMEOUT
    assert classified.retriable is True
    assert classified.reason_code == "attempt_timeout"
    assert classified.message == "Task execution timed out after 250ms"


def test_missing_task_and_invalid_payload_are_not_retriable() -> None:
    missing = classify_failure(TaskNotFoundError("t-9"))
    invalid = classify_failure(InvalidPayloadError("seconds must be numeric"))

    assert (missing.kind, missing.retriable) == (FailureKind.TASK_NOT_FOUND, False)
    assert (invalid.kind, invalid.retriable) == (FailureKind.INVALID_PAYLOAD, False)
    assert invalid.to_execution_error().retriable is False


def test_arbitrary_exception_is_a_retriable_handler_error() -> None:
    try:
        raise KeyError("missing-key")
    except KeyError as error:
        classified = classify_failure(error)

    assert classified.kind == FailureKind.HANDLER_ERROR
    assert classified.retriable is True
    assert classified.reason_code == "handler_raised_keyerror"
    assert classified.detail is not None
    assert "Traceback" in classified.detail


def test_handler_error_without_message_uses_type_name() -> None:
    classified = classify_failure(HandlerError())

    assert classified.message == "HandlerError"
    assert classified.reason_code == "handler_raised"
    assert classified.detail == "HandlerError: HandlerError"


def test_classification_is_by_type_not_message() -> None:
    classified = classify_failure(RuntimeError("timed out after 5ms; task not found"))

    assert classified.kind == FailureKind.HANDLER_ERROR


def test_stalled_classification_names_previous_holder() -> None:
    classified = classify_stalled(worker_id="worker-a")

    assert classified.kind == FailureKind.STALLED
    assert classified.retriable is True
    assert "worker-a" in classified.message
    assert classified.to_event_details() == {
        "classifier_version": 1,
        "failure_kind": "StalledError",
        "retriable": True,
        "reason_code": "lease_expired",
    }


def test_is_retriable_by_kind() -> None:
    assert is_retriable(FailureKind.HANDLER_ERROR)
    assert is_retriable(FailureKind.STALLED)
    assert not is_retriable(FailureKind.TASK_NOT_FOUND)
