"""Task handler contract, name-based registry, and built-in handlers."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

from taskflow.scheduler.errors import InvalidPayloadError
from taskflow.scheduler.models import TaskView

_attempt_state = threading.local()


class TaskHandler(Protocol):
    """Business logic invoked once per attempt.

    ``execute`` returns a JSON-serializable result or raises. Raising
    ``InvalidPayloadError`` marks the failure as not worth retrying.
    """

    def execute(self, task: TaskView, payload: dict[str, Any]) -> Any: ...


HandlerFunc = Callable[[TaskView, dict[str, Any]], Any]


class FunctionHandler:
    """Adapts a plain function to the handler protocol."""

    def __init__(self, func: HandlerFunc) -> None:
        self.func = func

    def execute(self, task: TaskView, payload: dict[str, Any]) -> Any:
        return self.func(task, payload)


class HandlerRegistry:
    """Dispatches to a handler registered under the task name."""

    def __init__(self, *, default: TaskHandler | None = None) -> None:
        self._handlers: dict[str, TaskHandler] = {}
        self.default = default

    def register(self, name: str, handler: TaskHandler | HandlerFunc) -> None:
        if not name.strip():
            raise ValueError("Handler name must not be empty.")
        if not hasattr(handler, "execute"):
            handler = FunctionHandler(handler)  # type: ignore[arg-type]
        self._handlers[name] = handler  # type: ignore[assignment]

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def resolve(self, task: TaskView) -> TaskHandler:
        handler = self._handlers.get(task.name, self.default)
        if handler is None:
            raise InvalidPayloadError(f"No handler registered for task name {task.name!r}")
        return handler

    def execute(self, task: TaskView, payload: dict[str, Any]) -> Any:
        return self.resolve(task).execute(task, payload)


def cancel_requested() -> bool:
    """True once the running attempt has timed out or the worker is stopping.

    Long-running handlers may poll this and return early; their result is
    discarded either way.
    """

    event: threading.Event | None = getattr(_attempt_state, "cancel_event", None)
    return event is not None and event.is_set()


def bind_cancel_event(event: threading.Event | None) -> None:
    _attempt_state.cancel_event = event


def echo_handler(task: TaskView, payload: dict[str, Any]) -> dict[str, Any]:
    return {"task": task.name, "payload": payload}


def noop_handler(task: TaskView, payload: dict[str, Any]) -> None:  # noqa: ARG001
    return None


def sleep_handler(task: TaskView, payload: dict[str, Any]) -> dict[str, Any]:  # noqa: ARG001
    """Sleep ``payload["seconds"]``, waking early when cancelled."""

    raw = payload.get("seconds", 1)
    if not isinstance(raw, int | float) or isinstance(raw, bool) or raw < 0:
        raise InvalidPayloadError(f"'seconds' must be a non-negative number, got {raw!r}")
    deadline = time.monotonic() + float(raw)
    while time.monotonic() < deadline:
        if cancel_requested():
            return {"slept": False}
        time.sleep(min(0.05, max(0.0, deadline - time.monotonic())))
    return {"slept": True}


def build_default_registry() -> HandlerRegistry:
    """Registry with the built-in ``echo``, ``noop`` and ``sleep`` handlers."""

    registry = HandlerRegistry(default=FunctionHandler(echo_handler))
    registry.register("echo", echo_handler)
    registry.register("noop", noop_handler)
    registry.register("sleep", sleep_handler)
    return registry
