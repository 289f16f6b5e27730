"""Metrics events emitted by the worker pool and retry controller."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from taskflow.storage.common import utc_now

logger = logging.getLogger(__name__)

ATTEMPT_STARTED = "attempt_started"
ATTEMPT_FINISHED = "attempt_finished"
RETRY_SCHEDULED = "retry_scheduled"
DEAD_LETTERED = "dead_lettered"
JOB_SKIPPED = "job_skipped"
QUEUE_DEPTH = "queue_depth"


@dataclass(slots=True)
class SchedulerEvent:
    """One observation about queue or attempt state."""

    name: str
    task_id: str | None = None
    job_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    emitted_at: datetime = field(default_factory=utc_now)


class EventSink(Protocol):
    def emit(self, event: SchedulerEvent) -> None: ...


class LoggingEventSink:
    """Writes every event as one structured log line."""

    def __init__(self, *, level: int = logging.DEBUG) -> None:
        self.level = level

    def emit(self, event: SchedulerEvent) -> None:
        logger.log(
            self.level,
            "event=%s task_id=%s job_id=%s %s",
            event.name,
            event.task_id,
            event.job_id,
            " ".join(f"{key}={event.details[key]}" for key in sorted(event.details)),
        )


class InMemoryEventSink:
    """Collects events in memory; safe to share between worker threads."""

    def __init__(self) -> None:
        self._events: list[SchedulerEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: SchedulerEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[SchedulerEvent]:
        with self._lock:
            return list(self._events)

    def named(self, name: str) -> list[SchedulerEvent]:
        return [event for event in self.events if event.name == name]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


class CompositeEventSink:
    """Fans one event out to several sinks."""

    def __init__(self, *sinks: EventSink) -> None:
        self.sinks = sinks

    def emit(self, event: SchedulerEvent) -> None:
        for sink in self.sinks:
            safe_emit(sink, event)


def safe_emit(sink: EventSink, event: SchedulerEvent) -> None:
    """Deliver an event; a failing sink never breaks job processing."""

    try:
        sink.emit(event)
    except Exception:  # noqa: BLE001
        logger.exception("Event sink %s failed for event %s", type(sink).__name__, event.name)
