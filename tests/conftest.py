"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from taskflow.config import Settings
from taskflow.scheduler.controllers import SchedulerStores
from taskflow.scheduler.events import InMemoryEventSink
from taskflow.scheduler.handlers import TaskHandler, build_default_registry
from taskflow.scheduler.ledger import ExecutionLedger
from taskflow.scheduler.models import TaskCreate, TaskType, TaskView
from taskflow.scheduler.queue import DispatchQueue
from taskflow.scheduler.retry import RetryController
from taskflow.scheduler.services import SchedulerService
from taskflow.scheduler.task_store import SqlTaskStore
from taskflow.scheduler.worker import WorkerPool
from taskflow.storage.common import utc_now


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "taskflow.db"


@pytest.fixture()
def stores(db_path: Path) -> Iterator[SchedulerStores]:
    task_store = SqlTaskStore(db_path)
    queue = DispatchQueue(db_path)
    ledger = ExecutionLedger(db_path)
    task_store.init_schema()
    yield SchedulerStores(
        settings=Settings(db_path=db_path),
        task_store=task_store,
        queue=queue,
        ledger=ledger,
    )
    ledger.close()
    queue.close()
    task_store.close()


@pytest.fixture()
def service(stores: SchedulerStores) -> SchedulerService:
    return stores.service()


@pytest.fixture()
def events() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture()
def make_pool(
    stores: SchedulerStores,
    events: InMemoryEventSink,
) -> Callable[..., WorkerPool]:
    """Build a worker pool with zero backoff and short timeouts."""

    def _make(handler: TaskHandler | None = None, **overrides: Any) -> WorkerPool:
        retry = RetryController(
            queue=stores.queue,
            ledger=stores.ledger,
            events=events,
            base_ms=overrides.pop("retry_base_ms", 0),
        )
        options: dict[str, Any] = {
            "worker_id": "test-worker",
            "concurrency": 4,
            "visibility_timeout_seconds": 5.0,
            "lease_grace_seconds": 1.0,
            "poll_interval_seconds": 0.01,
            "rate_limit_window_seconds": 60.0,
            "graceful_shutdown_seconds": 5.0,
            "queue_depth_emit_seconds": 0.0,
            "install_signal_handlers": False,
        }
        options.update(overrides)
        return WorkerPool(
            queue=stores.queue,
            task_store=stores.task_store,
            ledger=stores.ledger,
            handler=handler or build_default_registry(),
            retry=retry,
            events=events,
            **options,
        )

    return _make


@pytest.fixture()
def make_task(service: SchedulerService) -> Callable[..., TaskView]:
    """Create an immediately due ONE_TIME task through the service."""

    def _make(name: str = "echo", **overrides: Any) -> TaskView:
        payload: dict[str, Any] = {
            "name": name,
            "type": TaskType.ONE_TIME,
            "scheduled_at": utc_now(),
        }
        payload.update(overrides)
        return service.create_task(TaskCreate(**payload))

    return _make
