from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
from typing import Any

import allure
import pytest

from taskflow.scheduler.controllers import SchedulerStores
from taskflow.scheduler.errors import (
    InvalidScheduleExpressionError,
    TaskInactiveError,
    TaskNotFoundError,
    TaskValidationError,
)
from taskflow.scheduler.handlers import FunctionHandler
from taskflow.scheduler.models import (
    ExecutionError,
    FailureKind,
    TaskCreate,
    TaskStatus,
    TaskType,
    TaskView,
)
from taskflow.scheduler.services import SchedulerService, validate_task
from taskflow.scheduler.worker import WorkerPool
from taskflow.storage.common import utc_now

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Task Admission & Operator Actions"),
]


def _task(**overrides: Any) -> TaskCreate:
    values: dict[str, Any] = {
        "name": "echo",
        "type": TaskType.ONE_TIME,
        "scheduled_at": utc_now(),
    }
    values.update(overrides)
    return TaskCreate(**values)


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"name": "  "}, "name must not be empty"),
        ({"priority": 11}, "priority"),
        ({"priority": -1}, "priority"),
        ({"max_retries": 11}, "max_retries"),
        ({"timeout_ms": 0}, "timeout_ms"),
        ({"rate_limit": 0}, "rate_limit"),
        ({"scheduled_at": None}, "scheduled_at is required"),
        ({"schedule_expression": "* * * * *"}, "not allowed for ONE_TIME"),
        ({"type": TaskType.DELAYED, "scheduled_at": None}, "scheduled_at is required"),
        (
            {"type": TaskType.RECURRING, "scheduled_at": None},
            "schedule_expression is required",
        ),
        (
            {"type": TaskType.RECURRING, "schedule_expression": "* * * * *"},
            "scheduled_at is not allowed",
        ),
        ({"payload": {"when": object()}}, "not JSON-serializable"),
    ],
)
def test_validate_task_rejects_invalid_definitions(
    overrides: dict[str, Any],
    message: str,
) -> None:
    with pytest.raises(TaskValidationError, match=message):
        validate_task(_task(**overrides))


def test_validate_task_rejects_bad_cron() -> None:
    with pytest.raises(InvalidScheduleExpressionError):
        validate_task(
            _task(type=TaskType.RECURRING, scheduled_at=None, schedule_expression="* * 32 * *"),
        )


def test_create_one_time_task_admits_due_job(
    service: SchedulerService,
    stores: SchedulerStores,
) -> None:
    task = service.create_task(_task(payload={"a": 1}, priority=4, max_retries=2))

    assert task.status == TaskStatus.ACTIVE
    assert task.owner_id == "default_owner"
    [job] = stores.queue.list_jobs(task_id=task.task_id)
    assert job.payload == {"a": 1}
    assert job.priority == 4
    assert job.attempts_allowed == 3
    assert job.run_after <= utc_now()


def test_create_delayed_task_waits_until_scheduled_at(
    service: SchedulerService,
    stores: SchedulerStores,
) -> None:
    start = utc_now() + timedelta(minutes=10)

    task = service.create_task(_task(type=TaskType.DELAYED, scheduled_at=start))

    [job] = stores.queue.list_jobs(task_id=task.task_id)
    assert job.run_after >= start - timedelta(seconds=1)
    assert stores.queue.lease(worker_id="w1", visibility_timeout=30) is None


def test_create_recurring_task_schedules_next_fire(
    service: SchedulerService,
    stores: SchedulerStores,
) -> None:
    task = service.create_task(
        _task(type=TaskType.RECURRING, scheduled_at=None, schedule_expression="@hourly"),
    )

    [job] = stores.queue.list_jobs(task_id=task.task_id)
    assert job.is_recurring
    assert job.run_after.minute == 0
    assert task.next_run_at == job.run_after
    assert task.last_run_at is None


def test_pause_and_resume_recurring_task_rearms_entry(
    service: SchedulerService,
    stores: SchedulerStores,
) -> None:
    task = service.create_task(
        _task(type=TaskType.RECURRING, scheduled_at=None, schedule_expression="*/5 * * * *"),
    )

    paused = service.pause_task(task.task_id)
    resumed = service.resume_task(task.task_id)

    assert paused.status == TaskStatus.PAUSED
    assert resumed.status == TaskStatus.ACTIVE
    assert len(stores.queue.list_jobs(task_id=task.task_id)) == 1
    assert resumed.next_run_at is not None


def test_resume_does_not_requeue_completed_one_time_task(
    service: SchedulerService,
    make_pool: Callable[..., WorkerPool],
    stores: SchedulerStores,
) -> None:
    task = service.create_task(_task())
    assert make_pool().run_once().succeeded == 1

    service.pause_task(task.task_id)
    service.resume_task(task.task_id)

    assert stores.queue.list_jobs(task_id=task.task_id) == []


def test_resume_keeps_single_queued_job(
    service: SchedulerService,
    stores: SchedulerStores,
) -> None:
    start = utc_now() + timedelta(hours=1)
    task = service.create_task(_task(type=TaskType.DELAYED, scheduled_at=start))

    service.pause_task(task.task_id)
    service.resume_task(task.task_id)

    assert len(stores.queue.list_jobs(task_id=task.task_id)) == 1


def test_delete_soft_deletes_and_drops_jobs(
    service: SchedulerService,
    stores: SchedulerStores,
) -> None:
    task = service.create_task(_task())

    deleted = service.delete_task(task.task_id)

    assert deleted.status == TaskStatus.COMPLETED
    assert deleted.deleted_at is not None
    assert stores.queue.list_jobs(task_id=task.task_id) == []
    assert service.list_tasks() == []
    assert [item.task_id for item in service.list_tasks(include_deleted=True)] == [task.task_id]
    with pytest.raises(TaskValidationError, match="completed"):
        service.resume_task(task.task_id)
    with pytest.raises(TaskValidationError, match="completed"):
        service.pause_task(task.task_id)


def test_unknown_task_raises_not_found(service: SchedulerService) -> None:
    with pytest.raises(TaskNotFoundError):
        service.pause_task("missing")
    with pytest.raises(TaskNotFoundError):
        service.delete_task("missing")


def test_list_tasks_filters_by_status(service: SchedulerService) -> None:
    active = service.create_task(_task(name="a"))
    paused = service.create_task(_task(name="b"))
    service.pause_task(paused.task_id)

    assert [task.task_id for task in service.list_tasks(status=TaskStatus.ACTIVE)] == [
        active.task_id,
    ]
    assert [task.task_id for task in service.list_tasks(status=TaskStatus.PAUSED)] == [
        paused.task_id,
    ]


def _dead_letter_task(
    service: SchedulerService,
    make_pool: Callable[..., WorkerPool],
) -> TaskView:
    def _fail(task: TaskView, payload: dict[str, Any]) -> None:
        raise RuntimeError("nope")

    task = service.create_task(_task(name="fails", max_retries=0, payload={"p": 1}))
    assert make_pool(FunctionHandler(_fail)).run_once().dead_lettered == 1
    return task


def test_replay_dead_letter_enqueues_fresh_job(
    service: SchedulerService,
    make_pool: Callable[..., WorkerPool],
    stores: SchedulerStores,
) -> None:
    task = _dead_letter_task(service, make_pool)
    [dead_letter] = stores.ledger.list_dead_letters(task_id=task.task_id)

    job = service.replay_dead_letter(dead_letter.id)

    assert job.job_id != dead_letter.job_id
    assert job.payload == {"p": 1}
    assert job.attempts_allowed == 1
    assert stores.ledger.list_dead_letters() == []
    assert make_pool().run_once().succeeded == 1


def test_replay_requires_active_task(
    service: SchedulerService,
    make_pool: Callable[..., WorkerPool],
    stores: SchedulerStores,
) -> None:
    task = _dead_letter_task(service, make_pool)
    [dead_letter] = stores.ledger.list_dead_letters(task_id=task.task_id)
    service.pause_task(task.task_id)

    with pytest.raises(TaskInactiveError, match=r"is not active \(status=PAUSED\)"):
        service.replay_dead_letter(dead_letter.id)
    assert len(stores.ledger.list_dead_letters()) == 1


def test_purge_dead_letters(
    service: SchedulerService,
    stores: SchedulerStores,
) -> None:
    error = ExecutionError(message="x", kind=FailureKind.HANDLER_ERROR)
    first = stores.ledger.add_dead_letter(
        task_id="t1",
        job_id="j1",
        payload={},
        error=error,
        attempts=1,
    )
    stores.ledger.add_dead_letter(task_id="t2", job_id="j2", payload={}, error=error, attempts=1)

    assert service.purge_dead_letter(first.id).job_id == "j1"
    with pytest.raises(LookupError):
        service.purge_dead_letter(first.id)
    assert service.purge_dead_letters(task_id="t2") == 1
    assert stores.ledger.list_dead_letters() == []
