from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import allure

from taskflow.scheduler.controllers import SchedulerStores
from taskflow.scheduler.events import (
    ATTEMPT_FINISHED,
    ATTEMPT_STARTED,
    DEAD_LETTERED,
    JOB_SKIPPED,
    QUEUE_DEPTH,
    InMemoryEventSink,
)
from taskflow.scheduler.handlers import FunctionHandler, HandlerRegistry, cancel_requested
from taskflow.scheduler.models import (
    ExecutionStatus,
    FailureKind,
    JobCreate,
    TaskCreate,
    TaskType,
    TaskView,
)
from taskflow.scheduler.services import SchedulerService
from taskflow.scheduler.worker import WorkerPool, WorkerRunSummary
from taskflow.storage.common import utc_now

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Worker Pool Reliability"),
]


def _always_failing(task: TaskView, payload: dict[str, Any]) -> Any:
    raise RuntimeError(f"{task.name} exploded")


def test_worker_executes_one_time_task(
    make_pool: Callable[..., WorkerPool],
    make_task: Callable[..., TaskView],
    stores: SchedulerStores,
    events: InMemoryEventSink,
) -> None:
    task = make_task("echo", payload={"greeting": "hi"})
    pool = make_pool()

    summary = pool.run_once()

    assert summary.processed == 1
    assert summary.succeeded == 1
    assert summary.failed == 0
    [execution] = stores.ledger.list_executions(task_id=task.task_id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.attempts == 1
    assert execution.worker_id == "test-worker"
    assert execution.result == {"task": "echo", "payload": {"greeting": "hi"}}
    assert stores.queue.list_jobs(task_id=task.task_id) == []
    assert len(events.named(ATTEMPT_STARTED)) == 1
    [finished] = events.named(ATTEMPT_FINISHED)
    assert finished.details["status"] == "completed"

    assert pool.run_once().idle_polls == 1


def test_failing_task_retries_then_dead_letters(
    make_pool: Callable[..., WorkerPool],
    make_task: Callable[..., TaskView],
    stores: SchedulerStores,
    events: InMemoryEventSink,
) -> None:
    task = make_task("flaky", max_retries=2, payload={"n": 1})
    pool = make_pool(FunctionHandler(_always_failing))

    summaries = [pool.run_once() for _ in range(3)]

    assert [summary.retried for summary in summaries] == [1, 1, 0]
    assert [summary.dead_lettered for summary in summaries] == [0, 0, 1]
    executions = stores.ledger.list_executions(task_id=task.task_id)
    assert [execution.attempts for execution in executions] == [3, 2, 1]
    assert all(execution.status == ExecutionStatus.FAILED for execution in executions)
    assert [execution.observed_status for execution in executions] == [
        ExecutionStatus.DEAD_LETTER,
        ExecutionStatus.RETRY,
        ExecutionStatus.RETRY,
    ]
    job_id = executions[0].job_id
    assert {execution.job_id for execution in executions} == {job_id}
    assert len(stores.ledger.list_retry_records(job_id=job_id)) == 2

    [dead_letter] = stores.ledger.list_dead_letters(task_id=task.task_id)
    assert dead_letter.job_id == job_id
    assert dead_letter.attempts == 3
    assert dead_letter.payload == {"n": 1}
    assert dead_letter.error.kind == FailureKind.HANDLER_ERROR
    assert "flaky exploded" in dead_letter.error.message
    assert stores.queue.list_jobs(task_id=task.task_id) == []
    assert len(events.named(DEAD_LETTERED)) == 1
    assert pool.run_once().idle_polls == 1


def test_invalid_payload_is_dead_lettered_without_retry(
    make_pool: Callable[..., WorkerPool],
    make_task: Callable[..., TaskView],
    stores: SchedulerStores,
) -> None:
    task = make_task("sleep", max_retries=3, payload={"seconds": "soon"})

    summary = make_pool().run_once()

    assert summary.dead_lettered == 1
    assert summary.retried == 0
    [dead_letter] = stores.ledger.list_dead_letters(task_id=task.task_id)
    assert dead_letter.attempts == 1
    assert dead_letter.error.kind == FailureKind.INVALID_PAYLOAD


def test_timeout_fails_attempt_and_drops_late_result(
    make_pool: Callable[..., WorkerPool],
    make_task: Callable[..., TaskView],
    stores: SchedulerStores,
) -> None:
    finished = threading.Event()

    def _slow(task: TaskView, payload: dict[str, Any]) -> dict[str, Any]:
        time.sleep(0.4)
        finished.set()
        return {"late": True}

    task = make_task("slow", timeout_ms=50, max_retries=0)

    summary = make_pool(FunctionHandler(_slow)).run_once()

    assert summary.timeouts == 1
    assert summary.failed == 1
    assert summary.dead_lettered == 1
    assert finished.wait(2.0)
    time.sleep(0.05)
    [execution] = stores.ledger.list_executions(task_id=task.task_id)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.result is None
    assert execution.error is not None
    assert execution.error.kind == FailureKind.TIMEOUT
    assert "50ms" in execution.error.message


def test_timed_out_handler_sees_cancellation(
    make_pool: Callable[..., WorkerPool],
    make_task: Callable[..., TaskView],
) -> None:
    observed = threading.Event()

    def _cooperative(task: TaskView, payload: dict[str, Any]) -> None:
        deadline = time.monotonic() + 2.0
        while time.monotonic() < deadline:
            if cancel_requested():
                observed.set()
                return
            time.sleep(0.01)

    make_task("cooperative", timeout_ms=50, max_retries=0)

    make_pool(FunctionHandler(_cooperative)).run_once()

    assert observed.wait(2.0)


def test_recurring_task_rearms_and_tracks_run_times(
    make_pool: Callable[..., WorkerPool],
    stores: SchedulerStores,
) -> None:
    task = stores.task_store.create_task(
        TaskCreate(name="echo", type=TaskType.RECURRING, schedule_expression="* * * * * *"),
    )
    stores.queue.enqueue_recurring(
        task.task_id,
        "* * * * * *",
        task.payload,
        after=utc_now() - timedelta(seconds=10),
    )
    pool = make_pool()
    fired_job_ids: list[str] = []
    next_runs: list[datetime] = []

    for _ in range(3):
        [due] = stores.queue.list_jobs(task_id=task.task_id)
        time.sleep(max(0.0, (due.run_after - utc_now()).total_seconds()) + 0.05)
        assert pool.run_once().succeeded == 1
        fired_job_ids.append(due.job_id)

        [rearmed] = stores.queue.list_jobs(task_id=task.task_id)
        assert rearmed.job_id != due.job_id
        assert rearmed.attempts_made == 0
        refreshed = stores.task_store.get_task(task.task_id)
        assert refreshed is not None
        assert refreshed.last_run_at is not None
        assert refreshed.next_run_at == rearmed.run_after
        next_runs.append(rearmed.run_after)

    assert next_runs[0] < next_runs[1] < next_runs[2]
    executions = stores.ledger.list_executions(task_id=task.task_id)
    assert len(executions) == 3
    assert len(set(fired_job_ids)) == 3
    assert {execution.job_id for execution in executions} == set(fired_job_ids)
    assert all(execution.status == ExecutionStatus.COMPLETED for execution in executions)
    assert all(execution.attempts == 1 for execution in executions)


def test_recurring_dead_letter_still_rearms_next_fire(
    make_pool: Callable[..., WorkerPool],
    stores: SchedulerStores,
) -> None:
    task = stores.task_store.create_task(
        TaskCreate(
            name="broken",
            type=TaskType.RECURRING,
            schedule_expression="*/5 * * * *",
            max_retries=0,
        ),
    )
    stores.queue.enqueue_recurring(
        task.task_id,
        "*/5 * * * *",
        {},
        after=utc_now() - timedelta(minutes=10),
    )

    summary = make_pool(FunctionHandler(_always_failing)).run_once()

    assert summary.dead_lettered == 1
    [rearmed] = stores.queue.list_jobs(task_id=task.task_id)
    assert rearmed.run_after > utc_now()
    refreshed = stores.task_store.get_task(task.task_id)
    assert refreshed is not None
    assert refreshed.last_run_at is None
    assert refreshed.next_run_at == rearmed.run_after
    assert len(stores.ledger.list_dead_letters(task_id=task.task_id)) == 1


def test_paused_task_is_skipped_and_resume_requeues_it(
    make_pool: Callable[..., WorkerPool],
    make_task: Callable[..., TaskView],
    service: SchedulerService,
    stores: SchedulerStores,
    events: InMemoryEventSink,
) -> None:
    task = make_task("echo")
    service.pause_task(task.task_id)
    pool = make_pool()

    summary = pool.run_once()

    assert summary.skipped == 1
    assert summary.succeeded == 0
    assert stores.ledger.list_executions(task_id=task.task_id) == []
    assert stores.queue.list_jobs(task_id=task.task_id) == []
    [skipped] = events.named(JOB_SKIPPED)
    assert skipped.details["reason"] == "task_paused"

    service.resume_task(task.task_id)
    assert pool.run_once().succeeded == 1


def test_missing_task_is_dead_lettered(
    make_pool: Callable[..., WorkerPool],
    stores: SchedulerStores,
) -> None:
    stores.queue.enqueue(JobCreate(task_id="ghost", payload={"orphan": True}, attempts_allowed=4))

    summary = make_pool().run_once()

    assert summary.dead_lettered == 1
    [execution] = stores.ledger.list_executions(task_id="ghost")
    assert execution.observed_status == ExecutionStatus.DEAD_LETTER
    [dead_letter] = stores.ledger.list_dead_letters(task_id="ghost")
    assert dead_letter.error.kind == FailureKind.TASK_NOT_FOUND
    assert dead_letter.payload == {"orphan": True}
    assert stores.queue.list_jobs() == []


def test_rate_limited_job_is_deferred_without_spending_an_attempt(
    make_pool: Callable[..., WorkerPool],
    make_task: Callable[..., TaskView],
    stores: SchedulerStores,
    events: InMemoryEventSink,
) -> None:
    task = make_task("echo", rate_limit=1)
    stores.queue.enqueue(JobCreate(task_id=task.task_id, attempts_allowed=4))
    pool = make_pool()

    first = pool.run_once()
    second = pool.run_once()

    assert first.succeeded == 1
    assert second.deferred == 1
    [deferred] = stores.queue.list_jobs(task_id=task.task_id)
    assert deferred.attempts_made == 0
    assert deferred.run_after > utc_now() + timedelta(seconds=30)
    assert len(stores.ledger.list_executions(task_id=task.task_id)) == 1
    [skipped] = events.named(JOB_SKIPPED)
    assert skipped.details["reason"] == "rate_limited"


def test_rate_limit_holds_across_concurrent_workers(
    make_pool: Callable[..., WorkerPool],
    make_task: Callable[..., TaskView],
    stores: SchedulerStores,
) -> None:
    task = make_task("slow", rate_limit=1)
    for _ in range(3):
        stores.queue.enqueue(JobCreate(task_id=task.task_id))

    def _slow(task: TaskView, payload: dict[str, Any]) -> str:
        time.sleep(0.3)
        return "done"

    summary = make_pool(FunctionHandler(_slow), concurrency=4).run_loop(max_idle_polls=1)

    assert summary.processed == 4
    assert summary.succeeded == 1
    assert summary.deferred == 3
    assert len(stores.ledger.list_executions(task_id=task.task_id)) == 1
    deferred = stores.queue.list_jobs(task_id=task.task_id)
    assert len(deferred) == 3
    assert all(job.attempts_made == 0 for job in deferred)


def test_stalled_attempt_is_taken_over_and_counted(
    make_pool: Callable[..., WorkerPool],
    make_task: Callable[..., TaskView],
    stores: SchedulerStores,
) -> None:
    task = make_task("echo", max_retries=2)
    crashed = stores.queue.lease(worker_id="crashed-worker", visibility_timeout=0.05)
    assert crashed is not None
    orphan = stores.ledger.create_execution(
        task_id=task.task_id,
        job_id=crashed.job_id,
        attempts=crashed.attempts_made,
        worker_id="crashed-worker",
    )
    time.sleep(0.1)

    summary = make_pool().run_once()

    assert summary.succeeded == 1
    executions = stores.ledger.list_executions(task_id=task.task_id)
    assert [execution.attempts for execution in executions] == [2, 1]
    assert executions[0].status == ExecutionStatus.COMPLETED
    stalled = executions[1]
    assert stalled.id == orphan.id
    assert stalled.observed_status == ExecutionStatus.RETRY
    assert stalled.error is not None
    assert stalled.error.kind == FailureKind.STALLED
    assert stores.ledger.complete_execution(orphan, result="late") is False


def test_resumed_recurring_task_recovers_a_crashed_attempt(
    make_pool: Callable[..., WorkerPool],
    service: SchedulerService,
    stores: SchedulerStores,
) -> None:
    task = stores.task_store.create_task(
        TaskCreate(name="echo", type=TaskType.RECURRING, schedule_expression="* * * * * *"),
    )
    stores.queue.enqueue_recurring(
        task.task_id,
        "* * * * * *",
        task.payload,
        after=utc_now() - timedelta(seconds=10),
    )
    crashed = stores.queue.lease(worker_id="crashed-worker", visibility_timeout=0.05)
    assert crashed is not None
    orphan = stores.ledger.create_execution(
        task_id=task.task_id,
        job_id=crashed.job_id,
        attempts=crashed.attempts_made,
        worker_id="crashed-worker",
    )
    time.sleep(0.1)
    service.pause_task(task.task_id)
    service.resume_task(task.task_id)

    assert make_pool().run_once().succeeded == 1

    executions = stores.ledger.list_executions(task_id=task.task_id)
    assert [execution.job_id for execution in executions] == [crashed.job_id, crashed.job_id]
    assert all(execution.status != ExecutionStatus.PROCESSING for execution in executions)
    closed = stores.ledger.get_execution(orphan.id)
    assert closed is not None
    assert closed.completed_at is not None
    assert closed.error is not None
    assert closed.error.kind == FailureKind.STALLED
    assert stores.queue.ack(crashed) is None


def test_run_loop_processes_all_ready_jobs(
    make_pool: Callable[..., WorkerPool],
    make_task: Callable[..., TaskView],
    events: InMemoryEventSink,
) -> None:
    for index in range(5):
        make_task("echo", payload={"index": index})

    summary = make_pool().run_loop(max_idle_polls=1)

    assert summary.processed == 5
    assert summary.succeeded == 5
    assert summary.idle_polls == 1
    assert events.named(QUEUE_DEPTH)


def test_run_loop_bounds_concurrency(
    make_pool: Callable[..., WorkerPool],
    make_task: Callable[..., TaskView],
) -> None:
    lock = threading.Lock()
    running = 0
    peak = 0

    def _tracked(task: TaskView, payload: dict[str, Any]) -> None:
        nonlocal running, peak
        with lock:
            running += 1
            peak = max(peak, running)
        time.sleep(0.05)
        with lock:
            running -= 1

    for _ in range(6):
        make_task("tracked")
    registry = HandlerRegistry()
    registry.register("tracked", _tracked)

    summary = make_pool(registry, concurrency=2).run_loop(max_idle_polls=1)

    assert summary.succeeded == 6
    assert 1 <= peak <= 2


def test_run_loop_honours_max_jobs(
    make_pool: Callable[..., WorkerPool],
    make_task: Callable[..., TaskView],
    stores: SchedulerStores,
) -> None:
    for _ in range(3):
        make_task("echo")

    summary = make_pool().run_loop(max_jobs=2)

    assert summary.processed == 2
    assert len(stores.queue.list_jobs()) == 1


def test_stopped_pool_leases_nothing(
    make_pool: Callable[..., WorkerPool],
    make_task: Callable[..., TaskView],
    stores: SchedulerStores,
) -> None:
    make_task("echo")
    pool = make_pool()
    pool.stop()

    assert pool.stop_requested
    assert pool.run_loop(max_idle_polls=1).processed == 0
    assert pool.run_once().processed == 0
    assert len(stores.queue.list_jobs()) == 1


def test_failing_event_sink_does_not_break_processing(
    make_task: Callable[..., TaskView],
    stores: SchedulerStores,
    make_pool: Callable[..., WorkerPool],
) -> None:
    class _BrokenSink:
        def emit(self, event: object) -> None:
            raise RuntimeError("sink down")

    make_task("echo")
    pool = make_pool()
    pool.events = _BrokenSink()

    assert pool.run_once().succeeded == 1


def test_summary_merge_adds_counters() -> None:
    total = WorkerRunSummary(processed=1, succeeded=1)
    total.merge(WorkerRunSummary(processed=2, failed=1, retried=1))

    assert total == WorkerRunSummary(processed=3, succeeded=1, failed=1, retried=1)


def test_registry_without_handler_dead_letters_job(
    make_pool: Callable[..., WorkerPool],
    make_task: Callable[..., TaskView],
    stores: SchedulerStores,
) -> None:
    task = make_task("unknown", max_retries=3)

    summary = make_pool(HandlerRegistry()).run_once()

    assert summary.dead_lettered == 1
    [dead_letter] = stores.ledger.list_dead_letters(task_id=task.task_id)
    assert dead_letter.error.kind == FailureKind.INVALID_PAYLOAD
