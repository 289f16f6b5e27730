from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure

from taskflow.scheduler.metrics import build_scheduler_metrics, render_stats_lines
from taskflow.scheduler.models import (
    DeadLetterView,
    ExecutionError,
    ExecutionStatus,
    FailureKind,
    JobExecutionView,
    QueueDepth,
    TaskStatus,
    TaskType,
    TaskView,
)

pytestmark = [
    allure.epic("Observability"),
    allure.feature("Scheduler Health Stats"),
]

NOW = datetime(2026, 10, 18, 12, 30, tzinfo=UTC)


def _task(task_id: str, status: TaskStatus, task_type: TaskType) -> TaskView:
    return TaskView(
        task_id=task_id,
        owner_id="default_owner",
        name="echo",
        description=None,
        type=task_type,
        status=status,
        schedule_expression=None,
        scheduled_at=None,
        priority=0,
        payload={},
        max_retries=3,
        timeout_ms=1_000,
        rate_limit=None,
        last_run_at=None,
        next_run_at=None,
        created_at=NOW,
        updated_at=NOW,
    )


def _execution(  # noqa: PLR0913
    execution_id: int,
    *,
    status: ExecutionStatus,
    started_at: datetime,
    duration_ms: int | None,
    disposition: ExecutionStatus | None = None,
    kind: FailureKind | None = None,
) -> JobExecutionView:
    return JobExecutionView(
        id=execution_id,
        task_id="t1",
        job_id=f"j{execution_id}",
        status=status,
        disposition=disposition,
        attempts=1,
        worker_id="w1",
        started_at=started_at,
        completed_at=None,
        duration_ms=duration_ms,
        result=None,
        error=ExecutionError(message="boom", kind=kind) if kind is not None else None,
        created_at=started_at,
    )


def test_metrics_aggregate_attempts_inside_window() -> None:
    tasks = [
        _task("t1", TaskStatus.ACTIVE, TaskType.ONE_TIME),
        _task("t2", TaskStatus.PAUSED, TaskType.RECURRING),
        _task("t3", TaskStatus.ACTIVE, TaskType.RECURRING),
    ]
    executions = [
        _execution(1, status=ExecutionStatus.COMPLETED, started_at=NOW, duration_ms=100),
        _execution(
            2,
            status=ExecutionStatus.COMPLETED,
            started_at=NOW - timedelta(hours=1),
            duration_ms=300,
        ),
        _execution(
            3,
            status=ExecutionStatus.FAILED,
            started_at=NOW - timedelta(minutes=5),
            duration_ms=200,
            disposition=ExecutionStatus.RETRY,
            kind=FailureKind.TIMEOUT,
        ),
        _execution(4, status=ExecutionStatus.PROCESSING, started_at=NOW, duration_ms=None),
        _execution(
            5,
            status=ExecutionStatus.COMPLETED,
            started_at=NOW - timedelta(hours=30),
            duration_ms=9_999,
        ),
    ]

    snapshot = build_scheduler_metrics(
        tasks=tasks,
        executions=executions,
        dead_letters=[],
        window_hours=24,
        queue_depth=QueueDepth(ready=2, delayed=1),
        now=NOW,
    )

    assert snapshot.task_status_counts == {"ACTIVE": 2, "PAUSED": 1}
    assert snapshot.task_type_counts == {"ONE_TIME": 1, "RECURRING": 2}
    assert snapshot.total_executions == 4
    assert snapshot.completed_executions == 2
    assert snapshot.failed_executions == 1
    assert snapshot.execution_status_counts == {"completed": 2, "processing": 1, "retry": 1}
    assert snapshot.success_rate == 2 / 3
    assert snapshot.average_duration_ms == 200.0
    assert snapshot.latency.sample_size == 3
    assert snapshot.latency.p50_ms == 200.0
    assert snapshot.failure_kind_counts == {"TimeoutError": 1}
    assert [failure.id for failure in snapshot.recent_failures] == [3]
    assert len(snapshot.hourly) == 24
    current_hour = snapshot.hourly[-1]
    assert current_hour.hour == datetime(2026, 10, 18, 12, tzinfo=UTC)
    assert (current_hour.completed, current_hour.failed) == (1, 1)


def test_render_stats_lines_for_empty_window() -> None:
    snapshot = build_scheduler_metrics(
        tasks=[],
        executions=[],
        dead_letters=[],
        window_hours=6,
        now=NOW,
    )

    lines = render_stats_lines(snapshot=snapshot)

    assert lines[0] == "Scheduler health (window=6h)"
    assert "Tasks by status: none" in lines
    assert "Executions: total=0 completed=0 failed=0 success_rate=n/a" in lines
    assert "Latency percentiles: none" in lines
    assert "Dead letters: 0" in lines
    assert "Hourly trend: none" in lines
    assert "Recent failures: none" in lines
    assert not any(line.startswith("Queue:") for line in lines)


def test_render_stats_lines_includes_queue_and_failures() -> None:
    failure = _execution(
        7,
        status=ExecutionStatus.FAILED,
        started_at=NOW,
        duration_ms=50,
        disposition=ExecutionStatus.DEAD_LETTER,
        kind=FailureKind.HANDLER_ERROR,
    )
    dead_letter = DeadLetterView(
        id=1,
        task_id="t1",
        job_id="j7",
        payload={},
        error=ExecutionError(message="boom", kind=FailureKind.HANDLER_ERROR),
        attempts=1,
        created_at=NOW,
    )
    snapshot = build_scheduler_metrics(
        tasks=[],
        executions=[failure],
        dead_letters=[dead_letter],
        window_hours=2,
        queue_depth=QueueDepth(ready=1, leased=2, paused=True),
        now=NOW,
    )

    lines = render_stats_lines(snapshot=snapshot)

    assert "Executions: total=1 completed=0 failed=1 success_rate=0.00%" in lines
    assert "Dead letters: 1" in lines
    assert "Queue: ready=1 delayed=0 leased=2 stalled=0 paused=yes" in lines
    assert "  2026-10-18 12:00 completed=0 failed=1" in lines
    assert any("job=j7" in line and "kind=HandlerError boom" in line for line in lines)
