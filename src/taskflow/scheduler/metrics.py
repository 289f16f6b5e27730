"""Operational statistics aggregated from the ledger, task store, and queue."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from taskflow.scheduler.models import (
    DeadLetterView,
    ExecutionStatus,
    JobExecutionView,
    QueueDepth,
    TaskView,
)

RECENT_FAILURE_LIMIT = 10


@dataclass(slots=True)
class LatencyPercentiles:
    """Attempt duration percentiles over finished attempts."""

    sample_size: int
    p50_ms: float
    p90_ms: float
    p95_ms: float
    p99_ms: float


@dataclass(slots=True)
class HourlyBucket:
    hour: datetime
    completed: int = 0
    failed: int = 0


@dataclass(slots=True)
class SchedulerMetricsSnapshot:
    """Aggregated scheduler metrics used by the stats command."""

    window_hours: int
    task_status_counts: dict[str, int]
    task_type_counts: dict[str, int]
    execution_status_counts: dict[str, int]
    total_executions: int
    completed_executions: int
    failed_executions: int
    success_rate: float | None
    average_duration_ms: float | None
    latency: LatencyPercentiles
    hourly: list[HourlyBucket]
    failure_kind_counts: dict[str, int]
    dead_letter_count: int
    queue_depth: QueueDepth | None = None
    recent_failures: list[JobExecutionView] = field(default_factory=list)


def build_scheduler_metrics(  # noqa: PLR0913
    *,
    tasks: list[TaskView],
    executions: list[JobExecutionView],
    dead_letters: list[DeadLetterView],
    window_hours: int,
    queue_depth: QueueDepth | None = None,
    now: datetime | None = None,
) -> SchedulerMetricsSnapshot:
    """Build one snapshot; attempts started before the window are ignored."""

    current = (now or datetime.now(tz=UTC)).astimezone(UTC)
    window_start = current - timedelta(hours=window_hours)
    in_window = [
        execution
        for execution in executions
        if execution.started_at.astimezone(UTC) >= window_start
    ]

    task_status_counts = Counter[str](task.status.value for task in tasks)
    task_type_counts = Counter[str](task.type.value for task in tasks)
    execution_status_counts = Counter[str]()
    failure_kind_counts = Counter[str]()
    durations: list[float] = []
    buckets = _empty_buckets(current=current, window_hours=window_hours)

    completed = 0
    failed = 0
    for execution in in_window:
        execution_status_counts[execution.observed_status.value] += 1
        if execution.status == ExecutionStatus.COMPLETED:
            completed += 1
        elif execution.status == ExecutionStatus.FAILED:
            failed += 1
            if execution.error is not None:
                failure_kind_counts[execution.error.kind.value] += 1
        if execution.duration_ms is not None:
            durations.append(float(execution.duration_ms))

        bucket = buckets.get(_hour_floor(execution.started_at))
        if bucket is not None:
            if execution.status == ExecutionStatus.COMPLETED:
                bucket.completed += 1
            elif execution.status == ExecutionStatus.FAILED:
                bucket.failed += 1

    recent_failures = sorted(
        (execution for execution in in_window if execution.status == ExecutionStatus.FAILED),
        key=lambda execution: execution.started_at,
        reverse=True,
    )[:RECENT_FAILURE_LIMIT]

    return SchedulerMetricsSnapshot(
        window_hours=window_hours,
        task_status_counts=dict(sorted(task_status_counts.items())),
        task_type_counts=dict(sorted(task_type_counts.items())),
        execution_status_counts=dict(sorted(execution_status_counts.items())),
        total_executions=len(in_window),
        completed_executions=completed,
        failed_executions=failed,
        success_rate=_safe_ratio(numerator=completed, denominator=completed + failed),
        average_duration_ms=sum(durations) / len(durations) if durations else None,
        latency=LatencyPercentiles(
            sample_size=len(durations),
            p50_ms=_percentile(durations, 0.50),
            p90_ms=_percentile(durations, 0.90),
            p95_ms=_percentile(durations, 0.95),
            p99_ms=_percentile(durations, 0.99),
        ),
        hourly=[buckets[hour] for hour in sorted(buckets)],
        failure_kind_counts=dict(sorted(failure_kind_counts.items())),
        dead_letter_count=len(dead_letters),
        queue_depth=queue_depth,
        recent_failures=recent_failures,
    )


def render_stats_lines(*, snapshot: SchedulerMetricsSnapshot) -> list[str]:
    """Render operator-facing metrics lines for CLI output."""

    lines = [
        f"Scheduler health (window={snapshot.window_hours}h)",
        "Tasks by status: " + (_fmt_key_value(snapshot.task_status_counts) or "none"),
        "Tasks by type: " + (_fmt_key_value(snapshot.task_type_counts) or "none"),
        (
            f"Executions: total={snapshot.total_executions} "
            f"completed={snapshot.completed_executions} "
            f"failed={snapshot.failed_executions} "
            f"success_rate={_fmt_ratio(snapshot.success_rate)}"
        ),
        "Execution status: " + (_fmt_key_value(snapshot.execution_status_counts) or "none"),
        (
            "Average duration: "
            + (
                f"{snapshot.average_duration_ms:.1f}ms"
                if snapshot.average_duration_ms is not None
                else "n/a"
            )
        ),
    ]

    if snapshot.latency.sample_size:
        lines.append(
            f"Latency percentiles: n={snapshot.latency.sample_size} "
            f"p50={snapshot.latency.p50_ms:.1f}ms "
            f"p90={snapshot.latency.p90_ms:.1f}ms "
            f"p95={snapshot.latency.p95_ms:.1f}ms "
            f"p99={snapshot.latency.p99_ms:.1f}ms",
        )
    else:
        lines.append("Latency percentiles: none")

    lines.append(
        "Failure kinds: " + (_fmt_key_value(snapshot.failure_kind_counts) or "none"),
    )
    lines.append(f"Dead letters: {snapshot.dead_letter_count}")

    if snapshot.queue_depth is not None:
        depth = snapshot.queue_depth
        lines.append(
            f"Queue: ready={depth.ready} delayed={depth.delayed} leased={depth.leased} "
            f"stalled={depth.stalled} paused={'yes' if depth.paused else 'no'}",
        )

    active_buckets = [bucket for bucket in snapshot.hourly if bucket.completed or bucket.failed]
    if active_buckets:
        lines.append("Hourly trend:")
        for bucket in active_buckets:
            lines.append(
                f"  {bucket.hour.strftime('%Y-%m-%d %H:00')} "
                f"completed={bucket.completed} failed={bucket.failed}",
            )
    else:
        lines.append("Hourly trend: none")

    if snapshot.recent_failures:
        lines.append("Recent failures:")
        for execution in snapshot.recent_failures:
            kind = execution.error.kind.value if execution.error is not None else "unknown"
            message = execution.error.message if execution.error is not None else ""
            lines.append(
                f"  {execution.started_at.isoformat()} job={execution.job_id} "
                f"attempt={execution.attempts} kind={kind} {message}".rstrip(),
            )
    else:
        lines.append("Recent failures: none")

    return lines


def _empty_buckets(*, current: datetime, window_hours: int) -> dict[datetime, HourlyBucket]:
    last = _hour_floor(current)
    buckets: dict[datetime, HourlyBucket] = {}
    for offset in range(window_hours):
        hour = last - timedelta(hours=offset)
        buckets[hour] = HourlyBucket(hour=hour)
    return buckets


def _hour_floor(value: datetime) -> datetime:
    return value.astimezone(UTC).replace(minute=0, second=0, microsecond=0)


def _safe_ratio(*, numerator: int, denominator: int) -> float | None:
    if denominator <= 0:
        return None
    return numerator / denominator


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2%}"


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))


def _percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return sorted_values[0]
    rank = (len(sorted_values) - 1) * percentile
    lower = int(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = rank - lower
    return sorted_values[lower] * (1.0 - weight) + sorted_values[upper] * weight
