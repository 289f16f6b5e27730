"""Controllers for scheduler CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from taskflow.config import Settings
from taskflow.scheduler.errors import TaskValidationError
from taskflow.scheduler.events import LoggingEventSink
from taskflow.scheduler.handlers import TaskHandler, build_default_registry
from taskflow.scheduler.ledger import ExecutionLedger
from taskflow.scheduler.metrics import build_scheduler_metrics, render_stats_lines
from taskflow.scheduler.models import (
    ExecutionStatus,
    JobExecutionView,
    TaskCreate,
    TaskStatus,
    TaskType,
    TaskView,
)
from taskflow.scheduler.queue import DispatchQueue
from taskflow.scheduler.services import SchedulerService
from taskflow.scheduler.task_store import SqlTaskStore
from taskflow.scheduler.worker import build_worker_pool


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    db_path: Path | None
    name: str
    task_type: str
    schedule_expression: str | None
    scheduled_at: datetime | None
    delay_seconds: float | None
    priority: int
    payload_json: str | None
    max_retries: int
    timeout_ms: int
    rate_limit: int | None
    description: str | None = None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    include_deleted: bool
    limit: int


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for show/pause/resume/delete operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class QueueCommand:
    db_path: Path | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    concurrency: int | None = None
    max_idle_polls: int | None = 1


@dataclass(slots=True)
class ExecutionsCommand:
    db_path: Path | None
    task_id: str | None
    job_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class DeadLettersCommand:
    db_path: Path | None
    task_id: str | None
    limit: int


@dataclass(slots=True)
class DeadLetterRefCommand:
    db_path: Path | None
    dead_letter_id: int


@dataclass(slots=True)
class DeadLetterPurgeCommand:
    db_path: Path | None
    task_id: str | None
    older_than_hours: int | None


@dataclass(slots=True)
class StatsCommand:
    """CLI input for scheduler health stats."""

    db_path: Path | None
    hours: int


@dataclass(slots=True)
class SchedulerStores:
    settings: Settings
    task_store: SqlTaskStore
    queue: DispatchQueue
    ledger: ExecutionLedger

    def service(self) -> SchedulerService:
        return SchedulerService(
            task_store=self.task_store,
            queue=self.queue,
            ledger=self.ledger,
            owner_id=self.settings.owner_id,
        )


class SchedulerCliController:
    """Coordinates task, queue, worker, and inspection CLI operations."""

    def __init__(self, *, handler: TaskHandler | None = None) -> None:
        self.handler = handler

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        task_type = _parse_task_type(command.task_type)
        scheduled_at = command.scheduled_at
        if command.delay_seconds is not None:
            if scheduled_at is not None:
                raise TaskValidationError("Use either --scheduled-at or --delay, not both")
            scheduled_at = datetime.now(tz=UTC) + timedelta(seconds=command.delay_seconds)
        if scheduled_at is None and task_type == TaskType.ONE_TIME:
            scheduled_at = datetime.now(tz=UTC)

        with _stores(settings) as stores:
            task = stores.service().create_task(
                TaskCreate(
                    name=command.name,
                    type=task_type,
                    description=command.description,
                    schedule_expression=command.schedule_expression,
                    scheduled_at=scheduled_at,
                    priority=command.priority,
                    payload=_parse_payload(command.payload_json),
                    max_retries=command.max_retries,
                    timeout_ms=command.timeout_ms,
                    rate_limit=command.rate_limit,
                ),
            )
            jobs = stores.queue.list_jobs(task_id=task.task_id)

        lines = [
            "Task created: "
            f"task_id={task.task_id} type={task.type.value} status={task.status.value}",
        ]
        for job in jobs:
            lines.append(f"  job={job.job_id} run_after={job.run_after.isoformat()}")
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            tasks = stores.service().list_tasks(
                status=_parse_task_status(command.status),
                include_deleted=command.include_deleted,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} name={task.name} type={task.type.value} "
                f"status={task.status.value} priority={task.priority} "
                f"next_run_at={_fmt_dt(task.next_run_at)}",
            )
        return lines

    def show_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            task = stores.task_store.get_task(command.task_id)
            if task is None:
                return [f"Task not found: {command.task_id}"]
            jobs = stores.queue.list_jobs(task_id=task.task_id)
            executions = stores.ledger.list_executions(task_id=task.task_id, limit=20)
            dead_letters = stores.ledger.list_dead_letters(task_id=task.task_id, limit=20)

        lines = _task_lines(task)
        lines.append(f"Queued jobs: {len(jobs)}")
        for job in jobs:
            lines.append(
                f"  job={job.job_id} state={job.state.value} "
                f"run_after={job.run_after.isoformat()} "
                f"attempts={job.attempts_made}/{job.attempts_allowed}",
            )
        lines.append(f"Recent executions: {len(executions)}")
        lines.extend(_execution_line(execution) for execution in executions)
        lines.append(f"Dead letters: {len(dead_letters)}")
        for dead_letter in dead_letters:
            lines.append(
                f"  #{dead_letter.id} job={dead_letter.job_id} attempts={dead_letter.attempts} "
                f"error={dead_letter.error.message}",
            )
        return lines

    def pause_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            task = stores.service().pause_task(command.task_id)
        return [f"Task paused: {task.task_id}"]

    def resume_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            task = stores.service().resume_task(command.task_id)
        return [f"Task resumed: {task.task_id} next_run_at={_fmt_dt(task.next_run_at)}"]

    def delete_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            task = stores.service().delete_task(command.task_id)
        return [f"Task deleted: {task.task_id}"]

    def pause_queue(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            stores.queue.pause()
        return ["Queue paused"]

    def resume_queue(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            stores.queue.resume()
        return ["Queue resumed"]

    def queue_depth(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            depth = stores.queue.depth()
        return [
            f"Queue depth: ready={depth.ready} delayed={depth.delayed} leased={depth.leased} "
            f"stalled={depth.stalled} total={depth.total} "
            f"paused={'yes' if depth.paused else 'no'}",
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            pool = build_worker_pool(
                settings,
                queue=stores.queue,
                task_store=stores.task_store,
                ledger=stores.ledger,
                handler=self.handler or build_default_registry(),
                events=LoggingEventSink(),
                concurrency=command.concurrency,
            )
            summary = (
                pool.run_once()
                if command.once
                else pool.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"dead_lettered={summary.dead_lettered} timeouts={summary.timeouts} "
            f"skipped={summary.skipped} deferred={summary.deferred} "
            f"idle_polls={summary.idle_polls}",
        ]

    def executions(self, command: ExecutionsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            executions = stores.ledger.list_executions(
                task_id=command.task_id,
                job_id=command.job_id,
                status=_parse_execution_status(command.status),
                limit=command.limit,
            )
        lines = [f"Executions: {len(executions)}"]
        lines.extend(_execution_line(execution) for execution in executions)
        return lines

    def list_dead_letters(self, command: DeadLettersCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            dead_letters = stores.ledger.list_dead_letters(
                task_id=command.task_id,
                limit=command.limit,
            )
        lines = [f"Dead letters: {len(dead_letters)}"]
        for dead_letter in dead_letters:
            lines.append(
                f"  #{dead_letter.id} task={dead_letter.task_id} job={dead_letter.job_id} "
                f"attempts={dead_letter.attempts} kind={dead_letter.error.kind.value} "
                f"created_at={dead_letter.created_at.isoformat()} "
                f"error={dead_letter.error.message}",
            )
        return lines

    def replay_dead_letter(self, command: DeadLetterRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as stores:
            job = stores.service().replay_dead_letter(command.dead_letter_id)
        return [f"Dead letter replayed: #{command.dead_letter_id} -> job={job.job_id}"]

    def purge_dead_letters(self, command: DeadLetterPurgeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        older_than = (
            datetime.now(tz=UTC) - timedelta(hours=command.older_than_hours)
            if command.older_than_hours is not None
            else None
        )
        with _stores(settings) as stores:
            purged = stores.service().purge_dead_letters(
                task_id=command.task_id,
                older_than=older_than,
            )
        return [f"Dead letters purged: {purged}"]

    def stats(self, command: StatsCommand) -> list[str]:
        """Show operator-facing scheduler health metrics."""

        settings = Settings.from_env(db_path=command.db_path)
        hours = max(1, command.hours)
        cutoff = datetime.now(tz=UTC) - timedelta(hours=hours)
        with _stores(settings) as stores:
            tasks = stores.task_store.list_tasks(include_deleted=True, limit=100_000)
            executions = stores.ledger.list_executions(since=cutoff, limit=None)
            dead_letters = stores.ledger.list_dead_letters(limit=None)
            depth = stores.queue.depth()

        snapshot = build_scheduler_metrics(
            tasks=tasks,
            executions=executions,
            dead_letters=dead_letters,
            window_hours=hours,
            queue_depth=depth,
        )
        return render_stats_lines(snapshot=snapshot)


def _task_lines(task: TaskView) -> list[str]:
    return [
        f"Task: {task.task_id}",
        f"Name: {task.name}",
        f"Owner: {task.owner_id}",
        f"Type: {task.type.value}",
        f"Status: {task.status.value}",
        f"Schedule: {task.schedule_expression or '-'}",
        f"Scheduled at: {_fmt_dt(task.scheduled_at)}",
        f"Priority: {task.priority}",
        f"Max retries: {task.max_retries}",
        f"Timeout: {task.timeout_ms}ms",
        f"Rate limit: {task.rate_limit if task.rate_limit is not None else '-'}",
        f"Last run: {_fmt_dt(task.last_run_at)}",
        f"Next run: {_fmt_dt(task.next_run_at)}",
        f"Payload: {json.dumps(task.payload, sort_keys=True)}",
    ]


def _execution_line(execution: JobExecutionView) -> str:
    error = execution.error
    return (
        f"  #{execution.id} job={execution.job_id} attempt={execution.attempts} "
        f"status={execution.observed_status.value} "
        f"started_at={execution.started_at.isoformat()} "
        f"duration_ms={execution.duration_ms if execution.duration_ms is not None else '-'}"
        + (f" error={error.kind.value}: {error.message}" if error is not None else "")
    )


def _fmt_dt(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


def _parse_payload(raw: str | None) -> dict[str, Any]:
    if raw is None or not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise TaskValidationError(f"payload is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise TaskValidationError("payload must be a JSON object")
    return payload


def _parse_task_type(value: str) -> TaskType:
    try:
        return TaskType(value.strip().upper().replace("-", "_"))
    except ValueError as error:
        raise TaskValidationError(f"Unknown task type: {value}") from error


def _parse_task_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value.strip().upper())
    except ValueError as error:
        raise TaskValidationError(f"Unknown task status: {value}") from error


def _parse_execution_status(value: str | None) -> ExecutionStatus | None:
    if value is None:
        return None
    try:
        return ExecutionStatus(value.strip().lower().replace("-", "_"))
    except ValueError as error:
        raise TaskValidationError(f"Unknown execution status: {value}") from error


@contextmanager
def _stores(settings: Settings) -> Iterator[SchedulerStores]:
    settings.validate()
    task_store = SqlTaskStore(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    queue = DispatchQueue(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    ledger = ExecutionLedger(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    task_store.init_schema()
    try:
        yield SchedulerStores(
            settings=settings,
            task_store=task_store,
            queue=queue,
            ledger=ledger,
        )
    finally:
        ledger.close()
        queue.close()
        task_store.close()
