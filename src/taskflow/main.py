"""CLI entrypoint for taskflow."""

import logging
import os
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import rich_click as click

from taskflow import __version__
from taskflow.scheduler.controllers import (
    DeadLetterPurgeCommand,
    DeadLetterRefCommand,
    DeadLettersCommand,
    ExecutionsCommand,
    QueueCommand,
    SchedulerCliController,
    StatsCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskRefCommand,
    WorkerCommand,
)
from taskflow.scheduler.errors import TaskflowError

click.rich_click.USE_MARKDOWN = True
SCHEDULER_CONTROLLER = SchedulerCliController()
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (defaults to TASKFLOW_DB_PATH).",
)


@click.group()
@click.version_option(version=__version__, prog_name="taskflow")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Root log level (defaults to TASKFLOW_LOG_LEVEL or INFO).",
)
def taskflow(log_level: str | None) -> None:
    """Task scheduling, dispatch, and execution CLI."""

    level = (log_level or os.getenv("TASKFLOW_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskflow.group()
def task() -> None:
    """Task definition commands."""


@task.command("create")
@db_path_option
@click.option("--name", required=True, help="Task name; also selects the handler.")
@click.option(
    "--type",
    "task_type",
    type=click.Choice(["ONE_TIME", "RECURRING", "DELAYED"], case_sensitive=False),
    default="ONE_TIME",
    show_default=True,
    help="Scheduling type.",
)
@click.option("--schedule", "schedule_expression", default=None, help="Cron expression.")
@click.option(
    "--scheduled-at",
    type=click.DateTime(formats=["%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]),
    default=None,
    help="Absolute UTC start time for ONE_TIME/DELAYED tasks.",
)
@click.option(
    "--delay",
    "delay_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Start after this many seconds (alternative to --scheduled-at).",
)
@click.option("--priority", type=click.IntRange(0, 10), default=0, show_default=True)
@click.option("--payload", "payload_json", default=None, help="JSON object passed to the handler.")
@click.option("--max-retries", type=click.IntRange(0, 10), default=3, show_default=True)
@click.option("--timeout-ms", type=click.IntRange(min=1), default=30_000, show_default=True)
@click.option("--rate-limit", type=click.IntRange(min=1), default=None, help="Starts per window.")
@click.option("--description", default=None)
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    task_type: str,
    schedule_expression: str | None,
    scheduled_at: datetime | None,
    delay_seconds: float | None,
    priority: int,
    payload_json: str | None,
    max_retries: int,
    timeout_ms: int,
    rate_limit: int | None,
    description: str | None,
) -> None:
    """Create a task and admit its first job."""

    _run(
        lambda: SCHEDULER_CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                name=name,
                task_type=task_type,
                schedule_expression=schedule_expression,
                scheduled_at=scheduled_at,
                delay_seconds=delay_seconds,
                priority=priority,
                payload_json=payload_json,
                max_retries=max_retries,
                timeout_ms=timeout_ms,
                rate_limit=rate_limit,
                description=description,
            ),
        ),
    )


@task.command("list")
@db_path_option
@click.option("--status", default=None, help="ACTIVE, PAUSED or COMPLETED.")
@click.option("--include-deleted", is_flag=True, default=False)
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
def task_list(db_path: Path | None, status: str | None, include_deleted: bool, limit: int) -> None:
    """List tasks."""

    _run(
        lambda: SCHEDULER_CONTROLLER.list_tasks(
            TaskListCommand(
                db_path=db_path,
                status=status,
                include_deleted=include_deleted,
                limit=limit,
            ),
        ),
    )


@task.command("show")
@db_path_option
@click.argument("task_id")
def task_show(db_path: Path | None, task_id: str) -> None:
    """Show one task with its queue entries, executions, and dead letters."""

    _run(lambda: SCHEDULER_CONTROLLER.show_task(TaskRefCommand(db_path=db_path, task_id=task_id)))


@task.command("pause")
@db_path_option
@click.argument("task_id")
def task_pause(db_path: Path | None, task_id: str) -> None:
    """Pause a task."""

    _run(lambda: SCHEDULER_CONTROLLER.pause_task(TaskRefCommand(db_path=db_path, task_id=task_id)))


@task.command("resume")
@db_path_option
@click.argument("task_id")
def task_resume(db_path: Path | None, task_id: str) -> None:
    """Resume a paused task."""

    _run(
        lambda: SCHEDULER_CONTROLLER.resume_task(TaskRefCommand(db_path=db_path, task_id=task_id)),
    )


@task.command("delete")
@db_path_option
@click.argument("task_id")
def task_delete(db_path: Path | None, task_id: str) -> None:
    """Soft-delete a task and drop its queued jobs."""

    _run(
        lambda: SCHEDULER_CONTROLLER.delete_task(TaskRefCommand(db_path=db_path, task_id=task_id)),
    )


@taskflow.group()
def queue() -> None:
    """Dispatch queue commands."""


@queue.command("pause")
@db_path_option
def queue_pause(db_path: Path | None) -> None:
    """Stop workers from leasing jobs."""

    _run(lambda: SCHEDULER_CONTROLLER.pause_queue(QueueCommand(db_path=db_path)))


@queue.command("resume")
@db_path_option
def queue_resume(db_path: Path | None) -> None:
    """Let workers lease jobs again."""

    _run(lambda: SCHEDULER_CONTROLLER.resume_queue(QueueCommand(db_path=db_path)))


@queue.command("depth")
@db_path_option
def queue_depth(db_path: Path | None) -> None:
    """Show queued job counts."""

    _run(lambda: SCHEDULER_CONTROLLER.queue_depth(QueueCommand(db_path=db_path)))


@taskflow.command("worker")
@db_path_option
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Process one job or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for leased jobs in loop mode.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Attempts in flight (defaults to TASKFLOW_WORKER_CONCURRENCY).",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Exit loop mode after this many empty polls.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    concurrency: int | None,
    max_idle_polls: int,
) -> None:
    """Run the worker pool with the built-in handlers."""

    _run(
        lambda: SCHEDULER_CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                concurrency=concurrency,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@taskflow.command("executions")
@db_path_option
@click.option("--task-id", default=None)
@click.option("--job-id", default=None)
@click.option("--status", default=None, help="Attempt status, for example failed or retry.")
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
def executions(
    db_path: Path | None,
    task_id: str | None,
    job_id: str | None,
    status: str | None,
    limit: int,
) -> None:
    """List recorded attempts, newest first."""

    _run(
        lambda: SCHEDULER_CONTROLLER.executions(
            ExecutionsCommand(
                db_path=db_path,
                task_id=task_id,
                job_id=job_id,
                status=status,
                limit=limit,
            ),
        ),
    )


@taskflow.group("dead-letters")
def dead_letters() -> None:
    """Dead-letter store commands."""


@dead_letters.command("list")
@db_path_option
@click.option("--task-id", default=None)
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
def dead_letters_list(db_path: Path | None, task_id: str | None, limit: int) -> None:
    """List dead-lettered jobs."""

    _run(
        lambda: SCHEDULER_CONTROLLER.list_dead_letters(
            DeadLettersCommand(db_path=db_path, task_id=task_id, limit=limit),
        ),
    )


@dead_letters.command("replay")
@db_path_option
@click.argument("dead_letter_id", type=int)
def dead_letters_replay(db_path: Path | None, dead_letter_id: int) -> None:
    """Enqueue a dead-lettered payload again."""

    _run(
        lambda: SCHEDULER_CONTROLLER.replay_dead_letter(
            DeadLetterRefCommand(db_path=db_path, dead_letter_id=dead_letter_id),
        ),
    )


@dead_letters.command("purge")
@db_path_option
@click.option("--task-id", default=None)
@click.option(
    "--older-than-hours",
    type=click.IntRange(min=0),
    default=None,
    help="Only purge dead letters older than this.",
)
def dead_letters_purge(
    db_path: Path | None,
    task_id: str | None,
    older_than_hours: int | None,
) -> None:
    """Delete dead letters."""

    _run(
        lambda: SCHEDULER_CONTROLLER.purge_dead_letters(
            DeadLetterPurgeCommand(
                db_path=db_path,
                task_id=task_id,
                older_than_hours=older_than_hours,
            ),
        ),
    )


@taskflow.command("stats")
@db_path_option
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for aggregation.",
)
def stats(db_path: Path | None, hours: int) -> None:
    """Show scheduler health metrics."""

    _run(lambda: SCHEDULER_CONTROLLER.stats(StatsCommand(db_path=db_path, hours=hours)))


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (TaskflowError, LookupError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskflow()
