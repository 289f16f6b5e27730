"""Use-case services for task admission and operator actions."""

from __future__ import annotations

import json
import logging
from datetime import datetime

from taskflow.scheduler.cron import validate_expression
from taskflow.scheduler.errors import TaskInactiveError, TaskNotFoundError, TaskValidationError
from taskflow.scheduler.ledger import ExecutionLedger
from taskflow.scheduler.models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    DeadLetterView,
    ExecutionStatus,
    JobCreate,
    JobView,
    TaskCreate,
    TaskStatus,
    TaskType,
    TaskView,
)
from taskflow.scheduler.queue import DispatchQueue
from taskflow.scheduler.task_store import SqlTaskStore
from taskflow.storage.common import to_utc_aware_datetime, utc_now
from taskflow.storage.sqlmodel_models import DEFAULT_OWNER_ID

logger = logging.getLogger(__name__)

MAX_RETRIES_LIMIT = 10


class SchedulerService:
    """Coordinates task persistence with queue admission."""

    def __init__(
        self,
        *,
        task_store: SqlTaskStore,
        queue: DispatchQueue,
        ledger: ExecutionLedger,
        owner_id: str = DEFAULT_OWNER_ID,
    ) -> None:
        self.task_store = task_store
        self.queue = queue
        self.ledger = ledger
        self.owner_id = owner_id

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Validate, persist, and admit the first job of a task."""

        validate_task(payload)
        if payload.owner_id is None:
            payload.owner_id = self.owner_id
        task = self.task_store.create_task(payload)
        self._admit(task)
        logger.info("Created %s task %s (%s)", task.type.value, task.task_id, task.name)
        return self.require_task(task.task_id)

    def pause_task(self, task_id: str) -> TaskView:
        """Pause a task; its queued jobs are skipped until it is resumed."""

        task = self.require_task(task_id)
        if task.status == TaskStatus.COMPLETED:
            raise TaskValidationError(f"Task {task_id} is completed and cannot be paused")
        self.task_store.set_status(task_id, TaskStatus.PAUSED)
        logger.info("Paused task %s", task_id)
        return self.require_task(task_id)

    def resume_task(self, task_id: str) -> TaskView:
        """Re-activate a paused task and re-admit it if nothing is queued for it.

        Recurring tasks are re-armed from now. A one-shot task is queued again
        only while it has never completed.
        """

        task = self.require_task(task_id)
        if task.status == TaskStatus.COMPLETED:
            raise TaskValidationError(f"Task {task_id} is completed and cannot be resumed")
        self.task_store.set_status(task_id, TaskStatus.ACTIVE)
        resumed = self.require_task(task_id)
        if resumed.type == TaskType.RECURRING:
            self._admit(resumed)
        elif not self.queue.list_jobs(task_id=task_id, limit=1) and not self._has_completed(
            task_id,
        ):
            self._admit(resumed)
        logger.info("Resumed task %s", task_id)
        return self.require_task(task_id)

    def delete_task(self, task_id: str) -> TaskView:
        """Soft delete: the task becomes COMPLETED and its queue entries are dropped."""

        self.require_task(task_id)
        self.task_store.soft_delete(task_id)
        self.queue.remove_task_jobs(task_id)
        logger.info("Deleted task %s", task_id)
        return self.require_task(task_id)

    def replay_dead_letter(self, dead_letter_id: int) -> JobView:
        """Enqueue a dead-lettered payload again as a fresh one-shot job."""

        dead_letter = self._require_dead_letter(dead_letter_id)
        task = self.require_task(dead_letter.task_id)
        if not task.is_active:
            raise TaskInactiveError(task.task_id, task.status.value)
        job = self.queue.enqueue(
            JobCreate(
                task_id=task.task_id,
                payload=dead_letter.payload,
                priority=task.priority,
                attempts_allowed=task.max_retries + 1,
            ),
        )
        self.ledger.delete_dead_letter(dead_letter_id)
        logger.info("Replayed dead letter %s as job %s", dead_letter_id, job.job_id)
        return job

    def purge_dead_letter(self, dead_letter_id: int) -> DeadLetterView:
        dead_letter = self._require_dead_letter(dead_letter_id)
        self.ledger.delete_dead_letter(dead_letter_id)
        logger.info("Purged dead letter %s", dead_letter_id)
        return dead_letter

    def purge_dead_letters(
        self,
        *,
        task_id: str | None = None,
        older_than: datetime | None = None,
    ) -> int:
        return self.ledger.purge_dead_letters(task_id=task_id, older_than=older_than)

    def require_task(self, task_id: str) -> TaskView:
        task = self.task_store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        include_deleted: bool = False,
        limit: int = 100,
    ) -> list[TaskView]:
        return self.task_store.list_tasks(
            owner_id=self.owner_id,
            status=status,
            include_deleted=include_deleted,
            limit=limit,
        )

    def _admit(self, task: TaskView) -> JobView:
        attempts_allowed = task.max_retries + 1
        if task.type == TaskType.RECURRING:
            if task.schedule_expression is None:
                raise TaskValidationError(f"Recurring task {task.task_id} has no schedule")
            job = self.queue.enqueue_recurring(
                task.task_id,
                task.schedule_expression,
                task.payload,
                priority=task.priority,
                attempts_allowed=attempts_allowed,
            )
            self.task_store.update_task_run_times(
                task.task_id,
                last_run_at=task.last_run_at,
                next_run_at=job.run_after,
            )
            return job

        delay_ms = 0
        if task.scheduled_at is not None:
            remaining = to_utc_aware_datetime(task.scheduled_at) - utc_now()
            delay_ms = max(0, int(remaining.total_seconds() * 1000))
        return self.queue.enqueue(
            JobCreate(
                task_id=task.task_id,
                payload=task.payload,
                priority=task.priority,
                attempts_allowed=attempts_allowed,
            ),
            delay_ms=delay_ms,
        )

    def _has_completed(self, task_id: str) -> bool:
        return bool(
            self.ledger.list_executions(
                task_id=task_id,
                status=ExecutionStatus.COMPLETED,
                limit=1,
            ),
        )

    def _require_dead_letter(self, dead_letter_id: int) -> DeadLetterView:
        dead_letter = self.ledger.get_dead_letter(dead_letter_id)
        if dead_letter is None:
            raise LookupError(f"Dead letter not found: {dead_letter_id}")
        return dead_letter


def validate_task(payload: TaskCreate) -> None:  # noqa: C901
    """Reject task definitions that can never be dispatched correctly."""

    if not payload.name or not payload.name.strip():
        raise TaskValidationError("name must not be empty")
    if payload.type == TaskType.RECURRING:
        if not payload.schedule_expression:
            raise TaskValidationError("schedule_expression is required for RECURRING tasks")
        if payload.scheduled_at is not None:
            raise TaskValidationError("scheduled_at is not allowed for RECURRING tasks")
        validate_expression(payload.schedule_expression)
    else:
        if payload.schedule_expression is not None:
            raise TaskValidationError(
                f"schedule_expression is not allowed for {payload.type.value} tasks",
            )
        if payload.scheduled_at is None:
            raise TaskValidationError(f"scheduled_at is required for {payload.type.value} tasks")
    if not MIN_PRIORITY <= payload.priority <= MAX_PRIORITY:
        raise TaskValidationError(
            f"priority must be within [{MIN_PRIORITY}, {MAX_PRIORITY}], got {payload.priority}",
        )
    if not 0 <= payload.max_retries <= MAX_RETRIES_LIMIT:
        raise TaskValidationError(
            f"max_retries must be within [0, {MAX_RETRIES_LIMIT}], got {payload.max_retries}",
        )
    if payload.timeout_ms < 1:
        raise TaskValidationError(f"timeout_ms must be >= 1, got {payload.timeout_ms}")
    if payload.rate_limit is not None and payload.rate_limit < 1:
        raise TaskValidationError(f"rate_limit must be >= 1, got {payload.rate_limit}")
    if not isinstance(payload.payload, dict):
        raise TaskValidationError("payload must be a JSON object")
    try:
        json.dumps(payload.payload)
    except (TypeError, ValueError) as error:
        raise TaskValidationError(f"payload is not JSON-serializable: {error}") from error
