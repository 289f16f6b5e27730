"""Task definitions: the store contract used by workers and its SQL implementation."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from taskflow.scheduler.models import TaskCreate, TaskStatus, TaskType, TaskView
from taskflow.storage.alembic_runner import upgrade_head
from taskflow.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from taskflow.storage.sqlmodel_models import DEFAULT_OWNER_ID, Task


class TaskStore(Protocol):
    """What the worker pool needs from task persistence."""

    def get_task(self, task_id: str) -> TaskView | None: ...

    def update_task_run_times(
        self,
        task_id: str,
        *,
        last_run_at: datetime | None,
        next_run_at: datetime | None,
    ) -> None: ...


class SqlTaskStore:
    """Task persistence facade backed by SQLModel + SQLite.

    Writes are last-write-wins; tasks are never hard-deleted.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Persist an already validated task definition as ACTIVE."""

        now = to_db_datetime(utc_now())
        row = Task(
            task_id=payload.task_id or str(uuid4()),
            owner_id=payload.owner_id or DEFAULT_OWNER_ID,
            name=payload.name,
            description=payload.description,
            task_type=payload.type.value,
            status=TaskStatus.ACTIVE.value,
            schedule_expression=payload.schedule_expression,
            scheduled_at=(
                to_db_datetime(payload.scheduled_at) if payload.scheduled_at is not None else None
            ),
            priority=payload.priority,
            payload_json=dump_json(payload.payload),
            max_retries=payload.max_retries,
            timeout_ms=payload.timeout_ms,
            rate_limit=payload.rate_limit,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        owner_id: str | None = None,
        status: TaskStatus | None = None,
        task_type: TaskType | None = None,
        include_deleted: bool = False,
        limit: int = 100,
    ) -> list[TaskView]:
        statement = select(Task)
        if owner_id is not None:
            statement = statement.where(Task.owner_id == owner_id)
        if status is not None:
            statement = statement.where(Task.status == status.value)
        if task_type is not None:
            statement = statement.where(Task.task_type == task_type.value)
        if not include_deleted:
            statement = statement.where(col(Task.deleted_at).is_(None))
        statement = statement.order_by(
            col(Task.created_at).desc(),
            col(Task.task_id).asc(),
        ).limit(limit)
        with Session(self.engine) as session:
            return [_to_task_view(row) for row in session.exec(statement).all()]

    def set_status(self, task_id: str, status: TaskStatus) -> bool:
        """Change the status of a live (not deleted) task."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.deleted_at).is_(None),
                )
                .values(status=status.value, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def soft_delete(self, task_id: str) -> bool:
        """Mark a task COMPLETED with a deletion timestamp."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.deleted_at).is_(None),
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    deleted_at=now,
                    next_run_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def update_task_run_times(
        self,
        task_id: str,
        *,
        last_run_at: datetime | None,
        next_run_at: datetime | None,
    ) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(Task)
                .where(col(Task.task_id) == task_id)
                .values(
                    last_run_at=to_db_datetime(last_run_at) if last_run_at is not None else None,
                    next_run_at=to_db_datetime(next_run_at) if next_run_at is not None else None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()


def _to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        owner_id=row.owner_id,
        name=row.name,
        description=row.description,
        type=TaskType(row.task_type),
        status=TaskStatus(row.status),
        schedule_expression=row.schedule_expression,
        scheduled_at=optional_utc(row.scheduled_at),
        priority=row.priority,
        payload=load_json(row.payload_json) or {},
        max_retries=row.max_retries,
        timeout_ms=row.timeout_ms,
        rate_limit=row.rate_limit,
        last_run_at=optional_utc(row.last_run_at),
        next_run_at=optional_utc(row.next_run_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        deleted_at=optional_utc(row.deleted_at),
    )
