"""SQLModel ORM tables for task, queue, and execution ledger storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel

DEFAULT_OWNER_ID = "default_owner"
DEFAULT_QUEUE_NAME = "default"


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_owner_status", "owner_id", "status", "created_at"),)

    task_id: str = Field(primary_key=True)
    owner_id: str = Field(default=DEFAULT_OWNER_ID, index=True)
    name: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    task_type: str = Field(index=True)
    status: str = Field(index=True)
    schedule_expression: str | None = None
    scheduled_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    priority: int = Field(default=0)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    max_retries: int = Field(default=3)
    timeout_ms: int = Field(default=30_000)
    rate_limit: int | None = None
    last_run_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    next_run_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    deleted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class QueueJob(SQLModel, table=True):
    __tablename__ = "queue_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", name="uq_queue_jobs_job_id"),
        UniqueConstraint("schedule_key", name="uq_queue_jobs_schedule_key"),
        Index("idx_queue_jobs_ready", "state", "run_after", "priority"),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str
    task_id: str = Field(index=True)
    schedule_key: str | None = None
    schedule_expression: str | None = None
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=0)
    attempts_allowed: int = Field(default=1)
    attempts_made: int = Field(default=0)
    nack_count: int = Field(default=0)
    state: str = Field(index=True)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    lease_owner: str | None = None
    lease_token: str | None = None
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    enqueued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueState(SQLModel, table=True):
    __tablename__ = "queue_state"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    paused: bool = Field(default=False)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobExecution(SQLModel, table=True):
    __tablename__ = "job_executions"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_job_executions_job_processing",
            "job_id",
            unique=True,
            sqlite_where=text("status = 'processing'"),
        ),
        Index("idx_job_executions_task_started", "task_id", "started_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    job_id: str = Field(index=True)
    status: str = Field(index=True)
    disposition: str | None = Field(default=None, index=True)
    attempts: int
    worker_id: str | None = None
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: int | None = None
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    error_kind: str | None = Field(default=None, index=True)
    error_detail: str | None = Field(default=None, sa_column=Column(Text))
    error_retriable: bool | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RetryRecord(SQLModel, table=True):
    __tablename__ = "retry_records"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    execution_id: int = Field(
        sa_column=Column(
            ForeignKey("job_executions.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    attempt_number: int
    error_json: str = Field(sa_column=Column(Text, nullable=False))
    attempted_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DeadLetterJob(SQLModel, table=True):
    __tablename__ = "dead_letter_jobs"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("job_id", name="uq_dead_letter_jobs_job_id"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    job_id: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    error_json: str = Field(sa_column=Column(Text, nullable=False))
    attempts: int
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
