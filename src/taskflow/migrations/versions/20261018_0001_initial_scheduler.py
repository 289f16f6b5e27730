"""Create task, dispatch queue, and execution ledger tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("task_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("schedule_expression", sa.String(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("timeout_ms", sa.Integer(), nullable=False),
        sa.Column("rate_limit", sa.Integer(), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_tasks_owner_id", "tasks", ["owner_id"], unique=False)
    op.create_index("ix_tasks_task_type", "tasks", ["task_type"], unique=False)
    op.create_index("ix_tasks_status", "tasks", ["status"], unique=False)
    op.create_index(
        "idx_tasks_owner_status",
        "tasks",
        ["owner_id", "status", "created_at"],
        unique=False,
    )

    op.create_table(
        "queue_jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("schedule_key", sa.String(), nullable=True),
        sa.Column("schedule_expression", sa.String(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("attempts_allowed", sa.Integer(), nullable=False),
        sa.Column("attempts_made", sa.Integer(), nullable=False),
        sa.Column("nack_count", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_owner", sa.String(), nullable=True),
        sa.Column("lease_token", sa.String(), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", name="uq_queue_jobs_job_id"),
        sa.UniqueConstraint("schedule_key", name="uq_queue_jobs_schedule_key"),
    )
    op.create_index("ix_queue_jobs_task_id", "queue_jobs", ["task_id"], unique=False)
    op.create_index("ix_queue_jobs_state", "queue_jobs", ["state"], unique=False)
    op.create_index(
        "idx_queue_jobs_ready",
        "queue_jobs",
        ["state", "run_after", "priority"],
        unique=False,
    )

    op.create_table(
        "queue_state",
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("paused", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )

    op.create_table(
        "job_executions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("disposition", sa.String(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.String(), nullable=True),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("error_retriable", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_executions_task_id", "job_executions", ["task_id"], unique=False)
    op.create_index("ix_job_executions_job_id", "job_executions", ["job_id"], unique=False)
    op.create_index("ix_job_executions_status", "job_executions", ["status"], unique=False)
    op.create_index(
        "ix_job_executions_disposition",
        "job_executions",
        ["disposition"],
        unique=False,
    )
    op.create_index(
        "ix_job_executions_error_kind",
        "job_executions",
        ["error_kind"],
        unique=False,
    )
    op.create_index(
        "idx_job_executions_task_started",
        "job_executions",
        ["task_id", "started_at"],
        unique=False,
    )
    op.create_index(
        "uq_job_executions_job_processing",
        "job_executions",
        ["job_id"],
        unique=True,
        sqlite_where=sa.text("status = 'processing'"),
    )

    op.create_table(
        "retry_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("execution_id", sa.Integer(), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("error_json", sa.Text(), nullable=False),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["execution_id"], ["job_executions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_retry_records_execution_id",
        "retry_records",
        ["execution_id"],
        unique=False,
    )

    op.create_table(
        "dead_letter_jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("error_json", sa.Text(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", name="uq_dead_letter_jobs_job_id"),
    )
    op.create_index(
        "ix_dead_letter_jobs_task_id",
        "dead_letter_jobs",
        ["task_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_dead_letter_jobs_task_id", table_name="dead_letter_jobs")
    op.drop_table("dead_letter_jobs")
    op.drop_index("ix_retry_records_execution_id", table_name="retry_records")
    op.drop_table("retry_records")
    op.drop_index("uq_job_executions_job_processing", table_name="job_executions")
    op.drop_index("idx_job_executions_task_started", table_name="job_executions")
    op.drop_index("ix_job_executions_error_kind", table_name="job_executions")
    op.drop_index("ix_job_executions_disposition", table_name="job_executions")
    op.drop_index("ix_job_executions_status", table_name="job_executions")
    op.drop_index("ix_job_executions_job_id", table_name="job_executions")
    op.drop_index("ix_job_executions_task_id", table_name="job_executions")
    op.drop_table("job_executions")
    op.drop_table("queue_state")
    op.drop_index("idx_queue_jobs_ready", table_name="queue_jobs")
    op.drop_index("ix_queue_jobs_state", table_name="queue_jobs")
    op.drop_index("ix_queue_jobs_task_id", table_name="queue_jobs")
    op.drop_table("queue_jobs")
    op.drop_index("idx_tasks_owner_status", table_name="tasks")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_index("ix_tasks_task_type", table_name="tasks")
    op.drop_index("ix_tasks_owner_id", table_name="tasks")
    op.drop_table("tasks")
