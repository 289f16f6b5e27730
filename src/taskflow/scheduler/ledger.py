"""Execution ledger: per-attempt records, retry sub-log, and dead letters."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from taskflow.scheduler.failure_classifier import classify_stalled
from taskflow.scheduler.models import (
    DeadLetterView,
    ExecutionError,
    ExecutionStatus,
    FailureKind,
    JobExecutionView,
    RetryRecordView,
)
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
from taskflow.storage.sqlmodel_models import DeadLetterJob, JobExecution, RetryRecord

logger = logging.getLogger(__name__)

_ROUTING_STATUSES = {ExecutionStatus.RETRY, ExecutionStatus.DEAD_LETTER}
_CREATE_ATTEMPTS = 5


class ExecutionLedger:
    """Durable record of attempts backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- attempts ------------------------------------------------------------

    def create_execution(
        self,
        *,
        task_id: str,
        job_id: str,
        attempts: int,
        worker_id: str | None,
    ) -> JobExecutionView:
        """Open a PROCESSING record for one attempt.

        A PROCESSING record left behind by a previous lease holder of the same
        job is closed as a stalled attempt first, so at most one attempt per
        job is ever PROCESSING.
        """

        execution = self._open_execution(
            task_id=task_id,
            job_id=job_id,
            attempts=attempts,
            worker_id=worker_id,
        )
        if execution is None:
            raise RuntimeError(f"Could not open execution record for job {job_id}")
        return execution

    def create_execution_within_limit(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        job_id: str,
        attempts: int,
        worker_id: str | None,
        rate_limit: int,
        since: datetime,
    ) -> JobExecutionView | None:
        """Open a PROCESSING record unless the task is at its rate limit.

        Returns ``None`` when ``rate_limit`` attempts of ``task_id`` already
        started at or after ``since``. The count and the insert share one
        ``BEGIN IMMEDIATE`` transaction, so workers racing for the last slot
        are serialized on the SQLite write lock.
        """

        return self._open_execution(
            task_id=task_id,
            job_id=job_id,
            attempts=attempts,
            worker_id=worker_id,
            rate_limit=rate_limit,
            since=since,
        )

    def _open_execution(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        job_id: str,
        attempts: int,
        worker_id: str | None,
        rate_limit: int | None = None,
        since: datetime | None = None,
    ) -> JobExecutionView | None:
        for _ in range(_CREATE_ATTEMPTS):
            now = utc_now()
            with Session(self.engine) as session:
                if rate_limit is not None:
                    session.connection().exec_driver_sql("BEGIN IMMEDIATE")
                stale_rows = session.exec(
                    select(JobExecution).where(
                        JobExecution.job_id == job_id,
                        JobExecution.status == ExecutionStatus.PROCESSING.value,
                    ),
                ).all()
                for stale in stale_rows:
                    self._close_stalled(session=session, row=stale, now=now)

                if rate_limit is not None and since is not None:
                    started = int(session.exec(_started_since(task_id, since)).one())
                    if started >= rate_limit:
                        session.commit()
                        return None

                row = JobExecution(
                    task_id=task_id,
                    job_id=job_id,
                    status=ExecutionStatus.PROCESSING.value,
                    attempts=attempts,
                    worker_id=worker_id,
                    started_at=to_db_datetime(now),
                    created_at=to_db_datetime(now),
                )
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                session.refresh(row)
                return _to_execution_view(row)
        return None

    def complete_execution(self, execution: JobExecutionView, *, result: Any) -> bool:
        """Move a PROCESSING attempt to COMPLETED; False if it already left PROCESSING."""

        now = utc_now()
        with Session(self.engine) as session:
            outcome = session.exec(
                _processing_update(execution.id).values(
                    status=ExecutionStatus.COMPLETED.value,
                    completed_at=to_db_datetime(now),
                    duration_ms=_duration_ms(execution.started_at, now),
                    result_json=dump_json(result) if result is not None else None,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def fail_execution(self, execution: JobExecutionView, *, error: ExecutionError) -> bool:
        """Move a PROCESSING attempt to FAILED; False if it already left PROCESSING."""

        now = utc_now()
        with Session(self.engine) as session:
            outcome = session.exec(
                _processing_update(execution.id).values(
                    status=ExecutionStatus.FAILED.value,
                    completed_at=to_db_datetime(now),
                    duration_ms=_duration_ms(execution.started_at, now),
                    error_message=error.message,
                    error_kind=error.kind.value,
                    error_detail=error.detail,
                    error_retriable=error.retriable,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def route_execution(
        self,
        execution: JobExecutionView,
        disposition: ExecutionStatus,
        *,
        error: ExecutionError,
    ) -> bool:
        """Record where a FAILED attempt was routed.

        Routing to RETRY appends the retry record in the same transaction.
        """

        if disposition not in _ROUTING_STATUSES:
            raise ValueError(f"Unsupported disposition: {disposition}")
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(JobExecution)
                .where(
                    col(JobExecution.id) == execution.id,
                    col(JobExecution.status) == ExecutionStatus.FAILED.value,
                    col(JobExecution.disposition).is_(None),
                )
                .values(disposition=disposition.value),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            if disposition == ExecutionStatus.RETRY:
                session.add(
                    RetryRecord(
                        execution_id=execution.id,
                        attempt_number=execution.attempts,
                        error_json=dump_json(error.to_dict()),
                        attempted_at=to_db_datetime(utc_now()),
                    ),
                )
            session.commit()
            return True

    def count_started_since(self, task_id: str, since: datetime) -> int:
        """Attempts of ``task_id`` started at or after ``since``."""

        with Session(self.engine) as session:
            return int(session.exec(_started_since(task_id, since)).one())

    def get_execution(self, execution_id: int) -> JobExecutionView | None:
        with Session(self.engine) as session:
            row = session.get(JobExecution, execution_id)
            return _to_execution_view(row) if row is not None else None

    def list_executions(
        self,
        *,
        task_id: str | None = None,
        job_id: str | None = None,
        status: ExecutionStatus | None = None,
        since: datetime | None = None,
        limit: int | None = 100,
    ) -> list[JobExecutionView]:
        """List attempts newest first.

        RETRY and DEAD_LETTER filter on the routing of failed attempts; the
        other statuses filter on the attempt lifecycle.
        """

        statement = select(JobExecution)
        if task_id is not None:
            statement = statement.where(JobExecution.task_id == task_id)
        if job_id is not None:
            statement = statement.where(JobExecution.job_id == job_id)
        if status is not None:
            if status in _ROUTING_STATUSES:
                statement = statement.where(JobExecution.disposition == status.value)
            else:
                statement = statement.where(JobExecution.status == status.value)
        if since is not None:
            statement = statement.where(col(JobExecution.started_at) >= to_db_datetime(since))
        statement = statement.order_by(
            col(JobExecution.started_at).desc(),
            col(JobExecution.id).desc(),
        )
        if limit is not None:
            statement = statement.limit(limit)
        with Session(self.engine) as session:
            return [_to_execution_view(row) for row in session.exec(statement).all()]

    def list_retry_records(
        self,
        *,
        execution_id: int | None = None,
        job_id: str | None = None,
    ) -> list[RetryRecordView]:
        statement = select(RetryRecord)
        if execution_id is not None:
            statement = statement.where(RetryRecord.execution_id == execution_id)
        if job_id is not None:
            statement = statement.join(
                JobExecution,
                col(JobExecution.id) == col(RetryRecord.execution_id),
            ).where(JobExecution.job_id == job_id)
        statement = statement.order_by(
            col(RetryRecord.attempted_at).asc(),
            col(RetryRecord.id).asc(),
        )
        with Session(self.engine) as session:
            return [_to_retry_record_view(row) for row in session.exec(statement).all()]

    # -- dead letters --------------------------------------------------------

    def add_dead_letter(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        job_id: str,
        payload: dict[str, Any],
        error: ExecutionError,
        attempts: int,
    ) -> DeadLetterView:
        """Quarantine a job; a second insert for the same job returns the first record."""

        now = utc_now()
        with Session(self.engine) as session:
            row = DeadLetterJob(
                task_id=task_id,
                job_id=job_id,
                payload_json=dump_json(payload),
                error_json=dump_json(error.to_dict()),
                attempts=attempts,
                created_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = session.exec(
                    select(DeadLetterJob).where(DeadLetterJob.job_id == job_id),
                ).one()
                return _to_dead_letter_view(existing)
            session.refresh(row)
            logger.warning(
                "Dead-lettered job %s of task %s after %s attempt(s): %s",
                job_id,
                task_id,
                attempts,
                error.message,
            )
            return _to_dead_letter_view(row)

    def get_dead_letter(self, dead_letter_id: int) -> DeadLetterView | None:
        with Session(self.engine) as session:
            row = session.get(DeadLetterJob, dead_letter_id)
            return _to_dead_letter_view(row) if row is not None else None

    def list_dead_letters(
        self,
        *,
        task_id: str | None = None,
        limit: int | None = 100,
    ) -> list[DeadLetterView]:
        statement = select(DeadLetterJob)
        if task_id is not None:
            statement = statement.where(DeadLetterJob.task_id == task_id)
        statement = statement.order_by(
            col(DeadLetterJob.created_at).desc(),
            col(DeadLetterJob.id).desc(),
        )
        if limit is not None:
            statement = statement.limit(limit)
        with Session(self.engine) as session:
            return [_to_dead_letter_view(row) for row in session.exec(statement).all()]

    def delete_dead_letter(self, dead_letter_id: int) -> bool:
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_delete(DeadLetterJob).where(col(DeadLetterJob.id) == dead_letter_id),
            )
            session.commit()
            return outcome.rowcount == 1

    def purge_dead_letters(
        self,
        *,
        task_id: str | None = None,
        older_than: datetime | None = None,
    ) -> int:
        """Delete dead letters, optionally for one task or created before ``older_than``."""

        statement = sa_delete(DeadLetterJob)
        if task_id is not None:
            statement = statement.where(col(DeadLetterJob.task_id) == task_id)
        if older_than is not None:
            statement = statement.where(col(DeadLetterJob.created_at) < to_db_datetime(older_than))
        with Session(self.engine) as session:
            outcome = session.exec(statement)
            session.commit()
            purged = int(outcome.rowcount or 0)
        if purged:
            logger.info("Purged %s dead letter(s)", purged)
        return purged

    # -- internals -----------------------------------------------------------

    def _close_stalled(self, *, session: Session, row: JobExecution, now: datetime) -> None:
        error = classify_stalled(worker_id=row.worker_id).to_execution_error()
        row.status = ExecutionStatus.FAILED.value
        row.disposition = ExecutionStatus.RETRY.value
        row.completed_at = to_db_datetime(now)
        row.duration_ms = _duration_ms(to_utc_aware_datetime(row.started_at), now)
        row.error_message = error.message
        row.error_kind = error.kind.value
        row.error_detail = error.detail
        row.error_retriable = error.retriable
        session.add(row)
        # The stale row must leave PROCESSING before the new one is inserted.
        session.flush()
        session.add(
            RetryRecord(
                execution_id=row.id,
                attempt_number=row.attempts,
                error_json=dump_json(error.to_dict()),
                attempted_at=to_db_datetime(now),
            ),
        )
        logger.warning(
            "Closed stalled attempt %s of job %s held by %s",
            row.attempts,
            row.job_id,
            row.worker_id,
        )


def _started_since(task_id: str, since: datetime) -> Any:
    return (
        select(func.count())
        .select_from(JobExecution)
        .where(
            JobExecution.task_id == task_id,
            col(JobExecution.started_at) >= to_db_datetime(since),
        )
    )


def _processing_update(execution_id: int) -> Any:
    return sa_update(JobExecution).where(
        col(JobExecution.id) == execution_id,
        col(JobExecution.status) == ExecutionStatus.PROCESSING.value,
    )


def _duration_ms(started_at: datetime, finished_at: datetime) -> int:
    elapsed = to_utc_aware_datetime(finished_at) - to_utc_aware_datetime(started_at)
    return max(0, int(elapsed.total_seconds() * 1000))


def _execution_error(row: JobExecution) -> ExecutionError | None:
    if row.error_kind is None:
        return None
    return ExecutionError(
        message=row.error_message or "",
        kind=FailureKind(row.error_kind),
        detail=row.error_detail,
        retriable=bool(row.error_retriable) if row.error_retriable is not None else True,
    )


def _to_execution_view(row: JobExecution) -> JobExecutionView:
    if row.id is None:
        raise ValueError("Execution row has no id")
    return JobExecutionView(
        id=row.id,
        task_id=row.task_id,
        job_id=row.job_id,
        status=ExecutionStatus(row.status),
        disposition=ExecutionStatus(row.disposition) if row.disposition is not None else None,
        attempts=row.attempts,
        worker_id=row.worker_id,
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=optional_utc(row.completed_at),
        duration_ms=row.duration_ms,
        result=load_json(row.result_json),
        error=_execution_error(row),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_retry_record_view(row: RetryRecord) -> RetryRecordView:
    if row.id is None:
        raise ValueError("Retry record row has no id")
    return RetryRecordView(
        id=row.id,
        execution_id=row.execution_id,
        attempt_number=row.attempt_number,
        error=ExecutionError.from_dict(load_json(row.error_json) or {}),
        attempted_at=to_utc_aware_datetime(row.attempted_at),
    )


def _to_dead_letter_view(row: DeadLetterJob) -> DeadLetterView:
    if row.id is None:
        raise ValueError("Dead letter row has no id")
    return DeadLetterView(
        id=row.id,
        task_id=row.task_id,
        job_id=row.job_id,
        payload=load_json(row.payload_json) or {},
        error=ExecutionError.from_dict(load_json(row.error_json) or {}),
        attempts=row.attempts,
        created_at=to_utc_aware_datetime(row.created_at),
    )
