"""Durable priority queue with leases, delays, and recurring entries."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, col, select

from taskflow.scheduler.cron import next_fire_time, validate_expression
from taskflow.scheduler.errors import InvalidScheduleError, QueueUnavailableError
from taskflow.scheduler.models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    JobCreate,
    JobState,
    JobView,
    QueueDepth,
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
from taskflow.storage.sqlmodel_models import DEFAULT_QUEUE_NAME, QueueJob, QueueState

logger = logging.getLogger(__name__)

RECURRING_KEY_PREFIX = "recurring:"


def recurring_schedule_key(task_id: str) -> str:
    return f"{RECURRING_KEY_PREFIX}{task_id}"


def recurring_job_id(task_id: str, fire_at: datetime) -> str:
    """Per-fire job id: unique for each occurrence of a recurring entry."""

    epoch_ms = int(to_utc_aware_datetime(fire_at).timestamp() * 1000)
    return f"{recurring_schedule_key(task_id)}:{epoch_ms}"


class DispatchQueue:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every state change is a conditional ``UPDATE``/``DELETE`` whose row count
    tells the caller whether it won, so several worker processes can share
    one database file without an external lock.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        queue_name: str = DEFAULT_QUEUE_NAME,
    ) -> None:
        self.db_path = db_path
        self.queue_name = queue_name
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- admission -----------------------------------------------------------

    def enqueue(
        self,
        job: JobCreate,
        *,
        delay_ms: int = 0,
        priority: int | None = None,
    ) -> JobView:
        """Admit one job; it becomes leasable after ``delay_ms``."""

        if delay_ms < 0:
            raise InvalidScheduleError(f"delay_ms must be >= 0, got {delay_ms}")
        effective_priority = job.priority if priority is None else priority
        _ensure_priority(effective_priority)
        if job.attempts_allowed < 1:
            raise InvalidScheduleError(
                f"attempts_allowed must be >= 1, got {job.attempts_allowed}",
            )

        now = utc_now()
        row = QueueJob(
            job_id=job.job_id or f"{job.task_id}-{uuid4().hex}",
            task_id=job.task_id,
            schedule_key=None,
            schedule_expression=None,
            payload_json=dump_json(job.payload),
            priority=effective_priority,
            attempts_allowed=job.attempts_allowed,
            attempts_made=0,
            nack_count=0,
            state=JobState.QUEUED.value,
            run_after=to_db_datetime(now + timedelta(milliseconds=delay_ms)),
            enqueued_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        )
        with self._session() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise InvalidScheduleError(f"Job id already queued: {row.job_id}") from error
            session.refresh(row)
            view = _to_job_view(row)
        logger.info(
            "Enqueued job %s for task %s (priority=%s, delay_ms=%s)",
            view.job_id,
            view.task_id,
            view.priority,
            delay_ms,
        )
        return view

    def enqueue_recurring(  # noqa: PLR0913
        self,
        task_id: str,
        schedule: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        attempts_allowed: int = 1,
        after: datetime | None = None,
    ) -> JobView:
        """Create or replace the single recurring entry of ``task_id``.

        A leased entry keeps its current fire and job id, even when its lease
        has expired: stall recovery re-leases it under the same job id so the
        crashed attempt is closed. The new expression, payload and priority
        take effect when that fire is acknowledged.
        """

        _ensure_priority(priority)
        validate_expression(schedule)
        key = recurring_schedule_key(task_id)

        while True:
            now = utc_now()
            fire_at = next_fire_time(schedule, after or now)
            with self._session() as session:
                existing = session.exec(
                    select(QueueJob).where(QueueJob.schedule_key == key),
                ).one_or_none()
                if existing is None:
                    row = QueueJob(
                        job_id=recurring_job_id(task_id, fire_at),
                        task_id=task_id,
                        schedule_key=key,
                        schedule_expression=schedule,
                        payload_json=dump_json(payload),
                        priority=priority,
                        attempts_allowed=attempts_allowed,
                        attempts_made=0,
                        nack_count=0,
                        state=JobState.QUEUED.value,
                        run_after=to_db_datetime(fire_at),
                        enqueued_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    )
                    session.add(row)
                    try:
                        session.commit()
                    except IntegrityError:
                        # Another admission created the entry first; replace it instead.
                        session.rollback()
                        continue
                    session.refresh(row)
                    logger.info("Scheduled recurring task %s at %s", task_id, fire_at.isoformat())
                    return _to_job_view(row)

                if existing.state == JobState.LEASED.value:
                    values: dict[str, Any] = {
                        "schedule_expression": schedule,
                        "payload_json": dump_json(payload),
                        "priority": priority,
                        "attempts_allowed": attempts_allowed,
                        "updated_at": to_db_datetime(now),
                    }
                else:
                    values = {
                        "job_id": recurring_job_id(task_id, fire_at),
                        "schedule_expression": schedule,
                        "payload_json": dump_json(payload),
                        "priority": priority,
                        "attempts_allowed": attempts_allowed,
                        "attempts_made": 0,
                        "nack_count": 0,
                        "state": JobState.QUEUED.value,
                        "run_after": to_db_datetime(fire_at),
                        "lease_owner": None,
                        "lease_token": None,
                        "lease_expires_at": None,
                        "enqueued_at": to_db_datetime(now),
                        "updated_at": to_db_datetime(now),
                    }
                result = session.exec(
                    sa_update(QueueJob)
                    .where(
                        col(QueueJob.id) == existing.id,
                        col(QueueJob.updated_at) == existing.updated_at,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                row = session.exec(select(QueueJob).where(QueueJob.id == existing.id)).one()
                logger.info("Replaced recurring entry for task %s", task_id)
                return _to_job_view(row)

    # -- leasing -------------------------------------------------------------

    def lease(self, *, worker_id: str, visibility_timeout: float) -> JobView | None:
        """Atomically lease the highest-priority ready job.

        Jobs whose lease expired without ack/nack are leasable again.
        """

        while True:
            now = utc_now()
            db_now = to_db_datetime(now)
            with self._session() as session:
                if self._paused(session):
                    return None
                ready = _ready_clause(db_now)
                candidate = session.exec(
                    select(QueueJob)
                    .where(ready)
                    .order_by(
                        col(QueueJob.priority).desc(),
                        col(QueueJob.enqueued_at).asc(),
                        col(QueueJob.id).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None
                recovered_from = (
                    candidate.lease_owner if candidate.state == JobState.LEASED.value else None
                )
                candidate_id = candidate.id

                result = session.exec(
                    sa_update(QueueJob)
                    .where(
                        col(QueueJob.id) == candidate_id,
                        col(QueueJob.updated_at) == candidate.updated_at,
                        ready,
                    )
                    .values(
                        state=JobState.LEASED.value,
                        attempts_made=candidate.attempts_made + 1,
                        lease_owner=worker_id,
                        lease_token=uuid4().hex,
                        lease_expires_at=to_db_datetime(
                            now + timedelta(seconds=visibility_timeout),
                        ),
                        updated_at=db_now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()

                leased = session.exec(select(QueueJob).where(QueueJob.id == candidate_id)).one()
                if recovered_from is not None:
                    logger.warning(
                        "Recovered stalled job %s from %s (attempt %s)",
                        leased.job_id,
                        recovered_from,
                        leased.attempts_made,
                    )
                else:
                    logger.debug(
                        "Leased job %s to %s (attempt %s)",
                        leased.job_id,
                        worker_id,
                        leased.attempts_made,
                    )
                return _to_job_view(leased)

    def extend_lease(self, job: JobView, *, seconds: float) -> bool:
        """Push the lease deadline of a held job ``seconds`` into the future."""

        now = utc_now()
        with self._session() as session:
            result = session.exec(
                _holder_update(job).values(
                    lease_expires_at=to_db_datetime(now + timedelta(seconds=seconds)),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def ack(self, job: JobView, *, remove: bool = False) -> JobView | None:
        """Acknowledge a held job.

        One-shot jobs are removed. Recurring entries are re-armed at their
        next fire time and the re-armed view is returned, unless ``remove``.
        Returns ``None`` when the job is gone or the caller lost the lease.
        """

        now = utc_now()
        with self._session() as session:
            if not job.is_recurring or remove:
                result = session.exec(
                    sa_delete(QueueJob).where(*_holder_clauses(job)),
                )
                if result.rowcount != 1:
                    session.rollback()
                    logger.warning("Ack of job %s ignored: lease no longer held", job.job_id)
                    return None
                session.commit()
                return None

            row = session.exec(
                select(QueueJob).where(*_holder_clauses(job)),
            ).one_or_none()
            if row is None or row.schedule_expression is None:
                logger.warning("Ack of job %s ignored: lease no longer held", job.job_id)
                return None
            fire_at = next_fire_time(
                row.schedule_expression,
                max(now, to_utc_aware_datetime(row.run_after)),
            )
            result = session.exec(
                _holder_update(job).values(
                    job_id=recurring_job_id(row.task_id, fire_at),
                    state=JobState.QUEUED.value,
                    run_after=to_db_datetime(fire_at),
                    attempts_made=0,
                    nack_count=0,
                    lease_owner=None,
                    lease_token=None,
                    lease_expires_at=None,
                    enqueued_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning("Ack of job %s ignored: lease no longer held", job.job_id)
                return None
            session.commit()
            rearmed = session.exec(select(QueueJob).where(QueueJob.id == row.id)).one()
            logger.debug("Re-armed recurring task %s at %s", row.task_id, fire_at.isoformat())
            return _to_job_view(rearmed)

    def nack(self, job: JobView, *, delay_ms: int) -> bool:
        """Return a held job to the queue, leasable again after ``delay_ms``."""

        return self._release(job, delay_ms=delay_ms, refund_attempt=False)

    def defer(self, job: JobView, *, delay_ms: int) -> bool:
        """Like ``nack`` but the lease does not count as an attempt."""

        return self._release(job, delay_ms=delay_ms, refund_attempt=True)

    def _release(self, job: JobView, *, delay_ms: int, refund_attempt: bool) -> bool:
        if delay_ms < 0:
            raise InvalidScheduleError(f"delay_ms must be >= 0, got {delay_ms}")
        now = utc_now()
        values: dict[str, Any] = {
            "state": JobState.QUEUED.value,
            "run_after": to_db_datetime(now + timedelta(milliseconds=delay_ms)),
            "lease_owner": None,
            "lease_token": None,
            "lease_expires_at": None,
            "updated_at": to_db_datetime(now),
        }
        if refund_attempt:
            values["attempts_made"] = func.max(col(QueueJob.attempts_made) - 1, 0)
        else:
            values["nack_count"] = col(QueueJob.nack_count) + 1
        with self._session() as session:
            result = session.exec(_holder_update(job).values(**values))
            if result.rowcount != 1:
                session.rollback()
                logger.warning("Release of job %s ignored: lease no longer held", job.job_id)
                return False
            session.commit()
            return True

    # -- administration ------------------------------------------------------

    def pause(self) -> None:
        self._set_paused(True)
        logger.info("Queue %s paused", self.queue_name)

    def resume(self) -> None:
        self._set_paused(False)
        logger.info("Queue %s resumed", self.queue_name)

    def is_paused(self) -> bool:
        with self._session() as session:
            return self._paused(session)

    def remove_task_jobs(self, task_id: str) -> int:
        """Drop every queue entry of ``task_id``; in-flight holders lose their lease."""

        with self._session() as session:
            result = session.exec(sa_delete(QueueJob).where(col(QueueJob.task_id) == task_id))
            session.commit()
            removed = int(result.rowcount or 0)
        if removed:
            logger.info("Removed %s queued job(s) for task %s", removed, task_id)
        return removed

    def get_job(self, job_id: str) -> JobView | None:
        with self._session() as session:
            row = session.exec(select(QueueJob).where(QueueJob.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(self, *, task_id: str | None = None, limit: int = 100) -> list[JobView]:
        with self._session() as session:
            statement = select(QueueJob)
            if task_id is not None:
                statement = statement.where(QueueJob.task_id == task_id)
            rows = session.exec(
                statement.order_by(
                    col(QueueJob.run_after).asc(),
                    col(QueueJob.id).asc(),
                ).limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def depth(self) -> QueueDepth:
        """Count jobs by visibility state at this instant."""

        db_now = to_db_datetime(utc_now())
        queued = col(QueueJob.state) == JobState.QUEUED.value
        leased = col(QueueJob.state) == JobState.LEASED.value
        with self._session() as session:

            def _count(*clauses: Any) -> int:
                return int(
                    session.exec(select(func.count()).select_from(QueueJob).where(*clauses)).one(),
                )

            return QueueDepth(
                ready=_count(queued, col(QueueJob.run_after) <= db_now),
                delayed=_count(queued, col(QueueJob.run_after) > db_now),
                leased=_count(leased, col(QueueJob.lease_expires_at) > db_now),
                stalled=_count(leased, col(QueueJob.lease_expires_at) <= db_now),
                paused=self._paused(session),
            )

    # -- internals -----------------------------------------------------------

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as error:
            raise QueueUnavailableError(f"Dispatch queue unavailable: {error}") from error

    def _paused(self, session: Session) -> bool:
        state = session.exec(
            select(QueueState).where(QueueState.name == self.queue_name),
        ).one_or_none()
        return bool(state is not None and state.paused)

    def _set_paused(self, paused: bool) -> None:
        now = to_db_datetime(utc_now())
        with self._session() as session:
            state = session.exec(
                select(QueueState).where(QueueState.name == self.queue_name),
            ).one_or_none()
            if state is None:
                session.add(QueueState(name=self.queue_name, paused=paused, updated_at=now))
            else:
                state.paused = paused
                state.updated_at = now
                session.add(state)
            session.commit()


def _ensure_priority(priority: int) -> None:
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise InvalidScheduleError(
            f"priority must be within [{MIN_PRIORITY}, {MAX_PRIORITY}], got {priority}",
        )


def _ready_clause(db_now: datetime) -> Any:
    return or_(
        and_(
            col(QueueJob.state) == JobState.QUEUED.value,
            col(QueueJob.run_after) <= db_now,
        ),
        and_(
            col(QueueJob.state) == JobState.LEASED.value,
            col(QueueJob.lease_expires_at) <= db_now,
        ),
    )


def _holder_clauses(job: JobView) -> tuple[Any, ...]:
    if job.lease_token is None:
        raise ValueError(f"Job {job.job_id} is not leased")
    return (
        col(QueueJob.job_id) == job.job_id,
        col(QueueJob.state) == JobState.LEASED.value,
        col(QueueJob.lease_token) == job.lease_token,
    )


def _holder_update(job: JobView) -> Any:
    return sa_update(QueueJob).where(*_holder_clauses(job))


def _to_job_view(row: QueueJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        task_id=row.task_id,
        schedule_key=row.schedule_key,
        schedule_expression=row.schedule_expression,
        payload=load_json(row.payload_json) or {},
        priority=row.priority,
        attempts_allowed=row.attempts_allowed,
        attempts_made=row.attempts_made,
        nack_count=row.nack_count,
        state=JobState(row.state),
        run_after=to_utc_aware_datetime(row.run_after),
        lease_owner=row.lease_owner,
        lease_token=row.lease_token,
        lease_expires_at=optional_utc(row.lease_expires_at),
        enqueued_at=to_utc_aware_datetime(row.enqueued_at),
    )
