"""Worker pool: leases jobs, runs handlers under a timeout, and records attempts."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, fields
from datetime import timedelta
from typing import Any

from taskflow.config import Settings
from taskflow.scheduler.errors import QueueUnavailableError, TaskNotFoundError, TaskTimeoutError
from taskflow.scheduler.events import (
    ATTEMPT_FINISHED,
    ATTEMPT_STARTED,
    JOB_SKIPPED,
    QUEUE_DEPTH,
    EventSink,
    SchedulerEvent,
    safe_emit,
)
from taskflow.scheduler.failure_classifier import classify_failure
from taskflow.scheduler.handlers import TaskHandler, bind_cancel_event
from taskflow.scheduler.ledger import ExecutionLedger
from taskflow.scheduler.models import (
    ExecutionStatus,
    JobExecutionView,
    JobView,
    RetryAction,
    TaskStatus,
    TaskView,
)
from taskflow.scheduler.queue import DispatchQueue
from taskflow.scheduler.retry import RetryController
from taskflow.scheduler.task_store import TaskStore
from taskflow.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    timeouts: int = 0
    skipped: int = 0
    deferred: int = 0
    idle_polls: int = 0

    def merge(self, other: WorkerRunSummary) -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))


class WorkerPool:
    """Consumes leased jobs with up to ``concurrency`` attempts in flight."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: DispatchQueue,
        task_store: TaskStore,
        ledger: ExecutionLedger,
        handler: TaskHandler,
        retry: RetryController,
        events: EventSink,
        worker_id: str,
        concurrency: int = 10,
        visibility_timeout_seconds: float = 30.0,
        lease_grace_seconds: float = 5.0,
        poll_interval_seconds: float = 5.0,
        rate_limit_window_seconds: float = 1.0,
        graceful_shutdown_seconds: float = 30.0,
        queue_retry_base_seconds: float = 1.0,
        queue_retry_max_seconds: float = 30.0,
        queue_depth_emit_seconds: float = 5.0,
        install_signal_handlers: bool = True,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.task_store = task_store
        self.ledger = ledger
        self.handler = handler
        self.retry = retry
        self.events = events
        self.worker_id = worker_id
        self.concurrency = concurrency
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self.lease_grace_seconds = lease_grace_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.rate_limit_window_seconds = rate_limit_window_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.queue_retry_base_seconds = queue_retry_base_seconds
        self.queue_retry_max_seconds = queue_retry_max_seconds
        self.queue_depth_emit_seconds = queue_depth_emit_seconds
        self.install_signal_handlers = install_signal_handlers
        self._stop_event = threading.Event()
        self._stop_signal_name: str | None = None
        self._in_flight: dict[str, threading.Event] = {}
        self._in_flight_lock = threading.Lock()
        self._last_depth_emit: float | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Ask the pool to stop leasing; in-flight attempts are allowed to finish."""

        if not self._stop_event.is_set():
            logger.info("Worker %s stop requested", self.worker_id)
        self._stop_event.set()

    def run_once(self) -> WorkerRunSummary:
        """Lease and process at most one job synchronously."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary
        job = self._lease()
        if job is None:
            summary.idle_polls = 1
            return summary
        return self.process_job(job)

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Lease and dispatch jobs until stopped.

        Args:
            max_jobs: Stop leasing after this many jobs (None = unlimited).
            max_idle_polls: Exit after this many consecutive empty polls with
                nothing in flight (None = keep polling until stopped).
        """

        aggregate = WorkerRunSummary()
        aggregate_lock = threading.Lock()
        slots = threading.BoundedSemaphore(self.concurrency)
        pending: set[Future[WorkerRunSummary]] = set()
        dispatched = 0
        consecutive_idle = 0
        queue_failures = 0

        def _collect(future: Future[WorkerRunSummary]) -> None:
            slots.release()
            with aggregate_lock:
                pending.discard(future)
                if future.cancelled():
                    return
                error = future.exception()
                if error is None:
                    aggregate.merge(future.result())

        executor = ThreadPoolExecutor(
            max_workers=self.concurrency,
            thread_name_prefix=f"{self.worker_id}-attempt",
        )
        logger.info("Worker %s started (concurrency=%s)", self.worker_id, self.concurrency)
        with self._signal_handlers():
            try:
                while not self.stop_requested:
                    if max_jobs is not None and dispatched >= max_jobs:
                        break
                    self._maybe_emit_queue_depth()
                    if not slots.acquire(timeout=max(self.poll_interval_seconds, 0.01)):
                        continue

                    try:
                        job = self._lease()
                    except QueueUnavailableError as error:
                        slots.release()
                        queue_failures += 1
                        delay = min(
                            self.queue_retry_max_seconds,
                            self.queue_retry_base_seconds * (2 ** (queue_failures - 1)),
                        )
                        logger.warning(
                            "Queue unavailable (%s); retrying in %.1fs",
                            error,
                            delay,
                        )
                        self._stop_event.wait(delay)
                        continue
                    queue_failures = 0

                    if job is None:
                        slots.release()
                        with aggregate_lock:
                            busy = bool(pending)
                            if not busy:
                                aggregate.idle_polls += 1
                        if not busy:
                            consecutive_idle += 1
                            if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                                break
                        self._stop_event.wait(self.poll_interval_seconds)
                        continue

                    consecutive_idle = 0
                    dispatched += 1
                    future = executor.submit(self._process_logged, job)
                    with aggregate_lock:
                        pending.add(future)
                    future.add_done_callback(_collect)
            finally:
                self._drain(executor=executor, pending=pending, lock=aggregate_lock)

        logger.info(
            "Worker %s stopped: processed=%s succeeded=%s failed=%s",
            self.worker_id,
            aggregate.processed,
            aggregate.succeeded,
            aggregate.failed,
        )
        return aggregate

    def process_job(self, job: JobView) -> WorkerRunSummary:
        """Run one leased job through lookup, execution, and ledger updates."""

        summary = WorkerRunSummary(processed=1)
        task = self.task_store.get_task(job.task_id)
        if task is None:
            logger.warning("Job %s references missing task %s", job.job_id, job.task_id)
            execution = self._announce_attempt(
                job=job,
                task=None,
                execution=self.ledger.create_execution(
                    task_id=job.task_id,
                    job_id=job.job_id,
                    attempts=job.attempts_made,
                    worker_id=self.worker_id,
                ),
            )
            self._handle_failure(
                job=job,
                task=None,
                execution=execution,
                error=TaskNotFoundError(job.task_id),
                summary=summary,
            )
            return summary

        if not task.is_active:
            self._skip_inactive(job=job, task=task, summary=summary)
            return summary

        if not self.queue.extend_lease(
            job,
            seconds=task.timeout_ms / 1000.0 + self.lease_grace_seconds,
        ):
            logger.warning("Lost lease on job %s before execution", job.job_id)
            summary.skipped = 1
            return summary

        execution = self._open_execution(job=job, task=task)
        if execution is None:
            self._defer_rate_limited(job=job, task=task, summary=summary)
            return summary
        try:
            result = self._run_handler(job=job, task=task)
        except Exception as error:  # noqa: BLE001
            self._handle_failure(
                job=job,
                task=task,
                execution=execution,
                error=error,
                summary=summary,
            )
            return summary

        self._handle_success(
            job=job,
            task=task,
            execution=execution,
            result=result,
            summary=summary,
        )
        return summary

    def _lease(self) -> JobView | None:
        if self.stop_requested:
            return None
        return self.queue.lease(
            worker_id=self.worker_id,
            visibility_timeout=self.visibility_timeout_seconds,
        )

    def _process_logged(self, job: JobView) -> WorkerRunSummary:
        try:
            return self.process_job(job)
        except Exception:
            logger.exception(
                "Worker %s failed while processing job %s",
                self.worker_id,
                job.job_id,
            )
            raise

    def _open_execution(self, *, job: JobView, task: TaskView) -> JobExecutionView | None:
        """Open the PROCESSING record, or return ``None`` at the task's rate limit."""

        if task.rate_limit is None:
            execution: JobExecutionView | None = self.ledger.create_execution(
                task_id=job.task_id,
                job_id=job.job_id,
                attempts=job.attempts_made,
                worker_id=self.worker_id,
            )
        else:
            execution = self.ledger.create_execution_within_limit(
                task_id=job.task_id,
                job_id=job.job_id,
                attempts=job.attempts_made,
                worker_id=self.worker_id,
                rate_limit=task.rate_limit,
                since=utc_now() - timedelta(seconds=self.rate_limit_window_seconds),
            )
        if execution is None:
            return None
        return self._announce_attempt(job=job, task=task, execution=execution)

    def _announce_attempt(
        self,
        *,
        job: JobView,
        task: TaskView | None,
        execution: JobExecutionView,
    ) -> JobExecutionView:
        logger.info(
            "Attempt %s of job %s started on %s",
            execution.attempts,
            job.job_id,
            self.worker_id,
        )
        safe_emit(
            self.events,
            SchedulerEvent(
                name=ATTEMPT_STARTED,
                task_id=job.task_id,
                job_id=job.job_id,
                details={
                    "attempts": execution.attempts,
                    "execution_id": execution.id,
                    "task_type": task.type.value if task is not None else None,
                    "worker_id": self.worker_id,
                },
            ),
        )
        return execution

    def _run_handler(self, *, job: JobView, task: TaskView) -> Any:
        """Race the handler against the task timeout in its own thread.

        On timeout the attempt fails immediately; whatever the handler
        produces afterwards is dropped.
        """

        cancel = threading.Event()
        done = threading.Event()
        outcome: dict[str, Any] = {}

        def _target() -> None:
            bind_cancel_event(cancel)
            try:
                outcome["result"] = self.handler.execute(task, job.payload)
            except Exception as error:  # noqa: BLE001
                outcome["error"] = error
            finally:
                bind_cancel_event(None)
                done.set()

        thread = threading.Thread(
            target=_target,
            name=f"{self.worker_id}-handler-{job.job_id}",
            daemon=True,
        )
        with self._in_flight_lock:
            self._in_flight[job.job_id] = cancel
        try:
            thread.start()
            if not done.wait(task.timeout_ms / 1000.0):
                cancel.set()
                raise TaskTimeoutError(task.timeout_ms)
        finally:
            with self._in_flight_lock:
                self._in_flight.pop(job.job_id, None)

        if "error" in outcome:
            raise outcome["error"]
        return outcome.get("result")

    def _handle_success(
        self,
        *,
        job: JobView,
        task: TaskView,
        execution: JobExecutionView,
        result: Any,
        summary: WorkerRunSummary,
    ) -> None:
        if not self.ledger.complete_execution(execution, result=result):
            logger.warning(
                "Attempt %s of job %s was closed elsewhere; dropping its result",
                execution.attempts,
                job.job_id,
            )
            summary.skipped = 1
            return

        rearmed = self.queue.ack(job)
        if job.is_recurring:
            self.task_store.update_task_run_times(
                task.task_id,
                last_run_at=utc_now(),
                next_run_at=rearmed.run_after if rearmed is not None else None,
            )
        summary.succeeded = 1
        logger.info("Attempt %s of job %s completed", execution.attempts, job.job_id)
        safe_emit(
            self.events,
            SchedulerEvent(
                name=ATTEMPT_FINISHED,
                task_id=job.task_id,
                job_id=job.job_id,
                details={
                    "attempts": execution.attempts,
                    "execution_id": execution.id,
                    "status": ExecutionStatus.COMPLETED.value,
                    "duration_ms": _elapsed_ms(execution),
                },
            ),
        )

    def _handle_failure(  # noqa: PLR0913
        self,
        *,
        job: JobView,
        task: TaskView | None,
        execution: JobExecutionView,
        error: BaseException,
        summary: WorkerRunSummary,
    ) -> None:
        classification = classify_failure(error)
        if isinstance(error, TaskTimeoutError):
            summary.timeouts = 1
        if not self.ledger.fail_execution(execution, error=classification.to_execution_error()):
            logger.warning(
                "Attempt %s of job %s was closed elsewhere; not routing its failure",
                execution.attempts,
                job.job_id,
            )
            summary.skipped = 1
            return

        summary.failed = 1
        logger.warning(
            "Attempt %s of job %s failed (%s): %s",
            execution.attempts,
            job.job_id,
            classification.kind.value,
            classification.message,
        )
        safe_emit(
            self.events,
            SchedulerEvent(
                name=ATTEMPT_FINISHED,
                task_id=job.task_id,
                job_id=job.job_id,
                details={
                    "attempts": execution.attempts,
                    "execution_id": execution.id,
                    "status": ExecutionStatus.FAILED.value,
                    "duration_ms": _elapsed_ms(execution),
                    **classification.to_event_details(),
                },
            ),
        )

        decision = self.retry.apply(
            job=job,
            execution=execution,
            max_retries=task.max_retries if task is not None else 0,
            classification=classification,
        )
        if decision.action == RetryAction.RETRY:
            summary.retried = 1
            return
        summary.dead_lettered = 1
        if task is not None and job.is_recurring:
            self.task_store.update_task_run_times(
                task.task_id,
                last_run_at=task.last_run_at,
                next_run_at=decision.next_run_at,
            )

    def _skip_inactive(self, *, job: JobView, task: TaskView, summary: WorkerRunSummary) -> None:
        deleted = task.status == TaskStatus.COMPLETED or task.deleted_at is not None
        rearmed = self.queue.ack(job, remove=deleted)
        if rearmed is not None:
            self.task_store.update_task_run_times(
                task.task_id,
                last_run_at=task.last_run_at,
                next_run_at=rearmed.run_after,
            )
        summary.skipped = 1
        logger.info("Skipped job %s: task %s is %s", job.job_id, task.task_id, task.status.value)
        safe_emit(
            self.events,
            SchedulerEvent(
                name=JOB_SKIPPED,
                task_id=job.task_id,
                job_id=job.job_id,
                details={"reason": f"task_{task.status.value.lower()}"},
            ),
        )

    def _defer_rate_limited(
        self,
        *,
        job: JobView,
        task: TaskView,
        summary: WorkerRunSummary,
    ) -> None:
        delay_ms = int(self.rate_limit_window_seconds * 1000)
        self.queue.defer(job, delay_ms=delay_ms)
        summary.deferred = 1
        logger.debug(
            "Deferred job %s by %sms: task %s at rate limit %s",
            job.job_id,
            delay_ms,
            task.task_id,
            task.rate_limit,
        )
        safe_emit(
            self.events,
            SchedulerEvent(
                name=JOB_SKIPPED,
                task_id=job.task_id,
                job_id=job.job_id,
                details={"reason": "rate_limited", "delay_ms": delay_ms},
            ),
        )

    def _maybe_emit_queue_depth(self) -> None:
        now = time.monotonic()
        if (
            self._last_depth_emit is not None
            and now - self._last_depth_emit < self.queue_depth_emit_seconds
        ):
            return
        self._last_depth_emit = now
        try:
            depth = self.queue.depth()
        except QueueUnavailableError as error:
            logger.warning("Could not read queue depth: %s", error)
            return
        safe_emit(self.events, SchedulerEvent(name=QUEUE_DEPTH, details=depth.to_dict()))

    def _drain(
        self,
        *,
        executor: ThreadPoolExecutor,
        pending: set[Future[WorkerRunSummary]],
        lock: threading.Lock,
    ) -> None:
        with lock:
            outstanding = set(pending)
        abandoned = False
        if outstanding:
            logger.info(
                "Waiting up to %.1fs for %s in-flight attempt(s)",
                self.graceful_shutdown_seconds,
                len(outstanding),
            )
            _, not_done = wait(outstanding, timeout=self.graceful_shutdown_seconds)
            if not_done:
                abandoned = True
                with self._in_flight_lock:
                    cancel_events = list(self._in_flight.values())
                for cancel in cancel_events:
                    cancel.set()
                logger.warning(
                    "Abandoning %s in-flight attempt(s); their leases will expire",
                    len(not_done),
                )
        executor.shutdown(wait=not abandoned)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not self.install_signal_handlers or not hasattr(signal, "SIGTERM"):
            yield
            return

        def _handler(signum: int, _: object | None) -> None:
            try:
                self._stop_signal_name = signal.Signals(signum).name
            except ValueError:
                self._stop_signal_name = str(signum)
            self.stop()

        try:
            original_sigint = signal.signal(signal.SIGINT, _handler)
            original_sigterm = signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def build_worker_pool(  # noqa: PLR0913
    settings: Settings,
    *,
    queue: DispatchQueue,
    task_store: TaskStore,
    ledger: ExecutionLedger,
    handler: TaskHandler,
    events: EventSink,
    concurrency: int | None = None,
) -> WorkerPool:
    """Wire a worker pool and its retry controller from settings."""

    retry = RetryController(
        queue=queue,
        ledger=ledger,
        events=events,
        base_ms=settings.retry.base_ms,
        max_delay_ms=settings.retry.max_delay_ms,
    )
    return WorkerPool(
        queue=queue,
        task_store=task_store,
        ledger=ledger,
        handler=handler,
        retry=retry,
        events=events,
        worker_id=settings.worker.worker_id,
        concurrency=concurrency or settings.worker.concurrency,
        visibility_timeout_seconds=settings.worker.visibility_timeout_seconds,
        lease_grace_seconds=settings.worker.lease_grace_seconds,
        poll_interval_seconds=settings.worker.poll_interval_seconds,
        rate_limit_window_seconds=settings.worker.rate_limit_window_seconds,
        graceful_shutdown_seconds=settings.worker.graceful_shutdown_seconds,
        queue_retry_base_seconds=settings.queue.retry_base_seconds,
        queue_retry_max_seconds=settings.queue.retry_max_seconds,
        queue_depth_emit_seconds=settings.queue.depth_emit_seconds,
        install_signal_handlers=settings.worker.install_signal_handlers,
    )


def _elapsed_ms(execution: JobExecutionView) -> int:
    return max(0, int((utc_now() - execution.started_at).total_seconds() * 1000))
