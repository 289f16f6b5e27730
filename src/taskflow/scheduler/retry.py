"""Retry/backoff policy and routing of failed attempts."""

from __future__ import annotations

import logging

from taskflow.scheduler.events import (
    DEAD_LETTERED,
    RETRY_SCHEDULED,
    EventSink,
    SchedulerEvent,
    safe_emit,
)
from taskflow.scheduler.failure_classifier import FailureClassification
from taskflow.scheduler.ledger import ExecutionLedger
from taskflow.scheduler.models import (
    ExecutionStatus,
    JobExecutionView,
    JobView,
    RetryAction,
    RetryDecision,
)
from taskflow.scheduler.queue import DispatchQueue

logger = logging.getLogger(__name__)


def backoff_delay_ms(attempts: int, *, base_ms: int, max_delay_ms: int | None = None) -> int:
    """Exponential backoff: ``base_ms * 2 ** (attempts - 1)``, optionally capped."""

    delay = base_ms * (2 ** max(0, attempts - 1))
    if max_delay_ms is not None:
        delay = min(delay, max_delay_ms)
    return delay


class RetryController:
    """Decides and applies what happens to a job after a failed attempt."""

    def __init__(
        self,
        *,
        queue: DispatchQueue,
        ledger: ExecutionLedger,
        events: EventSink,
        base_ms: int = 1_000,
        max_delay_ms: int | None = None,
    ) -> None:
        self.queue = queue
        self.ledger = ledger
        self.events = events
        self.base_ms = base_ms
        self.max_delay_ms = max_delay_ms

    def decide(
        self,
        *,
        attempts: int,
        max_retries: int,
        classification: FailureClassification,
    ) -> RetryDecision:
        if not classification.retriable:
            return RetryDecision(
                action=RetryAction.DEAD_LETTER,
                reason=f"non_retriable:{classification.kind.value}",
            )
        if attempts < max_retries + 1:
            return RetryDecision(
                action=RetryAction.RETRY,
                delay_ms=backoff_delay_ms(
                    attempts,
                    base_ms=self.base_ms,
                    max_delay_ms=self.max_delay_ms,
                ),
                reason="retry_budget_remaining",
            )
        return RetryDecision(action=RetryAction.DEAD_LETTER, reason="retries_exhausted")

    def apply(
        self,
        *,
        job: JobView,
        execution: JobExecutionView,
        max_retries: int,
        classification: FailureClassification,
    ) -> RetryDecision:
        """Route the failed attempt: back to the queue or into the dead-letter store."""

        decision = self.decide(
            attempts=execution.attempts,
            max_retries=max_retries,
            classification=classification,
        )
        if decision.action == RetryAction.RETRY:
            if not self.queue.nack(job, delay_ms=decision.delay_ms):
                return decision
            self.ledger.route_execution(
                execution,
                ExecutionStatus.RETRY,
                error=classification.to_execution_error(),
            )
            logger.info(
                "Retry %s/%s for job %s in %sms (%s)",
                execution.attempts,
                max_retries,
                job.job_id,
                decision.delay_ms,
                classification.kind.value,
            )
            safe_emit(
                self.events,
                SchedulerEvent(
                    name=RETRY_SCHEDULED,
                    task_id=job.task_id,
                    job_id=job.job_id,
                    details={
                        "attempts": execution.attempts,
                        "delay_ms": decision.delay_ms,
                        **classification.to_event_details(),
                    },
                ),
            )
            return decision

        dead_letter = self.ledger.add_dead_letter(
            task_id=job.task_id,
            job_id=job.job_id,
            payload=job.payload,
            error=classification.to_execution_error(),
            attempts=execution.attempts,
        )
        self.ledger.route_execution(
            execution,
            ExecutionStatus.DEAD_LETTER,
            error=classification.to_execution_error(),
        )
        rearmed = self.queue.ack(job)
        decision.next_run_at = rearmed.run_after if rearmed is not None else None
        safe_emit(
            self.events,
            SchedulerEvent(
                name=DEAD_LETTERED,
                task_id=job.task_id,
                job_id=job.job_id,
                details={
                    "attempts": execution.attempts,
                    "dead_letter_id": dead_letter.id,
                    "reason": decision.reason,
                    **classification.to_event_details(),
                },
            ),
        )
        return decision
