from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger

from task_common.retry import RetrySchedule, retry_async
from task_worker.app.application.batch import ensure_batch
from task_worker.app.application.outcome_logging import LoguruOutcomeObserver
from task_worker.app.constants import OutcomeDecision
from task_worker.app.core import SERVICE_NAME
from task_worker.app.domain.backoff_policy import BackoffPolicy
from task_worker.app.domain.models import (
    BatchReport,
    DeliveredMessage,
    OutcomeEvent,
    TaskDecodeError,
    TaskMessage,
)
from task_worker.app.domain.terminal_record import seconds_between
from task_worker.app.ports.outcome_observer import OutcomeObserver
from task_worker.app.ports.task_processor import TaskProcessor
from task_worker.app.ports.task_queue import QueueTransientError, TaskQueue

DEFAULT_MAX_ATTEMPTS = 3


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RetryCoordinator:
    """
    Evaluates a batch of deliveries independently and builds the batch report.

    Per delivery, using the queue-owned attempt_count:
    - decode failure            -> failed, no delay override (body may be garbage)
    - processing success        -> absent from the report (queue removes it)
    - failure, attempt < max    -> delay override with BackoffPolicy.delay(attempt), failed
    - failure, attempt >= max   -> failed, no override (queue diverts it to the dead-letter path)

    A failed delay override degrades to the queue's default redelivery delay. Only a
    malformed batch raises; everything per-delivery ends up as an OutcomeEvent.
    """

    def __init__(
        self,
        processor: TaskProcessor,
        queue: TaskQueue,
        policy: BackoffPolicy | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        *,
        processing_timeout_seconds: float = 30.0,
        concurrency: int = 1,
        override_max_attempts: int = 3,
        override_initial_backoff_seconds: float = 0.2,
        override_max_backoff_seconds: float = 2.0,
        observer: OutcomeObserver | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if override_max_attempts < 1:
            raise ValueError("override_max_attempts must be >= 1")
        self._processor = processor
        self._queue = queue
        self._policy = policy or BackoffPolicy()
        self._max_attempts = int(max_attempts)
        self._processing_timeout_seconds = float(processing_timeout_seconds)
        self._concurrency = int(concurrency)
        self._override_schedule = RetrySchedule(
            initial_delay=float(override_initial_backoff_seconds),
            max_delay=float(override_max_backoff_seconds),
            multiplier=2.0,
            max_attempts=int(override_max_attempts),
        )
        self._observer: OutcomeObserver = observer or LoguruOutcomeObserver()
        self._clock = clock

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def process_batch(
        self,
        messages: Sequence[DeliveredMessage],
        *,
        deadline_seconds: float | None = None,
    ) -> BatchReport:
        batch = ensure_batch(messages)
        _log("batch_received", size=len(batch))
        if not batch:
            return BatchReport()

        # One slot per delivery; each evaluation writes only its own slot.
        outcomes: list[OutcomeEvent | None] = [None] * len(batch)
        semaphore = asyncio.Semaphore(self._concurrency)

        async def run(index: int, message: DeliveredMessage) -> None:
            async with semaphore:
                outcomes[index] = await self._evaluate(message)

        tasks = [asyncio.create_task(run(i, m)) for i, m in enumerate(batch)]
        try:
            _, pending = await asyncio.wait(tasks, timeout=deadline_seconds)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        if pending:
            _log("batch_deadline_exceeded", pending=len(pending), deadline_seconds=deadline_seconds)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for task in tasks:
            if not task.cancelled() and task.exception() is not None:
                logger.opt(exception=task.exception()).error("delivery evaluation crashed")

        failed: list[str] = []
        for index, message in enumerate(batch):
            event = outcomes[index]
            if event is None:
                event = self._finish(
                    OutcomeEvent(
                        delivery_id=message.delivery_id,
                        attempt_count=message.attempt_count,
                        decision=OutcomeDecision.CANCELLED,
                        error="evaluation did not complete",
                    )
                )
            if not event.succeeded:
                failed.append(message.delivery_id)

        report = BatchReport(failed_delivery_ids=tuple(failed))
        _log("batch_report", size=len(batch), failed=len(failed))
        return report

    async def _evaluate(self, message: DeliveredMessage) -> OutcomeEvent:
        attempt = message.attempt_count
        try:
            task = TaskMessage.from_body(message.body)
        except TaskDecodeError as exc:
            return self._finish(
                OutcomeEvent(
                    delivery_id=message.delivery_id,
                    attempt_count=attempt,
                    decision=OutcomeDecision.DECODE_FAILED,
                    error=str(exc),
                )
            )

        age = seconds_between(task.submitted_at, self._clock()) if task.submitted_at else None
        _log("task_processing", task_id=task.task_id, delivery_id=message.delivery_id, attempt_number=attempt)

        try:
            await asyncio.wait_for(
                self._processor.process(task, attempt=attempt),
                timeout=self._processing_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = f"processing timed out after {self._processing_timeout_seconds}s"
        except Exception as exc:
            error = str(exc) or type(exc).__name__
        else:
            return self._finish(
                OutcomeEvent(
                    delivery_id=message.delivery_id,
                    attempt_count=attempt,
                    decision=OutcomeDecision.SUCCEEDED,
                    task_id=task.task_id,
                    age_seconds=age,
                )
            )

        return self._finish(await self._handle_failure(message, task, error, age))

    async def _handle_failure(
        self,
        message: DeliveredMessage,
        task: TaskMessage,
        error: str,
        age: int | None,
    ) -> OutcomeEvent:
        attempt = message.attempt_count
        if attempt >= self._max_attempts:
            return OutcomeEvent(
                delivery_id=message.delivery_id,
                attempt_count=attempt,
                decision=OutcomeDecision.EXHAUSTED,
                task_id=task.task_id,
                error=error,
                age_seconds=age,
            )

        delay = self._policy.delay(attempt)
        try:
            await self._override_delay(message.delivery_id, delay)
        except Exception as exc:
            logger.warning(
                "redelivery delay override failed for delivery {} (task {}), queue default applies: {}",
                message.delivery_id,
                task.task_id,
                exc,
            )
            return OutcomeEvent(
                delivery_id=message.delivery_id,
                attempt_count=attempt,
                decision=OutcomeDecision.RETRY_DEFAULT_DELAY,
                task_id=task.task_id,
                error=error,
                age_seconds=age,
            )

        return OutcomeEvent(
            delivery_id=message.delivery_id,
            attempt_count=attempt,
            decision=OutcomeDecision.RETRY_SCHEDULED,
            task_id=task.task_id,
            delay_seconds=delay,
            error=error,
            age_seconds=age,
        )

    async def _override_delay(self, delivery_id: str, seconds: int) -> None:
        """Retry transient override failures a bounded number of times; re-raise the last one."""

        def _on_retry(attempt: int, delay: float, exc: BaseException) -> None:
            _log("redelivery_override_retry", delivery_id=delivery_id, attempt=attempt, error=str(exc))

        await retry_async(
            lambda: self._queue.override_redelivery_delay(delivery_id, seconds),
            self._override_schedule,
            retry_on=(QueueTransientError,),
            on_retry=_on_retry,
        )

    def _finish(self, event: OutcomeEvent) -> OutcomeEvent:
        try:
            self._observer.record(event)
        except Exception as exc:
            logger.warning("outcome observer failed for delivery {}: {}", event.delivery_id, exc)
        return event
