"""Dead-letter side: one immutable diagnostic record per message that exhausted its retries."""
from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any, Callable

from loguru import logger

from task_worker.app.application.batch import ensure_batch
from task_worker.app.core import SERVICE_NAME
from task_worker.app.domain.models import BatchReport, DeliveredMessage, TaskDecodeError, TaskMessage
from task_worker.app.domain.terminal_record import (
    RecordingContext,
    TerminalFailureRecord,
    new_record_id,
    seconds_between,
)
from task_worker.app.ports.failure_record_sink import FailureRecordSink

DEFAULT_STREAM_PREFIX = "dead-letter-monitor"


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TerminalFailureRecorder:
    """
    Records dead-lettered deliveries and always acknowledges the whole batch.

    There is no retry path past the dead-letter queue, so decode and sink failures are
    logged and the delivery is still consumed.
    """

    def __init__(
        self,
        sink: FailureRecordSink,
        *,
        clock: Callable[[], datetime] = _utcnow,
        stream_prefix: str = DEFAULT_STREAM_PREFIX,
    ) -> None:
        self._sink = sink
        self._clock = clock
        self._stream_prefix = stream_prefix

    async def record_batch(
        self,
        messages: Sequence[DeliveredMessage],
        context: RecordingContext | None = None,
    ) -> BatchReport:
        batch = ensure_batch(messages)
        ctx = context or RecordingContext.new(self._stream_prefix, now=self._clock())
        _log("dead_letter_batch_received", size=len(batch), stream_name=ctx.stream_name)

        recorded = 0
        for message in batch:
            record = self.build_record(message, ctx)
            try:
                await self._sink.append(record, ctx)
            except Exception as exc:
                logger.warning(
                    "terminal failure record {} for delivery {} not stored: {}",
                    record.record_id,
                    message.delivery_id,
                    exc,
                )
                continue
            recorded += 1
            _log(
                "failed_task_recorded",
                record_id=record.record_id,
                task_id=record.task_id,
                message_id=record.message_id,
                time_in_system_seconds=record.time_in_system_seconds,
                submitted_at=record.submitted_at.isoformat() if record.submitted_at else None,
                attempt_count=record.attempt_count,
                stream_name=ctx.stream_name,
            )

        _log("dead_letter_batch_done", size=len(batch), recorded=recorded, stream_name=ctx.stream_name)
        return BatchReport()

    def build_record(self, message: DeliveredMessage, context: RecordingContext) -> TerminalFailureRecord:
        now = self._clock()
        base: dict[str, Any] = {
            "record_id": new_record_id(now),
            "attempt_count": message.attempt_count,
            "delivery_id": message.delivery_id,
            "message_id": message.message_id,
            "first_received_at": message.first_received_at,
            "last_sent_at": message.last_sent_at,
            "recorded_at": now,
            "stream_name": context.stream_name,
        }
        try:
            task = TaskMessage.from_body(message.body)
        except TaskDecodeError as exc:
            logger.warning("dead-lettered delivery {} has an undecodable body: {}", message.delivery_id, exc)
            return TerminalFailureRecord(
                task_id=None,
                payload=None,
                submitted_at=None,
                time_in_system_seconds=None,
                raw_body=bytes(message.body).decode("utf-8", errors="replace"),
                decode_error=str(exc),
                **base,
            )

        time_in_system = seconds_between(task.submitted_at, now) if task.submitted_at else None
        logger.debug("dead-lettered payload for task {}: {}", task.task_id, json.dumps(task.payload, default=str))
        return TerminalFailureRecord(
            task_id=task.task_id,
            payload=task.payload,
            submitted_at=task.submitted_at,
            time_in_system_seconds=time_in_system,
            **base,
        )
