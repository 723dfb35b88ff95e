"""Batch consumption loop: receive, hand to a batch handler, settle."""
from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any, Awaitable, Callable

from loguru import logger

from task_worker.app.core import SERVICE_NAME
from task_worker.app.domain.models import BatchReport, DeliveredMessage
from task_worker.app.ports.task_queue import TaskQueue

BatchHandler = Callable[[Sequence[DeliveredMessage]], Awaitable[BatchReport]]


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class BatchConsumer:
    """Drives a TaskQueue until `shutdown` is set.

    A batch whose handler raises is released back to the queue unsettled and no
    partial report is applied.
    """

    def __init__(
        self,
        queue: TaskQueue,
        handler: BatchHandler,
        *,
        batch_size: int = 10,
        poll_interval_seconds: float = 1.0,
        shutdown: asyncio.Event | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._queue = queue
        self._handler = handler
        self._batch_size = batch_size
        self._poll_interval_seconds = poll_interval_seconds
        self.shutdown = shutdown or asyncio.Event()
        self.batches_settled = 0
        self.batches_released = 0

    async def run_once(self) -> bool:
        """Handle one batch. Returns False when the queue had nothing to hand out."""
        messages = await self._queue.receive_batch(self._batch_size)
        if not messages:
            return False
        try:
            report = await self._handler(messages)
        except asyncio.CancelledError:
            await self._queue.release()
            raise
        except Exception as exc:
            logger.exception("batch handler failed, releasing {} deliveries: {}", len(messages), exc)
            await self._queue.release()
            self.batches_released += 1
            return True
        await self._queue.settle(report)
        self.batches_settled += 1
        _log("batch_settled", size=len(messages), failed=len(report.failed_delivery_ids))
        return True

    async def run(self) -> None:
        _log("consumer_started", batch_size=self._batch_size)
        while not self.shutdown.is_set():
            try:
                handled = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("queue call failed: {}", exc)
                handled = False
            if not handled:
                await self._idle()
        _log("consumer_stopped", settled=self.batches_settled, released=self.batches_released)

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self.shutdown.wait(), timeout=self._poll_interval_seconds)
        except asyncio.TimeoutError:
            pass
