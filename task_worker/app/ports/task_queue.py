"""Port: queue abstraction consumed by the worker. Implementations live in infrastructure."""
from __future__ import annotations

from typing import Protocol

from task_worker.app.domain.models import BatchReport, DeliveredMessage


class QueueOperationError(Exception):
    """A queue call failed."""


class QueueTransientError(QueueOperationError):
    """A queue call failed in a way that may succeed if retried."""


class TaskQueue(Protocol):
    """At-least-once queue with queue-owned attempt counts and per-delivery delay override."""

    async def connect(self) -> None: ...

    async def receive_batch(self, max_messages: int) -> list[DeliveredMessage]:
        """Hand out up to max_messages deliveries; empty list when nothing is available."""
        ...

    async def override_redelivery_delay(self, delivery_id: str, seconds: int) -> None:
        """Set how long the queue waits before redelivering this delivery if it is reported failed."""
        ...

    async def settle(self, report: BatchReport) -> None:
        """Acknowledge the outstanding batch: consume everything not listed in the report."""
        ...

    async def release(self) -> None:
        """Return every outstanding delivery to the queue without recording an outcome."""
        ...

    async def close(self) -> None: ...
