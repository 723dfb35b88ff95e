"""In-memory TaskQueue for tests and local mode.

Behaves like a visibility-timeout queue: a received message is in flight until the batch
is settled; a failed message becomes visible again after its delay (override or default),
and once its receive count reaches max_receive_count it is moved to the dead-letter queue
instead. Receive counts travel with the message into the dead-letter queue.
"""
from __future__ import annotations

import json
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from loguru import logger

from task_worker.app.core import SERVICE_NAME
from task_worker.app.domain.models import BatchReport, DeliveredMessage
from task_worker.app.ports.task_queue import QueueOperationError


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StoredMessage:
    message_id: str
    body: bytes
    sent_at: datetime
    visible_at: datetime
    receive_count: int = 0
    first_received_at: datetime | None = None
    delivery_id: str | None = None
    delay_override: int | None = None


class InMemoryTaskQueue:
    def __init__(
        self,
        *,
        name: str = "tasks",
        max_receive_count: int | None = None,
        dead_letter_queue: "InMemoryTaskQueue | None" = None,
        default_redelivery_delay_seconds: int = 30,
        max_redelivery_delay_seconds: int = 900,
        consumed_history: int = 100,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.name = name
        self._max_receive_count = max_receive_count
        self._dead_letter_queue = dead_letter_queue
        self._default_delay = int(default_redelivery_delay_seconds)
        self._max_delay = int(max_redelivery_delay_seconds)
        self._clock = clock
        self._messages: list[StoredMessage] = []
        self._in_flight: dict[str, StoredMessage] = {}
        # Most recent consumed messages only, for inspection.
        self.consumed: deque[StoredMessage] = deque(maxlen=consumed_history)

    @property
    def dead_letter_queue(self) -> "InMemoryTaskQueue | None":
        return self._dead_letter_queue

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def get_stored(self, message_id: str) -> StoredMessage | None:
        for stored in self._messages:
            if stored.message_id == message_id:
                return stored
        return None

    async def connect(self) -> None:
        return

    async def close(self) -> None:
        return

    async def send(self, message: dict[str, Any] | bytes, *, message_id: str | None = None) -> str:
        body = message if isinstance(message, bytes) else json.dumps(message).encode()
        now = self._clock()
        stored = StoredMessage(
            message_id=message_id or str(uuid.uuid4()),
            body=body,
            sent_at=now,
            visible_at=now,
        )
        self._messages.append(stored)
        return stored.message_id

    async def receive_batch(self, max_messages: int) -> list[DeliveredMessage]:
        now = self._clock()
        batch: list[DeliveredMessage] = []
        for stored in self._messages:
            if len(batch) >= max_messages:
                break
            if stored.delivery_id is not None or stored.visible_at > now:
                continue
            stored.receive_count += 1
            stored.delivery_id = uuid.uuid4().hex
            stored.delay_override = None
            if stored.first_received_at is None:
                stored.first_received_at = now
            self._in_flight[stored.delivery_id] = stored
            batch.append(
                DeliveredMessage(
                    delivery_id=stored.delivery_id,
                    body=stored.body,
                    attempt_count=stored.receive_count,
                    message_id=stored.message_id,
                    first_received_at=stored.first_received_at,
                    last_sent_at=stored.sent_at,
                )
            )
        return batch

    async def override_redelivery_delay(self, delivery_id: str, seconds: int) -> None:
        stored = self._in_flight.get(delivery_id)
        if stored is None:
            raise QueueOperationError(f"unknown delivery: {delivery_id}")
        if seconds < 0 or seconds > self._max_delay:
            raise QueueOperationError(f"redelivery delay out of range: {seconds}")
        stored.delay_override = int(seconds)

    async def settle(self, report: BatchReport) -> None:
        now = self._clock()
        failed = set(report.failed_delivery_ids)
        unknown = failed - set(self._in_flight)
        if unknown:
            logger.warning("settle: ignoring unknown delivery ids {}", sorted(unknown))

        for delivery_id, stored in list(self._in_flight.items()):
            stored.delivery_id = None
            if delivery_id not in failed:
                self._messages.remove(stored)
                self.consumed.append(stored)
                continue
            if self._max_receive_count is not None and stored.receive_count >= self._max_receive_count:
                self._messages.remove(stored)
                if self._dead_letter_queue is not None:
                    self._dead_letter_queue._accept_dead_letter(stored, now)
                _log("message_dead_lettered", message_id=stored.message_id, receive_count=stored.receive_count)
                continue
            delay = stored.delay_override if stored.delay_override is not None else self._default_delay
            stored.visible_at = now + timedelta(seconds=delay)
        self._in_flight.clear()

    async def release(self) -> None:
        now = self._clock()
        for stored in self._in_flight.values():
            stored.delivery_id = None
            stored.visible_at = now
        self._in_flight.clear()

    def _accept_dead_letter(self, stored: StoredMessage, now: datetime) -> None:
        self._messages.append(
            StoredMessage(
                message_id=stored.message_id,
                body=stored.body,
                sent_at=now,
                visible_at=now,
                receive_count=stored.receive_count,
                first_received_at=stored.first_received_at,
            )
        )
