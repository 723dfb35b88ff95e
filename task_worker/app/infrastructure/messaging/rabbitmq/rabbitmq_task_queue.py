"""
RabbitMQ TaskQueue: pull-based batches with per-delivery redelivery delay.

Topology (declared on connect):
  <queue>                 durable quorum queue, dead-letters rejected messages to <dead_letter_queue>
  <dead_letter_queue>     durable
  <queue>.delay.<N>s      durable, message TTL N seconds, dead-letters back to <queue>
                          (declared lazily, one per distinct delay)

Redelivery delay: the delivery is republished into the matching delay queue and the
received delivery is acked on settle. A failed delivery without an override goes through the
default delay queue. Once attempt_count reaches max_receive_count the delivery is
rejected without requeue and the broker routes it to the dead-letter queue.

Attempt count for a delivery:
  1 + x-redelivery-count (earlier deliveries of previous copies, stamped on republish)
    + x-delivery-count (earlier deliveries of this copy: nack/requeue, release, a crashed
      consumer; supplied by the quorum queue)
    + x-death entries with reason "rejected" or "delivery_limit" (the delivery that sent
      it to the dead-letter queue)

A republish folds x-delivery-count into x-redelivery-count, so the count never goes back.

Lifecycle:
  DISCONNECTED -> CONNECTING (backoff) -> CONNECTED -> CHANNEL_OPEN -> QUEUE_DECLARED -> READY.
  A closed channel found by receive_batch triggers RECONNECTING (backoff) -> ... -> READY;
  deliveries outstanding on the lost channel are redelivered by the broker.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from loguru import logger

from task_common.retry import RetrySchedule, retry_async
from task_worker.app.config.settings import Settings
from task_worker.app.core import SERVICE_NAME
from task_worker.app.domain.models import BatchReport, DeliveredMessage
from task_worker.app.infrastructure.messaging.rabbitmq.topology import (
    DELIVERY_COUNT_HEADER,
    FIRST_RECEIVED_AT_HEADER,
    REDELIVERY_COUNT_HEADER,
    ConsumerState,
    delay_queue_arguments,
    delay_queue_name,
    task_queue_arguments,
)
from task_worker.app.ports.task_queue import QueueOperationError, QueueTransientError

GET_TIMEOUT_SECONDS = 5.0
PUBLISH_TIMEOUT_SECONDS = 10.0
DEAD_LETTER_REASONS = ("rejected", "delivery_limit")

_TRANSIENT_ERRORS = (aio_pika.exceptions.AMQPError, ConnectionError, asyncio.TimeoutError)


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _as_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if value in (None, b"", ""):
        return None
    try:
        parsed = datetime.fromisoformat(_as_str(value))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def attempt_count_from_headers(headers: dict[str, Any] | None) -> int:
    headers = headers or {}
    attempts = 1 + _as_int(headers.get(REDELIVERY_COUNT_HEADER, 0))
    for death in headers.get("x-death") or []:
        if not isinstance(death, dict):
            continue
        if _as_str(death.get("reason", "")) in DEAD_LETTER_REASONS:
            attempts += _as_int(death.get("count", 1))
    attempts += _as_int(headers.get(DELIVERY_COUNT_HEADER, 0))
    return attempts


@dataclass
class _Outstanding:
    raw: AbstractIncomingMessage
    delivered: DeliveredMessage
    redelivery_scheduled: bool = False


class RabbitMQTaskQueue:
    """TaskQueue implementation over one source queue."""

    def __init__(
        self,
        settings: Settings,
        *,
        source_queue: str | None = None,
        dead_letter_queue: str | None = None,
    ) -> None:
        self._settings = settings
        self._source_queue = source_queue or settings.queue_name
        # Only the task queue dead-letters; the dead-letter queue itself has no further route.
        if dead_letter_queue is None and self._source_queue == settings.queue_name:
            dead_letter_queue = settings.dead_letter_queue_name
        self._dead_letter_queue = dead_letter_queue
        self._state = ConsumerState.DISCONNECTED
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._queue: AbstractQueue | None = None
        self._declared_delay_queues: set[str] = set()
        self._outstanding: dict[str, _Outstanding] = {}
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ConsumerState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state == ConsumerState.READY

    def _set_state(self, state: ConsumerState) -> None:
        self._state = state

    def _build_amqp_url(self) -> str:
        return (
            f"amqp://{self._settings.broker_user}:{self._settings.broker_password}"
            f"@{self._settings.broker_host}:{self._settings.broker_port}/"
        )

    def _on_connect_retry(self, attempt: int, delay: float, exc: BaseException) -> None:
        logger.warning("rmq connect attempt {} failed, retrying in {}s: {}", attempt, delay, exc)

    async def connect(self) -> None:
        self._set_state(ConsumerState.CONNECTING)
        _log("rmq_connecting", queue=self._source_queue)
        url = self._build_amqp_url()
        try:
            self._connection = await retry_async(
                lambda: aio_pika.connect_robust(url),
                RetrySchedule.from_settings(self._settings),
                on_retry=self._on_connect_retry,
            )
        except Exception:
            _log("rmq_connect_failed", attempts=self._settings.max_connection_attempts)
            self._set_state(ConsumerState.DISCONNECTED)
            raise
        self._set_state(ConsumerState.CONNECTED)
        _log("rmq_connected")
        await self._open_channel_and_declare()

    async def _open_channel_and_declare(self) -> None:
        if not self._connection:
            return
        self._set_state(ConsumerState.CHANNEL_OPEN)
        self._channel = await self._connection.channel(publisher_confirms=True)
        await self._channel.set_qos(prefetch_count=self._settings.batch_size)
        await self._channel.declare_queue(self._settings.dead_letter_queue_name, durable=True)
        task_queue = await self._channel.declare_queue(
            self._settings.queue_name,
            durable=True,
            arguments=task_queue_arguments(self._settings.queue_max_length, self._settings.dead_letter_queue_name),
        )
        if self._source_queue == self._settings.queue_name:
            self._queue = task_queue
        else:
            self._queue = await self._channel.declare_queue(self._source_queue, durable=True)
        self._declared_delay_queues.clear()
        self._set_state(ConsumerState.QUEUE_DECLARED)
        self._set_state(ConsumerState.READY)

    async def _reconnect(self) -> None:
        self._set_state(ConsumerState.RECONNECTING)
        _log("rmq_reconnecting", queue=self._source_queue)
        self._outstanding.clear()
        await self._close_channel_and_connection()
        await self.connect()

    async def receive_batch(self, max_messages: int) -> list[DeliveredMessage]:
        if self._outstanding:
            raise QueueOperationError("previous batch has not been settled")
        if self._channel is None or self._channel.is_closed or self._queue is None:
            await self._reconnect()
        assert self._queue is not None

        batch: list[DeliveredMessage] = []
        received_at = datetime.now(timezone.utc)
        for _ in range(max_messages):
            try:
                raw = await self._queue.get(no_ack=False, fail=False, timeout=GET_TIMEOUT_SECONDS)
            except _TRANSIENT_ERRORS as exc:
                if batch:
                    logger.warning("rmq get failed mid-batch, returning partial batch: {}", exc)
                    break
                raise QueueTransientError(f"rmq get failed: {exc}") from exc
            if raw is None:
                break
            delivered = self._to_delivered(raw, received_at)
            self._outstanding[delivered.delivery_id] = _Outstanding(raw=raw, delivered=delivered)
            batch.append(delivered)
        return batch

    def _to_delivered(self, raw: AbstractIncomingMessage, received_at: datetime) -> DeliveredMessage:
        headers = dict(raw.headers or {})
        return DeliveredMessage(
            delivery_id=str(raw.delivery_tag),
            body=bytes(raw.body),
            attempt_count=attempt_count_from_headers(headers),
            message_id=raw.message_id,
            first_received_at=_parse_datetime(headers.get(FIRST_RECEIVED_AT_HEADER)) or received_at,
            last_sent_at=_parse_datetime(raw.timestamp),
        )

    async def override_redelivery_delay(self, delivery_id: str, seconds: int) -> None:
        outstanding = self._outstanding.get(delivery_id)
        if outstanding is None:
            raise QueueOperationError(f"unknown delivery: {delivery_id}")
        if outstanding.redelivery_scheduled:
            raise QueueOperationError(f"redelivery already scheduled for delivery {delivery_id}")
        if seconds < 0 or seconds > self._settings.backoff_max_delay_seconds:
            raise QueueOperationError(f"redelivery delay out of range: {seconds}")
        await self._republish_delayed(outstanding, seconds)
        outstanding.redelivery_scheduled = True

    async def _republish_delayed(self, outstanding: _Outstanding, seconds: int) -> None:
        if self._channel is None or self._channel.is_closed:
            raise QueueTransientError("channel is closed")
        raw, delivered = outstanding.raw, outstanding.delivered
        target = delay_queue_name(self._source_queue, seconds)
        headers = dict(raw.headers or {})
        headers[REDELIVERY_COUNT_HEADER] = (
            _as_int(headers.get(REDELIVERY_COUNT_HEADER, 0))
            + _as_int(headers.pop(DELIVERY_COUNT_HEADER, 0))
            + 1
        )
        if delivered.first_received_at is not None:
            headers[FIRST_RECEIVED_AT_HEADER] = delivered.first_received_at.isoformat()
        message = Message(
            body=delivered.body,
            headers=headers,
            content_type=raw.content_type or "application/json",
            message_id=raw.message_id,
            timestamp=datetime.now(timezone.utc),
            delivery_mode=DeliveryMode.PERSISTENT,
        )
        try:
            async with self._lock:
                if target not in self._declared_delay_queues:
                    await self._channel.declare_queue(
                        target,
                        durable=True,
                        arguments=delay_queue_arguments(self._source_queue, seconds),
                    )
                    self._declared_delay_queues.add(target)
                await self._channel.default_exchange.publish(
                    message,
                    routing_key=target,
                    timeout=PUBLISH_TIMEOUT_SECONDS,
                )
        except _TRANSIENT_ERRORS as exc:
            raise QueueTransientError(f"delay republish to {target} failed: {exc}") from exc
        _log("redelivery_scheduled", delivery_id=delivered.delivery_id, delay_seconds=seconds, queue=target)

    async def settle(self, report: BatchReport) -> None:
        failed = set(report.failed_delivery_ids)
        unknown = failed - set(self._outstanding)
        if unknown:
            logger.warning("settle: ignoring unknown delivery ids {}", sorted(unknown))

        outstanding, self._outstanding = self._outstanding, {}
        for delivery_id, item in outstanding.items():
            try:
                if delivery_id not in failed or item.redelivery_scheduled:
                    await item.raw.ack()
                    continue
                await self._settle_failed(item)
            except Exception as exc:
                logger.warning("settle failed for delivery {}, broker will redeliver: {}", delivery_id, exc)

    async def _settle_failed(self, item: _Outstanding) -> None:
        delivered = item.delivered
        if self._dead_letter_queue is not None and delivered.attempt_count >= self._settings.max_receive_count:
            await item.raw.reject(requeue=False)
            _log(
                "message_dead_lettered",
                delivery_id=delivered.delivery_id,
                message_id=delivered.message_id,
                attempt_count=delivered.attempt_count,
                dead_letter_queue=self._dead_letter_queue,
            )
            return
        try:
            await self._republish_delayed(item, self._settings.default_redelivery_delay_seconds)
        except QueueOperationError as exc:
            logger.warning("default-delay republish failed for delivery {}, requeueing: {}", delivered.delivery_id, exc)
            await item.raw.nack(requeue=True)
            return
        await item.raw.ack()

    async def release(self) -> None:
        outstanding, self._outstanding = self._outstanding, {}
        for delivery_id, item in outstanding.items():
            try:
                if item.redelivery_scheduled:
                    await item.raw.ack()
                else:
                    await item.raw.nack(requeue=True)
            except Exception as exc:
                logger.warning("release failed for delivery {}: {}", delivery_id, exc)

    async def _close_channel_and_connection(self) -> None:
        self._queue = None
        if self._channel:
            try:
                await self._channel.close()
            except Exception as e:
                logger.warning("channel close failed (continuing to close connection): {}", e)
            self._channel = None
        if self._connection:
            try:
                await self._connection.close()
            except Exception as e:
                logger.warning("connection close failed: {}", e)
            self._connection = None

    async def close(self) -> None:
        self._set_state(ConsumerState.CLOSING)
        _log("consumer_shutdown", queue=self._source_queue)
        if self._outstanding:
            await self.release()
        await self._close_channel_and_connection()
        self._set_state(ConsumerState.CLOSED)
