"""
RabbitMQ publisher: connection lifecycle and publish with confirm.

Lifecycle:
  DISCONNECTED -> CONNECTING (backoff) -> CONNECTED -> CHANNEL_OPEN ->
  CONFIRM_ENABLED -> QUEUE_DECLARED -> READY.
  On broker disconnect or publish error: READY -> RECONNECTING (backoff) -> CONNECTED -> ... -> READY.
  On shutdown: READY/RECONNECTING -> CLOSING (wait in-flight) -> close channel/connection -> CLOSED.
"""
import asyncio
import json
import time
from datetime import datetime, timezone
from typing import Any

import aio_pika
from aio_pika import DeliveryMode, Message
from loguru import logger

from task_api.app.constants import RejectionReason
from task_api.app.core import SERVICE_NAME
from task_api.app.infrastructure.messaging.rabbitmq.constants import PublisherState, task_queue_arguments
from task_api.app.ports.message_publisher import PublishError
from task_common.retry import RetrySchedule, retry_async


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class RabbitMQPublisher:
    """
    Publishes persistent task messages to the default exchange, routed to the task queue.
    With publisher confirms a broker nack (queue full: x-overflow=reject-publish) surfaces
    as PublishError("queue_rejected") and does not trigger a reconnect.
    """

    def __init__(self, settings: Any) -> None:
        self._settings = settings
        self._state = PublisherState.DISCONNECTED
        self._connection: aio_pika.abc.AbstractRobustConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task | None = None
        self._closing = False
        self._loop: asyncio.AbstractEventLoop | None = None

    def _on_connection_closed(self, *args: Any, **kwargs: Any) -> None:
        if self._closing:
            return
        self._set_state(PublisherState.RECONNECTING)
        _log("broker_disconnect_detected")
        if (self._reconnect_task is None or self._reconnect_task.done()) and self._loop:
            self._loop.call_soon_threadsafe(self._schedule_reconnect)

    @property
    def state(self) -> PublisherState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state == PublisherState.READY

    def _set_state(self, state: PublisherState) -> None:
        self._state = state

    def _broker_url(self) -> str:
        s = self._settings
        return f"amqp://{s.broker_user}:{s.broker_password}@{s.broker_host}:{s.broker_port}/"

    async def _open_connection(self) -> None:
        self._connection = await aio_pika.connect_robust(self._broker_url())
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        conn = getattr(self._connection, "connection", self._connection)
        if callable(getattr(conn, "add_close_callback", None)):
            conn.add_close_callback(self._on_connection_closed)

    def _on_connect_retry(self, attempt: int, delay: float, exc: BaseException) -> None:
        logger.warning("rmq connect attempt {} failed, retrying in {}s: {}", attempt, delay, exc)

    async def connect(self) -> None:
        self._set_state(PublisherState.CONNECTING)
        try:
            await retry_async(
                self._open_connection,
                RetrySchedule.from_settings(self._settings),
                on_retry=self._on_connect_retry,
            )
        except Exception:
            _log("rmq_connect_failed", attempts=self._settings.max_connection_attempts)
            self._set_state(PublisherState.DISCONNECTED)
            raise
        self._set_state(PublisherState.CONNECTED)
        _log("rmq_connected")
        await self._open_channel_and_declare()

    async def _open_channel_and_declare(self) -> None:
        if not self._connection:
            return
        try:
            self._set_state(PublisherState.CHANNEL_OPEN)
            self._channel = await self._connection.channel(publisher_confirms=True)
            self._set_state(PublisherState.CONFIRM_ENABLED)
            await self._channel.declare_queue(self._settings.dead_letter_queue_name, durable=True)
            await self._channel.declare_queue(
                self._settings.queue_name,
                durable=True,
                arguments=task_queue_arguments(
                    self._settings.queue_max_length,
                    self._settings.dead_letter_queue_name,
                ),
            )
            self._set_state(PublisherState.QUEUE_DECLARED)
            self._set_state(PublisherState.READY)
        except aio_pika.exceptions.ChannelPreconditionFailed as e:
            logger.exception("Queue declaration mismatch: {}", e)
            raise
        except Exception:
            self._set_state(PublisherState.RECONNECTING)
            await self._close_channel_and_connection()
            raise

    async def _close_channel_and_connection(self) -> None:
        if self._channel:
            try:
                await self._channel.close()
            except Exception as e:
                logger.warning("channel close failed: {}", e)
            self._channel = None
        if self._connection:
            try:
                await self._connection.close()
            except Exception as e:
                logger.warning("connection close failed: {}", e)
            self._connection = None

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def publish(
        self,
        message: dict[str, Any],
        *,
        message_id: str,
        headers: dict[str, Any] | None = None,
    ) -> None:
        if self._state != PublisherState.READY:
            _log("publish_rejected", reason=RejectionReason.PUBLISHER_NOT_READY)
            raise PublishError(RejectionReason.PUBLISHER_NOT_READY)
        start = time.perf_counter()
        async with self._lock:
            if not self._channel:
                _log("publish_failed", reason=RejectionReason.CONNECTION_LOST)
                raise PublishError(RejectionReason.CONNECTION_LOST)
            msg = Message(
                json.dumps(message).encode(),
                delivery_mode=DeliveryMode.PERSISTENT,
                content_type="application/json",
                message_id=message_id,
                timestamp=datetime.now(timezone.utc),
                headers=headers or {},
            )
            try:
                await self._channel.default_exchange.publish(
                    msg,
                    routing_key=self._settings.queue_name,
                    timeout=self._settings.publish_timeout_seconds,
                )
            except aio_pika.exceptions.DeliveryError as e:
                _log("publish_failed", reason=RejectionReason.QUEUE_REJECTED, message_id=message_id)
                raise PublishError(RejectionReason.QUEUE_REJECTED, str(e)) from e
            except Exception as e:
                _log("publish_failed", reason=RejectionReason.CONNECTION_LOST, message_id=message_id)
                self._set_state(PublisherState.RECONNECTING)
                self._schedule_reconnect()
                raise PublishError(RejectionReason.CONNECTION_LOST, str(e)) from e
        latency_ms = (time.perf_counter() - start) * 1000
        _log(
            "publish_success",
            message_id=message_id,
            task_id=message.get("taskId", ""),
            latency_ms=round(latency_ms, 2),
        )

    async def _reconnect_once(self) -> bool:
        if self._closing:
            return False
        async with self._lock:
            await self._close_channel_and_connection()
            await self._open_connection()
            self._set_state(PublisherState.CONNECTED)
            await self._open_channel_and_declare()
        return True

    async def _reconnect_loop(self) -> None:
        self._set_state(PublisherState.RECONNECTING)

        def _on_retry(attempt: int, delay: float, exc: BaseException) -> None:
            logger.warning("reconnect attempt {} failed, retrying in {}s: {}", attempt, delay, exc)

        try:
            reconnected = await retry_async(
                self._reconnect_once,
                RetrySchedule.from_settings(self._settings),
                on_retry=_on_retry,
            )
        except Exception as e:
            logger.warning("reconnect gave up: {}", e)
            self._set_state(PublisherState.DISCONNECTED)
            return
        if reconnected:
            _log("rmq_reconnected")

    async def close(self) -> None:
        self._closing = True
        self._set_state(PublisherState.CLOSING)
        _log("publisher_shutdown")
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        async with self._lock:
            await self._close_channel_and_connection()
        self._set_state(PublisherState.CLOSED)
