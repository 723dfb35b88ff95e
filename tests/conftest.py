from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi import FastAPI

from task_api.app.infrastructure.messaging.rabbitmq.constants import PublisherState
from task_api.app.ports.message_publisher import PublishError
from task_api.app.routers.health import health_router
from task_api.app.routers.tasks import tasks_router
from task_worker.app.config.settings import Settings as WorkerSettings
from task_worker.app.domain.models import DeliveredMessage, OutcomeEvent, TaskMessage
from task_worker.app.domain.terminal_record import RecordingContext, TerminalFailureRecord
from task_worker.app.ports.failure_record_sink import FailureRecordError
from task_worker.app.ports.task_processor import TaskProcessingError

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakePublisher:
    """Implements MessagePublisher for tests; routers depend only on .ready and .publish()."""

    def __init__(
        self,
        state: PublisherState = PublisherState.READY,
        *,
        raise_on_publish: Exception | None = None,
    ) -> None:
        self.state = state
        self.published: list[dict[str, Any]] = []
        self._raise_on_publish = raise_on_publish

    @property
    def ready(self) -> bool:
        return self.state == PublisherState.READY

    async def publish(
        self,
        message: dict[str, Any],
        *,
        message_id: str,
        headers: dict[str, Any] | None = None,
    ) -> None:
        if self._raise_on_publish is not None:
            raise self._raise_on_publish
        self.published.append({"message": message, "message_id": message_id, "headers": headers or {}})


def rejecting_publisher() -> FakePublisher:
    return FakePublisher(raise_on_publish=PublishError("queue_rejected"))


@pytest.fixture()
def test_app() -> FastAPI:
    app = FastAPI()
    app.state.publisher = FakePublisher()
    app.include_router(health_router)
    app.include_router(tasks_router)
    return app


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class ScriptedProcessor:
    """TaskProcessor whose behaviour is chosen per task id.

    behaviours maps task_id -> Exception (raised), float (sleep seconds) or "hang".
    Unlisted tasks succeed.
    """

    def __init__(self, behaviours: dict[str, Any] | None = None) -> None:
        self.behaviours = behaviours or {}
        self.calls: list[tuple[str, int]] = []
        self.active = 0
        self.max_active = 0

    async def process(self, task: TaskMessage, *, attempt: int) -> None:
        self.calls.append((task.task_id, attempt))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            behaviour = self.behaviours.get(task.task_id)
            if behaviour == "hang":
                await asyncio.Event().wait()
            elif isinstance(behaviour, (int, float)):
                await asyncio.sleep(behaviour)
            elif isinstance(behaviour, Exception):
                raise behaviour
        finally:
            self.active -= 1

    async def close(self) -> None:
        return


class AlwaysFailingProcessor:
    def __init__(self) -> None:
        self.calls = 0

    async def process(self, task: TaskMessage, *, attempt: int) -> None:
        self.calls += 1
        raise TaskProcessingError(f"cannot process {task.task_id}")

    async def close(self) -> None:
        return


class FakeTaskQueue:
    """TaskQueue stand-in for coordinator tests: records overrides, can fail them."""

    def __init__(self, override_errors: list[Exception] | None = None) -> None:
        self.overrides: list[tuple[str, int]] = []
        self.override_calls = 0
        self._override_errors = list(override_errors or [])
        self.always_fail_with: Exception | None = None

    async def override_redelivery_delay(self, delivery_id: str, seconds: int) -> None:
        self.override_calls += 1
        if self.always_fail_with is not None:
            raise self.always_fail_with
        if self._override_errors:
            raise self._override_errors.pop(0)
        self.overrides.append((delivery_id, seconds))

    async def connect(self) -> None:
        return

    async def receive_batch(self, max_messages: int) -> list[DeliveredMessage]:
        return []

    async def settle(self, report: Any) -> None:
        return

    async def release(self) -> None:
        return

    async def close(self) -> None:
        return


class RecordingObserver:
    def __init__(self) -> None:
        self.events: list[OutcomeEvent] = []

    def record(self, event: OutcomeEvent) -> None:
        self.events.append(event)

    def decisions(self) -> dict[str, str]:
        return {e.delivery_id: e.decision for e in self.events}


class ExplodingObserver:
    def record(self, event: OutcomeEvent) -> None:
        raise RuntimeError("observer down")


class FailingSink:
    def __init__(self) -> None:
        self.attempts = 0

    async def append(self, record: TerminalFailureRecord, context: RecordingContext) -> None:
        self.attempts += 1
        raise FailureRecordError("sink unavailable")

    async def close(self) -> None:
        return


def task_body(task_id: str, payload: Any = None, submitted_at: datetime | None = None) -> bytes:
    body: dict[str, Any] = {"taskId": task_id, "payload": payload}
    if submitted_at is not None:
        body["submittedAt"] = submitted_at.isoformat().replace("+00:00", "Z")
    return json.dumps(body).encode()


def delivery(
    delivery_id: str,
    task_id: str | None = None,
    *,
    attempt: int = 1,
    body: bytes | None = None,
    submitted_at: datetime | None = None,
) -> DeliveredMessage:
    return DeliveredMessage(
        delivery_id=delivery_id,
        body=body if body is not None else task_body(task_id or delivery_id, {"n": 1}, submitted_at),
        attempt_count=attempt,
        message_id=f"msg-{delivery_id}",
    )


WORKER_ENV: dict[str, Any] = {
    "BROKER_HOST": "localhost",
    "BROKER_PORT": 5672,
    "BROKER_USER": "guest",
    "BROKER_PASSWORD": "guest",
    "QUEUE_NAME": "tasks",
    "DEAD_LETTER_QUEUE_NAME": "tasks-dlq",
    "INITIAL_BACKOFF_SECONDS": 0.0,
    "MAX_BACKOFF_SECONDS": 0.0,
    "MAX_CONNECTION_ATTEMPTS": 1,
}


def make_worker_settings(**overrides: Any) -> WorkerSettings:
    """Build worker settings from env-style names, without reading the process env or .env."""
    return WorkerSettings(_env_file=None, **{**WORKER_ENV, **overrides})
