"""
Accepts plain Python types and MessagePublisher abstraction; returns an outcome.
Router translates outcome to HTTP status codes and content.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from task_api.app.constants import UNAVAILABLE_REASONS, RejectionReason
from task_api.app.ports.message_publisher import MessagePublisher, PublishError


def _isoformat_z(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class EnqueueTaskOutcome:
    """Result of enqueue_task.
    success=True => message_id and submitted_at set.
    success=False => error set to a reason string; message_id may be set when publish raised.
    """
    success: bool
    task_id: str
    message_id: str | None = None
    submitted_at: str | None = None
    error: str | None = None

    @property
    def is_unavailable(self) -> bool:
        """True for failures a client should retry later (maps to 503)."""
        return self.error in UNAVAILABLE_REASONS


async def enqueue_task(task_id: str, payload: Any, publisher: MessagePublisher) -> EnqueueTaskOutcome:
    """
    Stamp submittedAt and enqueue {taskId, payload, submittedAt}.
    Caller must ensure publisher is not None (router returns 503 when missing).
    Unexpected exceptions propagate; the router turns them into a 500.
    """
    if not publisher.ready:
        return EnqueueTaskOutcome(success=False, task_id=task_id, error=RejectionReason.PUBLISHER_NOT_READY)

    message_id = str(uuid.uuid4())
    submitted_at = _isoformat_z(datetime.now(tz=timezone.utc))
    message: dict[str, Any] = {
        "taskId": task_id,
        "payload": payload,
        "submittedAt": submitted_at,
    }

    try:
        await publisher.publish(message, message_id=message_id, headers={"taskId": task_id})
    except PublishError as e:
        return EnqueueTaskOutcome(success=False, task_id=task_id, message_id=message_id, error=e.reason)
    return EnqueueTaskOutcome(success=True, task_id=task_id, message_id=message_id, submitted_at=submitted_at)
