"""Domain models."""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from task_worker.app.constants import OutcomeDecision


class TaskDecodeError(ValueError):
    """Raised when a delivery body is not a valid task message."""


@dataclass(frozen=True)
class TaskMessage:
    """Decoded message body as enqueued by the submission API."""

    task_id: str
    payload: Any
    submitted_at: datetime | None = None

    @staticmethod
    def from_body(raw_body: bytes) -> "TaskMessage":
        try:
            body = json.loads(raw_body.decode())
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TaskDecodeError(f"message body is not valid JSON: {exc}") from exc
        if not isinstance(body, dict):
            raise TaskDecodeError("message body must be a JSON object")

        task_id = body.get("taskId")
        if not isinstance(task_id, str) or not task_id.strip():
            raise TaskDecodeError("message missing required field: taskId")
        if "payload" not in body:
            raise TaskDecodeError("message missing required field: payload")

        submitted_at = None
        raw_submitted = body.get("submittedAt")
        if raw_submitted is not None:
            try:
                submitted_at = datetime.fromisoformat(str(raw_submitted).replace("Z", "+00:00"))
            except ValueError as exc:
                raise TaskDecodeError(f"invalid submittedAt: {raw_submitted!r}") from exc
        return TaskMessage(task_id=task_id, payload=body["payload"], submitted_at=submitted_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "payload": self.payload,
            "submittedAt": self.submitted_at.isoformat() if self.submitted_at else None,
        }


@dataclass(frozen=True)
class DeliveredMessage:
    """One delivery of a message, as handed out by a TaskQueue.

    attempt_count is owned by the queue (1 on first delivery) and is the only attempt
    counter the worker uses.
    """

    delivery_id: str
    body: bytes
    attempt_count: int
    message_id: str | None = None
    first_received_at: datetime | None = None
    last_sent_at: datetime | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.delivery_id, str) or not self.delivery_id:
            raise TypeError("delivery_id must be a non-empty str")
        if not isinstance(self.body, (bytes, bytearray)):
            raise TypeError("body must be bytes")
        if not isinstance(self.attempt_count, int) or self.attempt_count < 1:
            raise ValueError("attempt_count must be an int >= 1")


@dataclass(frozen=True)
class BatchReport:
    """Deliveries that were not fully processed; every other delivery is consumed."""

    failed_delivery_ids: tuple[str, ...] = ()

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_delivery_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batchItemFailures": [
                {"itemIdentifier": delivery_id} for delivery_id in self.failed_delivery_ids
            ]
        }


@dataclass(frozen=True)
class OutcomeEvent:
    """Result of evaluating one delivery."""

    delivery_id: str
    attempt_count: int
    decision: str
    task_id: str | None = None
    delay_seconds: int | None = None
    error: str | None = None
    age_seconds: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.decision == OutcomeDecision.SUCCEEDED
