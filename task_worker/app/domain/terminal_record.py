"""Immutable diagnostic record for a message that reached the dead-letter queue."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


def new_record_id(now: datetime) -> str:
    """Millisecond timestamp prefix (sortable) plus a random uuid4 suffix."""
    millis = int(now.timestamp() * 1000)
    return f"{millis:013d}-{uuid.uuid4().hex}"


def seconds_between(start: datetime, end: datetime) -> int:
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    return max(0, int((end - start).total_seconds()))


@dataclass(frozen=True)
class RecordingContext:
    """Per-batch context threaded from the recorder into the sink.

    Created once per record_batch call; never cached on a module or class.
    """

    invocation_id: str
    stream_name: str
    started_at: datetime

    @staticmethod
    def new(prefix: str = "dead-letter-monitor", *, now: datetime | None = None) -> "RecordingContext":
        started_at = now or datetime.now(timezone.utc)
        invocation_id = uuid.uuid4().hex
        stream_name = f"{prefix}-{started_at:%Y%m%dT%H%M%S}-{invocation_id[:12]}"
        return RecordingContext(invocation_id=invocation_id, stream_name=stream_name, started_at=started_at)


@dataclass(frozen=True)
class TerminalFailureRecord:
    record_id: str
    task_id: str | None
    payload: Any
    submitted_at: datetime | None
    time_in_system_seconds: int | None
    attempt_count: int
    delivery_id: str
    recorded_at: datetime
    stream_name: str
    message_id: str | None = None
    first_received_at: datetime | None = None
    last_sent_at: datetime | None = None
    raw_body: str | None = None
    decode_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialisable dict for persistence. Transport-agnostic (used by sink adapters)."""
        doc: dict[str, Any] = {
            "record_id": self.record_id,
            "task_id": self.task_id,
            "payload": self.payload,
            "submitted_at": self.submitted_at,
            "time_in_system_seconds": self.time_in_system_seconds,
            "attempt_count": int(self.attempt_count),
            "delivery_id": self.delivery_id,
            "message_id": self.message_id,
            "first_received_at": self.first_received_at,
            "last_sent_at": self.last_sent_at,
            "recorded_at": self.recorded_at,
            "stream_name": self.stream_name,
        }
        if self.raw_body is not None:
            doc["raw_body"] = self.raw_body
        if self.decode_error is not None:
            doc["decode_error"] = self.decode_error
        return doc
