"""In-memory publisher for testing and local mode.

Nothing consumes these messages; the worker's in-memory queue is a separate process-local
structure.
"""
from __future__ import annotations

from typing import Any

from task_api.app.constants import RejectionReason
from task_api.app.ports.message_publisher import PublishError


class InMemoryPublisher:
    def __init__(self, *, max_length: int | None = None) -> None:
        self.messages: list[dict[str, Any]] = []
        self.message_ids: list[str] = []
        self.headers: list[dict[str, Any]] = []
        self._max_length = max_length

    async def connect(self) -> None:
        return

    @property
    def ready(self) -> bool:
        return True

    async def publish(
        self,
        message: dict[str, Any],
        *,
        message_id: str,
        headers: dict[str, Any] | None = None,
    ) -> None:
        if self._max_length is not None and len(self.messages) >= self._max_length:
            raise PublishError(RejectionReason.QUEUE_REJECTED)
        self.messages.append(message)
        self.message_ids.append(message_id)
        self.headers.append(dict(headers or {}))

    async def close(self) -> None:
        return
