"""Port: messaging publish contract. Implementations live in infrastructure."""
from __future__ import annotations

from typing import Any, Protocol


class PublishError(RuntimeError):
    """Publish did not reach the queue. `reason` is a machine-readable string."""

    def __init__(self, reason: str, detail: str | None = None) -> None:
        super().__init__(detail or reason)
        self.reason = reason


class MessagePublisher(Protocol):
    """Interface for publishing task messages."""

    async def connect(self) -> None: ...
    async def publish(
        self,
        message: dict[str, Any],
        *,
        message_id: str,
        headers: dict[str, Any] | None = None,
    ) -> None: ...
    async def close(self) -> None: ...

    @property
    def ready(self) -> bool: ...
