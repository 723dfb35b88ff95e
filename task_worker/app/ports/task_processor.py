"""Port: the task execution logic the coordinator invokes for each decoded message."""
from __future__ import annotations

from typing import Protocol

from task_worker.app.domain.models import TaskMessage


class TaskProcessingError(Exception):
    """Processing a task failed."""


class TaskProcessor(Protocol):
    async def process(self, task: TaskMessage, *, attempt: int) -> None:
        """Return on success; raise on failure."""
        ...

    async def close(self) -> None:
        """Release resources. No-op allowed if nothing to close."""
        ...
