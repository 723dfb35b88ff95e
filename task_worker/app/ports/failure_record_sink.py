"""Port: append-only storage for terminal failure records."""
from __future__ import annotations

from typing import Protocol

from task_worker.app.domain.terminal_record import RecordingContext, TerminalFailureRecord


class FailureRecordError(Exception):
    """Appending a record failed."""


class FailureRecordSink(Protocol):
    async def append(self, record: TerminalFailureRecord, context: RecordingContext) -> None: ...

    async def close(self) -> None:
        """Release resources (e.g. DB client). No-op allowed if nothing to close."""
        ...
