"""In-memory FailureRecordSink for tests and local mode."""
from __future__ import annotations

from typing import Any

from task_worker.app.domain.terminal_record import RecordingContext, TerminalFailureRecord
from task_worker.app.ports.failure_record_sink import FailureRecordError


class InMemoryFailureRecordSink:
    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []

    async def append(self, record: TerminalFailureRecord, context: RecordingContext) -> None:
        if any(existing["record_id"] == record.record_id for existing in self.records):
            raise FailureRecordError(f"duplicate record id: {record.record_id}")
        doc = record.to_dict()
        doc["invocation_id"] = context.invocation_id
        self.records.append(doc)

    async def close(self) -> None:
        return
