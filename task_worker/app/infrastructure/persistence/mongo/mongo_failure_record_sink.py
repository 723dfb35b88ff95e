"""MongoDB implementation of FailureRecordSink (insert-only)."""
from __future__ import annotations

import inspect
from typing import Any

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo.errors import PyMongoError

from task_worker.app.domain.terminal_record import RecordingContext, TerminalFailureRecord
from task_worker.app.ports.failure_record_sink import FailureRecordError


class MongoFailureRecordSink:
    """Each record is one insert; records are never updated or deleted by the worker."""

    def __init__(self, collection: AsyncIOMotorCollection, *, client: Any | None = None) -> None:
        self._collection = collection
        self._client = client

    async def ensure_indexes(self) -> None:
        """Infrastructure bootstrap: create indexes. Not part of the port."""
        await self._collection.create_index("record_id", unique=True, name="uq_terminal_record_id")
        await self._collection.create_index("task_id", name="idx_terminal_task_id")
        await self._collection.create_index("recorded_at", name="idx_terminal_recorded_at")

    async def append(self, record: TerminalFailureRecord, context: RecordingContext) -> None:
        doc = record.to_dict()
        doc["invocation_id"] = context.invocation_id
        try:
            await self._collection.insert_one(doc)
        except PyMongoError as exc:
            raise FailureRecordError(f"insert failed for record {record.record_id}: {exc}") from exc

    async def close(self) -> None:
        """Close underlying Mongo client when owned by this adapter."""
        if self._client is not None:
            res = self._client.close()
            if inspect.isawaitable(res):
                await res
