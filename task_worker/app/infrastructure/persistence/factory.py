"""Sink factory: selects and assembles persistence adapters."""
from __future__ import annotations

from task_worker.app.config.settings import Settings
from task_worker.app.infrastructure.persistence.inmemory.in_memory_failure_record_sink import (
    InMemoryFailureRecordSink,
)
from task_worker.app.infrastructure.persistence.mongo.connection import open_failure_record_sink
from task_worker.app.ports.failure_record_sink import FailureRecordSink


async def create_failure_record_sink(settings: Settings) -> FailureRecordSink:
    """Select sink adapter from configuration and return port type."""
    backend = settings.repository_backend.strip().lower()

    if backend == "mongo":
        return await open_failure_record_sink(settings)
    if backend == "inmemory":
        return InMemoryFailureRecordSink()
    raise ValueError(f"Unsupported repository backend: {backend}")
