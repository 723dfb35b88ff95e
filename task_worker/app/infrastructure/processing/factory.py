"""Task processor factory: builds the TaskProcessor from settings."""
from __future__ import annotations

import httpx

from task_worker.app.config.settings import Settings
from task_worker.app.infrastructure.processing.http_processor import HttpTaskProcessor
from task_worker.app.infrastructure.processing.simulated_processor import SimulatedTaskProcessor
from task_worker.app.ports.task_processor import TaskProcessor


def create_task_processor(settings: Settings) -> TaskProcessor:
    backend = settings.processor_backend.strip().lower()

    if backend == "simulated":
        return SimulatedTaskProcessor(
            failure_rate=settings.simulated_failure_rate,
            min_duration_seconds=settings.simulated_min_duration_seconds,
            max_duration_seconds=settings.simulated_max_duration_seconds,
        )

    if backend == "http":
        return HttpTaskProcessor(
            httpx.AsyncClient(),
            settings.processor_endpoint_url,
            connect_timeout_seconds=settings.processor_connect_timeout_seconds,
            read_timeout_seconds=settings.processor_read_timeout_seconds,
        )

    raise ValueError(f"Unsupported processor backend: {backend}")
