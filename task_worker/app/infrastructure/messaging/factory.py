"""Task queue factory: selects implementation from config. Only place that imports concrete queues."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from task_worker.app.config.settings import Settings
from task_worker.app.constants import WorkerRole
from task_worker.app.infrastructure.messaging.inmemory.in_memory_task_queue import InMemoryTaskQueue
from task_worker.app.infrastructure.messaging.rabbitmq.rabbitmq_task_queue import RabbitMQTaskQueue
from task_worker.app.ports.task_queue import TaskQueue


def create_in_memory_queues(
    settings: Settings,
    *,
    clock: Callable[[], datetime] | None = None,
) -> tuple[InMemoryTaskQueue, InMemoryTaskQueue]:
    """Task queue wired to its dead-letter queue, both in process memory."""
    extra: dict[str, Any] = {"clock": clock} if clock is not None else {}
    dead_letter = InMemoryTaskQueue(
        name=settings.dead_letter_queue_name,
        default_redelivery_delay_seconds=settings.default_redelivery_delay_seconds,
        max_redelivery_delay_seconds=settings.backoff_max_delay_seconds,
        **extra,
    )
    tasks = InMemoryTaskQueue(
        name=settings.queue_name,
        max_receive_count=settings.max_receive_count,
        dead_letter_queue=dead_letter,
        default_redelivery_delay_seconds=settings.default_redelivery_delay_seconds,
        max_redelivery_delay_seconds=settings.backoff_max_delay_seconds,
        **extra,
    )
    return tasks, dead_letter


def create_task_queue(settings: Settings, role: str = WorkerRole.PROCESSOR) -> TaskQueue:
    backend = settings.queue_backend.strip().lower()
    if role not in (WorkerRole.PROCESSOR, WorkerRole.DEAD_LETTER_MONITOR):
        raise ValueError(f"Unsupported worker role: {role}")

    if backend == "rabbitmq":
        if role == WorkerRole.DEAD_LETTER_MONITOR:
            return RabbitMQTaskQueue(settings, source_queue=settings.dead_letter_queue_name)
        return RabbitMQTaskQueue(settings)

    if backend == "inmemory":
        tasks, dead_letter = create_in_memory_queues(settings)
        return dead_letter if role == WorkerRole.DEAD_LETTER_MONITOR else tasks

    raise ValueError(f"Unsupported queue backend: {backend}")
