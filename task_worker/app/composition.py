"""Worker composition root: build and lifecycle-manage concrete dependencies.

Composition may: import concrete classes, call factories, store interface types,
manage high-level lifecycle.
"""
from __future__ import annotations

from functools import partial
from typing import Any

from loguru import logger

from task_worker.app.application.retry_coordinator import RetryCoordinator
from task_worker.app.application.terminal_failure_recorder import TerminalFailureRecorder
from task_worker.app.config.settings import Settings
from task_worker.app.constants import WorkerRole
from task_worker.app.core import SERVICE_NAME
from task_worker.app.domain.backoff_policy import BackoffPolicy
from task_worker.app.infrastructure.messaging.factory import create_task_queue
from task_worker.app.infrastructure.persistence.factory import create_failure_record_sink
from task_worker.app.infrastructure.processing.factory import create_task_processor
from task_worker.app.messaging.consumer import BatchConsumer, BatchHandler
from task_worker.app.ports.failure_record_sink import FailureRecordSink
from task_worker.app.ports.task_processor import TaskProcessor
from task_worker.app.ports.task_queue import TaskQueue


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class WorkerDependencies:
    """Holds wired worker dependencies for one role and their lifecycle."""

    def __init__(
        self,
        *,
        settings: Settings,
        role: str = WorkerRole.PROCESSOR,
        queue: TaskQueue | None = None,
        processor: TaskProcessor | None = None,
        sink: FailureRecordSink | None = None,
    ) -> None:
        if role not in (WorkerRole.PROCESSOR, WorkerRole.DEAD_LETTER_MONITOR):
            raise ValueError(f"Unsupported worker role: {role}")
        self._settings = settings
        self._role = role
        self._queue = queue
        self._processor = processor
        self._sink = sink
        self._handler: BatchHandler | None = None
        self._consumer: BatchConsumer | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def role(self) -> str:
        return self._role

    @property
    def queue(self) -> TaskQueue:
        if self._queue is None:
            raise RuntimeError("queue is not initialized")
        return self._queue

    @property
    def consumer(self) -> BatchConsumer:
        if self._consumer is None:
            raise RuntimeError("consumer is not initialized")
        return self._consumer

    async def connect(self) -> None:
        settings = self._settings
        if self._queue is None:
            self._queue = create_task_queue(settings, self._role)
        await self._queue.connect()

        if self._role == WorkerRole.PROCESSOR:
            if self._processor is None:
                self._processor = create_task_processor(settings)
            coordinator = RetryCoordinator(
                self._processor,
                self._queue,
                BackoffPolicy(
                    base_delay_seconds=settings.backoff_base_delay_seconds,
                    growth_factor=settings.backoff_growth_factor,
                    max_delay_seconds=settings.backoff_max_delay_seconds,
                ),
                settings.max_attempts,
                processing_timeout_seconds=settings.processing_timeout_seconds,
                concurrency=settings.processing_concurrency,
                override_max_attempts=settings.override_max_attempts,
                override_initial_backoff_seconds=settings.override_initial_backoff_seconds,
                override_max_backoff_seconds=settings.override_max_backoff_seconds,
            )
            self._handler = partial(coordinator.process_batch, deadline_seconds=settings.batch_deadline_seconds)
        else:
            if self._sink is None:
                self._sink = await create_failure_record_sink(settings)
            self._handler = TerminalFailureRecorder(self._sink).record_batch

        self._consumer = BatchConsumer(
            self._queue,
            self._handler,
            batch_size=settings.batch_size,
            poll_interval_seconds=settings.poll_interval_seconds,
        )
        _log("worker_dependencies_ready", role=self._role)

    async def close(self) -> None:
        if self._queue is not None:
            try:
                await self._queue.close()
            except Exception as exc:
                logger.warning("queue close failed: {}", exc)
            self._queue = None

        if self._processor is not None:
            try:
                await self._processor.close()
            except Exception as exc:
                logger.warning("processor close failed: {}", exc)
            self._processor = None

        if self._sink is not None:
            try:
                await self._sink.close()
            except Exception as exc:
                logger.warning("failure record sink close failed: {}", exc)
            self._sink = None

        self._handler = None
        self._consumer = None


def create_worker_dependencies(
    settings: Settings | None = None,
    role: str = WorkerRole.PROCESSOR,
) -> WorkerDependencies:
    return WorkerDependencies(settings=settings or Settings(), role=role)
