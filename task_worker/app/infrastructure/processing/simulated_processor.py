"""Demonstration processor: random duration, random failure."""
from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable

from loguru import logger

from task_worker.app.domain.models import TaskMessage
from task_worker.app.ports.task_processor import TaskProcessingError


class SimulatedTaskProcessor:
    def __init__(
        self,
        *,
        failure_rate: float = 0.3,
        min_duration_seconds: float = 1.0,
        max_duration_seconds: float = 3.0,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not 0.0 <= failure_rate <= 1.0:
            raise ValueError("failure_rate must be within [0, 1]")
        self._failure_rate = failure_rate
        self._min_duration = min_duration_seconds
        self._max_duration = max_duration_seconds
        self._rng = rng or random.Random()
        self._sleep = sleep

    async def process(self, task: TaskMessage, *, attempt: int) -> None:
        duration = self._rng.uniform(self._min_duration, self._max_duration)
        logger.debug("simulating task {} for {:.2f}s (attempt {})", task.task_id, duration, attempt)
        await self._sleep(duration)
        if self._rng.random() < self._failure_rate:
            raise TaskProcessingError(f"simulated failure for task {task.task_id} (attempt {attempt})")

    async def close(self) -> None:
        return
