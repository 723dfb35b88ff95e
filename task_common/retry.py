"""Bounded retry for infrastructure calls (broker and database connects, queue operations).

Used by both services. The first attempt runs immediately; attempt n > 1 waits
`min(initial_delay * multiplier^(n-2), max_delay)` first. The last error is re-raised
once `max_attempts` is spent.

Per-message redelivery delays are a different thing and live in
`task_worker.app.domain.backoff_policy`.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, TypeVar

T = TypeVar("T")

RetryHook = Callable[[int, float, BaseException], None]


@dataclass(frozen=True)
class RetrySchedule:
    initial_delay: float
    max_delay: float
    multiplier: float
    max_attempts: int

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be >= 0")
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be >= 1, got {self.multiplier}")

    @classmethod
    def from_settings(cls, settings: Any) -> "RetrySchedule":
        """Connection schedule from the INITIAL/MAX_BACKOFF_SECONDS, BACKOFF_MULTIPLIER and
        MAX_CONNECTION_ATTEMPTS fields both services' settings carry."""
        return cls(
            initial_delay=settings.initial_backoff_seconds,
            max_delay=settings.max_backoff_seconds,
            multiplier=settings.backoff_multiplier,
            max_attempts=settings.max_connection_attempts,
        )

    def delays(self) -> Iterator[float]:
        """Pause before each attempt, first one included (always 0)."""
        yield 0.0
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_delay)
            delay *= self.multiplier


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    schedule: RetrySchedule,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_retry: RetryHook | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Await `operation()` until it returns, retrying errors listed in `retry_on`.

    `on_retry(attempt, next_delay, exc)` is called after each failed attempt that will be
    retried. Errors outside `retry_on` propagate at once.
    """
    delays = list(schedule.delays())
    for attempt, delay in enumerate(delays, start=1):
        if delay > 0:
            await sleep(delay)
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= schedule.max_attempts:
                raise
            if on_retry is not None:
                on_retry(attempt, delays[attempt], exc)
    raise AssertionError("unreachable: schedule has at least one attempt")
