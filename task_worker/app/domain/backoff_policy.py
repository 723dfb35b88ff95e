"""Redelivery delay for a failed delivery.

delay(attempt) = min(ceil(growth_factor ** (attempt - 1)) * base_delay, max_delay)

With the defaults (10s, 1.5, 900s) attempts 1..10 give
10, 20, 30, 40, 60, 80, 120, 180, 260, 390 seconds; attempt 13 onwards is capped at 900.
max_delay is the longest redelivery delay the queue accepts.
"""
from __future__ import annotations

import math
from dataclasses import dataclass

DEFAULT_BASE_DELAY_SECONDS = 10
DEFAULT_GROWTH_FACTOR = 1.5
DEFAULT_MAX_DELAY_SECONDS = 900


@dataclass(frozen=True)
class BackoffPolicy:
    base_delay_seconds: int = DEFAULT_BASE_DELAY_SECONDS
    growth_factor: float = DEFAULT_GROWTH_FACTOR
    max_delay_seconds: int = DEFAULT_MAX_DELAY_SECONDS

    def __post_init__(self) -> None:
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.growth_factor < 1:
            raise ValueError("growth_factor must be >= 1")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")

    def delay(self, attempt: int) -> int:
        """Seconds to wait before the delivery that follows `attempt` (1-based)."""
        if isinstance(attempt, bool) or not isinstance(attempt, int):
            raise TypeError("attempt must be an int")
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        try:
            factor = math.ceil(self.growth_factor ** (attempt - 1))
        except OverflowError:
            return int(self.max_delay_seconds)
        return int(min(factor * self.base_delay_seconds, self.max_delay_seconds))
