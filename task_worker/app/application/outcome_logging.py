"""Default OutcomeObserver: one structured log line per delivery outcome."""
from __future__ import annotations

from typing import Any

from loguru import logger

from task_worker.app.core import SERVICE_NAME
from task_worker.app.domain.models import OutcomeEvent


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class LoguruOutcomeObserver:
    def record(self, event: OutcomeEvent) -> None:
        _log(
            "message_outcome",
            delivery_id=event.delivery_id,
            task_id=event.task_id,
            attempt_number=event.attempt_count,
            decision=event.decision,
            delay_seconds=event.delay_seconds,
            age_seconds=event.age_seconds,
            error=event.error,
        )
