"""Port: side-channel receiver for per-delivery outcomes. Never part of control flow."""
from __future__ import annotations

from typing import Protocol

from task_worker.app.domain.models import OutcomeEvent


class OutcomeObserver(Protocol):
    def record(self, event: OutcomeEvent) -> None: ...
