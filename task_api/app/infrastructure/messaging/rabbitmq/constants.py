"""Publisher lifecycle states and the shared task queue declaration."""
from __future__ import annotations

from enum import Enum
from typing import Any


class PublisherState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    CHANNEL_OPEN = "CHANNEL_OPEN"
    CONFIRM_ENABLED = "CONFIRM_ENABLED"
    QUEUE_DECLARED = "QUEUE_DECLARED"
    READY = "READY"
    RECONNECTING = "RECONNECTING"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


def task_queue_arguments(queue_max_length: int, dead_letter_queue_name: str) -> dict[str, Any]:
    """Must stay identical to the worker's declaration or the broker refuses one of them."""
    return {
        "x-queue-type": "quorum",
        "x-max-length": queue_max_length,
        "x-overflow": "reject-publish",
        "x-dead-letter-exchange": "",
        "x-dead-letter-routing-key": dead_letter_queue_name,
    }
