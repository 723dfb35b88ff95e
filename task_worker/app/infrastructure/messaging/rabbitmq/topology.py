"""RabbitMQ queue names, declaration arguments and consumer states.

The API declares the task queue with the same arguments; a mismatch makes the broker
refuse the second declaration (PRECONDITION_FAILED).
"""
from __future__ import annotations

from enum import Enum
from typing import Any

# Adapter-owned: deliveries of earlier copies, stamped when a delivery is republished.
REDELIVERY_COUNT_HEADER = "x-redelivery-count"
FIRST_RECEIVED_AT_HEADER = "x-first-received-at"
# Broker-owned: earlier deliveries of this message from a quorum queue.
DELIVERY_COUNT_HEADER = "x-delivery-count"


class ConsumerState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    CHANNEL_OPEN = "CHANNEL_OPEN"
    QUEUE_DECLARED = "QUEUE_DECLARED"
    READY = "READY"
    RECONNECTING = "RECONNECTING"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


def task_queue_arguments(queue_max_length: int, dead_letter_queue_name: str) -> dict[str, Any]:
    return {
        "x-queue-type": "quorum",
        "x-max-length": queue_max_length,
        "x-overflow": "reject-publish",
        "x-dead-letter-exchange": "",
        "x-dead-letter-routing-key": dead_letter_queue_name,
    }


def delay_queue_name(queue_name: str, seconds: int) -> str:
    return f"{queue_name}.delay.{int(seconds)}s"


def delay_queue_arguments(queue_name: str, seconds: int) -> dict[str, Any]:
    """Holding queue: messages expire after `seconds` and are dead-lettered back to queue_name."""
    return {
        "x-message-ttl": int(seconds) * 1000,
        "x-dead-letter-exchange": "",
        "x-dead-letter-routing-key": queue_name,
    }
