"""Batch-level validation shared by the coordinator and the dead-letter recorder."""
from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from task_worker.app.domain.models import DeliveredMessage


class MalformedBatchError(ValueError):
    """The batch itself is unusable; no per-message evaluation was attempted."""


def ensure_batch(messages: Any) -> list[DeliveredMessage]:
    if messages is None or isinstance(messages, (str, bytes, bytearray)) or not isinstance(messages, Sequence):
        raise MalformedBatchError(f"batch must be a sequence of deliveries, got {type(messages).__name__}")

    batch: list[DeliveredMessage] = []
    seen: set[str] = set()
    for index, message in enumerate(messages):
        if not isinstance(message, DeliveredMessage):
            raise MalformedBatchError(f"batch item {index} is {type(message).__name__}, not a delivery")
        if message.delivery_id in seen:
            raise MalformedBatchError(f"duplicate delivery id in batch: {message.delivery_id}")
        seen.add(message.delivery_id)
        batch.append(message)
    return batch
