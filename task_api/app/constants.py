"""API-level constants shared across modules."""
from __future__ import annotations


class RejectionReason:
    INVALID_JSON = "invalid_json"
    INVALID_BODY = "invalid_body"
    TASK_ID_REQUIRED = "task_id_required"
    PAYLOAD_REQUIRED = "payload_required"
    PUBLISHER_NOT_READY = "publisher_not_ready"
    QUEUE_REJECTED = "queue_rejected"
    CONNECTION_LOST = "connection_lost"


# Publish failures that mean "try again later" rather than an internal fault.
UNAVAILABLE_REASONS = frozenset(
    {
        RejectionReason.PUBLISHER_NOT_READY,
        RejectionReason.QUEUE_REJECTED,
        RejectionReason.CONNECTION_LOST,
    }
)

ACCEPTED_MESSAGE = "Task submitted successfully to processing queue"
