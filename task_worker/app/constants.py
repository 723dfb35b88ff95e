"""Worker-level constants shared across modules."""
from __future__ import annotations


class OutcomeDecision:
    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRY_DEFAULT_DELAY = "retry_default_delay"
    EXHAUSTED = "exhausted"
    DECODE_FAILED = "decode_failed"
    CANCELLED = "cancelled"


class WorkerRole:
    PROCESSOR = "processor"
    DEAD_LETTER_MONITOR = "dead-letter-monitor"
