import asyncio

import pytest

from task_worker.app.application.batch import MalformedBatchError
from task_worker.app.application.retry_coordinator import RetryCoordinator
from task_worker.app.constants import OutcomeDecision
from task_worker.app.domain.backoff_policy import BackoffPolicy
from task_worker.app.ports.task_processor import TaskProcessingError
from task_worker.app.ports.task_queue import QueueOperationError, QueueTransientError
from tests.conftest import (
    ExplodingObserver,
    FakeTaskQueue,
    RecordingObserver,
    ScriptedProcessor,
    delivery,
)


def _coordinator(processor, queue, observer=None, **kwargs):
    kwargs.setdefault("override_initial_backoff_seconds", 0.0)
    kwargs.setdefault("override_max_backoff_seconds", 0.0)
    return RetryCoordinator(processor, queue, BackoffPolicy(), 3, observer=observer or RecordingObserver(), **kwargs)


@pytest.mark.asyncio
async def test_only_the_failing_delivery_is_reported():
    processor = ScriptedProcessor({"b": TaskProcessingError("boom")})
    queue = FakeTaskQueue()
    coordinator = _coordinator(processor, queue)

    report = await coordinator.process_batch([delivery("a"), delivery("b"), delivery("c")])

    assert report.failed_delivery_ids == ("b",)
    assert [c[0] for c in processor.calls] == ["a", "b", "c"]
    assert queue.overrides == [("b", 10)]


@pytest.mark.asyncio
async def test_override_uses_policy_delay_for_queue_attempt_count():
    observer = RecordingObserver()
    queue = FakeTaskQueue()
    coordinator = _coordinator(ScriptedProcessor({"a": TaskProcessingError("x")}), queue, observer)

    await coordinator.process_batch([delivery("a", attempt=2)])

    assert queue.overrides == [("a", 20)]
    event = observer.events[0]
    assert event.decision == OutcomeDecision.RETRY_SCHEDULED
    assert event.delay_seconds == 20
    assert event.attempt_count == 2


@pytest.mark.asyncio
async def test_exhausted_delivery_gets_no_override():
    observer = RecordingObserver()
    queue = FakeTaskQueue()
    coordinator = _coordinator(ScriptedProcessor({"a": TaskProcessingError("x")}), queue, observer)

    report = await coordinator.process_batch([delivery("a", attempt=3)])

    assert report.failed_delivery_ids == ("a",)
    assert queue.override_calls == 0
    assert observer.decisions() == {"a": OutcomeDecision.EXHAUSTED}


@pytest.mark.asyncio
async def test_override_failure_degrades_to_default_delay():
    observer = RecordingObserver()
    queue = FakeTaskQueue()
    queue.always_fail_with = QueueOperationError("unknown delivery")
    coordinator = _coordinator(ScriptedProcessor({"a": TaskProcessingError("x")}), queue, observer)

    report = await coordinator.process_batch([delivery("a"), delivery("ok")])

    assert report.failed_delivery_ids == ("a",)
    assert queue.override_calls == 1
    assert observer.decisions() == {"a": OutcomeDecision.RETRY_DEFAULT_DELAY, "ok": OutcomeDecision.SUCCEEDED}


@pytest.mark.asyncio
async def test_transient_override_failures_are_retried():
    queue = FakeTaskQueue(override_errors=[QueueTransientError("t1"), QueueTransientError("t2")])
    observer = RecordingObserver()
    coordinator = _coordinator(ScriptedProcessor({"a": TaskProcessingError("x")}), queue, observer)

    await coordinator.process_batch([delivery("a")])

    assert queue.override_calls == 3
    assert queue.overrides == [("a", 10)]
    assert observer.events[0].decision == OutcomeDecision.RETRY_SCHEDULED


@pytest.mark.asyncio
async def test_transient_override_retries_are_bounded():
    queue = FakeTaskQueue()
    queue.always_fail_with = QueueTransientError("still down")
    observer = RecordingObserver()
    coordinator = _coordinator(ScriptedProcessor({"a": TaskProcessingError("x")}), queue, observer, override_max_attempts=2)

    report = await coordinator.process_batch([delivery("a")])

    assert queue.override_calls == 2
    assert report.failed_delivery_ids == ("a",)
    assert observer.events[0].decision == OutcomeDecision.RETRY_DEFAULT_DELAY


@pytest.mark.asyncio
async def test_undecodable_body_is_failed_without_processing():
    processor = ScriptedProcessor()
    queue = FakeTaskQueue()
    observer = RecordingObserver()
    coordinator = _coordinator(processor, queue, observer)

    report = await coordinator.process_batch([delivery("bad", body=b"{not json"), delivery("good")])

    assert report.failed_delivery_ids == ("bad",)
    assert processor.calls == [("good", 1)]
    assert queue.override_calls == 0
    assert observer.decisions()["bad"] == OutcomeDecision.DECODE_FAILED


@pytest.mark.asyncio
async def test_processing_timeout_counts_as_failure():
    queue = FakeTaskQueue()
    observer = RecordingObserver()
    coordinator = _coordinator(ScriptedProcessor({"slow": 1.0}), queue, observer, processing_timeout_seconds=0.01)

    report = await coordinator.process_batch([delivery("slow")])

    assert report.failed_delivery_ids == ("slow",)
    assert "timed out" in observer.events[0].error
    assert queue.overrides == [("slow", 10)]


@pytest.mark.asyncio
async def test_deadline_cancels_unfinished_deliveries():
    observer = RecordingObserver()
    coordinator = _coordinator(ScriptedProcessor({"stuck": "hang"}), FakeTaskQueue(), observer, concurrency=2)

    report = await coordinator.process_batch([delivery("fast"), delivery("stuck")], deadline_seconds=0.05)

    assert report.failed_delivery_ids == ("stuck",)
    assert observer.decisions() == {"fast": OutcomeDecision.SUCCEEDED, "stuck": OutcomeDecision.CANCELLED}


@pytest.mark.asyncio
@pytest.mark.parametrize("batch", [None, "abc", b"abc", 42, {"a": 1}])
async def test_malformed_batch_raises(batch):
    coordinator = _coordinator(ScriptedProcessor(), FakeTaskQueue())
    with pytest.raises(MalformedBatchError):
        await coordinator.process_batch(batch)


@pytest.mark.asyncio
async def test_malformed_element_raises_before_any_processing():
    processor = ScriptedProcessor()
    coordinator = _coordinator(processor, FakeTaskQueue())
    with pytest.raises(MalformedBatchError):
        await coordinator.process_batch([delivery("a"), {"delivery_id": "b"}])
    assert processor.calls == []


@pytest.mark.asyncio
async def test_duplicate_delivery_ids_are_malformed():
    coordinator = _coordinator(ScriptedProcessor(), FakeTaskQueue())
    with pytest.raises(MalformedBatchError):
        await coordinator.process_batch([delivery("a"), delivery("a")])


@pytest.mark.asyncio
async def test_empty_batch_gives_empty_report():
    report = await _coordinator(ScriptedProcessor(), FakeTaskQueue()).process_batch([])
    assert report.failed_delivery_ids == ()


@pytest.mark.asyncio
async def test_observer_failure_does_not_change_outcomes():
    queue = FakeTaskQueue()
    coordinator = _coordinator(
        ScriptedProcessor({"b": TaskProcessingError("x")}), queue, observer=ExplodingObserver()
    )

    report = await coordinator.process_batch([delivery("a"), delivery("b")])

    assert report.failed_delivery_ids == ("b",)
    assert queue.overrides == [("b", 10)]


@pytest.mark.asyncio
async def test_same_batch_twice_gives_same_report_and_delays():
    batch = [delivery("a", attempt=2), delivery("b"), delivery("c", attempt=3)]
    processor = ScriptedProcessor({"a": TaskProcessingError("x"), "c": TaskProcessingError("y")})
    first_queue, second_queue = FakeTaskQueue(), FakeTaskQueue()

    first = await _coordinator(processor, first_queue).process_batch(batch)
    second = await _coordinator(processor, second_queue).process_batch(batch)

    assert first == second
    assert first.failed_delivery_ids == ("a", "c")
    assert first_queue.overrides == second_queue.overrides == [("a", 20)]


@pytest.mark.asyncio
async def test_sequential_by_default_and_bounded_when_concurrent():
    batch = [delivery(f"m{i}") for i in range(6)]
    sequential = ScriptedProcessor({f"m{i}": 0.01 for i in range(6)})
    await _coordinator(sequential, FakeTaskQueue()).process_batch(batch)
    assert sequential.max_active == 1

    concurrent = ScriptedProcessor({f"m{i}": 0.01 for i in range(6)})
    await _coordinator(concurrent, FakeTaskQueue(), concurrency=3).process_batch(batch)
    assert 1 < concurrent.max_active <= 3


@pytest.mark.asyncio
async def test_external_cancellation_propagates():
    coordinator = _coordinator(ScriptedProcessor({"stuck": "hang"}), FakeTaskQueue())
    task = asyncio.create_task(coordinator.process_batch([delivery("stuck")]))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


def test_invalid_construction_rejected():
    with pytest.raises(ValueError):
        RetryCoordinator(ScriptedProcessor(), FakeTaskQueue(), max_attempts=0)
    with pytest.raises(ValueError):
        RetryCoordinator(ScriptedProcessor(), FakeTaskQueue(), concurrency=0)
