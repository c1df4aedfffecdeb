"""
Unit tests for the cancellation and retry service.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from healthval.core.enums import CancellationStatus, CancellationType, RetryStatus, RetryType
from healthval.services.collaborators import (
    BulkValidationState,
    InMemoryProgressService,
    InMemoryQueueService,
)
from healthval.services.events import EngineEvent, EventEmitter
from healthval.services.validation.cancellation import (
    CANCELLATION_TRANSITIONS,
    RETRY_TRANSITIONS,
    CancellationRetryService,
    RetryPolicy,
)

FAST_POLICY = {"max_retry_attempts": 3, "retry_delay_ms": 100, "backoff_multiplier": 2}


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ImmediateSleep:
    """Records requested delays and returns at once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class GatedSleep:
    """Records requested delays and waits until opened."""

    def __init__(self):
        self.delays: list[float] = []
        self.gate = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await self.gate.wait()


async def settle(service: CancellationRetryService, retry_id: str):
    for _ in range(200):
        request = service.get_retry(retry_id)
        if request.status.is_terminal:
            return request
        await asyncio.sleep(0)
    raise AssertionError(f"retry {retry_id} did not finish")


@pytest.fixture
def queue():
    return InMemoryQueueService()


@pytest.fixture
def progress():
    return InMemoryProgressService()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return ImmediateSleep()


@pytest.fixture
def service(queue, progress, events, clock, sleep):
    return CancellationRetryService(
        queue_service=queue,
        progress_service=progress,
        bulk_state=BulkValidationState(),
        events=events,
        clock=clock,
        sleep=sleep,
    )


class TestTransitionTables:
    """Tests for the ledger state machines."""

    def test_cancellation_edges(self):
        assert CANCELLATION_TRANSITIONS[CancellationStatus.PENDING] == {
            CancellationStatus.IN_PROGRESS,
            CancellationStatus.FAILED,
        }
        assert CancellationStatus.COMPLETED not in CANCELLATION_TRANSITIONS

    def test_retry_edges(self):
        assert RetryStatus.SCHEDULED in RETRY_TRANSITIONS[RetryStatus.IN_PROGRESS]
        assert RetryStatus.COMPLETED not in RETRY_TRANSITIONS[RetryStatus.SCHEDULED]
        for terminal in (RetryStatus.COMPLETED, RetryStatus.FAILED, RetryStatus.EXHAUSTED):
            assert terminal not in RETRY_TRANSITIONS


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_backoff_is_capped(self):
        policy = RetryPolicy(retry_delay_ms=1000, backoff_multiplier=3, max_retry_delay_ms=5000)
        assert policy.first_delay_ms() == 1000
        assert policy.next_delay_ms(1000) == 3000
        assert policy.next_delay_ms(3000) == 5000

    def test_fixed_delay(self):
        policy = RetryPolicy(retry_delay_ms=250, exponential_backoff=False)
        assert policy.next_delay_ms(250) == 250

    def test_error_patterns(self):
        policy = RetryPolicy()
        assert policy.is_retryable(ConnectionError("connection refused")) is True
        assert policy.is_retryable(RuntimeError("Unauthorized")) is False
        assert policy.is_retryable(RuntimeError("resource not found")) is False
        assert policy.is_retryable(RuntimeError("worker crashed")) is True


class TestCancelOperation:
    """Tests for single cancellations."""

    @pytest.mark.asyncio
    async def test_cancel_queue_item(self, service, queue, events):
        """A queue item cancel walks pending, in_progress, completed."""
        queue.enqueue("item-1")
        request = await service.cancel_operation(
            CancellationType.QUEUE_ITEM, "item-1", reason="operator", requested_by="alice"
        )

        assert request.status == CancellationStatus.COMPLETED
        assert [c.status for c in request.status_history] == ["pending", "in_progress", "completed"]
        assert request.completed_at is not None
        assert queue.get_item("item-1").status == "cancelled"

        completed = events.history(EngineEvent.CANCELLATION_COMPLETED)
        assert len(completed) == 1
        assert completed[0].payload["id"] == request.id
        assert events.history(EngineEvent.CANCELLATION_REQUESTED)[0].payload["id"] == request.id

    @pytest.mark.asyncio
    async def test_unknown_queue_item_fails(self, service, events):
        request = await service.cancel_operation(CancellationType.QUEUE_ITEM, "ghost")

        assert request.status == CancellationStatus.FAILED
        assert "ghost" in request.error
        assert [c.status for c in request.status_history] == ["pending", "in_progress", "failed"]
        assert events.history(EngineEvent.CANCELLATION_FAILED)[0].payload["id"] == request.id

    @pytest.mark.asyncio
    async def test_cancel_batch_records_count(self, service, queue):
        queue.enqueue("a", batch_id="b1")
        queue.enqueue("b", batch_id="b1")
        queue.enqueue("c", batch_id="b2")
        request = await service.cancel_operation(CancellationType.QUEUE_BATCH, "b1")

        assert request.status == CancellationStatus.COMPLETED
        assert request.details["items_cancelled"] == 2
        assert queue.list_active_items() == ["c"]

    @pytest.mark.asyncio
    async def test_cancel_resource_progress(self, service, progress):
        progress.start("Patient/p1")
        request = await service.cancel_operation(CancellationType.INDIVIDUAL_RESOURCE, "Patient/p1")
        assert request.status == CancellationStatus.COMPLETED
        assert progress.get("Patient/p1")["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_bulk_cancel_sets_stop_flag(self, service):
        service.bulk_state.start()
        request = await service.cancel_operation(
            CancellationType.BULK_VALIDATION, "bulk_validation", reason="maintenance"
        )
        assert request.status == CancellationStatus.COMPLETED
        assert service.bulk_state.should_stop is True
        assert service.bulk_state.stop_reason == "maintenance"

    @pytest.mark.asyncio
    async def test_missing_collaborator_fails(self, events):
        service = CancellationRetryService(events=events)
        request = await service.cancel_operation(CancellationType.PIPELINE, "pipe-1")
        assert request.status == CancellationStatus.FAILED
        assert request.error == "No validation pipeline configured"

    @pytest.mark.asyncio
    async def test_collaborator_exception_is_recorded(self, events):
        class BrokenQueue(InMemoryQueueService):
            def cancel_validation(self, item_id):
                raise RuntimeError("queue backend down")

        service = CancellationRetryService(queue_service=BrokenQueue(), events=events)
        request = await service.cancel_operation(CancellationType.QUEUE_ITEM, "x")
        assert request.status == CancellationStatus.FAILED
        assert request.error == "queue backend down"


class TestCancelAll:
    """Tests for cancel-all and emergency stop."""

    @pytest.mark.asyncio
    async def test_cancel_all_queue_items(self, service, queue):
        for item_id in ("a", "b", "c"):
            queue.enqueue(item_id)
        queue.mark_done("c")

        requests = await service.cancel_all_operations(CancellationType.QUEUE_ITEM)
        assert sorted(r.target_id for r in requests) == ["a", "b"]
        assert all(r.status == CancellationStatus.COMPLETED for r in requests)

    @pytest.mark.asyncio
    async def test_emergency_stop(self, queue, progress, events, clock):
        sleep = GatedSleep()
        service = CancellationRetryService(
            queue_service=queue,
            progress_service=progress,
            bulk_state=BulkValidationState(),
            events=events,
            clock=clock,
            sleep=sleep,
        )
        queue.enqueue("a", batch_id="b1")
        queue.enqueue("b", batch_id="b1")
        queue.enqueue("c")
        queue.mark_processing("c")
        progress.start("Patient/p1")
        service.bulk_state.start()
        retry = await service.retry_operation(RetryType.QUEUE_ITEM, "old-item", policy=FAST_POLICY)

        report = await service.emergency_stop("database maintenance", requested_by="ops")

        assert report.cancelled == 5
        assert report.failed == 0
        assert report.retries_cancelled == 1
        assert service.bulk_state.should_stop is True
        assert queue.list_active_items() == []
        assert progress.list_active_resources() == []
        assert service.get_retry(retry.id).status == RetryStatus.FAILED

        emitted = events.history(EngineEvent.EMERGENCY_STOP_COMPLETED)
        assert emitted[0].payload["reason"] == "database maintenance"
        await service.close()


class TestRetryOperation:
    """Tests for retry scheduling and execution."""

    @pytest.mark.asyncio
    async def test_backoff_until_exhausted(self, service, sleep, events):
        """A handler that keeps failing is retried with doubling delays."""

        async def handler(request):
            raise ConnectionError("connection refused")

        service.register_retry_handler(RetryType.QUEUE_ITEM, handler)
        request = await service.retry_operation(RetryType.QUEUE_ITEM, "item-9", policy=FAST_POLICY)
        request = await settle(service, request.id)

        assert request.status == RetryStatus.EXHAUSTED
        assert request.attempts == 3
        assert request.delay_history == [100, 200, 400]
        assert sleep.delays == [0.1, 0.2, 0.4]
        assert request.error == "connection refused"
        assert [e.payload["delay_ms"] for e in events.history(EngineEvent.RETRY_SCHEDULED)] == [
            100,
            200,
            400,
        ]
        assert events.history(EngineEvent.RETRY_EXHAUSTED)[0].payload["id"] == request.id

    @pytest.mark.asyncio
    async def test_success_on_second_attempt(self, service, events):
        calls = []

        def handler(request):
            calls.append(request.attempts)
            if len(calls) == 1:
                raise TimeoutError("timeout talking to queue")
            return {"requeued": True}

        service.register_retry_handler(RetryType.QUEUE_ITEM, handler)
        request = await service.retry_operation(RetryType.QUEUE_ITEM, "item-1", policy=FAST_POLICY)
        request = await settle(service, request.id)

        assert request.status == RetryStatus.COMPLETED
        assert request.attempts == 2
        assert request.result == {"requeued": True}
        assert request.error is None
        assert calls == [1, 2]
        assert events.history(EngineEvent.RETRY_COMPLETED)[0].payload["id"] == request.id

    @pytest.mark.asyncio
    async def test_non_retryable_error_exhausts_immediately(self, service):
        async def handler(request):
            raise ValueError("validation error in record")

        service.register_retry_handler(RetryType.PIPELINE, handler)
        request = await service.retry_operation(RetryType.PIPELINE, "pipe-1", policy=FAST_POLICY)
        request = await settle(service, request.id)

        assert request.status == RetryStatus.EXHAUSTED
        assert request.attempts == 1
        assert request.delay_history == [100]

    @pytest.mark.asyncio
    async def test_missing_handler_fails(self, service):
        request = await service.retry_operation(RetryType.BULK_VALIDATION, "bulk", policy=FAST_POLICY)
        request = await settle(service, request.id)

        assert request.status == RetryStatus.FAILED
        assert "No retry handler registered" in request.error
        assert [c.status for c in request.status_history] == [
            "pending",
            "scheduled",
            "in_progress",
            "failed",
        ]

    @pytest.mark.asyncio
    async def test_original_attempts_accumulate(self, service):
        async def handler(request):
            raise ConnectionError("network down")

        service.register_retry_handler(RetryType.QUEUE_ITEM, handler)
        first = await service.retry_operation(RetryType.QUEUE_ITEM, "item-2", policy=FAST_POLICY)
        await settle(service, first.id)
        second = await service.retry_operation(RetryType.QUEUE_ITEM, "item-2", policy=FAST_POLICY)

        assert second.original_attempts == 3
        await settle(service, second.id)

    @pytest.mark.asyncio
    async def test_policy_update(self, service, events):
        policy = service.update_retry_policy(RetryType.PIPELINE, max_retry_attempts=5)
        assert policy.max_retry_attempts == 5
        assert service.get_retry_policy(RetryType.PIPELINE).max_retry_attempts == 5
        assert service.get_retry_policy(RetryType.QUEUE_ITEM).max_retry_attempts == 3
        assert events.history(EngineEvent.RETRY_POLICY_UPDATED)[0].payload["type"] == "pipeline"

    @pytest.mark.asyncio
    async def test_retry_all_failed(self, service):
        await service.cancel_operation(CancellationType.QUEUE_ITEM, "gone-1")
        await service.cancel_operation(CancellationType.QUEUE_ITEM, "gone-2")

        requests = await service.retry_all_failed_operations(RetryType.QUEUE_ITEM, policy=FAST_POLICY)
        assert sorted(r.target_id for r in requests) == ["gone-1", "gone-2"]
        for request in requests:
            await settle(service, request.id)


class TestCancelRetry:
    """Tests for cancelling retries."""

    @pytest.mark.asyncio
    async def test_cancel_scheduled_retry(self, queue, events, clock):
        sleep = GatedSleep()
        calls = []
        service = CancellationRetryService(
            queue_service=queue,
            events=events,
            clock=clock,
            sleep=sleep,
            retry_handlers={RetryType.QUEUE_ITEM: calls.append},
        )
        request = await service.retry_operation(RetryType.QUEUE_ITEM, "item-1", policy=FAST_POLICY)
        await asyncio.sleep(0)

        assert service.cancel_retry(request.id) is True
        sleep.gate.set()
        await asyncio.sleep(0)

        assert request.status == RetryStatus.FAILED
        assert request.error == "Retry cancelled by user"
        assert calls == []
        assert events.history(EngineEvent.RETRY_CANCELLED)[0].payload["id"] == request.id

    @pytest.mark.asyncio
    async def test_cancel_finished_or_unknown_retry(self, service):
        service.register_retry_handler(RetryType.QUEUE_ITEM, lambda request: "ok")
        request = await service.retry_operation(RetryType.QUEUE_ITEM, "item-1", policy=FAST_POLICY)
        await settle(service, request.id)

        assert service.cancel_retry(request.id) is False
        assert service.cancel_retry("unknown") is False
        assert service.get_retry(request.id).status == RetryStatus.COMPLETED


class TestLedgerMaintenance:
    """Tests for stats and cleanup."""

    @pytest.mark.asyncio
    async def test_stats(self, service, queue):
        queue.enqueue("a")
        await service.cancel_operation(CancellationType.QUEUE_ITEM, "a")
        await service.cancel_operation(CancellationType.QUEUE_ITEM, "missing")
        service.register_retry_handler(RetryType.QUEUE_ITEM, lambda request: True)
        request = await service.retry_operation(RetryType.QUEUE_ITEM, "a", policy=FAST_POLICY)
        await settle(service, request.id)

        stats = service.get_stats()
        assert stats.total_cancellations == 2
        assert stats.completed_cancellations == 1
        assert stats.failed_cancellations == 1
        assert stats.completed_retries == 1
        assert stats.retry_success_rate == 1.0
        assert stats.to_dict()["active_retries"] == 0

    @pytest.mark.asyncio
    async def test_clear_old_requests(self, service, queue, clock, events):
        queue.enqueue("a")
        old = await service.cancel_operation(CancellationType.QUEUE_ITEM, "a")
        clock.advance(hours=30)
        recent = await service.cancel_operation(CancellationType.QUEUE_ITEM, "missing")

        assert service.clear_old_requests(older_than_hours=24) == 1
        assert service.get_cancellation(old.id) is None
        assert service.get_cancellation(recent.id) is recent
        assert events.history(EngineEvent.REQUESTS_CLEANED_UP)[0].payload["cancellations"] == 1

        assert service.clear_old_requests(older_than_hours=24) == 0
        assert len(events.history(EngineEvent.REQUESTS_CLEANED_UP)) == 1

    @pytest.mark.asyncio
    async def test_periodic_cleanup(self, queue, clock):
        async def yielding_sleep(seconds):
            await asyncio.sleep(0)

        service = CancellationRetryService(
            queue_service=queue, events=EventEmitter(), clock=clock, sleep=yielding_sleep
        )
        queue.enqueue("a")
        request = await service.cancel_operation(CancellationType.QUEUE_ITEM, "a")
        clock.advance(hours=48)

        service.start()
        for _ in range(5):
            await asyncio.sleep(0)

        assert service.get_cancellation(request.id) is None
        await service.close()
