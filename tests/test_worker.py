"""Tests for delivery attempts, retries and the delivery pool.

Subscribers are simulated with httpx.MockTransport; storage is
qdrant-client's in-memory mode and time is a FakeClock.
"""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import httpx
import pytest
import structlog
from conftest import SECRET, START, FakeClock, Subscriber, make_delivery, make_subscription

from courier.config import Settings
from courier.exceptions import StaleClaimError
from courier.models import Delivery, DeliveryStatus, FailureReason, Subscription
from courier.storage import CourierStorage
from courier.webhooks import DeliveryPool, DeliveryWorker, verify
from courier.webhooks.worker import (
    HEADER_DELIVERY,
    HEADER_EVENT,
    HEADER_EVENT_ID,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    build_body,
)


class RecordingScheduler:
    """Collects deliveries handed to the retry scheduler."""

    def __init__(self) -> None:
        self.scheduled: list[Delivery] = []

    def schedule(self, delivery: Delivery) -> None:
        self.scheduled.append(delivery)


def make_worker(
    storage: CourierStorage,
    settings: Settings,
    clock: FakeClock,
    subscriber: Subscriber,
    scheduler: RecordingScheduler | None = None,
) -> DeliveryWorker:
    return DeliveryWorker(
        storage,
        subscriber.client(),
        settings,
        scheduler=scheduler,  # type: ignore[arg-type]
        clock=clock,
    )


async def store(
    storage: CourierStorage,
    subscription: Subscription,
    **delivery_fields: object,
) -> Delivery:
    await storage.put_subscription(subscription)
    delivery = make_delivery(subscription, **delivery_fields)
    await storage.put_delivery(delivery)
    return delivery


def now_ts(clock: FakeClock) -> int:
    return int(clock.now.timestamp())


class TestSuccessfulDelivery:
    async def test_single_attempt_success(
        self, storage: CourierStorage, settings: Settings, clock: FakeClock
    ):
        subscriber = Subscriber(200)
        subscription = make_subscription()
        delivery = await store(storage, subscription)
        worker = make_worker(storage, settings, clock, subscriber)

        result = await worker.process(delivery.id)

        assert result is not None
        assert result.status == DeliveryStatus.SUCCESS
        assert result.attempts == 1
        assert result.response_status == 200
        assert result.response_body == "ok"
        assert result.delivered_at == clock.now
        assert len(subscriber.requests) == 1

        request = subscriber.requests[0]
        assert verify(request.content, request.headers[HEADER_SIGNATURE], SECRET, now=now_ts(clock))

        stored_subscription = await storage.get_subscription(subscription.id)
        assert stored_subscription is not None
        assert stored_subscription.success_count == 1
        assert stored_subscription.failure_count == 0
        assert stored_subscription.last_triggered_at == clock.now

        attempts = await storage.list_attempts(delivery.id)
        assert len(attempts) == 1
        assert attempts[0].outcome == "success"
        assert attempts[0].attempt_number == 1
        assert attempts[0].signature_timestamp == now_ts(clock)

    async def test_request_headers_and_body(
        self, storage: CourierStorage, settings: Settings, clock: FakeClock
    ):
        subscriber = Subscriber(204)
        delivery = await store(storage, make_subscription())
        worker = make_worker(storage, settings, clock, subscriber)

        await worker.process(delivery.id)

        request = subscriber.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://hooks.example.com/courier"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["User-Agent"] == "Courier-Webhooks/1.0"
        assert request.headers[HEADER_EVENT] == "order.created"
        assert request.headers[HEADER_EVENT_ID] == delivery.event_id
        assert request.headers[HEADER_DELIVERY] == delivery.id
        assert request.headers[HEADER_TIMESTAMP] == str(now_ts(clock))
        assert request.headers[HEADER_SIGNATURE].startswith(f"t={now_ts(clock)},v1=")
        assert json.loads(request.content) == {
            "event": "order.created",
            "timestamp": START.isoformat(),
            "data": {"order_id": "ord_1", "total": 99.5},
        }

    def test_build_body(self):
        delivery = make_delivery(make_subscription(), payload=["a", 1])
        assert build_body(delivery) == {
            "event": "order.created",
            "timestamp": "2026-01-05T12:00:00+00:00",
            "data": ["a", 1],
        }

    async def test_response_body_truncated(self, storage: CourierStorage, clock: FakeClock):
        settings = Settings(env="test", response_body_max_chars=10, _env_file=None)
        subscriber = Subscriber(httpx.Response(200, text="x" * 50))
        delivery = await store(storage, make_subscription())
        worker = make_worker(storage, settings, clock, subscriber)

        result = await worker.process(delivery.id)

        assert result is not None
        assert result.response_body == "x" * 10

    async def test_empty_response_body(
        self, storage: CourierStorage, settings: Settings, clock: FakeClock
    ):
        subscriber = Subscriber(httpx.Response(204))
        delivery = await store(storage, make_subscription())
        result = await make_worker(storage, settings, clock, subscriber).process(delivery.id)

        assert result is not None
        assert result.status == DeliveryStatus.SUCCESS
        assert result.response_body is None


class TestRetries:
    async def test_five_failures_then_failed(
        self, storage: CourierStorage, settings: Settings, clock: FakeClock
    ):
        """Every attempt fails: four retries on the backoff table, then FAILED."""
        subscriber = Subscriber(500)
        scheduler = RecordingScheduler()
        subscription = make_subscription()
        delivery = await store(storage, subscription)
        worker = make_worker(storage, settings, clock, subscriber, scheduler)

        for attempt, delay in enumerate([60, 300, 900, 3600], start=1):
            result = await worker.process(delivery.id)
            assert result is not None
            assert result.status == DeliveryStatus.RETRYING
            assert result.attempts == attempt
            assert result.next_retry_at == clock.now + timedelta(seconds=delay)
            assert result.failure_reason == FailureReason.HTTP_ERROR
            assert result.error == "HTTP 500"
            assert result.response_status == 500

            # Not due yet
            assert await worker.process(delivery.id) is None
            clock.advance(delay)

        final = await worker.process(delivery.id)

        assert final is not None
        assert final.status == DeliveryStatus.FAILED
        assert final.attempts == 5
        assert final.next_retry_at is None
        assert len(subscriber.requests) == 5
        assert [d.attempts for d in scheduler.scheduled] == [1, 2, 3, 4]

        stored_subscription = await storage.get_subscription(subscription.id)
        assert stored_subscription is not None
        assert stored_subscription.failure_count == 5
        assert stored_subscription.success_count == 0

        attempts = await storage.list_attempts(delivery.id)
        assert [a.attempt_number for a in attempts] == [1, 2, 3, 4, 5]
        assert all(a.outcome == "failure" for a in attempts)

        # Terminal: further processing does nothing
        clock.advance(7200)
        assert await worker.process(delivery.id) is None
        assert len(subscriber.requests) == 5

    async def test_retry_then_success(
        self, storage: CourierStorage, settings: Settings, clock: FakeClock
    ):
        subscriber = Subscriber(503, 200)
        subscription = make_subscription()
        delivery = await store(storage, subscription)
        worker = make_worker(storage, settings, clock, subscriber)

        first = await worker.process(delivery.id)
        assert first is not None
        assert first.status == DeliveryStatus.RETRYING

        clock.advance(60)
        second = await worker.process(delivery.id)

        assert second is not None
        assert second.status == DeliveryStatus.SUCCESS
        assert second.attempts == 2
        assert second.error is None
        stored_subscription = await storage.get_subscription(subscription.id)
        assert stored_subscription is not None
        assert (stored_subscription.success_count, stored_subscription.failure_count) == (1, 1)

    async def test_client_errors_are_retried(
        self, storage: CourierStorage, settings: Settings, clock: FakeClock
    ):
        delivery = await store(storage, make_subscription())
        result = await make_worker(storage, settings, clock, Subscriber(404)).process(delivery.id)

        assert result is not None
        assert result.status == DeliveryStatus.RETRYING
        assert result.error == "HTTP 404"
        assert result.response_status == 404

    async def test_custom_retry_limit(self, storage: CourierStorage, clock: FakeClock):
        settings = Settings(env="test", max_retries=1, _env_file=None)
        delivery = await store(storage, make_subscription())
        result = await make_worker(storage, settings, clock, Subscriber(500)).process(delivery.id)

        assert result is not None
        assert result.status == DeliveryStatus.FAILED
        assert result.attempts == 1


class TestTransportFailures:
    @pytest.mark.parametrize(
        ("error", "reason"),
        [
            (httpx.ReadTimeout("read timed out"), FailureReason.TIMEOUT),
            (httpx.ConnectTimeout("connect timed out"), FailureReason.TIMEOUT),
            (httpx.ConnectError("connection refused"), FailureReason.CONNECTION_ERROR),
            (ValueError("boom"), FailureReason.UNEXPECTED_ERROR),
        ],
    )
    async def test_failures_are_classified(
        self,
        storage: CourierStorage,
        settings: Settings,
        clock: FakeClock,
        error: Exception,
        reason: FailureReason,
    ):
        delivery = await store(storage, make_subscription())
        result = await make_worker(storage, settings, clock, Subscriber(error)).process(
            delivery.id
        )

        assert result is not None
        assert result.status == DeliveryStatus.RETRYING
        assert result.failure_reason == reason
        assert result.response_status is None
        assert result.error

        attempts = await storage.list_attempts(delivery.id)
        assert attempts[0].failure_reason == reason

    async def test_timeout_message(
        self, storage: CourierStorage, settings: Settings, clock: FakeClock
    ):
        delivery = await store(storage, make_subscription())
        subscriber = Subscriber(httpx.ReadTimeout("read timed out"))
        result = await make_worker(storage, settings, clock, subscriber).process(delivery.id)

        assert result is not None
        assert result.error == "Request timed out after 30.0s"


class TestSecretRotation:
    async def test_retry_is_signed_with_rotated_secret(
        self, storage: CourierStorage, settings: Settings, clock: FakeClock
    ):
        subscriber = Subscriber(500, 200)
        subscription = make_subscription()
        delivery = await store(storage, subscription)
        worker = make_worker(storage, settings, clock, subscriber)

        await worker.process(delivery.id)

        new_secret = "whsec_" + "cd" * 24

        def rotate(s: Subscription) -> None:
            s.secret = new_secret

        await storage.modify_subscription(subscription.id, rotate)
        clock.advance(60)
        result = await worker.process(delivery.id)

        assert result is not None
        assert result.status == DeliveryStatus.SUCCESS
        old_request, new_request = subscriber.requests
        signature = new_request.headers[HEADER_SIGNATURE]
        assert verify(new_request.content, signature, new_secret, now=now_ts(clock))
        assert not verify(new_request.content, signature, SECRET, now=now_ts(clock))
        assert old_request.headers[HEADER_SIGNATURE] != signature


class TestSubscriptionChecks:
    async def test_inactive_subscription_fails_without_attempt(
        self, storage: CourierStorage, settings: Settings, clock: FakeClock
    ):
        subscriber = Subscriber(200)
        scheduler = RecordingScheduler()
        subscription = make_subscription(active=False)
        delivery = await store(storage, subscription)

        result = await make_worker(storage, settings, clock, subscriber, scheduler).process(
            delivery.id
        )

        assert result is not None
        assert result.status == DeliveryStatus.FAILED
        assert result.failure_reason == FailureReason.SUBSCRIPTION_INACTIVE
        assert result.attempts == 0
        assert subscriber.requests == []
        assert scheduler.scheduled == []
        assert await storage.list_attempts(delivery.id) == []

        stored_subscription = await storage.get_subscription(subscription.id)
        assert stored_subscription is not None
        assert stored_subscription.failure_count == 0

    async def test_deactivated_before_retry(
        self, storage: CourierStorage, settings: Settings, clock: FakeClock
    ):
        subscriber = Subscriber(500)
        subscription = make_subscription()
        delivery = await store(storage, subscription)
        worker = make_worker(storage, settings, clock, subscriber)
        await worker.process(delivery.id)

        def deactivate(s: Subscription) -> None:
            s.active = False

        await storage.modify_subscription(subscription.id, deactivate)
        clock.advance(60)
        result = await worker.process(delivery.id)

        assert result is not None
        assert result.status == DeliveryStatus.FAILED
        assert result.failure_reason == FailureReason.SUBSCRIPTION_INACTIVE
        assert result.attempts == 1
        assert len(subscriber.requests) == 1

    async def test_deleted_subscription(
        self, storage: CourierStorage, settings: Settings, clock: FakeClock
    ):
        subscription = make_subscription()
        delivery = await store(storage, subscription)
        await storage.delete_subscription(subscription.id)

        result = await make_worker(storage, settings, clock, Subscriber(200)).process(delivery.id)

        assert result is not None
        assert result.failure_reason == FailureReason.SUBSCRIPTION_INACTIVE

    async def test_owner_mismatch(
        self, storage: CourierStorage, settings: Settings, clock: FakeClock
    ):
        subscription = make_subscription(owner_id="biz_2")
        await storage.put_subscription(subscription)
        delivery = make_delivery(subscription, owner_id="biz_1")
        await storage.put_delivery(delivery)

        subscriber = Subscriber(200)
        result = await make_worker(storage, settings, clock, subscriber).process(delivery.id)

        assert result is not None
        assert result.status == DeliveryStatus.FAILED
        assert subscriber.requests == []


class TestTestDeliveries:
    async def test_failure_is_final_and_uncounted(
        self, storage: CourierStorage, settings: Settings, clock: FakeClock
    ):
        subscription = make_subscription()
        delivery = await store(storage, subscription, is_test=True)

        result = await make_worker(storage, settings, clock, Subscriber(500)).process(delivery.id)

        assert result is not None
        assert result.status == DeliveryStatus.FAILED
        assert result.attempts == 1
        stored_subscription = await storage.get_subscription(subscription.id)
        assert stored_subscription is not None
        assert stored_subscription.failure_count == 0
        assert stored_subscription.last_triggered_at is None

    async def test_reaches_inactive_subscription(
        self, storage: CourierStorage, settings: Settings, clock: FakeClock
    ):
        subscriber = Subscriber(200)
        delivery = await store(storage, make_subscription(active=False), is_test=True)

        result = await make_worker(storage, settings, clock, subscriber).process(delivery.id)

        assert result is not None
        assert result.status == DeliveryStatus.SUCCESS
        assert len(subscriber.requests) == 1


class TestClaimHandling:
    async def test_missing_delivery(
        self, storage: CourierStorage, settings: Settings, clock: FakeClock
    ):
        assert await make_worker(storage, settings, clock, Subscriber()).process("dlv_x") is None

    async def test_claimed_elsewhere(
        self, storage: CourierStorage, settings: Settings, clock: FakeClock
    ):
        subscriber = Subscriber(200)
        delivery = await store(storage, make_subscription())
        await storage.claim_delivery(delivery.id, clock.now, 120)

        assert await make_worker(storage, settings, clock, subscriber).process(delivery.id) is None
        assert subscriber.requests == []

    async def test_lost_claim_discards_result(
        self,
        storage: CourierStorage,
        settings: Settings,
        clock: FakeClock,
        monkeypatch: pytest.MonkeyPatch,
    ):
        subscription = make_subscription()
        delivery = await store(storage, subscription)

        async def stale(d: Delivery) -> Delivery:
            raise StaleClaimError(d.id)

        monkeypatch.setattr(storage, "complete_delivery", stale)
        result = await make_worker(storage, settings, clock, Subscriber(200)).process(delivery.id)

        assert result is None
        stored_subscription = await storage.get_subscription(subscription.id)
        assert stored_subscription is not None
        assert stored_subscription.success_count == 0

    async def test_storage_error_is_contained(
        self,
        storage: CourierStorage,
        settings: Settings,
        clock: FakeClock,
        monkeypatch: pytest.MonkeyPatch,
    ):
        async def broken(*args: object, **kwargs: object) -> None:
            raise RuntimeError("storage down")

        monkeypatch.setattr(storage, "claim_delivery", broken)
        assert await make_worker(storage, settings, clock, Subscriber()).process("dlv_x") is None


class TestDeliveryPool:
    async def test_handles_every_submission(self):
        handled: list[str] = []

        async def handler(delivery_id: str) -> None:
            handled.append(delivery_id)

        pool = DeliveryPool(concurrency=3)
        pool.start(handler)
        for i in range(10):
            pool.submit(f"dlv_{i}")
        await pool.join()
        await pool.stop()

        assert sorted(handled) == sorted(f"dlv_{i}" for i in range(10))
        assert not pool.running

    async def test_concurrency_is_bounded(self):
        in_flight = 0
        peak = 0

        async def handler(delivery_id: str) -> None:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        pool = DeliveryPool(concurrency=2)
        pool.start(handler)
        for i in range(8):
            pool.submit(f"dlv_{i}")
        await pool.join()
        await pool.stop()

        assert peak == 2

    async def test_handler_errors_do_not_stop_workers(self):
        handled: list[str] = []

        async def handler(delivery_id: str) -> None:
            if delivery_id == "dlv_bad":
                raise RuntimeError("boom")
            handled.append(delivery_id)

        pool = DeliveryPool(concurrency=1)
        pool.start(handler)
        pool.submit("dlv_bad")
        pool.submit("dlv_good")
        await pool.join()
        await pool.stop()

        assert handled == ["dlv_good"]

    async def test_submit_before_start_is_queued(self):
        pool = DeliveryPool(concurrency=1)
        pool.submit("dlv_1")
        assert pool.queued == 1
        assert not pool.running

    async def test_waiting_id_is_queued_once(self):
        handled: list[str] = []

        async def handler(delivery_id: str) -> None:
            handled.append(delivery_id)

        pool = DeliveryPool(concurrency=1)
        pool.submit("dlv_1")
        pool.submit("dlv_1")
        assert pool.queued == 1

        pool.start(handler)
        await pool.join()
        pool.submit("dlv_1")
        await pool.join()
        await pool.stop()

        assert handled == ["dlv_1", "dlv_1"]

    async def test_worker_name_bound_to_log_context(self):
        workers: list[str] = []

        async def handler(delivery_id: str) -> None:
            workers.append(structlog.contextvars.get_contextvars()["worker"])

        pool = DeliveryPool(concurrency=1)
        pool.start(handler)
        pool.submit("dlv_1")
        await pool.join()
        await pool.stop()

        assert workers == ["delivery-worker-0"]
        assert "worker" not in structlog.contextvars.get_contextvars()
