"""Delivery worker and pool.

The worker performs one attempt of one delivery: claim it, re-read the
subscription, POST the signed body, classify the outcome and write the
result. The pool drains a queue of delivery IDs with a bounded number of
concurrent workers sharing one HTTP client.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx

from courier.exceptions import StaleClaimError
from courier.logging import bind_context, bind_delivery, get_logger
from courier.models import (
    Delivery,
    DeliveryAttempt,
    DeliveryStatus,
    FailureReason,
    Subscription,
    utc_now,
)
from courier.webhooks.scheduler import compute_backoff
from courier.webhooks.signature import sign_payload

if TYPE_CHECKING:
    import structlog

    from courier.config import Settings
    from courier.storage import CourierStorage
    from courier.webhooks.scheduler import RetryScheduler

logger = get_logger(__name__)

HEADER_EVENT = "X-Webhook-Event"
HEADER_EVENT_ID = "X-Webhook-Event-Id"
HEADER_DELIVERY = "X-Webhook-Delivery"
HEADER_TIMESTAMP = "X-Webhook-Timestamp"
HEADER_SIGNATURE = "X-Webhook-Signature"


def build_body(delivery: Delivery) -> dict[str, Any]:
    """The JSON document sent to the subscriber."""
    return {
        "event": delivery.event_type.value,
        "timestamp": delivery.event_timestamp.isoformat(),
        "data": delivery.payload,
    }


class DeliveryWorker:
    """Performs delivery attempts.

    ``process`` never raises; every outcome ends up on the delivery
    record, in the attempt ledger and in the logs.

    Example:
        ```python
        async with httpx.AsyncClient() as client:
            worker = DeliveryWorker(storage, client, settings, scheduler=scheduler)
            delivery = await worker.process("dlv_0123456789abcdef")
        ```
    """

    def __init__(
        self,
        storage: CourierStorage,
        http_client: httpx.AsyncClient,
        settings: Settings,
        scheduler: RetryScheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the worker.

        Args:
            storage: Storage for deliveries, subscriptions and attempts.
            http_client: Shared client for outbound calls.
            settings: Timeout, retry and header configuration.
            scheduler: Receives deliveries that moved to RETRYING.
            clock: Source of the current time.
        """
        self._storage = storage
        self._http = http_client
        self._scheduler = scheduler
        self._clock = clock
        self._timeout = settings.delivery_timeout_seconds
        self._max_retries = settings.max_retries
        self._backoff = list(settings.retry_backoff_seconds)
        self._lease_seconds = settings.claim_lease_seconds
        self._user_agent = settings.user_agent
        self._body_max_chars = settings.response_body_max_chars

    async def process(self, delivery_id: str) -> Delivery | None:
        """Attempt a delivery once.

        Returns:
            The delivery as written, or None if it was not claimable, the
            claim was lost, or processing failed unexpectedly.
        """
        try:
            return await self._process(delivery_id)
        except Exception:
            logger.exception("Delivery processing failed", delivery_id=delivery_id)
            return None

    async def _process(self, delivery_id: str) -> Delivery | None:
        now = self._clock()
        delivery = await self._storage.claim_delivery(delivery_id, now, self._lease_seconds)
        if delivery is None:
            logger.debug("Delivery not claimable", delivery_id=delivery_id)
            return None

        log = bind_delivery(logger, delivery)
        subscription = await self._storage.get_subscription(delivery.subscription_id)

        if not self._can_deliver(delivery, subscription):
            previous = delivery.mark_failed(
                FailureReason.SUBSCRIPTION_INACTIVE,
                "Subscription not found or inactive",
                at=now,
                count_attempt=False,
            )
            return await self._finish(delivery, previous, log, attempted=False)

        assert subscription is not None
        return await self._attempt(delivery, subscription, log)

    @staticmethod
    def _can_deliver(delivery: Delivery, subscription: Subscription | None) -> bool:
        if subscription is None or subscription.owner_id != delivery.owner_id:
            return False
        # Test deliveries may reach an endpoint before it is activated
        return subscription.active or delivery.is_test

    async def _attempt(
        self,
        delivery: Delivery,
        subscription: Subscription,
        log: structlog.stdlib.BoundLogger,
    ) -> Delivery | None:
        started_at = self._clock()
        signed = sign_payload(
            build_body(delivery), subscription.secret, timestamp=int(started_at.timestamp())
        )
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            HEADER_EVENT: delivery.event_type.value,
            HEADER_EVENT_ID: delivery.event_id,
            HEADER_DELIVERY: delivery.id,
            HEADER_TIMESTAMP: str(signed.timestamp),
            HEADER_SIGNATURE: signed.header,
        }

        response_status: int | None = None
        response_body: str | None = None
        reason: FailureReason | None = None
        error: str | None = None

        start = time.monotonic()
        try:
            response = await self._http.post(
                subscription.url,
                content=signed.body,
                headers=headers,
                timeout=self._timeout,
            )
            response_status = response.status_code
            response_body = self._excerpt(response.text)
            if not response.is_success:
                reason = FailureReason.HTTP_ERROR
                error = f"HTTP {response.status_code}"
        except httpx.TimeoutException:
            reason = FailureReason.TIMEOUT
            error = f"Request timed out after {self._timeout}s"
        except httpx.RequestError as e:
            reason = FailureReason.CONNECTION_ERROR
            error = str(e) or type(e).__name__
        except Exception as e:
            reason = FailureReason.UNEXPECTED_ERROR
            error = f"Unexpected error: {e}"
            log.exception("Unexpected error during delivery attempt")
        duration_ms = int((time.monotonic() - start) * 1000)

        finished_at = self._clock()
        if reason is None and response_status is not None:
            previous = delivery.mark_success(response_status, response_body, at=finished_at)
        else:
            assert reason is not None and error is not None
            previous = self._record_failure(
                delivery, reason, error, finished_at, response_status, response_body
            )

        attempt = DeliveryAttempt(
            delivery_id=delivery.id,
            subscription_id=delivery.subscription_id,
            owner_id=delivery.owner_id,
            attempt_number=delivery.attempts,
            outcome="success" if delivery.status == DeliveryStatus.SUCCESS else "failure",
            response_status=response_status,
            response_body=response_body,
            error=error,
            failure_reason=reason,
            duration_ms=duration_ms,
            signature_timestamp=signed.timestamp,
            started_at=started_at,
            finished_at=finished_at,
        )
        await self._storage.put_attempt(attempt)

        return await self._finish(delivery, previous, log, attempted=True)

    def _record_failure(
        self,
        delivery: Delivery,
        reason: FailureReason,
        error: str,
        at: datetime,
        response_status: int | None,
        response_body: str | None,
    ) -> DeliveryStatus:
        attempts = delivery.attempts + 1
        if not delivery.is_test and attempts < self._max_retries:
            next_retry_at = at + timedelta(seconds=compute_backoff(attempts, self._backoff))
            return delivery.mark_retrying(
                next_retry_at,
                reason,
                error,
                at=at,
                response_status=response_status,
                response_body=response_body,
            )
        return delivery.mark_failed(
            reason,
            error,
            at=at,
            response_status=response_status,
            response_body=response_body,
        )

    async def _finish(
        self,
        delivery: Delivery,
        previous: DeliveryStatus,
        log: structlog.stdlib.BoundLogger,
        attempted: bool,
    ) -> Delivery | None:
        try:
            await self._storage.complete_delivery(delivery)
        except StaleClaimError:
            log.warning("Delivery claim lost before result was written", attempts=delivery.attempts)
            return None

        log.info(
            "Delivery status changed",
            from_status=previous.value,
            to_status=delivery.status.value,
            attempts=delivery.attempts,
            response_status=delivery.response_status,
            failure_reason=delivery.failure_reason.value if delivery.failure_reason else None,
            next_retry_at=delivery.next_retry_at.isoformat() if delivery.next_retry_at else None,
            is_test=delivery.is_test,
        )

        if attempted and not delivery.is_test:
            await self._storage.record_subscription_outcome(
                delivery.subscription_id,
                success=delivery.status == DeliveryStatus.SUCCESS,
                at=delivery.updated_at,
            )

        if delivery.status == DeliveryStatus.RETRYING and self._scheduler is not None:
            self._scheduler.schedule(delivery)

        return delivery

    def _excerpt(self, text: str) -> str | None:
        if not text:
            return None
        return text[: self._body_max_chars]


Handler = Callable[[str], Awaitable[Any]]


class DeliveryPool:
    """Bounded pool of tasks draining a queue of delivery IDs.

    ``submit`` never blocks, so it is safe to call from the dispatcher and
    from timer callbacks. An ID already waiting in the queue is not queued
    again. IDs left in the queue at shutdown are not lost:
    the retry reaper re-admits them from storage.
    """

    def __init__(self, concurrency: int = 10) -> None:
        self._concurrency = concurrency
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._waiting: set[str] = set()
        self._workers: list[asyncio.Task[None]] = []
        self._handler: Handler | None = None

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    def submit(self, delivery_id: str) -> None:
        if delivery_id in self._waiting:
            logger.debug("Delivery already queued", delivery_id=delivery_id)
            return
        self._waiting.add(delivery_id)
        self._queue.put_nowait(delivery_id)

    def start(self, handler: Handler) -> None:
        """Start ``concurrency`` tasks calling ``handler`` for each queued ID."""
        if self._workers:
            return
        self._handler = handler
        for i in range(self._concurrency):
            self._workers.append(
                asyncio.create_task(self._run(f"delivery-worker-{i}"), name=f"delivery-worker-{i}")
            )
        logger.info("Delivery pool started", concurrency=self._concurrency)

    async def join(self) -> None:
        """Wait until every submitted ID has been handled."""
        await self._queue.join()

    async def stop(self) -> None:
        """Cancel the worker tasks. In-flight attempts are abandoned to their lease."""
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info("Delivery pool stopped", abandoned=self._queue.qsize())

    async def _run(self, name: str) -> None:
        assert self._handler is not None
        bind_context(worker=name)
        while True:
            delivery_id = await self._queue.get()
            self._waiting.discard(delivery_id)
            try:
                await self._handler(delivery_id)
            except Exception:
                logger.exception("Delivery handler failed", delivery_id=delivery_id)
            finally:
                self._queue.task_done()


__all__ = [
    "DeliveryPool",
    "DeliveryWorker",
    "HEADER_DELIVERY",
    "HEADER_EVENT",
    "HEADER_EVENT_ID",
    "HEADER_SIGNATURE",
    "HEADER_TIMESTAMP",
    "build_body",
]
