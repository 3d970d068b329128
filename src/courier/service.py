"""Courier service layer.

This module provides CourierService, which builds the webhook components
around one storage client and one HTTP client and manages their
lifecycle. Business code only needs ``trigger_event``.

Example:
    ```python
    from courier.service import CourierService
    from courier.webhooks import EventContext

    async with CourierService.create() as courier:
        created = await courier.registry.create(
            owner_id="biz_1",
            url="https://example.com/hooks",
            event_types=["order.created"],
        )
        result = await courier.trigger_event(
            "order.created",
            {"order_id": "ord_1"},
            EventContext(owner_id="biz_1"),
        )
        print(result.dispatched_count)
    ```
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from courier.config import Settings
from courier.exceptions import ValidationError
from courier.logging import get_logger
from courier.models import (
    Delivery,
    EventCategory,
    EventEnvelope,
    EventInfo,
    EventType,
    event_catalog_by_category,
    utc_now,
)
from courier.storage import CourierStorage
from courier.webhooks import (
    DeliveryLedger,
    DeliveryPool,
    DeliveryWorker,
    DispatchResult,
    EventContext,
    EventDispatcher,
    RetryScheduler,
    SubscriptionRegistry,
    verify_signature_or_raise,
)

logger = get_logger(__name__)

TEST_MESSAGE = "This is a test webhook from Courier"


@dataclass
class CourierService:
    """Webhook dispatch and delivery service.

    Components are constructed here and injected into each other; there
    are no module-level singletons.

    Attributes:
        storage: Storage backend (Qdrant).
        settings: Configuration settings.
        http_client: Client for outbound calls. Created (and closed) by the
            service when not given.
        clock: Source of the current time for all components.
        registry: Subscription management.
        dispatcher: Event fan-out.
        worker: Single delivery attempts.
        pool: Queue and concurrency limit for the worker.
        scheduler: Retry timers and reaper.
        ledger: Delivery history.
    """

    storage: CourierStorage
    settings: Settings
    http_client: httpx.AsyncClient | None = None
    clock: Callable[[], datetime] = utc_now

    registry: SubscriptionRegistry = field(init=False, repr=False)
    dispatcher: EventDispatcher = field(init=False, repr=False)
    worker: DeliveryWorker = field(init=False, repr=False)
    pool: DeliveryPool = field(init=False, repr=False)
    scheduler: RetryScheduler = field(init=False, repr=False)
    ledger: DeliveryLedger = field(init=False, repr=False)

    _owns_http_client: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        """Wire the components together."""
        if self.http_client is None:
            self.http_client = httpx.AsyncClient(
                timeout=self.settings.delivery_timeout_seconds,
                follow_redirects=False,
            )
            self._owns_http_client = True

        self.pool = DeliveryPool(self.settings.max_concurrent_deliveries)
        self.ledger = DeliveryLedger(self.storage)
        self.scheduler = RetryScheduler(
            self.storage,
            self.pool.submit,
            self.settings,
            ledger=self.ledger,
            clock=self.clock,
        )
        self.worker = DeliveryWorker(
            self.storage,
            self.http_client,
            self.settings,
            scheduler=self.scheduler,
            clock=self.clock,
        )
        self.dispatcher = EventDispatcher(self.storage, submit=self.pool.submit, clock=self.clock)
        self.registry = SubscriptionRegistry(self.storage, clock=self.clock)

    @classmethod
    def create(cls, settings: Settings | None = None) -> CourierService:
        """Create a CourierService with default dependencies.

        Args:
            settings: Optional settings. Uses defaults if None.

        Returns:
            Configured CourierService instance.
        """
        if settings is None:
            settings = Settings()
        return cls(storage=CourierStorage.from_settings(settings), settings=settings)

    async def initialize(self) -> None:
        """Initialize storage collections."""
        await self.storage.initialize()

    async def start(self) -> None:
        """Start the delivery pool and the retry scheduler.

        The scheduler's first reaper pass re-admits retries and pending
        deliveries left over from a previous run.
        """
        self.pool.start(self.worker.process)
        await self.scheduler.start()

    async def close(self) -> None:
        """Stop background work and release clients."""
        await self.scheduler.stop()
        await self.pool.stop()
        if self._owns_http_client and self.http_client is not None:
            await self.http_client.aclose()
        await self.storage.close()

    async def __aenter__(self) -> CourierService:
        """Async context manager entry."""
        await self.initialize()
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def trigger_event(
        self,
        event_type: str | EventType,
        payload: Any,
        context: EventContext | None = None,
    ) -> DispatchResult:
        """Record an event and queue its deliveries.

        Returns as soon as the deliveries are persisted; HTTP calls happen
        in the background.
        """
        return await self.dispatcher.trigger(event_type, payload, context)

    async def send_test_delivery(self, subscription_id: str, owner_id: str) -> Delivery:
        """Send a synthetic ``webhook.test`` event and wait for the result.

        Test deliveries are attempted once, never retried, and leave the
        subscription's counters untouched.

        Raises:
            NotFoundError: If the subscription is missing or not the owner's.
        """
        subscription = await self.registry.get(subscription_id, owner_id)
        now = self.clock()

        event = EventEnvelope(
            event_type=EventType.WEBHOOK_TEST,
            timestamp=now,
            payload={"test": True, "message": TEST_MESSAGE, "timestamp": now.isoformat()},
            owner_id=owner_id,
        )
        await self.storage.put_event(event)

        delivery = Delivery(
            subscription_id=subscription.id,
            owner_id=owner_id,
            event_id=event.id,
            event_type=event.event_type,
            event_timestamp=event.timestamp,
            payload=event.payload,
            is_test=True,
            created_at=now,
            updated_at=now,
        )
        await self.storage.put_delivery(delivery)

        result = await self.worker.process(delivery.id)
        if result is None:
            # Claim lost or processing failed; report whatever was stored
            return await self.ledger.get_delivery(delivery.id, owner_id)
        return result

    async def redeliver(self, delivery_id: str, owner_id: str) -> Delivery:
        """Queue a fresh delivery of a finished delivery's event.

        The original record is left untouched; the new delivery points at
        it through ``redelivery_of`` and starts with zero attempts.

        Raises:
            NotFoundError: If the delivery or its subscription is missing
                or not the owner's.
            ValidationError: If the delivery is a test delivery or still
                in progress.
        """
        original = await self.ledger.get_delivery(delivery_id, owner_id)
        if original.is_test:
            raise ValidationError("delivery_id", "test deliveries cannot be redelivered")
        if not original.is_terminal:
            raise ValidationError("delivery_id", "delivery is still in progress")
        await self.registry.get(original.subscription_id, owner_id)

        now = self.clock()
        delivery = Delivery(
            subscription_id=original.subscription_id,
            owner_id=original.owner_id,
            event_id=original.event_id,
            event_type=original.event_type,
            event_timestamp=original.event_timestamp,
            payload=original.payload,
            redelivery_of=original.id,
            created_at=now,
            updated_at=now,
        )
        await self.storage.put_delivery(delivery)
        self.pool.submit(delivery.id)

        logger.info(
            "Redelivery queued",
            delivery_id=delivery.id,
            redelivery_of=original.id,
            owner_id=owner_id,
        )
        return delivery

    def verify_signature(self, payload: Any, header: str, secret: str) -> None:
        """Check an inbound signature with the configured replay window.

        Raises:
            SignatureVerificationError: If the signature is malformed,
                stale or does not match.
        """
        verify_signature_or_raise(
            payload,
            header,
            secret,
            tolerance=self.settings.signature_tolerance_seconds,
            now=self.clock().timestamp(),
        )

    def event_catalog(
        self,
        include_system: bool = False,
    ) -> dict[EventCategory, list[tuple[EventType, EventInfo]]]:
        """Subscribable event types grouped by category."""
        return event_catalog_by_category(include_system=include_system)


__all__ = ["CourierService", "TEST_MESSAGE"]
