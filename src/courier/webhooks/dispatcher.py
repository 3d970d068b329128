"""Event dispatcher: fan an event out into one delivery per subscription.

Dispatch only persists records. HTTP calls happen later in the delivery
pool, so a slow or broken subscriber never delays the business code that
triggered the event.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic_core import to_jsonable_python

from courier.logging import get_logger
from courier.models import Delivery, EventEnvelope, EventType, utc_now

if TYPE_CHECKING:
    from courier.storage import CourierStorage

logger = get_logger(__name__)

Submit = Callable[[str], None]


@dataclass(frozen=True)
class EventContext:
    """Where an event came from.

    Attributes:
        owner_id: Restrict delivery to this tenant's subscriptions.
            None delivers to every matching subscription.
    """

    owner_id: str | None = None


class DispatchResult(BaseModel):
    """Outcome of triggering an event.

    ``event_id`` is None when the event type was not recognised and
    nothing was recorded.
    """

    model_config = ConfigDict(extra="forbid")

    event_id: str | None = None
    event_type: EventType | None = None
    dispatched_count: int = Field(default=0, ge=0)
    delivery_ids: list[str] = Field(default_factory=list)


class EventDispatcher:
    """Records events and creates their deliveries.

    Example:
        ```python
        dispatcher = EventDispatcher(storage, submit=pool.submit)
        result = await dispatcher.trigger(
            "order.created",
            {"order_id": "ord_1", "total": 99.5},
            EventContext(owner_id="biz_1"),
        )
        ```
    """

    def __init__(
        self,
        storage: CourierStorage,
        submit: Submit,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            storage: Storage for events and deliveries.
            submit: Hands a delivery ID to the delivery pool without blocking.
            clock: Source of event and delivery timestamps.
        """
        self._storage = storage
        self._submit = submit
        self._clock = clock

    async def trigger(
        self,
        event_type: str | EventType,
        payload: Any,
        context: EventContext | None = None,
    ) -> DispatchResult:
        """Record an event and queue a delivery for each matching subscription.

        Args:
            event_type: Event type name.
            payload: JSON-compatible payload (pydantic models, datetimes and
                similar values are converted).
            context: Optional tenant scope.

        Returns:
            DispatchResult with the event ID and created delivery IDs.
        """
        context = context or EventContext()

        resolved = EventType.parse(event_type)
        if resolved is None or not resolved.subscribable:
            logger.warning("Ignoring unknown event type", event_type=str(event_type))
            return DispatchResult()

        now = self._clock()
        event = EventEnvelope(
            event_type=resolved,
            timestamp=now,
            payload=to_jsonable_python(payload),
            owner_id=context.owner_id,
        )
        await self._storage.put_event(event)

        subscriptions = await self._storage.find_subscriptions_for_event(
            resolved, owner_id=context.owner_id
        )
        if not subscriptions:
            logger.debug("No subscriptions for event", event_id=event.id, event_type=resolved.value)
            return DispatchResult(event_id=event.id, event_type=resolved)

        deliveries = [
            Delivery(
                subscription_id=subscription.id,
                owner_id=subscription.owner_id,
                event_id=event.id,
                event_type=resolved,
                event_timestamp=event.timestamp,
                payload=event.payload,
                created_at=now,
                updated_at=now,
            )
            for subscription in subscriptions
        ]
        await self._storage.put_deliveries(deliveries)

        for delivery in deliveries:
            self._submit(delivery.id)

        logger.info(
            "Event dispatched",
            event_id=event.id,
            event_type=resolved.value,
            dispatched_count=len(deliveries),
        )
        return DispatchResult(
            event_id=event.id,
            event_type=resolved,
            dispatched_count=len(deliveries),
            delivery_ids=[d.id for d in deliveries],
        )


__all__ = [
    "DispatchResult",
    "EventContext",
    "EventDispatcher",
    "Submit",
]
