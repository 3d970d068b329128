"""Subscription storage operations.

Subscriptions are looked up by id alone (workers only know the id);
tenant scoping is enforced by callers comparing ``owner_id``.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from qdrant_client import models

from courier.storage.retry import qdrant_retry

if TYPE_CHECKING:
    from courier.models import EventType, Subscription


class SubscriptionMixin:
    """Mixin providing subscription operations for CourierStorage.

    This mixin expects the following attributes/methods from the base class:
    - _collection_name(kind) -> str
    - _point_id(record_id) -> str
    - _to_point(record_id, payload) -> PointStruct
    - _to_payload(model) -> dict
    - _retrieve(kind, record_id, model_class) -> ModelT | None
    - _scroll_all(kind, filter, model_class, limit, bounded) -> list[ModelT]
    - _match(key, value) -> FieldCondition
    - _row_lock(record_id) -> asyncio.Lock
    - client: AsyncQdrantClient
    """

    _collection_name: Any
    _point_id: Any
    _to_point: Any
    _to_payload: Any
    _retrieve: Any
    _scroll_all: Any
    _match: Any
    _row_lock: Any
    client: Any

    @qdrant_retry
    async def put_subscription(self, subscription: Subscription) -> str:
        """Insert or replace a subscription.

        Returns:
            The subscription ID.
        """
        await self.client.upsert(
            collection_name=self._collection_name("subscriptions"),
            points=[self._to_point(subscription.id, self._to_payload(subscription))],
        )
        return subscription.id

    @qdrant_retry
    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        """Get a subscription by ID, regardless of owner."""
        from courier.models import Subscription

        result: Subscription | None = await self._retrieve(
            "subscriptions", subscription_id, Subscription
        )
        return result

    @qdrant_retry
    async def list_subscriptions(
        self,
        owner_id: str,
        active_only: bool = False,
    ) -> list[Subscription]:
        """List an owner's subscriptions, newest first."""
        from courier.models import Subscription

        conditions: list[models.Condition] = [self._match("owner_id", owner_id)]
        if active_only:
            conditions.append(self._match("active", True))

        subscriptions: list[Subscription] = await self._scroll_all(
            "subscriptions", models.Filter(must=conditions), Subscription
        )
        subscriptions.sort(key=lambda s: s.created_at, reverse=True)
        return subscriptions

    @qdrant_retry
    async def find_subscriptions_for_event(
        self,
        event_type: EventType,
        owner_id: str | None = None,
    ) -> list[Subscription]:
        """Get all active subscriptions receiving an event type.

        Args:
            event_type: The event type to match.
            owner_id: Restrict to one tenant's subscriptions.

        Returns:
            Matching subscriptions.
        """
        from courier.models import Subscription

        conditions: list[models.Condition] = [
            self._match("active", True),
            self._match("event_types", event_type.value),
        ]
        if owner_id is not None:
            conditions.append(self._match("owner_id", owner_id))

        candidates: list[Subscription] = await self._scroll_all(
            "subscriptions", models.Filter(must=conditions), Subscription, bounded=False
        )
        return [s for s in candidates if s.subscribes_to(event_type)]

    @qdrant_retry
    async def delete_subscription(self, subscription_id: str) -> None:
        """Delete a subscription. Its deliveries stay in the ledger."""
        await self.client.delete(
            collection_name=self._collection_name("subscriptions"),
            points_selector=models.PointIdsList(points=[self._point_id(subscription_id)]),
        )

    async def modify_subscription(
        self,
        subscription_id: str,
        mutate: Callable[[Subscription], None],
    ) -> Subscription | None:
        """Apply ``mutate`` to the stored subscription and write it back.

        Single-row read-modify-write under the row lock, so concurrent
        counter increments and management updates never overwrite each
        other.

        Returns:
            The updated subscription, or None if it no longer exists.
        """
        async with self._row_lock(subscription_id):
            subscription = await self.get_subscription(subscription_id)
            if subscription is None:
                return None
            mutate(subscription)
            await self.put_subscription(subscription)
            return subscription

    async def record_subscription_outcome(
        self,
        subscription_id: str,
        success: bool,
        at: datetime,
    ) -> Subscription | None:
        """Increment a subscription's success or failure counter.

        A subscription deleted in the meantime is left alone.
        """
        return await self.modify_subscription(
            subscription_id, lambda s: s.record_outcome(success, at)
        )
