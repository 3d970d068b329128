"""Qdrant storage client for Courier.

This module provides the main CourierStorage class that combines
all storage operations through mixins.

Example:
    ```python
    from courier.storage import CourierStorage

    async with CourierStorage(location=":memory:") as storage:
        await storage.put_subscription(subscription)
        matches = await storage.find_subscriptions_for_event(EventType.ORDER_CREATED)
    ```
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .base import COLLECTION_NAMES, StorageBase
from .deliveries import DeliveryMixin
from .events import EventMixin
from .subscriptions import SubscriptionMixin

if TYPE_CHECKING:
    from courier.config import Settings


class CourierStorage(SubscriptionMixin, EventMixin, DeliveryMixin, StorageBase):
    """Async Qdrant storage client for webhook state.

    Records are stored as payload-only points; every lookup is by
    deterministic point ID or by payload filter.

    This class combines functionality from multiple mixins:
    - SubscriptionMixin: put/get/list/find/delete/modify subscriptions
    - EventMixin: append-only event envelopes
    - DeliveryMixin: deliveries, claim leases, attempts, retention purge

    Attributes:
        client: Async Qdrant client instance.
    """

    @classmethod
    def from_settings(cls, settings: Settings) -> CourierStorage:
        return cls(
            url=settings.qdrant_url,
            api_key=settings.qdrant_api_key,
            location=settings.qdrant_location,
            prefix=settings.collection_prefix,
            max_scroll_limit=settings.storage_max_scroll_limit,
        )

    async def __aenter__(self) -> CourierStorage:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()


__all__ = [
    "CourierStorage",
    "COLLECTION_NAMES",
]
