"""Delivery ledger: read access to delivery history and retention.

Deliveries and their attempts are written by the dispatcher and the
worker; the ledger only reads them back, scoped to the owning tenant,
and purges expired terminal records.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from courier.exceptions import NotFoundError, ValidationError
from courier.logging import get_logger
from courier.models import Delivery, DeliveryAttempt, DeliveryPage

if TYPE_CHECKING:
    from courier.storage import CourierStorage

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class DeliveryLedger:
    """Tenant-scoped queries over deliveries and attempts."""

    def __init__(self, storage: CourierStorage) -> None:
        self._storage = storage

    async def list_deliveries(
        self,
        subscription_id: str,
        owner_id: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> DeliveryPage:
        """Get one page of a subscription's deliveries, newest first.

        Args:
            subscription_id: Subscription whose history to list.
            owner_id: Caller's tenant.
            page: 1-indexed page number.
            limit: Page size, at most 100.

        The history of a deleted subscription stays listable by the owner
        of its deliveries.

        Raises:
            ValidationError: If page or limit is out of range.
            NotFoundError: If the subscription belongs to someone else, or
                is unknown and has no deliveries of the caller.
        """
        if page < 1:
            raise ValidationError("page", "must be at least 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError("limit", f"must be between 1 and {MAX_PAGE_SIZE}")

        subscription = await self._storage.get_subscription(subscription_id)
        if subscription is not None and subscription.owner_id != owner_id:
            raise NotFoundError("subscription", subscription_id)

        items, total = await self._storage.list_deliveries_for_subscription(
            subscription_id,
            owner_id=owner_id,
            offset=(page - 1) * limit,
            limit=limit,
        )
        if subscription is None and total == 0:
            raise NotFoundError("subscription", subscription_id)
        return DeliveryPage(items=items, total=total, page=page, limit=limit)

    async def get_delivery(self, delivery_id: str, owner_id: str) -> Delivery:
        """Get one of the owner's deliveries.

        Raises:
            NotFoundError: If missing or owned by someone else.
        """
        delivery = await self._storage.get_delivery(delivery_id)
        if delivery is None or delivery.owner_id != owner_id:
            raise NotFoundError("delivery", delivery_id)
        return delivery

    async def list_attempts(self, delivery_id: str, owner_id: str) -> list[DeliveryAttempt]:
        """Get every HTTP attempt of a delivery, in order."""
        await self.get_delivery(delivery_id, owner_id)
        return await self._storage.list_attempts(delivery_id)

    async def purge(self, older_than: datetime) -> int:
        """Delete terminal deliveries last changed before ``older_than``.

        Pending and retrying deliveries are never purged.

        Returns:
            Number of deliveries removed.
        """
        purged = await self._storage.purge_terminal_deliveries(older_than)
        if purged:
            logger.info("Purged expired deliveries", count=purged, older_than=older_than.isoformat())
        return purged


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "DeliveryLedger",
    "MAX_PAGE_SIZE",
]
