"""Delivery and delivery attempt storage operations.

Deliveries carry epoch-second mirrors of their datetime fields
(``next_retry_ts``, ``created_ts``, ``updated_ts``) so the reaper and the
retention purge can use range filters.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from qdrant_client import models

from courier.exceptions import StaleClaimError
from courier.storage.retry import qdrant_retry

if TYPE_CHECKING:
    from courier.models import Delivery, DeliveryAttempt


class DeliveryMixin:
    """Mixin providing delivery and attempt operations for CourierStorage."""

    _collection_name: Any
    _point_id: Any
    _to_point: Any
    _to_payload: Any
    _retrieve: Any
    _scroll_all: Any
    _scroll_ordered: Any
    _match: Any
    _row_lock: Any
    client: Any
    delete_events: Any

    def _delivery_payload(self, delivery: Delivery) -> dict[str, Any]:
        payload: dict[str, Any] = self._to_payload(delivery)
        payload["next_retry_ts"] = (
            delivery.next_retry_at.timestamp() if delivery.next_retry_at else None
        )
        payload["created_ts"] = delivery.created_at.timestamp()
        payload["updated_ts"] = delivery.updated_at.timestamp()
        return payload

    @qdrant_retry
    async def put_delivery(self, delivery: Delivery) -> str:
        """Insert or replace a delivery without any claim check."""
        await self.client.upsert(
            collection_name=self._collection_name("deliveries"),
            points=[self._to_point(delivery.id, self._delivery_payload(delivery))],
        )
        return delivery.id

    @qdrant_retry
    async def put_deliveries(self, deliveries: list[Delivery]) -> list[str]:
        """Insert several deliveries in one batch."""
        if not deliveries:
            return []
        await self.client.upsert(
            collection_name=self._collection_name("deliveries"),
            points=[self._to_point(d.id, self._delivery_payload(d)) for d in deliveries],
        )
        return [d.id for d in deliveries]

    @qdrant_retry
    async def get_delivery(self, delivery_id: str) -> Delivery | None:
        """Get a delivery by ID, regardless of owner."""
        from courier.models import Delivery

        result: Delivery | None = await self._retrieve("deliveries", delivery_id, Delivery)
        return result

    async def claim_delivery(
        self,
        delivery_id: str,
        now: datetime,
        lease_seconds: float,
    ) -> Delivery | None:
        """Take the claim lease on a delivery.

        Returns:
            The claimed delivery carrying a fresh ``claim_token``, or None
            if it does not exist or is not claimable at ``now``.
        """
        async with self._row_lock(delivery_id):
            delivery = await self.get_delivery(delivery_id)
            if delivery is None or not delivery.is_claimable(now):
                return None
            delivery.claim(now + timedelta(seconds=lease_seconds))
            await self.put_delivery(delivery)
            return delivery

    async def complete_delivery(self, delivery: Delivery) -> Delivery:
        """Write a worker's result and release its claim.

        Raises:
            StaleClaimError: If the stored claim token no longer matches,
                i.e. the lease expired and another worker took over.
        """
        async with self._row_lock(delivery.id):
            stored = await self.get_delivery(delivery.id)
            if stored is None or stored.claim_token != delivery.claim_token:
                raise StaleClaimError(delivery.id)
            delivery.release_claim()
            await self.put_delivery(delivery)
            return delivery

    @qdrant_retry
    async def list_deliveries_for_subscription(
        self,
        subscription_id: str,
        owner_id: str | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Delivery], int]:
        """Get one page of a subscription's deliveries, newest first.

        Ordering happens in Qdrant on ``created_ts``, so pages stay exact
        however many deliveries the subscription has.

        Args:
            subscription_id: Subscription whose deliveries to list.
            owner_id: Restrict to deliveries of one tenant.
            offset: Number of newer deliveries to skip.
            limit: Page size.

        Returns:
            The page of deliveries and the total number of deliveries.
        """
        from courier.models import Delivery

        conditions: list[models.Condition] = [self._match("subscription_id", subscription_id)]
        if owner_id is not None:
            conditions.append(self._match("owner_id", owner_id))
        scroll_filter = models.Filter(must=conditions)

        count = await self.client.count(
            collection_name=self._collection_name("deliveries"),
            count_filter=scroll_filter,
            exact=True,
        )
        if offset >= count.count:
            return [], count.count
        deliveries: list[Delivery] = await self._scroll_ordered(
            "deliveries", scroll_filter, Delivery, "created_ts", offset=offset, limit=limit
        )
        return deliveries, count.count

    @qdrant_retry
    async def find_due_retries(self, now: datetime, limit: int | None = None) -> list[Delivery]:
        """Get RETRYING deliveries whose ``next_retry_at`` has passed."""
        from courier.models import Delivery, DeliveryStatus

        scroll_filter = models.Filter(
            must=[
                self._match("status", DeliveryStatus.RETRYING.value),
                models.FieldCondition(key="next_retry_ts", range=models.Range(lte=now.timestamp())),
            ]
        )
        deliveries: list[Delivery] = await self._scroll_all(
            "deliveries", scroll_filter, Delivery, limit
        )
        deliveries.sort(key=lambda d: d.next_retry_at or d.updated_at)
        return deliveries

    @qdrant_retry
    async def find_stale_pending(
        self,
        cutoff: datetime,
        limit: int | None = None,
    ) -> list[Delivery]:
        """Get PENDING deliveries not touched since ``cutoff``."""
        from courier.models import Delivery, DeliveryStatus

        scroll_filter = models.Filter(
            must=[
                self._match("status", DeliveryStatus.PENDING.value),
                models.FieldCondition(key="updated_ts", range=models.Range(lte=cutoff.timestamp())),
            ]
        )
        deliveries: list[Delivery] = await self._scroll_all(
            "deliveries", scroll_filter, Delivery, limit
        )
        deliveries.sort(key=lambda d: d.created_at)
        return deliveries

    @qdrant_retry
    async def put_attempt(self, attempt: DeliveryAttempt) -> str:
        """Append a delivery attempt to the ledger."""
        await self.client.upsert(
            collection_name=self._collection_name("attempts"),
            points=[self._to_point(attempt.id, self._to_payload(attempt))],
        )
        return attempt.id

    @qdrant_retry
    async def list_attempts(self, delivery_id: str) -> list[DeliveryAttempt]:
        """Get all attempts of a delivery in attempt order."""
        from courier.models import DeliveryAttempt

        attempts: list[DeliveryAttempt] = await self._scroll_all(
            "attempts",
            models.Filter(must=[self._match("delivery_id", delivery_id)]),
            DeliveryAttempt,
        )
        attempts.sort(key=lambda a: (a.attempt_number, a.started_at))
        return attempts

    async def purge_terminal_deliveries(self, before: datetime) -> int:
        """Delete terminal deliveries last updated before ``before``.

        Their attempts go with them, as do events left without any
        delivery.

        Returns:
            Number of deliveries deleted.
        """
        from courier.models import Delivery, DeliveryStatus

        scroll_filter = models.Filter(
            must=[
                models.FieldCondition(
                    key="status",
                    match=models.MatchAny(
                        any=[DeliveryStatus.SUCCESS.value, DeliveryStatus.FAILED.value]
                    ),
                ),
                models.FieldCondition(key="updated_ts", range=models.Range(lt=before.timestamp())),
            ]
        )
        expired: list[Delivery] = await self._scroll_all("deliveries", scroll_filter, Delivery)
        if not expired:
            return 0

        delivery_ids = [d.id for d in expired]
        await self._delete_points("deliveries", delivery_ids)
        await self._delete_by_filter(
            "attempts",
            models.Filter(
                must=[
                    models.FieldCondition(
                        key="delivery_id", match=models.MatchAny(any=delivery_ids)
                    )
                ]
            ),
        )

        orphaned: list[str] = []
        for event_id in {d.event_id for d in expired}:
            if await self._count("deliveries", self._match("event_id", event_id)) == 0:
                orphaned.append(event_id)
        await self.delete_events(orphaned)

        return len(expired)

    @qdrant_retry
    async def _delete_points(self, kind: str, record_ids: list[str]) -> None:
        await self.client.delete(
            collection_name=self._collection_name(kind),
            points_selector=models.PointIdsList(points=[self._point_id(r) for r in record_ids]),
        )

    @qdrant_retry
    async def _delete_by_filter(self, kind: str, delete_filter: models.Filter) -> None:
        await self.client.delete(
            collection_name=self._collection_name(kind),
            points_selector=models.FilterSelector(filter=delete_filter),
        )

    @qdrant_retry
    async def _count(self, kind: str, condition: models.Condition) -> int:
        result = await self.client.count(
            collection_name=self._collection_name(kind),
            count_filter=models.Filter(must=[condition]),
            exact=True,
        )
        return int(result.count)
