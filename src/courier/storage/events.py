"""Event envelope storage: an append-only log of triggered events."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from qdrant_client import models

from courier.storage.retry import qdrant_retry

if TYPE_CHECKING:
    from courier.models import EventEnvelope


class EventMixin:
    """Mixin providing event envelope operations for CourierStorage."""

    _collection_name: Any
    _point_id: Any
    _to_point: Any
    _to_payload: Any
    _retrieve: Any
    client: Any

    @qdrant_retry
    async def put_event(self, event: EventEnvelope) -> str:
        """Append an event envelope. Envelopes are never updated."""
        await self.client.upsert(
            collection_name=self._collection_name("events"),
            points=[self._to_point(event.id, self._to_payload(event))],
        )
        return event.id

    @qdrant_retry
    async def get_event(self, event_id: str) -> EventEnvelope | None:
        from courier.models import EventEnvelope

        result: EventEnvelope | None = await self._retrieve("events", event_id, EventEnvelope)
        return result

    @qdrant_retry
    async def delete_events(self, event_ids: list[str]) -> None:
        if not event_ids:
            return
        await self.client.delete(
            collection_name=self._collection_name("events"),
            points_selector=models.PointIdsList(points=[self._point_id(e) for e in event_ids]),
        )
