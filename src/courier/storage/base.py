"""Base storage class and helpers.

Contains client lifecycle, collection management and the shared
serialization helpers used by the storage mixins.
"""

from __future__ import annotations

import asyncio
import hashlib
import weakref
from typing import Any, TypeVar

from pydantic import BaseModel
from qdrant_client import AsyncQdrantClient, models

ModelT = TypeVar("ModelT", bound=BaseModel)

# Collection suffixes by record kind
COLLECTION_NAMES = {
    "subscriptions": "subscriptions",
    "events": "events",
    "deliveries": "deliveries",
    "attempts": "delivery_attempts",
}

# Keyword payload indexes per collection
KEYWORD_INDEXES: dict[str, tuple[str, ...]] = {
    "subscriptions": ("owner_id", "event_types"),
    "events": ("event_type", "owner_id"),
    "deliveries": ("owner_id", "subscription_id", "event_id", "status"),
    "attempts": ("delivery_id", "owner_id"),
}

# Float payload indexes (epoch seconds mirrors of datetime fields)
FLOAT_INDEXES: dict[str, tuple[str, ...]] = {
    "deliveries": ("next_retry_ts", "created_ts", "updated_ts"),
}

# Fields derived at write time and stripped on read
DERIVED_FIELDS = ("next_retry_ts", "created_ts", "updated_ts")

# Records carry no embeddings; Qdrant still requires a vector per point
PLACEHOLDER_VECTOR = [0.0]


class StorageBase:
    """Base class for Courier storage with initialization and helpers.

    Provides:
    - Client initialization and lifecycle management
    - Collection creation and indexing
    - Point ID derivation
    - Payload serialization/deserialization
    - Per-record locks used for single-row read-modify-write operations
    """

    def __init__(
        self,
        url: str = "http://localhost:6333",
        api_key: str | None = None,
        location: str | None = None,
        prefix: str = "courier",
        max_scroll_limit: int = 10000,
    ) -> None:
        """Initialize storage client.

        Args:
            url: Qdrant server URL.
            api_key: Qdrant API key.
            location: Local Qdrant location (":memory:" or a path); overrides url.
            prefix: Collection name prefix.
            max_scroll_limit: Upper bound on records fetched by one scroll.
        """
        self._url = url
        self._api_key = api_key
        self._location = location
        self._prefix = prefix
        self._max_scroll_limit = max_scroll_limit
        self._client: AsyncQdrantClient | None = None
        self._collections_initialized = False
        self._row_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _row_lock(self, record_id: str) -> asyncio.Lock:
        """Get the lock guarding one record's read-modify-write.

        Locks live only while some coroutine holds or awaits them.
        """
        lock = self._row_locks.get(record_id)
        if lock is None:
            lock = asyncio.Lock()
            self._row_locks[record_id] = lock
        return lock

    @property
    def client(self) -> AsyncQdrantClient:
        """Get the Qdrant client, raising if not initialized."""
        if self._client is None:
            raise RuntimeError("Storage not initialized. Call initialize() first.")
        return self._client

    async def initialize(self) -> None:
        """Initialize the storage client and ensure collections exist."""
        if self._location is not None:
            self._client = AsyncQdrantClient(location=self._location)
        else:
            self._client = AsyncQdrantClient(url=self._url, api_key=self._api_key)
        await self._ensure_collections()
        self._collections_initialized = True

    async def close(self) -> None:
        """Close the storage client connection."""
        if self._client is not None:
            await self._client.close()
            self._client = None
            self._collections_initialized = False

    def _collection_name(self, kind: str) -> str:
        """Get full collection name with prefix."""
        return f"{self._prefix}_{COLLECTION_NAMES[kind]}"

    @staticmethod
    def _point_id(record_id: str) -> str:
        """Convert a record ID to a valid Qdrant point ID.

        Qdrant requires point IDs to be UUIDs or unsigned integers.
        We hash the record ID to create a deterministic UUID-format string.
        """
        h = hashlib.sha256(record_id.encode()).hexdigest()[:32]
        return f"{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"

    async def _ensure_collections(self) -> None:
        """Ensure all required collections exist with payload indexes."""
        collections = await self.client.get_collections()
        existing = {c.name for c in collections.collections}

        for kind in COLLECTION_NAMES:
            collection_name = self._collection_name(kind)
            if collection_name in existing:
                continue
            await self.client.create_collection(
                collection_name=collection_name,
                vectors_config=models.VectorParams(
                    size=len(PLACEHOLDER_VECTOR),
                    distance=models.Distance.DOT,
                ),
            )
            await self._create_indexes(kind, collection_name)

    async def _create_indexes(self, kind: str, collection_name: str) -> None:
        """Create payload indexes for efficient filtering."""
        for field_name in KEYWORD_INDEXES.get(kind, ()):
            await self.client.create_payload_index(
                collection_name=collection_name,
                field_name=field_name,
                field_schema=models.PayloadSchemaType.KEYWORD,
            )
        for field_name in FLOAT_INDEXES.get(kind, ()):
            await self.client.create_payload_index(
                collection_name=collection_name,
                field_name=field_name,
                field_schema=models.PayloadSchemaType.FLOAT,
            )

    def _to_point(self, record_id: str, payload: dict[str, Any]) -> models.PointStruct:
        return models.PointStruct(
            id=self._point_id(record_id),
            vector=list(PLACEHOLDER_VECTOR),
            payload=payload,
        )

    @staticmethod
    def _to_payload(record: BaseModel) -> dict[str, Any]:
        """Convert a model to a Qdrant payload."""
        return record.model_dump(mode="json")

    @staticmethod
    def _from_payload(payload: dict[str, Any], model_class: type[ModelT]) -> ModelT:
        """Convert a Qdrant payload back to a model."""
        data = {k: v for k, v in payload.items() if k not in DERIVED_FIELDS}
        return model_class.model_validate(data)

    async def _retrieve(
        self,
        kind: str,
        record_id: str,
        model_class: type[ModelT],
    ) -> ModelT | None:
        results = await self.client.retrieve(
            collection_name=self._collection_name(kind),
            ids=[self._point_id(record_id)],
            with_payload=True,
        )
        if not results or results[0].payload is None:
            return None
        return self._from_payload(results[0].payload, model_class)

    async def _scroll_all(
        self,
        kind: str,
        scroll_filter: models.Filter,
        model_class: type[ModelT],
        limit: int | None = None,
        bounded: bool = True,
    ) -> list[ModelT]:
        """Scroll matching records in point-id order.

        Args:
            kind: Collection kind.
            scroll_filter: Records to match.
            model_class: Model to parse each payload into.
            limit: Maximum number of records.
            bounded: Also stop at the configured scroll maximum. Callers that
                must see every match (fan-out) pass False.
        """
        cap = limit
        if bounded:
            cap = min(limit, self._max_scroll_limit) if limit is not None else self._max_scroll_limit
        records: list[ModelT] = []
        offset: Any = None

        while cap is None or len(records) < cap:
            batch = 256 if cap is None else min(256, cap - len(records))
            points, offset = await self.client.scroll(
                collection_name=self._collection_name(kind),
                scroll_filter=scroll_filter,
                limit=batch,
                offset=offset,
                with_payload=True,
            )
            records.extend(
                self._from_payload(p.payload, model_class) for p in points if p.payload is not None
            )
            if offset is None:
                break

        return records

    async def _scroll_ordered(
        self,
        kind: str,
        scroll_filter: models.Filter,
        model_class: type[ModelT],
        order_key: str,
        offset: int = 0,
        limit: int = 20,
    ) -> list[ModelT]:
        """Get one page of matching records, ordered by a float payload field, descending.

        Qdrant does not combine ``order_by`` with offset paging, so the page
        is cut from the first ``offset + limit`` ordered records.
        """
        points, _ = await self.client.scroll(
            collection_name=self._collection_name(kind),
            scroll_filter=scroll_filter,
            limit=offset + limit,
            order_by=models.OrderBy(key=order_key, direction=models.Direction.DESC),
            with_payload=True,
        )
        return [
            self._from_payload(p.payload, model_class)
            for p in points[offset:]
            if p.payload is not None
        ]

    @staticmethod
    def _match(key: str, value: Any) -> models.FieldCondition:
        return models.FieldCondition(key=key, match=models.MatchValue(value=value))
