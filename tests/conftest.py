"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest
from qdrant_client import AsyncQdrantClient

from courier.config import Settings
from courier.models import Delivery, EventType, Subscription
from courier.storage import CourierStorage

# Add tests directory to path so helpers can be imported from conftest
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

START = datetime(2026, 1, 5, 12, 0, 0, tzinfo=UTC)

SECRET = "whsec_" + "ab" * 24


class FakeClock:
    """Manually advanced clock injected into components under test."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class Subscriber:
    """Scripted webhook receiver for httpx.MockTransport.

    Each entry of ``responses`` answers one request: an int becomes a
    response with that status, an exception is raised. The last entry
    repeats once the script runs out.
    """

    def __init__(self, *responses: int | httpx.Response | Exception) -> None:
        self.requests: list[httpx.Request] = []
        self._responses = list(responses) or [200]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, int):
            return httpx.Response(item, text="ok" if item < 300 else "server error")
        return item

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def make_subscription(
    owner_id: str = "biz_1",
    event_types: list[EventType] | None = None,
    **kwargs: object,
) -> Subscription:
    fields: dict[str, object] = {
        "owner_id": owner_id,
        "url": "https://hooks.example.com/courier",
        "secret": SECRET,
        "event_types": event_types or [EventType.ORDER_CREATED],
        "created_at": START,
        "updated_at": START,
    }
    fields.update(kwargs)
    return Subscription.model_validate(fields)


def make_delivery(subscription: Subscription, **kwargs: object) -> Delivery:
    fields: dict[str, object] = {
        "subscription_id": subscription.id,
        "owner_id": subscription.owner_id,
        "event_id": "evt_0123456789abcdef",
        "event_type": EventType.ORDER_CREATED,
        "event_timestamp": START,
        "payload": {"order_id": "ord_1", "total": 99.5},
        "created_at": START,
        "updated_at": START,
    }
    fields.update(kwargs)
    return Delivery.model_validate(fields)


@pytest.fixture
def settings() -> Settings:
    """Settings for tests: defaults, in-memory storage, no env file."""
    return Settings(env="test", qdrant_location=":memory:", collection_prefix="test", _env_file=None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def storage() -> AsyncIterator[CourierStorage]:
    """Create an in-memory storage instance for testing.

    Uses qdrant-client's local mode with in-memory storage.
    """
    store = CourierStorage(prefix="test")
    store._client = AsyncQdrantClient(location=":memory:")
    await store._ensure_collections()
    store._collections_initialized = True

    yield store

    await store.close()
