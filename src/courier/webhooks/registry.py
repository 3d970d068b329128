"""Subscription registry: tenant-scoped management of webhook endpoints.

Every operation takes the caller's ``owner_id``. A subscription that
belongs to another owner is reported exactly like a missing one.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Any, NamedTuple

from pydantic import HttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from courier.exceptions import NotFoundError, ValidationError
from courier.logging import get_logger
from courier.models import EventType, Subscription, SubscriptionUpdate, utc_now

if TYPE_CHECKING:
    from courier.storage import CourierStorage

logger = get_logger(__name__)

SECRET_PREFIX = "whsec_"

_http_url = TypeAdapter(HttpUrl)


class RegisteredSubscription(NamedTuple):
    """A subscription together with its plaintext secret.

    Only returned by create and rotate; other reads never expose the
    secret to API callers.
    """

    subscription: Subscription
    secret: str


def generate_secret() -> str:
    """Generate a new signing secret (``whsec_`` + 48 hex characters)."""
    return f"{SECRET_PREFIX}{secrets.token_hex(24)}"


def validate_url(url: str) -> str:
    """Check that ``url`` is an absolute http(s) URL.

    Returns:
        The URL with surrounding whitespace removed.

    Raises:
        ValidationError: If the URL does not parse or uses another scheme.
    """
    candidate = url.strip() if isinstance(url, str) else url
    try:
        _http_url.validate_python(candidate)
    except PydanticValidationError:
        raise ValidationError("url", f"must be a valid http(s) URL, got {url!r}") from None
    return str(candidate)


def validate_event_types(values: Iterable[str | EventType]) -> list[EventType]:
    """Resolve event type names, rejecting unknown and system types.

    Duplicates collapse, first occurrence wins.

    Raises:
        ValidationError: If the list is empty or contains an invalid type.
    """
    resolved: list[EventType] = []
    for value in values:
        event_type = EventType.parse(value)
        if event_type is None:
            raise ValidationError("event_types", f"unknown event type: {value}")
        if not event_type.subscribable:
            raise ValidationError("event_types", f"event type cannot be subscribed to: {value}")
        if event_type not in resolved:
            resolved.append(event_type)

    if not resolved:
        raise ValidationError("event_types", "at least one event type is required")
    return resolved


class SubscriptionRegistry:
    """Creates, updates and removes subscriptions.

    The registry only accesses data; it never performs HTTP calls.

    Example:
        ```python
        registry = SubscriptionRegistry(storage)
        created = await registry.create(
            owner_id="biz_1",
            url="https://example.com/hooks",
            event_types=["order.created"],
        )
        print(created.secret)  # shown once
        ```
    """

    def __init__(
        self,
        storage: CourierStorage,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage
        self._clock = clock

    async def create(
        self,
        owner_id: str,
        url: str,
        event_types: Iterable[str | EventType],
        description: str | None = None,
    ) -> RegisteredSubscription:
        """Register a new active subscription.

        Args:
            owner_id: Tenant creating the subscription.
            url: http(s) endpoint to deliver to.
            event_types: Event types to subscribe to.
            description: Optional description.

        Returns:
            The stored subscription and its secret.

        Raises:
            ValidationError: If the URL or an event type is invalid.
        """
        clean_url = validate_url(url)
        resolved = validate_event_types(event_types)
        secret = generate_secret()
        now = self._clock()

        subscription = Subscription(
            owner_id=owner_id,
            url=clean_url,
            secret=secret,
            event_types=resolved,
            description=description,
            created_at=now,
            updated_at=now,
        )
        await self._storage.put_subscription(subscription)

        logger.info(
            "Subscription created",
            subscription_id=subscription.id,
            owner_id=owner_id,
            event_types=[e.value for e in resolved],
        )
        return RegisteredSubscription(subscription=subscription, secret=secret)

    async def get(self, subscription_id: str, owner_id: str) -> Subscription:
        """Get one of the owner's subscriptions.

        Raises:
            NotFoundError: If missing or owned by someone else.
        """
        subscription = await self._storage.get_subscription(subscription_id)
        if subscription is None or subscription.owner_id != owner_id:
            raise NotFoundError("subscription", subscription_id)
        return subscription

    async def list_subscriptions(self, owner_id: str) -> list[Subscription]:
        """List the owner's subscriptions, newest first."""
        return await self._storage.list_subscriptions(owner_id)

    async def update(
        self,
        subscription_id: str,
        owner_id: str,
        changes: SubscriptionUpdate | Mapping[str, Any],
    ) -> Subscription:
        """Change the URL, event types, description or active flag.

        Raises:
            ValidationError: If a field is unknown or a new value is invalid.
            NotFoundError: If missing or owned by someone else.
        """
        update = self._coerce_update(changes)
        fields = update.model_dump(exclude_unset=True)

        new_url = validate_url(fields["url"]) if fields.get("url") is not None else None
        new_types = (
            validate_event_types(fields["event_types"])
            if fields.get("event_types") is not None
            else None
        )
        now = self._clock()

        def apply(subscription: Subscription) -> None:
            if subscription.owner_id != owner_id:
                raise NotFoundError("subscription", subscription_id)
            if new_url is not None:
                subscription.url = new_url
            if new_types is not None:
                subscription.event_types = new_types
            if "description" in fields:
                subscription.description = fields["description"]
            if fields.get("active") is not None:
                subscription.active = fields["active"]
            subscription.updated_at = now

        updated = await self._storage.modify_subscription(subscription_id, apply)
        if updated is None:
            raise NotFoundError("subscription", subscription_id)

        logger.info(
            "Subscription updated",
            subscription_id=subscription_id,
            owner_id=owner_id,
            fields=sorted(fields),
        )
        return updated

    async def rotate_secret(self, subscription_id: str, owner_id: str) -> RegisteredSubscription:
        """Replace the signing secret.

        Deliveries attempted after this call, including pending retries,
        are signed with the new secret.

        Raises:
            NotFoundError: If missing or owned by someone else.
        """
        secret = generate_secret()
        now = self._clock()

        def apply(subscription: Subscription) -> None:
            if subscription.owner_id != owner_id:
                raise NotFoundError("subscription", subscription_id)
            subscription.secret = secret
            subscription.secret_rotated_at = now
            subscription.updated_at = now

        updated = await self._storage.modify_subscription(subscription_id, apply)
        if updated is None:
            raise NotFoundError("subscription", subscription_id)

        logger.info("Subscription secret rotated", subscription_id=subscription_id, owner_id=owner_id)
        return RegisteredSubscription(subscription=updated, secret=secret)

    async def delete(self, subscription_id: str, owner_id: str) -> None:
        """Delete a subscription. Its delivery history is kept.

        Raises:
            NotFoundError: If missing or owned by someone else.
        """
        await self.get(subscription_id, owner_id)
        await self._storage.delete_subscription(subscription_id)
        logger.info("Subscription deleted", subscription_id=subscription_id, owner_id=owner_id)

    @staticmethod
    def _coerce_update(changes: SubscriptionUpdate | Mapping[str, Any]) -> SubscriptionUpdate:
        if isinstance(changes, SubscriptionUpdate):
            return changes
        try:
            return SubscriptionUpdate.model_validate(dict(changes))
        except PydanticValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"]) or "update"
            raise ValidationError(field, first["msg"]) from None


__all__ = [
    "RegisteredSubscription",
    "SECRET_PREFIX",
    "SubscriptionRegistry",
    "generate_secret",
    "validate_event_types",
    "validate_url",
]
