"""Subscription model: a tenant's endpoint plus the events it wants."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from .base import generate_id, utc_now
from .events import EventType


class Subscription(BaseModel):
    """A registered webhook endpoint.

    Attributes:
        id: Unique identifier for this subscription.
        owner_id: Tenant that owns the subscription.
        url: http(s) endpoint receiving deliveries.
        secret: HMAC key used to sign deliveries. Only revealed on
            create and rotate.
        event_types: Event types this subscription receives.
        description: Optional human-readable description.
        active: Inactive subscriptions receive nothing and abort
            scheduled retries.
        success_count: Lifetime successful deliveries.
        failure_count: Lifetime failed attempts.
        last_triggered_at: When a delivery attempt last finished.
        secret_rotated_at: When the secret was last rotated.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("sub"))
    owner_id: str = Field(description="Tenant that owns this subscription")
    url: str = Field(description="http(s) endpoint receiving events")
    secret: str = Field(repr=False, description="Shared secret for HMAC-SHA256 signatures")
    event_types: list[EventType] = Field(min_length=1, description="Subscribed event types")
    description: str | None = Field(default=None, description="Human-readable description")
    active: bool = Field(default=True, description="Whether the subscription receives events")
    success_count: int = Field(default=0, ge=0)
    failure_count: int = Field(default=0, ge=0)
    last_triggered_at: datetime | None = Field(default=None)
    secret_rotated_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def subscribes_to(self, event_type: EventType) -> bool:
        """Check if this subscription is active and receives the given event type."""
        return self.active and event_type in self.event_types

    def record_outcome(self, success: bool, at: datetime) -> None:
        """Bump the lifetime counters after a delivery attempt."""
        if success:
            self.success_count += 1
        else:
            self.failure_count += 1
        self.last_triggered_at = at


class SubscriptionUpdate(BaseModel):
    """Partial update of a subscription's mutable fields.

    Fields left unset are not changed.
    """

    model_config = ConfigDict(extra="forbid")

    url: str | None = None
    event_types: list[str] | None = None
    description: str | None = None
    active: bool | None = None


__all__ = [
    "Subscription",
    "SubscriptionUpdate",
]
