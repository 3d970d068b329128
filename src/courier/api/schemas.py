"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from courier.models import Delivery, DeliveryAttempt, DeliveryPage, Subscription


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(extra="forbid")

    status: Literal["healthy", "unhealthy"]
    version: str
    storage_connected: bool
    delivery_pool_running: bool = False
    retry_scheduler_running: bool = False


class EventTypeInfo(BaseModel):
    """One entry of the event catalog."""

    model_config = ConfigDict(extra="forbid")

    event: str
    description: str


class EventCategoryResponse(BaseModel):
    """Event types of one category."""

    model_config = ConfigDict(extra="forbid")

    category: str
    events: list[EventTypeInfo]


class EventCatalogResponse(BaseModel):
    """Event types available for subscription, grouped by category."""

    model_config = ConfigDict(extra="forbid")

    categories: list[EventCategoryResponse]


class CreateSubscriptionRequest(BaseModel):
    """Request body for creating a subscription.

    Attributes:
        url: http(s) endpoint receiving deliveries.
        event_types: Event type names to subscribe to.
        description: Optional description.
    """

    model_config = ConfigDict(extra="forbid")

    url: str = Field(min_length=1, description="Endpoint receiving deliveries")
    event_types: list[str] = Field(description="Event types to subscribe to")
    description: str | None = Field(default=None, max_length=500)


class UpdateSubscriptionRequest(BaseModel):
    """Request body for updating a subscription. Unset fields are kept."""

    model_config = ConfigDict(extra="forbid")

    url: str | None = None
    event_types: list[str] | None = None
    description: str | None = Field(default=None, max_length=500)
    active: bool | None = None


class SubscriptionResponse(BaseModel):
    """A subscription without its secret."""

    model_config = ConfigDict(extra="forbid")

    id: str
    url: str
    event_types: list[str]
    description: str | None = None
    active: bool
    success_count: int
    failure_count: int
    last_triggered_at: datetime | None = None
    secret_rotated_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> SubscriptionResponse:
        return cls(
            id=subscription.id,
            url=subscription.url,
            event_types=[e.value for e in subscription.event_types],
            description=subscription.description,
            active=subscription.active,
            success_count=subscription.success_count,
            failure_count=subscription.failure_count,
            last_triggered_at=subscription.last_triggered_at,
            secret_rotated_at=subscription.secret_rotated_at,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
        )


class SubscriptionSecretResponse(SubscriptionResponse):
    """A subscription together with its secret, returned on create and rotate."""

    secret: str

    @classmethod
    def from_registered(cls, subscription: Subscription, secret: str) -> SubscriptionSecretResponse:
        base = SubscriptionResponse.from_subscription(subscription)
        return cls(**base.model_dump(), secret=secret)


class SubscriptionListResponse(BaseModel):
    """All subscriptions of the caller."""

    model_config = ConfigDict(extra="forbid")

    subscriptions: list[SubscriptionResponse]
    total: int


class DeliveryResponse(BaseModel):
    """Summary of a delivery."""

    model_config = ConfigDict(extra="forbid")

    id: str
    subscription_id: str
    event_id: str
    event_type: str
    status: str
    attempts: int
    next_retry_at: datetime | None = None
    response_status: int | None = None
    response_body: str | None = None
    error: str | None = None
    failure_reason: str | None = None
    is_test: bool = False
    redelivery_of: str | None = None
    created_at: datetime
    updated_at: datetime
    delivered_at: datetime | None = None

    @classmethod
    def from_delivery(cls, delivery: Delivery) -> DeliveryResponse:
        return cls(
            id=delivery.id,
            subscription_id=delivery.subscription_id,
            event_id=delivery.event_id,
            event_type=delivery.event_type.value,
            status=delivery.status.value,
            attempts=delivery.attempts,
            next_retry_at=delivery.next_retry_at,
            response_status=delivery.response_status,
            response_body=delivery.response_body,
            error=delivery.error,
            failure_reason=delivery.failure_reason.value if delivery.failure_reason else None,
            is_test=delivery.is_test,
            redelivery_of=delivery.redelivery_of,
            created_at=delivery.created_at,
            updated_at=delivery.updated_at,
            delivered_at=delivery.delivered_at,
        )


class AttemptResponse(BaseModel):
    """One HTTP attempt of a delivery."""

    model_config = ConfigDict(extra="forbid")

    attempt_number: int
    outcome: str
    response_status: int | None = None
    response_body: str | None = None
    error: str | None = None
    failure_reason: str | None = None
    duration_ms: int
    started_at: datetime
    finished_at: datetime

    @classmethod
    def from_attempt(cls, attempt: DeliveryAttempt) -> AttemptResponse:
        return cls(
            attempt_number=attempt.attempt_number,
            outcome=attempt.outcome,
            response_status=attempt.response_status,
            response_body=attempt.response_body,
            error=attempt.error,
            failure_reason=attempt.failure_reason.value if attempt.failure_reason else None,
            duration_ms=attempt.duration_ms,
            started_at=attempt.started_at,
            finished_at=attempt.finished_at,
        )


class DeliveryDetailResponse(DeliveryResponse):
    """A delivery with its payload and attempt history."""

    payload: Any = None
    attempt_log: list[AttemptResponse] = Field(default_factory=list)


class DeliveryListResponse(BaseModel):
    """One page of delivery history."""

    model_config = ConfigDict(extra="forbid")

    deliveries: list[DeliveryResponse]
    total: int
    page: int
    limit: int
    pages: int

    @classmethod
    def from_page(cls, page: DeliveryPage) -> DeliveryListResponse:
        return cls(
            deliveries=[DeliveryResponse.from_delivery(d) for d in page.items],
            total=page.total,
            page=page.page,
            limit=page.limit,
            pages=page.pages,
        )


class TriggerEventRequest(BaseModel):
    """Request body for triggering an event for the caller's subscriptions."""

    model_config = ConfigDict(extra="forbid")

    event_type: str = Field(min_length=1, description="Event type name")
    payload: Any = Field(default=None, description="JSON payload delivered as 'data'")


class DispatchResponse(BaseModel):
    """Result of triggering an event."""

    model_config = ConfigDict(extra="forbid")

    event_id: str | None = None
    event_type: str | None = None
    dispatched_count: int
    delivery_ids: list[str] = Field(default_factory=list)
