"""Event types and the immutable event envelope.

Event types form a closed enumeration. Every member must have a catalog
entry (category and description); a missing entry fails at import time
rather than silently dropping events at runtime.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field

from .base import generate_id, utc_now


class EventCategory(str, Enum):
    """Grouping of event types for the management UI."""

    ORDERS = "orders"
    PAYMENTS = "payments"
    PRODUCTS = "products"
    RFQ = "rfq"
    USERS = "users"
    INQUIRIES = "inquiries"
    LEADS = "leads"
    REVIEWS = "reviews"
    SYSTEM = "system"


class EventType(str, Enum):
    """Business events that can be delivered to subscribers."""

    ORDER_CREATED = "order.created"
    ORDER_CONFIRMED = "order.confirmed"
    ORDER_SHIPPED = "order.shipped"
    ORDER_DELIVERED = "order.delivered"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_REFUNDED = "order.refunded"

    PAYMENT_RECEIVED = "payment.received"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"

    PRODUCT_CREATED = "product.created"
    PRODUCT_UPDATED = "product.updated"
    PRODUCT_DELETED = "product.deleted"
    PRODUCT_STOCK_LOW = "product.stock_low"
    PRODUCT_OUT_OF_STOCK = "product.out_of_stock"

    RFQ_CREATED = "rfq.created"
    RFQ_QUOTATION_RECEIVED = "rfq.quotation_received"
    RFQ_AWARDED = "rfq.awarded"
    RFQ_CLOSED = "rfq.closed"

    USER_REGISTERED = "user.registered"
    USER_VERIFIED = "user.verified"
    BUSINESS_VERIFIED = "business.verified"

    INQUIRY_RECEIVED = "inquiry.received"
    INQUIRY_RESPONDED = "inquiry.responded"

    LEAD_CAPTURED = "lead.captured"
    LEAD_CONVERTED = "lead.converted"

    REVIEW_CREATED = "review.created"
    REVIEW_APPROVED = "review.approved"

    # Synthetic event used by test deliveries; not subscribable
    WEBHOOK_TEST = "webhook.test"

    @classmethod
    def parse(cls, value: str | EventType) -> EventType | None:
        """Resolve a string to an event type, or None if unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None

    @property
    def info(self) -> EventInfo:
        """Catalog entry for this event type."""
        return EVENT_CATALOG[self]

    @property
    def category(self) -> EventCategory:
        return EVENT_CATALOG[self].category

    @property
    def subscribable(self) -> bool:
        return EVENT_CATALOG[self].subscribable


class EventInfo(NamedTuple):
    """Catalog metadata for one event type."""

    category: EventCategory
    description: str
    subscribable: bool = True


EVENT_CATALOG: dict[EventType, EventInfo] = {
    EventType.ORDER_CREATED: EventInfo(EventCategory.ORDERS, "When a new order is placed"),
    EventType.ORDER_CONFIRMED: EventInfo(EventCategory.ORDERS, "When an order is confirmed"),
    EventType.ORDER_SHIPPED: EventInfo(EventCategory.ORDERS, "When an order is shipped"),
    EventType.ORDER_DELIVERED: EventInfo(EventCategory.ORDERS, "When an order is delivered"),
    EventType.ORDER_CANCELLED: EventInfo(EventCategory.ORDERS, "When an order is cancelled"),
    EventType.ORDER_REFUNDED: EventInfo(EventCategory.ORDERS, "When an order is refunded"),
    EventType.PAYMENT_RECEIVED: EventInfo(EventCategory.PAYMENTS, "When a payment is received"),
    EventType.PAYMENT_FAILED: EventInfo(EventCategory.PAYMENTS, "When a payment fails"),
    EventType.PAYMENT_REFUNDED: EventInfo(EventCategory.PAYMENTS, "When a payment is refunded"),
    EventType.PRODUCT_CREATED: EventInfo(EventCategory.PRODUCTS, "When a product is created"),
    EventType.PRODUCT_UPDATED: EventInfo(EventCategory.PRODUCTS, "When a product is updated"),
    EventType.PRODUCT_DELETED: EventInfo(EventCategory.PRODUCTS, "When a product is deleted"),
    EventType.PRODUCT_STOCK_LOW: EventInfo(
        EventCategory.PRODUCTS, "When stock falls below threshold"
    ),
    EventType.PRODUCT_OUT_OF_STOCK: EventInfo(
        EventCategory.PRODUCTS, "When a product goes out of stock"
    ),
    EventType.RFQ_CREATED: EventInfo(EventCategory.RFQ, "When an RFQ is created"),
    EventType.RFQ_QUOTATION_RECEIVED: EventInfo(EventCategory.RFQ, "When a quotation is received"),
    EventType.RFQ_AWARDED: EventInfo(EventCategory.RFQ, "When an RFQ is awarded"),
    EventType.RFQ_CLOSED: EventInfo(EventCategory.RFQ, "When an RFQ is closed"),
    EventType.USER_REGISTERED: EventInfo(EventCategory.USERS, "When a new user registers"),
    EventType.USER_VERIFIED: EventInfo(EventCategory.USERS, "When a user is verified"),
    EventType.BUSINESS_VERIFIED: EventInfo(EventCategory.USERS, "When a business is verified"),
    EventType.INQUIRY_RECEIVED: EventInfo(EventCategory.INQUIRIES, "When an inquiry is received"),
    EventType.INQUIRY_RESPONDED: EventInfo(
        EventCategory.INQUIRIES, "When an inquiry is responded to"
    ),
    EventType.LEAD_CAPTURED: EventInfo(EventCategory.LEADS, "When a new lead is captured"),
    EventType.LEAD_CONVERTED: EventInfo(EventCategory.LEADS, "When a lead is converted"),
    EventType.REVIEW_CREATED: EventInfo(EventCategory.REVIEWS, "When a review is posted"),
    EventType.REVIEW_APPROVED: EventInfo(EventCategory.REVIEWS, "When a review is approved"),
    EventType.WEBHOOK_TEST: EventInfo(
        EventCategory.SYSTEM, "Synthetic event sent by a test delivery", subscribable=False
    ),
}

_missing = set(EventType) - set(EVENT_CATALOG)
if _missing:
    raise RuntimeError(f"Event types missing from EVENT_CATALOG: {sorted(e.value for e in _missing)}")

SUBSCRIBABLE_EVENT_TYPES: list[EventType] = [e for e in EventType if e.subscribable]


def event_catalog_by_category(
    include_system: bool = False,
) -> dict[EventCategory, list[tuple[EventType, EventInfo]]]:
    """Group catalog entries by category, preserving declaration order."""
    grouped: dict[EventCategory, list[tuple[EventType, EventInfo]]] = {}
    for event_type, info in EVENT_CATALOG.items():
        if not info.subscribable and not include_system:
            continue
        grouped.setdefault(info.category, []).append((event_type, info))
    return grouped


class EventEnvelope(BaseModel):
    """One business occurrence, fanned out to zero or more subscriptions.

    Attributes:
        id: Globally unique event identifier.
        event_type: Closed event type.
        timestamp: When the event was triggered (UTC).
        payload: Arbitrary JSON payload, already normalised to JSON values.
        owner_id: Tenant the event was scoped to, if any.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: generate_id("evt"))
    event_type: EventType = Field(description="Event type")
    timestamp: datetime = Field(default_factory=utc_now, description="When the event occurred")
    payload: Any = Field(default=None, description="Event payload")
    owner_id: str | None = Field(default=None, description="Tenant scope (optional)")


__all__ = [
    "EVENT_CATALOG",
    "SUBSCRIBABLE_EVENT_TYPES",
    "EventCategory",
    "EventEnvelope",
    "EventInfo",
    "EventType",
    "event_catalog_by_category",
]
