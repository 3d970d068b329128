"""Domain models for Courier.

Event Types:
    - EventType: Closed enumeration of deliverable events
    - EventCategory / EventInfo / EVENT_CATALOG: Catalog metadata
    - EventEnvelope: Immutable record of one triggered event

Subscriptions:
    - Subscription: Endpoint, secret and subscribed event types
    - SubscriptionUpdate: Partial update of mutable fields

Deliveries:
    - Delivery: One event delivered to one subscription, with its state machine
    - DeliveryAttempt: Ledger row for one HTTP attempt
    - DeliveryPage: Paginated delivery history
"""

from .base import generate_id, utc_now
from .delivery import (
    ALLOWED_TRANSITIONS,
    Delivery,
    DeliveryAttempt,
    DeliveryPage,
    DeliveryStatus,
    FailureReason,
)
from .events import (
    EVENT_CATALOG,
    SUBSCRIBABLE_EVENT_TYPES,
    EventCategory,
    EventEnvelope,
    EventInfo,
    EventType,
    event_catalog_by_category,
)
from .subscription import Subscription, SubscriptionUpdate

__all__ = [
    # Helpers
    "generate_id",
    "utc_now",
    # Events
    "EVENT_CATALOG",
    "SUBSCRIBABLE_EVENT_TYPES",
    "EventCategory",
    "EventEnvelope",
    "EventInfo",
    "EventType",
    "event_catalog_by_category",
    # Subscriptions
    "Subscription",
    "SubscriptionUpdate",
    # Deliveries
    "ALLOWED_TRANSITIONS",
    "Delivery",
    "DeliveryAttempt",
    "DeliveryPage",
    "DeliveryStatus",
    "FailureReason",
]
