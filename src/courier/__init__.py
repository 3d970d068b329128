"""Courier: signed, reliable webhook delivery.

Notifies external subscribers over HTTP when business events happen,
with HMAC-signed payloads, exponential-backoff retries and a delivery
ledger.

Quick Start:
    from courier.service import CourierService
    from courier.webhooks import EventContext

    async with CourierService.create() as courier:
        await courier.registry.create(
            owner_id="biz_1",
            url="https://example.com/hooks",
            event_types=["order.created"],
        )
        result = await courier.trigger_event(
            "order.created",
            {"order_id": "ord_1"},
            EventContext(owner_id="biz_1"),
        )

Core types:
    - Subscription: endpoint, secret and subscribed event types
    - EventEnvelope: one triggered event
    - Delivery: one event sent to one subscription, with its state machine
    - DeliveryAttempt: one HTTP attempt in the ledger
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings

# Exceptions
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    CourierError,
    InvalidTransitionError,
    NotFoundError,
    SignatureVerificationError,
    StaleClaimError,
    StorageError,
    ValidationError,
)

# Logging
from .logging import (
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)

# Models
from .models import (
    Delivery,
    DeliveryAttempt,
    DeliveryStatus,
    EventEnvelope,
    EventType,
    FailureReason,
    Subscription,
)

__all__ = [
    # Version
    "__version__",
    # Configuration
    "Settings",
    # Exceptions
    "CourierError",
    "ValidationError",
    "NotFoundError",
    "StorageError",
    "ConfigurationError",
    "AuthenticationError",
    "SignatureVerificationError",
    "InvalidTransitionError",
    "StaleClaimError",
    # Logging
    "configure_logging",
    "get_logger",
    "bind_context",
    "clear_context",
    "unbind_context",
    # Models
    "Delivery",
    "DeliveryAttempt",
    "DeliveryStatus",
    "EventEnvelope",
    "EventType",
    "FailureReason",
    "Subscription",
]
