"""Webhook dispatch and reliable delivery.

Components:
    - SubscriptionRegistry: tenant-scoped subscription management
    - EventDispatcher: records events and fans them out into deliveries
    - DeliveryWorker / DeliveryPool: signed HTTP attempts, bounded concurrency
    - RetryScheduler: backoff timers and the periodic retry reaper
    - DeliveryLedger: delivery history, attempts and retention
    - signature: HMAC-SHA256 signing and verification
"""

from .dispatcher import DispatchResult, EventContext, EventDispatcher
from .ledger import DeliveryLedger
from .registry import (
    RegisteredSubscription,
    SubscriptionRegistry,
    generate_secret,
    validate_event_types,
    validate_url,
)
from .scheduler import RetryScheduler, compute_backoff
from .signature import (
    SignedPayload,
    canonical_json,
    sign,
    sign_payload,
    verify,
    verify_signature_or_raise,
)
from .worker import DeliveryPool, DeliveryWorker

__all__ = [
    # Registry
    "RegisteredSubscription",
    "SubscriptionRegistry",
    "generate_secret",
    "validate_event_types",
    "validate_url",
    # Dispatch
    "DispatchResult",
    "EventContext",
    "EventDispatcher",
    # Delivery
    "DeliveryPool",
    "DeliveryWorker",
    "RetryScheduler",
    "compute_backoff",
    "DeliveryLedger",
    # Signatures
    "SignedPayload",
    "canonical_json",
    "sign",
    "sign_payload",
    "verify",
    "verify_signature_or_raise",
]
