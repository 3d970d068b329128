"""Delivery models: one notification of one subscription about one event.

A Delivery moves through a small state machine:

    PENDING  -> SUCCESS | RETRYING | FAILED
    RETRYING -> SUCCESS | RETRYING | FAILED

SUCCESS and FAILED are terminal. Every HTTP attempt is additionally
recorded as a DeliveryAttempt row in the ledger.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from courier.exceptions import InvalidTransitionError

from .base import generate_id, utc_now
from .events import EventType


class DeliveryStatus(str, Enum):
    """Lifecycle status of a delivery."""

    PENDING = "pending"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (DeliveryStatus.SUCCESS, DeliveryStatus.FAILED)


class FailureReason(str, Enum):
    """Why the last attempt of a delivery failed."""

    HTTP_ERROR = "http_error"
    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection_error"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    UNEXPECTED_ERROR = "unexpected_error"


ALLOWED_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.PENDING: frozenset(
        {DeliveryStatus.SUCCESS, DeliveryStatus.RETRYING, DeliveryStatus.FAILED}
    ),
    DeliveryStatus.RETRYING: frozenset(
        {DeliveryStatus.SUCCESS, DeliveryStatus.RETRYING, DeliveryStatus.FAILED}
    ),
    DeliveryStatus.SUCCESS: frozenset(),
    DeliveryStatus.FAILED: frozenset(),
}


class Delivery(BaseModel):
    """Delivery of one event to one subscription.

    Attributes:
        id: Unique identifier, also sent to the subscriber.
        subscription_id: Target subscription.
        owner_id: Tenant owning the subscription.
        event_id: Event being delivered.
        event_type: Type of the event.
        event_timestamp: When the event was triggered.
        payload: Snapshot of the event payload.
        status: Current lifecycle status.
        attempts: Number of HTTP attempts made so far.
        next_retry_at: When a RETRYING delivery becomes due.
        response_status: HTTP status of the last response, if any.
        response_body: Truncated body of the last response.
        error: Last error message.
        failure_reason: Classification of the last failure.
        is_test: Test deliveries never retry and do not touch counters.
        redelivery_of: Original delivery when created by a manual redelivery.
        claim_token: Token of the worker currently holding the delivery.
        claimed_until: When the current claim lease expires.
        delivered_at: When the subscriber acknowledged the delivery.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    subscription_id: str
    owner_id: str
    event_id: str
    event_type: EventType
    event_timestamp: datetime
    payload: Any = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    next_retry_at: datetime | None = None
    response_status: int | None = None
    response_body: str | None = None
    error: str | None = None
    failure_reason: FailureReason | None = None
    is_test: bool = False
    redelivery_of: str | None = None
    claim_token: str | None = None
    claimed_until: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    delivered_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.terminal

    def is_claimable(self, now: datetime) -> bool:
        """Whether a worker may take this delivery at ``now``.

        Terminal deliveries, deliveries leased by another worker and
        retries that are not yet due are not claimable.
        """
        if self.is_terminal:
            return False
        if self.claimed_until is not None and self.claimed_until > now:
            return False
        if (
            self.status == DeliveryStatus.RETRYING
            and self.next_retry_at is not None
            and self.next_retry_at > now
        ):
            return False
        return True

    def claim(self, lease_until: datetime) -> str:
        """Take the claim lease and return its token."""
        self.claim_token = generate_id("clm")
        self.claimed_until = lease_until
        return self.claim_token

    def release_claim(self) -> None:
        self.claim_token = None
        self.claimed_until = None

    def mark_success(
        self,
        response_status: int,
        response_body: str | None,
        at: datetime,
    ) -> DeliveryStatus:
        """Record an acknowledged attempt. Returns the previous status."""
        previous = self._transition(DeliveryStatus.SUCCESS, at)
        self.attempts += 1
        self.response_status = response_status
        self.response_body = response_body
        self.error = None
        self.failure_reason = None
        self.next_retry_at = None
        self.delivered_at = at
        return previous

    def mark_retrying(
        self,
        next_retry_at: datetime,
        reason: FailureReason,
        error: str,
        at: datetime,
        response_status: int | None = None,
        response_body: str | None = None,
    ) -> DeliveryStatus:
        """Record a failed attempt that will be retried. Returns the previous status."""
        previous = self._transition(DeliveryStatus.RETRYING, at)
        self.attempts += 1
        self._record_failure(reason, error, response_status, response_body)
        self.next_retry_at = next_retry_at
        return previous

    def mark_failed(
        self,
        reason: FailureReason,
        error: str,
        at: datetime,
        response_status: int | None = None,
        response_body: str | None = None,
        count_attempt: bool = True,
    ) -> DeliveryStatus:
        """Record a permanent failure. Returns the previous status.

        ``count_attempt`` is False when no HTTP call was made, e.g. the
        subscription was deactivated before the attempt.
        """
        previous = self._transition(DeliveryStatus.FAILED, at)
        if count_attempt:
            self.attempts += 1
        self._record_failure(reason, error, response_status, response_body)
        self.next_retry_at = None
        return previous

    def _record_failure(
        self,
        reason: FailureReason,
        error: str,
        response_status: int | None,
        response_body: str | None,
    ) -> None:
        self.failure_reason = reason
        self.error = error
        self.response_status = response_status
        self.response_body = response_body

    def _transition(self, to: DeliveryStatus, at: datetime) -> DeliveryStatus:
        if to not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status.value, to.value)
        previous = self.status
        self.status = to
        self.updated_at = at
        return previous


class DeliveryAttempt(BaseModel):
    """Ledger record of a single HTTP attempt for a delivery.

    Attributes:
        id: Unique identifier for this attempt record.
        delivery_id: Delivery this attempt belongs to.
        attempt_number: 1-indexed attempt number.
        outcome: Whether the subscriber acknowledged the attempt.
        response_status: HTTP status code (if a response was received).
        response_body: Truncated response body.
        error: Error message for failed attempts.
        failure_reason: Classification of a failed attempt.
        duration_ms: Wall time of the HTTP call.
        signature_timestamp: Unix timestamp the request was signed with.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("att"))
    delivery_id: str
    subscription_id: str
    owner_id: str
    attempt_number: int = Field(ge=1)
    outcome: Literal["success", "failure"]
    response_status: int | None = None
    response_body: str | None = None
    error: str | None = None
    failure_reason: FailureReason | None = None
    duration_ms: int = Field(default=0, ge=0)
    signature_timestamp: int | None = None
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime = Field(default_factory=utc_now)


class DeliveryPage(BaseModel):
    """One page of delivery history."""

    model_config = ConfigDict(extra="forbid")

    items: list[Delivery]
    total: int = Field(ge=0)
    page: int = Field(ge=1)
    limit: int = Field(ge=1)

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit


__all__ = [
    "ALLOWED_TRANSITIONS",
    "Delivery",
    "DeliveryAttempt",
    "DeliveryPage",
    "DeliveryStatus",
    "FailureReason",
]
