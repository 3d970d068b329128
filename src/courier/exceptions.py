"""Courier exception hierarchy.

Provides structured exceptions for error handling throughout the codebase.
All exceptions inherit from CourierError for easy catching.

Subscriber-side delivery failures are never raised to callers of
``trigger_event``; they end up as delivery state instead. The exceptions
here cover configuration, lookup, authentication and signature problems.
"""

from __future__ import annotations


class CourierError(Exception):
    """Base exception for all Courier errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "courier_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ValidationError(CourierError):
    """Invalid input provided.

    Raised synchronously for invalid subscription URLs, unknown event
    types and unsupported update fields. These never reach the delivery
    path.

    Attributes:
        field: The field that failed validation.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class NotFoundError(CourierError):
    """Resource not found.

    Also raised when the resource exists but belongs to another owner,
    so callers cannot discover other tenants' ids.

    Attributes:
        resource_type: Type of resource (e.g., "subscription", "delivery").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": self.resource_id,
                "message": self.message,
            }
        }


class StorageError(CourierError):
    """Storage operation failed."""

    code: str = "storage_error"


class ConfigurationError(CourierError):
    """Required configuration is missing or invalid."""

    code: str = "configuration_error"


class AuthenticationError(CourierError):
    """Authentication credentials are invalid or missing."""

    code: str = "authentication_error"


class SignatureVerificationError(AuthenticationError):
    """A webhook signature failed verification.

    Covers malformed headers, digest mismatches and timestamps outside
    the replay window. Never retried.

    Attributes:
        reason: Short machine-readable reason (malformed, mismatch, expired).
    """

    code: str = "signature_invalid"

    def __init__(self, reason: str, message: str) -> None:
        self.reason = reason
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "reason": self.reason,
                "message": self.message,
            }
        }


class InvalidTransitionError(CourierError):
    """A delivery status change not allowed by the state machine.

    Attributes:
        delivery_id: The delivery being changed.
        from_status: Current status.
        to_status: Requested status.
    """

    code: str = "invalid_transition"

    def __init__(self, delivery_id: str, from_status: str, to_status: str) -> None:
        self.delivery_id = delivery_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"delivery {delivery_id}: cannot move from {from_status} to {to_status}")


class StaleClaimError(CourierError):
    """A worker tried to write a delivery after losing its claim.

    Attributes:
        delivery_id: The delivery whose claim was lost.
    """

    code: str = "stale_claim"

    def __init__(self, delivery_id: str) -> None:
        self.delivery_id = delivery_id
        super().__init__(f"claim on delivery {delivery_id} is no longer held")
