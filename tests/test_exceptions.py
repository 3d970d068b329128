"""Tests for Courier exception hierarchy."""

import pytest

from courier.exceptions import (
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


class TestCourierError:
    """Tests for the base CourierError class."""

    def test_error_message(self):
        error = CourierError("Something went wrong")
        assert error.message == "Something went wrong"
        assert str(error) == "Something went wrong"
        assert error.code == "courier_error"

    def test_to_dict(self):
        assert CourierError("Something went wrong").to_dict() == {
            "error": {
                "code": "courier_error",
                "message": "Something went wrong",
            }
        }

    def test_inheritance(self):
        """All custom exceptions should inherit from CourierError."""
        exceptions = [
            ValidationError("field", "invalid"),
            NotFoundError("subscription", "sub_1"),
            StorageError("failed"),
            ConfigurationError("missing"),
            AuthenticationError("invalid"),
            SignatureVerificationError("mismatch", "bad signature"),
            InvalidTransitionError("dlv_1", "success", "retrying"),
            StaleClaimError("dlv_1"),
        ]
        for exc in exceptions:
            assert isinstance(exc, CourierError)


class TestSpecificErrors:
    def test_validation_error(self):
        error = ValidationError("url", "must be a valid http(s) URL")
        assert error.field == "url"
        assert error.message == "url: must be a valid http(s) URL"
        assert error.to_dict()["error"]["field"] == "url"

    def test_not_found_error(self):
        error = NotFoundError("delivery", "dlv_1")
        assert error.to_dict() == {
            "error": {
                "code": "not_found",
                "resource_type": "delivery",
                "resource_id": "dlv_1",
                "message": "delivery not found: dlv_1",
            }
        }

    def test_signature_error_is_authentication_error(self):
        error = SignatureVerificationError("expired", "timestamp outside tolerance")
        assert isinstance(error, AuthenticationError)
        assert error.to_dict()["error"]["reason"] == "expired"

    def test_invalid_transition(self):
        error = InvalidTransitionError("dlv_1", "failed", "success")
        assert (error.from_status, error.to_status) == ("failed", "success")
        assert "dlv_1" in error.message

    def test_stale_claim(self):
        with pytest.raises(CourierError, match="dlv_1"):
            raise StaleClaimError("dlv_1")
