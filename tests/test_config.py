"""Unit tests for Courier configuration."""

import os
import warnings
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from courier.config import DEFAULT_RETRY_BACKOFF_SECONDS, Settings


class TestSettings:
    """Tests for Settings model."""

    def test_default_settings(self):
        """Default settings should match the documented delivery policy."""
        settings = Settings(_env_file=None)
        assert settings.qdrant_url == "http://localhost:6333"
        assert settings.collection_prefix == "courier"
        assert settings.delivery_timeout_seconds == 30.0
        assert settings.max_retries == 5
        assert settings.retry_backoff_seconds == [60, 300, 900, 3600, 7200]
        assert settings.max_concurrent_deliveries == 10
        assert settings.signature_tolerance_seconds == 300
        assert settings.user_agent == "Courier-Webhooks/1.0"
        assert settings.log_level == "INFO"

    def test_backoff_default_not_shared(self):
        settings = Settings(_env_file=None)
        settings.retry_backoff_seconds.append(1)
        assert DEFAULT_RETRY_BACKOFF_SECONDS == [60, 300, 900, 3600, 7200]

    def test_log_formats(self):
        assert Settings(log_format="json", _env_file=None).log_format == "json"
        assert Settings(log_format="text", _env_file=None).log_format == "text"
        with pytest.raises(ValidationError):
            Settings(log_format="xml", _env_file=None)

    def test_env_prefix(self):
        """Settings should use COURIER_ prefix for environment variables."""
        with patch.dict(os.environ, {"COURIER_LOG_LEVEL": "DEBUG"}):
            assert Settings(_env_file=None).log_level == "DEBUG"

    def test_env_backoff_table(self):
        with patch.dict(os.environ, {"COURIER_RETRY_BACKOFF_SECONDS": "[5, 10]"}):
            assert Settings(_env_file=None).retry_backoff_seconds == [5, 10]

    def test_env_qdrant_location(self):
        with patch.dict(os.environ, {"COURIER_QDRANT_LOCATION": ":memory:"}):
            assert Settings(_env_file=None).qdrant_location == ":memory:"


class TestDeliverySettings:
    @pytest.mark.parametrize("table", [[], [60, 0], [-1]])
    def test_invalid_backoff_table(self, table: list[int]):
        with pytest.raises(ValidationError):
            Settings(retry_backoff_seconds=table, _env_file=None)

    @pytest.mark.parametrize("value", [0, 21])
    def test_max_retries_bounds(self, value: int):
        with pytest.raises(ValidationError):
            Settings(max_retries=value, _env_file=None)

    def test_lease_must_exceed_timeout(self):
        with pytest.raises(ValidationError, match="claim_lease_seconds"):
            Settings(delivery_timeout_seconds=60, claim_lease_seconds=60, _env_file=None)

    def test_lease_longer_than_timeout(self):
        settings = Settings(delivery_timeout_seconds=60, claim_lease_seconds=61, _env_file=None)
        assert settings.claim_lease_seconds == 61

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(delivery_timeout_seconds=0, _env_file=None)


class TestSecuritySettings:
    """Tests for security-related settings validation."""

    def test_auth_disabled_by_default_in_development(self):
        settings = Settings(env="development", _env_file=None)
        assert settings.is_auth_enabled is False

    def test_auth_enabled_by_default_in_production(self):
        settings = Settings(
            env="production",
            auth_secret_key="custom-secure-key-for-testing-only",
            _env_file=None,
        )
        assert settings.is_auth_enabled is True

    def test_production_requires_secret_key(self):
        with pytest.raises(ValueError, match="COURIER_AUTH_SECRET_KEY must be set"):
            Settings(env="production", _env_file=None)

    def test_auth_can_be_explicitly_disabled_in_production(self):
        """Auth can be explicitly disabled in production (with warning)."""
        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            settings = Settings(
                env="production",
                auth_enabled=False,
                auth_secret_key="custom-secret-key-for-testing",
                _env_file=None,
            )
            assert settings.is_auth_enabled is False
            assert len(w) == 1
            assert "Authentication is disabled in production" in str(w[0].message)

    def test_dev_secret_generated(self):
        settings = Settings(env="test", _env_file=None)
        assert len(settings.effective_auth_secret_key) == 64
        assert settings.effective_auth_secret_key != Settings(
            env="test", _env_file=None
        ).effective_auth_secret_key

    def test_configured_secret_preferred(self):
        settings = Settings(env="test", auth_secret_key="configured", _env_file=None)
        assert settings.effective_auth_secret_key == "configured"
