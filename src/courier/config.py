"""Configuration management for Courier."""

import logging
import secrets
import warnings
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# 1m, 5m, 15m, 1h, 2h
DEFAULT_RETRY_BACKOFF_SECONDS: list[int] = [60, 300, 900, 3600, 7200]


def _generate_dev_secret_key() -> str:
    """Generate a random secret key for development use.

    In development/test environments, if no secret key is provided,
    we generate a random one at startup. Tokens are invalidated on
    restart, and production always requires explicit key configuration.

    Returns:
        A cryptographically secure random hex string (64 characters).
    """
    return secrets.token_hex(32)


class Settings(BaseSettings):
    """Courier configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the COURIER_ prefix. For example:
        COURIER_QDRANT_URL=http://localhost:6333
        COURIER_MAX_RETRIES=8
        COURIER_RETRY_BACKOFF_SECONDS='[30, 60, 120]'

    Security Notes:
        - In production (COURIER_ENV=production), auth is enabled by default
        - A missing auth secret key in production raises an error
        - Disabling auth in production logs a warning
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Storage
    qdrant_url: str = Field(
        default="http://localhost:6333",
        description="Qdrant connection URL",
    )
    qdrant_api_key: str | None = Field(
        default=None,
        description="Qdrant API key (for cloud)",
    )
    qdrant_location: str | None = Field(
        default=None,
        description="Local Qdrant location (':memory:' or a path). Overrides qdrant_url.",
    )
    collection_prefix: str = Field(
        default="courier",
        description="Prefix for Qdrant collection names",
    )
    storage_max_scroll_limit: int = Field(
        default=10000,
        ge=100,
        le=100000,
        description="Maximum records fetched in a single scroll operation",
    )

    # Delivery
    delivery_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Per-request timeout for outbound webhook calls",
    )
    max_retries: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Maximum delivery attempts before a delivery is marked failed",
    )
    retry_backoff_seconds: list[int] = Field(
        default_factory=lambda: list(DEFAULT_RETRY_BACKOFF_SECONDS),
        description="Retry delays in seconds, indexed by (attempts - 1)",
    )
    max_concurrent_deliveries: int = Field(
        default=10,
        ge=1,
        le=500,
        description="Maximum in-flight outbound HTTP calls",
    )
    retry_scan_interval_seconds: float = Field(
        default=15.0,
        gt=0,
        description="How often the retry reaper scans for due deliveries",
    )
    claim_lease_seconds: int = Field(
        default=120,
        ge=1,
        description=(
            "How long a worker owns a claimed delivery. Must exceed the delivery "
            "timeout so a live call is never reclaimed."
        ),
    )
    pending_grace_seconds: int = Field(
        default=60,
        ge=0,
        description="Age after which an unprocessed pending delivery is re-admitted",
    )
    signature_tolerance_seconds: int = Field(
        default=300,
        ge=1,
        description="Replay window for signature timestamps",
    )
    user_agent: str = Field(
        default="Courier-Webhooks/1.0",
        description="User-Agent header sent to subscribers",
    )
    response_body_max_chars: int = Field(
        default=1000,
        ge=0,
        le=100000,
        description="Maximum characters of a subscriber response kept in the ledger",
    )
    delivery_retention_days: int = Field(
        default=30,
        ge=0,
        description="Days to keep terminal deliveries (0 disables purging)",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    # Authentication
    auth_enabled: bool | None = Field(
        default=None,
        description=(
            "Enable Bearer token authentication. "
            "If not set, defaults to True in production, False otherwise."
        ),
    )
    auth_secret_key: str | None = Field(
        default=None,
        description=(
            "Secret key for token validation (HMAC). "
            "REQUIRED in production. In dev/test, a random key is generated if not set."
        ),
    )
    auth_token_expire_minutes: int = Field(
        default=60,
        ge=1,
        description="Token expiration time in minutes",
    )

    # CORS Configuration
    cors_enabled: bool = Field(
        default=True,
        description="Enable CORS middleware",
    )
    cors_allow_origins: list[str] = Field(
        default_factory=lambda: ["*"],
        description="List of allowed CORS origins",
    )
    cors_allow_methods: list[str] = Field(
        default_factory=lambda: ["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        description="Allowed HTTP methods for CORS requests",
    )
    cors_allow_headers: list[str] = Field(
        default_factory=lambda: ["*"],
        description="Allowed headers for CORS requests",
    )

    # Runtime-generated dev secret (not from env, generated at startup if needed)
    _runtime_dev_secret: str | None = None

    model_config = {
        "env_prefix": "COURIER_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
    }

    @field_validator("retry_backoff_seconds")
    @classmethod
    def validate_backoff(cls, value: list[int]) -> list[int]:
        """Backoff table must be non-empty with positive delays."""
        if not value:
            raise ValueError("retry_backoff_seconds must contain at least one delay")
        if any(delay <= 0 for delay in value):
            raise ValueError("retry_backoff_seconds entries must be positive")
        return value

    @model_validator(mode="after")
    def validate_claim_lease(self) -> "Settings":
        """A claim lease shorter than the HTTP timeout would let two workers own one delivery."""
        if self.claim_lease_seconds <= self.delivery_timeout_seconds:
            raise ValueError(
                f"claim_lease_seconds ({self.claim_lease_seconds}) must be greater than "
                f"delivery_timeout_seconds ({self.delivery_timeout_seconds})"
            )
        return self

    @model_validator(mode="after")
    def validate_security_settings(self) -> "Settings":
        """Validate security settings based on environment.

        - In production, a secret key MUST be explicitly provided
        - In dev/test, a random key is generated if not provided
        - In production, disabling auth logs a warning
        - Resolves auth_enabled default based on environment
        """
        is_production = self.env == "production"

        if self.auth_enabled is None:
            object.__setattr__(self, "auth_enabled", is_production)

        if is_production:
            if self.auth_secret_key is None:
                raise ValueError(
                    "COURIER_AUTH_SECRET_KEY must be set in production. "
                    'Generate one with: python -c "import secrets; print(secrets.token_hex(32))"'
                )

            if not self.auth_enabled:
                warnings.warn(
                    "Authentication is disabled in production environment. "
                    "Set COURIER_AUTH_ENABLED=true to enable.",
                    UserWarning,
                    stacklevel=2,
                )
                logger.warning("Authentication disabled in production")
        elif self.auth_secret_key is None:
            object.__setattr__(self, "_runtime_dev_secret", _generate_dev_secret_key())
            logger.debug("Generated random auth secret for development (tokens invalid after restart)")

        return self

    @property
    def is_auth_enabled(self) -> bool:
        """Get resolved auth_enabled value (always bool, never None)."""
        if self.auth_enabled is None:
            return self.env == "production"
        return self.auth_enabled

    @property
    def effective_auth_secret_key(self) -> str:
        """Get the effective secret key for authentication.

        Returns:
            The configured key, or the runtime-generated key in dev/test.

        Raises:
            ValueError: If no secret key is available.
        """
        if self.auth_secret_key is not None:
            return self.auth_secret_key
        if self._runtime_dev_secret is not None:
            return self._runtime_dev_secret
        raise ValueError("No auth secret key available")
