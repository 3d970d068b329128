"""Authentication for the Courier API.

Provides:
- HMAC-signed bearer tokens identifying the owner (tenant)
- Owner resolution used by the router's owner dependency

With auth disabled (development and tests) the owner is taken from the
``X-Owner-Id`` header instead.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from functools import lru_cache
from typing import TYPE_CHECKING

from fastapi.security import HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from courier.exceptions import AuthenticationError
from courier.logging import get_logger

if TYPE_CHECKING:
    from fastapi.security import HTTPAuthorizationCredentials

    from courier.config import Settings

logger = get_logger(__name__)

OWNER_HEADER = "X-Owner-Id"

# Security scheme for OpenAPI docs
security = HTTPBearer(auto_error=False)


class AuthenticatedOwner(BaseModel):
    """The tenant a request acts for.

    Attributes:
        owner_id: Tenant identifier.
    """

    model_config = ConfigDict(extra="forbid")

    owner_id: str = Field(min_length=1, description="Tenant identifier")


class TokenValidator:
    """Validates Bearer tokens using HMAC-SHA256.

    Token format: owner_id:expires_at:signature
    where signature = HMAC(secret, owner_id:expires_at)
    """

    def __init__(self, secret_key: str) -> None:
        self.secret_key = secret_key.encode()

    def _sign(self, payload: str) -> str:
        return hmac.new(self.secret_key, payload.encode(), hashlib.sha256).hexdigest()

    def create_token(self, owner_id: str, expire_minutes: int = 60) -> str:
        """Create a signed token for an owner.

        Args:
            owner_id: Tenant identifier. Must not contain ':'.
            expire_minutes: Token validity in minutes.

        Returns:
            Signed token string.
        """
        if ":" in owner_id:
            raise ValueError("owner_id must not contain ':'")
        expires_at = int(time.time()) + (expire_minutes * 60)
        payload = f"{owner_id}:{expires_at}"
        return f"{payload}:{self._sign(payload)}"

    def validate_token(self, token: str) -> AuthenticatedOwner:
        """Validate a token and return the owner it was issued to.

        Raises:
            AuthenticationError: If token is malformed, forged or expired.
        """
        parts = token.split(":")
        if len(parts) != 3:
            raise AuthenticationError("Invalid token format")

        owner_id, expires_at_str, signature = parts
        if not hmac.compare_digest(signature, self._sign(f"{owner_id}:{expires_at_str}")):
            raise AuthenticationError("Invalid token signature")

        try:
            expires_at = int(expires_at_str)
        except ValueError as e:
            raise AuthenticationError(f"Invalid token: {e}") from e
        if time.time() > expires_at:
            raise AuthenticationError("Token has expired")
        if not owner_id:
            raise AuthenticationError("Token has no owner")

        return AuthenticatedOwner(owner_id=owner_id)


@lru_cache(maxsize=1)
def get_token_validator(secret_key: str) -> TokenValidator:
    """Get or create the token validator for a secret key."""
    return TokenValidator(secret_key)


def reset_auth_singletons() -> None:
    """Reset cached validators (for testing)."""
    get_token_validator.cache_clear()


def issue_token(settings: Settings, owner_id: str) -> str:
    """Create a token for an owner with the configured lifetime."""
    validator = get_token_validator(settings.effective_auth_secret_key)
    return validator.create_token(owner_id, settings.auth_token_expire_minutes)


def resolve_owner(
    settings: Settings,
    credentials: HTTPAuthorizationCredentials | None,
    owner_header: str | None,
) -> AuthenticatedOwner:
    """Resolve the calling owner.

    If auth is enabled, validates the Bearer token. Otherwise the owner
    comes from the ``X-Owner-Id`` header.

    Raises:
        AuthenticationError: If no valid owner can be determined.
    """
    if not settings.is_auth_enabled:
        if not owner_header:
            raise AuthenticationError(f"Missing {OWNER_HEADER} header")
        return AuthenticatedOwner(owner_id=owner_header)

    if credentials is None:
        raise AuthenticationError("Missing authentication credentials")

    validator = get_token_validator(settings.effective_auth_secret_key)
    owner = validator.validate_token(credentials.credentials)
    logger.debug("Owner authenticated", owner_id=owner.owner_id)
    return owner
