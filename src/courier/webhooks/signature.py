"""HMAC-SHA256 signing and verification of webhook payloads.

The signature header has the form ``t=<unix timestamp>,v1=<hex digest>``
where the digest is computed over ``"<timestamp>.<body>"``. Binding the
timestamp into the signed message lets receivers reject replays outside
a tolerance window.

Example:
    ```python
    from courier.webhooks.signature import sign, verify

    header = sign({"order_id": "ord_1"}, secret)
    assert verify({"order_id": "ord_1"}, header, secret)
    ```
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any

from courier.exceptions import SignatureVerificationError
from courier.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_VERSION = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class SignedPayload:
    """The exact bytes to send along with their signature.

    Attributes:
        body: Encoded request body.
        timestamp: Unix timestamp bound into the signature.
        header: Value for the signature header.
    """

    body: bytes
    timestamp: int
    header: str


def canonical_json(payload: Any) -> str:
    """Serialize a payload deterministically.

    Keys are sorted, separators are compact and non-ASCII characters are
    kept as-is, so sender and receiver produce identical bytes.
    """
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def encode_body(payload: Any) -> bytes:
    """Encode a payload as a request body.

    ``bytes`` and ``str`` are taken as an already-encoded body; anything
    else is serialized with :func:`canonical_json`.
    """
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return canonical_json(payload).encode("utf-8")


def compute_digest(body: bytes, timestamp: int, secret: str) -> str:
    """Compute the hex HMAC-SHA256 digest of ``"<timestamp>.<body>"``."""
    message = f"{timestamp}.".encode() + body
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=message,
        digestmod=hashlib.sha256,
    ).hexdigest()


def format_header(timestamp: int, digest: str) -> str:
    return f"t={timestamp},{SIGNATURE_VERSION}={digest}"


def sign_payload(payload: Any, secret: str, timestamp: int | None = None) -> SignedPayload:
    """Encode and sign a payload.

    Args:
        payload: JSON-compatible value, or an already-encoded body.
        secret: Shared secret of the subscription.
        timestamp: Unix timestamp to sign with. Defaults to now.

    Returns:
        SignedPayload holding the body, timestamp and header.
    """
    ts = int(time.time()) if timestamp is None else int(timestamp)
    body = encode_body(payload)
    digest = compute_digest(body, ts, secret)
    return SignedPayload(body=body, timestamp=ts, header=format_header(ts, digest))


def sign(payload: Any, secret: str, timestamp: int | None = None) -> str:
    """Sign a payload and return the signature header value."""
    return sign_payload(payload, secret, timestamp).header


def parse_signature_header(header: str) -> tuple[int, list[str]]:
    """Split a signature header into its timestamp and v1 digests.

    Unknown schemes are ignored so receivers keep working if a new
    signature version is added alongside v1.

    Raises:
        SignatureVerificationError: If the header has no timestamp or no v1 digest.
    """
    timestamp: int | None = None
    digests: list[str] = []

    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureVerificationError(
                    "malformed", f"Invalid signature timestamp: {value!r}"
                ) from None
        elif key == SIGNATURE_VERSION and value:
            digests.append(value)

    if timestamp is None:
        raise SignatureVerificationError("malformed", "Signature header has no timestamp")
    if not digests:
        raise SignatureVerificationError(
            "malformed", f"Signature header has no {SIGNATURE_VERSION} signature"
        )
    return timestamp, digests


def verify_signature_or_raise(
    payload: Any,
    header: str,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> None:
    """Verify a signature header against a payload.

    Args:
        payload: The received body (bytes/str) or the decoded JSON value.
        header: Value of the signature header.
        secret: Shared secret.
        tolerance: Maximum age, in seconds, of the signed timestamp.
        now: Current unix time. Defaults to now.

    Raises:
        SignatureVerificationError: If the header is malformed, the
            timestamp is outside the tolerance or no digest matches.
    """
    try:
        timestamp, digests = parse_signature_header(header)

        current = time.time() if now is None else now
        if abs(current - timestamp) > tolerance:
            raise SignatureVerificationError(
                "expired",
                f"Signature timestamp outside the {tolerance}s tolerance window",
            )

        expected = compute_digest(encode_body(payload), timestamp, secret)
        if not any(hmac.compare_digest(expected, digest) for digest in digests):
            raise SignatureVerificationError("mismatch", "No signature matches the payload")
    except SignatureVerificationError as e:
        logger.warning("Webhook signature rejected", reason=e.reason)
        raise


def verify(
    payload: Any,
    header: str,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> bool:
    """Check a signature header against a payload.

    Returns:
        True if the signature is valid and fresh, False otherwise.
    """
    try:
        verify_signature_or_raise(payload, header, secret, tolerance=tolerance, now=now)
    except SignatureVerificationError:
        return False
    return True


__all__ = [
    "DEFAULT_TOLERANCE_SECONDS",
    "SIGNATURE_VERSION",
    "SignedPayload",
    "canonical_json",
    "compute_digest",
    "encode_body",
    "parse_signature_header",
    "sign",
    "sign_payload",
    "verify",
    "verify_signature_or_raise",
]
