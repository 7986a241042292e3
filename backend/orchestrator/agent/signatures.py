"""Signed JSON webhook verification.

Senders compute ``hex(HMAC-SHA256(secret, f"{timestamp}.{raw_body}"))`` and
send it with the unix timestamp in ``X-Webhook-Signature`` and
``X-Webhook-Timestamp``. Requests outside the freshness window are refused.
"""
import hashlib
import hmac
import time
from typing import Callable

from orchestrator.errors import AuthError

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"

MAX_TIMESTAMP_SKEW_SECONDS = 5 * 60


def compute_webhook_signature(secret: str, timestamp: str | int, body: bytes | str) -> str:
    """Return the hex signature for a timestamped body."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    message = str(timestamp).encode("utf-8") + b"." + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    secret: str,
    signature: str | None,
    timestamp: str | None,
    body: bytes,
    now: Callable[[], float] = time.time,
    max_skew_seconds: int = MAX_TIMESTAMP_SKEW_SECONDS,
) -> None:
    """Verify a signed webhook request.

    Args:
        secret: Shared secret configured for the sender.
        signature: Value of the signature header.
        timestamp: Value of the timestamp header (unix seconds).
        body: Raw request body exactly as received.
        now: Clock returning unix seconds.
        max_skew_seconds: Allowed distance between the timestamp and ``now``.

    Raises:
        AuthError: If a header is missing, the timestamp is stale or malformed,
            or the signature does not match.
    """
    if not signature or not timestamp:
        raise AuthError("Missing webhook signature headers")

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise AuthError("Malformed webhook timestamp")

    if abs(now() - sent_at) > max_skew_seconds:
        raise AuthError("Webhook timestamp outside the allowed window")

    expected = compute_webhook_signature(secret, timestamp, body)
    provided = signature.strip().lower()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    if not provided.isascii() or not hmac.compare_digest(expected, provided):
        raise AuthError("Invalid webhook signature")


def check_signed_request(
    secret: str | None,
    allow_unsigned: bool,
    signature: str | None,
    timestamp: str | None,
    body: bytes,
) -> bool:
    """Apply the signing policy for one endpoint.

    A configured secret is always enforced. Without a secret the request is
    accepted only when unsigned webhooks were explicitly allowed.

    Returns:
        True when the signature was verified, False when it was skipped.

    Raises:
        AuthError: If verification fails or no secret is configured and
            unsigned requests are not allowed.
    """
    if secret:
        verify_webhook_signature(secret, signature, timestamp, body)
        return True
    if allow_unsigned:
        return False
    raise AuthError("Webhook secret not configured")
