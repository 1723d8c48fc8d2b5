"""HMAC authentication for inbound billing-gateway webhooks.

The gateway signs ``"{timestamp}.{raw_body}"`` with HMAC-SHA256 and sends
the hex digest in ``X-Webhook-Signature`` and the Unix timestamp in
``X-Webhook-Timestamp``.  Requests older or newer than the tolerance
window are refused so a captured request cannot be replayed later.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime

from did_engine.errors import WebhookAuthenticationError

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
DEFAULT_TOLERANCE_SECONDS = 300


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of ``timestamp + "." + body`` keyed with *secret*."""
    message = timestamp.encode("utf-8") + b"." + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_webhook(
    body: bytes,
    signature: str | None,
    timestamp: str | None,
    secret: str,
    *,
    now: datetime,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> None:
    """Raise :class:`WebhookAuthenticationError` unless the request is authentic.

    The signature is compared in constant time before the timestamp window
    is checked, so a forged request learns nothing about the clock.

    Parameters
    ----------
    body:
        Raw request body bytes, exactly as received.
    signature:
        Value of the ``X-Webhook-Signature`` header.
    timestamp:
        Value of the ``X-Webhook-Timestamp`` header (Unix seconds).
    secret:
        Shared secret.  An empty secret rejects every request.
    now:
        Current time.
    tolerance_seconds:
        Maximum allowed distance between *timestamp* and *now*.
    """
    if not secret:
        raise WebhookAuthenticationError("Webhook secret is not configured")
    if not signature or not timestamp:
        raise WebhookAuthenticationError("Missing signature or timestamp header")

    expected = compute_signature(secret, timestamp, body)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise WebhookAuthenticationError("Signature mismatch")

    try:
        sent_at = int(timestamp)
    except ValueError as exc:
        raise WebhookAuthenticationError("Timestamp is not an integer") from exc

    if abs(int(now.timestamp()) - sent_at) > tolerance_seconds:
        raise WebhookAuthenticationError("Timestamp outside tolerance window")
