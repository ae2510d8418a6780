"""Webhook request signing.

Receivers verify ``X-Webhook-Signature`` by recomputing
``HMAC-SHA256(secret, "{X-Webhook-Timestamp}.{raw body}")`` and should
dedupe on ``X-Webhook-Id``, since delivery is at-least-once.
"""

import hashlib
import hmac
import json
import secrets
import time
from typing import Any

SECRET_PREFIX = "whsec_"
SIGNATURE_PREFIX = "sha256="

HEADER_ID = "X-Webhook-Id"
HEADER_TIMESTAMP = "X-Webhook-Timestamp"
HEADER_SIGNATURE = "X-Webhook-Signature"


def generate_secret() -> str:
    """Generate a new subscription signing secret."""
    return f"{SECRET_PREFIX}{secrets.token_urlsafe(32)}"


def serialize_payload(payload: Any) -> str:
    """Serialize a payload exactly as it is sent and signed."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def compute_signature(secret: str, body: str, timestamp: int) -> str:
    """Hex HMAC-SHA256 over ``{timestamp}.{body}``."""
    signed_payload = f"{timestamp}.{body}"
    return hmac.new(secret.encode(), signed_payload.encode(), hashlib.sha256).hexdigest()


def build_signature_headers(
    secret: str,
    event_id: str,
    body: str,
    timestamp: int | None = None,
) -> dict[str, str]:
    """Build the outbound webhook headers for a serialized body."""
    if timestamp is None:
        timestamp = int(time.time())
    signature = compute_signature(secret, body, timestamp)
    return {
        "Content-Type": "application/json",
        HEADER_ID: event_id,
        HEADER_TIMESTAMP: str(timestamp),
        HEADER_SIGNATURE: f"{SIGNATURE_PREFIX}{signature}",
    }


def verify_signature(
    secret: str,
    body: str,
    timestamp: str | int,
    signature_header: str,
    tolerance_seconds: int = 300,
    now: int | None = None,
) -> bool:
    """Check a received signature header.

    Returns False for a malformed header, a timestamp outside the tolerance
    window, or a signature mismatch.
    """
    if not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False

    now = int(time.time()) if now is None else now
    if abs(now - ts) > tolerance_seconds:
        return False

    expected = compute_signature(secret, body, ts)
    provided = signature_header[len(SIGNATURE_PREFIX) :]
    return hmac.compare_digest(expected, provided)
