"""Stripe webhook signature verification and event construction.

Security contract:
- Signature is checked over the exact raw body bytes, before any parsing
- All comparisons use hmac.compare_digest() (constant-time)
- Missing secret -> ConfigurationError (operator alert, not a retry)
- Missing header -> MissingSignature; mismatch or stale timestamp -> InvalidSignature
- Timestamp tolerance: 300s by default, to prevent replay
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from storefront.errors import (
    ConfigurationError,
    InvalidSignature,
    MalformedEvent,
    MissingSignature,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"
DEFAULT_TOLERANCE_S = 300


class EventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: dict[str, Any]


class WebhookEvent(BaseModel):
    """Verified Stripe event envelope."""

    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    data: EventData
    livemode: bool = False


def _parse_signature_header(header: str) -> tuple[int, list[str]]:
    """Parse 't=<timestamp>,v1=<sig>[,v1=<sig>...]'."""
    timestamp_str: str | None = None
    v1_sigs: list[str] = []
    for item in header.split(","):
        kv = item.strip().split("=", 1)
        if len(kv) != 2:
            continue
        key, value = kv
        if key == "t":
            timestamp_str = value
        elif key == "v1":
            # Multiple v1 signatures during secret rotation
            v1_sigs.append(value)

    if not timestamp_str:
        raise InvalidSignature("no timestamp")
    try:
        timestamp = int(timestamp_str)
    except ValueError:
        raise InvalidSignature("malformed timestamp") from None
    if not v1_sigs:
        raise InvalidSignature("no v1 signature")
    return timestamp, v1_sigs


def compute_signature(secret: str, timestamp: int, body: bytes) -> str:
    """HMAC-SHA256 hex digest of '<timestamp>.<body>'."""
    signed_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_stripe_signature(
    body: bytes,
    signature_header: str | None,
    secret: str,
    tolerance_s: int = DEFAULT_TOLERANCE_S,
    now: float | None = None,
) -> None:
    """Verify a Stripe-Signature header (v1 scheme). Raises on failure."""
    if not signature_header:
        raise MissingSignature(SIGNATURE_HEADER)
    if not secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not set, rejecting webhook")
        raise ConfigurationError("STRIPE_WEBHOOK_SECRET")

    timestamp, v1_sigs = _parse_signature_header(signature_header)

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_s:
        logger.warning("Stripe webhook timestamp outside tolerance: %s", timestamp)
        raise InvalidSignature("timestamp outside tolerance")

    expected = compute_signature(secret, timestamp, body)
    if not any(hmac.compare_digest(expected, sig) for sig in v1_sigs):
        raise InvalidSignature("signature mismatch")


def parse_event(body: bytes) -> WebhookEvent:
    """Parse an already-verified body into a typed event."""
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise MalformedEvent("body is not JSON") from None
    if not isinstance(payload, dict):
        raise MalformedEvent("body is not a JSON object")
    try:
        return WebhookEvent.model_validate(payload)
    except ValidationError as e:
        raise MalformedEvent(f"{e.error_count()} invalid field(s)") from None


def construct_event(
    body: bytes,
    signature_header: str | None,
    secret: str,
    tolerance_s: int = DEFAULT_TOLERANCE_S,
) -> WebhookEvent:
    """Verify then parse. Nothing in the body is read before verification."""
    verify_stripe_signature(body, signature_header, secret, tolerance_s)
    return parse_event(body)
