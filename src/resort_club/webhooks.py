"""Authentication of payment-provider webhook callbacks.

The provider signs ``"<t>." + raw_body`` with HMAC-SHA256 and sends::

    <provider>-key-id: <key id>
    <provider>-signature: t=<unix ts>,v1=<hex>[,v1=<hex>...]

Several ``v1`` entries may be present while keys rotate; any match is enough.
The signature covers the exact request bytes, so the body must not be parsed
and re-serialized before it is checked. The body is only decoded as JSON
after the timestamp and signature checks pass.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime

from . import clock
from .config import WEBHOOK_TOLERANCE_SECONDS

MISSING_HEADERS = "missing_headers"
UNKNOWN_KEY = "unknown_key"
MALFORMED_SIGNATURE = "malformed_signature"
STALE_TIMESTAMP = "stale_timestamp"
BAD_SIGNATURE = "bad_signature"
BAD_JSON = "bad_json"


@dataclass(frozen=True)
class SignatureHeader:
    timestamp: str | None
    signatures: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class WebhookVerification:
    ok: bool
    reason: str | None = None
    payload: dict | None = None


def parse_signature_header(header: str) -> SignatureHeader:
    timestamp = None
    signatures: list[str] = []
    for part in (header or "").split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        key, value = key.strip(), value.strip()
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    return SignatureHeader(timestamp, signatures)


def _safe_equal_hex(expected_hex: str, candidate_hex: str) -> bool:
    try:
        a = bytes.fromhex(expected_hex)
        b = bytes.fromhex(candidate_hex)
    except ValueError:
        return False
    return hmac.compare_digest(a, b)


def compute_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    message = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_header(secret: str, raw_body: bytes, timestamp: int) -> str:
    """Build a signature header the way the provider does."""
    return f"t={timestamp},v1={compute_signature(secret, str(timestamp), raw_body)}"


def verify_webhook(key_id: str | None, signature_header: str | None, raw_body: bytes,
                   secrets: dict[str, str], now: datetime | None = None,
                   tolerance_seconds: int = WEBHOOK_TOLERANCE_SECONDS) -> WebhookVerification:
    if not key_id or not signature_header:
        return WebhookVerification(False, MISSING_HEADERS)

    secret = (secrets or {}).get(key_id)
    if not secret:
        return WebhookVerification(False, UNKNOWN_KEY)

    parsed = parse_signature_header(signature_header)
    if not parsed.timestamp or not parsed.signatures:
        return WebhookVerification(False, MALFORMED_SIGNATURE)
    try:
        ts = int(parsed.timestamp)
    except ValueError:
        return WebhookVerification(False, MALFORMED_SIGNATURE)

    if abs(clock.epoch(now) - ts) > tolerance_seconds:
        return WebhookVerification(False, STALE_TIMESTAMP)

    expected = compute_signature(secret, parsed.timestamp, raw_body)
    if not any(_safe_equal_hex(expected, candidate) for candidate in parsed.signatures):
        return WebhookVerification(False, BAD_SIGNATURE)

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return WebhookVerification(False, BAD_JSON)
    if not isinstance(payload, dict):
        return WebhookVerification(False, BAD_JSON)
    return WebhookVerification(True, payload=payload)
