"""Short-lived signed QR tokens for gate check-in.

A token is ``base64url(claims_json) + "." + base64url(hmac_sha256(secret, claims_part))``
with padding stripped. Verification needs only the shared secret, no
database lookup, so a scanner can validate a code as fast as it reads it.

The ``jti`` nonce is carried but not recorded anywhere: a captured token can
be replayed for as long as it is valid. The short TTL is what limits that.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import json
import secrets
from dataclasses import asdict, dataclass
from datetime import datetime
from urllib.parse import parse_qs, urlparse

import qrcode

from . import clock
from .config import DEFAULT_QR_TTL_SECONDS, MIN_QR_TTL_SECONDS

BAD_FORMAT = "bad_format"
BAD_SIG = "bad_sig"
BAD_PAYLOAD = "bad_payload"
MISSING_CLAIMS = "missing_claims"
EXPIRED = "expired"


@dataclass(frozen=True)
class QrClaims:
    mid: int | str
    iat: int
    exp: int
    jti: str


@dataclass(frozen=True)
class QrVerification:
    ok: bool
    claims: QrClaims | None = None
    reason: str | None = None


def b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _signature(payload_b64: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).digest()
    return b64url(digest)


def sign_qr_token(claims: QrClaims, secret: str) -> str:
    body = json.dumps(asdict(claims), separators=(",", ":")).encode("utf-8")
    payload = b64url(body)
    return f"{payload}.{_signature(payload, secret)}"


def issue_qr_token(member_id, secret: str, ttl_seconds: int = DEFAULT_QR_TTL_SECONDS,
                   now: datetime | None = None) -> tuple[str, int]:
    """Return ``(token, exp)`` for ``member_id``; the TTL never drops below the floor."""
    iat = clock.epoch(now)
    try:
        ttl = int(ttl_seconds)
    except (TypeError, ValueError):
        ttl = DEFAULT_QR_TTL_SECONDS
    claims = QrClaims(mid=member_id, iat=iat, exp=iat + max(ttl, MIN_QR_TTL_SECONDS), jti=secrets.token_hex(8))
    return sign_qr_token(claims, secret), claims.exp


def verify_qr_token(token: str, secret: str, now: datetime | None = None) -> QrVerification:
    parts = str(token or "").strip().split(".")
    if len(parts) != 2:
        return QrVerification(False, reason=BAD_FORMAT)
    payload_b64, sig_b64 = parts

    try:
        expected = _signature(payload_b64, secret)
    except UnicodeEncodeError:
        return QrVerification(False, reason=BAD_SIG)
    if not hmac.compare_digest(sig_b64.encode("utf-8"), expected.encode("utf-8")):
        return QrVerification(False, reason=BAD_SIG)

    try:
        data = json.loads(b64url_decode(payload_b64).decode("utf-8"))
    except (ValueError, binascii.Error, UnicodeDecodeError):
        return QrVerification(False, reason=BAD_PAYLOAD)

    if not isinstance(data, dict) or not data.get("mid") or not data.get("exp"):
        return QrVerification(False, reason=MISSING_CLAIMS)
    try:
        exp = int(data["exp"])
        iat = int(data.get("iat") or 0)
    except (TypeError, ValueError):
        return QrVerification(False, reason=BAD_PAYLOAD)
    if clock.epoch(now) > exp:
        return QrVerification(False, reason=EXPIRED)

    return QrVerification(True, QrClaims(mid=data["mid"], iat=iat, exp=exp, jti=str(data.get("jti") or "")))


@dataclass(frozen=True)
class ScanPayload:
    member_id: str | None = None
    token: str | None = None
    error: str | None = None


def parse_scan_payload(raw: str) -> ScanPayload:
    """Interpret whatever a gate scanner produced.

    Accepted: ``member:<id>``, ``qr:<token>``, a bare ``payload.sig`` token, a
    bare member id, or a URL whose ``token``/``qr``/``code`` query parameter
    holds one of those.
    """
    value = (raw or "").strip()
    if not value:
        return ScanPayload(error="Empty code")

    if value.lower().startswith(("http://", "https://")):
        query = parse_qs(urlparse(value).query)
        for key in ("token", "qr", "code"):
            inner = (query.get(key) or [""])[0].strip()
            if inner:
                return parse_scan_payload(inner)

    if value.startswith("member:"):
        member_id = value[len("member:"):].strip()
        return ScanPayload(member_id=member_id) if member_id else ScanPayload(error="Invalid member code")

    if value.startswith("qr:"):
        token = value[len("qr:"):].strip()
        return ScanPayload(token=token) if token else ScanPayload(error="Invalid QR token")

    if len(value.split(".")) == 2 and len(value) > 20:
        return ScanPayload(token=value)

    return ScanPayload(member_id=value)


def generate_qr_png(data: str, box_size: int = 8, border: int = 2) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
