"""Staff PINs and roles."""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets

from .db import Database
from .errors import ClubError

logger = logging.getLogger(__name__)

ADMIN = "admin"
FRONT_DESK = "front_desk"
SECURITY = "security"

ROLES = (ADMIN, FRONT_DESK, SECURITY)
CHECKIN_ROLES = (ADMIN, FRONT_DESK, SECURITY)
ADMIN_ROLES = (ADMIN,)

MIN_PIN_LENGTH = 4


def _pbkdf2_hash(pin: str, salt: bytes) -> str:
    dk = hashlib.pbkdf2_hmac("sha256", pin.encode("utf-8"), salt, 120_000)
    return dk.hex()


def create_staff(db: Database, name: str, pin: str, role: str = FRONT_DESK) -> dict:
    role = (role or FRONT_DESK).strip().lower()
    if role not in ROLES:
        raise ClubError(f"Unknown role {role!r}", code="validation_error")
    if not pin or len(pin) < MIN_PIN_LENGTH:
        raise ClubError(f"PIN must be at least {MIN_PIN_LENGTH} characters.", code="validation_error")

    salt = secrets.token_bytes(16)
    con = db.connect()
    try:
        cur = con.cursor()
        staff_id = db.insert(
            cur,
            "INSERT INTO staff(name, pin_salt, pin_hash, role) VALUES (?, ?, ?, ?)",
            (name, salt.hex(), _pbkdf2_hash(pin, salt), role),
        )
        con.commit()
    finally:
        con.close()
    logger.info("Created staff %s (%s)", staff_id, role)
    return {"id": staff_id, "name": name, "role": role}


def verify_staff_pin(db: Database, pin: str) -> dict | None:
    """Return the staff row whose PIN matches, or None.

    Salts are per row, so every row is hashed and compared.
    """
    if not pin:
        return None
    for row in db.fetch_all("SELECT id, name, role, pin_salt, pin_hash FROM staff ORDER BY id"):
        salt = bytes.fromhex(row["pin_salt"]) if isinstance(row["pin_salt"], str) else row["pin_salt"]
        if hmac.compare_digest(_pbkdf2_hash(pin, salt), row["pin_hash"]):
            return {"id": row["id"], "name": row["name"], "role": row["role"]}
    return None


def role_allows(role: str | None, allowed: tuple[str, ...]) -> bool:
    return (role or "") in allowed
