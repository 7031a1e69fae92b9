"""Environment-driven configuration for the club service."""

from __future__ import annotations

import json
import logging
import os

from dotenv import load_dotenv

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

PAYMENT_PROVIDER = "fygaro"
FREE_PLAN_CODE = "rewards_free"
NO_EXPIRY_DAYS = 3650

DEFAULT_QR_TTL_SECONDS = 45
MIN_QR_TTL_SECONDS = 10
WEBHOOK_TOLERANCE_SECONDS = 300
DOWNGRADE_THROTTLE_SECONDS = 300

POINTS_PER_CHECKIN_KEY = "points_per_checkin"
DOWNGRADE_LAST_RUN_KEY = "membership_auto_downgrade_last_epoch"


def _env_truth(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %s", name, raw, default)
        return default


def get_db_path() -> str:
    base = os.environ.get("CLUB_DB_PATH")
    if base:
        return base
    here = os.path.dirname(os.path.abspath(__file__))
    data_dir = os.path.join(os.path.dirname(os.path.dirname(here)), "data")
    os.makedirs(data_dir, exist_ok=True)
    return os.path.join(data_dir, "club.sqlite3")


def parse_hook_secrets(raw: str | dict | None) -> dict[str, str]:
    """Parse the provider's key-id -> secret map.

    The env var holds JSON such as ``{"key_1": "s3cret", "key_2": "rotated"}``.
    Anything that is not a JSON object of strings is rejected so a typo cannot
    silently disable webhook authentication.
    """
    if not raw:
        return {}
    if isinstance(raw, dict):
        obj = raw
    else:
        try:
            obj = json.loads(raw)
        except ValueError as exc:
            raise ConfigurationError("FYGARO_HOOK_SECRETS is not valid JSON") from exc
    if not isinstance(obj, dict):
        raise ConfigurationError("FYGARO_HOOK_SECRETS must be a JSON object")
    return {str(k): str(v) for k, v in obj.items() if v}


def load_config() -> dict:
    load_dotenv()
    database_url = (os.environ.get("DATABASE_URL") or "").strip() or None
    return {
        "DATABASE_URL": database_url,
        "CLUB_DB_PATH": get_db_path(),
        "CLUB_ALLOW_SQLITE": _env_truth(os.environ.get("CLUB_ALLOW_SQLITE", "1")),
        "SESSION_SECRET": os.environ.get("CLUB_SESSION_SECRET", "dev-secret-change-me"),
        "QR_TOKEN_SECRET": os.environ.get("QR_TOKEN_SECRET", ""),
        "QR_TOKEN_TTL_SECONDS": _env_int("QR_TOKEN_TTL_SECONDS", DEFAULT_QR_TTL_SECONDS),
        "FYGARO_HOOK_SECRETS": parse_hook_secrets(os.environ.get("FYGARO_HOOK_SECRETS")),
        "WEBHOOK_TOLERANCE_SECONDS": _env_int("WEBHOOK_TOLERANCE_SECONDS", WEBHOOK_TOLERANCE_SECONDS),
        "DOWNGRADE_THROTTLE_SECONDS": _env_int("DOWNGRADE_THROTTLE_SECONDS", DOWNGRADE_THROTTLE_SECONDS),
        "DOWNGRADE_SCHEDULER_ENABLED": _env_truth(os.environ.get("DOWNGRADE_SCHEDULER_ENABLED")),
        "DOWNGRADE_INTERVAL_SECONDS": _env_int("DOWNGRADE_INTERVAL_SECONDS", 600),
        "DUE_SOON_DAYS": _env_int("DUE_SOON_DAYS", 0),
        "PAST_DUE_GRACE_DAYS": _env_int("PAST_DUE_GRACE_DAYS", 7),
        "PAYMENT_CURRENCY": os.environ.get("PAYMENT_CURRENCY", "USD").upper(),
    }
