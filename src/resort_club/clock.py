"""Resort-local calendar helpers.

The resort runs on a fixed UTC-5 offset (Jamaica does not observe DST). Every
notion of "today" in the system, for check-in uniqueness as well as membership
expiry, goes through this module so the two can never disagree. Nothing
here looks at the host machine's timezone.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone

RESORT_UTC_OFFSET = timedelta(hours=-5)
RESORT_TZ = timezone(RESORT_UTC_OFFSET, "America/Jamaica")

_YMD_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _aware(now: datetime | None) -> datetime:
    if now is None:
        return now_utc()
    if now.tzinfo is None:
        # naive datetimes are treated as UTC, never as host-local time
        return now.replace(tzinfo=timezone.utc)
    return now


def resort_now(now: datetime | None = None) -> datetime:
    return _aware(now).astimezone(RESORT_TZ)


def today(now: datetime | None = None) -> date:
    return resort_now(now).date()


def today_ymd(now: datetime | None = None) -> str:
    return today(now).isoformat()


def parse_ymd(ymd: str | date) -> date:
    if isinstance(ymd, datetime):
        return ymd.date()
    if isinstance(ymd, date):
        return ymd
    return date.fromisoformat(ymd)


def normalize_to_ymd(raw) -> str | None:
    """Coerce a stored date value to ``YYYY-MM-DD`` or return None.

    A leading ``YYYY-MM-DD`` is taken at face value, so ``"2024-03-15"`` and
    ``"2024-03-15T00:00:00Z"`` are both March 15 and never shift a day when
    the offset is applied. Aware datetime objects are converted to the
    resort-local day.
    """
    if raw is None:
        return None
    if isinstance(raw, datetime):
        if raw.tzinfo is None:
            return raw.date().isoformat()
        return resort_now(raw).date().isoformat()
    if isinstance(raw, date):
        return raw.isoformat()
    value = str(raw).strip()
    if not value:
        return None
    match = _YMD_PREFIX.match(value)
    if not match:
        return None
    try:
        return date.fromisoformat(match.group(1)).isoformat()
    except ValueError:
        return None


def add_days(ymd: str | date, days: int) -> str:
    """Whole-day calendar arithmetic on a civil date."""
    return (parse_ymd(ymd) + timedelta(days=int(days))).isoformat()


def days_between(start_ymd: str | date, end_ymd: str | date) -> int:
    return (parse_ymd(end_ymd) - parse_ymd(start_ymd)).days


def day_bounds_utc(ymd: str | date) -> tuple[datetime, datetime]:
    """UTC instants ``[start, end)`` covering resort-local midnight to midnight."""
    d = parse_ymd(ymd)
    start_local = datetime.combine(d, time.min, tzinfo=RESORT_TZ)
    end_local = start_local + timedelta(days=1)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def end_of_day_utc(ymd: str | date) -> datetime:
    return day_bounds_utc(ymd)[1]


def epoch(now: datetime | None = None) -> int:
    return int(_aware(now).timestamp())
