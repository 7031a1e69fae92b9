"""Membership status and facility-access resolution.

The resolver is the single source of truth for "may this member use the
facilities right now". The ``status`` column stored on a membership row is a
hint: it can push a row into a terminal negative state (``pending``,
``expired``, ``past_due``) but it can never grant access the dates do not
support.

A membership stays valid through the whole resort-local day of its
paid-through date; access ends at local midnight that starts the next day.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from . import clock
from .config import FREE_PLAN_CODE, NO_EXPIRY_DAYS

ACTIVE = "active"
DUE_SOON = "due_soon"
PAST_DUE = "past_due"
PENDING = "pending"
FREE = "free"
EXPIRED = "expired"

STATUSES = (ACTIVE, DUE_SOON, PAST_DUE, PENDING, FREE, EXPIRED)
LAPSED_STATUSES = (PAST_DUE, EXPIRED)

DEFAULT_DUE_SOON_DAYS = 0
DEFAULT_PAST_DUE_GRACE_DAYS = 7


@dataclass(frozen=True)
class AccessDecision:
    status: str
    access: bool
    paid_through: str | None = None
    days_left: int | None = None

    @property
    def lapsed(self) -> bool:
        return self.status in LAPSED_STATUSES

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "access": self.access,
            "paid_through": self.paid_through,
            "days_left": self.days_left,
        }


def _duration(duration_days) -> int:
    try:
        return int(duration_days or 0)
    except (TypeError, ValueError):
        return 0


def _is_blank(raw) -> bool:
    return raw is None or (isinstance(raw, str) and not raw.strip())


def effective_paid_through(start_date=None, paid_through_date=None, duration_days=None) -> str | None:
    """The last civil day covered by the membership.

    A stored paid-through wins (it is rewritten on every renewal). Otherwise
    it is derived from the start date, counting the start day itself, so a
    one-day pass ends on the day it starts.
    """
    paid = clock.normalize_to_ymd(paid_through_date)
    if paid:
        return paid
    start = clock.normalize_to_ymd(start_date)
    days = _duration(duration_days)
    if start and 0 < days < NO_EXPIRY_DAYS:
        return clock.add_days(start, max(days - 1, 0))
    return None


def resolve_membership_status(
    tier_code: str | None,
    grants_access: bool,
    duration_days,
    stored_status: str | None = None,
    start_date=None,
    paid_through_date=None,
    now: datetime | None = None,
    *,
    due_soon_days: int = DEFAULT_DUE_SOON_DAYS,
    past_due_grace_days: int = DEFAULT_PAST_DUE_GRACE_DAYS,
) -> AccessDecision:
    tier = (tier_code or FREE_PLAN_CODE).strip().lower()
    if tier == FREE_PLAN_CODE:
        return AccessDecision(FREE, False)

    stored = (stored_status or "").strip().lower()
    if stored == PENDING:
        return AccessDecision(PENDING, False)
    if stored in (EXPIRED, PAST_DUE):
        return AccessDecision(stored, False, clock.normalize_to_ymd(paid_through_date))

    start = clock.normalize_to_ymd(start_date)
    paid = clock.normalize_to_ymd(paid_through_date)
    if (not _is_blank(start_date) and start is None) or (not _is_blank(paid_through_date) and paid is None):
        return AccessDecision(PENDING, False)

    now = clock.resort_now(now)
    today = now.date().isoformat()
    if start and today < start:
        return AccessDecision(PENDING, False, paid)

    if _duration(duration_days) >= NO_EXPIRY_DAYS:
        return AccessDecision(ACTIVE, bool(grants_access), paid)

    through = effective_paid_through(start, paid, duration_days)
    if through is None:
        return AccessDecision(PENDING, False)

    days_left = clock.days_between(today, through)
    if now < clock.end_of_day_utc(through):
        if stored == DUE_SOON or (due_soon_days > 0 and days_left < due_soon_days):
            return AccessDecision(DUE_SOON, bool(grants_access), through, days_left)
        return AccessDecision(ACTIVE, bool(grants_access), through, days_left)

    if -days_left <= past_due_grace_days:
        return AccessDecision(PAST_DUE, False, through, days_left)
    return AccessDecision(EXPIRED, False, through, days_left)


def resolve_record(membership, now: datetime | None = None, **kwargs) -> AccessDecision:
    """Resolve a :class:`~resort_club.memberships.MembershipRecord`."""
    plan = membership.plan
    return resolve_membership_status(
        plan.code,
        plan.grants_access,
        plan.duration_days,
        membership.status,
        membership.start_date,
        membership.paid_through_date,
        now,
        **kwargs,
    )


def pick_current_membership(memberships, now: datetime | None = None, **kwargs):
    """Choose one membership when a join hands back several for a member.

    Rows that grant access right now win; otherwise, and among several
    granting rows, the one with the latest start date. Rows with an
    unparseable start date sort last.
    """
    rows = list(memberships or [])
    if not rows:
        return None

    def start_key(m):
        return clock.normalize_to_ymd(m.start_date) or ""

    granting = [m for m in rows if resolve_record(m, now, **kwargs).access]
    pool = granting or rows
    return max(pool, key=start_key)
