"""Member and membership data access.

Every membership read goes through :func:`_record_from_row`, which turns the
flat ``memberships JOIN membership_plans`` row into one canonical
:class:`MembershipRecord` with a nested :class:`~resort_club.plans.Plan`.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime

from . import clock
from .config import FREE_PLAN_CODE, NO_EXPIRY_DAYS
from .db import Database, row_to_dict
from .errors import ClubError
from .membership_status import pick_current_membership
from .plans import Plan, get_plan

logger = logging.getLogger(__name__)

_MEMBERSHIP_SELECT = """
    SELECT ms.id, ms.member_id, ms.plan_id, ms.status, ms.start_date, ms.paid_through_date,
           ms.last_payment_date, ms.needs_contact, ms.downgraded_from_plan_code,
           ms.downgraded_from_plan_name, ms.downgraded_on,
           p.id AS plan_id_ref, p.code AS plan_code, p.name AS plan_name,
           p.price_cents AS plan_price_cents, p.duration_days AS plan_duration_days,
           p.grants_access AS plan_grants_access, p.discount_food AS plan_discount_food,
           p.discount_watersports AS plan_discount_watersports,
           p.discount_giftshop AS plan_discount_giftshop, p.discount_spa AS plan_discount_spa,
           p.is_active AS plan_is_active
      FROM memberships ms
      JOIN membership_plans p ON p.id = ms.plan_id
"""


@dataclass
class MembershipRecord:
    id: int
    member_id: int
    plan: Plan
    status: str | None
    start_date: str | None
    paid_through_date: str | None
    last_payment_date: str | None = None
    needs_contact: bool = False
    downgraded_from_plan_code: str | None = None
    downgraded_from_plan_name: str | None = None
    downgraded_on: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "plan_code": self.plan.code,
            "plan_name": self.plan.name,
            "status": self.status,
            "start_date": self.start_date,
            "paid_through_date": self.paid_through_date,
            "last_payment_date": self.last_payment_date,
            "needs_contact": self.needs_contact,
            "downgraded_from_plan_code": self.downgraded_from_plan_code,
            "downgraded_from_plan_name": self.downgraded_from_plan_name,
            "downgraded_on": self.downgraded_on,
        }


def _record_from_row(row) -> MembershipRecord:
    row = row_to_dict(row)
    plan = Plan.from_row({**row, "plan_id": row.get("plan_id_ref")}, prefix="plan_")
    return MembershipRecord(
        id=row["id"],
        member_id=row["member_id"],
        plan=plan,
        status=row.get("status"),
        start_date=clock.normalize_to_ymd(row.get("start_date")) or row.get("start_date"),
        paid_through_date=clock.normalize_to_ymd(row.get("paid_through_date")) or row.get("paid_through_date"),
        last_payment_date=clock.normalize_to_ymd(row.get("last_payment_date")),
        needs_contact=bool(row.get("needs_contact")),
        downgraded_from_plan_code=row.get("downgraded_from_plan_code"),
        downgraded_from_plan_name=row.get("downgraded_from_plan_name"),
        downgraded_on=clock.normalize_to_ymd(row.get("downgraded_on")),
    )


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    return email.strip().lower() or None


def normalize_phone(phone: str | None) -> str | None:
    if not phone:
        return None
    digits = "".join(ch for ch in phone if ch.isdigit())
    if len(digits) == 10:
        return "+1" + digits
    if digits.startswith("1") and len(digits) == 11:
        return "+" + digits
    return "+" + digits if digits else None


def load_membership(db: Database, member_id: int) -> MembershipRecord | None:
    rows = db.fetch_all(_MEMBERSHIP_SELECT + " WHERE ms.member_id = ?", (member_id,))
    records = [_record_from_row(r) for r in rows]
    if len(records) > 1:
        logger.warning("Member %s has %d membership rows; picking the current one", member_id, len(records))
        return pick_current_membership(records)
    return records[0] if records else None


def load_membership_by_id(db: Database, membership_id: int) -> MembershipRecord | None:
    row = db.fetch_one(_MEMBERSHIP_SELECT + " WHERE ms.id = ?", (membership_id,))
    return _record_from_row(row) if row else None


def iter_paid_memberships(db: Database) -> list[MembershipRecord]:
    rows = db.fetch_all(_MEMBERSHIP_SELECT + " WHERE p.code <> ? ORDER BY ms.id", (FREE_PLAN_CODE,))
    return [_record_from_row(r) for r in rows]


def get_member(db: Database, member_id) -> dict | None:
    try:
        member_id = int(member_id)
    except (TypeError, ValueError):
        return None
    return db.fetch_one(
        "SELECT id, full_name, email_lower, phone_e164, created_at FROM members WHERE id = ?",
        (member_id,),
    )


def find_member_by_card_key(db: Database, card_key: str | None) -> dict | None:
    if not card_key:
        return None
    return db.fetch_one("SELECT id, full_name, email_lower, phone_e164 FROM members WHERE card_key = ?", (card_key,))


def search_members(db: Database, q: str, limit: int = 20) -> list[dict]:
    like = f"%{q.strip()}%"
    return db.fetch_all(
        """
        SELECT id, full_name, email_lower, phone_e164 FROM members
         WHERE full_name LIKE ? OR email_lower LIKE ? OR phone_e164 LIKE ?
         ORDER BY id DESC LIMIT ?
        """,
        (like, like, like, int(limit)),
    )


def create_member(db: Database, full_name: str, email: str | None = None, phone: str | None = None,
                  now: datetime | None = None) -> dict:
    """Create a member on the free tier, valid for the free plan's no-expiry window."""
    full_name = (full_name or "").strip()
    if not full_name:
        raise ClubError("Full name is required.", code="validation_error")
    free = get_plan(db, FREE_PLAN_CODE)
    if free is None:
        raise ClubError("Free plan is missing from the catalog; run init-db.", code="configuration_error")

    today = clock.today_ymd(now)
    card_key = secrets.token_urlsafe(24)
    con = db.connect()
    try:
        cur = con.cursor()
        member_id = db.insert(
            cur,
            "INSERT INTO members(full_name, email_lower, phone_e164, card_key) VALUES (?, ?, ?, ?)",
            (full_name, normalize_email(email), normalize_phone(phone), card_key),
        )
        db.insert(
            cur,
            """
            INSERT INTO memberships(member_id, plan_id, status, start_date, paid_through_date)
            VALUES (?, ?, 'active', ?, ?)
            """,
            (member_id, free.id, today, clock.add_days(today, max(free.duration_days, NO_EXPIRY_DAYS))),
        )
        con.commit()
    except Exception:
        con.rollback()
        raise
    finally:
        con.close()
    logger.info("Provisioned member %s on %s", member_id, FREE_PLAN_CODE)
    return {"id": member_id, "full_name": full_name, "card_key": card_key}


def apply_membership_plan(db: Database, membership: MembershipRecord, plan: Plan, start_date: str,
                          *, record_payment: bool = False, payment_method: str = "cash",
                          payment_amount_cents: int | None = None, payment_notes: str | None = None) -> str:
    """Put ``membership`` on ``plan`` from ``start_date``; return the new paid-through.

    This is the staff-driven plan change. It optionally records an offline
    payment. Online renewals go through payment reconciliation instead.
    """
    start = clock.normalize_to_ymd(start_date)
    if start is None:
        raise ClubError("Start date must be a valid YYYY-MM-DD date.", code="validation_error")
    if plan.no_expiry:
        paid_through = clock.add_days(start, NO_EXPIRY_DAYS)
    else:
        paid_through = clock.add_days(start, max(plan.duration_days, 1))
    charged = record_payment and plan.price_cents > 0

    con = db.connect()
    try:
        cur = con.cursor()
        cur.execute(
            db.sql(
                """
                UPDATE memberships
                   SET plan_id = ?, start_date = ?, paid_through_date = ?, status = 'active',
                       last_payment_date = ?, needs_contact = 0, updated_at = CURRENT_TIMESTAMP
                 WHERE id = ?
                """
            ),
            (plan.id, start, paid_through, start if charged else None, membership.id),
        )
        if charged:
            from .payments import new_payment_id

            amount = plan.price_cents if payment_amount_cents is None else max(0, int(payment_amount_cents))
            cur.execute(
                db.sql(
                    """
                    INSERT INTO payments(id, member_id, membership_id, amount_cents, status, provider,
                                         plan_code, paid_on, payment_method, notes)
                    VALUES (?, ?, ?, ?, 'paid', 'staff', ?, ?, ?, ?)
                    """
                ),
                (new_payment_id(), membership.member_id, membership.id, amount, plan.code, start,
                 payment_method, payment_notes),
            )
        con.commit()
    except Exception:
        con.rollback()
        raise
    finally:
        con.close()
    logger.info("Membership %s moved to %s through %s", membership.id, plan.code, paid_through)
    return paid_through
