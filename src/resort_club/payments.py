"""Pending payments and webhook reconciliation."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation

from . import clock
from .config import FREE_PLAN_CODE, PAYMENT_PROVIDER
from .db import Database, is_unique_violation, row_to_dict
from .errors import PaymentError
from .memberships import load_membership
from .plans import Plan, get_plan

logger = logging.getLogger(__name__)

APPLIED = "applied"
ALREADY_PAID = "already_paid"
MISSING_REFERENCE = "missing_reference"
NOT_FOUND = "not_found"
PLAN_MISSING = "plan_missing"
MEMBERSHIP_MISSING = "membership_missing"

# outcomes the provider must not retry
ACKNOWLEDGED = (APPLIED, ALREADY_PAID, PLAN_MISSING, MEMBERSHIP_MISSING)


@dataclass(frozen=True)
class ReconcileResult:
    outcome: str
    payment_id: str | None = None
    paid_through: str | None = None

    @property
    def acknowledged(self) -> bool:
        return self.outcome in ACKNOWLEDGED


def new_payment_id() -> str:
    return f"pay_{uuid.uuid4().hex}"


def parse_amount_cents(value) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int((Decimal(str(value)) * 100).quantize(Decimal("1")))
    except (InvalidOperation, ValueError):
        return None


def create_pending_payment(db: Database, member_id: int, plan_code: str, currency: str = "USD") -> dict:
    """Open a pending payment for a plan purchase.

    The returned id is the correlation id the provider echoes back as
    ``customReference``.
    """
    plan = get_plan(db, plan_code, active_only=True)
    if plan is None:
        raise PaymentError("Invalid plan", code="invalid_plan")
    if plan.code == FREE_PLAN_CODE or plan.price_cents <= 0:
        raise PaymentError("Free plan does not require payment", code="free_plan")
    membership = load_membership(db, member_id)
    if membership is None:
        raise PaymentError("No membership row", code="no_membership")

    payment = {
        "id": new_payment_id(),
        "member_id": member_id,
        "membership_id": membership.id,
        "amount_cents": plan.price_cents,
        "currency": currency.upper(),
        "status": "pending",
        "provider": PAYMENT_PROVIDER,
        "plan_code": plan.code,
    }
    con = db.connect()
    try:
        cur = con.cursor()
        cur.execute(
            db.sql(
                """
                INSERT INTO payments(id, member_id, membership_id, amount_cents, currency, status,
                                     provider, plan_code, notes)
                VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                """
            ),
            (
                payment["id"], member_id, membership.id, plan.price_cents, payment["currency"],
                PAYMENT_PROVIDER, plan.code, f"Plan={plan.code}",
            ),
        )
        con.commit()
    finally:
        con.close()
    logger.info("Pending payment %s for member %s (%s)", payment["id"], member_id, plan.code)
    return payment


def get_payment(db: Database, payment_id: str) -> dict | None:
    return db.fetch_one("SELECT * FROM payments WHERE id = ?", (payment_id,))


def extended_paid_through(current, today: str, duration_days: int) -> str:
    """Extend from the current paid-through if it has not passed, else from today."""
    current_ymd = clock.normalize_to_ymd(current)
    base = current_ymd if current_ymd and current_ymd >= today else today
    return clock.add_days(base, max(int(duration_days or 0), 0))


def reconcile_payment(db: Database, payload: dict, now: datetime | None = None) -> ReconcileResult:
    """Apply a verified webhook payload exactly once.

    The ``UPDATE ... WHERE status <> 'paid'`` is the guard against double
    delivery: only the call that flips the row extends the membership.
    """
    payment_id = str(payload.get("customReference") or "").strip()
    if not payment_id:
        return ReconcileResult(MISSING_REFERENCE)

    transaction_id = str(payload.get("transactionId") or "").strip() or None
    provider_ref = str(payload.get("reference") or "").strip() or None
    currency = str(payload.get("currency") or "").strip().upper() or None
    amount_cents = parse_amount_cents(payload.get("amount"))
    today = clock.today_ymd(now)

    con = db.connect()
    try:
        cur = con.cursor()
        cur.execute(db.sql("SELECT * FROM payments WHERE id = ?"), (payment_id,))
        payment = row_to_dict(cur.fetchone())
        if payment is None:
            return ReconcileResult(NOT_FOUND, payment_id)
        if str(payment.get("status") or "").lower() == "paid":
            return ReconcileResult(ALREADY_PAID, payment_id)

        try:
            cur.execute(
                db.sql(
                    """
                    UPDATE payments
                       SET status = 'paid',
                           provider = ?,
                           provider_payment_id = COALESCE(?, provider_payment_id),
                           provider_reference = COALESCE(?, provider_reference),
                           currency = COALESCE(?, currency),
                           amount_cents = COALESCE(?, amount_cents),
                           raw_payload = ?,
                           paid_on = ?,
                           payment_method = ?,
                           updated_at = CURRENT_TIMESTAMP
                     WHERE id = ? AND status <> 'paid'
                    """
                ),
                (
                    PAYMENT_PROVIDER, transaction_id, provider_ref, currency, amount_cents,
                    json.dumps(payload), today, PAYMENT_PROVIDER, payment_id,
                ),
            )
        except Exception as exc:
            con.rollback()
            if is_unique_violation(exc):
                logger.info("Provider transaction %s already recorded; acknowledging", transaction_id)
                return ReconcileResult(ALREADY_PAID, payment_id)
            raise
        if cur.rowcount != 1:
            con.rollback()
            return ReconcileResult(ALREADY_PAID, payment_id)

        cur.execute(db.sql("SELECT * FROM membership_plans WHERE code = ?"), (payment.get("plan_code") or "",))
        plan_row = row_to_dict(cur.fetchone())
        plan = Plan.from_row(plan_row) if plan_row else None
        if plan is None:
            con.commit()
            logger.warning("Payment %s paid but plan %r is unknown; membership untouched",
                           payment_id, payment.get("plan_code"))
            return ReconcileResult(PLAN_MISSING, payment_id)

        cur.execute(
            db.sql(
                """
                SELECT ms.id, ms.start_date, ms.paid_through_date, p.code AS plan_code
                  FROM memberships ms
                  JOIN membership_plans p ON p.id = ms.plan_id
                 WHERE ms.id = ?
                """
            ),
            (payment.get("membership_id"),),
        )
        membership = row_to_dict(cur.fetchone())
        if membership is None:
            con.commit()
            logger.warning("Payment %s paid but membership %s is missing", payment_id, payment.get("membership_id"))
            return ReconcileResult(MEMBERSHIP_MISSING, payment_id)

        # the free tier's far-future paid-through is not paid time to build on
        on_free_tier = membership.get("plan_code") == FREE_PLAN_CODE
        current = None if on_free_tier else membership.get("paid_through_date")
        new_paid_through = extended_paid_through(current, today, plan.duration_days)
        start_date = today if on_free_tier else (clock.normalize_to_ymd(membership.get("start_date")) or today)
        cur.execute(
            db.sql(
                """
                UPDATE memberships
                   SET plan_id = ?, status = 'active', start_date = ?, last_payment_date = ?,
                       paid_through_date = ?, needs_contact = 0, updated_at = CURRENT_TIMESTAMP
                 WHERE id = ?
                """
            ),
            (plan.id, start_date, today, new_paid_through, membership["id"]),
        )
        con.commit()
    except Exception:
        con.rollback()
        raise
    finally:
        con.close()

    logger.info("Payment %s reconciled; membership paid through %s", payment_id, new_paid_through)
    return ReconcileResult(APPLIED, payment_id, new_paid_through)
