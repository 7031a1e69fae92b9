from datetime import datetime, timezone

import pytest

from resort_club import payments
from resort_club.errors import PaymentError
from resort_club.memberships import load_membership

NOW = datetime(2024, 3, 15, 15, 0, tzinfo=timezone.utc)


def _insert_pending(db, payment_id, member, plan_code="club_monthly_95"):
    con = db.connect()
    try:
        con.execute(
            "INSERT INTO payments(id, member_id, membership_id, amount_cents, status, provider, plan_code)"
            " VALUES (?, ?, ?, 9500, 'pending', 'fygaro', ?)",
            (payment_id, member["id"], member["membership"].id, plan_code),
        )
        con.commit()
    finally:
        con.close()


def test_reconcile_renews_lapsed_membership_from_today(db, make_member):
    member = make_member(plan_code="club_monthly_95", start_date="2024-01-01", paid_through="2024-01-30")
    _insert_pending(db, "pay_123", member)

    result = payments.reconcile_payment(
        db, {"customReference": "pay_123", "amount": "95.00", "currency": "USD"}, now=NOW
    )

    assert result.outcome == payments.APPLIED
    assert result.paid_through == "2024-04-14"
    payment = payments.get_payment(db, "pay_123")
    assert payment["status"] == "paid"
    assert payment["amount_cents"] == 9500
    assert payment["paid_on"] == "2024-03-15"
    membership = load_membership(db, member["id"])
    assert membership.paid_through_date == "2024-04-14"
    assert membership.last_payment_date == "2024-03-15"
    assert membership.status == "active"


def test_double_delivery_applies_once(db, make_member):
    member = make_member(plan_code="club_monthly_95", start_date="2024-01-01", paid_through="2024-01-30")
    _insert_pending(db, "pay_dup", member)
    payload = {"customReference": "pay_dup", "transactionId": "txn_1"}

    first = payments.reconcile_payment(db, payload, now=NOW)
    second = payments.reconcile_payment(db, payload, now=NOW)

    assert first.outcome == payments.APPLIED
    assert second.outcome == payments.ALREADY_PAID
    assert second.acknowledged
    assert load_membership(db, member["id"]).paid_through_date == "2024-04-14"


def test_live_membership_is_extended_additively(db, make_member):
    member = make_member(plan_code="club_monthly_95", start_date="2024-02-20", paid_through="2024-03-20")
    _insert_pending(db, "pay_early", member)

    result = payments.reconcile_payment(db, {"customReference": "pay_early"}, now=NOW)

    assert result.paid_through == "2024-04-19"
    assert load_membership(db, member["id"]).start_date == "2024-02-20"


def test_upgrade_from_free_tier_starts_today(db, make_member):
    member = make_member()
    assert member["membership"].plan.is_free
    _insert_pending(db, "pay_up", member, plan_code="club_weekly")

    result = payments.reconcile_payment(db, {"customReference": "pay_up"}, now=NOW)

    assert result.paid_through == "2024-03-22"
    membership = load_membership(db, member["id"])
    assert membership.plan.code == "club_weekly"
    assert membership.start_date == "2024-03-15"


def test_provider_transaction_seen_on_another_payment(db, make_member):
    member = make_member(plan_code="club_monthly_95", start_date="2024-01-01", paid_through="2024-01-30")
    _insert_pending(db, "pay_a", member)
    _insert_pending(db, "pay_b", member)

    assert payments.reconcile_payment(db, {"customReference": "pay_a", "transactionId": "txn_9"}, now=NOW).outcome \
        == payments.APPLIED
    result = payments.reconcile_payment(db, {"customReference": "pay_b", "transactionId": "txn_9"}, now=NOW)
    assert result.outcome == payments.ALREADY_PAID
    assert payments.get_payment(db, "pay_b")["status"] == "pending"


@pytest.mark.parametrize("payload", [{}, {"customReference": "  "}, {"amount": "10"}])
def test_missing_reference(db, payload):
    result = payments.reconcile_payment(db, payload, now=NOW)
    assert result.outcome == payments.MISSING_REFERENCE
    assert not result.acknowledged


def test_unknown_payment(db):
    result = payments.reconcile_payment(db, {"customReference": "pay_nope"}, now=NOW)
    assert result.outcome == payments.NOT_FOUND
    assert not result.acknowledged


def test_unknown_plan_marks_paid_but_leaves_membership(db, make_member):
    member = make_member(plan_code="club_monthly_95", start_date="2024-01-01", paid_through="2024-01-30")
    _insert_pending(db, "pay_odd", member, plan_code="retired_plan")

    result = payments.reconcile_payment(db, {"customReference": "pay_odd"}, now=NOW)

    assert result.outcome == payments.PLAN_MISSING
    assert result.acknowledged
    assert payments.get_payment(db, "pay_odd")["status"] == "paid"
    assert load_membership(db, member["id"]).paid_through_date == "2024-01-30"


def test_create_pending_payment(db, make_member):
    member = make_member()
    payment = payments.create_pending_payment(db, member["id"], "club_weekly", "usd")
    assert payment["id"].startswith("pay_")
    assert payment["amount_cents"] == 4500
    assert payment["currency"] == "USD"
    stored = payments.get_payment(db, payment["id"])
    assert stored["status"] == "pending"
    assert stored["membership_id"] == member["membership"].id


@pytest.mark.parametrize("plan_code, code", [("nope", "invalid_plan"), ("rewards_free", "free_plan")])
def test_create_pending_payment_rejects(db, make_member, plan_code, code):
    member = make_member()
    with pytest.raises(PaymentError) as excinfo:
        payments.create_pending_payment(db, member["id"], plan_code)
    assert excinfo.value.code == code


def test_create_pending_payment_needs_membership(db):
    with pytest.raises(PaymentError) as excinfo:
        payments.create_pending_payment(db, 12345, "club_weekly")
    assert excinfo.value.code == "no_membership"


@pytest.mark.parametrize("raw, cents", [("95.00", 9500), (45, 4500), ("12.345", 1234), ("", None), ("abc", None)])
def test_parse_amount_cents(raw, cents):
    assert payments.parse_amount_cents(raw) == cents
