from datetime import datetime, timedelta, timezone

from resort_club import downgrade
from resort_club.config import DOWNGRADE_LAST_RUN_KEY
from resort_club.memberships import load_membership

NOW = datetime(2024, 3, 15, 15, 0, tzinfo=timezone.utc)
FREE_THROUGH = "2034-03-13"  # 2024-03-15 + 3650 days


def test_lapsed_membership_moves_to_free_tier_with_provenance(db, make_member):
    member = make_member(plan_code="club_weekly", start_date="2024-02-23", paid_through="2024-03-01")

    result = downgrade.sweep_lapsed_memberships(db, NOW)

    assert result.to_dict() == {"ran": True, "downgraded": 1, "failed": 0}
    membership = load_membership(db, member["id"])
    assert membership.plan.code == "rewards_free"
    assert membership.status == "active"
    assert membership.start_date == "2024-03-15"
    assert membership.paid_through_date == FREE_THROUGH
    assert membership.downgraded_from_plan_code == "club_weekly"
    assert membership.downgraded_from_plan_name == "Travellers Club Weekly Pass"
    assert membership.downgraded_on == "2024-03-01"


def test_past_due_counts_as_lapsed(db, make_member):
    make_member(plan_code="club_day", start_date="2024-03-14", paid_through="2024-03-14")
    assert downgrade.sweep_lapsed_memberships(db, NOW).downgraded == 1


def test_live_pending_and_free_rows_are_left_alone(db, make_member):
    live = make_member("Live One", plan_code="club_monthly_95", start_date="2024-03-01", paid_through="2024-03-30")
    pending = make_member("Pending One", plan_code="club_weekly", start_date="2024-01-01",
                          paid_through="2024-01-07", status="pending")
    free = make_member("Free One")

    assert downgrade.sweep_lapsed_memberships(db, NOW).downgraded == 0
    assert load_membership(db, live["id"]).plan.code == "club_monthly_95"
    assert load_membership(db, pending["id"]).plan.code == "club_weekly"
    assert load_membership(db, free["id"]).paid_through_date == free["membership"].paid_through_date


def test_sweep_twice_is_idempotent(db, make_member):
    member = make_member(plan_code="club_weekly", start_date="2024-02-23", paid_through="2024-03-01")

    downgrade.sweep_lapsed_memberships(db, NOW)
    again = downgrade.sweep_lapsed_memberships(db, NOW + timedelta(days=1))

    assert again.downgraded == 0
    membership = load_membership(db, member["id"])
    assert membership.paid_through_date == FREE_THROUGH
    assert membership.downgraded_from_plan_code == "club_weekly"


def test_one_failing_row_does_not_stop_the_sweep(db, make_member, monkeypatch):
    bad = make_member("Bad Row", plan_code="club_weekly", start_date="2024-02-01", paid_through="2024-02-07")
    good = make_member("Good Row", plan_code="club_weekly", start_date="2024-02-01", paid_through="2024-02-07")
    real = downgrade._downgrade_one

    def flaky(db_, membership, *args):
        if membership.id == bad["membership"].id:
            raise RuntimeError("row locked")
        return real(db_, membership, *args)

    monkeypatch.setattr(downgrade, "_downgrade_one", flaky)
    result = downgrade.sweep_lapsed_memberships(db, NOW)

    assert result.downgraded == 1
    assert result.failed == 1
    assert load_membership(db, good["id"]).plan.code == "rewards_free"
    assert load_membership(db, bad["id"]).plan.code == "club_weekly"


def test_throttle(db, settings, make_member):
    make_member(plan_code="club_weekly", start_date="2024-02-01", paid_through="2024-02-07")

    first = downgrade.maybe_run_auto_downgrade(db, settings, NOW, throttle_seconds=300)
    assert first.ran and first.downgraded == 1
    assert settings.get_int(DOWNGRADE_LAST_RUN_KEY) == int(NOW.timestamp())

    assert not downgrade.maybe_run_auto_downgrade(db, settings, NOW + timedelta(seconds=120)).ran
    assert downgrade.maybe_run_auto_downgrade(db, settings, NOW + timedelta(seconds=120), force=True).ran
    assert downgrade.maybe_run_auto_downgrade(db, settings, NOW + timedelta(seconds=421)).ran


def test_scheduler_run_once(db, settings, make_member):
    member = make_member(plan_code="club_weekly", start_date="2020-01-01", paid_through="2020-01-07")
    scheduler = downgrade.DowngradeScheduler(db, settings, interval_seconds=3600)

    result = scheduler.run_once()

    assert result.ran and result.downgraded == 1
    assert scheduler.last_result is result
    assert load_membership(db, member["id"]).plan.code == "rewards_free"
    assert not scheduler.run_once().ran


def test_scheduler_start_stop(db, settings):
    scheduler = downgrade.DowngradeScheduler(db, settings, interval_seconds=3600)
    scheduler.start()
    scheduler.stop()
    assert scheduler._thread is None
