"""Auto-downgrade of lapsed paid memberships to the free rewards tier."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime

from . import clock
from .config import DOWNGRADE_LAST_RUN_KEY, DOWNGRADE_THROTTLE_SECONDS, FREE_PLAN_CODE
from .db import Database, SettingsStore
from .membership_status import resolve_record
from .memberships import MembershipRecord, iter_paid_memberships
from .plans import get_plan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    ran: bool
    downgraded: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {"ran": self.ran, "downgraded": self.downgraded, "failed": self.failed}


def _downgrade_one(db: Database, membership: MembershipRecord, free_plan_id: int, today: str,
                   free_paid_through: str) -> bool:
    expired_on = (
        clock.normalize_to_ymd(membership.paid_through_date)
        or clock.normalize_to_ymd(membership.start_date)
        or today
    )
    con = db.connect()
    try:
        cur = con.cursor()
        # the plan_id guard makes a concurrent second sweep a no-op for this row
        cur.execute(
            db.sql(
                """
                UPDATE memberships
                   SET plan_id = ?, status = 'active', start_date = ?, paid_through_date = ?,
                       needs_contact = 0, downgraded_from_plan_code = ?,
                       downgraded_from_plan_name = ?, downgraded_on = ?,
                       updated_at = CURRENT_TIMESTAMP
                 WHERE id = ? AND plan_id = ?
                """
            ),
            (
                free_plan_id,
                today,
                free_paid_through,
                membership.plan.code,
                membership.plan.name or "Paid Plan",
                expired_on,
                membership.id,
                membership.plan.id,
            ),
        )
        changed = cur.rowcount == 1
        con.commit()
        return changed
    except Exception:
        con.rollback()
        raise
    finally:
        con.close()


def sweep_lapsed_memberships(db: Database, now: datetime | None = None, **resolver_kwargs) -> SweepResult:
    """Move every lapsed paid membership onto the free tier.

    One failing row does not stop the sweep; it is logged and counted.
    """
    today = clock.today_ymd(now)
    free = get_plan(db, FREE_PLAN_CODE)
    if free is None or free.id is None:
        logger.warning("Auto-downgrade skipped: no %s plan in the catalog", FREE_PLAN_CODE)
        return SweepResult(ran=True)
    free_paid_through = clock.add_days(today, max(free.duration_days, 1))

    downgraded = failed = 0
    for membership in iter_paid_memberships(db):
        decision = resolve_record(membership, now, **resolver_kwargs)
        if not decision.lapsed:
            continue
        try:
            if _downgrade_one(db, membership, free.id, today, free_paid_through):
                downgraded += 1
                logger.info(
                    "Downgraded membership %s (member %s) from %s, lapsed %s",
                    membership.id, membership.member_id, membership.plan.code, decision.paid_through,
                )
        except Exception:
            failed += 1
            logger.exception("Auto-downgrade failed for membership %s", membership.id)
    return SweepResult(ran=True, downgraded=downgraded, failed=failed)


def maybe_run_auto_downgrade(db: Database, settings: SettingsStore, now: datetime | None = None, *,
                             throttle_seconds: int = DOWNGRADE_THROTTLE_SECONDS, force: bool = False,
                             **resolver_kwargs) -> SweepResult:
    """Run the sweep unless one ran within ``throttle_seconds``.

    The last-run epoch is read then written without a lock, so two callers
    racing inside the window may both sweep. The sweep is idempotent per row.
    """
    now_epoch = clock.epoch(now)
    if not force:
        last_run = settings.get_int(DOWNGRADE_LAST_RUN_KEY, 0) or 0
        if now_epoch - last_run < throttle_seconds:
            return SweepResult(ran=False)
    settings.set_int(DOWNGRADE_LAST_RUN_KEY, now_epoch)
    return sweep_lapsed_memberships(db, now, **resolver_kwargs)


class DowngradeScheduler:
    """Runs the throttled sweep on a daemon thread, outside request handling."""

    def __init__(self, db: Database, settings: SettingsStore, interval_seconds: int = 600,
                 throttle_seconds: int = DOWNGRADE_THROTTLE_SECONDS, resolver_kwargs: dict | None = None):
        self.db = db
        self.settings = settings
        self.interval_seconds = max(int(interval_seconds), 1)
        self.throttle_seconds = throttle_seconds
        self.resolver_kwargs = resolver_kwargs or {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_result: SweepResult | None = None

    def run_once(self) -> SweepResult:
        try:
            result = maybe_run_auto_downgrade(
                self.db, self.settings, throttle_seconds=self.throttle_seconds, **self.resolver_kwargs
            )
        except Exception:
            logger.exception("Auto-downgrade run failed")
            result = SweepResult(ran=False)
        self.last_result = result
        if result.ran:
            logger.info("Auto-downgrade run: %s", result.to_dict())
        return result

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval_seconds)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="auto-downgrade", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
