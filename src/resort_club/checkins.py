"""Daily check-in recording and loyalty points."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from . import clock
from .config import POINTS_PER_CHECKIN_KEY
from .db import Database, SettingsStore, is_unique_violation
from .errors import CheckinFailed

logger = logging.getLogger(__name__)

CREATED = "created"
ALREADY_CHECKED_IN = "already_checked_in"


@dataclass(frozen=True)
class CheckinEvent:
    id: int
    member_id: int
    staff_id: int | None
    checked_in_at: str
    checkin_day: str
    points_earned: int
    method: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "staff_id": self.staff_id,
            "checked_in_at": self.checked_in_at,
            "checkin_day": self.checkin_day,
            "points_earned": self.points_earned,
            "method": self.method,
        }


@dataclass(frozen=True)
class CheckinResult:
    outcome: str
    event: CheckinEvent | None = None
    checkin_day: str | None = None

    @property
    def created(self) -> bool:
        return self.outcome == CREATED


def points_per_checkin(settings: SettingsStore) -> int:
    value = settings.get_int(POINTS_PER_CHECKIN_KEY, 1)
    return max(0, value if value is not None else 1)


def record_checkin(db: Database, settings: SettingsStore, member_id: int, staff_id: int | None = None,
                   now: datetime | None = None, method: str = "manual") -> CheckinResult:
    """Insert today's check-in for ``member_id``.

    The unique ``(member_id, checkin_day)`` index decides whether the member
    already checked in; there is no existence query first. Concurrent scans
    therefore yield exactly one ``created`` and the rest
    ``already_checked_in``. Any other database error raises
    :class:`CheckinFailed`.
    """
    moment = clock.resort_now(now)
    day = moment.date().isoformat()
    checked_in_at = moment.astimezone(timezone.utc).isoformat(timespec="seconds")
    points = points_per_checkin(settings)

    con = db.connect()
    try:
        cur = con.cursor()
        try:
            event_id = db.insert(
                cur,
                """
                INSERT INTO checkins(member_id, staff_id, checked_in_at, checkin_day, points_earned, method)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (member_id, staff_id, checked_in_at, day, points, method),
            )
            con.commit()
        except Exception as exc:
            con.rollback()
            if is_unique_violation(exc):
                return CheckinResult(ALREADY_CHECKED_IN, checkin_day=day)
            logger.exception("Check-in insert failed for member %s", member_id)
            raise CheckinFailed(f"Check-in failed: {exc}") from exc
    finally:
        con.close()

    event = CheckinEvent(event_id, member_id, staff_id, checked_in_at, day, points, method)
    logger.info("Member %s checked in (%s, +%s pts)", member_id, method, points)
    return CheckinResult(CREATED, event=event, checkin_day=day)


def checkins_for_day(db: Database, ymd: str | None = None, now: datetime | None = None,
                     limit: int = 200) -> list[dict]:
    """Check-ins whose timestamp falls inside the resort-local day."""
    start, end = clock.day_bounds_utc(ymd or clock.today_ymd(now))
    return db.fetch_all(
        """
        SELECT c.id, c.member_id, c.staff_id, c.checked_in_at, c.checkin_day, c.points_earned, c.method,
               m.full_name
          FROM checkins c
          JOIN members m ON m.id = c.member_id
         WHERE c.checked_in_at >= ? AND c.checked_in_at < ?
         ORDER BY c.checked_in_at DESC
         LIMIT ?
        """,
        (start.isoformat(timespec="seconds"), end.isoformat(timespec="seconds"), int(limit)),
    )


def member_points(db: Database, member_id: int) -> int:
    row = db.fetch_one(
        "SELECT COALESCE(SUM(points_earned), 0) AS total FROM checkins WHERE member_id = ?",
        (member_id,),
    )
    return int(row["total"]) if row else 0
