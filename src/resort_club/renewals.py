"""Renewal reminders for paid memberships nearing their paid-through date."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from . import clock
from .db import Database

logger = logging.getLogger(__name__)

# (days before paid-through, reminder key)
REMINDER_RULES = ((14, "14d"), (3, "3d"))


def queue_renewal_notifications(db: Database, member_id: int, membership_id: int, paid_through_date,
                                now: datetime | None = None) -> int:
    """Queue every reminder whose window has opened; return how many were new.

    Each reminder exists at most once per paid-through date, so calling this
    on every status read is safe. A renewal moves the paid-through date and
    starts a fresh set.
    """
    paid_through = clock.normalize_to_ymd(paid_through_date)
    if not paid_through:
        return 0
    days_left = clock.days_between(clock.today_ymd(now), paid_through)
    if days_left < 0:
        return 0

    due = [(days, key) for days, key in REMINDER_RULES if days_left <= days]
    if not due:
        return 0

    inserted = 0
    con = db.connect()
    try:
        cur = con.cursor()
        for days, key in due:
            cur.execute(
                db.sql(
                    """
                    INSERT INTO renewal_notifications(member_id, membership_id, paid_through_date,
                                                      reminder_key, reminder_days)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(member_id, membership_id, paid_through_date, reminder_key) DO NOTHING
                    """
                ),
                (member_id, membership_id, paid_through, key, days),
            )
            inserted += max(cur.rowcount, 0)
        con.commit()
    except Exception:
        con.rollback()
        raise
    finally:
        con.close()
    if inserted:
        logger.info("Queued %d renewal reminder(s) for member %s (paid through %s)",
                    inserted, member_id, paid_through)
    return inserted


def unseen_renewal_notifications(db: Database, member_id: int, paid_through_date) -> list[dict]:
    paid_through = clock.normalize_to_ymd(paid_through_date)
    if not paid_through:
        return []
    return db.fetch_all(
        """
        SELECT id, reminder_days, reminder_key, paid_through_date, created_at, seen_at
          FROM renewal_notifications
         WHERE member_id = ? AND paid_through_date = ? AND seen_at IS NULL
         ORDER BY reminder_days ASC, created_at DESC
        """,
        (member_id, paid_through),
    )


def mark_renewal_notifications_seen(db: Database, member_id: int, paid_through_date,
                                    now: datetime | None = None) -> int:
    paid_through = clock.normalize_to_ymd(paid_through_date)
    if not paid_through:
        return 0
    seen_at = clock.resort_now(now).astimezone(timezone.utc).isoformat(timespec="seconds")
    con = db.connect()
    try:
        cur = con.cursor()
        cur.execute(
            db.sql(
                """
                UPDATE renewal_notifications SET seen_at = ?
                 WHERE member_id = ? AND paid_through_date = ? AND seen_at IS NULL
                """
            ),
            (seen_at, member_id, paid_through),
        )
        changed = cur.rowcount
        con.commit()
    finally:
        con.close()
    return changed


def renewal_message_for_days(days_left: int, paid_through_label: str) -> str:
    if days_left <= 0:
        when = "today"
    elif days_left == 1:
        when = "tomorrow"
    else:
        when = f"in {days_left} days"
    return f"Your membership expires {when} ({paid_through_label}). Renew now to avoid interruption."
