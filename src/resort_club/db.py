"""Database access for the club core.

SQLite is the local/dev backend; Postgres is used whenever ``DATABASE_URL`` is
set. Queries are written once with ``?`` placeholders and translated for
psycopg by :meth:`Database.sql`.
"""

from __future__ import annotations

import logging
import socket
import sqlite3
from urllib.parse import unquote, urlparse

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION_SQLSTATE = "23505"

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS members (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        full_name TEXT NOT NULL,
        email_lower TEXT,
        phone_e164 TEXT,
        card_key TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_members_card_key ON members(card_key)",
    "CREATE INDEX IF NOT EXISTS idx_members_email ON members(email_lower)",
    """
    CREATE TABLE IF NOT EXISTS membership_plans (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        price_cents INTEGER NOT NULL DEFAULT 0,
        duration_days INTEGER NOT NULL,
        grants_access INTEGER NOT NULL DEFAULT 0,
        discount_food REAL NOT NULL DEFAULT 0,
        discount_watersports REAL NOT NULL DEFAULT 0,
        discount_giftshop REAL NOT NULL DEFAULT 0,
        discount_spa REAL NOT NULL DEFAULT 0,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS memberships (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        member_id INTEGER NOT NULL REFERENCES members(id),
        plan_id INTEGER NOT NULL REFERENCES membership_plans(id),
        status TEXT,
        start_date TEXT,
        paid_through_date TEXT,
        last_payment_date TEXT,
        needs_contact INTEGER NOT NULL DEFAULT 0,
        downgraded_from_plan_code TEXT,
        downgraded_from_plan_name TEXT,
        downgraded_on TEXT,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_memberships_member ON memberships(member_id)",
    """
    CREATE TABLE IF NOT EXISTS checkins (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        member_id INTEGER NOT NULL REFERENCES members(id),
        staff_id INTEGER,
        checked_in_at TEXT NOT NULL,
        checkin_day TEXT NOT NULL,
        points_earned INTEGER NOT NULL DEFAULT 1,
        method TEXT NOT NULL DEFAULT 'manual'
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_checkins_member_day ON checkins(member_id, checkin_day)",
    "CREATE INDEX IF NOT EXISTS idx_checkins_time ON checkins(checked_in_at)",
    """
    CREATE TABLE IF NOT EXISTS payments (
        id TEXT PRIMARY KEY,
        member_id INTEGER REFERENCES members(id),
        membership_id INTEGER REFERENCES memberships(id),
        amount_cents INTEGER NOT NULL DEFAULT 0,
        currency TEXT NOT NULL DEFAULT 'USD',
        status TEXT NOT NULL DEFAULT 'pending',
        provider TEXT,
        provider_payment_id TEXT,
        provider_reference TEXT,
        plan_code TEXT,
        paid_on TEXT,
        payment_method TEXT,
        notes TEXT,
        raw_payload TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_payments_provider_txn
    ON payments(provider, provider_payment_id)
    WHERE provider_payment_id IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS staff (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT,
        pin_salt TEXT NOT NULL,
        pin_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'front_desk'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        key TEXT PRIMARY KEY,
        int_value INTEGER,
        text_value TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS renewal_notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        member_id INTEGER NOT NULL REFERENCES members(id),
        membership_id INTEGER NOT NULL REFERENCES memberships(id),
        paid_through_date TEXT NOT NULL,
        reminder_key TEXT NOT NULL,
        reminder_days INTEGER NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        seen_at TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_renewal_notifications
    ON renewal_notifications(member_id, membership_id, paid_through_date, reminder_key)
    """,
]


def is_unique_violation(exc: BaseException) -> bool:
    """True when ``exc`` is a unique-constraint failure on either backend."""
    if getattr(exc, "sqlstate", None) == UNIQUE_VIOLATION_SQLSTATE:
        return True
    if isinstance(exc, sqlite3.IntegrityError):
        return "UNIQUE constraint failed" in str(exc)
    return False


def row_to_dict(row) -> dict | None:
    if row is None:
        return None
    if isinstance(row, dict):
        return row
    return dict(row)


class Database:
    """Connection factory that hides the sqlite/psycopg differences."""

    def __init__(self, database_url: str | None = None, db_path: str | None = None,
                 allow_sqlite: bool = True):
        self.database_url = (database_url or "").strip() or None
        self.db_path = db_path
        if not self.database_url and not (allow_sqlite and db_path):
            raise ConfigurationError(
                "DATABASE_URL is not configured. Set CLUB_ALLOW_SQLITE=1 and CLUB_DB_PATH for local development."
            )

    @classmethod
    def from_config(cls, config) -> "Database":
        return cls(
            database_url=config.get("DATABASE_URL"),
            db_path=config.get("CLUB_DB_PATH"),
            allow_sqlite=config.get("CLUB_ALLOW_SQLITE", True),
        )

    @property
    def is_postgres(self) -> bool:
        return self.database_url is not None

    def sql(self, query: str) -> str:
        if self.is_postgres:
            return query.replace("?", "%s")
        return query

    def connect(self):
        if self.is_postgres:
            return self._connect_postgres()
        con = sqlite3.connect(self.db_path, timeout=10)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys = ON")
        return con

    def _connect_postgres(self):
        import psycopg
        from psycopg.rows import dict_row

        dsn = self.database_url
        if not (dsn.startswith("postgres://") or dsn.startswith("postgresql://")):
            return psycopg.connect(dsn, row_factory=dict_row, connect_timeout=10)
        u = urlparse(dsn)
        host = u.hostname or ""
        kwargs = {
            "host": host,
            "port": u.port or 5432,
            "dbname": (u.path or "/postgres").lstrip("/") or "postgres",
            "sslmode": "require",
            "row_factory": dict_row,
            "connect_timeout": 10,
        }
        for kv in (u.query or "").split("&"):
            k, _, v = kv.partition("=")
            if k == "sslmode" and v:
                kwargs["sslmode"] = v
        if u.username:
            kwargs["user"] = unquote(u.username)
        if u.password:
            kwargs["password"] = unquote(u.password)
        # prefer IPv4 while keeping the hostname for TLS/SNI
        try:
            infos = socket.getaddrinfo(host, None, socket.AF_INET, socket.SOCK_STREAM)
            if infos:
                kwargs["hostaddr"] = infos[0][4][0]
        except OSError:
            logger.debug("IPv4 lookup failed for %s, letting libpq resolve it", host)
        return psycopg.connect(**kwargs)

    def _ddl(self, statement: str) -> str:
        if self.is_postgres:
            return statement.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
        return statement

    def init_db(self) -> None:
        from .plans import seed_plans

        con = self.connect()
        try:
            cur = con.cursor()
            for statement in SCHEMA:
                cur.execute(self._ddl(statement))
            seed_plans(self, cur)
            con.commit()
        finally:
            con.close()

    def fetch_one(self, query: str, params: tuple = ()) -> dict | None:
        con = self.connect()
        try:
            cur = con.cursor()
            cur.execute(self.sql(query), params)
            return row_to_dict(cur.fetchone())
        finally:
            con.close()

    def fetch_all(self, query: str, params: tuple = ()) -> list[dict]:
        con = self.connect()
        try:
            cur = con.cursor()
            cur.execute(self.sql(query), params)
            return [row_to_dict(r) for r in cur.fetchall()]
        finally:
            con.close()

    def insert(self, cur, query: str, params: tuple = ()):
        """Run an INSERT on ``cur`` and return the new integer id."""
        if self.is_postgres:
            cur.execute(self.sql(query) + " RETURNING id", params)
            return row_to_dict(cur.fetchone())["id"]
        cur.execute(query, params)
        return cur.lastrowid


class SettingsStore:
    """Key/value access to ``app_settings``.

    Components receive a store instead of querying the table themselves, so the
    resolver, sweeper and check-in flow can be exercised against any database.
    """

    def __init__(self, db: Database):
        self.db = db

    def get_int(self, key: str, default: int | None = None) -> int | None:
        row = self.db.fetch_one("SELECT int_value FROM app_settings WHERE key = ?", (key,))
        if not row or row.get("int_value") is None:
            return default
        try:
            return int(row["int_value"])
        except (TypeError, ValueError):
            return default

    def set_int(self, key: str, value: int) -> None:
        con = self.db.connect()
        try:
            cur = con.cursor()
            cur.execute(
                self.db.sql(
                    """
                    INSERT INTO app_settings(key, int_value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET int_value = excluded.int_value
                    """
                ),
                (key, int(value)),
            )
            con.commit()
        finally:
            con.close()
