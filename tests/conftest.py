import pytest

from resort_club.app import create_app
from resort_club.db import Database, SettingsStore
from resort_club.memberships import create_member, load_membership
from resort_club.plans import get_plan
from resort_club.staff import create_staff

QR_SECRET = "test-qr-secret"
HOOK_SECRETS = {"key_live": "hook-secret-1", "key_next": "hook-secret-2"}


@pytest.fixture
def db(tmp_path):
    database = Database(db_path=str(tmp_path / "club.sqlite3"))
    database.init_db()
    return database


@pytest.fixture
def settings(db):
    return SettingsStore(db)


@pytest.fixture
def make_member(db):
    """Create a member and optionally move them onto a paid plan with raw dates."""

    def _make(name="Ada Lovelace", plan_code=None, start_date=None, paid_through=None, status="active",
              now=None):
        member = create_member(db, name, f"{name.split()[0].lower()}@example.com", "876-555-0100", now=now)
        if plan_code:
            plan = get_plan(db, plan_code)
            con = db.connect()
            try:
                con.execute(
                    "UPDATE memberships SET plan_id = ?, status = ?, start_date = ?, paid_through_date = ?"
                    " WHERE member_id = ?",
                    (plan.id, status, start_date, paid_through, member["id"]),
                )
                con.commit()
            finally:
                con.close()
        member["membership"] = load_membership(db, member["id"])
        return member

    return _make


@pytest.fixture
def app(tmp_path, monkeypatch):
    db_path = str(tmp_path / "app.sqlite3")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("CLUB_DB_PATH", db_path)
    app = create_app({
        "TESTING": True,
        "DATABASE_URL": None,
        "CLUB_DB_PATH": db_path,
        "CLUB_ALLOW_SQLITE": True,
        "SESSION_SECRET": "test-session",
        "QR_TOKEN_SECRET": QR_SECRET,
        "FYGARO_HOOK_SECRETS": dict(HOOK_SECRETS),
        "DOWNGRADE_SCHEDULER_ENABLED": False,
    })
    return app


@pytest.fixture
def app_db(app):
    return app.extensions["club_db"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def staff_client(app, app_db):
    create_staff(app_db, "Gate One", "4321", "front_desk")
    client = app.test_client()
    resp = client.post("/staff/login", json={"pin": "4321"})
    assert resp.status_code == 200
    return client


@pytest.fixture
def admin_client(app, app_db):
    create_staff(app_db, "Manager", "9999", "admin")
    client = app.test_client()
    resp = client.post("/staff/login", json={"pin": "9999"})
    assert resp.status_code == 200
    return client
