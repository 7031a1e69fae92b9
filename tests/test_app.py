import json
import time

import pytest

from resort_club import clock
from resort_club.qr_token import issue_qr_token
from resort_club.webhooks import sign_header


def _new_member(client, name="Ada Lovelace"):
    resp = client.post("/api/members", json={"full_name": name, "email": "ada@example.com"})
    assert resp.status_code == 201
    return resp.get_json()["member"]


def _qr_token(client, member):
    resp = client.get("/api/qr/token", headers={"X-Member-Key": member["card_key"]})
    assert resp.status_code == 200
    return resp.get_json()


def _webhook(client, body: dict, key_id="key_live", secret="hook-secret-1", ts=None):
    raw = json.dumps(body).encode()
    header = sign_header(secret, raw, int(ts if ts is not None else time.time()))
    return client.post(
        "/webhooks/fygaro",
        data=raw,
        content_type="application/json",
        headers={"Fygaro-Key-Id": key_id, "Fygaro-Signature": header},
    )


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.data == b"ok"


def test_staff_endpoints_need_a_session(client):
    assert client.post("/api/checkin", json={"member_id": 1}).status_code == 401
    assert client.get("/api/checkins/today").status_code == 401


def test_wrong_pin(client, staff_client):
    resp = client.post("/staff/login", json={"pin": "0000"})
    assert resp.status_code == 401
    assert resp.get_json()["ok"] is False


def test_front_desk_cannot_change_settings(staff_client):
    assert staff_client.put("/api/settings/points", json={"points_per_checkin": 3}).status_code == 403


def test_logout(staff_client):
    staff_client.post("/staff/logout")
    assert staff_client.get("/api/checkins/today").status_code == 401


def test_qr_token_needs_member_key(client):
    assert client.get("/api/qr/token").status_code == 401
    assert client.get("/api/qr/token?key=nope").status_code == 401


def test_qr_token_issue(staff_client):
    member = _new_member(staff_client)
    body = _qr_token(staff_client, member)
    assert body["ok"] is True
    assert "." in body["token"]
    assert 10 <= body["ttl"] <= 45


def test_qr_png(staff_client):
    member = _new_member(staff_client)
    resp = staff_client.get(f"/api/qr/png?key={member['card_key']}")
    assert resp.status_code == 200
    assert resp.mimetype == "image/png"
    assert resp.headers["Cache-Control"] == "no-store"
    assert resp.data.startswith(b"\x89PNG")


def test_qr_verify(staff_client):
    member = _new_member(staff_client)
    token = _qr_token(staff_client, member)["token"]

    ok = staff_client.post("/api/qr/verify", json={"token": token})
    assert ok.status_code == 200
    assert ok.get_json()["member"]["id"] == member["id"]
    assert ok.get_json()["decision"]["status"] == "free"

    tampered = staff_client.post("/api/qr/verify", json={"token": token[:-3] + "AAA"})
    assert tampered.status_code == 400
    assert tampered.get_json() == {"ok": False, "reason": "bad_sig"}


def test_qr_verify_unknown_member(app, staff_client):
    token, _ = issue_qr_token(424242, app.config["QR_TOKEN_SECRET"])
    resp = staff_client.post("/api/qr/verify", json={"token": token})
    assert resp.status_code == 404
    assert resp.get_json()["reason"] == "member_not_found"


def test_rewards_member_checks_in_without_gate_access(staff_client):
    member = _new_member(staff_client)
    token = _qr_token(staff_client, member)["token"]

    first = staff_client.post("/api/checkin", json={"code": f"qr:{token}"})
    assert first.status_code == 200
    body = first.get_json()
    assert body["ok"] is True
    assert body["gate_access"] is False
    assert body["points_earned"] == 1
    assert "rewards-only" in body["message"]

    second = staff_client.post("/api/checkin", json={"member_id": member["id"]})
    assert second.get_json()["already_checked_in"] is True
    assert second.get_json()["message"] == "Already checked in today"


def test_paid_member_gets_gate_access(admin_client):
    member = _new_member(admin_client)
    change = admin_client.post(f"/api/members/{member['id']}/plan", json={"plan_code": "club_monthly_95"})
    assert change.status_code == 200
    assert change.get_json()["paid_through"] == clock.add_days(clock.today_ymd(), 30)

    resp = admin_client.post("/api/checkin", json={"code": f"member:{member['id']}"})
    body = resp.get_json()
    assert body["gate_access"] is True
    assert body["status"] == "active"
    assert body["message"].startswith("Welcome")

    status = admin_client.get(f"/api/members/{member['id']}/status").get_json()
    assert status["points"] == 1
    assert "Gym access" in status["benefits"]["amenities"]


def test_checkin_rejects_bad_input(staff_client):
    assert staff_client.post("/api/checkin", json={"member_id": 999}).status_code == 404
    assert staff_client.post("/api/checkin", json={"code": "member:"}).status_code == 400
    bad = staff_client.post("/api/checkin", json={"qr_token": "abc.def"})
    assert bad.status_code == 400
    assert bad.get_json()["reason"] == "bad_sig"


def test_points_setting(admin_client):
    assert admin_client.get("/api/settings/points").get_json()["points_per_checkin"] == 1
    assert admin_client.put("/api/settings/points", json={"points_per_checkin": 3}).status_code == 200
    assert admin_client.put("/api/settings/points", json={"points_per_checkin": "lots"}).status_code == 400

    member = _new_member(admin_client)
    resp = admin_client.post("/api/checkin", json={"member_id": member["id"]})
    assert resp.get_json()["points_earned"] == 3


def test_checkins_today(staff_client):
    member = _new_member(staff_client, "Grace Hopper")
    staff_client.post("/api/checkin", json={"member_id": member["id"]})
    body = staff_client.get("/api/checkins/today").get_json()
    assert body["day"] == clock.today_ymd()
    assert [c["full_name"] for c in body["checkins"]] == ["Grace Hopper"]


def test_checkout_and_webhook_activate_plan(client, staff_client):
    member = _new_member(staff_client)
    key = {"X-Member-Key": member["card_key"]}

    checkout = client.post("/api/checkout", json={"plan_code": "club_weekly"}, headers=key)
    assert checkout.status_code == 201
    payment_id = checkout.get_json()["payment_id"]

    payload = {"customReference": payment_id, "amount": "45.00", "currency": "USD", "transactionId": "txn_77"}
    first = _webhook(client, payload)
    assert first.status_code == 200
    assert first.data == b"OK"
    assert _webhook(client, payload).status_code == 200

    status = staff_client.get(f"/api/members/{member['id']}/status").get_json()
    assert status["membership"]["plan_code"] == "club_weekly"
    assert status["membership"]["paid_through_date"] == clock.add_days(clock.today_ymd(), 7)
    assert status["decision"]["access"] is True


def test_checkout_rejects_free_plan(client, staff_client):
    member = _new_member(staff_client)
    resp = client.post("/api/checkout", json={"plan_code": "rewards_free"},
                       headers={"X-Member-Key": member["card_key"]})
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "free_plan"


@pytest.mark.parametrize(
    "kwargs",
    [{"secret": "wrong"}, {"key_id": "key_unknown"}, {"ts": 1_000_000}],
)
def test_webhook_rejection_does_not_say_which_check_failed(client, kwargs):
    resp = _webhook(client, {"customReference": "pay_x"}, **kwargs)
    assert resp.status_code == 400
    assert resp.get_json() == {"ok": False, "reason": "unauthorized"}


def test_webhook_malformed_signature_header(client):
    resp = client.post(
        "/webhooks/fygaro",
        data=b"{}",
        content_type="application/json",
        headers={"Fygaro-Key-Id": "key_live", "Fygaro-Signature": "v1=abcd"},
    )
    assert resp.status_code == 400
    assert resp.get_json()["reason"] == "unauthorized"


def test_webhook_rotated_key(client):
    resp = _webhook(client, {"customReference": "pay_missing"}, key_id="key_next", secret="hook-secret-2")
    assert resp.status_code == 400
    assert resp.get_json()["reason"] == "not_found"


def test_webhook_without_reference(client):
    resp = _webhook(client, {"amount": "45.00"})
    assert resp.status_code == 400
    assert resp.get_json()["reason"] == "missing_reference"


def test_member_renewal_reminders(admin_client, client):
    member = _new_member(admin_client)
    key = {"X-Member-Key": member["card_key"]}
    assert client.get("/api/member/renewals", headers=key).get_json()["reminders"] == []

    admin_client.post(f"/api/members/{member['id']}/plan", json={"plan_code": "club_weekly"})
    reminders = client.get("/api/member/renewals", headers=key).get_json()["reminders"]
    assert [r["reminder_key"] for r in reminders] == ["14d"]
    assert "expires in 7 days" in reminders[0]["message"]

    assert client.post("/api/member/renewals/seen", headers=key).get_json()["marked"] == 1
    assert client.get("/api/member/renewals", headers=key).get_json()["reminders"] == []


def test_member_status(client, staff_client):
    member = _new_member(staff_client)
    body = client.get("/api/member/status", headers={"X-Member-Key": member["card_key"]}).get_json()
    assert body["ok"] is True
    assert body["decision"]["status"] == "free"
    assert body["benefits"]["discounts"]["food"] == 5


def test_create_member_validation(staff_client):
    resp = staff_client.post("/api/members", json={"full_name": ""})
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "validation_error"


def test_lapsed_paid_member_is_refused_without_a_checkin(admin_client):
    member = _new_member(admin_client)
    admin_client.post(f"/api/members/{member['id']}/plan",
                      json={"plan_code": "club_monthly_95", "start_date": "2024-01-01"})

    resp = admin_client.post("/api/checkin", json={"member_id": member["id"]})

    assert resp.status_code == 403
    body = resp.get_json()
    assert body["ok"] is False
    assert body["gate_access"] is False
    assert body["status"] == "expired"
    assert body["error"] == "Access not allowed: membership expired"
    assert admin_client.get(f"/api/members/{member['id']}/status").get_json()["points"] == 0
    assert admin_client.get("/api/checkins/today").get_json()["checkins"] == []


def test_renewals_with_paid_through_derived_from_start(app_db, admin_client, client):
    member = _new_member(admin_client)
    admin_client.post(f"/api/members/{member['id']}/plan", json={"plan_code": "club_weekly"})
    con = app_db.connect()
    try:
        con.execute("UPDATE memberships SET paid_through_date = NULL WHERE member_id = ?", (member["id"],))
        con.commit()
    finally:
        con.close()
    key = {"X-Member-Key": member["card_key"]}

    resp = client.get("/api/member/renewals", headers=key)

    assert resp.status_code == 200
    reminders = resp.get_json()["reminders"]
    assert [r["reminder_key"] for r in reminders] == ["14d"]
    assert reminders[0]["paid_through_date"] == clock.add_days(clock.today_ymd(), 6)
    assert client.post("/api/member/renewals/seen", headers=key).get_json()["marked"] == 1
