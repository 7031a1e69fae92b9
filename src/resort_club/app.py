"""Flask front end for the club core.

Gate staff sign in with a PIN; members authenticate with the card key printed
on their member card. Everything interesting lives in the core modules, the
handlers here only translate between HTTP and those calls.
"""

from __future__ import annotations

import io
import logging

import click
from flask import Flask, abort, jsonify, request, send_file, session

from . import clock
from .checkins import checkins_for_day, member_points, points_per_checkin, record_checkin
from .config import POINTS_PER_CHECKIN_KEY, load_config
from .db import Database, SettingsStore
from .downgrade import DowngradeScheduler, maybe_run_auto_downgrade
from .errors import CheckinFailed, ClubError, ConfigurationError
from .membership_status import effective_paid_through, resolve_record
from .memberships import (
    apply_membership_plan,
    create_member,
    find_member_by_card_key,
    get_member,
    load_membership,
    search_members,
)
from .payments import create_pending_payment, reconcile_payment
from .plans import benefits_for, get_plan, list_plans
from .qr_token import generate_qr_png, issue_qr_token, parse_scan_payload, verify_qr_token
from .renewals import (
    mark_renewal_notifications_seen,
    queue_renewal_notifications,
    renewal_message_for_days,
    unseen_renewal_notifications,
)
from .staff import ADMIN_ROLES, CHECKIN_ROLES, create_staff, role_allows, verify_staff_pin
from .webhooks import verify_webhook

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def create_app(overrides: dict | None = None) -> Flask:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    app = Flask(__name__)
    app.config.update(load_config())
    if overrides:
        app.config.update(overrides)
    app.secret_key = app.config["SESSION_SECRET"]

    db = Database.from_config(app.config)
    db.init_db()
    settings = SettingsStore(db)
    app.extensions["club_db"] = db
    app.extensions["club_settings"] = settings

    def resolver_kwargs() -> dict:
        return {
            "due_soon_days": int(app.config.get("DUE_SOON_DAYS") or 0),
            "past_due_grace_days": int(app.config.get("PAST_DUE_GRACE_DAYS") or 0),
        }

    def qr_secret() -> str:
        secret = app.config.get("QR_TOKEN_SECRET")
        if not secret:
            raise ConfigurationError("QR_TOKEN_SECRET is not configured")
        return secret

    if app.config.get("DOWNGRADE_SCHEDULER_ENABLED"):
        scheduler = DowngradeScheduler(
            db,
            settings,
            interval_seconds=app.config["DOWNGRADE_INTERVAL_SECONDS"],
            throttle_seconds=app.config["DOWNGRADE_THROTTLE_SECONDS"],
            resolver_kwargs=resolver_kwargs(),
        )
        scheduler.start()
        app.extensions["club_downgrade_scheduler"] = scheduler

    @app.errorhandler(ClubError)
    def handle_club_error(exc: ClubError):
        status = 500 if isinstance(exc, ConfigurationError) else 400
        if status == 500:
            logger.error("Configuration error: %s", exc.message)
        return jsonify(exc.to_dict()), status

    # --- auth helpers ---

    def require_staff(roles=CHECKIN_ROLES) -> dict:
        if not session.get("staff_id"):
            abort(401)
        if not role_allows(session.get("staff_role"), roles):
            abort(403)
        return {"id": session["staff_id"], "role": session.get("staff_role")}

    def current_member() -> dict:
        key = (request.headers.get("X-Member-Key") or request.args.get("key") or "").strip()
        member = find_member_by_card_key(db, key)
        if not member:
            abort(401)
        return member

    def status_payload(member: dict) -> dict:
        membership = load_membership(db, member["id"])
        if membership is None:
            return {"member": member, "membership": None, "decision": None, "benefits": None}
        decision = resolve_record(membership, **resolver_kwargs())
        return {
            "member": member,
            "membership": membership.to_dict(),
            "decision": decision.to_dict(),
            "benefits": benefits_for(membership.plan, decision.access).to_dict(),
            "points": member_points(db, member["id"]),
        }

    # --- health ---

    @app.get("/healthz")
    def healthz():
        return "ok", 200

    # --- staff session ---

    @app.post("/staff/login")
    def staff_login():
        payload = request.get_json(silent=True) or {}
        pin = str(payload.get("pin") or request.form.get("pin") or "")
        staff = verify_staff_pin(db, pin)
        if not staff:
            return jsonify({"ok": False, "error": "Invalid PIN"}), 401
        session["staff_id"] = staff["id"]
        session["staff_role"] = staff["role"]
        return jsonify({"ok": True, "staff": staff})

    @app.post("/staff/logout")
    def staff_logout():
        session.pop("staff_id", None)
        session.pop("staff_role", None)
        return jsonify({"ok": True})

    # --- members (staff) ---

    @app.get("/api/plans")
    def api_plans():
        return jsonify({
            "ok": True,
            "plans": [
                {"code": p.code, "name": p.name, "price_cents": p.price_cents,
                 "duration_days": p.duration_days, "grants_access": p.grants_access}
                for p in list_plans(db)
            ],
        })

    @app.get("/api/members")
    def api_search_members():
        require_staff()
        q = (request.args.get("q") or "").strip()
        if len(q) < 2:
            return jsonify({"ok": True, "members": []})
        return jsonify({"ok": True, "members": search_members(db, q)})

    @app.post("/api/members")
    def api_create_member():
        require_staff()
        payload = request.get_json(silent=True) or {}
        member = create_member(db, payload.get("full_name"), payload.get("email"), payload.get("phone"))
        return jsonify({"ok": True, "member": member}), 201

    @app.get("/api/members/<int:member_id>/status")
    def api_member_status(member_id: int):
        require_staff()
        member = get_member(db, member_id)
        if not member:
            return jsonify({"ok": False, "error": "member_not_found"}), 404
        return jsonify({"ok": True, **status_payload(member)})

    @app.post("/api/members/<int:member_id>/plan")
    def api_change_plan(member_id: int):
        require_staff(ADMIN_ROLES)
        payload = request.get_json(silent=True) or {}
        membership = load_membership(db, member_id)
        if membership is None:
            return jsonify({"ok": False, "error": "member_not_found"}), 404
        plan = get_plan(db, payload.get("plan_code") or "", active_only=True)
        if plan is None:
            return jsonify({"ok": False, "error": "Invalid plan"}), 400
        paid_through = apply_membership_plan(
            db,
            membership,
            plan,
            payload.get("start_date") or clock.today_ymd(),
            record_payment=bool(payload.get("record_payment")),
            payment_method=payload.get("payment_method") or "cash",
            payment_amount_cents=payload.get("payment_amount_cents"),
            payment_notes=payload.get("payment_notes"),
        )
        return jsonify({"ok": True, "plan_code": plan.code, "paid_through": paid_through})

    # --- member self-service ---

    @app.get("/api/member/status")
    def api_my_status():
        member = current_member()
        try:
            return jsonify({"ok": True, **status_payload(member)})
        except Exception:
            logger.exception("Status load failed for member %s", member["id"])
            return jsonify({"ok": False, "error": "Could not load"}), 500

    @app.get("/api/member/renewals")
    def api_my_renewals():
        member = current_member()
        try:
            membership = load_membership(db, member["id"])
            if membership is None or membership.plan.is_free:
                return jsonify({"ok": True, "reminders": []})
            paid_through = effective_paid_through(
                membership.start_date, membership.paid_through_date, membership.plan.duration_days
            )
            if paid_through is None:
                return jsonify({"ok": True, "reminders": []})
            queue_renewal_notifications(db, member["id"], membership.id, paid_through)
            days_left = clock.days_between(clock.today_ymd(), paid_through)
            reminders = [
                {**row, "message": renewal_message_for_days(days_left, paid_through)}
                for row in unseen_renewal_notifications(db, member["id"], paid_through)
            ]
        except Exception:
            logger.exception("Renewal reminders failed for member %s", member["id"])
            return jsonify({"ok": False, "error": "Could not load"}), 500
        return jsonify({"ok": True, "reminders": reminders})

    @app.post("/api/member/renewals/seen")
    def api_my_renewals_seen():
        member = current_member()
        membership = load_membership(db, member["id"])
        if membership is None:
            return jsonify({"ok": True, "marked": 0})
        paid_through = effective_paid_through(
            membership.start_date, membership.paid_through_date, membership.plan.duration_days
        )
        marked = mark_renewal_notifications_seen(db, member["id"], paid_through)
        return jsonify({"ok": True, "marked": marked})

    @app.post("/api/checkout")
    def api_checkout():
        member = current_member()
        payload = request.get_json(silent=True) or {}
        payment = create_pending_payment(
            db, member["id"], payload.get("plan_code") or "", app.config.get("PAYMENT_CURRENCY") or "USD"
        )
        return jsonify({"ok": True, "payment_id": payment["id"], "amount_cents": payment["amount_cents"],
                        "currency": payment["currency"], "plan_code": payment["plan_code"]}), 201

    # --- QR tokens ---

    @app.get("/api/qr/token")
    def api_qr_token():
        member = current_member()
        ttl = app.config.get("QR_TOKEN_TTL_SECONDS")
        token, exp = issue_qr_token(member["id"], qr_secret(), ttl)
        return jsonify({"ok": True, "token": token, "exp": exp, "ttl": exp - clock.epoch()})

    @app.get("/api/qr/png")
    def api_qr_png():
        member = current_member()
        token, _ = issue_qr_token(member["id"], qr_secret(), app.config.get("QR_TOKEN_TTL_SECONDS"))
        response = send_file(io.BytesIO(generate_qr_png(f"qr:{token}")), mimetype="image/png")
        response.headers["Cache-Control"] = "no-store"
        return response

    @app.post("/api/qr/verify")
    def api_qr_verify():
        require_staff()
        payload = request.get_json(silent=True) or {}
        result = verify_qr_token(payload.get("token") or "", qr_secret())
        if not result.ok:
            return jsonify({"ok": False, "reason": result.reason}), 400
        member = get_member(db, result.claims.mid)
        if not member:
            return jsonify({"ok": False, "reason": "member_not_found"}), 404
        return jsonify({"ok": True, "exp": result.claims.exp, **status_payload(member)})

    # --- check-in ---

    @app.post("/api/checkin")
    def api_checkin():
        staff = require_staff()
        payload = request.get_json(silent=True) or {}
        member_ref = str(payload.get("member_id") or "").strip()
        token = str(payload.get("qr_token") or "").strip()
        code = str(payload.get("code") or "").strip()
        if code and not (member_ref or token):
            scan = parse_scan_payload(code)
            if scan.error:
                return jsonify({"ok": False, "error": scan.error}), 400
            member_ref, token = scan.member_id or "", scan.token or ""

        method = "manual"
        if token:
            result = verify_qr_token(token, qr_secret())
            if not result.ok:
                return jsonify({"ok": False, "reason": result.reason}), 400
            member_ref, method = str(result.claims.mid), "qr"

        member = get_member(db, member_ref)
        if not member:
            return jsonify({"ok": False, "error": "Member not found"}), 404
        membership = load_membership(db, member["id"])
        decision = resolve_record(membership, **resolver_kwargs()) if membership else None
        gate_access = bool(decision and decision.access)
        # paid tiers must be live to check in; rewards-only tiers check in for points
        if membership is not None and membership.plan.grants_access and not gate_access:
            return jsonify({
                "ok": False,
                "member_name": member["full_name"],
                "gate_access": False,
                "status": decision.status,
                "error": f"Access not allowed: membership {decision.status.replace('_', ' ')}",
            }), 403

        try:
            outcome = record_checkin(db, settings, member["id"], staff_id=staff["id"], method=method)
        except CheckinFailed as exc:
            return jsonify(exc.to_dict()), 500

        if not outcome.created:
            return jsonify({
                "ok": True,
                "already_checked_in": True,
                "member_name": member["full_name"],
                "gate_access": gate_access,
                "message": "Already checked in today",
            })

        if gate_access:
            message = f"Welcome, {member['full_name']}"
        else:
            message = "Access not allowed: rewards-only plan"
        return jsonify({
            "ok": True,
            "member_name": member["full_name"],
            "points_earned": outcome.event.points_earned,
            "gate_access": gate_access,
            "status": decision.status if decision else None,
            "message": message,
        })

    @app.get("/api/checkins/today")
    def api_checkins_today():
        require_staff()
        rows = checkins_for_day(db, request.args.get("day") or None)
        return jsonify({"ok": True, "day": request.args.get("day") or clock.today_ymd(), "checkins": rows})

    # --- settings ---

    @app.get("/api/settings/points")
    def api_get_points():
        require_staff(ADMIN_ROLES)
        return jsonify({"ok": True, "points_per_checkin": points_per_checkin(settings)})

    @app.put("/api/settings/points")
    def api_set_points():
        require_staff(ADMIN_ROLES)
        payload = request.get_json(silent=True) or {}
        try:
            value = int(payload.get("points_per_checkin"))
        except (TypeError, ValueError):
            return jsonify({"ok": False, "error": "points_per_checkin must be an integer"}), 400
        if value < 0:
            return jsonify({"ok": False, "error": "points_per_checkin must be zero or more"}), 400
        settings.set_int(POINTS_PER_CHECKIN_KEY, value)
        return jsonify({"ok": True, "points_per_checkin": value})

    # --- payment provider ---

    @app.post("/webhooks/fygaro")
    def fygaro_webhook():
        raw_body = request.get_data()
        verification = verify_webhook(
            request.headers.get("Fygaro-Key-Id"),
            request.headers.get("Fygaro-Signature"),
            raw_body,
            app.config.get("FYGARO_HOOK_SECRETS") or {},
            tolerance_seconds=app.config.get("WEBHOOK_TOLERANCE_SECONDS"),
        )
        if not verification.ok:
            logger.warning("Rejected webhook: %s", verification.reason)
            return jsonify({"ok": False, "reason": "unauthorized"}), 400

        try:
            result = reconcile_payment(db, verification.payload)
        except Exception:
            logger.exception("Webhook reconciliation failed; provider will retry")
            return ("Error", 500)

        logger.info("Webhook %s: %s", result.payment_id, result.outcome)
        if not result.acknowledged:
            return jsonify({"ok": False, "reason": result.outcome}), 400
        return ("OK", 200)

    # --- CLI ---

    @app.cli.command("init-db")
    def init_db_command():
        """Create tables and seed the plan catalog."""
        db.init_db()
        click.echo("Database initialised.")

    @app.cli.command("create-staff")
    @click.argument("name")
    @click.option("--role", default="front_desk", show_default=True)
    @click.option("--pin", prompt=True, hide_input=True, confirmation_prompt=True)
    def create_staff_command(name, role, pin):
        """Add a staff member with a PIN."""
        staff = create_staff(db, name, pin, role)
        click.echo(f"Created staff {staff['id']} ({staff['role']}).")

    @app.cli.command("sweep-downgrades")
    @click.option("--force", is_flag=True, help="Ignore the throttle window.")
    def sweep_downgrades_command(force):
        """Downgrade lapsed paid memberships to the free tier."""
        result = maybe_run_auto_downgrade(
            db, settings, throttle_seconds=app.config["DOWNGRADE_THROTTLE_SECONDS"], force=force,
            **resolver_kwargs(),
        )
        click.echo(f"ran={result.ran} downgraded={result.downgraded} failed={result.failed}")

    return app
