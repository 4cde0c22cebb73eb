from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from sqlalchemy import select
from werkzeug.security import check_password_hash

from app.doccontrol.audit import RequestContext, record_event
from app.doccontrol.db import db_session
from app.doccontrol.models import User
from app.doccontrol.rbac import role_at_time, role_keys
from app.doccontrol.security import ensure_csrf_token
from app.doccontrol.utils import utcnow

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(utcnow())


def request_context() -> RequestContext:
    return RequestContext(
        request_id=getattr(g, "request_id", None),
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )


def user_json(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": role_at_time(user),
        "roles": sorted(role_keys(user)),
        "department_id": user.department_id,
        "section_id": user.section_id,
    }


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/health", "/healthz", "/qr/")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active:
            session.pop("user_id", None)
            g.current_user = None
            return
        g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


@bp.get("/csrf")
def csrf():
    return jsonify({"csrf_token": ensure_csrf_token()})


@bp.get("/me")
def me():
    user = getattr(g, "current_user", None)
    if not user:
        return jsonify({"error": "unauthenticated", "message": "Login required."}), 401
    return jsonify({"user": user_json(user)})


@bp.post("/login")
def login_post():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = request.form
    email = payload.get("email")
    email = email.strip().lower() if isinstance(email, str) else ""
    password = payload.get("password")
    password = password if isinstance(password, str) else ""
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return jsonify({"error": "rate_limited", "message": "Too many login attempts. Please wait 5 minutes."}), 429

    _record_attempt(ip)

    try:
        s = db_session()
        user = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if not user or not user.is_active or not check_password_hash(user.password_hash, password):
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=email,
                reason="Invalid credentials",
                metadata={"email": email},
                context=request_context(),
            )
            s.commit()
            return jsonify({"error": "invalid_credentials", "message": "Invalid credentials."}), 401

        session["user_id"] = user.id
        _login_attempts[ip].clear()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id), context=request_context())
        s.commit()
        return jsonify({"user": user_json(user), "csrf_token": ensure_csrf_token()})
    except Exception:
        current_app.logger.exception("Login POST crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.post("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id), context=request_context())
        s.commit()
    session.pop("user_id", None)
    return jsonify({"ok": True})
