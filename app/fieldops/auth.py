from __future__ import annotations

import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from sqlalchemy import select
from werkzeug.security import check_password_hash

from app.fieldops import audit
from app.fieldops.db import db_session
from app.fieldops.models import User
from app.fieldops.security import ensure_csrf_token
from app.fieldops.utils import normalize_email, text_field, utcnow

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


@dataclass(frozen=True)
class Identity:
    """What the session layer hands to the access guard: who, and in which tenant."""

    user_id: int
    tenant_id: int


def _check_rate_limit(ip: str) -> bool:
    cutoff = utcnow() - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(utcnow())


def load_current_identity() -> None:
    """
    Loads g.identity from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).

    Only ids are read here; whether the user still exists, is active and holds
    a capability is decided by the access guard on every request.
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    g.identity = None
    if request.path.startswith(("/static/", "/health", "/healthz")):
        return

    user_id = session.get("user_id")
    tenant_id = session.get("tenant_id")
    if not user_id or not tenant_id:
        return
    try:
        g.identity = Identity(user_id=int(user_id), tenant_id=int(tenant_id))
    except (TypeError, ValueError):
        current_app.logger.warning("Malformed session identity; clearing (request_id=%s)", g.request_id)
        session.clear()


@bp.post("/login")
def login_post():
    payload = request.get_json(silent=True) or request.form
    email = normalize_email(payload.get("email"))
    password = text_field(payload.get("password"), "password") or ""
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return jsonify({"error": "rate_limited", "message": "Too many login attempts. Please wait 5 minutes."}), 429

    _record_attempt(ip)

    s = db_session()
    user = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        current_app.logger.info("Login failed (email=%s request_id=%s)", email, g.request_id)
        return jsonify({"error": "unauthenticated", "message": "Invalid credentials."}), 401

    session.clear()
    session["user_id"] = user.id
    session["tenant_id"] = user.tenant_id
    session.permanent = True
    _login_attempts[ip].clear()
    audit.record(
        s,
        actor_id=user.id,
        tenant_id=user.tenant_id,
        action=audit.AUTH_LOGIN,
        target_type="User",
        target_id=user.id,
    )
    s.commit()
    return jsonify({"user_id": user.id, "tenant_id": user.tenant_id, "csrf_token": ensure_csrf_token()})


@bp.post("/logout")
def logout():
    ident = getattr(g, "identity", None)
    if ident is not None:
        s = db_session()
        audit.record(
            s,
            actor_id=ident.user_id,
            tenant_id=ident.tenant_id,
            action=audit.AUTH_LOGOUT,
            target_type="User",
            target_id=ident.user_id,
        )
        s.commit()
    session.clear()
    return jsonify({"ok": True})


@bp.get("/csrf")
def csrf_token():
    return jsonify({"csrf_token": ensure_csrf_token()})
