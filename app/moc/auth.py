from __future__ import annotations

import time
import uuid
from collections import defaultdict, deque

from flask import Blueprint, current_app, g, jsonify, request, session
from werkzeug.security import check_password_hash

from app.moc.audit import record_event
from app.moc.db import db_session
from app.moc.models import User
from app.moc.rbac import is_admin
from app.moc.security import ensure_csrf_token

bp = Blueprint("auth", __name__)


class LoginThrottle:
    """Sliding-window limit on login attempts per client address."""

    def __init__(self, limit: int = 5, window_seconds: int = 300) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._attempts: dict[str, deque[float]] = defaultdict(deque)

    def _prune(self, key: str, now: float) -> deque[float]:
        q = self._attempts[key]
        while q and q[0] <= now - self.window_seconds:
            q.popleft()
        return q

    def blocked(self, key: str) -> bool:
        return len(self._prune(key, time.monotonic())) >= self.limit

    def hit(self, key: str) -> None:
        self._attempts[key].append(time.monotonic())

    def reset(self, key: str) -> None:
        self._attempts.pop(key, None)


def _throttle() -> LoginThrottle:
    t = current_app.extensions.get("login_throttle")
    if t is None:
        t = LoginThrottle(
            limit=current_app.config.get("LOGIN_RATE_LIMIT", 5),
            window_seconds=current_app.config.get("LOGIN_RATE_WINDOW", 300),
        )
        current_app.extensions["login_throttle"] = t
    return t


def user_payload(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.display_name,
        "department_id": user.department_id,
        "is_admin": is_admin(user),
        "permissions": sorted(user.permission_keys),
    }


def load_current_user() -> None:
    """
    Resolve g.current_user from the signed session cookie and stamp a
    request_id for audit/log correlation.
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    g.current_user = None
    if request.path.startswith(("/health", "/healthz")):
        return

    user_id = session.get("user_id")
    if not user_id:
        return

    try:
        user = db_session().get(User, int(user_id))
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        return
    if not user or not user.is_active:
        session.pop("user_id", None)
        return
    g.current_user = user


@bp.post("/login")
def login_post():
    body = request.get_json(silent=True) or request.form
    email = (body.get("email") or "").strip().lower()
    password = body.get("password") or ""
    ip = request.remote_addr or "unknown"
    throttle = _throttle()

    if throttle.blocked(ip):
        return jsonify({"error": "rate_limited", "message": "Too many login attempts. Please try again later."}), 429
    throttle.hit(ip)

    s = db_session()
    user = s.query(User).filter(User.email == email).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=email,
            reason="Invalid credentials",
        )
        s.commit()
        current_app.logger.info("Login failed for %s from %s", email, ip)
        return jsonify({"error": "invalid_credentials", "message": "Invalid credentials."}), 401

    # New session on login; the CSRF token issued before login is discarded.
    session.clear()
    session["user_id"] = user.id
    throttle.reset(ip)
    record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    return jsonify({**user_payload(user), "user_id": user.id, "csrf_token": ensure_csrf_token()})


@bp.post("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    return jsonify({"ok": True})
