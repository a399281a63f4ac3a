from flask import Blueprint, g

from app.moc.auth import user_payload
from app.moc.security import ensure_csrf_token

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    """Session probe: who is logged in, plus the CSRF token for mutating calls."""
    u = getattr(g, "current_user", None)
    return {
        "service": "moc",
        "user": user_payload(u) if u else None,
        "csrf_token": ensure_csrf_token(),
    }


@bp.get("/health")
def health():
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    # Liveness probe; no DB access.
    return "ok", 200
