from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, jsonify

from app.moc.models import User

# Capability flags, stored as permission keys on roles.
PERM_ADMIN = "rfc.admin"
PERM_VIEW = "rfc.view"
PERM_CREATE = "rfc.create"
PERM_EDIT_ANY = "rfc.edit_any"
PERM_DELETE_ANY = "rfc.delete_any"
PERM_MANAGE_DEPARTMENTS = "departments.manage"

ALL_PERMISSIONS: tuple[tuple[str, str], ...] = (
    (PERM_ADMIN, "RFC: administrator"),
    (PERM_VIEW, "RFC: view"),
    (PERM_CREATE, "RFC: create"),
    (PERM_EDIT_ANY, "RFC: edit any"),
    (PERM_DELETE_ANY, "RFC: delete any"),
    (PERM_MANAGE_DEPARTMENTS, "Departments: manage"),
)


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    return permission_key in user.permission_keys


def is_admin(user: User | None) -> bool:
    return user_has_permission(user, PERM_ADMIN)


def has_capability(user: User | None, permission_key: str) -> bool:
    """Admins hold every capability."""
    return is_admin(user) or user_has_permission(user, permission_key)


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated -> 401 (JSON API, no login redirect).
            if not user or not user.is_active:
                return jsonify({"error": "unauthenticated", "message": "Login required."}), 401
            # Authenticated but unauthorized -> 403
            if not has_capability(user, permission_key):
                g.missing_permission = permission_key
                return jsonify({"error": "permission_denied", "message": f"Missing permission {permission_key}."}), 403
            return fn(*args, **kwargs)

        return wrapped

    return decorator
