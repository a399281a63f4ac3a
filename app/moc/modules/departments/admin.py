from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.moc.db import db_session
from app.moc.errors import ValidationError
from app.moc.models import User
from app.moc.modules.departments.models import Department
from app.moc.modules.departments.service import (
    assign_user_to_department,
    create_department,
    delete_department,
    get_department,
    list_departments,
    update_department,
)
from app.moc.rbac import PERM_VIEW, require_permission

bp = Blueprint("departments", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object.")
    return payload


def _department_dict(d: Department) -> dict:
    return {
        "id": d.id,
        "name": d.name,
        "description": d.description,
        "approver_user_id": d.approver_user_id,
        "approver_user_ids": list(d.approver_user_ids or []),
        "created_at": d.created_at.isoformat() if d.created_at else None,
        "updated_at": d.updated_at.isoformat() if d.updated_at else None,
    }


@bp.get("/departments")
@require_permission(PERM_VIEW)
def departments_list():
    s = db_session()
    return jsonify({"departments": [_department_dict(d) for d in list_departments(s)]})


@bp.post("/departments")
@require_permission(PERM_VIEW)
def departments_create():
    s = db_session()
    d = create_department(s, _json_body(), _current_user())
    s.commit()
    return jsonify(_department_dict(d)), 201


@bp.get("/departments/<int:department_id>")
@require_permission(PERM_VIEW)
def department_detail(department_id: int):
    s = db_session()
    return jsonify(_department_dict(get_department(s, department_id)))


@bp.patch("/departments/<int:department_id>")
@require_permission(PERM_VIEW)
def department_update(department_id: int):
    s = db_session()
    d = update_department(s, get_department(s, department_id), _json_body(), _current_user())
    s.commit()
    return jsonify(_department_dict(d))


@bp.delete("/departments/<int:department_id>")
@require_permission(PERM_VIEW)
def department_delete(department_id: int):
    s = db_session()
    delete_department(s, get_department(s, department_id), _current_user())
    s.commit()
    return jsonify({"ok": True})


@bp.put("/departments/<int:department_id>/users/<int:user_id>")
@require_permission(PERM_VIEW)
def department_assign_user(department_id: int, user_id: int):
    s = db_session()
    u = assign_user_to_department(s, user_id, department_id, _current_user())
    s.commit()
    return jsonify({"user_id": u.id, "department_id": u.department_id})
