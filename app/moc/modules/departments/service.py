"""
Department registry: department -> name and designated approver.

Read-mostly reference data. Mutations are admin-only and, like the other
services, add audit events to the session without committing.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import or_, select

from app.moc.audit import record_event
from app.moc.errors import NotFound, PermissionDenied, ValidationError
from app.moc.models import User
from app.moc.modules.departments.models import Department
from app.moc.rbac import PERM_MANAGE_DEPARTMENTS, has_capability

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


def list_departments(s: "Session") -> list[Department]:
    return list(s.scalars(select(Department).order_by(Department.name.asc())))


def find_department(s: "Session", department_id: int | None) -> Department | None:
    if department_id is None:
        return None
    return s.get(Department, department_id)


def get_department(s: "Session", department_id: int) -> Department:
    d = find_department(s, department_id)
    if not d:
        raise NotFound(f"Department {department_id} not found.")
    return d


def designated_approver_id(s: "Session", department_id: int) -> int | None:
    """Current designee for a department; None when the department or its approver is gone."""
    d = find_department(s, department_id)
    if not d or d.approver_user_id is None:
        return None
    approver = s.get(User, d.approver_user_id)
    if not approver or not approver.is_active:
        return None
    return approver.id


def department_name(s: "Session", department_id: int | None) -> str | None:
    d = find_department(s, department_id)
    return d.name if d else None


def _require_manager(actor: User) -> None:
    if not has_capability(actor, PERM_MANAGE_DEPARTMENTS):
        raise PermissionDenied("Only admins can manage departments.")


def _normalize_name(raw: str | None) -> str:
    return " ".join((raw or "").split())


def _ensure_unique_name(s: "Session", name: str, exclude_id: int | None = None) -> None:
    q = select(Department.id).where(Department.name == name)
    if exclude_id is not None:
        q = q.where(Department.id != exclude_id)
    if s.scalar(q) is not None:
        raise ValidationError("A department with this name already exists.")


def _parse_approver_ids(s: "Session", raw) -> list[int]:
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raise ValidationError("approver_user_ids must be a list of user ids.")
    out: list[int] = []
    for value in raw:
        try:
            uid = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid approver id: {value!r}") from None
        if uid in out:
            continue
        if not s.get(User, uid):
            raise ValidationError(f"Approver user {uid} not found.")
        out.append(uid)
    return out


def create_department(s: "Session", payload: dict, actor: User) -> Department:
    _require_manager(actor)
    name = _normalize_name(payload.get("name"))
    if not name:
        raise ValidationError("Name is required.")
    _ensure_unique_name(s, name)
    approver_ids = _parse_approver_ids(s, payload.get("approver_user_ids"))

    now = datetime.utcnow()
    d = Department(
        name=name,
        description=(payload.get("description") or "").strip() or None,
        approver_user_ids=approver_ids,
        approver_user_id=approver_ids[0] if approver_ids else None,
        created_at=now,
        updated_at=now,
    )
    s.add(d)
    s.flush()

    record_event(
        s,
        actor=actor,
        action="department.create",
        entity_type="Department",
        entity_id=str(d.id),
        metadata={"name": d.name, "approver_user_id": d.approver_user_id},
    )
    return d


def update_department(s: "Session", department: Department, payload: dict, actor: User) -> Department:
    _require_manager(actor)
    changes = {}

    if "name" in payload:
        new_name = _normalize_name(payload.get("name"))
        if not new_name:
            raise ValidationError("Name cannot be empty.")
        if new_name != department.name:
            _ensure_unique_name(s, new_name, exclude_id=department.id)
            changes["name"] = {"old": department.name, "new": new_name}
            department.name = new_name

    if "description" in payload:
        new_desc = (payload.get("description") or "").strip() or None
        if new_desc != department.description:
            changes["description"] = {"old": department.description, "new": new_desc}
            department.description = new_desc

    if "approver_user_ids" in payload:
        approver_ids = _parse_approver_ids(s, payload.get("approver_user_ids"))
        new_designee = approver_ids[0] if approver_ids else None
        if approver_ids != list(department.approver_user_ids or []):
            changes["approver_user_ids"] = {"old": department.approver_user_ids, "new": approver_ids}
            department.approver_user_ids = approver_ids
        if new_designee != department.approver_user_id:
            changes["approver_user_id"] = {"old": department.approver_user_id, "new": new_designee}
            department.approver_user_id = new_designee

    department.updated_at = datetime.utcnow()

    record_event(
        s,
        actor=actor,
        action="department.edit",
        entity_type="Department",
        entity_id=str(department.id),
        metadata={"name": department.name, "changes": changes},
    )
    return department


def delete_department(s: "Session", department: Department, actor: User) -> None:
    """Refuses while users or RFCs still reference the department."""
    from app.moc.modules.rfc.models import DepartmentApproval, RfcRecord

    _require_manager(actor)

    assigned_users = s.scalar(select(User.id).where(User.department_id == department.id).limit(1))
    if assigned_users is not None:
        raise ValidationError("Cannot delete department with assigned users. Please reassign users first.")

    referencing_rfc = s.scalar(
        select(RfcRecord.id)
        .outerjoin(DepartmentApproval, DepartmentApproval.rfc_id == RfcRecord.id)
        .where(
            or_(
                RfcRecord.requested_by_department_id == department.id,
                DepartmentApproval.department_id == department.id,
            )
        )
        .limit(1)
    )
    if referencing_rfc is not None:
        raise ValidationError("Cannot delete department with associated RFCs.")

    record_event(
        s,
        actor=actor,
        action="department.delete",
        entity_type="Department",
        entity_id=str(department.id),
        metadata={"name": department.name},
    )
    s.delete(department)


def assign_user_to_department(s: "Session", user_id: int, department_id: int | None, actor: User) -> User:
    _require_manager(actor)
    user = s.get(User, user_id)
    if not user:
        raise NotFound(f"User {user_id} not found.")
    if department_id is not None:
        get_department(s, department_id)

    old = user.department_id
    user.department_id = department_id

    record_event(
        s,
        actor=actor,
        action="department.assign_user",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"old_department_id": old, "new_department_id": department_id},
    )
    return user
