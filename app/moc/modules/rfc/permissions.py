"""
Permission resolver for RFC actions.

`can_perform` is a pure function of the actor's capability flags (RBAC
permission keys) and the actor's relationship to the record. It never touches
the database; the department designee, which lives in the department
registry, is passed in by the caller.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from app.moc.errors import UnknownActor
from app.moc.models import User
from app.moc.modules.rfc import workflow as wf
from app.moc.rbac import PERM_CREATE, PERM_DELETE_ANY, PERM_EDIT_ANY, has_capability, is_admin

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.moc.modules.rfc.models import RfcRecord


VIEW = "view"
CREATE = "create"
EDIT = "edit"
DELETE = "delete"
RESUBMIT = "resubmit"
CHANGE_STATUS = "change_status"
DECIDE_STEP = "decide_step"

ACTIONS = (VIEW, CREATE, EDIT, DELETE, RESUBMIT, CHANGE_STATUS, DECIDE_STEP)


def resolve_actor(s: "Session", actor_id: int | None) -> User:
    """Load the acting identity; inactive users do not resolve."""
    user = s.get(User, actor_id) if actor_id is not None else None
    if not user or not user.is_active:
        raise UnknownActor(f"Unknown actor: {actor_id!r}")
    return user


def relationships(actor: User, record: "RfcRecord") -> set[str]:
    rels: set[str] = set()
    if record.submitter_id == actor.id:
        rels.add(wf.SUBMITTER)
    if record.assigned_to_id is not None and record.assigned_to_id == actor.id:
        rels.add(wf.ASSIGNEE)
    if is_final_reviewer(actor, record):
        rels.add(wf.FINAL_REVIEWER)
    return rels


def is_final_reviewer(actor: User, record: "RfcRecord") -> bool:
    # A technical authority, once set, is the only non-admin who can decide final review.
    if record.technical_authority_id is not None:
        return record.technical_authority_id == actor.id
    return actor.id in (record.additional_approver_ids or [])


def can_perform(
    actor: User | None,
    action: str,
    record: "RfcRecord | None" = None,
    *,
    target_status: str | None = None,
    designated_approver_id: int | None = None,
) -> bool:
    if actor is None or not actor.is_active:
        return False
    admin = is_admin(actor)

    if action == CREATE:
        return has_capability(actor, PERM_CREATE)

    if record is None:
        return False
    rels = relationships(actor, record)

    if action == VIEW:
        # Drafts are private to their submitter.
        return admin or record.status != wf.DRAFT or wf.SUBMITTER in rels

    if action == EDIT:
        if has_capability(actor, PERM_EDIT_ANY):
            return True
        if record.status not in wf.EDITABLE_STATUSES:
            return False
        return bool(rels & {wf.SUBMITTER, wf.ASSIGNEE})

    if action == DELETE:
        if has_capability(actor, PERM_DELETE_ANY):
            return True
        return wf.SUBMITTER in rels and record.status in wf.SUBMITTER_DELETABLE_STATUSES

    if action == RESUBMIT:
        return admin or wf.SUBMITTER in rels

    if action == CHANGE_STATUS:
        if target_status is None or not wf.is_transition(record.status, target_status):
            return False
        if admin:
            return True
        return bool(rels & set(wf.allowed_relationships(record.status, target_status)))

    if action == DECIDE_STEP:
        return admin or (designated_approver_id is not None and designated_approver_id == actor.id)

    return False
