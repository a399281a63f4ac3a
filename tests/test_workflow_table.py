"""Transition table, aggregation rule and permission resolver (no database)."""
import pytest

from app.moc.models import Permission, Role, User
from app.moc.modules.rfc import permissions as perms
from app.moc.modules.rfc import workflow as wf
from app.moc.modules.rfc.models import RfcRecord
from app.moc.rbac import ALL_PERMISSIONS, PERM_CREATE, PERM_EDIT_ANY, PERM_VIEW


def _user(uid: int, *perm_keys: str) -> User:
    role = Role(key=f"r{uid}", name="r")
    role.permissions.extend(Permission(key=k, name=k) for k in perm_keys)
    u = User(id=uid, email=f"u{uid}@example.com", password_hash="x", is_active=True)
    u.roles.append(role)
    return u


ADMIN = _user(1, *(k for k, _ in ALL_PERMISSIONS))
SUBMITTER = _user(2, PERM_VIEW, PERM_CREATE)
ASSIGNEE = _user(3, PERM_VIEW)
TA = _user(4, PERM_VIEW)
APPROVER = _user(5, PERM_VIEW)
OUTSIDER = _user(6, PERM_VIEW)
EDITOR = _user(7, PERM_VIEW, PERM_EDIT_ANY)


def _record(status: str, *, technical_authority_id=4) -> RfcRecord:
    return RfcRecord(
        id=10,
        status=status,
        submitter_id=SUBMITTER.id,
        assigned_to_id=ASSIGNEE.id,
        technical_authority_id=technical_authority_id,
        additional_approver_ids=[APPROVER.id],
        viewer_ids=[],
        departments_affected=[],
    )


def test_every_transition_uses_known_statuses():
    for frm, to in wf.TRANSITIONS:
        assert frm in wf.STATUSES
        assert to in wf.STATUSES


def test_cancelled_is_terminal_and_completed_only_cancellable():
    assert wf.targets_from(wf.CANCELLED) == []
    assert wf.targets_from(wf.COMPLETED) == [wf.CANCELLED]
    assert wf.allowed_relationships(wf.COMPLETED, wf.CANCELLED) == ()


@pytest.mark.parametrize("frm", wf.STATUSES)
@pytest.mark.parametrize("to", wf.STATUSES)
def test_pairs_outside_table_denied_for_everyone(frm, to):
    if wf.is_transition(frm, to):
        return
    rec = _record(frm)
    for actor in (ADMIN, SUBMITTER, ASSIGNEE, TA):
        assert not perms.can_perform(actor, perms.CHANGE_STATUS, rec, target_status=to)


def test_admin_cannot_force_approve_during_department_stage():
    rec = _record(wf.PENDING_DEPARTMENT_APPROVAL)
    assert not perms.can_perform(ADMIN, perms.CHANGE_STATUS, rec, target_status=wf.APPROVED)
    assert perms.can_perform(ADMIN, perms.CHANGE_STATUS, rec, target_status=wf.REJECTED)
    assert not perms.can_perform(SUBMITTER, perms.CHANGE_STATUS, rec, target_status=wf.REJECTED)


def test_final_review_belongs_to_technical_authority_when_set():
    rec = _record(wf.PENDING_FINAL_REVIEW)
    assert perms.can_perform(TA, perms.CHANGE_STATUS, rec, target_status=wf.APPROVED)
    assert not perms.can_perform(APPROVER, perms.CHANGE_STATUS, rec, target_status=wf.APPROVED)

    rec = _record(wf.PENDING_FINAL_REVIEW, technical_authority_id=None)
    assert perms.can_perform(APPROVER, perms.CHANGE_STATUS, rec, target_status=wf.REJECTED)
    assert not perms.can_perform(OUTSIDER, perms.CHANGE_STATUS, rec, target_status=wf.REJECTED)


def test_only_admin_cancels_in_progress_or_completed():
    for status in (wf.IN_PROGRESS, wf.COMPLETED):
        rec = _record(status)
        assert perms.can_perform(ADMIN, perms.CHANGE_STATUS, rec, target_status=wf.CANCELLED)
        for actor in (SUBMITTER, ASSIGNEE, TA):
            assert not perms.can_perform(actor, perms.CHANGE_STATUS, rec, target_status=wf.CANCELLED)


def test_edit_rules():
    assert perms.can_perform(ASSIGNEE, perms.EDIT, _record(wf.PENDING_FINAL_REVIEW))
    assert not perms.can_perform(OUTSIDER, perms.EDIT, _record(wf.DRAFT))
    assert not perms.can_perform(SUBMITTER, perms.EDIT, _record(wf.IN_PROGRESS))
    assert not perms.can_perform(SUBMITTER, perms.EDIT, _record(wf.APPROVED))
    assert perms.can_perform(EDITOR, perms.EDIT, _record(wf.COMPLETED))


def test_delete_and_view_rules():
    assert perms.can_perform(SUBMITTER, perms.DELETE, _record(wf.REJECTED))
    assert not perms.can_perform(SUBMITTER, perms.DELETE, _record(wf.APPROVED))
    assert perms.can_perform(ADMIN, perms.DELETE, _record(wf.APPROVED))

    assert perms.can_perform(SUBMITTER, perms.VIEW, _record(wf.DRAFT))
    assert not perms.can_perform(ASSIGNEE, perms.VIEW, _record(wf.DRAFT))
    assert perms.can_perform(OUTSIDER, perms.VIEW, _record(wf.APPROVED))


def test_decide_step_requires_current_designee():
    rec = _record(wf.PENDING_DEPARTMENT_APPROVAL)
    assert perms.can_perform(APPROVER, perms.DECIDE_STEP, rec, designated_approver_id=APPROVER.id)
    assert not perms.can_perform(OUTSIDER, perms.DECIDE_STEP, rec, designated_approver_id=APPROVER.id)
    assert not perms.can_perform(APPROVER, perms.DECIDE_STEP, rec, designated_approver_id=None)
    assert perms.can_perform(ADMIN, perms.DECIDE_STEP, rec, designated_approver_id=None)


def test_create_requires_capability():
    assert perms.can_perform(SUBMITTER, perms.CREATE)
    assert not perms.can_perform(ASSIGNEE, perms.CREATE)


@pytest.mark.parametrize(
    "steps, has_ta, expected",
    [
        (["pending", "pending"], True, None),
        (["approved", "pending"], True, None),
        (["approved", "approved"], True, wf.PENDING_FINAL_REVIEW),
        (["approved", "approved"], False, wf.APPROVED),
        (["rejected", "pending"], True, wf.REJECTED),
        (["approved", "rejected"], False, wf.REJECTED),
        ([], False, None),
    ],
)
def test_aggregate_status(steps, has_ta, expected):
    assert wf.aggregate_status(steps, has_technical_authority=has_ta) == expected


def test_rejection_note_names_department():
    assert "Department: Safety" in wf.rejection_note("Safety", "too risky")
    assert "Unknown Department" in wf.rejection_note(None, None)
