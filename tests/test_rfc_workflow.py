"""Workflow engine: transitions, department approvals, edits and deletion."""
import pytest
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from app.moc.db import run_atomic
from app.moc.errors import (
    ConcurrentModification,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    StepAlreadyDecided,
    UnknownActor,
    ValidationError,
)
from app.moc.audit import audit_trail
from app.moc.models import User
from app.moc.modules.departments import service as departments
from app.moc.modules.notifications.models import Notification
from app.moc.modules.rfc import service
from app.moc.modules.rfc import workflow as wf
from app.moc.modules.rfc.models import EditHistory, RfcAttachment, RfcRecord
from app.moc.storage import LocalStorage


def _new_rfc(s, ids, **fields):
    payload = {
        "title": "Replace pump seal",
        "description": "Swap the mechanical seal on P-101.",
        "departments_affected": [ids.ops, ids.safety],
        "assigned_to_id": ids.bob,
        "technical_authority_id": ids.tess,
    }
    payload.update(fields)
    return service.create_record(s, payload, ids.alice)


def _submitted(s, ids, **fields):
    rec = _new_rfc(s, ids, **fields)
    service.change_status(s, rec.id, wf.PENDING_DEPARTMENT_APPROVAL, ids.alice)
    return _reload(s, rec.id)


def _reload(s, rfc_id):
    s.expire_all()
    return service.get_record(s, rfc_id)


def _force_status(s, rfc_id, status):
    rec = _reload(s, rfc_id)
    rec.status = status
    s.commit()


def _audit_actions(s, rfc_id):
    return [ev.action for ev in audit_trail(s, "RfcRecord", rfc_id)]


# ---------- Create ----------
def test_create_starts_in_draft_with_pending_steps(s, ids):
    rec = _new_rfc(s, ids)
    rec = _reload(s, rec.id)
    assert rec.status == wf.DRAFT
    assert rec.submitter_id == ids.alice
    assert rec.moc_id_string.startswith("MOC-")
    assert len(rec.moc_id_string) == len("MOC-") + 6
    assert [st.department_id for st in rec.department_approvals] == [ids.ops, ids.safety]
    assert all(st.status == "pending" for st in rec.department_approvals)
    assert _audit_actions(s, rec.id) == ["rfc.create"]


def test_create_gives_unique_moc_ids(s, ids):
    first = _new_rfc(s, ids)
    second = _new_rfc(s, ids)
    assert first.moc_id_string != second.moc_id_string


def test_create_validates_payload(s, ids):
    with pytest.raises(ValidationError):
        service.create_record(s, {"title": "", "description": "x"}, ids.alice)
    with pytest.raises(ValidationError):
        service.create_record(s, {"title": "t", "description": "d", "change_type": "forever"}, ids.alice)
    with pytest.raises(ValidationError):
        service.create_record(s, {"title": "t", "description": "d", "departments_affected": [9999]}, ids.alice)
    with pytest.raises(ValidationError):
        service.create_record(s, {"title": "t", "description": "d", "bogus": 1}, ids.alice)


def test_create_by_admin_and_unknown_actor(s, ids):
    rec = service.create_record(s, {"title": "t", "description": "d"}, ids.admin)
    assert rec.submitter_id == ids.admin
    with pytest.raises(UnknownActor):
        service.create_record(s, {"title": "t", "description": "d"}, 9999)


# ---------- Status changes ----------
def test_invalid_transitions_rejected_for_any_actor(s, ids):
    rec = _new_rfc(s, ids)
    for frm in wf.STATUSES:
        _force_status(s, rec.id, frm)
        for to in wf.STATUSES:
            if wf.is_transition(frm, to):
                continue
            for actor in (ids.admin, ids.alice, ids.bob, ids.tess):
                with pytest.raises(InvalidTransition):
                    service.change_status(s, rec.id, to, actor)
                assert _reload(s, rec.id).status == frm


def test_unknown_status_string_is_validation_error(s, ids):
    rec = _new_rfc(s, ids)
    with pytest.raises(ValidationError):
        service.change_status(s, rec.id, "archived", ids.admin)


def test_submit_stamps_submitted_at_and_rebuilds_steps(s, ids):
    rec = _submitted(s, ids)
    assert rec.status == wf.PENDING_DEPARTMENT_APPROVAL
    assert rec.submitted_at is not None
    approvers = {st.department_id: st.approver_id for st in rec.department_approvals}
    assert approvers == {ids.ops: ids.carol, ids.safety: ids.dave}


def test_submit_requires_submitter(s, ids):
    rec = _new_rfc(s, ids)
    with pytest.raises(PermissionDenied):
        service.change_status(s, rec.id, wf.PENDING_DEPARTMENT_APPROVAL, ids.bob)
    assert _reload(s, rec.id).status == wf.DRAFT


def test_admin_override_reject_during_department_stage(s, ids):
    rec = _submitted(s, ids)
    with pytest.raises(PermissionDenied):
        service.change_status(s, rec.id, wf.REJECTED, ids.alice)
    with pytest.raises(InvalidTransition):
        service.change_status(s, rec.id, wf.APPROVED, ids.admin)

    service.change_status(s, rec.id, wf.REJECTED, ids.admin, "out of scope")
    rec = _reload(s, rec.id)
    assert rec.status == wf.REJECTED
    assert rec.reviewer_id == ids.admin
    assert rec.review_comments == "out of scope"


def test_full_lifecycle_to_completed(s, ids):
    rec = _submitted(s, ids)
    service.decide_department_step(s, rec.id, ids.ops, "approved", ids.carol)
    service.decide_department_step(s, rec.id, ids.safety, "approved", ids.dave)
    assert _reload(s, rec.id).status == wf.PENDING_FINAL_REVIEW

    with pytest.raises(PermissionDenied):
        service.change_status(s, rec.id, wf.APPROVED, ids.alice)
    service.change_status(s, rec.id, wf.APPROVED, ids.tess, "looks good")
    rec = _reload(s, rec.id)
    assert rec.reviewer_id == ids.tess
    assert rec.reviewed_at is not None

    with pytest.raises(PermissionDenied):
        service.change_status(s, rec.id, wf.IN_PROGRESS, ids.alice)
    service.change_status(s, rec.id, wf.IN_PROGRESS, ids.bob)
    service.change_status(s, rec.id, wf.COMPLETED, ids.bob)
    assert _reload(s, rec.id).status == wf.COMPLETED

    with pytest.raises(PermissionDenied):
        service.change_status(s, rec.id, wf.CANCELLED, ids.alice)
    service.change_status(s, rec.id, wf.CANCELLED, ids.admin)
    assert _reload(s, rec.id).status == wf.CANCELLED


# ---------- Department approvals ----------
def test_all_departments_approved_goes_to_final_review(s, ids):
    rec = _submitted(s, ids)
    r1 = service.decide_department_step(s, rec.id, ids.ops, "approved", ids.carol)
    assert r1.status == wf.PENDING_DEPARTMENT_APPROVAL
    r2 = service.decide_department_step(s, rec.id, ids.safety, "approved", ids.dave)
    assert r2.status == wf.PENDING_FINAL_REVIEW
    rec = _reload(s, rec.id)
    assert rec.reviewer_id is None


def test_all_departments_approved_without_ta_auto_approves(s, ids):
    rec = _submitted(s, ids, technical_authority_id=None)
    service.decide_department_step(s, rec.id, ids.ops, "approved", ids.carol)
    service.decide_department_step(s, rec.id, ids.safety, "approved", ids.dave)
    rec = _reload(s, rec.id)
    assert rec.status == wf.APPROVED
    assert rec.reviewer_id == ids.dave
    assert rec.review_comments == wf.AUTO_APPROVAL_NOTE


def test_single_rejection_rejects_record_once(s, ids):
    rec = _submitted(s, ids)
    result = service.decide_department_step(s, rec.id, ids.safety, "rejected", ids.dave, "not safe")
    assert result.status == wf.REJECTED
    rec = _reload(s, rec.id)
    assert rec.reviewer_id == ids.dave
    assert "Department: Safety" in rec.review_comments
    assert "not safe" in rec.review_comments

    with pytest.raises(StepAlreadyDecided):
        service.decide_department_step(s, rec.id, ids.ops, "approved", ids.carol)
    assert _reload(s, rec.id).status == wf.REJECTED
    assert _audit_actions(s, rec.id).count("rfc.department_decision") == 1


def test_step_cannot_be_decided_twice(s, ids):
    rec = _submitted(s, ids)
    service.decide_department_step(s, rec.id, ids.ops, "approved", ids.carol)
    with pytest.raises(StepAlreadyDecided):
        service.decide_department_step(s, rec.id, ids.ops, "rejected", ids.carol)


def test_non_designee_cannot_decide(s, ids):
    rec = _submitted(s, ids)
    with pytest.raises(PermissionDenied):
        service.decide_department_step(s, rec.id, ids.ops, "approved", ids.dave)
    with pytest.raises(PermissionDenied):
        service.decide_department_step(s, rec.id, ids.ops, "approved", ids.mallory)
    rec = _reload(s, rec.id)
    assert rec.approval_for(ids.ops).status == "pending"


def test_admin_may_decide_any_step(s, ids):
    rec = _submitted(s, ids)
    service.decide_department_step(s, rec.id, ids.ops, "approved", ids.admin)
    assert _reload(s, rec.id).approval_for(ids.ops).approver_id == ids.admin


def test_decision_uses_current_designee(s, ids):
    from app.moc.modules.departments.models import Department

    rec = _submitted(s, ids)
    dept = s.get(Department, ids.ops)
    dept.approver_user_id = ids.vic
    s.commit()

    with pytest.raises(PermissionDenied):
        service.decide_department_step(s, rec.id, ids.ops, "approved", ids.carol)
    service.decide_department_step(s, rec.id, ids.ops, "approved", ids.vic)


def test_decision_on_unknown_department_step(s, ids):
    rec = _submitted(s, ids, departments_affected=[ids.ops])
    with pytest.raises(NotFound):
        service.decide_department_step(s, rec.id, ids.safety, "approved", ids.admin)
    with pytest.raises(ValidationError):
        service.decide_department_step(s, rec.id, ids.ops, "maybe", ids.admin)


def test_decision_outside_department_stage(s, ids):
    rec = _new_rfc(s, ids)
    with pytest.raises(StepAlreadyDecided):
        service.decide_department_step(s, rec.id, ids.ops, "approved", ids.carol)


def test_concurrent_step_decisions_both_persist(app, s, ids):
    rec = _submitted(s, ids)
    other = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        # Second session holds a snapshot taken before the first decision.
        stale = other.get(RfcRecord, rec.id)
        assert [st.status for st in stale.department_approvals] == ["pending", "pending"]

        service.decide_department_step(s, rec.id, ids.ops, "approved", ids.carol)
        result = service.decide_department_step(other, rec.id, ids.safety, "approved", ids.dave)
        assert result.status == wf.PENDING_FINAL_REVIEW
    finally:
        other.close()

    rec = _reload(s, rec.id)
    assert [st.status for st in rec.department_approvals] == ["approved", "approved"]


def test_stale_write_is_detected(app, s, ids):
    rec = _new_rfc(s, ids)
    other = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        stale = other.get(RfcRecord, rec.id)
        service.update_record(s, rec.id, {"title": "New title"}, ids.alice)
        stale.title = "Conflicting title"
        with pytest.raises(StaleDataError):
            other.commit()
        other.rollback()
    finally:
        other.close()


def test_malformed_status_and_decision_are_validation_errors(s, ids):
    rec = _submitted(s, ids)
    with pytest.raises(ValidationError):
        service.change_status(s, rec.id, 5, ids.alice)
    with pytest.raises(ValidationError):
        service.decide_department_step(s, rec.id, ids.ops, ["approved"], ids.carol)
    with pytest.raises(ValidationError):
        service.decide_department_step(s, rec.id, ids.ops, {"decision": "approved"}, ids.carol)
    assert _reload(s, rec.id).approval_for(ids.ops).status == wf.STEP_PENDING


def test_create_retries_when_moc_id_is_taken(s, ids, monkeypatch):
    first = _new_rfc(s, ids)
    taken = first.moc_id_string
    pick_next = service._next_moc_id
    calls = []

    def colliding(sess):
        # a concurrent create took this id between the check and the insert
        calls.append(1)
        return taken if len(calls) == 1 else pick_next(sess)

    monkeypatch.setattr(service, "_next_moc_id", colliding)
    second = _new_rfc(s, ids)

    assert len(calls) == 2
    assert second.moc_id_string != taken
    assert _reload(s, second.id).status == wf.DRAFT
    assert len(s.scalars(select(RfcRecord)).all()) == 2


def test_run_atomic_retries_then_gives_up(s):
    calls = []

    def always_stale():
        calls.append(1)
        raise StaleDataError("stale")

    with pytest.raises(ConcurrentModification):
        run_atomic(s, always_stale, attempts=3, label="test")
    assert len(calls) == 3

    calls.clear()

    def stale_once():
        calls.append(1)
        if len(calls) == 1:
            raise StaleDataError("stale")
        return "ok"

    assert run_atomic(s, stale_once, attempts=3, label="test") == "ok"
    assert len(calls) == 2


# ---------- Edits ----------
def test_edit_during_final_review_resets_to_draft(s, ids):
    rec = _submitted(s, ids)
    service.decide_department_step(s, rec.id, ids.ops, "approved", ids.carol)
    service.decide_department_step(s, rec.id, ids.safety, "approved", ids.dave)

    result = service.update_record(s, rec.id, {"description": "Revised scope."}, ids.alice)
    assert result.changed is True
    assert result.status == wf.DRAFT

    rec = _reload(s, rec.id)
    assert rec.status == wf.DRAFT
    assert [st.status for st in rec.department_approvals] == ["pending", "pending"]
    assert all(st.approved_at is None for st in rec.department_approvals)
    assert rec.reviewer_id is None and rec.review_comments is None


def test_edit_during_department_stage_clears_review(s, ids):
    rec = _submitted(s, ids)
    service.decide_department_step(s, rec.id, ids.ops, "approved", ids.carol)
    service.update_record(s, rec.id, {"title": "Replace pump seal (rev B)"}, ids.bob)
    rec = _reload(s, rec.id)
    assert rec.status == wf.DRAFT
    assert rec.approval_for(ids.ops).status == "pending"


def test_identical_update_is_noop(s, ids):
    rec = _submitted(s, ids)
    before = _audit_actions(s, rec.id)

    result = service.update_record(
        s,
        rec.id,
        {"title": "Replace pump seal", "departments_affected": [ids.safety, ids.ops]},
        ids.alice,
    )
    assert result.changed is False
    rec = _reload(s, rec.id)
    assert rec.status == wf.PENDING_DEPARTMENT_APPROVAL
    assert _audit_actions(s, rec.id) == before
    assert service.list_edit_history(s, rec.id) == []


def test_edit_permissions(s, ids):
    rec = _new_rfc(s, ids)
    with pytest.raises(PermissionDenied):
        service.update_record(s, rec.id, {"title": "x"}, ids.mallory)

    _force_status(s, rec.id, wf.IN_PROGRESS)
    with pytest.raises(PermissionDenied):
        service.update_record(s, rec.id, {"title": "x"}, ids.alice)
    # edit-any holders (admin) may still edit; status is left alone
    result = service.update_record(s, rec.id, {"title": "x"}, ids.admin)
    assert result.changed and result.status == wf.IN_PROGRESS


def test_changing_departments_rebuilds_steps(s, ids):
    rec = _new_rfc(s, ids)
    service.update_record(s, rec.id, {"departments_affected": [ids.safety]}, ids.alice)
    rec = _reload(s, rec.id)
    assert [st.department_id for st in rec.department_approvals] == [ids.safety]


# ---------- Resubmission ----------
def test_resubmit_after_rejection(s, ids):
    rec = _submitted(s, ids)
    service.decide_department_step(s, rec.id, ids.ops, "approved", ids.carol)
    service.decide_department_step(s, rec.id, ids.safety, "rejected", ids.dave)

    with pytest.raises(PermissionDenied):
        service.resubmit(s, rec.id, ids.bob)
    service.resubmit(s, rec.id, ids.alice)

    rec = _reload(s, rec.id)
    assert rec.status == wf.PENDING_DEPARTMENT_APPROVAL
    assert [st.status for st in rec.department_approvals] == ["pending", "pending"]
    assert rec.reviewer_id is None and rec.reviewed_at is None and rec.review_comments is None


def test_resubmit_picks_up_current_department_approvers(s, ids):
    rec = _submitted(s, ids)
    service.decide_department_step(s, rec.id, ids.safety, "rejected", ids.dave)

    admin = s.get(User, ids.admin)
    ops = departments.get_department(s, ids.ops)
    departments.update_department(s, ops, {"approver_user_ids": [ids.vic]}, admin)
    s.commit()

    service.resubmit(s, rec.id, ids.alice)

    rec = _reload(s, rec.id)
    assert rec.approval_for(ids.ops).approver_id == ids.vic
    assert rec.approval_for(ids.safety).approver_id == ids.dave
    inbox = s.scalars(select(Notification).where(Notification.user_id == ids.vic, Notification.rfc_id == rec.id))
    assert [n.kind for n in inbox] == ["department_approval_pending"]

    # the new designee can decide; the old one no longer can
    with pytest.raises(PermissionDenied):
        service.decide_department_step(s, rec.id, ids.ops, "approved", ids.carol)
    service.decide_department_step(s, rec.id, ids.ops, "approved", ids.vic)


def test_resubmit_only_from_draft_or_rejected(s, ids):
    rec = _submitted(s, ids)
    with pytest.raises(InvalidTransition):
        service.resubmit(s, rec.id, ids.alice)


# ---------- Deletion ----------
def test_delete_cascades_attachments_and_notifications(s, ids, tmp_path):
    storage = LocalStorage(root=tmp_path / "files")
    rec = _submitted(s, ids)
    att = service.add_attachment(s, rec.id, "plan.pdf", "application/pdf", b"%PDF-1.4", ids.alice, storage=storage)
    # edit sends it back to draft, which the submitter may delete
    service.update_record(s, rec.id, {"title": "Updated"}, ids.alice)
    assert storage.exists(att.storage_key)
    assert s.scalars(select(Notification).where(Notification.rfc_id == rec.id)).first() is not None

    service.delete_record(s, rec.id, ids.alice, storage=storage)

    s.expire_all()
    assert not storage.exists(att.storage_key)
    assert s.scalars(select(RfcAttachment).where(RfcAttachment.rfc_id == rec.id)).first() is None
    assert s.scalars(select(Notification).where(Notification.rfc_id == rec.id)).first() is None
    assert s.scalars(select(EditHistory).where(EditHistory.rfc_id == rec.id)).first() is None
    with pytest.raises(NotFound):
        service.get_record(s, rec.id)
    assert "rfc.delete" in _audit_actions(s, rec.id)


def test_delete_permissions(s, ids):
    rec = _submitted(s, ids)
    with pytest.raises(PermissionDenied):
        service.delete_record(s, rec.id, ids.alice)
    with pytest.raises(PermissionDenied):
        service.delete_record(s, rec.id, ids.bob)
    service.delete_record(s, rec.id, ids.admin)
    with pytest.raises(NotFound):
        service.delete_record(s, rec.id, ids.admin)


# ---------- Queries ----------
def test_drafts_hidden_from_others(s, ids):
    draft = _new_rfc(s, ids)
    submitted = _submitted(s, ids)

    assert {r.id for r in service.list_records(s, ids.alice)} == {draft.id, submitted.id}
    assert {r.id for r in service.list_records(s, ids.admin)} == {draft.id, submitted.id}
    assert {r.id for r in service.list_records(s, ids.mallory)} == {submitted.id}
    with pytest.raises(NotFound):
        service.get_record_for_actor(s, draft.id, ids.mallory)


def test_list_status_filter(s, ids):
    draft = _new_rfc(s, ids)
    _submitted(s, ids)
    assert [r.id for r in service.list_records(s, ids.alice, "draft")] == [draft.id]
    # unknown filters are ignored
    assert len(service.list_records(s, ids.alice, "archived")) == 2


def test_record_to_dict_display_names(s, ids):
    rec = _submitted(s, ids, requested_by_department_id=ids.ops, deadline="2026-12-01")
    d = service.record_to_dict(s, rec)
    assert d["submitter_name"] == "Alice Submitter"
    assert d["assigned_to_name"] == "Bob Assignee"
    assert d["requested_by_department_name"] == "Operations"
    assert d["deadline"] == "2026-12-01"
    assert [a["department_name"] for a in d["department_approvals"]] == ["Operations", "Safety"]
    assert d["department_approvals"][0]["approver_name"] == "Carol Ops"


def test_list_attachments(s, ids, tmp_path):
    storage = LocalStorage(root=tmp_path / "files")
    rec = _new_rfc(s, ids)
    service.add_attachment(s, rec.id, "../../etc/passwd", None, b"abc", ids.alice, storage=storage)
    items = service.list_attachments(s, rec.id, storage=storage)
    assert len(items) == 1
    assert items[0]["size_bytes"] == 3
    assert items[0]["filename"] == "etc_passwd"
    assert items[0]["url"].startswith("file://")
    with pytest.raises(ValidationError):
        service.add_attachment(s, rec.id, "empty.txt", None, b"", ids.alice, storage=storage)
