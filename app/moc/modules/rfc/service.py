"""
RFC workflow engine.

Every mutating operation takes the acting user id explicitly and runs in
three phases:

1. the primary mutation: one atomic read-modify-write of the record (row
   lock + version check, re-run on a concurrent write), including the
   append-only audit event;
2. edit history (updates only): best effort, a failure is returned as a
   warning and does not undo phase 1;
3. notification fan-out: best effort, failures are logged and swallowed.

Phases 2 and 3 still complete before the operation returns.
"""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, BinaryIO

from flask import current_app, has_app_context
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from werkzeug.utils import secure_filename

from app.moc.audit import record_event
from app.moc.db import run_atomic
from app.moc.errors import InvalidTransition, NotFound, PermissionDenied, StepAlreadyDecided, ValidationError
from app.moc.models import User
from app.moc.modules.departments.models import Department
from app.moc.modules.departments.service import department_name, designated_approver_id
from app.moc.modules.notifications import service as notifications
from app.moc.modules.notifications.service import NotificationSink, PendingStep, WorkflowEvent
from app.moc.modules.rfc import history
from app.moc.modules.rfc import permissions as perms
from app.moc.modules.rfc import workflow as wf
from app.moc.modules.rfc.models import DepartmentApproval, EditHistory, RfcAttachment, RfcRecord
from app.moc.storage import Storage, StorageError, storage_from_config

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


CHANGE_TYPES = ("temporary", "permanent", "emergency")
RISK_LEVELS = ("low", "medium", "high")

REQUIRED_TEXT_FIELDS = ("title", "description")
TEXT_FIELDS = (
    "reason_for_change",
    "change_category",
    "change_category_other",
    "impact_assessment",
    "hse_impact_assessment",
    "risk_evaluation",
    "risk_matrix_pre_mitigation",
    "risk_matrix_post_mitigation",
    "pre_change_condition",
    "post_change_condition",
    "supporting_documents_notes",
    "stakeholder_review_approvals_text",
    "training_details",
    "implementation_owner",
    "verification_of_completion_text",
    "post_implementation_review_text",
    "closeout_approved_by_text",
)
ENUM_FIELDS = {
    "change_type": CHANGE_TYPES,
    "risk_level_pre_mitigation": RISK_LEVELS,
    "risk_level_post_mitigation": RISK_LEVELS,
}
BOOL_FIELDS = ("risk_assessment_required", "training_required")
DATE_FIELDS = ("start_date_of_change", "expected_completion_date", "deadline")
USER_FIELDS = ("assigned_to_id", "technical_authority_id")
DEPARTMENT_FIELDS = ("requested_by_department_id",)
USER_LIST_FIELDS = ("additional_approver_ids", "viewer_ids")
DEPARTMENT_LIST_FIELDS = ("departments_affected",)

EDITABLE_FIELDS = frozenset(
    REQUIRED_TEXT_FIELDS
    + TEXT_FIELDS
    + tuple(ENUM_FIELDS)
    + BOOL_FIELDS
    + DATE_FIELDS
    + USER_FIELDS
    + DEPARTMENT_FIELDS
    + USER_LIST_FIELDS
    + DEPARTMENT_LIST_FIELDS
)


@dataclass
class OperationResult:
    rfc_id: int
    status: str
    changed: bool = True
    warnings: list[str] = field(default_factory=list)
    notifications_sent: int = 0

    def to_dict(self) -> dict:
        return {
            "rfc_id": self.rfc_id,
            "status": self.status,
            "changed": self.changed,
            "warnings": list(self.warnings),
            "notifications_sent": self.notifications_sent,
        }


# ---------------------------------------------------------------------------
# Payload normalization
# ---------------------------------------------------------------------------


def _parse_text(value: Any) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def _parse_choice(value: Any, name: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string.")
    return value.strip()


def _parse_bool(value: Any, name: str) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    raw = str(value).strip().lower()
    if raw == "":
        return None
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ValidationError(f"{name} must be a boolean.")


def _parse_date(value: Any, name: str) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    try:
        # Accept full ISO timestamps as well as YYYY-MM-DD.
        return date.fromisoformat(raw[:10])
    except ValueError:
        raise ValidationError(f"{name} must be an ISO date (YYYY-MM-DD).") from None


def _parse_id(value: Any, name: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an id.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an id.") from None


def _parse_id_list(value: Any, name: str) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"{name} must be a list of ids.")
    out: list[int] = []
    for item in value:
        uid = _parse_id(item, name)
        if uid is not None and uid not in out:
            out.append(uid)
    return out


def _require_users(s: "Session", ids: list[int], name: str) -> None:
    for uid in ids:
        if not s.get(User, uid):
            raise ValidationError(f"{name}: user {uid} not found.")


def _require_departments(s: "Session", ids: list[int], name: str) -> None:
    for dept_id in ids:
        if not s.get(Department, dept_id):
            raise ValidationError(f"{name}: department {dept_id} not found.")


def normalize_payload(s: "Session", payload: dict, *, partial: bool) -> dict[str, Any]:
    """
    Validate and coerce an incoming field dict.

    With `partial=True` only the keys present are returned (update); otherwise
    title and description are required (create).
    """
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be an object.")
    unknown = sorted(set(payload) - EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(unknown)}")

    out: dict[str, Any] = {}
    for name in REQUIRED_TEXT_FIELDS:
        if name in payload or not partial:
            value = _parse_text(payload.get(name))
            if not value:
                raise ValidationError(f"{name} is required.")
            out[name] = value

    for name in TEXT_FIELDS:
        if name in payload:
            out[name] = _parse_text(payload[name])

    for name, allowed in ENUM_FIELDS.items():
        if name in payload:
            value = _parse_text(payload[name])
            if value is not None:
                value = value.lower()
                if value not in allowed:
                    raise ValidationError(f"Invalid {name}. Must be one of: {', '.join(allowed)}")
            out[name] = value

    for name in BOOL_FIELDS:
        if name in payload:
            out[name] = _parse_bool(payload[name], name)

    for name in DATE_FIELDS:
        if name in payload:
            out[name] = _parse_date(payload[name], name)

    for name in USER_FIELDS:
        if name in payload:
            uid = _parse_id(payload[name], name)
            if uid is not None:
                _require_users(s, [uid], name)
            out[name] = uid

    for name in DEPARTMENT_FIELDS:
        if name in payload:
            dept_id = _parse_id(payload[name], name)
            if dept_id is not None:
                _require_departments(s, [dept_id], name)
            out[name] = dept_id

    for name in USER_LIST_FIELDS:
        if name in payload:
            ids = _parse_id_list(payload[name], name)
            _require_users(s, ids, name)
            out[name] = ids

    for name in DEPARTMENT_LIST_FIELDS:
        if name in payload:
            ids = _parse_id_list(payload[name], name)
            _require_departments(s, ids, name)
            out[name] = ids

    return out


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _max_attempts() -> int:
    if has_app_context():
        return int(current_app.config.get("WORKFLOW_MAX_ATTEMPTS") or 3)
    return 3


def _moc_prefix() -> str:
    if has_app_context():
        return current_app.config.get("MOC_ID_PREFIX") or "MOC"
    return "MOC"


def _storage(storage: Storage | None) -> Storage:
    return storage or storage_from_config(current_app.config)


def _next_moc_id(s: "Session") -> str:
    """`MOC-` plus the last six digits of the epoch milliseconds, bumped until unused."""
    prefix = _moc_prefix()
    n = int(str(int(time.time() * 1000))[-6:])
    for _ in range(1_000_000):
        candidate = f"{prefix}-{n:06d}"
        if s.scalar(select(RfcRecord.id).where(RfcRecord.moc_id_string == candidate)) is None:
            return candidate
        n = (n + 1) % 1_000_000
    raise ValidationError("No free MOC id available.")


def _load_for_update(s: "Session", rfc_id: int) -> RfcRecord:
    """Locked, freshly read record (approvals included)."""
    q = (
        select(RfcRecord)
        .where(RfcRecord.id == rfc_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    record = s.execute(q).scalar_one_or_none()
    if not record:
        raise NotFound(f"RFC {rfc_id} not found.")
    return record


def _touch(record: RfcRecord) -> None:
    # Always write the parent row so the version check covers child-only changes.
    record.updated_at = datetime.utcnow()


def _clear_review(record: RfcRecord) -> None:
    record.reviewer_id = None
    record.reviewed_at = None
    record.review_comments = None


def _reset_steps(s: "Session", record: RfcRecord) -> list[PendingStep]:
    """
    Rebuild department steps from departments_affected: one pending step per
    department, in order, approver = the department's current designee.
    Existing rows are reused so the (record, department) unique key never collides.
    """
    existing = {step.department_id: step for step in record.department_approvals}
    steps: list[DepartmentApproval] = []
    pending: list[PendingStep] = []
    for position, dept_id in enumerate(record.departments_affected or []):
        step = existing.pop(dept_id, None) or DepartmentApproval(department_id=dept_id)
        step.position = position
        step.status = wf.STEP_PENDING
        step.approver_id = designated_approver_id(s, dept_id)
        step.approved_at = None
        step.comments = None
        steps.append(step)
        pending.append(PendingStep(department_name=department_name(s, dept_id), approver_id=step.approver_id))
    record.department_approvals = steps
    return pending


def _notify(s: "Session", events: list[WorkflowEvent], sink: NotificationSink | None) -> int:
    messages = [m for ev in events for m in notifications.fan_out(ev)]
    if not messages:
        return 0
    return notifications.dispatch(s, messages, sink)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


def create_record(
    s: "Session",
    payload: dict,
    submitter_id: int,
    *,
    sink: NotificationSink | None = None,
) -> RfcRecord:
    """Create an RFC in draft owned by `submitter_id`."""

    def unit() -> tuple[RfcRecord, list[WorkflowEvent]]:
        actor = perms.resolve_actor(s, submitter_id)
        if not perms.can_perform(actor, perms.CREATE):
            raise PermissionDenied("Permission denied. You don't have permission to create RFCs.")
        fields = normalize_payload(s, payload, partial=False)

        now = datetime.utcnow()
        record = RfcRecord(
            moc_id_string=_next_moc_id(s),
            status=wf.DRAFT,
            submitter_id=actor.id,
            additional_approver_ids=[],
            viewer_ids=[],
            departments_affected=[],
            date_raised=now,
            updated_at=now,
        )
        for name, value in fields.items():
            setattr(record, name, value)
        s.add(record)
        _reset_steps(s, record)
        s.flush()

        record_event(
            s,
            actor=actor,
            action="rfc.create",
            entity_type="RfcRecord",
            entity_id=str(record.id),
            metadata={"moc_id": record.moc_id_string, "title": record.title},
        )

        events = []
        if record.assigned_to_id is not None:
            events.append(WorkflowEvent.for_record(notifications.ASSIGNMENT, record, actor.id, is_new_record=True))
        if record.technical_authority_id is not None:
            events.append(WorkflowEvent.for_record(notifications.TECHNICAL_AUTHORITY_ASSIGNMENT, record, actor.id))
        return record, events

    # Two creates can pick the same free MOC id; the loser re-runs and picks the next one.
    record, events = run_atomic(
        s,
        unit,
        attempts=_max_attempts(),
        label="create_record",
        retry_on=(StaleDataError, IntegrityError),
    )
    logger.info("RFC created id=%s moc_id=%s submitter=%s", record.id, record.moc_id_string, submitter_id)
    _notify(s, events, sink)
    return record


def update_record(
    s: "Session",
    rfc_id: int,
    payload: dict,
    actor_id: int,
    *,
    sink: NotificationSink | None = None,
) -> OperationResult:
    """
    Apply a partial field update.

    Value-identical updates (lists compared order-insensitively) are a no-op.
    A substantive edit while under review sends the record back to draft with
    all department steps pending and review data cleared.
    """

    def unit():
        actor = perms.resolve_actor(s, actor_id)
        record = _load_for_update(s, rfc_id)
        if not perms.can_perform(actor, perms.EDIT, record):
            if record.status in wf.LOCKED_STATUSES:
                raise PermissionDenied("Cannot edit an RFC that is in progress or completed without edit-any permission.")
            raise PermissionDenied("Permission denied to edit this RFC.")

        fields = normalize_payload(s, payload, partial=True)
        before = {name: getattr(record, name) for name in fields}
        changes = history.diff_fields(before, fields)
        if not changes:
            return record, actor, [], []

        old_assignee = record.assigned_to_id
        old_technical_authority = record.technical_authority_id
        for change in changes:
            setattr(record, change.field, fields[change.field])

        reset = record.status in wf.REVIEW_STATUSES
        from_status = record.status
        if reset:
            record.status = wf.DRAFT
            _clear_review(record)
        if reset or any(c.field == "departments_affected" for c in changes):
            _reset_steps(s, record)
        _touch(record)

        record_event(
            s,
            actor=actor,
            action="rfc.edit",
            entity_type="RfcRecord",
            entity_id=str(record.id),
            metadata={
                "moc_id": record.moc_id_string,
                "fields": [c.field for c in changes],
                "status_from": from_status,
                "status_to": record.status,
            },
        )

        events = []
        if record.assigned_to_id is not None and record.assigned_to_id != old_assignee:
            events.append(WorkflowEvent.for_record(notifications.ASSIGNMENT, record, actor.id))
        if record.technical_authority_id is not None and record.technical_authority_id != old_technical_authority:
            events.append(WorkflowEvent.for_record(notifications.TECHNICAL_AUTHORITY_ASSIGNMENT, record, actor.id))
        return record, actor, changes, events

    record, actor, changes, events = run_atomic(s, unit, attempts=_max_attempts(), label=f"update_record rfc={rfc_id}")
    if not changes:
        return OperationResult(rfc_id=record.id, status=record.status, changed=False)

    logger.info("RFC updated id=%s fields=%s status=%s", record.id, [c.field for c in changes], record.status)
    result = OperationResult(rfc_id=record.id, status=record.status)
    try:
        history.record_edit(s, actor, record.id, changes)
        s.commit()
    except SQLAlchemyError:
        s.rollback()
        logger.warning("Edit history could not be recorded (rfc_id=%s editor=%s)", record.id, actor.id, exc_info=True)
        result.warnings.append("Edit history could not be recorded.")
    result.notifications_sent = _notify(s, events, sink)
    return result


def change_status(
    s: "Session",
    rfc_id: int,
    target_status: str,
    actor_id: int,
    comments: str | None = None,
    *,
    sink: NotificationSink | None = None,
) -> OperationResult:
    target = _parse_choice(target_status, "status")
    if not wf.is_valid_status(target):
        raise ValidationError(f"Invalid status provided: {target_status!r}")
    comments = _parse_text(comments)

    def unit():
        actor = perms.resolve_actor(s, actor_id)
        record = _load_for_update(s, rfc_id)
        from_status = record.status
        if not wf.is_transition(from_status, target):
            raise InvalidTransition(f"Cannot change status from {from_status} to {target}.")
        if not perms.can_perform(actor, perms.CHANGE_STATUS, record, target_status=target):
            if not wf.allowed_relationships(from_status, target):
                raise PermissionDenied(
                    f"Only admins can move an RFC from {wf.humanize_status(from_status)} to {wf.humanize_status(target)}."
                )
            raise PermissionDenied("Permission denied to change status.")

        now = datetime.utcnow()
        record.status = target
        pending: list[PendingStep] = []
        if target == wf.PENDING_DEPARTMENT_APPROVAL:
            record.submitted_at = now
            pending = _reset_steps(s, record)
        if target in wf.REVIEW_OUTCOMES:
            record.reviewed_at = now
            record.reviewer_id = actor.id
            record.review_comments = comments
        _touch(record)

        record_event(
            s,
            actor=actor,
            action="rfc.status_change",
            entity_type="RfcRecord",
            entity_id=str(record.id),
            reason=comments,
            metadata={"moc_id": record.moc_id_string, "from": from_status, "to": target},
        )

        events = [
            WorkflowEvent.for_record(notifications.STATUS_CHANGE, record, actor.id, new_status=target, comments=comments)
        ]
        if pending:
            events.append(
                WorkflowEvent.for_record(
                    notifications.DEPARTMENT_APPROVAL_PENDING, record, actor.id, pending_steps=tuple(pending)
                )
            )
        return record, from_status, events

    record, from_status, events = run_atomic(s, unit, attempts=_max_attempts(), label=f"change_status rfc={rfc_id}")
    logger.info("RFC status id=%s %s -> %s by user=%s", record.id, from_status, record.status, actor_id)
    sent = _notify(s, events, sink)
    return OperationResult(rfc_id=record.id, status=record.status, notifications_sent=sent)


def resubmit(
    s: "Session",
    rfc_id: int,
    actor_id: int,
    *,
    sink: NotificationSink | None = None,
) -> OperationResult:
    """Send a draft or rejected RFC (back) into department approval with fresh steps."""

    def unit():
        actor = perms.resolve_actor(s, actor_id)
        record = _load_for_update(s, rfc_id)
        if not perms.can_perform(actor, perms.RESUBMIT, record):
            raise PermissionDenied("Only the submitter or an admin can resubmit this RFC.")
        if record.status not in wf.RESUBMITTABLE_STATUSES:
            raise InvalidTransition("An RFC can only be resubmitted from draft or rejected.")

        from_status = record.status
        record.status = wf.PENDING_DEPARTMENT_APPROVAL
        record.submitted_at = datetime.utcnow()
        _clear_review(record)
        pending = _reset_steps(s, record)
        _touch(record)

        record_event(
            s,
            actor=actor,
            action="rfc.resubmit",
            entity_type="RfcRecord",
            entity_id=str(record.id),
            metadata={"moc_id": record.moc_id_string, "from": from_status},
        )

        events = [
            WorkflowEvent.for_record(
                notifications.STATUS_CHANGE, record, actor.id, new_status=wf.PENDING_DEPARTMENT_APPROVAL
            ),
            WorkflowEvent.for_record(
                notifications.DEPARTMENT_APPROVAL_PENDING,
                record,
                actor.id,
                pending_steps=tuple(pending),
                resubmitted=True,
            ),
        ]
        return record, events

    record, events = run_atomic(s, unit, attempts=_max_attempts(), label=f"resubmit rfc={rfc_id}")
    logger.info("RFC resubmitted id=%s by user=%s", record.id, actor_id)
    sent = _notify(s, events, sink)
    return OperationResult(rfc_id=record.id, status=record.status, notifications_sent=sent)


def decide_department_step(
    s: "Session",
    rfc_id: int,
    department_id: int,
    decision: str,
    actor_id: int,
    comments: str | None = None,
    *,
    sink: NotificationSink | None = None,
) -> OperationResult:
    """
    Record one department's decision and re-aggregate the record status.

    The approvals are re-read under the record lock, so two decisions on
    different steps of the same record serialize instead of overwriting each other.
    """
    decision = _parse_choice(decision, "decision").lower()
    if decision not in wf.STEP_DECISIONS:
        raise ValidationError(f"Invalid decision {decision!r}. Must be one of: {', '.join(wf.STEP_DECISIONS)}")
    comments = _parse_text(comments)

    def unit():
        actor = perms.resolve_actor(s, actor_id)
        record = _load_for_update(s, rfc_id)
        if record.status != wf.PENDING_DEPARTMENT_APPROVAL:
            raise StepAlreadyDecided("RFC is not pending department approval.")
        step = record.approval_for(department_id)
        if step is None:
            raise NotFound("Department approval not found for this RFC.")

        designee = designated_approver_id(s, department_id)
        if not perms.can_perform(actor, perms.DECIDE_STEP, record, designated_approver_id=designee):
            raise PermissionDenied("Permission denied. Not an admin or designated approver for this department.")
        if step.status != wf.STEP_PENDING:
            raise StepAlreadyDecided(f"This department step has already been {step.status}.")

        now = datetime.utcnow()
        step.status = decision
        step.comments = comments
        step.approved_at = now
        step.approver_id = actor.id

        dept_name = department_name(s, department_id)
        next_status = wf.aggregate_status(
            [st.status for st in record.department_approvals],
            has_technical_authority=record.technical_authority_id is not None,
        )
        if next_status is not None:
            record.status = next_status
            if next_status == wf.REJECTED:
                record.reviewer_id = actor.id
                record.reviewed_at = now
                record.review_comments = wf.rejection_note(dept_name, comments)
            elif next_status == wf.APPROVED:
                record.reviewer_id = actor.id
                record.reviewed_at = now
                record.review_comments = wf.AUTO_APPROVAL_NOTE
        _touch(record)

        record_event(
            s,
            actor=actor,
            action="rfc.department_decision",
            entity_type="RfcRecord",
            entity_id=str(record.id),
            reason=comments,
            metadata={
                "moc_id": record.moc_id_string,
                "department_id": department_id,
                "decision": decision,
                "new_status": next_status,
            },
        )

        events = [
            WorkflowEvent.for_record(
                notifications.DEPARTMENT_ACTION,
                record,
                actor.id,
                department_name=dept_name,
                decision=decision,
                comments=comments,
                new_status=next_status,
            )
        ]
        return record, next_status, events

    record, next_status, events = run_atomic(
        s, unit, attempts=_max_attempts(), label=f"decide_department_step rfc={rfc_id} dept={department_id}"
    )
    logger.info(
        "RFC department step id=%s dept=%s decision=%s new_status=%s by user=%s",
        record.id,
        department_id,
        decision,
        next_status,
        actor_id,
    )
    sent = _notify(s, events, sink)
    return OperationResult(rfc_id=record.id, status=record.status, notifications_sent=sent)


def delete_record(
    s: "Session",
    rfc_id: int,
    actor_id: int,
    *,
    storage: Storage | None = None,
) -> OperationResult:
    """
    Hard-delete an RFC with its attachments, notifications and edit history.

    Attachment bytes are removed from storage after the rows are gone; a storage
    failure is logged and reported as a warning.
    """

    def unit():
        actor = perms.resolve_actor(s, actor_id)
        record = _load_for_update(s, rfc_id)
        if not perms.can_perform(actor, perms.DELETE, record):
            raise PermissionDenied("Permission denied to delete this RFC.")

        storage_keys = [a.storage_key for a in record.attachments]
        notifications.delete_for_record(s, record.id)
        s.execute(delete(EditHistory).where(EditHistory.rfc_id == record.id))
        record_event(
            s,
            actor=actor,
            action="rfc.delete",
            entity_type="RfcRecord",
            entity_id=str(record.id),
            metadata={
                "moc_id": record.moc_id_string,
                "title": record.title,
                "status": record.status,
                "attachments": len(storage_keys),
            },
        )
        status = record.status
        s.delete(record)
        return status, storage_keys

    status, storage_keys = run_atomic(s, unit, attempts=_max_attempts(), label=f"delete_record rfc={rfc_id}")
    logger.info("RFC deleted id=%s by user=%s (attachments=%s)", rfc_id, actor_id, len(storage_keys))

    result = OperationResult(rfc_id=rfc_id, status=status)
    if storage_keys:
        store = _storage(storage)
        for key in storage_keys:
            try:
                store.delete(key)
            except (StorageError, OSError):
                logger.exception("Attachment bytes could not be deleted (key=%s)", key)
                result.warnings.append(f"Attachment file {key} could not be deleted.")
    return result


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def build_attachment_storage_key(record: RfcRecord, filename: str) -> str:
    safe_filename = secure_filename(filename) or "attachment.bin"
    return f"moc/{record.moc_id_string}/{uuid.uuid4().hex[:12]}-{safe_filename}"


def add_attachment(
    s: "Session",
    rfc_id: int,
    filename: str,
    content_type: str | None,
    data: bytes,
    actor_id: int,
    *,
    storage: Storage | None = None,
) -> RfcAttachment:
    actor = perms.resolve_actor(s, actor_id)
    record = get_record(s, rfc_id)
    if not perms.can_perform(actor, perms.VIEW, record):
        raise NotFound(f"RFC {rfc_id} not found.")
    if not data:
        raise ValidationError("Attachment is empty.")

    store = _storage(storage)
    storage_key = build_attachment_storage_key(record, filename)
    content_type = (content_type or "application/octet-stream").strip()
    sha256, size_bytes = file_digest_and_bytes(data)
    store.put_bytes(storage_key, data, content_type=content_type)

    att = RfcAttachment(
        rfc_id=record.id,
        storage_key=storage_key,
        filename=secure_filename(filename) or "attachment.bin",
        content_type=content_type,
        sha256=sha256,
        size_bytes=size_bytes,
        uploaded_by_id=actor.id,
    )
    try:
        s.add(att)
        s.flush()
        record_event(
            s,
            actor=actor,
            action="rfc.attachment_add",
            entity_type="RfcAttachment",
            entity_id=str(att.id),
            metadata={"rfc_id": record.id, "filename": att.filename, "size_bytes": size_bytes},
        )
        s.commit()
    except Exception:
        s.rollback()
        try:
            store.delete(storage_key)
        except StorageError:
            logger.exception("Orphaned attachment bytes (key=%s)", storage_key)
        raise
    logger.info("Attachment added rfc_id=%s key=%s size=%s", record.id, storage_key, size_bytes)
    return att


def open_attachment(
    s: "Session",
    rfc_id: int,
    attachment_id: int,
    actor_id: int,
    *,
    storage: Storage | None = None,
) -> tuple[RfcAttachment, BinaryIO]:
    get_record_for_actor(s, rfc_id, actor_id)
    att = s.get(RfcAttachment, attachment_id)
    if not att or att.rfc_id != rfc_id:
        raise NotFound(f"Attachment {attachment_id} not found.")
    return att, _storage(storage).open(att.storage_key)


def list_attachments(s: "Session", rfc_id: int, *, storage: Storage | None = None) -> list[dict]:
    record = get_record(s, rfc_id)
    store = _storage(storage)
    out = []
    for att in sorted(record.attachments, key=lambda a: a.id):
        uploader = s.get(User, att.uploaded_by_id) if att.uploaded_by_id else None
        out.append(
            {
                "id": att.id,
                "filename": att.filename,
                "content_type": att.content_type,
                "size_bytes": att.size_bytes,
                "sha256": att.sha256,
                "uploaded_at": _iso(att.uploaded_at),
                "uploaded_by_id": att.uploaded_by_id,
                "uploaded_by_name": uploader.display_name if uploader else None,
                "storage_key": att.storage_key,
                "url": store.locator(att.storage_key),
            }
        )
    return out


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_record(s: "Session", rfc_id: int) -> RfcRecord:
    record = s.get(RfcRecord, rfc_id)
    if not record:
        raise NotFound(f"RFC {rfc_id} not found.")
    return record


def get_record_for_actor(s: "Session", rfc_id: int, actor_id: int) -> RfcRecord:
    """Like get_record, but drafts of other submitters are reported as not found."""
    actor = perms.resolve_actor(s, actor_id)
    record = get_record(s, rfc_id)
    if not perms.can_perform(actor, perms.VIEW, record):
        raise NotFound(f"RFC {rfc_id} not found.")
    return record


def list_records(s: "Session", actor_id: int, status_filter: str | None = None) -> list[RfcRecord]:
    actor = perms.resolve_actor(s, actor_id)
    q = select(RfcRecord).order_by(RfcRecord.date_raised.desc(), RfcRecord.id.desc())
    status_filter = (status_filter or "").strip()
    if status_filter and status_filter != "all":
        if wf.is_valid_status(status_filter):
            q = q.where(RfcRecord.status == status_filter)
        else:
            logger.warning("Invalid status filter %r ignored", status_filter)
    return [r for r in s.scalars(q) if perms.can_perform(actor, perms.VIEW, r)]


def list_edit_history(s: "Session", rfc_id: int) -> list[EditHistory]:
    get_record(s, rfc_id)
    return history.list_edit_history(s, rfc_id)


def latest_edit_per_user(s: "Session", rfc_id: int) -> list[EditHistory]:
    get_record(s, rfc_id)
    return history.latest_edit_per_user(s, rfc_id)


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value else None


def _user_name(s: "Session", user_id: int | None) -> str | None:
    if user_id is None:
        return None
    u = s.get(User, user_id)
    return u.display_name if u else None


def record_to_dict(s: "Session", record: RfcRecord) -> dict:
    """Raw record plus display names; a missing user or department yields None."""
    out: dict[str, Any] = {
        "id": record.id,
        "moc_id": record.moc_id_string,
        "status": record.status,
        "submitter_id": record.submitter_id,
        "submitter_name": _user_name(s, record.submitter_id),
        "assigned_to_name": _user_name(s, record.assigned_to_id),
        "technical_authority_name": _user_name(s, record.technical_authority_id),
        "reviewer_id": record.reviewer_id,
        "reviewer_name": _user_name(s, record.reviewer_id),
        "reviewed_at": _iso(record.reviewed_at),
        "review_comments": record.review_comments,
        "requested_by_department_name": department_name(s, record.requested_by_department_id),
        "date_raised": _iso(record.date_raised),
        "submitted_at": _iso(record.submitted_at),
        "updated_at": _iso(record.updated_at),
    }
    for name in sorted(EDITABLE_FIELDS):
        value = getattr(record, name)
        out[name] = _iso(value) if isinstance(value, (date, datetime)) else value
    out["department_approvals"] = [
        {
            "department_id": step.department_id,
            "department_name": department_name(s, step.department_id),
            "status": step.status,
            "approver_id": step.approver_id,
            "approver_name": _user_name(s, step.approver_id),
            "approved_at": _iso(step.approved_at),
            "comments": step.comments,
        }
        for step in record.department_approvals
    ]
    return out
