"""
Notification fan-out for RFC workflow events.

`fan_out` turns one workflow event into one message per interested recipient
(pure, no I/O). `dispatch` hands the messages to a sink after the triggering
transition has committed; a failed delivery is logged and skipped, never
propagated, so it cannot undo the transition.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import delete

from app.moc.modules.notifications.models import Notification

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.moc.modules.rfc.models import RfcRecord

logger = logging.getLogger(__name__)

# Notification kinds
ASSIGNMENT = "assignment"
TECHNICAL_AUTHORITY_ASSIGNMENT = "technical_authority_assignment"
STATUS_CHANGE = "status_change"
DEPARTMENT_ACTION = "department_action"
DEPARTMENT_APPROVAL_PENDING = "department_approval_pending"
FINAL_REVIEW_PENDING = "final_review_pending"


@dataclass(frozen=True)
class PendingStep:
    department_name: str | None
    approver_id: int | None


@dataclass(frozen=True)
class WorkflowEvent:
    kind: str
    actor_id: int
    rfc_id: int
    title: str
    submitter_id: int
    assigned_to_id: int | None = None
    technical_authority_id: int | None = None
    additional_approver_ids: tuple[int, ...] = ()
    viewer_ids: tuple[int, ...] = ()
    new_status: str | None = None
    comments: str | None = None
    department_name: str | None = None
    decision: str | None = None
    pending_steps: tuple[PendingStep, ...] = ()
    is_new_record: bool = False
    resubmitted: bool = False

    @classmethod
    def for_record(cls, kind: str, record: "RfcRecord", actor_id: int, **extra) -> "WorkflowEvent":
        return cls(
            kind=kind,
            actor_id=actor_id,
            rfc_id=record.id,
            title=record.title,
            submitter_id=record.submitter_id,
            assigned_to_id=record.assigned_to_id,
            technical_authority_id=record.technical_authority_id,
            additional_approver_ids=tuple(record.additional_approver_ids or ()),
            viewer_ids=tuple(record.viewer_ids or ()),
            **extra,
        )


@dataclass(frozen=True)
class NotificationMessage:
    recipient_id: int
    actor_id: int
    rfc_id: int
    related_title: str
    kind: str
    message: str
    created_at: datetime = field(default_factory=datetime.utcnow)


class NotificationSink:
    def deliver(self, msg: NotificationMessage) -> None:
        raise NotImplementedError


class DatabaseNotificationSink(NotificationSink):
    """Stores notifications for later delivery and read-state tracking."""

    def __init__(self, s: "Session") -> None:
        self.s = s

    def deliver(self, msg: NotificationMessage) -> None:
        self.s.add(
            Notification(
                user_id=msg.recipient_id,
                actor_user_id=msg.actor_id,
                rfc_id=msg.rfc_id,
                related_title=msg.related_title,
                kind=msg.kind,
                message=msg.message,
                created_at=msg.created_at,
                is_read=False,
            )
        )
        self.s.commit()


def _unique(ids: Iterable[int | None], exclude: int | None = None) -> list[int]:
    seen: list[int] = []
    for uid in ids:
        if uid is None or uid == exclude or uid in seen:
            continue
        seen.append(uid)
    return seen


def status_change_recipients(event: WorkflowEvent) -> list[int]:
    return _unique(
        [
            event.submitter_id,
            event.assigned_to_id,
            event.technical_authority_id,
            *event.additional_approver_ids,
            *event.viewer_ids,
        ],
        exclude=event.actor_id,
    )


def party_recipients(event: WorkflowEvent) -> list[int]:
    return _unique([event.submitter_id, event.assigned_to_id], exclude=event.actor_id)


def _with_comments(text: str, comments: str | None) -> str:
    return text + (f" Comments: {comments}" if comments else "")


def _status_text(event: WorkflowEvent, status: str) -> str:
    return f'MOC "{event.title}" status changed to {status.replace("_", " ")}.'


def fan_out(event: WorkflowEvent) -> list[NotificationMessage]:
    def msg(recipient_id: int, kind: str, text: str) -> NotificationMessage:
        return NotificationMessage(
            recipient_id=recipient_id,
            actor_id=event.actor_id,
            rfc_id=event.rfc_id,
            related_title=event.title,
            kind=kind,
            message=text,
        )

    out: list[NotificationMessage] = []

    if event.kind == ASSIGNMENT:
        if event.assigned_to_id is not None:
            text = (
                f'You have been assigned a new MOC: "{event.title}".'
                if event.is_new_record
                else f'You have been assigned to MOC: "{event.title}".'
            )
            out.append(msg(event.assigned_to_id, ASSIGNMENT, text))

    elif event.kind == TECHNICAL_AUTHORITY_ASSIGNMENT:
        if event.technical_authority_id is not None:
            text = f'You have been designated as the technical authority for MOC: "{event.title}".'
            out.append(msg(event.technical_authority_id, TECHNICAL_AUTHORITY_ASSIGNMENT, text))

    elif event.kind == STATUS_CHANGE:
        text = _with_comments(_status_text(event, event.new_status or ""), event.comments)
        out.extend(msg(uid, STATUS_CHANGE, text) for uid in status_change_recipients(event))

    elif event.kind == DEPARTMENT_ACTION:
        dept = event.department_name or "Unknown Department"
        text = _with_comments(
            f'Department "{dept}" has {event.decision} their step for MOC "{event.title}".',
            event.comments,
        )
        out.extend(msg(uid, DEPARTMENT_ACTION, text) for uid in party_recipients(event))
        if event.new_status:
            status_text = _status_text(event, event.new_status)
            out.extend(msg(uid, STATUS_CHANGE, status_text) for uid in status_change_recipients(event))
            if event.new_status == "pending_final_review" and event.technical_authority_id is not None:
                out.append(
                    msg(
                        event.technical_authority_id,
                        FINAL_REVIEW_PENDING,
                        f'MOC "{event.title}" is now pending your final technical review.',
                    )
                )

    elif event.kind == DEPARTMENT_APPROVAL_PENDING:
        # One per step, in departments_affected order.
        for step in event.pending_steps:
            if step.approver_id is None:
                continue
            if event.resubmitted:
                text = (
                    f'MOC "{event.title}" has been resubmitted and requires your department\'s approval '
                    f"for department {step.department_name}."
                )
            else:
                text = f'Your approval is requested for MOC "{event.title}" for department {step.department_name}.'
            out.append(msg(step.approver_id, DEPARTMENT_APPROVAL_PENDING, text))

    else:
        logger.warning("fan_out: unknown event kind %r (rfc_id=%s)", event.kind, event.rfc_id)

    return out


def dispatch(s: "Session", messages: Sequence[NotificationMessage], sink: NotificationSink | None = None) -> int:
    """Deliver each message independently. Returns the number delivered."""
    sink = sink or DatabaseNotificationSink(s)
    delivered = 0
    for m in messages:
        try:
            sink.deliver(m)
            delivered += 1
        except Exception:
            s.rollback()
            logger.exception(
                "Notification delivery failed (kind=%s recipient=%s rfc_id=%s)",
                m.kind,
                m.recipient_id,
                m.rfc_id,
            )
    return delivered


def delete_for_record(s: "Session", rfc_id: int) -> int:
    result = s.execute(delete(Notification).where(Notification.rfc_id == rfc_id))
    return result.rowcount or 0
