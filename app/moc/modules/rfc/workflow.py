"""
RFC status state machine.

The transition table is the single source of truth for which status changes
exist and which relationship to the record an actor needs to request them.
Admins are authorized for every row in the table; pairs that are not in the
table do not exist for anybody.

Department approvals are a separate sub-protocol: individual steps are
decided one at a time and `aggregate_status` derives the record's next status
from the full set of steps.
"""

from __future__ import annotations

from collections.abc import Iterable

DRAFT = "draft"
PENDING_DEPARTMENT_APPROVAL = "pending_department_approval"
PENDING_FINAL_REVIEW = "pending_final_review"
APPROVED = "approved"
REJECTED = "rejected"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
CANCELLED = "cancelled"

STATUSES = (
    DRAFT,
    PENDING_DEPARTMENT_APPROVAL,
    PENDING_FINAL_REVIEW,
    APPROVED,
    REJECTED,
    IN_PROGRESS,
    COMPLETED,
    CANCELLED,
)

STEP_PENDING = "pending"
STEP_APPROVED = "approved"
STEP_REJECTED = "rejected"
STEP_STATUSES = (STEP_PENDING, STEP_APPROVED, STEP_REJECTED)
STEP_DECISIONS = (STEP_APPROVED, STEP_REJECTED)

# Relationships an actor can have to a record.
SUBMITTER = "submitter"
ASSIGNEE = "assignee"
FINAL_REVIEWER = "final_reviewer"  # technical authority if set, else any additional approver

# (from, to) -> relationships allowed besides admin. An empty tuple means admin only.
TRANSITIONS: dict[tuple[str, str], tuple[str, ...]] = {
    (DRAFT, PENDING_DEPARTMENT_APPROVAL): (SUBMITTER,),
    (PENDING_DEPARTMENT_APPROVAL, CANCELLED): (SUBMITTER,),
    (PENDING_DEPARTMENT_APPROVAL, REJECTED): (),
    (PENDING_FINAL_REVIEW, APPROVED): (FINAL_REVIEWER,),
    (PENDING_FINAL_REVIEW, REJECTED): (FINAL_REVIEWER,),
    (PENDING_FINAL_REVIEW, CANCELLED): (SUBMITTER,),
    (APPROVED, IN_PROGRESS): (ASSIGNEE,),
    (APPROVED, CANCELLED): (SUBMITTER,),
    (REJECTED, CANCELLED): (SUBMITTER,),
    (IN_PROGRESS, COMPLETED): (ASSIGNEE,),
    (IN_PROGRESS, CANCELLED): (),
    (COMPLETED, CANCELLED): (),
}

# Statuses in which the record is under review; a substantive edit sends it back to draft.
REVIEW_STATUSES = frozenset({PENDING_DEPARTMENT_APPROVAL, PENDING_FINAL_REVIEW})
# Statuses in which submitter/assignee may still edit.
EDITABLE_STATUSES = frozenset({DRAFT, REJECTED, PENDING_DEPARTMENT_APPROVAL, PENDING_FINAL_REVIEW})
# Statuses in which only edit-any holders may edit.
LOCKED_STATUSES = frozenset({IN_PROGRESS, COMPLETED})
# Statuses from which the submitter may delete their own record.
SUBMITTER_DELETABLE_STATUSES = frozenset({DRAFT, REJECTED, CANCELLED})
RESUBMITTABLE_STATUSES = frozenset({DRAFT, REJECTED})
# Statuses that stamp reviewer/reviewed_at/review_comments when entered through change_status.
REVIEW_OUTCOMES = frozenset({APPROVED, REJECTED})

AUTO_APPROVAL_NOTE = "Auto-approved after all department approvals completed (no technical authority assigned)."


def is_valid_status(status: str) -> bool:
    return status in STATUSES


def is_transition(from_status: str, to_status: str) -> bool:
    return (from_status, to_status) in TRANSITIONS


def allowed_relationships(from_status: str, to_status: str) -> tuple[str, ...]:
    return TRANSITIONS[(from_status, to_status)]


def targets_from(from_status: str) -> list[str]:
    return [to for (frm, to) in TRANSITIONS if frm == from_status]


def humanize_status(status: str) -> str:
    return status.replace("_", " ")


def rejection_note(department_name: str | None, comments: str | None) -> str:
    return (
        f"Rejected during department approval. Department: {department_name or 'Unknown Department'}. "
        f"Comments: {comments or 'N/A'}"
    )


def aggregate_status(step_statuses: Iterable[str], *, has_technical_authority: bool) -> str | None:
    """
    Next record status after a department step decision, or None if the stage is still open.

    Any rejection rejects the record. When every step is approved the record goes to final
    review if a technical authority is assigned, otherwise it is approved outright.
    """
    statuses = list(step_statuses)
    if any(st == STEP_REJECTED for st in statuses):
        return REJECTED
    if statuses and all(st == STEP_APPROVED for st in statuses):
        return PENDING_FINAL_REVIEW if has_technical_authority else APPROVED
    return None
