from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.moc.models import Base


class RfcRecord(Base):
    """Request for Change (MOC). Owns its status and its ordered department approval steps."""

    __tablename__ = "moc_requests"
    __table_args__ = (
        Index("idx_moc_requests_status", "status"),
        Index("idx_moc_requests_submitter", "submitter_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    moc_id_string: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # e.g. "MOC-482913"

    # draft -> pending_department_approval -> pending_final_review -> approved -> in_progress -> completed
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    # People
    submitter_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    assigned_to_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    technical_authority_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    additional_approver_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    viewer_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)

    # Departments
    requested_by_department_id: Mapped[int | None] = mapped_column(
        ForeignKey("departments.id", ondelete="RESTRICT"),
        nullable=True,
    )
    departments_affected: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)

    # Change description
    reason_for_change: Mapped[str | None] = mapped_column(Text, nullable=True)
    change_type: Mapped[str | None] = mapped_column(String(16), nullable=True)  # temporary, permanent, emergency
    change_category: Mapped[str | None] = mapped_column(String(128), nullable=True)
    change_category_other: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Risk
    risk_assessment_required: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    impact_assessment: Mapped[str | None] = mapped_column(Text, nullable=True)
    hse_impact_assessment: Mapped[str | None] = mapped_column(Text, nullable=True)
    risk_evaluation: Mapped[str | None] = mapped_column(Text, nullable=True)
    risk_level_pre_mitigation: Mapped[str | None] = mapped_column(String(16), nullable=True)  # low, medium, high
    risk_matrix_pre_mitigation: Mapped[str | None] = mapped_column(Text, nullable=True)
    risk_level_post_mitigation: Mapped[str | None] = mapped_column(String(16), nullable=True)
    risk_matrix_post_mitigation: Mapped[str | None] = mapped_column(Text, nullable=True)
    pre_change_condition: Mapped[str | None] = mapped_column(Text, nullable=True)
    post_change_condition: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Supporting info / training
    supporting_documents_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    stakeholder_review_approvals_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    training_required: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    training_details: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Schedule / closeout
    start_date_of_change: Mapped[date | None] = mapped_column(Date, nullable=True)
    expected_completion_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    deadline: Mapped[date | None] = mapped_column(Date, nullable=True)
    implementation_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    verification_of_completion_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    post_implementation_review_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    closeout_approved_by_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Review (final review or department-stage outcome)
    reviewer_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    review_comments: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    date_raised: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    # Bumped on every write; concurrent writers of the same record fail with StaleDataError.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    department_approvals: Mapped[list["DepartmentApproval"]] = relationship(
        "DepartmentApproval",
        back_populates="record",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="DepartmentApproval.position",
    )

    attachments: Mapped[list["RfcAttachment"]] = relationship(
        "RfcAttachment",
        back_populates="record",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def approval_for(self, department_id: int) -> "DepartmentApproval | None":
        for step in self.department_approvals:
            if step.department_id == department_id:
                return step
        return None


class DepartmentApproval(Base):
    __tablename__ = "moc_department_approvals"
    __table_args__ = (
        UniqueConstraint("rfc_id", "department_id", name="uq_moc_department_approval"),
        Index("idx_moc_department_approvals_department", "department_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    rfc_id: Mapped[int] = mapped_column(ForeignKey("moc_requests.id", ondelete="CASCADE"), nullable=False)
    department_id: Mapped[int] = mapped_column(ForeignKey("departments.id", ondelete="RESTRICT"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")  # pending, approved, rejected
    approver_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)

    record: Mapped[RfcRecord] = relationship("RfcRecord", back_populates="department_approvals", lazy="selectin")


class RfcAttachment(Base):
    __tablename__ = "moc_attachments"
    __table_args__ = (
        Index("idx_moc_attachments_rfc", "rfc_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    rfc_id: Mapped[int] = mapped_column(ForeignKey("moc_requests.id", ondelete="CASCADE"), nullable=False)

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False, default="application/octet-stream")
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)

    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    uploaded_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    record: Mapped[RfcRecord] = relationship("RfcRecord", back_populates="attachments", lazy="selectin")


class EditHistory(Base):
    """Latest edit per (editor, record); a newer edit by the same editor replaces the row."""

    __tablename__ = "edit_history"
    __table_args__ = (
        UniqueConstraint("rfc_id", "edited_by_id", name="uq_edit_history_rfc_editor"),
        Index("idx_edit_history_rfc", "rfc_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    rfc_id: Mapped[int] = mapped_column(ForeignKey("moc_requests.id", ondelete="CASCADE"), nullable=False)
    edited_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    edited_by_name: Mapped[str] = mapped_column(String(320), nullable=False)

    edited_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    changes_description: Mapped[str] = mapped_column(String(512), nullable=False)
    field_changes: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
