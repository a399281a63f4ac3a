"""Initial MOC schema: auth/RBAC, audit, departments, RFC workflow, notifications.

Revision ID: a0c1e2f3d4b5
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a0c1e2f3d4b5"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "departments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("approver_user_ids", sa.JSON(), nullable=False),
        sa.Column("approver_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("key"),
    )

    op.create_table(
        "permissions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(128), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("key"),
    )

    op.create_table(
        "user_roles",
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("role_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("user_id", "role_id"),
    )

    op.create_table(
        "role_permissions",
        sa.Column("role_id", sa.Integer(), nullable=False),
        sa.Column("permission_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("role_id", "permission_id"),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("client_ip", sa.String(64), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("actor_user_email", sa.String(320), nullable=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(128), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("reason", sa.String(512), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_audit_events_entity", "audit_events", ["entity_type", "entity_id"])

    op.create_table(
        "moc_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("moc_id_string", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="draft"),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("submitter_id", sa.Integer(), nullable=False),
        sa.Column("assigned_to_id", sa.Integer(), nullable=True),
        sa.Column("technical_authority_id", sa.Integer(), nullable=True),
        sa.Column("additional_approver_ids", sa.JSON(), nullable=False),
        sa.Column("viewer_ids", sa.JSON(), nullable=False),
        sa.Column("requested_by_department_id", sa.Integer(), nullable=True),
        sa.Column("departments_affected", sa.JSON(), nullable=False),
        sa.Column("reason_for_change", sa.Text(), nullable=True),
        sa.Column("change_type", sa.String(16), nullable=True),
        sa.Column("change_category", sa.String(128), nullable=True),
        sa.Column("change_category_other", sa.String(255), nullable=True),
        sa.Column("risk_assessment_required", sa.Boolean(), nullable=True),
        sa.Column("impact_assessment", sa.Text(), nullable=True),
        sa.Column("hse_impact_assessment", sa.Text(), nullable=True),
        sa.Column("risk_evaluation", sa.Text(), nullable=True),
        sa.Column("risk_level_pre_mitigation", sa.String(16), nullable=True),
        sa.Column("risk_matrix_pre_mitigation", sa.Text(), nullable=True),
        sa.Column("risk_level_post_mitigation", sa.String(16), nullable=True),
        sa.Column("risk_matrix_post_mitigation", sa.Text(), nullable=True),
        sa.Column("pre_change_condition", sa.Text(), nullable=True),
        sa.Column("post_change_condition", sa.Text(), nullable=True),
        sa.Column("supporting_documents_notes", sa.Text(), nullable=True),
        sa.Column("stakeholder_review_approvals_text", sa.Text(), nullable=True),
        sa.Column("training_required", sa.Boolean(), nullable=True),
        sa.Column("training_details", sa.Text(), nullable=True),
        sa.Column("start_date_of_change", sa.Date(), nullable=True),
        sa.Column("expected_completion_date", sa.Date(), nullable=True),
        sa.Column("deadline", sa.Date(), nullable=True),
        sa.Column("implementation_owner", sa.String(255), nullable=True),
        sa.Column("verification_of_completion_text", sa.Text(), nullable=True),
        sa.Column("post_implementation_review_text", sa.Text(), nullable=True),
        sa.Column("closeout_approved_by_text", sa.Text(), nullable=True),
        sa.Column("reviewer_id", sa.Integer(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(), nullable=True),
        sa.Column("review_comments", sa.Text(), nullable=True),
        sa.Column("date_raised", sa.DateTime(), nullable=False),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["submitter_id"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["assigned_to_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["technical_authority_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["reviewer_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["requested_by_department_id"], ["departments.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("moc_id_string"),
    )
    op.create_index("idx_moc_requests_status", "moc_requests", ["status"])
    op.create_index("idx_moc_requests_submitter", "moc_requests", ["submitter_id"])

    op.create_table(
        "moc_department_approvals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("rfc_id", sa.Integer(), nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("approver_id", sa.Integer(), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["rfc_id"], ["moc_requests.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["approver_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("rfc_id", "department_id", name="uq_moc_department_approval"),
    )
    op.create_index("idx_moc_department_approvals_department", "moc_department_approvals", ["department_id"])

    op.create_table(
        "moc_attachments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("rfc_id", sa.Integer(), nullable=False),
        sa.Column("storage_key", sa.String(512), nullable=False),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("content_type", sa.String(128), nullable=False),
        sa.Column("sha256", sa.String(64), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("uploaded_at", sa.DateTime(), nullable=False),
        sa.Column("uploaded_by_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["rfc_id"], ["moc_requests.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["uploaded_by_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_moc_attachments_rfc", "moc_attachments", ["rfc_id"])

    op.create_table(
        "edit_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("rfc_id", sa.Integer(), nullable=False),
        sa.Column("edited_by_id", sa.Integer(), nullable=True),
        sa.Column("edited_by_name", sa.String(320), nullable=False),
        sa.Column("edited_at", sa.DateTime(), nullable=False),
        sa.Column("changes_description", sa.String(512), nullable=False),
        sa.Column("field_changes", sa.JSON(), nullable=False),
        sa.ForeignKeyConstraint(["rfc_id"], ["moc_requests.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["edited_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("rfc_id", "edited_by_id", name="uq_edit_history_rfc_editor"),
    )
    op.create_index("idx_edit_history_rfc", "edit_history", ["rfc_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("rfc_id", sa.Integer(), nullable=True),
        sa.Column("related_title", sa.String(255), nullable=True),
        sa.Column("kind", sa.String(64), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["rfc_id"], ["moc_requests.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_notifications_user", "notifications", ["user_id", "is_read"])
    op.create_index("idx_notifications_rfc", "notifications", ["rfc_id"])


def downgrade() -> None:
    op.drop_index("idx_notifications_rfc", table_name="notifications")
    op.drop_index("idx_notifications_user", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("idx_edit_history_rfc", table_name="edit_history")
    op.drop_table("edit_history")
    op.drop_index("idx_moc_attachments_rfc", table_name="moc_attachments")
    op.drop_table("moc_attachments")
    op.drop_index("idx_moc_department_approvals_department", table_name="moc_department_approvals")
    op.drop_table("moc_department_approvals")
    op.drop_index("idx_moc_requests_submitter", table_name="moc_requests")
    op.drop_index("idx_moc_requests_status", table_name="moc_requests")
    op.drop_table("moc_requests")
    op.drop_index("idx_audit_events_entity", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("role_permissions")
    op.drop_table("user_roles")
    op.drop_table("permissions")
    op.drop_table("roles")
    op.drop_table("users")
    op.drop_table("departments")
