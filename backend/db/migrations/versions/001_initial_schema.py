"""
Initial schema - rank assessment & promotion tables

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # 1. Manager ranges
    op.create_table(
        "manager_ranges",
        sa.Column("range_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("range_number", sa.Integer, nullable=False, unique=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("promotion_threshold", sa.Integer, nullable=False, server_default="0"),
        sa.Column("maintenance_threshold", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_by", sa.String(255)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("range_number >= 1", name="ck_manager_range_number"),
        sa.CheckConstraint("promotion_threshold >= 0", name="ck_manager_range_promotion"),
        sa.CheckConstraint("maintenance_threshold >= 0", name="ck_manager_range_maintenance"),
    )

    # 2. Users
    op.create_table(
        "users",
        sa.Column("user_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("member_code", sa.String(50), unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="MEMBER"),
        sa.Column("current_range_number", sa.Integer, sa.ForeignKey("manager_ranges.range_number")),
        sa.Column("membership_status", sa.String(20), nullable=False, server_default="ACTIVE"),
        sa.Column("assessment_exempt_until", sa.DateTime),
        sa.Column("manager_promoted_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("role IN ('MEMBER', 'FP_AIDE', 'MANAGER', 'ADMIN')", name="ck_user_role"),
        sa.CheckConstraint(
            "membership_status IN ('ACTIVE', 'SUSPENDED', 'CANCELED')", name="ck_user_membership_status"
        ),
    )
    op.create_index("ix_users_role_status", "users", ["role", "membership_status"])

    # 3. Monthly sales
    op.create_table(
        "manager_monthly_sales",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("month", sa.String(7), nullable=False),
        sa.Column("sales_amount", sa.Integer, nullable=False, server_default="0"),
        sa.Column("insured_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("recorded_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "month", name="uq_monthly_sales_user_month"),
    )

    # 4. Assessments
    op.create_table(
        "manager_assessments",
        sa.Column("assessment_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("period_year", sa.Integer, nullable=False),
        sa.Column("period_half", sa.Integer, nullable=False),
        sa.Column("period_sales", sa.Integer, nullable=False, server_default="0"),
        sa.Column("range_at_execution", sa.Integer, nullable=False),
        sa.Column("proposed_range_number", sa.Integer, nullable=False),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("range_change_applied", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("executed_by", sa.String(255), nullable=False),
        sa.Column("executed_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("confirmed_by", sa.String(255)),
        sa.Column("confirmed_at", sa.DateTime),
        sa.UniqueConstraint("user_id", "period_year", "period_half", name="uq_assessment_user_period"),
        sa.CheckConstraint("period_half IN (1, 2)", name="ck_assessment_half"),
        sa.CheckConstraint("outcome IN ('PROMOTE', 'MAINTAIN', 'DEMOTE_CANDIDATE')", name="ck_assessment_outcome"),
        sa.CheckConstraint(
            "status IN ('PENDING', 'CONFIRMED', 'DEMOTED', 'EXPIRED')", name="ck_assessment_status"
        ),
    )
    op.create_index("ix_assessments_period_status", "manager_assessments", ["period_year", "period_half", "status"])

    # 5. Range change history
    op.create_table(
        "range_change_history",
        sa.Column("history_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("assessment_id", UUID(as_uuid=True), sa.ForeignKey("manager_assessments.assessment_id")),
        sa.Column("from_range_number", sa.Integer),
        sa.Column("to_range_number", sa.Integer),
        sa.Column("reason", sa.Text),
        sa.Column("changed_by", sa.String(255), nullable=False),
        sa.Column("changed_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_range_history_user", "range_change_history", ["user_id", "changed_at"])

    # 6. Promotion progress
    op.create_table(
        "promotion_progress",
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.user_id"), primary_key=True),
        sa.Column("test_passed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("lp_meeting_completed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("survey_completed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("id_document_submitted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("contract_achieved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("compensation_average", sa.Integer),
        sa.Column("member_referrals", sa.Integer),
        sa.Column("fp_referrals", sa.Integer),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )

    # 7. Promotion applications
    op.create_table(
        "promotion_applications",
        sa.Column("application_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("target_role", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("applied_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("approved_at", sa.DateTime),
        sa.Column("approved_by", sa.String(255)),
        sa.Column("rejected_at", sa.DateTime),
        sa.Column("rejected_by", sa.String(255)),
        sa.Column("rejection_reason", sa.Text),
        sa.Column("completed_at", sa.DateTime),
        sa.CheckConstraint("target_role IN ('FP_AIDE', 'MANAGER')", name="ck_application_target_role"),
        sa.CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED', 'COMPLETED')", name="ck_application_status"
        ),
    )
    op.create_index(
        "ix_applications_user_target_status", "promotion_applications", ["user_id", "target_role", "status"]
    )
    op.create_index(
        "uq_applications_in_flight",
        "promotion_applications",
        ["user_id", "target_role"],
        unique=True,
        postgresql_where=sa.text("status IN ('PENDING', 'APPROVED')"),
    )

    # 8. Role change history
    op.create_table(
        "role_change_history",
        sa.Column("history_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.user_id"), nullable=False),
        sa.Column("application_id", UUID(as_uuid=True), sa.ForeignKey("promotion_applications.application_id")),
        sa.Column("from_role", sa.String(20), nullable=False),
        sa.Column("to_role", sa.String(20), nullable=False),
        sa.Column("reason", sa.Text),
        sa.Column("changed_by", sa.String(255), nullable=False),
        sa.Column("changed_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("role_change_history")
    op.drop_index("uq_applications_in_flight", table_name="promotion_applications")
    op.drop_index("ix_applications_user_target_status", table_name="promotion_applications")
    op.drop_table("promotion_applications")
    op.drop_table("promotion_progress")
    op.drop_index("ix_range_history_user", table_name="range_change_history")
    op.drop_table("range_change_history")
    op.drop_index("ix_assessments_period_status", table_name="manager_assessments")
    op.drop_table("manager_assessments")
    op.drop_table("manager_monthly_sales")
    op.drop_index("ix_users_role_status", table_name="users")
    op.drop_table("users")
    op.drop_table("manager_ranges")
