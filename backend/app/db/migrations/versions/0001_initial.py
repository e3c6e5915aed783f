"""Initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""
from typing import Sequence, Union
import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("role", sa.String(50), nullable=False, server_default="employee"),
        sa.Column("status", sa.String(50), nullable=False, server_default="active"),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "projects",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("lead_user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("manager_user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("lead_review_required", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("manager_review_required", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["lead_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["manager_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "timesheets",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("week_start", sa.Date, nullable=False),
        sa.Column("week_end", sa.Date, nullable=False),
        sa.Column("status", sa.String(50), nullable=False, server_default="draft"),
        sa.Column("is_frozen", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("total_hours", sa.Float, nullable=False, server_default="0"),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("manager_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("frozen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("frozen_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("billed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billed_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("rejection_reason", sa.Text, nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("is_hard_deleted", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["frozen_by"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["billed_by"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["rejected_by"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["deleted_by"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_timesheets_user_id", "timesheets", ["user_id"])
    op.create_index("ix_timesheets_week", "timesheets", ["week_start", "week_end"])
    op.create_index("ix_timesheets_status", "timesheets", ["status"])
    op.create_index(
        "uq_timesheet_user_week_active", "timesheets", ["user_id", "week_start"],
        unique=True, postgresql_where=sa.text("is_deleted = false"),
    )

    op.create_table(
        "time_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("timesheet_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("task_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("work_date", sa.Date, nullable=False),
        sa.Column("hours", sa.Float, nullable=False),
        sa.Column("is_billable", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["timesheet_id"], ["timesheets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="RESTRICT"),
        sa.CheckConstraint("hours >= 0 AND hours <= 24", name="ck_time_entry_hours"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_time_entries_timesheet_id", "time_entries", ["timesheet_id"])
    op.create_index("ix_time_entries_user_id", "time_entries", ["user_id"])
    op.create_index("ix_time_entries_project_id", "time_entries", ["project_id"])
    op.create_index("ix_time_entries_project_date", "time_entries", ["project_id", "work_date"])

    op.create_table(
        "approval_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("timesheet_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("lead_status", sa.String(20), nullable=False, server_default="not_required"),
        sa.Column("lead_decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lead_decided_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("lead_reason", sa.Text, nullable=True),
        sa.Column("manager_status", sa.String(20), nullable=False, server_default="not_required"),
        sa.Column("manager_decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("manager_decided_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("manager_reason", sa.Text, nullable=True),
        sa.Column("management_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("management_decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("management_decided_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("management_reason", sa.Text, nullable=True),
        sa.Column("worked_hours", sa.Float, nullable=False, server_default="0"),
        sa.Column("billable_hours", sa.Float, nullable=False, server_default="0"),
        sa.Column("is_current", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("superseded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("superseded_by_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["timesheet_id"], ["timesheets.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["superseded_by_id"], ["approval_records.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_approval_records_timesheet_id", "approval_records", ["timesheet_id"])
    op.create_index("ix_approval_records_project_id", "approval_records", ["project_id"])
    op.create_index("ix_approval_records_user_id", "approval_records", ["user_id"])
    op.create_index("ix_approval_records_management", "approval_records", ["management_status", "is_current"])
    # One live record per (timesheet, project); superseded history is unconstrained
    op.create_index(
        "uq_approval_record_current", "approval_records", ["timesheet_id", "project_id"],
        unique=True, postgresql_where=sa.text("is_current = true"),
    )

    op.create_table(
        "billing_adjustments",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("project_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("billing_period_start", sa.Date, nullable=False),
        sa.Column("billing_period_end", sa.Date, nullable=False),
        sa.Column("total_worked_hours", sa.Float, nullable=False, server_default="0"),
        sa.Column("adjustment_hours", sa.Float, nullable=False, server_default="0"),
        sa.Column("total_billable_hours", sa.Float, nullable=False, server_default="0"),
        sa.Column("original_billable_hours", sa.Float, nullable=False, server_default="0"),
        sa.Column("adjusted_billable_hours", sa.Float, nullable=False, server_default="0"),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("adjusted_by", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("adjusted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("supersedes_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["adjusted_by"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["deleted_by"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["supersedes_id"], ["billing_adjustments.id"], ondelete="SET NULL"),
        sa.CheckConstraint("billing_period_start <= billing_period_end", name="ck_billing_adjustment_period"),
        sa.CheckConstraint("total_billable_hours >= 0", name="ck_billing_adjustment_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_billing_adjustments_user_id", "billing_adjustments", ["user_id"])
    op.create_index("ix_billing_adjustments_project_id", "billing_adjustments", ["project_id"])
    op.create_index("ix_billing_adjustments_period", "billing_adjustments", ["billing_period_start", "billing_period_end"])
    # Uniqueness over active rows only: deleted/superseded rows never block a new adjustment
    op.create_index(
        "uq_billing_adjustment_scope_active", "billing_adjustments",
        ["user_id", "project_id", "billing_period_start", "billing_period_end"],
        unique=True, postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "billing_adjustment_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("adjustment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("status_before", sa.String(20), nullable=True),
        sa.Column("status_after", sa.String(20), nullable=False),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["adjustment_id"], ["billing_adjustments.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_billing_adjustment_events_adjustment_id", "billing_adjustment_events", ["adjustment_id"])

    op.create_table(
        "audit_log",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("resource_type", sa.String(100), nullable=False),
        sa.Column("resource_id", sa.String(255), nullable=True),
        sa.Column("status_before", sa.String(50), nullable=True),
        sa.Column("status_after", sa.String(50), nullable=True),
        sa.Column("detail", postgresql.JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_log_actor_id", "audit_log", ["actor_id"])
    op.create_index("ix_audit_log_resource", "audit_log", ["resource_type", "resource_id"])


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("billing_adjustment_events")
    op.drop_table("billing_adjustments")
    op.drop_table("approval_records")
    op.drop_table("time_entries")
    op.drop_table("timesheets")
    op.drop_table("projects")
    op.drop_table("users")
