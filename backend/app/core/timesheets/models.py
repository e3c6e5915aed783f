import uuid
from datetime import datetime, date

from sqlalchemy import (
    Boolean, DateTime, Date, Float, String, Text,
    ForeignKey, Index, Uuid, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin, SoftDeleteMixin

DRAFT = "draft"
SUBMITTED = "submitted"
MANAGER_APPROVED = "manager_approved"
MANAGEMENT_PENDING = "management_pending"
FROZEN = "frozen"
BILLED = "billed"
REJECTED = "rejected"

TIMESHEET_STATUSES = (DRAFT, SUBMITTED, MANAGER_APPROVED, MANAGEMENT_PENDING, FROZEN, BILLED, REJECTED)
EDITABLE_STATUSES = {DRAFT, REJECTED}
IN_REVIEW_STATUSES = {SUBMITTED, MANAGER_APPROVED, MANAGEMENT_PENDING}
# Past submission: every project in the entries must have a current approval record
REVIEWED_STATUSES = (SUBMITTED, MANAGER_APPROVED, MANAGEMENT_PENDING, FROZEN, BILLED)
# Hours on these timesheets count once their project clears management review
BILLABLE_STATUSES = (MANAGEMENT_PENDING, FROZEN, BILLED)


class Timesheet(Base, TimestampMixin, SoftDeleteMixin):
    """
    One timesheet per user per UTC week (Monday .. Sunday).
    status: draft → submitted → manager_approved → management_pending → frozen → billed
    rejected is reachable from any review status and goes back to draft for correction.
    Row-level locked on all transitions.
    """
    __tablename__ = "timesheets"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    week_start: Mapped[date] = mapped_column(Date, nullable=False)
    week_end: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=DRAFT)
    is_frozen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    total_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    manager_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    frozen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    frozen_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    billed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    billed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    is_hard_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    entries: Mapped[list["TimeEntry"]] = relationship(back_populates="timesheet", lazy="noload")
    __table_args__ = (
        Index(
            "uq_timesheet_user_week_active", "user_id", "week_start",
            unique=True,
            postgresql_where=text("is_deleted = false"),
            sqlite_where=text("is_deleted = 0"),
        ),
        Index("ix_timesheets_week", "week_start", "week_end"),
        Index("ix_timesheets_status", "status"),
    )


class TimeEntry(Base, TimestampMixin, SoftDeleteMixin):
    """
    Hours worked by the timesheet owner on one project for one UTC date.
    Mutable only while the parent timesheet is draft or rejected.
    """
    __tablename__ = "time_entries"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    timesheet_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("timesheets.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False, index=True)
    task_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    work_date: Mapped[date] = mapped_column(Date, nullable=False)
    hours: Mapped[float] = mapped_column(Float, nullable=False)
    is_billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    timesheet: Mapped["Timesheet"] = relationship(back_populates="entries")
    __table_args__ = (
        Index("ix_time_entries_project_date", "project_id", "work_date"),
    )
