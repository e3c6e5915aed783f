import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, Float, Integer, String, Text,
    ForeignKey, Index, Uuid, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin

NOT_REQUIRED = "not_required"
PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"

TIER_STATUSES = (NOT_REQUIRED, PENDING, APPROVED, REJECTED)

APPROVE = "approve"
REJECT = "reject"


class ApprovalRecord(Base, TimestampMixin):
    """
    Per (timesheet, project) review ledger with three independent tiers.
    Each tier moves forward only: pending → approved | rejected.
    not_required never moves.
    A resubmission supersedes the current record (is_current=False) and
    creates a new one; records are never deleted.
    version is checked on every flush (optimistic concurrency).
    """
    __tablename__ = "approval_records"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    timesheet_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("timesheets.id", ondelete="RESTRICT"), nullable=False, index=True)
    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    lead_status: Mapped[str] = mapped_column(String(20), nullable=False, default=NOT_REQUIRED)
    lead_decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lead_decided_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    lead_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    manager_status: Mapped[str] = mapped_column(String(20), nullable=False, default=NOT_REQUIRED)
    manager_decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    manager_decided_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    manager_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    management_status: Mapped[str] = mapped_column(String(20), nullable=False, default=PENDING)
    management_decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    management_decided_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    management_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Snapshot at submission time
    worked_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    billable_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0)

    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    superseded_by_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("approval_records.id", ondelete="SET NULL"), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index(
            "uq_approval_record_current", "timesheet_id", "project_id",
            unique=True,
            postgresql_where=text("is_current = true"),
            sqlite_where=text("is_current = 1"),
        ),
        Index("ix_approval_records_management", "management_status", "is_current"),
    )

    def tier_status(self, tier: str) -> str:
        return getattr(self, f"{tier}_status")

    @property
    def any_rejected(self) -> bool:
        return REJECTED in (self.lead_status, self.manager_status, self.management_status)
