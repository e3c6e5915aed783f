import uuid
from datetime import datetime, date

from sqlalchemy import (
    Date, DateTime, Float, String, Text,
    ForeignKey, Index, Uuid, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin

ACTIVE = "active"
DELETED = "deleted"
SUPERSEDED = "superseded"


class BillingAdjustment(Base, TimestampMixin):
    """
    Manual correction of the billable total for one exact scope key
    (user, project, billing_period_start, billing_period_end).

    total_billable_hours = max(0, total_worked_hours + adjustment_hours)
    At most one row per scope key may be 'active'; deleted and superseded rows
    never block a new active one (partial unique index).
    """
    __tablename__ = "billing_adjustments"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False, index=True)
    billing_period_start: Mapped[date] = mapped_column(Date, nullable=False)
    billing_period_end: Mapped[date] = mapped_column(Date, nullable=False)
    total_worked_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    adjustment_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    total_billable_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    original_billable_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    adjusted_billable_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    adjusted_by: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    adjusted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ACTIVE)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    supersedes_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("billing_adjustments.id", ondelete="SET NULL"), nullable=True)
    __table_args__ = (
        Index(
            "uq_billing_adjustment_scope_active",
            "user_id", "project_id", "billing_period_start", "billing_period_end",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_billing_adjustments_period", "billing_period_start", "billing_period_end"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE

    @property
    def scope_key(self) -> tuple[uuid.UUID, uuid.UUID, date, date]:
        return (self.user_id, self.project_id, self.billing_period_start, self.billing_period_end)


class BillingAdjustmentEvent(Base):
    """Append-only lifecycle log: created | deleted | restored | superseded."""
    __tablename__ = "billing_adjustment_events"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    adjustment_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("billing_adjustments.id", ondelete="CASCADE"), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    status_before: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status_after: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
