import uuid

from sqlalchemy import Boolean, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin, SoftDeleteMixin


class User(Base, TimestampMixin, SoftDeleteMixin):
    """
    Read-only view of the user directory.
    Owned by the user management collaborator; only used here for attribution
    and to resolve roles (employee, lead, manager, management, super_admin).
    """
    __tablename__ = "users"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="employee")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="active")


class Project(Base, TimestampMixin, SoftDeleteMixin):
    """
    Read-only view of the project directory.
    lead_review_required / manager_review_required decide which approval tiers
    start as 'pending' when a timesheet touching this project is submitted.
    """
    __tablename__ = "projects"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    lead_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    manager_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    lead_review_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    manager_review_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
