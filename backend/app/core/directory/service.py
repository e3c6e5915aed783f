"""
Collaborator interfaces consumed by the billing core.

The core never writes users or projects; it asks the directories for review
policy and attribution only.
"""
import uuid
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.directory.models import Project, User
from app.core.errors import PermissionDenied
from app.settings import get_settings

LEAD = "lead"
MANAGER = "manager"
MANAGEMENT = "management"
TIERS = (LEAD, MANAGER, MANAGEMENT)


@dataclass(frozen=True)
class Actor:
    user_id: uuid.UUID
    full_name: str | None
    role: str


@dataclass(frozen=True)
class ReviewPolicy:
    project_id: uuid.UUID
    name: str
    lead_required: bool
    manager_required: bool
    lead_user_id: uuid.UUID | None = None
    manager_user_id: uuid.UUID | None = None

    @property
    def terminal_tier(self) -> str | None:
        """Last pre-management tier that must approve, or None if neither is required."""
        if self.manager_required:
            return MANAGER
        if self.lead_required:
            return LEAD
        return None

    def reviewer_for(self, tier: str) -> uuid.UUID | None:
        if tier == LEAD:
            return self.lead_user_id
        if tier == MANAGER:
            return self.manager_user_id
        return None


class UserDirectory(Protocol):
    async def get_actor(self, user_id: uuid.UUID) -> Actor | None: ...


class ProjectDirectory(Protocol):
    async def get_policy(self, project_id: uuid.UUID) -> ReviewPolicy | None: ...


class SqlUserDirectory:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_actor(self, user_id: uuid.UUID) -> Actor | None:
        result = await self.db.execute(
            select(User).where(User.id == user_id, User.is_deleted == False)
        )
        user = result.scalar_one_or_none()
        if not user or user.status != "active":
            return None
        return Actor(user_id=user.id, full_name=user.full_name, role=user.role)


class SqlProjectDirectory:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_policy(self, project_id: uuid.UUID) -> ReviewPolicy | None:
        result = await self.db.execute(
            select(Project).where(Project.id == project_id, Project.is_deleted == False)
        )
        project = result.scalar_one_or_none()
        if not project:
            return None
        return ReviewPolicy(
            project_id=project.id,
            name=project.name,
            lead_required=project.lead_review_required,
            manager_required=project.manager_review_required,
            lead_user_id=project.lead_user_id,
            manager_user_id=project.manager_user_id,
        )


def is_management(actor: Actor) -> bool:
    return actor.role in get_settings().management_roles


def is_override(actor: Actor) -> bool:
    return actor.role in get_settings().override_roles


def require_management(actor: Actor, action: str) -> None:
    if not is_management(actor):
        raise PermissionDenied(f"Management role required to {action}", actor_id=actor.user_id, role=actor.role)


def require_override(actor: Actor, action: str) -> None:
    if not is_override(actor):
        raise PermissionDenied(f"Override role required to {action}", actor_id=actor.user_id, role=actor.role)
