import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.audit.models import AuditLog

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    actor_id: uuid.UUID | None
    action: str
    resource_type: str
    resource_id: str | None
    status_before: str | None = None
    status_after: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink(Protocol):
    async def deliver(self, event: AuditEvent) -> None: ...


class DbAuditSink:
    """Writes events to audit_log inside a savepoint so a failed write cannot poison the caller's transaction."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def deliver(self, event: AuditEvent) -> None:
        async with self.db.begin_nested():
            self.db.add(AuditLog(
                actor_id=event.actor_id,
                action=event.action,
                resource_type=event.resource_type,
                resource_id=event.resource_id,
                status_before=event.status_before,
                status_after=event.status_after,
                detail=event.detail or None,
                created_at=event.occurred_at,
            ))


async def audit(
    db: AsyncSession,
    *,
    actor_id: uuid.UUID | None,
    action: str,
    resource_type: str,
    resource_id: Any = None,
    status_before: str | None = None,
    status_after: str | None = None,
    detail: dict[str, Any] | None = None,
    sink: AuditSink | None = None,
) -> AuditEvent:
    """
    Emit one audit fact. Delivery is best effort: failures are logged and
    dropped, durability is the sink's concern.
    """
    event = AuditEvent(
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        status_before=status_before,
        status_after=status_after,
        detail=detail or {},
    )
    target = sink or DbAuditSink(db)
    try:
        await target.deliver(event)
    except Exception:
        logger.exception("Audit delivery failed for %s %s/%s", action, resource_type, event.resource_id)
    return event
