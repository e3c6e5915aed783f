import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, date, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.adjustments.models import (
    BillingAdjustment, BillingAdjustmentEvent, ACTIVE, DELETED, SUPERSEDED,
)
from app.core.audit.service import audit
from app.core.billing.service import (
    BillingFlag, aggregate_billing, MISSING_APPROVAL_RECORD,
)
from app.core.dates import require_period
from app.core.directory.service import Actor, require_management
from app.core.errors import (
    ConflictError, IntegrityFault, MissingApprovalRecord, NotFound,
    StateConflict, ValidationError,
)
from app.db.guards import flush_guarded, guarded

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _scope(user_id, project_id, start, end) -> dict:
    return {
        "user_id": user_id,
        "project_id": project_id,
        "billing_period_start": start,
        "billing_period_end": end,
    }


# ── Reads ─────────────────────────────────────────────────────────────────────

async def get_adjustment(db: AsyncSession, adjustment_id: uuid.UUID, lock: bool = False) -> BillingAdjustment | None:
    q = select(BillingAdjustment).where(BillingAdjustment.id == adjustment_id)
    if lock:
        q = q.with_for_update()
    result = await db.execute(q)
    return result.scalar_one_or_none()


async def find_active_adjustment(
    db: AsyncSession,
    user_id: uuid.UUID,
    project_id: uuid.UUID,
    start: date,
    end: date,
) -> BillingAdjustment | None:
    """Exact scope-key match only. Overlapping periods are different keys."""
    result = await db.execute(
        select(BillingAdjustment).where(
            BillingAdjustment.user_id == user_id,
            BillingAdjustment.project_id == project_id,
            BillingAdjustment.billing_period_start == start,
            BillingAdjustment.billing_period_end == end,
            BillingAdjustment.status == ACTIVE,
        )
    )
    return result.scalar_one_or_none()


async def list_adjustments(
    db: AsyncSession,
    user_id: uuid.UUID | None = None,
    project_id: uuid.UUID | None = None,
    start: date | None = None,
    end: date | None = None,
    include_deleted: bool = False,
) -> list[BillingAdjustment]:
    q = select(BillingAdjustment)
    if not include_deleted:
        q = q.where(BillingAdjustment.status == ACTIVE)
    if user_id:
        q = q.where(BillingAdjustment.user_id == user_id)
    if project_id:
        q = q.where(BillingAdjustment.project_id == project_id)
    if start:
        q = q.where(BillingAdjustment.billing_period_end >= start)
    if end:
        q = q.where(BillingAdjustment.billing_period_start <= end)
    q = q.order_by(BillingAdjustment.billing_period_start, BillingAdjustment.adjusted_at)
    result = await db.execute(q)
    return list(result.scalars().all())


async def adjustment_history(db: AsyncSession, adjustment_id: uuid.UUID) -> list[BillingAdjustmentEvent]:
    if not await get_adjustment(db, adjustment_id):
        raise NotFound("BillingAdjustment", adjustment_id)
    result = await db.execute(
        select(BillingAdjustmentEvent)
        .where(BillingAdjustmentEvent.adjustment_id == adjustment_id)
        .order_by(BillingAdjustmentEvent.occurred_at, BillingAdjustmentEvent.id)
    )
    return list(result.scalars().all())


# ── Lifecycle log ─────────────────────────────────────────────────────────────

async def _record_event(
    db: AsyncSession,
    adjustment: BillingAdjustment,
    action: str,
    status_before: str | None,
    actor: Actor,
    reason: str | None,
) -> None:
    db.add(BillingAdjustmentEvent(
        adjustment_id=adjustment.id,
        action=action,
        status_before=status_before,
        status_after=adjustment.status,
        actor_id=actor.user_id,
        reason=reason,
        occurred_at=_now(),
    ))
    await db.flush()
    await audit(db, actor_id=actor.user_id,
        action=f"adjustment.{action}", resource_type="billing_adjustment",
        resource_id=adjustment.id, status_before=status_before, status_after=adjustment.status,
        detail={
            "user_id": str(adjustment.user_id),
            "project_id": str(adjustment.project_id),
            "billing_period_start": str(adjustment.billing_period_start),
            "billing_period_end": str(adjustment.billing_period_end),
            "adjustment_hours": adjustment.adjustment_hours,
            "total_billable_hours": adjustment.total_billable_hours,
            "reason": reason,
        },
    )
    logger.info(
        "Adjustment %s %s by %s (%s → %s)",
        adjustment.id, action, actor.user_id, status_before, adjustment.status,
    )


def _raise_for_flags(flags: list[BillingFlag], project_id: uuid.UUID) -> None:
    """The baseline must be trustworthy before anything is layered on it."""
    for flag in flags:
        if flag.reason == MISSING_APPROVAL_RECORD:
            raise MissingApprovalRecord(flag.timesheet_id, [project_id])
    for flag in flags:
        raise IntegrityFault(flag.message, timesheet_id=flag.timesheet_id)


def _conflict(user_id, project_id, start, end, existing_id=None) -> ConflictError:
    return ConflictError(
        f"An active adjustment already exists for user {user_id}, project {project_id}, "
        f"period {start}..{end}",
        existing_adjustment_id=existing_id,
        **_scope(user_id, project_id, start, end),
    )


async def _build_adjustment(
    db: AsyncSession,
    actor: Actor,
    user_id: uuid.UUID,
    project_id: uuid.UUID,
    start: date,
    end: date,
    adjustment_hours: float,
    reason: str,
) -> BillingAdjustment:
    aggregate = await aggregate_billing(db, start, end, user_id=user_id, project_id=project_id)
    _raise_for_flags(aggregate.flags_for(user_id, project_id), project_id)
    row = aggregate.get(user_id, project_id)
    worked = row.worked_hours if row else 0.0
    billable = row.billable_hours if row else 0.0
    total = round(max(0.0, worked + adjustment_hours), 2)
    return BillingAdjustment(
        id=uuid.uuid4(),
        user_id=user_id,
        project_id=project_id,
        billing_period_start=start,
        billing_period_end=end,
        total_worked_hours=worked,
        adjustment_hours=adjustment_hours,
        total_billable_hours=total,
        original_billable_hours=billable,
        adjusted_billable_hours=total,
        reason=reason,
        adjusted_by=actor.user_id,
        adjusted_at=_now(),
        status=ACTIVE,
    )


def _validate(adjustment_hours: float, reason: str | None) -> None:
    if adjustment_hours is None or not math.isfinite(adjustment_hours):
        raise ValidationError("adjustment_hours must be a finite number", "adjustment_hours")
    if not (reason and reason.strip()):
        raise ValidationError("A reason is required for a billing adjustment", "reason")


# ── Mutations ─────────────────────────────────────────────────────────────────

async def create_adjustment(
    db: AsyncSession,
    actor: Actor,
    user_id: uuid.UUID,
    project_id: uuid.UUID,
    start: date,
    end: date,
    adjustment_hours: float,
    reason: str,
) -> BillingAdjustment:
    """
    Not an upsert: an active adjustment for the same scope key is a conflict
    and has to be superseded explicitly.
    """
    require_management(actor, "create billing adjustments")
    require_period(start, end)
    _validate(adjustment_hours, reason)

    existing = await find_active_adjustment(db, user_id, project_id, start, end)
    if existing:
        raise _conflict(user_id, project_id, start, end, existing.id)

    adjustment = await _build_adjustment(db, actor, user_id, project_id, start, end, adjustment_hours, reason)
    # A concurrent writer that passed the check above loses on the partial index
    await flush_guarded(
        db, str(_conflict(user_id, project_id, start, end)), adjustment,
        **_scope(user_id, project_id, start, end),
    )
    await _record_event(db, adjustment, "created", None, actor, reason)
    return adjustment


async def supersede_adjustment(
    db: AsyncSession,
    actor: Actor,
    adjustment_id: uuid.UUID,
    adjustment_hours: float,
    reason: str,
) -> BillingAdjustment:
    """Retire the active adjustment and put a new one in its place; both or neither."""
    require_management(actor, "supersede billing adjustments")
    _validate(adjustment_hours, reason)
    old = await get_adjustment(db, adjustment_id, lock=True)
    if not old:
        raise NotFound("BillingAdjustment", adjustment_id)
    if not old.is_active:
        raise StateConflict(
            f"Only an active adjustment can be superseded. Current status: '{old.status}'",
            blocking=[{"adjustment_id": old.id, "status": old.status}],
        )

    replacement = await _build_adjustment(
        db, actor, old.user_id, old.project_id,
        old.billing_period_start, old.billing_period_end, adjustment_hours, reason,
    )
    replacement.supersedes_id = old.id

    message = f"Adjustment {old.id} changed concurrently"
    async with guarded(db, message, adjustment_id=old.id):
        old.status = SUPERSEDED
        old.deleted_at = _now()
        old.deleted_by = actor.user_id
        await db.flush()
        db.add(replacement)

    await _record_event(db, old, "superseded", ACTIVE, actor, reason)
    await _record_event(db, replacement, "created", None, actor, reason)
    return replacement


async def soft_delete_adjustment(
    db: AsyncSession,
    actor: Actor,
    adjustment_id: uuid.UUID,
    reason: str | None = None,
) -> BillingAdjustment:
    require_management(actor, "delete billing adjustments")
    adjustment = await get_adjustment(db, adjustment_id, lock=True)
    if not adjustment:
        raise NotFound("BillingAdjustment", adjustment_id)
    # Idempotent
    if adjustment.status == DELETED:
        return adjustment
    if adjustment.status != ACTIVE:
        raise StateConflict(
            f"Cannot delete adjustment with status '{adjustment.status}'",
            blocking=[{"adjustment_id": adjustment.id, "status": adjustment.status}],
        )

    async with guarded(db, f"Adjustment {adjustment.id} changed concurrently", adjustment_id=adjustment.id):
        adjustment.status = DELETED
        adjustment.deleted_at = _now()
        adjustment.deleted_by = actor.user_id
    await _record_event(db, adjustment, "deleted", ACTIVE, actor, reason)
    return adjustment


async def restore_adjustment(
    db: AsyncSession,
    actor: Actor,
    adjustment_id: uuid.UUID,
    reason: str | None = None,
) -> BillingAdjustment:
    """Back to active, provided nothing else holds the scope key by now."""
    require_management(actor, "restore billing adjustments")
    adjustment = await get_adjustment(db, adjustment_id, lock=True)
    if not adjustment:
        raise NotFound("BillingAdjustment", adjustment_id)
    if adjustment.is_active:
        return adjustment
    # A superseded row lives on only as history of its replacement
    if adjustment.status == SUPERSEDED:
        raise StateConflict(
            "A superseded adjustment cannot be restored",
            blocking=[{"adjustment_id": adjustment.id, "status": adjustment.status}],
        )

    user_id, project_id, start, end = adjustment.scope_key
    occupant = await find_active_adjustment(db, user_id, project_id, start, end)
    if occupant:
        raise _conflict(user_id, project_id, start, end, occupant.id)

    before = adjustment.status
    async with guarded(
        db, str(_conflict(user_id, project_id, start, end)),
        adjustment_id=adjustment.id, **_scope(user_id, project_id, start, end),
    ):
        adjustment.status = ACTIVE
        adjustment.deleted_at = None
        adjustment.deleted_by = None
    await _record_event(db, adjustment, "restored", before, actor, reason)
    return adjustment


# ── Effective hours ───────────────────────────────────────────────────────────

@dataclass
class EffectiveBillable:
    user_id: uuid.UUID
    project_id: uuid.UUID
    start: date
    end: date
    hours: float
    source: str  # "adjustment" | "aggregation"
    worked_hours: float
    unadjusted_billable_hours: float
    adjustment_id: uuid.UUID | None = None
    flags: list[BillingFlag] = field(default_factory=list)


async def effective_billable_hours(
    db: AsyncSession,
    user_id: uuid.UUID,
    project_id: uuid.UUID,
    start: date,
    end: date,
) -> EffectiveBillable:
    """
    The adjusted total when an active adjustment matches the scope key exactly,
    else the aggregated billable hours. Never a blend of the two.
    """
    require_period(start, end)
    aggregate = await aggregate_billing(db, start, end, user_id=user_id, project_id=project_id)
    row = aggregate.get(user_id, project_id)
    worked = row.worked_hours if row else 0.0
    billable = row.billable_hours if row else 0.0
    flags = aggregate.flags_for(user_id, project_id)

    adjustment = await find_active_adjustment(db, user_id, project_id, start, end)
    if adjustment:
        return EffectiveBillable(
            user_id=user_id, project_id=project_id, start=start, end=end,
            hours=adjustment.total_billable_hours, source="adjustment",
            worked_hours=worked, unadjusted_billable_hours=billable,
            adjustment_id=adjustment.id, flags=flags,
        )
    return EffectiveBillable(
        user_id=user_id, project_id=project_id, start=start, end=end,
        hours=billable, source="aggregation",
        worked_hours=worked, unadjusted_billable_hours=billable,
        flags=flags,
    )
