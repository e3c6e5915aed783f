import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, date, timezone

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.approvals.models import (
    ApprovalRecord, APPROVED, NOT_REQUIRED, PENDING,
)
from app.core.audit.service import audit
from app.core.dates import require_monday, week_end_of
from app.core.directory.service import (
    Actor, ProjectDirectory, SqlProjectDirectory,
    require_management, require_override,
)
from app.core.errors import (
    ConflictError, MissingApprovalRecord, NotFound,
    PermissionDenied, StateConflict, ValidationError,
)
from app.core.timesheets.models import (
    Timesheet, TimeEntry,
    DRAFT, SUBMITTED, MANAGER_APPROVED, MANAGEMENT_PENDING,
    FROZEN, BILLED, REJECTED,
    EDITABLE_STATUSES, IN_REVIEW_STATUSES, TIMESHEET_STATUSES,
)
from app.core.timesheets.schemas import TimesheetCreate, TimeEntryCreate, TimeEntryUpdate
from app.db.guards import flush_guarded, guarded
from app.settings import get_settings

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Timesheets ────────────────────────────────────────────────────────────────

def _week_end(week_start: date) -> date:
    return week_end_of(week_start)


async def create_timesheet(
    db: AsyncSession,
    actor: Actor,
    data: TimesheetCreate,
) -> Timesheet:
    require_monday(data.week_start)

    existing = await db.execute(
        select(Timesheet.id).where(
            Timesheet.user_id == actor.user_id,
            Timesheet.week_start == data.week_start,
            Timesheet.is_deleted == False,
        )
    )
    if existing.scalar_one_or_none():
        raise ConflictError(
            f"A timesheet for week {data.week_start} already exists",
            retryable=False, user_id=actor.user_id, week_start=data.week_start,
        )

    sheet = Timesheet(
        user_id=actor.user_id,
        week_start=data.week_start,
        week_end=_week_end(data.week_start),
        status=DRAFT,
        is_frozen=False,
        total_hours=0,
    )
    await flush_guarded(
        db, f"A timesheet for week {data.week_start} already exists", sheet,
        retryable=False, user_id=actor.user_id, week_start=data.week_start,
    )

    await audit(db, actor_id=actor.user_id,
        action="timesheet.create", resource_type="timesheet",
        resource_id=sheet.id, status_after=DRAFT,
        detail={"week_start": str(data.week_start)},
    )
    logger.info("Timesheet %s created for user %s week %s", sheet.id, actor.user_id, data.week_start)
    return sheet


async def get_timesheet(db: AsyncSession, timesheet_id: uuid.UUID) -> Timesheet | None:
    result = await db.execute(
        select(Timesheet).where(Timesheet.id == timesheet_id, Timesheet.is_deleted == False)
    )
    return result.scalar_one_or_none()


async def get_timesheet_locked(db: AsyncSession, timesheet_id: uuid.UUID) -> Timesheet | None:
    """Row-level lock for state transitions."""
    result = await db.execute(
        select(Timesheet)
        .where(Timesheet.id == timesheet_id, Timesheet.is_deleted == False)
        .with_for_update()
    )
    return result.scalar_one_or_none()


async def require_timesheet(db: AsyncSession, timesheet_id: uuid.UUID, lock: bool = False) -> Timesheet:
    sheet = await (get_timesheet_locked(db, timesheet_id) if lock else get_timesheet(db, timesheet_id))
    if not sheet:
        raise NotFound("Timesheet", timesheet_id)
    return sheet


async def list_timesheets(
    db: AsyncSession,
    user_id: uuid.UUID | None = None,
    status: str | None = None,
    week_from: date | None = None,
    week_to: date | None = None,
) -> list[Timesheet]:
    q = select(Timesheet).where(Timesheet.is_deleted == False)
    if user_id:
        q = q.where(Timesheet.user_id == user_id)
    if status:
        if status not in TIMESHEET_STATUSES:
            raise ValidationError(f"Unknown timesheet status '{status}'", "status")
        q = q.where(Timesheet.status == status)
    if week_from:
        q = q.where(Timesheet.week_start >= week_from)
    if week_to:
        q = q.where(Timesheet.week_start <= week_to)
    q = q.order_by(Timesheet.week_start.desc())
    result = await db.execute(q)
    return list(result.scalars().all())


def _require_owner(sheet: Timesheet, actor: Actor) -> None:
    if sheet.user_id != actor.user_id:
        raise PermissionDenied("Only the timesheet owner may do this", timesheet_id=sheet.id)


def _require_editable(sheet: Timesheet, action: str) -> None:
    if sheet.status not in EDITABLE_STATUSES:
        raise StateConflict(
            f"Cannot {action} on timesheet with status '{sheet.status}'",
            blocking=[{"timesheet_id": sheet.id, "status": sheet.status}],
        )


# ── Time entries ──────────────────────────────────────────────────────────────

async def list_entries(db: AsyncSession, timesheet_id: uuid.UUID) -> list[TimeEntry]:
    result = await db.execute(
        select(TimeEntry).where(
            TimeEntry.timesheet_id == timesheet_id,
            TimeEntry.is_deleted == False,
        ).order_by(TimeEntry.work_date, TimeEntry.created_at)
    )
    return list(result.scalars().all())


async def get_entry(db: AsyncSession, entry_id: uuid.UUID) -> TimeEntry | None:
    result = await db.execute(
        select(TimeEntry).where(TimeEntry.id == entry_id, TimeEntry.is_deleted == False)
    )
    return result.scalar_one_or_none()


def _validate_hours(
    sheet: Timesheet,
    work_date: date,
    hours: float,
    others: list[TimeEntry],
) -> None:
    """others: live entries of the sheet, excluding the one being written."""
    settings = get_settings()
    if hours < 0:
        raise ValidationError("hours cannot be negative", "hours")
    if hours > settings.MAX_HOURS_PER_ENTRY:
        raise ValidationError(f"hours cannot exceed {settings.MAX_HOURS_PER_ENTRY} per entry", "hours")
    if not (sheet.week_start <= work_date <= sheet.week_end):
        raise ValidationError(
            f"work_date {work_date} is outside timesheet week {sheet.week_start} – {sheet.week_end}",
            "work_date",
        )
    day_total = sum(e.hours for e in others if e.work_date == work_date) + hours
    if day_total > settings.MAX_HOURS_PER_DAY:
        raise ValidationError(
            f"{day_total:g}h on {work_date} exceeds {settings.MAX_HOURS_PER_DAY:g}h per day", "hours",
        )
    week_total = sum(e.hours for e in others) + hours
    if week_total > settings.MAX_HOURS_PER_WEEK:
        raise ValidationError(
            f"{week_total:g}h exceeds {settings.MAX_HOURS_PER_WEEK:g}h per week", "hours",
        )


def _rollup(sheet: Timesheet, entries: list[TimeEntry]) -> None:
    sheet.total_hours = round(sum(e.hours for e in entries), 2)


async def _require_project(db: AsyncSession, project_id: uuid.UUID, projects: ProjectDirectory | None) -> None:
    directory = projects or SqlProjectDirectory(db)
    if await directory.get_policy(project_id) is None:
        raise ValidationError(f"Unknown project {project_id}", "project_id")


async def add_entry(
    db: AsyncSession,
    actor: Actor,
    timesheet_id: uuid.UUID,
    data: TimeEntryCreate,
    projects: ProjectDirectory | None = None,
) -> TimeEntry:
    sheet = await require_timesheet(db, timesheet_id, lock=True)
    _require_owner(sheet, actor)
    _require_editable(sheet, "add entries")
    await _require_project(db, data.project_id, projects)

    others = await list_entries(db, sheet.id)
    _validate_hours(sheet, data.work_date, data.hours, others)

    entry = TimeEntry(
        timesheet_id=sheet.id,
        user_id=sheet.user_id,
        project_id=data.project_id,
        task_id=data.task_id,
        work_date=data.work_date,
        hours=data.hours,
        is_billable=data.is_billable,
        description=data.description,
    )
    db.add(entry)
    _rollup(sheet, others + [entry])
    await db.flush()

    await audit(db, actor_id=actor.user_id,
        action="timeentry.create", resource_type="time_entry",
        resource_id=entry.id,
        detail={"timesheet_id": str(sheet.id), "work_date": str(data.work_date), "hours": data.hours},
    )
    return entry


async def update_entry(
    db: AsyncSession,
    actor: Actor,
    entry_id: uuid.UUID,
    data: TimeEntryUpdate,
    projects: ProjectDirectory | None = None,
) -> TimeEntry:
    entry = await get_entry(db, entry_id)
    if not entry:
        raise NotFound("TimeEntry", entry_id)
    sheet = await require_timesheet(db, entry.timesheet_id, lock=True)
    _require_owner(sheet, actor)
    _require_editable(sheet, "edit entries")

    new_date = data.work_date or entry.work_date
    new_hours = data.hours if data.hours is not None else entry.hours
    if data.project_id and data.project_id != entry.project_id:
        await _require_project(db, data.project_id, projects)

    others = [e for e in await list_entries(db, sheet.id) if e.id != entry.id]
    _validate_hours(sheet, new_date, new_hours, others)

    entry.work_date = new_date
    entry.hours = new_hours
    if data.project_id:
        entry.project_id = data.project_id
    if data.task_id is not None:
        entry.task_id = data.task_id
    if data.is_billable is not None:
        entry.is_billable = data.is_billable
    if data.description is not None:
        entry.description = data.description
    _rollup(sheet, others + [entry])
    await db.flush()

    await audit(db, actor_id=actor.user_id,
        action="timeentry.update", resource_type="time_entry",
        resource_id=entry.id,
        detail={"work_date": str(entry.work_date), "hours": entry.hours},
    )
    return entry


async def delete_entry(
    db: AsyncSession,
    actor: Actor,
    entry_id: uuid.UUID,
) -> None:
    entry = await get_entry(db, entry_id)
    if not entry:
        raise NotFound("TimeEntry", entry_id)
    sheet = await require_timesheet(db, entry.timesheet_id, lock=True)
    _require_owner(sheet, actor)
    _require_editable(sheet, "delete entries")

    entry.is_deleted = True
    others = [e for e in await list_entries(db, sheet.id) if e.id != entry.id]
    _rollup(sheet, others)
    await db.flush()

    await audit(db, actor_id=actor.user_id,
        action="timeentry.delete", resource_type="time_entry",
        resource_id=entry.id, detail={},
    )


# ── Approval coverage ─────────────────────────────────────────────────────────

async def current_records(db: AsyncSession, timesheet_id: uuid.UUID) -> list[ApprovalRecord]:
    result = await db.execute(
        select(ApprovalRecord).where(
            ApprovalRecord.timesheet_id == timesheet_id,
            ApprovalRecord.is_current == True,
        ).order_by(ApprovalRecord.created_at)
    )
    return list(result.scalars().all())


def project_totals(entries: list[TimeEntry]) -> dict[uuid.UUID, tuple[float, float]]:
    """{project_id: (worked_hours, billable_hours)}"""
    totals: dict[uuid.UUID, list[float]] = defaultdict(lambda: [0.0, 0.0])
    for e in entries:
        totals[e.project_id][0] += e.hours
        if e.is_billable:
            totals[e.project_id][1] += e.hours
    return {p: (round(w, 2), round(b, 2)) for p, (w, b) in totals.items()}


async def require_full_coverage(db: AsyncSession, sheet: Timesheet) -> list[ApprovalRecord]:
    """Every project with live entries must have a current approval record."""
    records = await current_records(db, sheet.id)
    entries = await list_entries(db, sheet.id)
    covered = {r.project_id for r in records}
    missing = sorted({e.project_id for e in entries} - covered, key=str)
    if missing:
        logger.error("Timesheet %s has entries without approval records: %s", sheet.id, missing)
        raise MissingApprovalRecord(sheet.id, missing)
    return records


def pre_management_complete(record: ApprovalRecord) -> bool:
    """True once the last required pre-management tier has approved."""
    if record.manager_status != NOT_REQUIRED:
        return record.manager_status == APPROVED
    if record.lead_status != NOT_REQUIRED:
        return record.lead_status == APPROVED
    return True


def _blocking(records: list[ApprovalRecord], tier_field: str) -> list[dict]:
    return [
        {
            "approval_record_id": r.id,
            "project_id": r.project_id,
            "lead_status": r.lead_status,
            "manager_status": r.manager_status,
            "management_status": r.management_status,
        }
        for r in records
        if tier_field == "pre_management" and not pre_management_complete(r)
        or tier_field == "management" and r.management_status != APPROVED
    ]


# ── State machine ─────────────────────────────────────────────────────────────

async def _transition(
    db: AsyncSession,
    sheet: Timesheet,
    new_status: str,
    actor_id: uuid.UUID | None,
    detail: dict | None = None,
) -> None:
    before = sheet.status
    sheet.status = new_status
    await db.flush()
    await audit(db, actor_id=actor_id,
        action=f"timesheet.{new_status}", resource_type="timesheet",
        resource_id=sheet.id, status_before=before, status_after=new_status,
        detail=detail,
    )
    logger.info("Timesheet %s: %s → %s (actor %s)", sheet.id, before, new_status, actor_id)


async def submit_timesheet(
    db: AsyncSession,
    timesheet_id: uuid.UUID,
    actor: Actor,
    projects: ProjectDirectory | None = None,
) -> Timesheet:
    sheet = await require_timesheet(db, timesheet_id, lock=True)
    _require_owner(sheet, actor)

    # Idempotent
    if sheet.status == SUBMITTED:
        return sheet
    if sheet.status not in EDITABLE_STATUSES:
        raise StateConflict(
            f"Cannot submit timesheet with status '{sheet.status}'",
            blocking=[{"timesheet_id": sheet.id, "status": sheet.status}],
        )

    entries = await list_entries(db, sheet.id)
    if not entries:
        raise StateConflict(
            "Cannot submit a timesheet without time entries",
            blocking=[{"timesheet_id": sheet.id, "entries": 0}],
        )

    from app.core.approvals.service import open_approval_records
    await open_approval_records(db, sheet, entries, projects)

    _rollup(sheet, entries)
    sheet.submitted_at = _now()
    sheet.rejected_at = None
    sheet.rejected_by = None
    sheet.rejection_reason = None
    await _transition(db, sheet, SUBMITTED, actor.user_id, {"total_hours": sheet.total_hours})

    # Projects with no lead/manager review go straight to management
    await progress_review(db, sheet, actor.user_id)
    return sheet


async def reopen_timesheet(
    db: AsyncSession,
    timesheet_id: uuid.UUID,
    actor: Actor,
) -> Timesheet:
    sheet = await require_timesheet(db, timesheet_id, lock=True)
    _require_owner(sheet, actor)
    if sheet.status == DRAFT:
        return sheet
    if sheet.status != REJECTED:
        raise StateConflict(
            f"Only rejected timesheets can be reopened. Current status: '{sheet.status}'",
            blocking=[{"timesheet_id": sheet.id, "status": sheet.status}],
        )
    await _transition(db, sheet, DRAFT, actor.user_id)
    return sheet


async def reject_timesheet(
    db: AsyncSession,
    sheet: Timesheet,
    actor_id: uuid.UUID,
    reason: str,
    record: ApprovalRecord | None = None,
) -> Timesheet:
    if sheet.status not in IN_REVIEW_STATUSES:
        raise StateConflict(
            f"Cannot reject timesheet with status '{sheet.status}'",
            blocking=[{"timesheet_id": sheet.id, "status": sheet.status}],
        )
    sheet.rejected_at = _now()
    sheet.rejected_by = actor_id
    sheet.rejection_reason = reason
    detail = {"reason": reason}
    if record is not None:
        detail["approval_record_id"] = str(record.id)
        detail["project_id"] = str(record.project_id)
    await _transition(db, sheet, REJECTED, actor_id, detail)
    logger.warning("Timesheet %s rejected by %s: %s", sheet.id, actor_id, reason)
    return sheet


async def progress_review(
    db: AsyncSession,
    sheet: Timesheet,
    actor_id: uuid.UUID | None,
) -> Timesheet:
    """
    Apply the automatic transitions after a submission or a review decision:
    submitted → manager_approved → management_pending once every current
    record has cleared its last required pre-management tier.
    """
    if sheet.status != SUBMITTED:
        return sheet
    records = await require_full_coverage(db, sheet)
    if _blocking(records, "pre_management"):
        return sheet

    sheet.manager_approved_at = _now()
    await _transition(db, sheet, MANAGER_APPROVED, actor_id)
    async with guarded(db, f"Approval records of timesheet {sheet.id} changed concurrently", timesheet_id=sheet.id):
        for r in records:
            if r.management_status != PENDING:
                r.management_status = PENDING
    await _transition(db, sheet, MANAGEMENT_PENDING, actor_id)
    return sheet


async def freeze_if_eligible(
    db: AsyncSession,
    timesheet_id: uuid.UUID,
    actor: Actor,
) -> Timesheet:
    require_management(actor, "freeze timesheets")
    sheet = await require_timesheet(db, timesheet_id, lock=True)

    # Idempotent
    if sheet.status == FROZEN:
        return sheet
    if sheet.status != MANAGEMENT_PENDING:
        raise StateConflict(
            f"Cannot freeze timesheet with status '{sheet.status}'",
            blocking=[{"timesheet_id": sheet.id, "status": sheet.status}],
        )

    records = await require_full_coverage(db, sheet)
    blocking = _blocking(records, "management")
    if blocking:
        raise StateConflict(
            f"Timesheet {sheet.id} has {len(blocking)} project(s) without management approval",
            blocking=blocking,
        )

    sheet.is_frozen = True
    sheet.frozen_at = _now()
    sheet.frozen_by = actor.user_id
    await _transition(db, sheet, FROZEN, actor.user_id)
    return sheet


@dataclass
class ProjectWeekFreeze:
    project_id: uuid.UUID
    week_start: date
    frozen: list[uuid.UUID] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)

    @property
    def frozen_count(self) -> int:
        return len(self.frozen)


async def freeze_project_week(
    db: AsyncSession,
    project_id: uuid.UUID,
    week_start: date,
    actor: Actor,
) -> ProjectWeekFreeze:
    """
    Freeze every timesheet of one week that carries hours on the project.

    Refuses outright while any of those sheets is still waiting on lead or
    manager review. Otherwise each sheet is frozen on its own; a sheet that
    still lacks management approval on some project is reported in `failed`.
    """
    require_management(actor, "freeze timesheets")
    require_monday(week_start, "week_start")

    result = await db.execute(
        select(Timesheet)
        .join(ApprovalRecord, ApprovalRecord.timesheet_id == Timesheet.id)
        .where(
            ApprovalRecord.project_id == project_id,
            ApprovalRecord.is_current == True,
            Timesheet.week_start == week_start,
            Timesheet.is_deleted == False,
        )
        .order_by(Timesheet.id)
    )
    sheets = list(result.scalars().unique().all())
    if not sheets:
        raise StateConflict(
            f"No timesheets for project {project_id} in week {week_start}",
            blocking=[],
        )

    pending = [s for s in sheets if s.status in (SUBMITTED, MANAGER_APPROVED)]
    if pending:
        raise StateConflict(
            f"{len(pending)} timesheet(s) in week {week_start} are still pending approval",
            blocking=[{"timesheet_id": s.id, "status": s.status} for s in pending],
        )

    outcome = ProjectWeekFreeze(project_id=project_id, week_start=week_start)
    for sheet in sheets:
        if sheet.status != MANAGEMENT_PENDING:
            outcome.skipped.append({"timesheet_id": sheet.id, "status": sheet.status})
            continue
        try:
            await freeze_if_eligible(db, sheet.id, actor)
        except (StateConflict, MissingApprovalRecord) as exc:
            logger.warning("Could not freeze timesheet %s: %s", sheet.id, exc.message)
            outcome.failed.append({"timesheet_id": sheet.id, "reason": exc.message})
        else:
            outcome.frozen.append(sheet.id)

    logger.info(
        "Froze project %s week %s: %d frozen, %d skipped, %d failed",
        project_id, week_start, len(outcome.frozen), len(outcome.skipped), len(outcome.failed),
    )
    return outcome


async def mark_billed(
    db: AsyncSession,
    timesheet_id: uuid.UUID,
    actor: Actor,
) -> Timesheet:
    require_management(actor, "mark timesheets billed")
    sheet = await require_timesheet(db, timesheet_id, lock=True)
    if sheet.status == BILLED:
        return sheet
    if sheet.status != FROZEN:
        raise StateConflict(
            f"Only frozen timesheets can be billed. Current status: '{sheet.status}'",
            blocking=[{"timesheet_id": sheet.id, "status": sheet.status}],
        )
    sheet.billed_at = _now()
    sheet.billed_by = actor.user_id
    await _transition(db, sheet, BILLED, actor.user_id)
    return sheet


async def bill_frozen_timesheets(
    db: AsyncSession,
    start: date,
    end: date,
    actor: Actor,
) -> list[Timesheet]:
    """Mark every frozen timesheet whose week lies fully inside [start, end] as billed."""
    require_management(actor, "mark timesheets billed")
    if start > end:
        raise ValidationError(f"Period start {start} is after end {end}", "period")
    result = await db.execute(
        select(Timesheet).where(
            Timesheet.status == FROZEN,
            Timesheet.is_deleted == False,
            Timesheet.week_start >= start,
            Timesheet.week_end <= end,
        ).order_by(Timesheet.week_start).with_for_update()
    )
    sheets = list(result.scalars().all())
    now = _now()
    for sheet in sheets:
        sheet.billed_at = now
        sheet.billed_by = actor.user_id
        await _transition(db, sheet, BILLED, actor.user_id, {"period": f"{start}..{end}"})
    return sheets


# ── Deletion ──────────────────────────────────────────────────────────────────

async def soft_delete_timesheet(
    db: AsyncSession,
    timesheet_id: uuid.UUID,
    actor: Actor,
) -> None:
    sheet = await require_timesheet(db, timesheet_id, lock=True)
    _require_owner(sheet, actor)
    if sheet.status != DRAFT:
        raise StateConflict(
            f"Only draft timesheets can be deleted. Current status: '{sheet.status}'",
            blocking=[{"timesheet_id": sheet.id, "status": sheet.status}],
        )
    sheet.is_deleted = True
    sheet.deleted_at = _now()
    sheet.deleted_by = actor.user_id
    await db.flush()
    await audit(db, actor_id=actor.user_id,
        action="timesheet.delete", resource_type="timesheet",
        resource_id=sheet.id, status_before=sheet.status, detail={},
    )


async def hard_delete_timesheet(
    db: AsyncSession,
    timesheet_id: uuid.UUID,
    actor: Actor,
    reason: str,
) -> None:
    """
    Privileged override: the only path that touches a frozen timesheet.
    Entries are removed physically, the timesheet row is kept as a tombstone so
    approval history still resolves.
    """
    require_override(actor, "hard-delete timesheets")
    if not reason or not reason.strip():
        raise ValidationError("A reason is required to hard-delete a timesheet", "reason")
    sheet = await require_timesheet(db, timesheet_id, lock=True)

    removed = await db.execute(delete(TimeEntry).where(TimeEntry.timesheet_id == sheet.id))
    before = sheet.status
    sheet.is_deleted = True
    sheet.is_hard_deleted = True
    sheet.is_frozen = False
    sheet.total_hours = 0
    sheet.deleted_at = _now()
    sheet.deleted_by = actor.user_id
    await db.flush()

    await audit(db, actor_id=actor.user_id,
        action="timesheet.hard_delete", resource_type="timesheet",
        resource_id=sheet.id, status_before=before,
        detail={"reason": reason, "entries_removed": removed.rowcount},
    )
    logger.warning("Timesheet %s hard-deleted by %s (%s): %s", sheet.id, actor.user_id, before, reason)
