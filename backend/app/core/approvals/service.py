import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy import select, exists, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.approvals.models import (
    ApprovalRecord, NOT_REQUIRED, PENDING, APPROVED, REJECTED, APPROVE, REJECT,
)
from app.core.audit.service import audit
from app.core.dates import require_monday
from app.core.directory.service import (
    Actor, ProjectDirectory, ReviewPolicy, SqlProjectDirectory,
    MANAGER, MANAGEMENT, TIERS,
    is_management, is_override, require_override,
)
from app.core.errors import ConflictError, NotFound, PermissionDenied, StateConflict, ValidationError
from app.core.timesheets.models import (
    Timesheet, TimeEntry,
    SUBMITTED, MANAGEMENT_PENDING, FROZEN,
    IN_REVIEW_STATUSES, REVIEWED_STATUSES,
)
from app.core.timesheets.service import (
    current_records, list_entries, pre_management_complete, progress_review,
    project_totals, reject_timesheet, require_timesheet,
)
from app.db.guards import flush_guarded, guarded

logger = logging.getLogger(__name__)

DECISIONS = {APPROVE: APPROVED, REJECT: REJECTED}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_record(
    sheet: Timesheet,
    policy: ReviewPolicy,
    worked: float,
    billable: float,
) -> ApprovalRecord:
    return ApprovalRecord(
        id=uuid.uuid4(),
        timesheet_id=sheet.id,
        project_id=policy.project_id,
        user_id=sheet.user_id,
        lead_status=PENDING if policy.lead_required else NOT_REQUIRED,
        manager_status=PENDING if policy.manager_required else NOT_REQUIRED,
        management_status=PENDING,
        worked_hours=worked,
        billable_hours=billable,
        is_current=True,
    )


async def _policies(
    db: AsyncSession,
    project_ids,
    projects: ProjectDirectory | None,
) -> dict[uuid.UUID, ReviewPolicy]:
    directory = projects or SqlProjectDirectory(db)
    policies = {}
    for project_id in sorted(project_ids, key=str):
        policy = await directory.get_policy(project_id)
        if policy is None:
            raise ValidationError(f"Unknown project {project_id}", "project_id")
        policies[project_id] = policy
    return policies


# ── Opening records on submit ─────────────────────────────────────────────────

async def open_approval_records(
    db: AsyncSession,
    sheet: Timesheet,
    entries: list[TimeEntry],
    projects: ProjectDirectory | None = None,
) -> list[ApprovalRecord]:
    """
    One fresh record per distinct project in the entries.
    Records of an earlier submission are superseded, never mutated further.
    """
    totals = project_totals(entries)
    policies = await _policies(db, totals.keys(), projects)

    previous = await current_records(db, sheet.id)
    now = _now()
    message = f"Approval records of timesheet {sheet.id} changed concurrently"
    # Old rows must leave the current set before the new ones hit the partial index
    async with guarded(db, message, timesheet_id=sheet.id):
        for old in previous:
            old.is_current = False
            old.superseded_at = now

    created = [
        _new_record(sheet, policies[project_id], worked, billable)
        for project_id, (worked, billable) in sorted(totals.items(), key=lambda kv: str(kv[0]))
    ]
    await flush_guarded(db, message, *created, timesheet_id=sheet.id)

    by_project = {r.project_id: r for r in created}
    async with guarded(db, message, timesheet_id=sheet.id):
        for old in previous:
            successor = by_project.get(old.project_id)
            if successor is not None:
                old.superseded_by_id = successor.id

    for r in created:
        await audit(db, actor_id=sheet.user_id,
            action="approval.open", resource_type="approval_record",
            resource_id=r.id, status_after=PENDING,
            detail={
                "timesheet_id": str(sheet.id),
                "project_id": str(r.project_id),
                "lead_status": r.lead_status,
                "manager_status": r.manager_status,
                "worked_hours": r.worked_hours,
                "billable_hours": r.billable_hours,
            },
        )
    if previous:
        logger.info("Timesheet %s resubmitted: %d record(s) superseded", sheet.id, len(previous))
    return created


# ── Reads ─────────────────────────────────────────────────────────────────────

async def get_approval_record(db: AsyncSession, record_id: uuid.UUID) -> ApprovalRecord | None:
    result = await db.execute(select(ApprovalRecord).where(ApprovalRecord.id == record_id))
    return result.scalar_one_or_none()


async def list_approval_records(
    db: AsyncSession,
    timesheet_id: uuid.UUID,
    include_history: bool = False,
) -> list[ApprovalRecord]:
    q = select(ApprovalRecord).where(ApprovalRecord.timesheet_id == timesheet_id)
    if not include_history:
        q = q.where(ApprovalRecord.is_current == True)
    q = q.order_by(ApprovalRecord.created_at, ApprovalRecord.project_id)
    result = await db.execute(q)
    return list(result.scalars().all())


async def list_pending_for_tier(
    db: AsyncSession,
    tier: str,
    project_id: uuid.UUID | None = None,
) -> list[ApprovalRecord]:
    """Current records waiting on the given tier (review queue)."""
    if tier not in TIERS:
        raise ValidationError(f"Unknown tier '{tier}'", "tier")
    column = getattr(ApprovalRecord, f"{tier}_status")
    q = select(ApprovalRecord).where(ApprovalRecord.is_current == True, column == PENDING)
    if project_id:
        q = q.where(ApprovalRecord.project_id == project_id)
    if tier == MANAGEMENT:
        q = q.join(Timesheet, Timesheet.id == ApprovalRecord.timesheet_id).where(
            Timesheet.status.in_((MANAGEMENT_PENDING, FROZEN)),
        )
    result = await db.execute(q.order_by(ApprovalRecord.created_at))
    records = list(result.scalars().all())
    if tier == MANAGEMENT:
        # Reconciled records on frozen timesheets still wait on their own earlier tiers
        records = [r for r in records if pre_management_complete(r)]
    return records


# ── Decisions ─────────────────────────────────────────────────────────────────

def _authorize(actor: Actor, tier: str, policy: ReviewPolicy | None) -> None:
    if tier == MANAGEMENT:
        if not is_management(actor):
            raise PermissionDenied("Management role required for the management tier", actor_id=actor.user_id)
        return
    if is_override(actor):
        return
    reviewer = policy.reviewer_for(tier) if policy else None
    if reviewer is None or reviewer != actor.user_id:
        raise PermissionDenied(
            f"Only the project {tier} may decide the {tier} tier",
            actor_id=actor.user_id, project_id=policy.project_id if policy else None,
        )


def _require_actionable(record: ApprovalRecord, sheet: Timesheet, tier: str) -> None:
    status = record.tier_status(tier)
    blocking = [{
        "approval_record_id": record.id,
        "project_id": record.project_id,
        "tier": tier,
        f"{tier}_status": status,
        "timesheet_status": sheet.status,
    }]
    if status == NOT_REQUIRED:
        raise StateConflict(f"The {tier} tier is not required for this project", blocking=blocking)
    if status != PENDING:
        raise StateConflict(f"The {tier} tier was already decided ({status})", blocking=blocking)

    if tier == MANAGEMENT:
        if sheet.status not in (MANAGEMENT_PENDING, FROZEN):
            raise StateConflict(
                f"Management review is not open for timesheet with status '{sheet.status}'",
                blocking=blocking,
            )
        if not pre_management_complete(record):
            raise StateConflict("Pre-management review is not complete for this project", blocking=blocking)
        return

    # Past submitted, only reconciled records still have pending lead/manager tiers
    if sheet.status not in (SUBMITTED, MANAGEMENT_PENDING, FROZEN):
        raise StateConflict(
            f"{tier.capitalize()} review is not open for timesheet with status '{sheet.status}'",
            blocking=blocking,
        )
    if tier == MANAGER and record.lead_status not in (NOT_REQUIRED, APPROVED):
        raise StateConflict("Lead review must approve before the manager decides", blocking=blocking)


async def advance_approval(
    db: AsyncSession,
    record_id: uuid.UUID,
    tier: str,
    decision: str,
    actor: Actor,
    reason: str | None = None,
    expected_version: int | None = None,
    projects: ProjectDirectory | None = None,
) -> ApprovalRecord:
    if tier not in TIERS:
        raise ValidationError(f"Unknown tier '{tier}'", "tier")
    if decision not in DECISIONS:
        raise ValidationError(f"Unknown decision '{decision}'", "decision")
    if decision == REJECT and not (reason and reason.strip()):
        raise ValidationError("A reason is required to reject", "reason")

    record = await get_approval_record(db, record_id)
    if not record:
        raise NotFound("ApprovalRecord", record_id)
    if not record.is_current:
        raise StateConflict(
            "Approval record was superseded by a resubmission",
            blocking=[{"approval_record_id": record.id, "superseded_by_id": record.superseded_by_id}],
        )
    if expected_version is not None and expected_version != record.version:
        raise ConflictError(
            "Approval record was modified since it was read",
            approval_record_id=record.id, expected_version=expected_version, current_version=record.version,
        )

    # Serializes progression of the parent timesheet across reviewers
    sheet = await require_timesheet(db, record.timesheet_id, lock=True)

    directory = projects or SqlProjectDirectory(db)
    policy = await directory.get_policy(record.project_id)
    _authorize(actor, tier, policy)
    _require_actionable(record, sheet, tier)

    new_status = DECISIONS[decision]
    async with guarded(db, "Approval record was modified concurrently", approval_record_id=record.id):
        setattr(record, f"{tier}_status", new_status)
        setattr(record, f"{tier}_decided_at", _now())
        setattr(record, f"{tier}_decided_by", actor.user_id)
        setattr(record, f"{tier}_reason", reason)

    await audit(db, actor_id=actor.user_id,
        action=f"approval.{tier}.{decision}", resource_type="approval_record",
        resource_id=record.id, status_before=PENDING, status_after=new_status,
        detail={"timesheet_id": str(sheet.id), "project_id": str(record.project_id), "reason": reason},
    )
    logger.info(
        "Approval %s tier %s → %s by %s (timesheet %s, project %s)",
        record.id, tier, new_status, actor.user_id, sheet.id, record.project_id,
    )

    if new_status == REJECTED:
        if sheet.status in IN_REVIEW_STATUSES:
            await reject_timesheet(db, sheet, actor.user_id, reason, record)
        else:
            # Already frozen: the project stays out of billing until resubmitted
            logger.warning("Rejected record %s on %s timesheet %s", record.id, sheet.status, sheet.id)
    else:
        await progress_review(db, sheet, actor.user_id)
    return record


# ── Project-week decisions ────────────────────────────────────────────────────

@dataclass
class ProjectWeekDecision:
    project_id: uuid.UUID
    week_start: date
    tier: str
    decision: str
    processed: list[uuid.UUID] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return len(self.processed)


async def _project_week_records(
    db: AsyncSession,
    project_id: uuid.UUID,
    week_start: date,
) -> list[ApprovalRecord]:
    result = await db.execute(
        select(ApprovalRecord)
        .join(Timesheet, Timesheet.id == ApprovalRecord.timesheet_id)
        .where(
            ApprovalRecord.project_id == project_id,
            ApprovalRecord.is_current == True,
            Timesheet.week_start == week_start,
            Timesheet.is_deleted == False,
        )
        # Same lock order for every caller
        .order_by(Timesheet.id)
    )
    return list(result.scalars().all())


async def _decide_project_week(
    db: AsyncSession,
    project_id: uuid.UUID,
    week_start: date,
    tier: str,
    decision: str,
    actor: Actor,
    reason: str | None,
    projects: ProjectDirectory | None,
) -> ProjectWeekDecision:
    if tier not in TIERS:
        raise ValidationError(f"Unknown tier '{tier}'", "tier")
    require_monday(week_start)
    directory = projects or SqlProjectDirectory(db)
    policy = await directory.get_policy(project_id)
    if policy is None:
        raise NotFound("Project", project_id)
    _authorize(actor, tier, policy)

    records = await _project_week_records(db, project_id, week_start)
    if not records:
        raise StateConflict(
            f"No approval records for project {project_id} in week {week_start}",
            blocking=[{"project_id": project_id, "week_start": week_start}],
        )

    outcome = ProjectWeekDecision(project_id=project_id, week_start=week_start, tier=tier, decision=decision)
    for record in records:
        status = record.tier_status(tier)
        if status != PENDING:
            outcome.skipped.append({"approval_record_id": record.id, "timesheet_id": record.timesheet_id, f"{tier}_status": status})
            continue
        try:
            await advance_approval(db, record.id, tier, decision, actor, reason=reason, projects=directory)
        except (StateConflict, ConflictError) as exc:
            logger.warning("Project week %s/%s: record %s not decided: %s", project_id, week_start, record.id, exc.message)
            outcome.failed.append({"approval_record_id": record.id, "timesheet_id": record.timesheet_id, "reason": exc.message})
            continue
        outcome.processed.append(record.id)

    logger.info(
        "Project week %s/%s %s %s by %s: %d processed, %d skipped, %d failed",
        project_id, week_start, tier, decision, actor.user_id,
        len(outcome.processed), len(outcome.skipped), len(outcome.failed),
    )
    return outcome


async def approve_project_week(
    db: AsyncSession,
    project_id: uuid.UUID,
    week_start: date,
    tier: str,
    actor: Actor,
    projects: ProjectDirectory | None = None,
) -> ProjectWeekDecision:
    """Approve one tier on every current record of a project for one week.

    Records already decided on that tier are skipped; records whose
    preconditions are unmet (an earlier tier still open, say) are reported as
    failed and left untouched, the rest still go through.
    """
    return await _decide_project_week(db, project_id, week_start, tier, APPROVE, actor, None, projects)


async def reject_project_week(
    db: AsyncSession,
    project_id: uuid.UUID,
    week_start: date,
    tier: str,
    actor: Actor,
    reason: str,
    projects: ProjectDirectory | None = None,
) -> ProjectWeekDecision:
    if not (reason and reason.strip()):
        raise ValidationError("A reason is required to reject", "reason")
    return await _decide_project_week(db, project_id, week_start, tier, REJECT, actor, reason, projects)


# ── Reconciliation ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MissingRecord:
    timesheet_id: uuid.UUID
    project_id: uuid.UUID
    user_id: uuid.UUID
    timesheet_status: str


async def find_missing_approval_records(
    db: AsyncSession,
    timesheet_id: uuid.UUID | None = None,
) -> list[MissingRecord]:
    """(timesheet, project) pairs with live entries on a reviewed timesheet but no current record."""
    covered = exists().where(
        and_(
            ApprovalRecord.timesheet_id == TimeEntry.timesheet_id,
            ApprovalRecord.project_id == TimeEntry.project_id,
            ApprovalRecord.is_current == True,
        )
    )
    q = (
        select(TimeEntry.timesheet_id, TimeEntry.project_id, Timesheet.user_id, Timesheet.status)
        .join(Timesheet, Timesheet.id == TimeEntry.timesheet_id)
        .where(
            TimeEntry.is_deleted == False,
            Timesheet.is_deleted == False,
            Timesheet.status.in_(REVIEWED_STATUSES),
            ~covered,
        )
        .distinct()
    )
    if timesheet_id:
        q = q.where(Timesheet.id == timesheet_id)
    result = await db.execute(q)
    missing = [MissingRecord(*row) for row in result.all()]
    return sorted(missing, key=lambda m: (str(m.timesheet_id), str(m.project_id)))


async def reconcile_missing_approval_records(
    db: AsyncSession,
    actor: Actor,
    projects: ProjectDirectory | None = None,
) -> list[ApprovalRecord]:
    """
    Operator-triggered repair. Creates the missing records with the project's
    current review policy, every required tier pending. Timesheet status is
    left alone so the new records go through review like any other.
    Running it twice creates nothing the second time.
    """
    require_override(actor, "reconcile approval records")
    missing = await find_missing_approval_records(db)
    if not missing:
        logger.info("Reconciliation: no missing approval records")
        return []

    directory = projects or SqlProjectDirectory(db)
    by_sheet: dict[uuid.UUID, list[MissingRecord]] = defaultdict(list)
    for m in missing:
        by_sheet[m.timesheet_id].append(m)

    created = []
    for timesheet_id, items in by_sheet.items():
        sheet = await require_timesheet(db, timesheet_id, lock=True)
        totals = project_totals(await list_entries(db, sheet.id))
        for m in items:
            policy = await directory.get_policy(m.project_id)
            if policy is None:
                logger.warning("Reconciliation: project %s of timesheet %s is unknown, skipped", m.project_id, sheet.id)
                continue
            worked, billable = totals.get(m.project_id, (0.0, 0.0))
            record = _new_record(sheet, policy, worked, billable)
            await flush_guarded(
                db, f"Approval record for timesheet {sheet.id} project {m.project_id} already exists",
                record, timesheet_id=sheet.id, project_id=m.project_id,
            )
            await audit(db, actor_id=actor.user_id,
                action="approval.reconcile", resource_type="approval_record",
                resource_id=record.id, status_after=PENDING,
                detail={"timesheet_id": str(sheet.id), "project_id": str(m.project_id), "timesheet_status": sheet.status},
            )
            created.append(record)

    logger.warning("Reconciliation by %s created %d approval record(s)", actor.user_id, len(created))
    return created
