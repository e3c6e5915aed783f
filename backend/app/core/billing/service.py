"""
Billing aggregation.

aggregate_entries is a pure function over already-loaded rows; aggregate_billing
loads the rows for a window and hands them over. Nothing here writes, locks or
consumes anything, so the same inputs always give the same totals.
"""
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.adjustments.models import BillingAdjustment, ACTIVE
from app.core.approvals.models import ApprovalRecord, APPROVED
from app.core.dates import WEEK_SPAN, check_week_bounds, overlaps, require_period, week_start_of
from app.core.errors import IntegrityFault
from app.core.timesheets.models import (
    Timesheet, TimeEntry, BILLABLE_STATUSES, REVIEWED_STATUSES,
)

logger = logging.getLogger(__name__)

MISSING_APPROVAL_RECORD = "missing_approval_record"
INTEGRITY_FAULT = "integrity_fault"


@dataclass
class BillingRow:
    user_id: uuid.UUID
    project_id: uuid.UUID
    worked_hours: float
    billable_hours: float


@dataclass
class BillingFlag:
    """A timesheet (or one of its projects) left out of the totals, and why."""
    timesheet_id: uuid.UUID
    project_id: uuid.UUID | None
    user_id: uuid.UUID
    reason: str
    message: str


@dataclass
class BillingAggregate:
    start: date
    end: date
    rows: list[BillingRow] = field(default_factory=list)
    flags: list[BillingFlag] = field(default_factory=list)

    def get(self, user_id: uuid.UUID, project_id: uuid.UUID) -> BillingRow | None:
        for row in self.rows:
            if row.user_id == user_id and row.project_id == project_id:
                return row
        return None

    def flags_for(self, user_id: uuid.UUID, project_id: uuid.UUID) -> list[BillingFlag]:
        return [
            f for f in self.flags
            if f.user_id == user_id and f.project_id in (project_id, None)
        ]


def _in_window(sheet: Timesheet, start: date, end: date) -> bool:
    # Nominal week as well as stored bounds, so a corrupted week_end still gets flagged
    return (
        overlaps(sheet.week_start, sheet.week_end, start, end)
        or overlaps(sheet.week_start, sheet.week_start + WEEK_SPAN, start, end)
    )


def aggregate_entries(
    start: date,
    end: date,
    sheets: list[Timesheet],
    records: list[ApprovalRecord],
    entries: list[TimeEntry],
) -> BillingAggregate:
    """
    Sum worked and billable hours per (user, project) for [start, end].

    A project's hours on a timesheet count only when its current approval record
    is management-approved and the timesheet itself has reached management review.
    Timesheets with broken week bounds and reviewed projects without a current
    record are excluded and reported in flags, never counted as zero.
    """
    require_period(start, end)
    result = BillingAggregate(start=start, end=end)

    current = {(r.timesheet_id, r.project_id): r for r in records if r.is_current}
    by_sheet: dict[uuid.UUID, dict[uuid.UUID, list[TimeEntry]]] = defaultdict(lambda: defaultdict(list))
    for e in entries:
        if e.is_deleted or not (start <= e.work_date <= end):
            continue
        by_sheet[e.timesheet_id][e.project_id].append(e)

    totals: dict[tuple[uuid.UUID, uuid.UUID], list[float]] = defaultdict(lambda: [0.0, 0.0])
    for sheet in sorted(sheets, key=lambda s: (s.week_start, str(s.id))):
        if sheet.is_deleted or not _in_window(sheet, start, end):
            continue
        try:
            check_week_bounds(sheet.week_start, sheet.week_end, sheet.id)
        except IntegrityFault as exc:
            logger.error("Billing %s..%s: %s", start, end, exc.message)
            result.flags.append(BillingFlag(sheet.id, None, sheet.user_id, INTEGRITY_FAULT, exc.message))
            continue

        for project_id in sorted(by_sheet.get(sheet.id, {}), key=str):
            record = current.get((sheet.id, project_id))
            if record is None:
                if sheet.status in REVIEWED_STATUSES:
                    message = f"Timesheet {sheet.id} has entries for project {project_id} but no approval record"
                    logger.error("Billing %s..%s: %s", start, end, message)
                    result.flags.append(BillingFlag(sheet.id, project_id, sheet.user_id, MISSING_APPROVAL_RECORD, message))
                continue
            if record.management_status != APPROVED or sheet.status not in BILLABLE_STATUSES:
                continue
            bucket = totals[(sheet.user_id, project_id)]
            for e in by_sheet[sheet.id][project_id]:
                bucket[0] += e.hours
                if e.is_billable:
                    bucket[1] += e.hours

    result.rows = [
        BillingRow(user_id, project_id, round(worked, 2), round(billable, 2))
        for (user_id, project_id), (worked, billable) in sorted(
            totals.items(), key=lambda kv: (str(kv[0][0]), str(kv[0][1]))
        )
    ]
    return result


async def _load_window(
    db: AsyncSession,
    start: date,
    end: date,
    user_id: uuid.UUID | None,
    project_id: uuid.UUID | None,
) -> tuple[list[Timesheet], list[ApprovalRecord], list[TimeEntry]]:
    q = select(Timesheet).where(
        Timesheet.is_deleted == False,
        Timesheet.week_start <= end,
        or_(Timesheet.week_end >= start, Timesheet.week_start >= start - WEEK_SPAN),
    )
    if user_id:
        q = q.where(Timesheet.user_id == user_id)
    sheets = list((await db.execute(q)).scalars().all())
    if not sheets:
        return [], [], []
    ids = [s.id for s in sheets]

    rq = select(ApprovalRecord).where(ApprovalRecord.timesheet_id.in_(ids), ApprovalRecord.is_current == True)
    eq = select(TimeEntry).where(
        TimeEntry.timesheet_id.in_(ids),
        TimeEntry.is_deleted == False,
        TimeEntry.work_date >= start,
        TimeEntry.work_date <= end,
    )
    if project_id:
        rq = rq.where(ApprovalRecord.project_id == project_id)
        eq = eq.where(TimeEntry.project_id == project_id)
    records = list((await db.execute(rq)).scalars().all())
    entries = list((await db.execute(eq)).scalars().all())
    return sheets, records, entries


async def aggregate_billing(
    db: AsyncSession,
    start: date,
    end: date,
    user_id: uuid.UUID | None = None,
    project_id: uuid.UUID | None = None,
) -> BillingAggregate:
    require_period(start, end)
    sheets, records, entries = await _load_window(db, start, end, user_id, project_id)
    if not sheets:
        return BillingAggregate(start=start, end=end)

    aggregate = aggregate_entries(start, end, sheets, records, entries)
    logger.info(
        "Aggregated billing %s..%s: %d row(s), %d flag(s)",
        start, end, len(aggregate.rows), len(aggregate.flags),
    )
    return aggregate


# ── Weekly breakdown ──────────────────────────────────────────────────────────

@dataclass
class WeeklyBreakdown:
    week_start: date
    start: date
    end: date
    worked_hours: float
    billable_hours: float
    rows: list[BillingRow] = field(default_factory=list)
    flags: list[BillingFlag] = field(default_factory=list)


def _week_chunks(start: date, end: date) -> list[tuple[date, date, date]]:
    chunks = []
    monday = week_start_of(start)
    while monday <= end:
        chunks.append((monday, max(monday, start), min(monday + WEEK_SPAN, end)))
        monday += timedelta(days=7)
    return chunks


async def weekly_breakdown(
    db: AsyncSession,
    start: date,
    end: date,
    user_id: uuid.UUID | None = None,
    project_id: uuid.UUID | None = None,
) -> list[WeeklyBreakdown]:
    """
    Split [start, end] into Monday-aligned weeks and aggregate each one.

    The first and last week are clipped to the requested range. Rows are loaded
    once; every week goes through the same rules as aggregate_billing.
    """
    require_period(start, end)
    sheets, records, entries = await _load_window(db, start, end, user_id, project_id)

    weeks = []
    for monday, chunk_start, chunk_end in _week_chunks(start, end):
        aggregate = aggregate_entries(chunk_start, chunk_end, sheets, records, entries)
        weeks.append(WeeklyBreakdown(
            week_start=monday,
            start=chunk_start,
            end=chunk_end,
            worked_hours=round(sum(r.worked_hours for r in aggregate.rows), 2),
            billable_hours=round(sum(r.billable_hours for r in aggregate.rows), 2),
            rows=aggregate.rows,
            flags=aggregate.flags,
        ))
    return weeks


# ── Summary ───────────────────────────────────────────────────────────────────

@dataclass
class UserLine:
    user_id: uuid.UUID
    worked_hours: float
    billable_hours: float
    effective_billable_hours: float
    adjustment_id: uuid.UUID | None = None


@dataclass
class ProjectSummary:
    project_id: uuid.UUID
    worked_hours: float = 0.0
    billable_hours: float = 0.0
    effective_billable_hours: float = 0.0
    users: list[UserLine] = field(default_factory=list)


@dataclass
class BillingSummary:
    start: date
    end: date
    projects: list[ProjectSummary] = field(default_factory=list)
    total_worked_hours: float = 0.0
    total_billable_hours: float = 0.0
    total_effective_billable_hours: float = 0.0
    flags: list[BillingFlag] = field(default_factory=list)


async def billing_summary(
    db: AsyncSession,
    start: date,
    end: date,
    project_id: uuid.UUID | None = None,
) -> BillingSummary:
    """
    Per-project totals for one billing period. Effective billable hours take an
    active adjustment only when its scope is exactly (user, project, start, end).
    """
    aggregate = await aggregate_billing(db, start, end, project_id=project_id)

    aq = select(BillingAdjustment).where(
        BillingAdjustment.status == ACTIVE,
        BillingAdjustment.billing_period_start == start,
        BillingAdjustment.billing_period_end == end,
    )
    if project_id:
        aq = aq.where(BillingAdjustment.project_id == project_id)
    adjustments = {
        (a.user_id, a.project_id): a
        for a in (await db.execute(aq)).scalars().all()
    }

    summary = BillingSummary(start=start, end=end, flags=aggregate.flags)
    projects: dict[uuid.UUID, ProjectSummary] = {}
    keys = sorted(
        {(r.user_id, r.project_id) for r in aggregate.rows} | set(adjustments),
        key=lambda k: (str(k[1]), str(k[0])),
    )
    for user_id, pid in keys:
        row = aggregate.get(user_id, pid)
        worked = row.worked_hours if row else 0.0
        billable = row.billable_hours if row else 0.0
        adjustment = adjustments.get((user_id, pid))
        effective = adjustment.total_billable_hours if adjustment else billable

        project = projects.setdefault(pid, ProjectSummary(project_id=pid))
        project.users.append(UserLine(
            user_id=user_id,
            worked_hours=worked,
            billable_hours=billable,
            effective_billable_hours=effective,
            adjustment_id=adjustment.id if adjustment else None,
        ))
        project.worked_hours = round(project.worked_hours + worked, 2)
        project.billable_hours = round(project.billable_hours + billable, 2)
        project.effective_billable_hours = round(project.effective_billable_hours + effective, 2)

    summary.projects = list(projects.values())
    summary.total_worked_hours = round(sum(p.worked_hours for p in summary.projects), 2)
    summary.total_billable_hours = round(sum(p.billable_hours for p in summary.projects), 2)
    summary.total_effective_billable_hours = round(
        sum(p.effective_billable_hours for p in summary.projects), 2
    )
    return summary
