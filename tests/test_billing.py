import uuid
import pytest
from datetime import date, timedelta

from sqlalchemy import delete, update

WEEK1 = date(2026, 2, 2)
WEEK2 = date(2026, 2, 9)
WEEK1_END = date(2026, 2, 8)


# ── Pure aggregation ──────────────────────────────────────────────────────────

def _sheet(user_id, week_start=WEEK1, status="frozen", week_end=None, is_deleted=False):
    from app.core.timesheets.models import Timesheet
    return Timesheet(
        id=uuid.uuid4(), user_id=user_id, week_start=week_start,
        week_end=week_end or week_start + timedelta(days=6),
        status=status, is_deleted=is_deleted,
    )


def _record(sheet, project_id, management_status="approved", is_current=True):
    from app.core.approvals.models import ApprovalRecord
    return ApprovalRecord(
        id=uuid.uuid4(), timesheet_id=sheet.id, project_id=project_id, user_id=sheet.user_id,
        management_status=management_status, is_current=is_current,
    )


def _entries(sheet, project_id, hours, billable=True):
    from app.core.timesheets.models import TimeEntry
    return [
        TimeEntry(
            id=uuid.uuid4(), timesheet_id=sheet.id, user_id=sheet.user_id, project_id=project_id,
            work_date=sheet.week_start + timedelta(days=i), hours=h, is_billable=billable, is_deleted=False,
        )
        for i, h in enumerate(hours)
    ]


def test_aggregate_sums_worked_and_billable():
    from app.core.billing.service import aggregate_entries
    user, project = uuid.uuid4(), uuid.uuid4()
    sheet = _sheet(user)
    entries = _entries(sheet, project, [8, 8, 8]) + _entries(sheet, project, [2], billable=False)
    result = aggregate_entries(WEEK1, WEEK1_END, [sheet], [_record(sheet, project)], entries)
    row = result.get(user, project)
    assert (row.worked_hours, row.billable_hours) == (26, 24)
    assert result.flags == []


def test_aggregate_filters_per_project_record():
    """One project approved at management, the other still pending: only the first counts."""
    from app.core.billing.service import aggregate_entries
    user, apollo, gemini = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    sheet = _sheet(user, status="management_pending")
    entries = _entries(sheet, apollo, [8, 8]) + _entries(sheet, gemini, [0, 0, 4, 4])
    records = [_record(sheet, apollo), _record(sheet, gemini, management_status="pending")]
    result = aggregate_entries(WEEK1, WEEK1_END, [sheet], records, entries)
    assert [(r.project_id, r.worked_hours) for r in result.rows] == [(apollo, 16)]


def test_aggregate_ignores_superseded_records():
    from app.core.billing.service import aggregate_entries
    user, project = uuid.uuid4(), uuid.uuid4()
    sheet = _sheet(user, status="submitted")
    old = _record(sheet, project, is_current=False)
    result = aggregate_entries(WEEK1, WEEK1_END, [sheet], [old], _entries(sheet, project, [8]))
    assert result.rows == []
    assert [f.reason for f in result.flags] == ["missing_approval_record"]


def test_aggregate_skips_soft_deleted_sheet():
    from app.core.billing.service import aggregate_entries
    user, project = uuid.uuid4(), uuid.uuid4()
    sheet = _sheet(user, is_deleted=True)
    result = aggregate_entries(WEEK1, WEEK1_END, [sheet], [_record(sheet, project)], _entries(sheet, project, [8]))
    assert result.rows == [] and result.flags == []


def test_aggregate_flags_broken_week_bounds():
    from app.core.billing.service import aggregate_entries
    user, project = uuid.uuid4(), uuid.uuid4()
    sheet = _sheet(user, week_end=date(2026, 2, 7))
    result = aggregate_entries(WEEK1, WEEK1_END, [sheet], [_record(sheet, project)], _entries(sheet, project, [8]))
    assert result.rows == []
    assert len(result.flags) == 1
    flag = result.flags[0]
    assert (flag.timesheet_id, flag.project_id, flag.reason) == (sheet.id, None, "integrity_fault")


def test_aggregate_draft_without_record_is_not_flagged():
    from app.core.billing.service import aggregate_entries
    user, project = uuid.uuid4(), uuid.uuid4()
    sheet = _sheet(user, status="draft")
    result = aggregate_entries(WEEK1, WEEK1_END, [sheet], [], _entries(sheet, project, [8]))
    assert result.rows == [] and result.flags == []


def test_aggregate_rejects_inverted_period():
    from app.core.billing.service import aggregate_entries
    from app.core.errors import ValidationError
    with pytest.raises(ValidationError):
        aggregate_entries(WEEK1_END, WEEK1, [], [], [])


# ── Against the database ──────────────────────────────────────────────────────

async def test_aggregation_sums_approved_week_and_is_repeatable(db, employee, boss, project, fill_week, approve_all):
    from app.core.billing.service import aggregate_billing
    from app.core.timesheets.service import submit_timesheet, freeze_if_eligible
    # 64h in one week: 8h twice a day on four days
    sheet = await fill_week(employee, project, days=4, hours_per_day=8)
    await fill_week(employee, project, days=4, hours_per_day=8, sheet=sheet)
    await submit_timesheet(db, sheet.id, employee)
    await approve_all(sheet)
    await freeze_if_eligible(db, sheet.id, boss)

    first = await aggregate_billing(db, WEEK1, WEEK1_END)
    row = first.get(employee.user_id, project.id)
    assert row.worked_hours == 64
    assert row.billable_hours == 64

    second = await aggregate_billing(db, WEEK1, WEEK1_END)
    assert second.rows == first.rows
    assert second.flags == first.flags


async def test_disjoint_interval_excludes_hours(db, employee, project, frozen_sheet):
    from app.core.billing.service import aggregate_billing
    await frozen_sheet(employee, project)
    result = await aggregate_billing(db, WEEK2, WEEK2 + timedelta(days=6))
    assert result.rows == []


async def test_interval_clips_entries_by_date(db, employee, project, frozen_sheet):
    from app.core.billing.service import aggregate_billing
    await frozen_sheet(employee, project, days=5)
    # Wednesday .. Sunday picks up Wed, Thu, Fri
    result = await aggregate_billing(db, WEEK1 + timedelta(days=2), WEEK1_END)
    assert result.get(employee.user_id, project.id).worked_hours == 24


async def test_management_pending_project_excluded(db, employee, project, fill_week, approve_all):
    from app.core.billing.service import aggregate_billing
    from app.core.timesheets.service import submit_timesheet
    sheet = await fill_week(employee, project)
    await submit_timesheet(db, sheet.id, employee)
    await approve_all(sheet, tiers=("manager",))
    assert sheet.status == "management_pending"
    result = await aggregate_billing(db, WEEK1, WEEK1_END)
    assert result.rows == []
    assert result.flags == []


async def test_soft_deleted_timesheet_is_absent(db, employee, project, frozen_sheet):
    from app.core.billing.service import aggregate_billing
    from app.core.timesheets.models import Timesheet
    sheet = await frozen_sheet(employee, project)
    await db.execute(update(Timesheet).where(Timesheet.id == sheet.id).values(is_deleted=True))
    result = await aggregate_billing(db, WEEK1, WEEK1_END)
    assert result.rows == [] and result.flags == []


async def test_missing_record_is_flagged_not_zeroed(db, employee, make_project, fill_week, approve_all, boss):
    from app.core.approvals.models import ApprovalRecord
    from app.core.billing.service import aggregate_billing
    from app.core.timesheets.service import submit_timesheet, freeze_if_eligible
    apollo = await make_project("Apollo")
    gemini = await make_project("Gemini")
    sheet = await fill_week(employee, apollo, days=2)
    await fill_week(employee, gemini, days=2, sheet=sheet, week_start=WEEK1 + timedelta(days=2))
    await submit_timesheet(db, sheet.id, employee)
    await approve_all(sheet)
    await freeze_if_eligible(db, sheet.id, boss)
    await db.execute(delete(ApprovalRecord).where(ApprovalRecord.project_id == gemini.id))

    result = await aggregate_billing(db, WEEK1, WEEK1_END)
    assert [(r.project_id, r.worked_hours) for r in result.rows] == [(apollo.id, 16)]
    assert result.get(employee.user_id, gemini.id) is None
    assert [(f.project_id, f.reason) for f in result.flags] == [(gemini.id, "missing_approval_record")]


async def test_corrupted_week_is_flagged(db, employee, project, frozen_sheet):
    from app.core.billing.service import aggregate_billing
    from app.core.timesheets.models import Timesheet
    sheet = await frozen_sheet(employee, project)
    await db.execute(
        update(Timesheet.__table__).where(Timesheet.__table__.c.id == sheet.id).values(week_end=date(2026, 2, 7))
    )
    await db.refresh(sheet)
    result = await aggregate_billing(db, WEEK1, WEEK1_END)
    assert result.rows == []
    assert [(f.timesheet_id, f.reason) for f in result.flags] == [(sheet.id, "integrity_fault")]


async def test_filters_by_user_and_project(db, employee, make_user, make_project, frozen_sheet):
    from app.core.billing.service import aggregate_billing
    other = await make_user("otto")
    apollo = await make_project("Apollo")
    gemini = await make_project("Gemini")
    await frozen_sheet(employee, apollo)
    await frozen_sheet(other, gemini, days=2)

    by_user = await aggregate_billing(db, WEEK1, WEEK1_END, user_id=other.user_id)
    assert [(r.user_id, r.worked_hours) for r in by_user.rows] == [(other.user_id, 16)]
    by_project = await aggregate_billing(db, WEEK1, WEEK1_END, project_id=apollo.id)
    assert [(r.project_id, r.worked_hours) for r in by_project.rows] == [(apollo.id, 32)]


async def test_weekly_breakdown_splits_by_week(db, employee, make_user, project, frozen_sheet):
    from app.core.billing.service import weekly_breakdown
    other = await make_user("ben")
    await frozen_sheet(employee, project, week_start=WEEK1, days=4)
    await frozen_sheet(employee, project, week_start=WEEK2, days=2, billable=False)
    await frozen_sheet(other, project, week_start=WEEK2, days=1)

    weeks = await weekly_breakdown(db, WEEK1, WEEK2 + timedelta(days=6))
    assert [(w.week_start, w.worked_hours, w.billable_hours) for w in weeks] == [
        (WEEK1, 32, 32),
        (WEEK2, 24, 8),
    ]
    assert len(weeks[1].rows) == 2

    (mine,) = await weekly_breakdown(db, WEEK2, WEEK2 + timedelta(days=6), user_id=employee.user_id)
    assert (mine.worked_hours, mine.billable_hours) == (16, 0)


async def test_weekly_breakdown_clips_partial_weeks(db, employee, project, frozen_sheet):
    from app.core.billing.service import weekly_breakdown
    await frozen_sheet(employee, project, week_start=WEEK1, days=4)
    await frozen_sheet(employee, project, week_start=WEEK2, days=4)

    # Wednesday to the following Tuesday
    weeks = await weekly_breakdown(db, WEEK1 + timedelta(days=2), WEEK2 + timedelta(days=1))
    assert [(w.week_start, w.start, w.end) for w in weeks] == [
        (WEEK1, WEEK1 + timedelta(days=2), WEEK1_END),
        (WEEK2, WEEK2, WEEK2 + timedelta(days=1)),
    ]
    assert [w.worked_hours for w in weeks] == [16, 16]


async def test_weekly_breakdown_empty_weeks(db):
    from app.core.billing.service import weekly_breakdown
    from app.core.errors import ValidationError
    weeks = await weekly_breakdown(db, WEEK1, WEEK2 + timedelta(days=6))
    assert [(w.worked_hours, w.rows) for w in weeks] == [(0, []), (0, [])]
    with pytest.raises(ValidationError):
        await weekly_breakdown(db, WEEK2, WEEK1)
