import pytest
from datetime import date, timedelta

from sqlalchemy import select

WEEK1 = date(2026, 2, 2)
WEEK2 = date(2026, 2, 9)


async def test_create_timesheet_sets_week_end(db, employee):
    from app.core.timesheets.schemas import TimesheetCreate
    from app.core.timesheets.service import create_timesheet
    sheet = await create_timesheet(db, employee, TimesheetCreate(week_start=WEEK1))
    assert sheet.status == "draft"
    assert sheet.week_end == date(2026, 2, 8)
    assert sheet.is_frozen is False


async def test_create_timesheet_rejects_non_monday(db, employee):
    from app.core.errors import ValidationError
    from app.core.timesheets.schemas import TimesheetCreate
    from app.core.timesheets.service import create_timesheet
    with pytest.raises(ValidationError):
        await create_timesheet(db, employee, TimesheetCreate(week_start=date(2026, 2, 4)))


async def test_create_timesheet_rejects_offset_monday(db, employee):
    """Local Monday midnight east of UTC is a UTC Sunday."""
    from app.core.errors import ValidationError
    from app.core.timesheets.schemas import TimesheetCreate
    from app.core.timesheets.service import create_timesheet
    with pytest.raises(ValidationError):
        await create_timesheet(db, employee, TimesheetCreate(week_start="2026-02-02T00:00:00+02:00"))


async def test_duplicate_week_conflicts(db, employee):
    from app.core.errors import ConflictError
    from app.core.timesheets.schemas import TimesheetCreate
    from app.core.timesheets.service import create_timesheet
    await create_timesheet(db, employee, TimesheetCreate(week_start=WEEK1))
    with pytest.raises(ConflictError):
        await create_timesheet(db, employee, TimesheetCreate(week_start=WEEK1))


async def test_soft_deleted_week_can_be_recreated(db, employee):
    from app.core.timesheets.schemas import TimesheetCreate
    from app.core.timesheets.service import create_timesheet, soft_delete_timesheet, get_timesheet
    first = await create_timesheet(db, employee, TimesheetCreate(week_start=WEEK1))
    await soft_delete_timesheet(db, first.id, employee)
    assert await get_timesheet(db, first.id) is None
    second = await create_timesheet(db, employee, TimesheetCreate(week_start=WEEK1))
    assert second.id != first.id


async def test_entry_rollup_and_limits(db, employee, project, fill_week):
    from app.core.errors import ValidationError
    from app.core.timesheets.schemas import TimeEntryCreate
    from app.core.timesheets.service import add_entry
    sheet = await fill_week(employee, project, days=2, hours_per_day=10)
    assert sheet.total_hours == 20

    # 10 + 15 > 24 on the same day
    with pytest.raises(ValidationError):
        await add_entry(db, employee, sheet.id, TimeEntryCreate(project_id=project.id, work_date=WEEK1, hours=15))

    # Outside the week
    with pytest.raises(ValidationError) as exc:
        await add_entry(db, employee, sheet.id, TimeEntryCreate(project_id=project.id, work_date=WEEK2, hours=1))
    assert exc.value.field == "work_date"


async def test_week_total_limit(db, employee, project, fill_week, monkeypatch):
    from app.core.errors import ValidationError
    from app.core.timesheets.schemas import TimeEntryCreate
    from app.core.timesheets.service import add_entry
    from app.settings import get_settings
    monkeypatch.setattr(get_settings(), "MAX_HOURS_PER_WEEK", 40)
    sheet = await fill_week(employee, project, days=5, hours_per_day=8)
    with pytest.raises(ValidationError):
        await add_entry(db, employee, sheet.id, TimeEntryCreate(
            project_id=project.id, work_date=WEEK1 + timedelta(days=5), hours=1,
        ))


def test_entry_schema_rejects_negative_and_oversized_hours():
    import uuid
    from pydantic import ValidationError as SchemaError
    from app.core.timesheets.schemas import TimeEntryCreate
    with pytest.raises(SchemaError):
        TimeEntryCreate(project_id=uuid.uuid4(), work_date="2026-02-02", hours=-1)
    with pytest.raises(SchemaError):
        TimeEntryCreate(project_id=uuid.uuid4(), work_date="2026-02-02", hours=25)


async def test_only_owner_edits_entries(db, employee, manager, project, fill_week):
    from app.core.errors import PermissionDenied
    from app.core.timesheets.schemas import TimeEntryCreate
    from app.core.timesheets.service import add_entry
    sheet = await fill_week(employee, project, days=1)
    with pytest.raises(PermissionDenied):
        await add_entry(db, manager, sheet.id, TimeEntryCreate(project_id=project.id, work_date=WEEK1, hours=1))


async def test_unknown_project_rejected(db, employee, fill_week, project):
    import uuid
    from app.core.errors import ValidationError
    from app.core.timesheets.schemas import TimeEntryCreate
    from app.core.timesheets.service import add_entry
    sheet = await fill_week(employee, project, days=1)
    with pytest.raises(ValidationError):
        await add_entry(db, employee, sheet.id, TimeEntryCreate(project_id=uuid.uuid4(), work_date=WEEK1, hours=1))


async def test_update_and_delete_entry(db, employee, project, fill_week):
    from app.core.timesheets.schemas import TimeEntryUpdate
    from app.core.timesheets.service import list_entries, update_entry, delete_entry, require_timesheet
    sheet = await fill_week(employee, project, days=2, hours_per_day=8)
    first, second = await list_entries(db, sheet.id)

    await update_entry(db, employee, first.id, TimeEntryUpdate(hours=6, is_billable=False))
    assert (await require_timesheet(db, sheet.id)).total_hours == 14

    await delete_entry(db, employee, second.id)
    remaining = await list_entries(db, sheet.id)
    assert [e.id for e in remaining] == [first.id]
    assert (await require_timesheet(db, sheet.id)).total_hours == 6


async def test_submit_requires_entries(db, employee):
    from app.core.errors import StateConflict
    from app.core.timesheets.schemas import TimesheetCreate
    from app.core.timesheets.service import create_timesheet, submit_timesheet
    sheet = await create_timesheet(db, employee, TimesheetCreate(week_start=WEEK1))
    with pytest.raises(StateConflict):
        await submit_timesheet(db, sheet.id, employee)


async def test_submit_only_by_owner(db, employee, manager, project, fill_week):
    from app.core.errors import PermissionDenied
    from app.core.timesheets.service import submit_timesheet
    sheet = await fill_week(employee, project)
    with pytest.raises(PermissionDenied):
        await submit_timesheet(db, sheet.id, manager)


async def test_submit_opens_one_record_per_project(db, employee, make_project, fill_week):
    from app.core.approvals.service import list_approval_records
    from app.core.timesheets.service import submit_timesheet
    apollo = await make_project("Apollo", lead_required=True)
    gemini = await make_project("Gemini", manager_required=False)
    sheet = await fill_week(employee, apollo, days=2)
    await fill_week(employee, gemini, days=2, hours_per_day=4, billable=False, sheet=sheet)

    await submit_timesheet(db, sheet.id, employee)
    assert sheet.status == "submitted"

    records = {r.project_id: r for r in await list_approval_records(db, sheet.id)}
    assert set(records) == {apollo.id, gemini.id}
    assert records[apollo.id].lead_status == "pending"
    assert records[apollo.id].manager_status == "pending"
    assert records[apollo.id].worked_hours == 16
    assert records[gemini.id].lead_status == "not_required"
    assert records[gemini.id].manager_status == "not_required"
    assert records[gemini.id].worked_hours == 8
    assert records[gemini.id].billable_hours == 0


async def test_submit_is_idempotent(db, employee, project, fill_week):
    from app.core.approvals.service import list_approval_records
    from app.core.timesheets.service import submit_timesheet
    sheet = await fill_week(employee, project)
    await submit_timesheet(db, sheet.id, employee)
    await submit_timesheet(db, sheet.id, employee)
    assert len(await list_approval_records(db, sheet.id, include_history=True)) == 1


async def test_no_review_project_goes_straight_to_management(db, employee, make_project, fill_week):
    from app.core.timesheets.service import submit_timesheet
    project = await make_project(manager_required=False)
    sheet = await fill_week(employee, project)
    await submit_timesheet(db, sheet.id, employee)
    assert sheet.status == "management_pending"
    assert sheet.manager_approved_at is not None


async def test_entries_locked_after_submit(db, employee, project, fill_week):
    from app.core.errors import StateConflict
    from app.core.timesheets.schemas import TimeEntryCreate
    from app.core.timesheets.service import add_entry, submit_timesheet
    sheet = await fill_week(employee, project)
    await submit_timesheet(db, sheet.id, employee)
    with pytest.raises(StateConflict):
        await add_entry(db, employee, sheet.id, TimeEntryCreate(project_id=project.id, work_date=WEEK1, hours=1))


async def test_full_flow_to_frozen_and_billed(db, employee, boss, project, frozen_sheet):
    from app.core.timesheets.service import mark_billed
    sheet = await frozen_sheet(employee, project)
    assert sheet.status == "frozen"
    assert sheet.is_frozen is True
    assert sheet.frozen_by == boss.user_id

    await mark_billed(db, sheet.id, boss)
    assert sheet.status == "billed"
    assert sheet.billed_at is not None


async def test_frozen_timesheet_rejects_entry_changes(db, employee, project, frozen_sheet):
    from app.core.errors import StateConflict
    from app.core.timesheets.schemas import TimeEntryCreate, TimeEntryUpdate
    from app.core.timesheets.service import add_entry, update_entry, delete_entry, list_entries
    sheet = await frozen_sheet(employee, project)
    entry = (await list_entries(db, sheet.id))[0]
    with pytest.raises(StateConflict):
        await add_entry(db, employee, sheet.id, TimeEntryCreate(project_id=project.id, work_date=WEEK1, hours=1))
    with pytest.raises(StateConflict):
        await update_entry(db, employee, entry.id, TimeEntryUpdate(hours=1))
    with pytest.raises(StateConflict):
        await delete_entry(db, employee, entry.id)


async def test_freeze_blocked_by_pending_management(db, employee, boss, make_project, fill_week, approve_all):
    """One project still pending at the management tier: no freeze, no partial change."""
    from app.core.approvals.service import list_approval_records
    from app.core.errors import StateConflict
    from app.core.timesheets.service import submit_timesheet, freeze_if_eligible, require_timesheet
    apollo = await make_project("Apollo")
    gemini = await make_project("Gemini")
    sheet = await fill_week(employee, apollo, days=2)
    await fill_week(employee, gemini, days=2, sheet=sheet, week_start=WEEK1 + timedelta(days=2))
    await submit_timesheet(db, sheet.id, employee)
    await approve_all(sheet, tiers=("manager",))
    assert sheet.status == "management_pending"

    from app.core.approvals.service import advance_approval
    records = {r.project_id: r for r in await list_approval_records(db, sheet.id)}
    await advance_approval(db, records[apollo.id].id, "management", "approve", boss)

    with pytest.raises(StateConflict) as exc:
        await freeze_if_eligible(db, sheet.id, boss)
    blocking = exc.value.blocking
    assert [b["approval_record_id"] for b in blocking] == [records[gemini.id].id]

    sheet = await require_timesheet(db, sheet.id)
    assert sheet.status == "management_pending"
    assert sheet.is_frozen is False
    assert sheet.frozen_at is None


async def test_freeze_requires_management_role(db, employee, manager, project, fill_week, approve_all):
    from app.core.errors import PermissionDenied
    from app.core.timesheets.service import submit_timesheet, freeze_if_eligible
    sheet = await fill_week(employee, project)
    await submit_timesheet(db, sheet.id, employee)
    await approve_all(sheet)
    with pytest.raises(PermissionDenied):
        await freeze_if_eligible(db, sheet.id, manager)


async def test_freeze_too_early(db, employee, boss, project, fill_week):
    from app.core.errors import StateConflict
    from app.core.timesheets.service import submit_timesheet, freeze_if_eligible
    sheet = await fill_week(employee, project)
    await submit_timesheet(db, sheet.id, employee)
    with pytest.raises(StateConflict):
        await freeze_if_eligible(db, sheet.id, boss)


async def test_freeze_reports_missing_record(db, employee, boss, project, fill_week, approve_all):
    from sqlalchemy import delete
    from app.core.approvals.models import ApprovalRecord
    from app.core.errors import MissingApprovalRecord
    from app.core.timesheets.service import submit_timesheet, freeze_if_eligible
    sheet = await fill_week(employee, project)
    await submit_timesheet(db, sheet.id, employee)
    await approve_all(sheet)
    await db.execute(delete(ApprovalRecord).where(ApprovalRecord.timesheet_id == sheet.id))

    with pytest.raises(MissingApprovalRecord) as exc:
        await freeze_if_eligible(db, sheet.id, boss)
    assert exc.value.project_ids == [project.id]


async def test_bill_frozen_timesheets_in_window(db, employee, boss, project, frozen_sheet):
    from app.core.timesheets.service import bill_frozen_timesheets
    first = await frozen_sheet(employee, project, week_start=WEEK1)
    second = await frozen_sheet(employee, project, week_start=WEEK2)
    billed = await bill_frozen_timesheets(db, WEEK1, WEEK1 + timedelta(days=6), boss)
    assert [s.id for s in billed] == [first.id]
    assert first.status == "billed"
    assert second.status == "frozen"


async def test_soft_delete_only_draft(db, employee, project, fill_week):
    from app.core.errors import StateConflict
    from app.core.timesheets.service import submit_timesheet, soft_delete_timesheet
    sheet = await fill_week(employee, project)
    await submit_timesheet(db, sheet.id, employee)
    with pytest.raises(StateConflict):
        await soft_delete_timesheet(db, sheet.id, employee)


async def test_hard_delete_frozen_keeps_approval_history(db, employee, admin, boss, project, frozen_sheet):
    from app.core.approvals.service import list_approval_records
    from app.core.errors import PermissionDenied
    from app.core.timesheets.models import TimeEntry, Timesheet
    from app.core.timesheets.service import hard_delete_timesheet
    sheet = await frozen_sheet(employee, project)

    with pytest.raises(PermissionDenied):
        await hard_delete_timesheet(db, sheet.id, boss, "wrong week")
    await hard_delete_timesheet(db, sheet.id, admin, "wrong week")

    entries = (await db.execute(select(TimeEntry).where(TimeEntry.timesheet_id == sheet.id))).scalars().all()
    assert entries == []
    tomb = (await db.execute(select(Timesheet).where(Timesheet.id == sheet.id))).scalar_one()
    assert tomb.is_deleted and tomb.is_hard_deleted
    assert len(await list_approval_records(db, sheet.id)) == 1


async def test_transitions_are_audited(db, employee, project, frozen_sheet):
    from app.core.audit.models import AuditLog
    sheet = await frozen_sheet(employee, project)
    rows = (await db.execute(
        select(AuditLog).where(AuditLog.resource_type == "timesheet", AuditLog.resource_id == str(sheet.id))
        .order_by(AuditLog.created_at)
    )).scalars().all()
    transitions = [(r.status_before, r.status_after) for r in rows if r.status_before]
    assert transitions == [
        ("draft", "submitted"),
        ("submitted", "manager_approved"),
        ("manager_approved", "management_pending"),
        ("management_pending", "frozen"),
    ]


async def test_failing_audit_sink_does_not_block_transition(db, employee, project, fill_week, monkeypatch, caplog):
    import logging
    from app.core.audit import service as audit_service
    from app.core.audit.models import AuditLog
    from app.core.timesheets.service import submit_timesheet, require_timesheet

    class BrokenSink:
        def __init__(self, db):
            pass

        async def deliver(self, event):
            raise RuntimeError("audit store unavailable")

    sheet = await fill_week(employee, project)
    monkeypatch.setattr(audit_service, "DbAuditSink", BrokenSink)
    caplog.set_level(logging.ERROR, logger="app.core.audit.service")

    await submit_timesheet(db, sheet.id, employee)
    await db.commit()

    db.expire_all()
    stored = await require_timesheet(db, sheet.id)
    assert stored.status == "submitted"
    assert (await db.execute(select(AuditLog).where(AuditLog.resource_id == str(sheet.id)))).first() is None
    errors = [r for r in caplog.records if r.levelno == logging.ERROR and r.name == "app.core.audit.service"]
    assert errors
    assert "Audit delivery failed" in errors[0].getMessage()
    assert errors[0].exc_info[0] is RuntimeError


# ── Project weeks ─────────────────────────────────────────────────────────────

async def _reviewed_team_week(db, make_user, project, fill_week, approve_all, names=("ana", "ben")):
    from app.core.timesheets.service import submit_timesheet
    sheets = []
    for name in names:
        user = await make_user(name)
        sheet = await fill_week(user, project, days=2)
        await submit_timesheet(db, sheet.id, user)
        await approve_all(sheet)
        sheets.append(sheet)
    return sheets


async def test_freeze_project_week(db, make_user, boss, project, fill_week, approve_all):
    from app.core.timesheets.service import freeze_project_week
    sheets = await _reviewed_team_week(db, make_user, project, fill_week, approve_all)

    outcome = await freeze_project_week(db, project.id, WEEK1, boss)
    assert outcome.frozen_count == 2
    assert outcome.skipped == [] and outcome.failed == []
    assert all(s.status == "frozen" and s.frozen_by == boss.user_id for s in sheets)

    again = await freeze_project_week(db, project.id, WEEK1, boss)
    assert again.frozen_count == 0
    assert [s["status"] for s in again.skipped] == ["frozen", "frozen"]


async def test_freeze_project_week_reports_unapproved_sheet(db, make_user, boss, project, fill_week, approve_all):
    from app.core.timesheets.service import freeze_project_week, submit_timesheet
    (ready,) = await _reviewed_team_week(db, make_user, project, fill_week, approve_all, names=("ana",))
    late = await make_user("ben")
    waiting = await fill_week(late, project, days=1)
    await submit_timesheet(db, waiting.id, late)
    await approve_all(waiting, tiers=("manager",))
    assert waiting.status == "management_pending"

    outcome = await freeze_project_week(db, project.id, WEEK1, boss)
    assert outcome.frozen == [ready.id]
    assert [f["timesheet_id"] for f in outcome.failed] == [waiting.id]
    assert waiting.status == "management_pending"


async def test_freeze_project_week_blocked_while_in_review(db, make_user, boss, project, fill_week, approve_all):
    from app.core.errors import PermissionDenied, StateConflict
    from app.core.timesheets.service import freeze_project_week, submit_timesheet
    (ready,) = await _reviewed_team_week(db, make_user, project, fill_week, approve_all, names=("ana",))
    late = await make_user("ben")
    pending = await fill_week(late, project, days=1)
    await submit_timesheet(db, pending.id, late)

    with pytest.raises(PermissionDenied):
        await freeze_project_week(db, project.id, WEEK1, late)
    with pytest.raises(StateConflict) as exc:
        await freeze_project_week(db, project.id, WEEK1, boss)
    assert exc.value.blocking == [{"timesheet_id": pending.id, "status": "submitted"}]
    assert ready.status == "management_pending"

    with pytest.raises(StateConflict):
        await freeze_project_week(db, project.id, WEEK2, boss)
