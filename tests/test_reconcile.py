import pytest
from datetime import date, timedelta

from sqlalchemy import delete

WEEK1 = date(2026, 2, 2)
WEEK1_END = date(2026, 2, 8)


async def _orphaned(db, employee, make_project, frozen_sheet, fill_week):
    """Frozen two-project timesheet whose Gemini record was lost."""
    from app.core.approvals.models import ApprovalRecord
    apollo = await make_project("Apollo")
    gemini = await make_project("Gemini")
    sheet = await fill_week(employee, apollo, days=2)
    await frozen_sheet(employee, gemini, days=2, sheet=sheet, week_start=WEEK1 + timedelta(days=2))
    await db.execute(delete(ApprovalRecord).where(ApprovalRecord.project_id == gemini.id))
    return sheet, apollo, gemini


async def test_find_missing_records(db, employee, make_project, frozen_sheet, fill_week):
    from app.core.approvals.service import find_missing_approval_records
    sheet, apollo, gemini = await _orphaned(db, employee, make_project, frozen_sheet, fill_week)
    missing = await find_missing_approval_records(db)
    assert [(m.timesheet_id, m.project_id, m.timesheet_status) for m in missing] == [
        (sheet.id, gemini.id, "frozen"),
    ]
    assert await find_missing_approval_records(db, timesheet_id=sheet.id) == missing


async def test_drafts_are_never_missing_anything(db, employee, project, fill_week):
    from app.core.approvals.service import find_missing_approval_records
    await fill_week(employee, project)
    assert await find_missing_approval_records(db) == []


async def test_reconcile_creates_pending_records_once(db, employee, admin, make_project, frozen_sheet, fill_week):
    from app.core.approvals.service import (
        find_missing_approval_records, list_approval_records, reconcile_missing_approval_records,
    )
    sheet, apollo, gemini = await _orphaned(db, employee, make_project, frozen_sheet, fill_week)

    created = await reconcile_missing_approval_records(db, admin)
    assert len(created) == 1
    record = created[0]
    assert (record.timesheet_id, record.project_id) == (sheet.id, gemini.id)
    assert record.manager_status == "pending"
    assert record.management_status == "pending"
    assert record.worked_hours == 16
    assert sheet.status == "frozen"

    assert await find_missing_approval_records(db) == []
    assert await reconcile_missing_approval_records(db, admin) == []
    assert len(await list_approval_records(db, sheet.id)) == 2


async def test_reconciled_record_reviews_into_billing(
    db, employee, manager, boss, admin, make_project, frozen_sheet, fill_week,
):
    from app.core.approvals.service import advance_approval, reconcile_missing_approval_records
    from app.core.billing.service import aggregate_billing
    sheet, apollo, gemini = await _orphaned(db, employee, make_project, frozen_sheet, fill_week)

    before = await aggregate_billing(db, WEEK1, WEEK1_END)
    assert [f.project_id for f in before.flags] == [gemini.id]

    (record,) = await reconcile_missing_approval_records(db, admin)
    pending = await aggregate_billing(db, WEEK1, WEEK1_END)
    assert pending.flags == []
    assert pending.get(employee.user_id, gemini.id) is None

    await advance_approval(db, record.id, "manager", "approve", manager)
    await advance_approval(db, record.id, "management", "approve", boss)
    after = await aggregate_billing(db, WEEK1, WEEK1_END)
    assert after.get(employee.user_id, gemini.id).billable_hours == 16
    assert after.get(employee.user_id, apollo.id).billable_hours == 16
    assert sheet.status == "frozen"


async def test_reconcile_requires_override_role(db, boss):
    from app.core.approvals.service import reconcile_missing_approval_records
    from app.core.errors import PermissionDenied
    with pytest.raises(PermissionDenied):
        await reconcile_missing_approval_records(db, boss)
