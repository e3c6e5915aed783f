import uuid
from datetime import date
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.dates import UtcDate
from app.core.directory.service import Actor
from app.core.timesheets import service
from app.core.timesheets.schemas import (
    TimesheetCreate, TimesheetRead, HardDeleteRequest, BillingWindow, ProjectWeekFreezeRead,
    TimeEntryCreate, TimeEntryUpdate, TimeEntryRead,
)
from app.dependencies import get_db, get_current_actor

router = APIRouter(tags=["timesheets"])


# ── Timesheets ────────────────────────────────────────────────────────────────

@router.post("/timesheets", response_model=TimesheetRead, status_code=201)
async def create_timesheet(
    data: TimesheetCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await service.create_timesheet(db, actor, data)


@router.get("/timesheets", response_model=list[TimesheetRead])
async def list_timesheets(
    user_id: uuid.UUID | None = Query(None),
    status: str | None = Query(None),
    week_from: date | None = Query(None),
    week_to: date | None = Query(None),
    db: AsyncSession = Depends(get_db),
    _: Actor = Depends(get_current_actor),
):
    return await service.list_timesheets(db, user_id=user_id, status=status, week_from=week_from, week_to=week_to)


@router.get("/timesheets/{timesheet_id}", response_model=TimesheetRead)
async def get_timesheet(
    timesheet_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _: Actor = Depends(get_current_actor),
):
    return await service.require_timesheet(db, timesheet_id)


@router.post("/timesheets/{timesheet_id}/submit", response_model=TimesheetRead)
async def submit_timesheet(
    timesheet_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await service.submit_timesheet(db, timesheet_id, actor)


@router.post("/timesheets/{timesheet_id}/reopen", response_model=TimesheetRead)
async def reopen_timesheet(
    timesheet_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await service.reopen_timesheet(db, timesheet_id, actor)


@router.post("/timesheets/{timesheet_id}/freeze", response_model=TimesheetRead)
async def freeze_timesheet(
    timesheet_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await service.freeze_if_eligible(db, timesheet_id, actor)


@router.post("/projects/{project_id}/weeks/{week_start}/freeze", response_model=ProjectWeekFreezeRead)
async def freeze_project_week(
    project_id: uuid.UUID,
    week_start: UtcDate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await service.freeze_project_week(db, project_id, week_start, actor)


@router.post("/timesheets/{timesheet_id}/bill", response_model=TimesheetRead)
async def mark_billed(
    timesheet_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await service.mark_billed(db, timesheet_id, actor)


@router.post("/timesheets/bill", response_model=list[TimesheetRead])
async def bill_frozen_timesheets(
    data: BillingWindow,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Bulk frozen → billed for one invoicing window."""
    return await service.bill_frozen_timesheets(db, data.start, data.end, actor)


@router.delete("/timesheets/{timesheet_id}", status_code=204)
async def delete_timesheet(
    timesheet_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    await service.soft_delete_timesheet(db, timesheet_id, actor)


@router.post("/timesheets/{timesheet_id}/hard-delete", status_code=204)
async def hard_delete_timesheet(
    timesheet_id: uuid.UUID,
    data: HardDeleteRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    await service.hard_delete_timesheet(db, timesheet_id, actor, data.reason)


# ── Time entries ──────────────────────────────────────────────────────────────

@router.post("/timesheets/{timesheet_id}/entries", response_model=TimeEntryRead, status_code=201)
async def add_entry(
    timesheet_id: uuid.UUID,
    data: TimeEntryCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await service.add_entry(db, actor, timesheet_id, data)


@router.get("/timesheets/{timesheet_id}/entries", response_model=list[TimeEntryRead])
async def list_entries(
    timesheet_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _: Actor = Depends(get_current_actor),
):
    await service.require_timesheet(db, timesheet_id)
    return await service.list_entries(db, timesheet_id)


@router.patch("/time-entries/{entry_id}", response_model=TimeEntryRead)
async def update_entry(
    entry_id: uuid.UUID,
    data: TimeEntryUpdate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await service.update_entry(db, actor, entry_id, data)


@router.delete("/time-entries/{entry_id}", status_code=204)
async def delete_entry(
    entry_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    await service.delete_entry(db, actor, entry_id)
