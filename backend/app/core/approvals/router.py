import uuid
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.approvals import service
from app.core.approvals.schemas import (
    ApprovalDecision, ApprovalRecordRead, MissingRecordRead,
    ProjectWeekDecisionRequest, ProjectWeekDecisionRead,
)
from app.core.dates import UtcDate
from app.core.directory.service import Actor, require_override
from app.core.timesheets.service import require_timesheet
from app.dependencies import get_db, get_current_actor

router = APIRouter(tags=["approvals"])


@router.get("/timesheets/{timesheet_id}/approvals", response_model=list[ApprovalRecordRead])
async def list_approval_records(
    timesheet_id: uuid.UUID,
    include_history: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    _: Actor = Depends(get_current_actor),
):
    await require_timesheet(db, timesheet_id)
    return await service.list_approval_records(db, timesheet_id, include_history)


@router.get("/approvals/pending", response_model=list[ApprovalRecordRead])
async def list_pending(
    tier: str = Query(...),
    project_id: uuid.UUID | None = Query(None),
    db: AsyncSession = Depends(get_db),
    _: Actor = Depends(get_current_actor),
):
    return await service.list_pending_for_tier(db, tier, project_id)


@router.post("/approvals/{record_id}/decision", response_model=ApprovalRecordRead)
async def advance_approval(
    record_id: uuid.UUID,
    data: ApprovalDecision,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await service.advance_approval(
        db, record_id, data.tier, data.decision, actor,
        reason=data.reason, expected_version=data.expected_version,
    )


@router.post("/projects/{project_id}/weeks/{week_start}/decision", response_model=ProjectWeekDecisionRead)
async def decide_project_week(
    project_id: uuid.UUID,
    week_start: UtcDate,
    data: ProjectWeekDecisionRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Apply one tier decision to every timesheet of a project week."""
    if data.decision == "approve":
        return await service.approve_project_week(db, project_id, week_start, data.tier, actor)
    return await service.reject_project_week(db, project_id, week_start, data.tier, actor, data.reason)


@router.get("/approvals/missing", response_model=list[MissingRecordRead])
async def find_missing(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    require_override(actor, "inspect missing approval records")
    return await service.find_missing_approval_records(db)


@router.post("/approvals/reconcile", response_model=list[ApprovalRecordRead])
async def reconcile(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Operator-triggered repair of missing approval records."""
    return await service.reconcile_missing_approval_records(db, actor)
