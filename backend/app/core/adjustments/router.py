import uuid
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.adjustments import service
from app.core.adjustments.schemas import (
    AdjustmentCreate, AdjustmentSupersede, AdjustmentStatusChange,
    AdjustmentRead, AdjustmentEventRead, EffectiveBillableRead,
)
from app.core.dates import UtcDate
from app.core.directory.service import Actor, require_management
from app.core.errors import NotFound
from app.dependencies import get_db, get_current_actor

router = APIRouter(prefix="/billing", tags=["billing adjustments"])


@router.post("/adjustments", response_model=AdjustmentRead, status_code=201)
async def create_adjustment(
    data: AdjustmentCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await service.create_adjustment(
        db, actor, data.user_id, data.project_id,
        data.billing_period_start, data.billing_period_end,
        data.adjustment_hours, data.reason,
    )


@router.get("/adjustments", response_model=list[AdjustmentRead])
async def list_adjustments(
    user_id: uuid.UUID | None = Query(None),
    project_id: uuid.UUID | None = Query(None),
    start: UtcDate | None = Query(None),
    end: UtcDate | None = Query(None),
    include_deleted: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    require_management(actor, "view billing adjustments")
    return await service.list_adjustments(
        db, user_id=user_id, project_id=project_id,
        start=start, end=end, include_deleted=include_deleted,
    )


@router.get("/adjustments/{adjustment_id}", response_model=AdjustmentRead)
async def get_adjustment(
    adjustment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    require_management(actor, "view billing adjustments")
    adjustment = await service.get_adjustment(db, adjustment_id)
    if not adjustment:
        raise NotFound("BillingAdjustment", adjustment_id)
    return adjustment


@router.get("/adjustments/{adjustment_id}/history", response_model=list[AdjustmentEventRead])
async def adjustment_history(
    adjustment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    require_management(actor, "view billing adjustments")
    return await service.adjustment_history(db, adjustment_id)


@router.post("/adjustments/{adjustment_id}/supersede", response_model=AdjustmentRead, status_code=201)
async def supersede_adjustment(
    adjustment_id: uuid.UUID,
    data: AdjustmentSupersede,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await service.supersede_adjustment(db, actor, adjustment_id, data.adjustment_hours, data.reason)


@router.post("/adjustments/{adjustment_id}/delete", response_model=AdjustmentRead)
async def soft_delete_adjustment(
    adjustment_id: uuid.UUID,
    data: AdjustmentStatusChange,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await service.soft_delete_adjustment(db, actor, adjustment_id, data.reason)


@router.post("/adjustments/{adjustment_id}/restore", response_model=AdjustmentRead)
async def restore_adjustment(
    adjustment_id: uuid.UUID,
    data: AdjustmentStatusChange,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await service.restore_adjustment(db, actor, adjustment_id, data.reason)


@router.get("/effective", response_model=EffectiveBillableRead)
async def effective_billable_hours(
    user_id: uuid.UUID = Query(...),
    project_id: uuid.UUID = Query(...),
    start: UtcDate = Query(...),
    end: UtcDate = Query(...),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    require_management(actor, "view billing")
    return await service.effective_billable_hours(db, user_id, project_id, start, end)
