import uuid
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.billing import service
from app.core.billing.schemas import BillingAggregateRead, BillingSummaryRead, WeeklyBreakdownRead
from app.core.dates import UtcDate
from app.core.directory.service import Actor, require_management
from app.dependencies import get_db, get_current_actor

router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/aggregate", response_model=BillingAggregateRead)
async def aggregate_billing(
    start: UtcDate = Query(...),
    end: UtcDate = Query(...),
    user_id: uuid.UUID | None = Query(None),
    project_id: uuid.UUID | None = Query(None),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    require_management(actor, "view billing")
    return await service.aggregate_billing(db, start, end, user_id=user_id, project_id=project_id)


@router.get("/summary", response_model=BillingSummaryRead)
async def billing_summary(
    start: UtcDate = Query(...),
    end: UtcDate = Query(...),
    project_id: uuid.UUID | None = Query(None),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    require_management(actor, "view billing")
    return await service.billing_summary(db, start, end, project_id=project_id)


@router.get("/weekly", response_model=list[WeeklyBreakdownRead])
async def weekly_breakdown(
    start: UtcDate = Query(...),
    end: UtcDate = Query(...),
    user_id: uuid.UUID | None = Query(None),
    project_id: uuid.UUID | None = Query(None),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    require_management(actor, "view billing")
    return await service.weekly_breakdown(db, start, end, user_id=user_id, project_id=project_id)
