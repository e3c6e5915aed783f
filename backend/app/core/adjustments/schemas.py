import uuid
from datetime import datetime, date
from pydantic import BaseModel, Field, model_validator

from app.core.dates import UtcDate
from app.core.billing.schemas import BillingFlagRead


class AdjustmentCreate(BaseModel):
    user_id: uuid.UUID
    project_id: uuid.UUID
    billing_period_start: UtcDate
    billing_period_end: UtcDate
    adjustment_hours: float = Field(..., allow_inf_nan=False)  # signed delta
    reason: str = Field(..., min_length=1, max_length=2000)

    @model_validator(mode="after")
    def validate_period(self) -> "AdjustmentCreate":
        if self.billing_period_start > self.billing_period_end:
            raise ValueError("billing_period_start must be on or before billing_period_end")
        return self


class AdjustmentSupersede(BaseModel):
    adjustment_hours: float = Field(..., allow_inf_nan=False)
    reason: str = Field(..., min_length=1, max_length=2000)


class AdjustmentStatusChange(BaseModel):
    reason: str | None = Field(None, max_length=2000)


class AdjustmentRead(BaseModel):
    model_config = {"from_attributes": True}
    id: uuid.UUID
    user_id: uuid.UUID
    project_id: uuid.UUID
    billing_period_start: date
    billing_period_end: date
    total_worked_hours: float
    adjustment_hours: float
    total_billable_hours: float
    original_billable_hours: float
    adjusted_billable_hours: float
    reason: str | None
    adjusted_by: uuid.UUID
    adjusted_at: datetime
    status: str
    deleted_at: datetime | None
    deleted_by: uuid.UUID | None
    supersedes_id: uuid.UUID | None


class AdjustmentEventRead(BaseModel):
    model_config = {"from_attributes": True}
    id: uuid.UUID
    adjustment_id: uuid.UUID
    action: str
    status_before: str | None
    status_after: str
    actor_id: uuid.UUID
    reason: str | None
    occurred_at: datetime


class EffectiveBillableRead(BaseModel):
    model_config = {"from_attributes": True}
    user_id: uuid.UUID
    project_id: uuid.UUID
    start: date
    end: date
    hours: float
    source: str
    worked_hours: float
    unadjusted_billable_hours: float
    adjustment_id: uuid.UUID | None
    flags: list[BillingFlagRead]
