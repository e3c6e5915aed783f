import uuid
from datetime import datetime, date
from typing import Any
from pydantic import BaseModel, Field, model_validator

from app.core.dates import UtcDate


# ── Timesheet ─────────────────────────────────────────────────────────────────

class TimesheetCreate(BaseModel):
    week_start: UtcDate  # Must be a Monday in UTC


class TimesheetRead(BaseModel):
    model_config = {"from_attributes": True}
    id: uuid.UUID
    user_id: uuid.UUID
    week_start: date
    week_end: date
    status: str
    is_frozen: bool
    total_hours: float
    submitted_at: datetime | None
    manager_approved_at: datetime | None
    frozen_at: datetime | None
    frozen_by: uuid.UUID | None
    billed_at: datetime | None
    billed_by: uuid.UUID | None
    rejected_at: datetime | None
    rejected_by: uuid.UUID | None
    rejection_reason: str | None
    created_at: datetime


class HardDeleteRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class BillingWindow(BaseModel):
    start: UtcDate
    end: UtcDate

    @model_validator(mode="after")
    def validate_window(self) -> "BillingWindow":
        if self.start > self.end:
            raise ValueError("start must be on or before end")
        return self


# ── Time entries ──────────────────────────────────────────────────────────────

class TimeEntryCreate(BaseModel):
    project_id: uuid.UUID
    task_id: uuid.UUID | None = None
    work_date: UtcDate
    hours: float = Field(..., ge=0, le=24)
    is_billable: bool = True
    description: str | None = None


class TimeEntryUpdate(BaseModel):
    project_id: uuid.UUID | None = None
    task_id: uuid.UUID | None = None
    work_date: UtcDate | None = None
    hours: float | None = Field(None, ge=0, le=24)
    is_billable: bool | None = None
    description: str | None = None


class TimeEntryRead(BaseModel):
    model_config = {"from_attributes": True}
    id: uuid.UUID
    timesheet_id: uuid.UUID
    user_id: uuid.UUID
    project_id: uuid.UUID
    task_id: uuid.UUID | None
    work_date: date
    hours: float
    is_billable: bool
    description: str | None
    created_at: datetime


class ProjectWeekFreezeRead(BaseModel):
    model_config = {"from_attributes": True}
    project_id: uuid.UUID
    week_start: date
    frozen: list[uuid.UUID]
    skipped: list[dict[str, Any]]
    failed: list[dict[str, Any]]
    frozen_count: int
