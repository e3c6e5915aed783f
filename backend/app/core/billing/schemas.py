import uuid
from datetime import date
from pydantic import BaseModel


class BillingRowRead(BaseModel):
    model_config = {"from_attributes": True}
    user_id: uuid.UUID
    project_id: uuid.UUID
    worked_hours: float
    billable_hours: float


class BillingFlagRead(BaseModel):
    model_config = {"from_attributes": True}
    timesheet_id: uuid.UUID
    project_id: uuid.UUID | None
    user_id: uuid.UUID
    reason: str
    message: str


class BillingAggregateRead(BaseModel):
    model_config = {"from_attributes": True}
    start: date
    end: date
    rows: list[BillingRowRead]
    flags: list[BillingFlagRead]


class UserLineRead(BaseModel):
    model_config = {"from_attributes": True}
    user_id: uuid.UUID
    worked_hours: float
    billable_hours: float
    effective_billable_hours: float
    adjustment_id: uuid.UUID | None


class ProjectSummaryRead(BaseModel):
    model_config = {"from_attributes": True}
    project_id: uuid.UUID
    worked_hours: float
    billable_hours: float
    effective_billable_hours: float
    users: list[UserLineRead]


class BillingSummaryRead(BaseModel):
    model_config = {"from_attributes": True}
    start: date
    end: date
    projects: list[ProjectSummaryRead]
    total_worked_hours: float
    total_billable_hours: float
    total_effective_billable_hours: float
    flags: list[BillingFlagRead]


class WeeklyBreakdownRead(BaseModel):
    model_config = {"from_attributes": True}
    week_start: date
    start: date
    end: date
    worked_hours: float
    billable_hours: float
    rows: list[BillingRowRead]
    flags: list[BillingFlagRead]
