import uuid
from datetime import date, datetime
from typing import Any, Literal
from pydantic import BaseModel, Field, model_validator


class ApprovalDecision(BaseModel):
    tier: Literal["lead", "manager", "management"]
    decision: Literal["approve", "reject"]
    reason: str | None = Field(None, max_length=2000)
    # Version the client last read; a mismatch is a retryable conflict
    expected_version: int | None = None

    @model_validator(mode="after")
    def validate_reason(self) -> "ApprovalDecision":
        if self.decision == "reject" and not (self.reason and self.reason.strip()):
            raise ValueError("reason is required when rejecting")
        return self


class ApprovalRecordRead(BaseModel):
    model_config = {"from_attributes": True}
    id: uuid.UUID
    timesheet_id: uuid.UUID
    project_id: uuid.UUID
    user_id: uuid.UUID
    lead_status: str
    lead_decided_at: datetime | None
    lead_decided_by: uuid.UUID | None
    lead_reason: str | None
    manager_status: str
    manager_decided_at: datetime | None
    manager_decided_by: uuid.UUID | None
    manager_reason: str | None
    management_status: str
    management_decided_at: datetime | None
    management_decided_by: uuid.UUID | None
    management_reason: str | None
    worked_hours: float
    billable_hours: float
    is_current: bool
    superseded_at: datetime | None
    superseded_by_id: uuid.UUID | None
    version: int
    created_at: datetime


class MissingRecordRead(BaseModel):
    model_config = {"from_attributes": True}
    timesheet_id: uuid.UUID
    project_id: uuid.UUID
    user_id: uuid.UUID
    timesheet_status: str


class ProjectWeekDecisionRequest(BaseModel):
    tier: Literal["lead", "manager", "management"]
    decision: Literal["approve", "reject"]
    reason: str | None = Field(None, max_length=2000)

    @model_validator(mode="after")
    def validate_reason(self) -> "ProjectWeekDecisionRequest":
        if self.decision == "reject" and not (self.reason and self.reason.strip()):
            raise ValueError("reason is required when rejecting")
        return self


class ProjectWeekDecisionRead(BaseModel):
    model_config = {"from_attributes": True}
    project_id: uuid.UUID
    week_start: date
    tier: str
    decision: str
    processed: list[uuid.UUID]
    skipped: list[dict[str, Any]]
    failed: list[dict[str, Any]]
    processed_count: int
