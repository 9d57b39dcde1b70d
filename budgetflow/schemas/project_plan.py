from datetime import date
from typing import Optional
from pydantic import BaseModel, Field, model_validator


class ProjectPlanCreate(BaseModel):
    department_id: Optional[str] = None
    title: str = Field(..., min_length=3, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    estimated_cost_cents: int = Field(0, ge=0)
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @model_validator(mode="after")
    def check_dates(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class ProjectPlanResponse(BaseModel):
    id: str
    plan_number: str
    requester_id: str
    requester_email: str
    department_id: str
    title: str
    description: Optional[str] = None
    estimated_cost_cents: int
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: str
    created_at: str
    updated_at: str
    submitted_at: Optional[str] = None
    approved_at: Optional[str] = None
    rejected_at: Optional[str] = None


class PlanDecisionRequest(BaseModel):
    comments: Optional[str] = Field(None, max_length=1000)
