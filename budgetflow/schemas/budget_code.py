from datetime import date
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

from budgetflow.models.budget_code import BUDGET_PERIODS, BUDGET_TYPES


class BudgetCodeCreate(BaseModel):
    code: str = Field(..., min_length=2, max_length=50, pattern=r"^[A-Za-z0-9_-]+$")
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    department_id: Optional[str] = None
    budget_type: str
    budget_period: str
    fiscal_year: int = Field(..., ge=2000, le=2100)
    budget_owner: Optional[str] = Field(None, max_length=200)
    total_cents: int = Field(..., gt=0)
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @field_validator("budget_type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in BUDGET_TYPES:
            raise ValueError(f"Invalid budget type. Must be one of: {BUDGET_TYPES}")
        return v

    @field_validator("budget_period")
    @classmethod
    def validate_period(cls, v: str) -> str:
        if v not in BUDGET_PERIODS:
            raise ValueError(f"Invalid budget period. Must be one of: {BUDGET_PERIODS}")
        return v


class BudgetCodeUpdate(BaseModel):
    """Metadata only. The total changes through a revision."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    budget_owner: Optional[str] = Field(None, max_length=200)
    end_date: Optional[date] = None
    active: Optional[bool] = None


class BudgetCodeResponse(BaseModel):
    id: str
    code: str
    name: str
    description: Optional[str] = None
    department_id: Optional[str] = None
    budget_type: str
    budget_period: str
    fiscal_year: int
    budget_owner: Optional[str] = None
    total_cents: int
    used_cents: int
    committed_cents: int
    remaining_cents: int
    utilization_percentage: float
    utilization_status: str
    active: bool
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    created_at: str
    updated_at: str


class ReserveRequest(BaseModel):
    request_id: str
    amount_cents: int = Field(..., gt=0)
    request_type: str = "PURCHASE_REQUISITION"


class DeductRequest(BaseModel):
    request_id: str
    amount_cents: int = Field(..., gt=0)
    disbursement_ref: str = Field(..., min_length=1, max_length=100)


class ReturnRequest(BaseModel):
    request_id: str
    amount_cents: int = Field(..., gt=0)


class ReleaseRequest(BaseModel):
    request_id: str
    reason: str = Field(..., min_length=3, max_length=1000)


class AllocationResponse(BaseModel):
    id: str
    request_type: str
    request_id: str
    amount_cents: int
    status: str
    actual_spent_cents: int
    disbursement_count: int
    balance_returned_cents: int
    outstanding_cents: int
    allocated_at: str
    first_spent_at: Optional[str] = None
    last_disbursement_at: Optional[str] = None
    released_at: Optional[str] = None
    release_reason: Optional[str] = None


class TransactionResponse(BaseModel):
    id: str
    type: str
    request_id: str
    amount_cents: int
    balance_before_cents: int
    balance_after_cents: int
    used_after_cents: int
    disbursement_ref: Optional[str] = None
    actor_id: Optional[str] = None
    description: Optional[str] = None
    created_at: str


class LedgerOperationResponse(BaseModel):
    applied: bool
    allocation: AllocationResponse
    transaction: Optional[TransactionResponse] = None
    budget_code: BudgetCodeResponse


class RevisionCreate(BaseModel):
    new_total_cents: int = Field(..., gt=0)
    reason: str = Field(..., min_length=10, max_length=1000)


class RevisionDecisionRequest(BaseModel):
    comments: Optional[str] = Field(None, max_length=1000)


class RevisionResponse(BaseModel):
    id: str
    budget_code_id: str
    previous_cents: int
    requested_cents: int
    change_cents: int
    reason: str
    requested_by: Optional[str] = None
    status: str
    decided_at: Optional[str] = None
    applied_at: Optional[str] = None
    created_at: str
    approval_chain: List[dict] = []


class MonthlySpend(BaseModel):
    month: str
    spent_cents: int


class ForecastResponse(BaseModel):
    budget_code: str
    remaining_cents: int
    monthly_spend: List[MonthlySpend] = []
    average_monthly_burn_cents: int
    months_remaining: Optional[float] = None
    projected_exhaustion_date: Optional[date] = None
    status: str


class UtilizationResponse(BaseModel):
    budget_code: str
    total_cents: int
    used_cents: int
    committed_cents: int
    remaining_cents: int
    utilization_percentage: float
    status: str


class TransferCreate(BaseModel):
    from_budget_code: str = Field(..., min_length=1, max_length=50)
    to_budget_code: str = Field(..., min_length=1, max_length=50)
    amount_cents: int = Field(..., gt=0)
    reason: str = Field(..., min_length=10, max_length=1000)


class TransferDecisionRequest(BaseModel):
    comments: Optional[str] = Field(None, max_length=1000)


class TransferCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class TransferResponse(BaseModel):
    id: str
    from_budget_code_id: str
    from_budget_code: Optional[str] = None
    to_budget_code_id: str
    to_budget_code: Optional[str] = None
    amount_cents: int
    reason: str
    requested_by: Optional[str] = None
    status: str
    decided_at: Optional[str] = None
    rejection_reason: Optional[str] = None
    executed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    created_at: str
