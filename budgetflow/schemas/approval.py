from typing import List, Optional
from pydantic import BaseModel, Field


class ApprovalStepResponse(BaseModel):
    id: str
    entity_type: str
    entity_id: str
    cycle: int = 1
    level: int
    stage: str
    approver_name: str
    approver_email: str
    approver_role: str
    approver_department: Optional[str] = None
    status: str
    comments: Optional[str] = None
    decided_at: Optional[str] = None
    created_at: str


class ChainSummary(BaseModel):
    total: int
    approved: int
    pending: int
    rejected: int
    progress: int
    current_level: Optional[int] = None
    is_complete: bool
    is_terminated: bool


class ApprovalChainResponse(BaseModel):
    entity_type: str
    entity_id: str
    steps: List[ApprovalStepResponse] = []
    summary: ChainSummary


class ApprovalActionRequest(BaseModel):
    comments: Optional[str] = Field(None, max_length=1000)
