from typing import List, Optional
from pydantic import BaseModel, Field


class PrLineItemCreate(BaseModel):
    description: str = Field(..., min_length=3, max_length=500)
    quantity: int = Field(..., ge=1, le=999999)
    unit_price_cents: int = Field(..., ge=1)
    measuring_unit: Optional[str] = Field(None, max_length=50)
    category: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=1000)


class PurchaseRequisitionCreate(BaseModel):
    department_id: Optional[str] = None
    title: str = Field(..., min_length=3, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    justification: Optional[str] = None
    urgency: str = Field("medium", pattern=r"^(low|medium|high|critical)$")
    line_items: List[PrLineItemCreate] = Field(..., min_length=1, max_length=100)


class PurchaseRequisitionUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=3, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    justification: Optional[str] = None
    urgency: Optional[str] = Field(None, pattern=r"^(low|medium|high|critical)$")
    line_items: Optional[List[PrLineItemCreate]] = None


class ResubmitRequest(PurchaseRequisitionUpdate):
    resubmission_notes: Optional[str] = Field(None, max_length=2000)


class PrRejectionResponse(BaseModel):
    cycle: int
    previous_status: str
    level: Optional[int] = None
    stage: Optional[str] = None
    rejector_name: Optional[str] = None
    rejector_role: Optional[str] = None
    reason: Optional[str] = None
    rejected_at: Optional[str] = None
    resubmitted_at: str
    resubmission_notes: Optional[str] = None


class PrLineItemResponse(BaseModel):
    id: str
    line_number: int
    description: str
    quantity: int
    unit_price_cents: int
    measuring_unit: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None

    model_config = {"from_attributes": True}


class PurchaseRequisitionResponse(BaseModel):
    id: str
    requisition_number: str
    requester_id: str
    requester_email: str
    department_id: str
    title: str
    status: str
    urgency: str
    total_cents: int
    currency: str
    description: Optional[str] = None
    justification: Optional[str] = None
    budget_code_id: Optional[str] = None
    finance_assigned_cents: Optional[int] = None
    finance_cost_center: Optional[str] = None
    finance_comments: Optional[str] = None
    sourcing_type: Optional[str] = None
    purchase_type: Optional[str] = None
    assigned_buyer_id: Optional[str] = None
    supply_chain_comments: Optional[str] = None
    head_comments: Optional[str] = None
    line_items: List[PrLineItemResponse] = []
    resubmission_count: int = 0
    rejection_history: List[PrRejectionResponse] = []
    created_at: str
    updated_at: str
    submitted_at: Optional[str] = None
    approved_at: Optional[str] = None
    rejected_at: Optional[str] = None
    cancelled_at: Optional[str] = None


class RequisitionApproveRequest(BaseModel):
    comments: Optional[str] = Field(None, max_length=1000)
    # finance verification
    budget_code_id: Optional[str] = None
    amount_cents: Optional[int] = Field(None, gt=0)
    cost_center: Optional[str] = Field(None, max_length=100)
    # supply chain review / buyer assignment
    sourcing_type: Optional[str] = None
    purchase_type: Optional[str] = Field(None, max_length=50)
    buyer_id: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=10, max_length=1000)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, min_length=3, max_length=1000)


class DisbursementRequest(BaseModel):
    amount_cents: int = Field(..., gt=0)
    disbursement_ref: str = Field(..., min_length=1, max_length=100)


class FulfillmentRequest(BaseModel):
    status: str = Field(..., pattern=r"^(IN_PROCUREMENT|PROCUREMENT_COMPLETE|DELIVERED)$")
