from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
import structlog

from budgetflow.database import get_db
from budgetflow.middleware.auth import get_current_user
from budgetflow.middleware.authorization import (
    FINANCE_ROLES,
    SUPPLY_CHAIN_ROLES,
    check_requester,
    require_roles,
)
from budgetflow.models.approval import ENTITY_PURCHASE_REQUISITION
from budgetflow.models.purchase_requisition import PurchaseRequisition
from budgetflow.routes.approvals import chain_to_response
from budgetflow.routes.budget_codes import ledger_entry_to_response
from budgetflow.schemas.approval import ApprovalChainResponse
from budgetflow.schemas.budget_code import LedgerOperationResponse
from budgetflow.schemas.common import PaginatedResponse, build_pagination, iso
from budgetflow.schemas.purchase_requisition import (
    CancelRequest,
    DisbursementRequest,
    FulfillmentRequest,
    PrLineItemResponse,
    PrRejectionResponse,
    PurchaseRequisitionCreate,
    PurchaseRequisitionResponse,
    PurchaseRequisitionUpdate,
    RejectRequest,
    RequisitionApproveRequest,
    ResubmitRequest,
)
from budgetflow.services import requisition_service
from budgetflow.services.approval_chain import APPROVE, REJECT, current_step
from budgetflow.services.approval_service import load_chain
from budgetflow.services.notification_service import (
    queue_approval_request,
    queue_chain_notifications,
)

logger = structlog.get_logger()
router = APIRouter()

# Roles that see every requisition across departments
PRIVILEGED_ROLES = (
    "admin",
    "finance_officer",
    "supply_chain_coordinator",
    "buyer",
    "head_of_business",
)
DEPARTMENT_ROLES = ("supervisor", "department_head")


def _to_response(pr: PurchaseRequisition) -> PurchaseRequisitionResponse:
    return PurchaseRequisitionResponse(
        id=str(pr.id),
        requisition_number=pr.requisition_number,
        requester_id=str(pr.requester_id),
        requester_email=pr.requester_email,
        department_id=str(pr.department_id),
        title=pr.title,
        status=pr.status,
        urgency=pr.urgency,
        total_cents=pr.total_cents,
        currency=pr.currency,
        description=pr.description,
        justification=pr.justification,
        budget_code_id=str(pr.budget_code_id) if pr.budget_code_id else None,
        finance_assigned_cents=pr.finance_assigned_cents,
        finance_cost_center=pr.finance_cost_center,
        finance_comments=pr.finance_comments,
        sourcing_type=pr.sourcing_type,
        purchase_type=pr.purchase_type,
        assigned_buyer_id=str(pr.assigned_buyer_id) if pr.assigned_buyer_id else None,
        supply_chain_comments=pr.supply_chain_comments,
        head_comments=pr.head_comments,
        line_items=[
            PrLineItemResponse(
                id=str(li.id),
                line_number=li.line_number,
                description=li.description,
                quantity=li.quantity,
                unit_price_cents=li.unit_price_cents,
                measuring_unit=li.measuring_unit,
                category=li.category,
                notes=li.notes,
            )
            for li in pr.line_items
        ],
        resubmission_count=pr.resubmission_count or 0,
        rejection_history=[
            PrRejectionResponse(
                cycle=r.cycle,
                previous_status=r.previous_status,
                level=r.level,
                stage=r.stage,
                rejector_name=r.rejector_name,
                rejector_role=r.rejector_role,
                reason=r.reason,
                rejected_at=iso(r.rejected_at),
                resubmitted_at=iso(r.resubmitted_at) or "",
                resubmission_notes=r.resubmission_notes,
            )
            for r in pr.rejections
        ],
        created_at=iso(pr.created_at) or "",
        updated_at=iso(pr.updated_at) or "",
        submitted_at=iso(pr.submitted_at),
        approved_at=iso(pr.approved_at),
        rejected_at=iso(pr.rejected_at),
        cancelled_at=iso(pr.cancelled_at),
    )


def _notification_context(pr: PurchaseRequisition) -> dict:
    return {
        "entity_label": "Purchase requisition",
        "reference": pr.requisition_number,
        "title": pr.title,
        "amount_cents": pr.finance_assigned_cents or pr.total_cents,
        "currency": pr.currency,
        "requester_email": pr.requester_email,
    }


# ---------- LIST / GET ----------


@router.get("", response_model=PaginatedResponse[PurchaseRequisitionResponse])
async def list_requisitions(
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=50),
    pr_status: str = Query(None, alias="status"),
    department_id: str = Query(None),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    filters = [PurchaseRequisition.deleted_at.is_(None)]
    if pr_status:
        filters.append(PurchaseRequisition.status == pr_status)
    if department_id:
        filters.append(PurchaseRequisition.department_id == department_id)

    role = current_user["role"]
    user_dept = current_user.get("department_id")
    if role in PRIVILEGED_ROLES:
        pass
    elif role in DEPARTMENT_ROLES and user_dept:
        filters.append(or_(
            PurchaseRequisition.department_id == user_dept,
            PurchaseRequisition.requester_id == current_user["user_id"],
        ))
    else:
        filters.append(PurchaseRequisition.requester_id == current_user["user_id"])

    # Drafts are private to the requester, regardless of role
    filters.append(or_(
        PurchaseRequisition.status != "DRAFT",
        PurchaseRequisition.requester_id == current_user["user_id"],
    ))

    total = (
        await db.execute(select(func.count(PurchaseRequisition.id)).where(*filters))
    ).scalar() or 0
    result = await db.execute(
        select(PurchaseRequisition)
        .where(*filters)
        .options(
            selectinload(PurchaseRequisition.line_items),
            selectinload(PurchaseRequisition.rejections),
        )
        .order_by(PurchaseRequisition.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    items = [_to_response(pr) for pr in result.scalars().all()]
    logger.info("pr_list_result", count=len(items), total=total)
    return PaginatedResponse(data=items, pagination=build_pagination(page, limit, total))


@router.get("/{pr_id}", response_model=PurchaseRequisitionResponse)
async def get_requisition(
    pr_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return _to_response(await requisition_service.get_requisition(db, pr_id))


@router.get("/{pr_id}/approval-chain", response_model=ApprovalChainResponse)
async def get_approval_chain(
    pr_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    pr = await requisition_service.get_requisition(db, pr_id)
    steps = await load_chain(db, ENTITY_PURCHASE_REQUISITION, pr.id)
    return chain_to_response(ENTITY_PURCHASE_REQUISITION, pr.id, steps)


# ---------- DRAFTS ----------


@router.post("", response_model=PurchaseRequisitionResponse, status_code=status.HTTP_201_CREATED)
async def create_requisition(
    body: PurchaseRequisitionCreate,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    pr = await requisition_service.create_requisition(db, body, current_user)
    return _to_response(pr)


@router.put("/{pr_id}", response_model=PurchaseRequisitionResponse)
async def update_requisition(
    pr_id: str,
    body: PurchaseRequisitionUpdate,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    pr = await requisition_service.get_requisition(db, pr_id)
    check_requester(current_user, pr.requester_id)
    pr = await requisition_service.update_draft(db, pr_id, body)
    return _to_response(pr)


@router.delete("/{pr_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_requisition(
    pr_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    pr = await requisition_service.get_requisition(db, pr_id)
    check_requester(current_user, pr.requester_id)
    await requisition_service.delete_draft(db, pr_id)


# ---------- WORKFLOW ----------


@router.post("/{pr_id}/submit", response_model=PurchaseRequisitionResponse)
async def submit_requisition(
    pr_id: str,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    pr = await requisition_service.get_requisition(db, pr_id)
    check_requester(current_user, pr.requester_id)
    pr, steps = await requisition_service.submit_requisition(db, pr_id, current_user)

    first = current_step(steps)
    if first:
        queue_approval_request(background_tasks, first, _notification_context(pr))
    return _to_response(pr)


async def _decide(
    db: AsyncSession,
    pr_id: str,
    decision: str,
    body: RequisitionApproveRequest,
    current_user: dict,
    background_tasks: BackgroundTasks,
) -> PurchaseRequisitionResponse:
    pr, steps, transition = await requisition_service.decide_requisition(
        db, pr_id, decision, body, current_user
    )
    if transition.outcome is not None:
        queue_chain_notifications(
            background_tasks,
            transition.outcome,
            reason=body.comments or "",
            **_notification_context(pr),
        )
    return _to_response(pr)


@router.post("/{pr_id}/approve", response_model=PurchaseRequisitionResponse)
async def approve_requisition(
    pr_id: str,
    body: RequisitionApproveRequest,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _decide(db, pr_id, APPROVE, body, current_user, background_tasks)


@router.post("/{pr_id}/reject", response_model=PurchaseRequisitionResponse)
async def reject_requisition(
    pr_id: str,
    body: RejectRequest,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _decide(
        db, pr_id, REJECT, RequisitionApproveRequest(comments=body.reason),
        current_user, background_tasks,
    )


@router.post("/{pr_id}/cancel", response_model=PurchaseRequisitionResponse)
async def cancel_requisition(
    pr_id: str,
    body: CancelRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    pr = await requisition_service.cancel_requisition(db, pr_id, body.reason, current_user)
    return _to_response(pr)


@router.post("/{pr_id}/resubmit", response_model=PurchaseRequisitionResponse)
async def resubmit_requisition(
    pr_id: str,
    body: ResubmitRequest,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    pr, steps = await requisition_service.resubmit_requisition(db, pr_id, body, current_user)

    first = current_step(steps)
    if first:
        queue_approval_request(background_tasks, first, _notification_context(pr))
    return _to_response(pr)


# ---------- FULFILLMENT ----------


@router.post("/{pr_id}/disbursements", response_model=LedgerOperationResponse)
async def record_disbursement(
    pr_id: str,
    body: DisbursementRequest,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    pr, entry, code = await requisition_service.record_disbursement(
        db, pr_id, body.amount_cents, body.disbursement_ref, current_user
    )
    return ledger_entry_to_response(code, entry)


@router.post("/{pr_id}/fulfillment", response_model=PurchaseRequisitionResponse)
async def advance_fulfillment(
    pr_id: str,
    body: FulfillmentRequest,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*SUPPLY_CHAIN_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    pr = await requisition_service.advance_fulfillment(db, pr_id, body.status, current_user)
    return _to_response(pr)
