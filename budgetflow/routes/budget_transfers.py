from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from budgetflow.database import get_db
from budgetflow.middleware.auth import get_current_user
from budgetflow.middleware.authorization import require_roles
from budgetflow.models.approval import ENTITY_BUDGET_TRANSFER
from budgetflow.models.budget_code import BudgetCode, BudgetTransfer
from budgetflow.models.user import User
from budgetflow.routes.approvals import chain_to_response
from budgetflow.schemas.approval import ApprovalChainResponse
from budgetflow.schemas.budget_code import (
    TransferCancelRequest,
    TransferCreate,
    TransferDecisionRequest,
    TransferResponse,
)
from budgetflow.schemas.common import PaginatedResponse, build_pagination, iso
from budgetflow.services import budget_service
from budgetflow.services.approval_chain import APPROVE, REJECT, current_step
from budgetflow.services.approval_service import load_chain
from budgetflow.services.errors import NotFound
from budgetflow.services.notification_service import (
    queue_approval_request,
    queue_chain_notifications,
)

logger = structlog.get_logger()
router = APIRouter()

REQUEST_ROLES = ("finance_officer", "department_head", "admin")
# Roles that see every transfer, not only their own
PRIVILEGED_ROLES = ("admin", "finance_officer", "head_of_business")


async def _code_labels(db: AsyncSession, transfers) -> dict:
    ids = {t.from_budget_code_id for t in transfers} | {t.to_budget_code_id for t in transfers}
    if not ids:
        return {}
    result = await db.execute(select(BudgetCode.id, BudgetCode.code).where(BudgetCode.id.in_(ids)))
    return {row.id: row.code for row in result.all()}


def _to_response(t: BudgetTransfer, labels: Optional[dict] = None) -> TransferResponse:
    labels = labels or {}
    return TransferResponse(
        id=str(t.id),
        from_budget_code_id=str(t.from_budget_code_id),
        from_budget_code=labels.get(t.from_budget_code_id),
        to_budget_code_id=str(t.to_budget_code_id),
        to_budget_code=labels.get(t.to_budget_code_id),
        amount_cents=t.amount_cents,
        reason=t.reason,
        requested_by=str(t.requested_by) if t.requested_by else None,
        status=t.status,
        decided_at=iso(t.decided_at),
        rejection_reason=t.rejection_reason,
        executed_at=iso(t.executed_at),
        cancelled_at=iso(t.cancelled_at),
        created_at=iso(t.created_at) or "",
    )


async def _requester_email(db: AsyncSession, t: BudgetTransfer) -> Optional[str]:
    if not t.requested_by:
        return None
    return (
        await db.execute(select(User.email).where(User.id == t.requested_by))
    ).scalar_one_or_none()


def _notification_context(t: BudgetTransfer, labels: dict, requester_email: str) -> dict:
    return {
        "entity_label": "Budget transfer",
        "reference": f"{labels.get(t.from_budget_code_id, '?')} -> {labels.get(t.to_budget_code_id, '?')}",
        "title": t.reason,
        "amount_cents": t.amount_cents,
        "requester_email": requester_email,
    }


@router.get("", response_model=PaginatedResponse[TransferResponse])
async def list_transfers(
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=50),
    transfer_status: str = Query(None, alias="status"),
    budget_code_id: str = Query(None),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    filters = []
    if transfer_status:
        filters.append(BudgetTransfer.status == transfer_status.upper())
    if budget_code_id:
        filters.append(or_(
            BudgetTransfer.from_budget_code_id == budget_code_id,
            BudgetTransfer.to_budget_code_id == budget_code_id,
        ))
    if current_user["role"] not in PRIVILEGED_ROLES:
        filters.append(BudgetTransfer.requested_by == current_user["user_id"])

    total = (
        await db.execute(select(func.count(BudgetTransfer.id)).where(*filters))
    ).scalar() or 0
    result = await db.execute(
        select(BudgetTransfer)
        .where(*filters)
        .order_by(BudgetTransfer.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    transfers = list(result.scalars().all())
    labels = await _code_labels(db, transfers)
    items = [_to_response(t, labels) for t in transfers]
    return PaginatedResponse(data=items, pagination=build_pagination(page, limit, total))


@router.get("/{transfer_id}", response_model=TransferResponse)
async def get_transfer(
    transfer_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    transfer = await budget_service.get_transfer(db, transfer_id)
    return _to_response(transfer, await _code_labels(db, [transfer]))


@router.get("/{transfer_id}/approval-chain", response_model=ApprovalChainResponse)
async def get_transfer_chain(
    transfer_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    transfer = await budget_service.get_transfer(db, transfer_id)
    steps = await load_chain(db, ENTITY_BUDGET_TRANSFER, transfer.id)
    return chain_to_response(ENTITY_BUDGET_TRANSFER, transfer.id, steps)


@router.post("", response_model=TransferResponse, status_code=status.HTTP_201_CREATED)
async def request_transfer(
    body: TransferCreate,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*REQUEST_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    requester = (
        await db.execute(select(User).where(User.id == current_user["user_id"]))
    ).scalar_one_or_none()
    if not requester:
        raise NotFound("User not found")

    transfer, steps = await budget_service.request_transfer(
        db, body.from_budget_code, body.to_budget_code, body.amount_cents,
        body.reason, requester, current_user,
    )
    labels = await _code_labels(db, [transfer])
    first = current_step(steps)
    if first:
        queue_approval_request(
            background_tasks, first, _notification_context(transfer, labels, requester.email)
        )
    logger.info("budget_transfer_created", transfer_id=str(transfer.id))
    return _to_response(transfer, labels)


async def _decide(
    db: AsyncSession,
    transfer_id: str,
    decision: str,
    body: TransferDecisionRequest,
    current_user: dict,
    background_tasks: BackgroundTasks,
) -> TransferResponse:
    transfer, outcome = await budget_service.decide_transfer(
        db, transfer_id, decision, current_user, body.comments
    )
    labels = await _code_labels(db, [transfer])
    requester_email = await _requester_email(db, transfer)
    if requester_email:
        queue_chain_notifications(
            background_tasks,
            outcome,
            reason=body.comments or "",
            **_notification_context(transfer, labels, requester_email),
        )
    return _to_response(transfer, labels)


@router.post("/{transfer_id}/approve", response_model=TransferResponse)
async def approve_transfer(
    transfer_id: str,
    body: TransferDecisionRequest,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _decide(db, transfer_id, APPROVE, body, current_user, background_tasks)


@router.post("/{transfer_id}/reject", response_model=TransferResponse)
async def reject_transfer(
    transfer_id: str,
    body: TransferDecisionRequest,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _decide(db, transfer_id, REJECT, body, current_user, background_tasks)


@router.post("/{transfer_id}/cancel", response_model=TransferResponse)
async def cancel_transfer(
    transfer_id: str,
    body: TransferCancelRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    transfer = await budget_service.cancel_transfer(db, transfer_id, current_user, body.reason)
    return _to_response(transfer, await _code_labels(db, [transfer]))
