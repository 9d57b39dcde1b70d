from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
import structlog

from budgetflow.database import get_db
from budgetflow.middleware.auth import get_current_user
from budgetflow.middleware.authorization import FINANCE_ROLES, require_roles
from budgetflow.models.approval import ENTITY_BUDGET_REVISION
from budgetflow.models.budget_code import (
    BudgetAllocation,
    BudgetCode,
    BudgetRevision,
    LedgerTransaction,
)
from budgetflow.models.user import User
from budgetflow.routes.approvals import step_to_response
from budgetflow.schemas.budget_code import (
    AllocationResponse,
    BudgetCodeCreate,
    BudgetCodeResponse,
    BudgetCodeUpdate,
    DeductRequest,
    ForecastResponse,
    LedgerOperationResponse,
    ReleaseRequest,
    ReserveRequest,
    ReturnRequest,
    RevisionCreate,
    RevisionDecisionRequest,
    RevisionResponse,
    TransactionResponse,
    UtilizationResponse,
)
from budgetflow.schemas.common import PaginatedResponse, build_pagination, iso
from budgetflow.services import budget_service, ledger
from budgetflow.services.approval_chain import current_step
from budgetflow.services.approval_service import load_chain
from budgetflow.services.errors import NotFound
from budgetflow.services.notification_service import (
    queue_approval_request,
    queue_chain_notifications,
)

logger = structlog.get_logger()
router = APIRouter()


def _to_response(c: BudgetCode) -> BudgetCodeResponse:
    return BudgetCodeResponse(
        id=str(c.id),
        code=c.code,
        name=c.name,
        description=c.description,
        department_id=str(c.department_id) if c.department_id else None,
        budget_type=c.budget_type,
        budget_period=c.budget_period,
        fiscal_year=c.fiscal_year,
        budget_owner=c.budget_owner,
        total_cents=c.total_cents,
        used_cents=c.used_cents,
        committed_cents=c.committed_cents,
        remaining_cents=c.remaining_cents,
        utilization_percentage=c.utilization_percentage,
        utilization_status=ledger.utilization_status(c),
        active=c.active,
        start_date=iso(c.start_date),
        end_date=iso(c.end_date),
        created_at=iso(c.created_at) or "",
        updated_at=iso(c.updated_at) or "",
    )


def _allocation_to_response(a: BudgetAllocation) -> AllocationResponse:
    return AllocationResponse(
        id=str(a.id),
        request_type=a.request_type,
        request_id=str(a.request_id),
        amount_cents=a.amount_cents,
        status=a.status,
        actual_spent_cents=a.actual_spent_cents,
        disbursement_count=a.disbursement_count,
        balance_returned_cents=a.balance_returned_cents,
        outstanding_cents=a.outstanding_cents if a.is_active else 0,
        allocated_at=iso(a.allocated_at) or "",
        first_spent_at=iso(a.first_spent_at),
        last_disbursement_at=iso(a.last_disbursement_at),
        released_at=iso(a.released_at),
        release_reason=a.release_reason,
    )


def _txn_to_response(t: LedgerTransaction) -> TransactionResponse:
    return TransactionResponse(
        id=str(t.id),
        type=t.type,
        request_id=str(t.request_id),
        amount_cents=t.amount_cents,
        balance_before_cents=t.balance_before_cents,
        balance_after_cents=t.balance_after_cents,
        used_after_cents=t.used_after_cents,
        disbursement_ref=t.disbursement_ref,
        actor_id=str(t.actor_id) if t.actor_id else None,
        description=t.description,
        created_at=iso(t.created_at) or "",
    )


def ledger_entry_to_response(code: BudgetCode, entry: ledger.LedgerEntry) -> LedgerOperationResponse:
    return LedgerOperationResponse(
        applied=entry.applied,
        allocation=_allocation_to_response(entry.allocation),
        transaction=_txn_to_response(entry.transaction) if entry.transaction else None,
        budget_code=_to_response(code),
    )


async def _revision_to_response(db: AsyncSession, r: BudgetRevision) -> RevisionResponse:
    steps = await load_chain(db, ENTITY_BUDGET_REVISION, r.id)
    return RevisionResponse(
        id=str(r.id),
        budget_code_id=str(r.budget_code_id),
        previous_cents=r.previous_cents,
        requested_cents=r.requested_cents,
        change_cents=r.change_cents,
        reason=r.reason,
        requested_by=str(r.requested_by) if r.requested_by else None,
        status=r.status,
        decided_at=iso(r.decided_at),
        applied_at=iso(r.applied_at),
        created_at=iso(r.created_at) or "",
        approval_chain=[step_to_response(s).model_dump() for s in steps],
    )


# ---------- CRUD ----------


@router.get("", response_model=PaginatedResponse[BudgetCodeResponse])
async def list_budget_codes(
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=100),
    department_id: Optional[str] = Query(None),
    fiscal_year: Optional[int] = Query(None),
    active: Optional[bool] = Query(None),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    q = select(BudgetCode).options(selectinload(BudgetCode.allocations))
    count_q = select(func.count(BudgetCode.id))

    if department_id:
        q = q.where(BudgetCode.department_id == department_id)
        count_q = count_q.where(BudgetCode.department_id == department_id)
    if fiscal_year:
        q = q.where(BudgetCode.fiscal_year == fiscal_year)
        count_q = count_q.where(BudgetCode.fiscal_year == fiscal_year)
    if active is not None:
        q = q.where(BudgetCode.active == active)
        count_q = count_q.where(BudgetCode.active == active)

    total = (await db.execute(count_q)).scalar() or 0
    result = await db.execute(
        q.order_by(BudgetCode.fiscal_year.desc(), BudgetCode.code)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    items = [_to_response(c) for c in result.scalars().all()]
    return PaginatedResponse(data=items, pagination=build_pagination(page, limit, total))


@router.get("/{code_id}", response_model=BudgetCodeResponse)
async def get_budget_code(
    code_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return _to_response(await budget_service.get_budget_code(db, code_id))


@router.post("", response_model=BudgetCodeResponse, status_code=status.HTTP_201_CREATED)
async def create_budget_code(
    body: BudgetCodeCreate,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    code = await budget_service.create_budget_code(
        db, created_by=current_user["user_id"], **body.model_dump()
    )
    return _to_response(await budget_service.get_budget_code(db, code.id))


@router.patch("/{code_id}", response_model=BudgetCodeResponse)
async def update_budget_code(
    code_id: str,
    body: BudgetCodeUpdate,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    code = await budget_service.get_budget_code(db, code_id, lock=True)
    for field, value in body.model_dump(exclude_unset=True).items():
        setattr(code, field, value)
    await budget_service.flush_or_conflict(db, f"Budget code {code.code}")
    logger.info("budget_code_updated", budget_code=code.code, by=current_user["user_id"])
    return _to_response(code)


# ---------- ledger operations ----------


@router.post("/{code_id}/reserve", response_model=LedgerOperationResponse)
async def reserve(
    code_id: str,
    body: ReserveRequest,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    code, entry = await budget_service.reserve_budget(
        db, code_id, body.request_id, body.amount_cents,
        actor_id=current_user["user_id"], request_type=body.request_type,
    )
    return ledger_entry_to_response(code, entry)


@router.post("/{code_id}/deduct", response_model=LedgerOperationResponse)
async def deduct(
    code_id: str,
    body: DeductRequest,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    code, entry = await budget_service.deduct_budget(
        db, code_id, body.request_id, body.amount_cents, body.disbursement_ref,
        actor_id=current_user["user_id"],
    )
    return ledger_entry_to_response(code, entry)


@router.post("/{code_id}/return", response_model=LedgerOperationResponse)
async def return_unused(
    code_id: str,
    body: ReturnRequest,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    code, entry = await budget_service.return_budget(
        db, code_id, body.request_id, body.amount_cents, actor_id=current_user["user_id"]
    )
    return ledger_entry_to_response(code, entry)


@router.post("/{code_id}/release", response_model=LedgerOperationResponse)
async def release(
    code_id: str,
    body: ReleaseRequest,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*FINANCE_ROLES)),
    db: AsyncSession = Depends(get_db),
):
    code, entry = await budget_service.release_budget(
        db, code_id, body.request_id, body.reason, actor_id=current_user["user_id"]
    )
    return ledger_entry_to_response(code, entry)


# ---------- reporting ----------


@router.get("/{code_id}/forecast", response_model=ForecastResponse)
async def forecast(
    code_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    code = await budget_service.get_budget_code(db, code_id)
    return ForecastResponse(budget_code=code.code, **ledger.forecast(code))


@router.get("/{code_id}/utilization", response_model=UtilizationResponse)
async def utilization(
    code_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    code = await budget_service.get_budget_code(db, code_id)
    return UtilizationResponse(
        budget_code=code.code,
        total_cents=code.total_cents,
        used_cents=code.used_cents,
        committed_cents=code.committed_cents,
        remaining_cents=code.remaining_cents,
        utilization_percentage=code.utilization_percentage,
        status=ledger.utilization_status(code),
    )


@router.get("/{code_id}/allocations", response_model=list[AllocationResponse])
async def list_allocations(
    code_id: str,
    status_filter: Optional[str] = Query(None, alias="status"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    code = await budget_service.get_budget_code(db, code_id)
    return [
        _allocation_to_response(a) for a in code.allocations
        if status_filter is None or a.status == status_filter
    ]


@router.get("/{code_id}/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    code_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    code = await budget_service.get_budget_code(db, code_id)
    return [_txn_to_response(t) for t in code.transactions]


# ---------- revisions ----------


@router.get("/{code_id}/revisions", response_model=list[RevisionResponse])
async def list_revisions(
    code_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    code = await budget_service.get_budget_code(db, code_id)
    return [await _revision_to_response(db, r) for r in code.revisions]


@router.post("/{code_id}/revisions", response_model=RevisionResponse, status_code=status.HTTP_201_CREATED)
async def request_revision(
    code_id: str,
    body: RevisionCreate,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles("finance_officer", "department_head", "admin")),
    db: AsyncSession = Depends(get_db),
):
    requester = (
        await db.execute(select(User).where(User.id == current_user["user_id"]))
    ).scalar_one_or_none()
    if not requester:
        raise NotFound("User not found")

    revision = await budget_service.request_revision(
        db, code_id, body.new_total_cents, body.reason, requester
    )
    steps = await load_chain(db, ENTITY_BUDGET_REVISION, revision.id)
    first = current_step(steps)
    if first:
        queue_approval_request(background_tasks, first, {
            "entity_label": "Budget revision",
            "reference": revision.budget_code.code,
            "title": body.reason,
            "amount_cents": revision.requested_cents,
            "requester_email": requester.email,
        })
    return await _revision_to_response(db, revision)


async def _decide_revision(
    decision: str,
    code_id: str,
    revision_id: str,
    body: RevisionDecisionRequest,
    background_tasks: BackgroundTasks,
    current_user: dict,
    db: AsyncSession,
) -> RevisionResponse:
    revision, outcome = await budget_service.decide_revision(
        db, code_id, revision_id, decision, current_user, body.comments
    )
    requester_email = None
    if revision.requested_by:
        requester_email = (
            await db.execute(select(User.email).where(User.id == revision.requested_by))
        ).scalar_one_or_none()
    if requester_email:
        queue_chain_notifications(
            background_tasks,
            outcome,
            entity_label="Budget revision",
            reference=revision.budget_code.code,
            requester_email=requester_email,
            title=revision.reason,
            amount_cents=revision.requested_cents,
            reason=body.comments or "",
        )
    return await _revision_to_response(db, revision)


@router.post("/{code_id}/revisions/{revision_id}/approve", response_model=RevisionResponse)
async def approve_revision(
    code_id: str,
    revision_id: str,
    body: RevisionDecisionRequest,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _decide_revision(
        "approve", code_id, revision_id, body, background_tasks, current_user, db
    )


@router.post("/{code_id}/revisions/{revision_id}/reject", response_model=RevisionResponse)
async def reject_revision(
    code_id: str,
    revision_id: str,
    body: RevisionDecisionRequest,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _decide_revision(
        "reject", code_id, revision_id, body, background_tasks, current_user, db
    )
