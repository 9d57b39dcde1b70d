from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.database import get_db
from budgetflow.middleware.auth import get_current_user
from budgetflow.models.approval import ENTITY_PROJECT_PLAN
from budgetflow.models.project_plan import ProjectPlan
from budgetflow.routes.approvals import chain_to_response
from budgetflow.schemas.approval import ApprovalChainResponse
from budgetflow.schemas.common import PaginatedResponse, build_pagination, iso
from budgetflow.schemas.project_plan import (
    PlanDecisionRequest,
    ProjectPlanCreate,
    ProjectPlanResponse,
)
from budgetflow.services import project_plan_service
from budgetflow.services.approval_chain import APPROVE, REJECT, current_step
from budgetflow.services.approval_service import load_chain
from budgetflow.services.notification_service import (
    queue_approval_request,
    queue_chain_notifications,
)

router = APIRouter()

PRIVILEGED_ROLES = ("admin", "project_coordinator", "supply_chain_coordinator", "head_of_business")


def _to_response(p: ProjectPlan) -> ProjectPlanResponse:
    return ProjectPlanResponse(
        id=str(p.id),
        plan_number=p.plan_number,
        requester_id=str(p.requester_id),
        requester_email=p.requester_email,
        department_id=str(p.department_id),
        title=p.title,
        description=p.description,
        estimated_cost_cents=p.estimated_cost_cents,
        start_date=p.start_date,
        end_date=p.end_date,
        status=p.status,
        created_at=iso(p.created_at) or "",
        updated_at=iso(p.updated_at) or "",
        submitted_at=iso(p.submitted_at),
        approved_at=iso(p.approved_at),
        rejected_at=iso(p.rejected_at),
    )


def _notification_context(p: ProjectPlan) -> dict:
    return {
        "entity_label": "Project plan",
        "reference": p.plan_number,
        "title": p.title,
        "amount_cents": p.estimated_cost_cents,
        "requester_email": p.requester_email,
    }


@router.get("", response_model=PaginatedResponse[ProjectPlanResponse])
async def list_plans(
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=50),
    plan_status: str = Query(None, alias="status"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    filters = []
    if plan_status:
        filters.append(ProjectPlan.status == plan_status)
    if current_user["role"] not in PRIVILEGED_ROLES:
        filters.append(ProjectPlan.requester_id == current_user["user_id"])
    filters.append(or_(
        ProjectPlan.status != project_plan_service.DRAFT,
        ProjectPlan.requester_id == current_user["user_id"],
    ))

    total = (await db.execute(select(func.count(ProjectPlan.id)).where(*filters))).scalar() or 0
    result = await db.execute(
        select(ProjectPlan)
        .where(*filters)
        .order_by(ProjectPlan.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    items = [_to_response(p) for p in result.scalars().all()]
    return PaginatedResponse(data=items, pagination=build_pagination(page, limit, total))


@router.get("/{plan_id}", response_model=ProjectPlanResponse)
async def get_plan(
    plan_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return _to_response(await project_plan_service.get_plan(db, plan_id))


@router.get("/{plan_id}/approval-chain", response_model=ApprovalChainResponse)
async def get_plan_chain(
    plan_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    plan = await project_plan_service.get_plan(db, plan_id)
    steps = await load_chain(db, ENTITY_PROJECT_PLAN, plan.id)
    return chain_to_response(ENTITY_PROJECT_PLAN, plan.id, steps)


@router.post("", response_model=ProjectPlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(
    body: ProjectPlanCreate,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return _to_response(await project_plan_service.create_plan(db, body, current_user))


@router.post("/{plan_id}/submit", response_model=ProjectPlanResponse)
async def submit_plan(
    plan_id: str,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    plan, steps = await project_plan_service.submit_plan(db, plan_id, current_user)
    first = current_step(steps)
    if first:
        queue_approval_request(background_tasks, first, _notification_context(plan))
    return _to_response(plan)


async def _decide(
    db: AsyncSession,
    plan_id: str,
    decision: str,
    body: PlanDecisionRequest,
    current_user: dict,
    background_tasks: BackgroundTasks,
) -> ProjectPlanResponse:
    plan, steps, outcome = await project_plan_service.decide_plan(
        db, plan_id, decision, current_user, body.comments
    )
    queue_chain_notifications(
        background_tasks, outcome, reason=body.comments or "", **_notification_context(plan)
    )
    return _to_response(plan)


@router.post("/{plan_id}/approve", response_model=ProjectPlanResponse)
async def approve_plan(
    plan_id: str,
    body: PlanDecisionRequest,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _decide(db, plan_id, APPROVE, body, current_user, background_tasks)


@router.post("/{plan_id}/reject", response_model=ProjectPlanResponse)
async def reject_plan(
    plan_id: str,
    body: PlanDecisionRequest,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _decide(db, plan_id, REJECT, body, current_user, background_tasks)
