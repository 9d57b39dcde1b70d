"""
Project plan workflow.

  DRAFT → PENDING_PROJECT_COORDINATOR → PENDING_SUPPLY_CHAIN
        → PENDING_HEAD_APPROVAL → APPROVED
  REJECTED from any gate.

Same chain primitive as requisitions; plans never touch the ledger.
"""

from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from budgetflow.config import settings
from budgetflow.models.approval import ApprovalStep, ENTITY_PROJECT_PLAN
from budgetflow.models.project_plan import ProjectPlan
from budgetflow.models.user import User
from budgetflow.schemas.project_plan import ProjectPlanCreate
from budgetflow.services import approval_chain
from budgetflow.services.approval_policy import (
    STAGE_HEAD,
    STAGE_PROJECT_COORDINATOR,
    STAGE_SUPPLY_CHAIN,
)
from budgetflow.services.approval_service import create_chain, get_department, load_chain
from budgetflow.services.audit_service import record_transition
from budgetflow.services.budget_service import flush_or_conflict
from budgetflow.services.errors import AlreadyDecided, InvalidTransition, NotFound, Unauthorized

logger = structlog.get_logger()

DRAFT = "DRAFT"
PENDING_PROJECT_COORDINATOR = "PENDING_PROJECT_COORDINATOR"
PENDING_SUPPLY_CHAIN = "PENDING_SUPPLY_CHAIN"
PENDING_HEAD_APPROVAL = "PENDING_HEAD_APPROVAL"
APPROVED = "APPROVED"
REJECTED = "REJECTED"

STAGE_STATUS = {
    STAGE_PROJECT_COORDINATOR: PENDING_PROJECT_COORDINATOR,
    STAGE_SUPPLY_CHAIN: PENDING_SUPPLY_CHAIN,
    STAGE_HEAD: PENDING_HEAD_APPROVAL,
}
PENDING_STATUSES = frozenset(STAGE_STATUS.values())

PLAN_PREFIX = "PP"


def status_from_chain(steps: Sequence[ApprovalStep]) -> str:
    if approval_chain.is_terminated(steps):
        return REJECTED
    step = approval_chain.current_step(steps)
    if step is None:
        return APPROVED
    return STAGE_STATUS.get(step.stage, PENDING_HEAD_APPROVAL)


def apply_decision(
    plan: ProjectPlan,
    steps: Sequence[ApprovalStep],
    decision: str,
    actor: dict,
    comments: Optional[str] = None,
    override_roles=(),
    now: Optional[datetime] = None,
) -> approval_chain.ChainOutcome:
    if plan.status in (APPROVED, REJECTED):
        raise AlreadyDecided(
            f"Project plan is already {plan.status.lower()}",
            status=plan.status,
        )
    if plan.status not in PENDING_STATUSES:
        raise InvalidTransition(
            f"Project plan in status {plan.status} is not awaiting a decision",
            status=plan.status,
        )
    if (
        decision == approval_chain.APPROVE
        and str(actor["user_id"]) == str(plan.requester_id)
        and actor.get("role") not in set(override_roles)
    ):
        raise Unauthorized("You cannot approve your own project plan")

    now = now or datetime.utcnow()
    outcome = approval_chain.decide(
        steps,
        actor["email"],
        decision,
        comments,
        actor["user_id"],
        actor.get("role"),
        override_roles,
        now=now,
    )
    plan.status = status_from_chain(steps)
    if outcome.is_rejected:
        plan.rejected_at = now
    elif outcome.is_final:
        plan.approved_at = now
    return outcome


async def _generate_number(session: AsyncSession) -> str:
    result = await session.execute(select(func.count(ProjectPlan.id)))
    count = (result.scalar() or 0) + 1
    return f"{PLAN_PREFIX}-{count:06d}"


async def get_plan(session: AsyncSession, plan_id, lock: bool = False) -> ProjectPlan:
    q = select(ProjectPlan).where(ProjectPlan.id == plan_id)
    if lock:
        q = q.with_for_update().execution_options(populate_existing=True)
    plan = (await session.execute(q)).scalar_one_or_none()
    if not plan:
        raise NotFound(f"Project plan {plan_id} not found")
    return plan


async def create_plan(
    session: AsyncSession, body: ProjectPlanCreate, current_user: dict
) -> ProjectPlan:
    department_id = body.department_id or current_user.get("department_id")
    if not department_id:
        raise InvalidTransition("A department is required to raise a project plan")

    plan = ProjectPlan(
        plan_number=await _generate_number(session),
        requester_id=current_user["user_id"],
        requester_email=current_user["email"],
        department_id=department_id,
        title=body.title,
        description=body.description,
        estimated_cost_cents=body.estimated_cost_cents,
        start_date=body.start_date,
        end_date=body.end_date,
        status=DRAFT,
    )
    session.add(plan)
    await session.flush()
    logger.info("project_plan_created", plan_id=str(plan.id))
    return plan


async def submit_plan(
    session: AsyncSession, plan_id, current_user: dict
) -> tuple[ProjectPlan, list[ApprovalStep]]:
    plan = await get_plan(session, plan_id, lock=True)
    if str(plan.requester_id) != str(current_user["user_id"]):
        raise Unauthorized("Only the requester can submit this project plan")
    if plan.status != DRAFT:
        raise InvalidTransition(f"Cannot submit project plan in status {plan.status}", status=plan.status)

    requester = (
        await session.execute(select(User).where(User.id == plan.requester_id))
    ).scalar_one()
    department = await get_department(session, plan.department_id)
    steps = await create_chain(session, ENTITY_PROJECT_PLAN, plan.id, requester, department)

    plan.status = status_from_chain(steps)
    plan.submitted_at = datetime.utcnow()
    await flush_or_conflict(session, f"Project plan {plan.plan_number}")
    await record_transition(session, current_user, ENTITY_PROJECT_PLAN, plan.id, DRAFT, plan.status)
    logger.info("project_plan_submitted", plan_id=str(plan.id), status=plan.status)
    return plan, steps


async def decide_plan(
    session: AsyncSession,
    plan_id,
    decision: str,
    current_user: dict,
    comments: Optional[str] = None,
) -> tuple[ProjectPlan, list[ApprovalStep], approval_chain.ChainOutcome]:
    plan = await get_plan(session, plan_id, lock=True)
    steps = await load_chain(session, ENTITY_PROJECT_PLAN, plan.id)
    previous = plan.status
    outcome = apply_decision(
        plan, steps, decision, current_user, comments,
        override_roles=settings.approval_override_roles,
    )
    await flush_or_conflict(session, f"Project plan {plan.plan_number}")
    await record_transition(
        session, current_user, ENTITY_PROJECT_PLAN, plan.id, previous, plan.status,
        decision=decision, stage=outcome.step.stage,
    )
    logger.info(
        "project_plan_transition",
        plan_id=str(plan.id),
        from_status=previous,
        to_status=plan.status,
    )
    return plan, steps, outcome
