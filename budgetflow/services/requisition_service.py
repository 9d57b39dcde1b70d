"""
Requisition service: runs the state machine inside the request's transaction.

Lock order is always the requisition row first, then the budget code row, so
a gate transition and the ledger mutation it triggers commit together.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
import structlog

from budgetflow.config import settings
from budgetflow.models.approval import ApprovalStep, ENTITY_PURCHASE_REQUISITION
from budgetflow.models.budget_code import BudgetCode
from budgetflow.models.purchase_requisition import PurchaseRequisition, PrLineItem
from budgetflow.models.user import User
from budgetflow.schemas.purchase_requisition import (
    PrLineItemCreate,
    PurchaseRequisitionCreate,
    PurchaseRequisitionUpdate,
    RequisitionApproveRequest,
    ResubmitRequest,
)
from budgetflow.services import ledger, requisition_workflow as workflow
from budgetflow.services.approval_chain import APPROVE, current_step
from budgetflow.services.approval_policy import STAGE_FINANCE
from budgetflow.services.approval_service import create_chain, get_department, load_chain
from budgetflow.services.audit_service import record_transition
from budgetflow.services.budget_service import flush_or_conflict, get_budget_code
from budgetflow.services.errors import InvalidTransition, NotFound

logger = structlog.get_logger()

PR_PREFIX = "PR"


async def _generate_number(session: AsyncSession) -> str:
    result = await session.execute(select(func.count(PurchaseRequisition.id)))
    count = (result.scalar() or 0) + 1
    return f"{PR_PREFIX}-{count:06d}"


def _build_line_items(items: list[PrLineItemCreate]) -> tuple[list[PrLineItem], int]:
    lines = []
    total = 0
    for idx, li in enumerate(items, start=1):
        lines.append(PrLineItem(
            line_number=idx,
            description=li.description,
            quantity=li.quantity,
            unit_price_cents=li.unit_price_cents,
            measuring_unit=li.measuring_unit,
            category=li.category,
            notes=li.notes,
        ))
        total += li.quantity * li.unit_price_cents
    return lines, total


async def get_requisition(
    session: AsyncSession, pr_id, lock: bool = False
) -> PurchaseRequisition:
    q = (
        select(PurchaseRequisition)
        .where(
            PurchaseRequisition.id == pr_id,
            PurchaseRequisition.deleted_at.is_(None),
        )
        .options(
            selectinload(PurchaseRequisition.line_items),
            selectinload(PurchaseRequisition.rejections),
        )
    )
    if lock:
        q = q.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(q)
    pr = result.scalar_one_or_none()
    if not pr:
        raise NotFound(f"Purchase requisition {pr_id} not found")
    return pr


async def _get_user(session: AsyncSession, user_id) -> User:
    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFound(f"User {user_id} not found")
    return user


async def create_requisition(
    session: AsyncSession, body: PurchaseRequisitionCreate, current_user: dict
) -> PurchaseRequisition:
    department_id = body.department_id or current_user.get("department_id")
    if not department_id:
        raise InvalidTransition("A department is required to raise a requisition")

    lines, total = _build_line_items(body.line_items)
    pr = PurchaseRequisition(
        requisition_number=await _generate_number(session),
        requester_id=current_user["user_id"],
        requester_email=current_user["email"],
        department_id=department_id,
        title=body.title,
        description=body.description,
        justification=body.justification,
        urgency=body.urgency,
        total_cents=total,
        status=workflow.DRAFT,
        line_items=lines,
    )
    session.add(pr)
    await session.flush()

    await record_transition(session, current_user, ENTITY_PURCHASE_REQUISITION, pr.id, None, pr.status)
    logger.info("requisition_created", pr_id=str(pr.id), total_cents=total)
    return pr


async def _apply_edits(session: AsyncSession, pr: PurchaseRequisition, body) -> None:
    for field in ("title", "description", "justification", "urgency"):
        value = getattr(body, field)
        if value is not None:
            setattr(pr, field, value)

    if body.line_items is not None:
        lines, total = _build_line_items(body.line_items)
        pr.line_items.clear()
        await session.flush()
        pr.line_items.extend(lines)
        pr.total_cents = total


async def update_draft(
    session: AsyncSession, pr_id, body: PurchaseRequisitionUpdate
) -> PurchaseRequisition:
    pr = await get_requisition(session, pr_id, lock=True)
    if pr.status != workflow.DRAFT:
        raise InvalidTransition("Only DRAFT requisitions can be updated", status=pr.status)

    await _apply_edits(session, pr, body)
    await flush_or_conflict(session, f"Requisition {pr.requisition_number}")
    return pr


async def delete_draft(session: AsyncSession, pr_id) -> None:
    pr = await get_requisition(session, pr_id, lock=True)
    if pr.status != workflow.DRAFT:
        raise InvalidTransition("Only DRAFT requisitions can be deleted", status=pr.status)
    pr.deleted_at = datetime.utcnow()
    await session.flush()


async def submit_requisition(
    session: AsyncSession, pr_id, current_user: dict
) -> tuple[PurchaseRequisition, list[ApprovalStep]]:
    pr = await get_requisition(session, pr_id, lock=True)
    if pr.status != workflow.DRAFT:
        raise InvalidTransition(f"Cannot submit requisition in status {pr.status}", status=pr.status)

    requester = await _get_user(session, pr.requester_id)
    department = await get_department(session, pr.department_id)
    steps = await create_chain(
        session, ENTITY_PURCHASE_REQUISITION, pr.id, requester, department
    )
    transition = workflow.submit(pr, steps)
    await flush_or_conflict(session, f"Requisition {pr.requisition_number}")

    await record_transition(
        session, current_user, ENTITY_PURCHASE_REQUISITION, pr.id,
        transition.from_status, transition.to_status,
    )
    return pr, steps


async def _code_for_decision(
    session: AsyncSession,
    pr: PurchaseRequisition,
    steps: list[ApprovalStep],
    decision: str,
    body: RequisitionApproveRequest,
) -> Optional[BudgetCode]:
    """Lock the budget code the gate will touch, if any."""
    step = current_step(steps)
    if decision == APPROVE:
        if step is not None and step.stage == STAGE_FINANCE and body.budget_code_id:
            return await get_budget_code(session, body.budget_code_id, lock=True)
        return None
    if pr.budget_code_id:
        return await get_budget_code(session, pr.budget_code_id, lock=True)
    return None


async def decide_requisition(
    session: AsyncSession,
    pr_id,
    decision: str,
    body: RequisitionApproveRequest,
    current_user: dict,
) -> tuple[PurchaseRequisition, list[ApprovalStep], workflow.Transition]:
    pr = await get_requisition(session, pr_id, lock=True)
    steps = await load_chain(session, ENTITY_PURCHASE_REQUISITION, pr.id)
    code = await _code_for_decision(session, pr, steps, decision, body)

    transition = workflow.decide(
        pr,
        steps,
        decision,
        workflow.Actor.from_claims(current_user),
        workflow.DecisionInput(
            comments=body.comments,
            budget_code_id=body.budget_code_id,
            amount_cents=body.amount_cents,
            cost_center=body.cost_center,
            sourcing_type=body.sourcing_type,
            purchase_type=body.purchase_type,
            buyer_id=body.buyer_id,
        ),
        code=code,
        override_roles=settings.approval_override_roles,
    )
    await flush_or_conflict(session, f"Requisition {pr.requisition_number}")

    await record_transition(
        session, current_user, ENTITY_PURCHASE_REQUISITION, pr.id,
        transition.from_status, transition.to_status,
        decision=decision,
        stage=transition.outcome.step.stage if transition.outcome else None,
        budget_code=code.code if code else None,
    )
    return pr, steps, transition


async def cancel_requisition(
    session: AsyncSession, pr_id, reason: Optional[str], current_user: dict
) -> PurchaseRequisition:
    pr = await get_requisition(session, pr_id, lock=True)
    code = None
    if pr.budget_code_id:
        code = await get_budget_code(session, pr.budget_code_id, lock=True)

    steps = await load_chain(session, ENTITY_PURCHASE_REQUISITION, pr.id)

    transition = workflow.cancel(
        pr,
        workflow.Actor.from_claims(current_user),
        reason,
        code=code,
        override_roles=settings.approval_override_roles,
        steps=steps,
    )
    await flush_or_conflict(session, f"Requisition {pr.requisition_number}")
    await record_transition(
        session, current_user, ENTITY_PURCHASE_REQUISITION, pr.id,
        transition.from_status, transition.to_status, reason=reason,
    )
    return pr


async def resubmit_requisition(
    session: AsyncSession, pr_id, body: ResubmitRequest, current_user: dict
) -> tuple[PurchaseRequisition, list[ApprovalStep]]:
    """Apply the requester's edits and start a new approval cycle."""
    pr = await get_requisition(session, pr_id, lock=True)
    actor = workflow.Actor.from_claims(current_user)
    workflow.check_resubmit(pr, actor, settings.approval_override_roles)

    await _apply_edits(session, pr, body)
    previous_steps = await load_chain(session, ENTITY_PURCHASE_REQUISITION, pr.id)
    cycle = (previous_steps[0].cycle if previous_steps else 0) + 1

    requester = await _get_user(session, pr.requester_id)
    department = await get_department(session, pr.department_id)
    steps = await create_chain(
        session, ENTITY_PURCHASE_REQUISITION, pr.id, requester, department, cycle=cycle
    )
    transition = workflow.resubmit(
        pr, previous_steps, steps, actor,
        notes=body.resubmission_notes,
        override_roles=settings.approval_override_roles,
    )
    await flush_or_conflict(session, f"Requisition {pr.requisition_number}")

    await record_transition(
        session, current_user, ENTITY_PURCHASE_REQUISITION, pr.id,
        transition.from_status, transition.to_status,
        cycle=cycle, resubmission_count=pr.resubmission_count,
    )
    return pr, steps


async def record_disbursement(
    session: AsyncSession,
    pr_id,
    amount_cents: int,
    disbursement_ref: str,
    current_user: dict,
) -> tuple[PurchaseRequisition, ledger.LedgerEntry, BudgetCode]:
    pr = await get_requisition(session, pr_id, lock=True)
    if not pr.budget_code_id:
        raise InvalidTransition("Requisition holds no budget reservation")
    code = await get_budget_code(session, pr.budget_code_id, lock=True)

    entry = workflow.record_disbursement(
        pr, code, amount_cents, disbursement_ref, workflow.Actor.from_claims(current_user)
    )
    await flush_or_conflict(session, f"Budget code {code.code}")
    return pr, entry, code


async def advance_fulfillment(
    session: AsyncSession, pr_id, target: str, current_user: dict
) -> PurchaseRequisition:
    pr = await get_requisition(session, pr_id, lock=True)
    transition = workflow.advance_fulfillment(pr, target)
    await flush_or_conflict(session, f"Requisition {pr.requisition_number}")
    await record_transition(
        session, current_user, ENTITY_PURCHASE_REQUISITION, pr.id,
        transition.from_status, transition.to_status,
    )
    return pr
