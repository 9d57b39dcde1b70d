"""
Approval service: persistence around the pure chain primitive.

Chains are built once at submission from the policy table and a directory
snapshot, stored as approval_steps rows, and re-loaded in level order for
every decision. A resubmitted entity gets a new cycle of steps; older cycles
are archived and kept for history only.
"""

from collections import defaultdict
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from budgetflow.models.approval import ApprovalStep, STEP_PENDING
from budgetflow.models.department import Department
from budgetflow.models.user import User
from budgetflow.services.approval_chain import build_chain, current_step
from budgetflow.services.approval_policy import (
    PolicyTable,
    Requester,
    get_policy_table,
    load_directory,
)

logger = structlog.get_logger()


async def load_chain(
    session: AsyncSession, entity_type: str, entity_id
) -> list[ApprovalStep]:
    """Steps of the entity's latest cycle, in level order."""
    latest = (
        select(func.max(ApprovalStep.cycle))
        .where(
            ApprovalStep.entity_type == entity_type,
            ApprovalStep.entity_id == entity_id,
        )
        .scalar_subquery()
    )
    result = await session.execute(
        select(ApprovalStep)
        .where(
            ApprovalStep.entity_type == entity_type,
            ApprovalStep.entity_id == entity_id,
            ApprovalStep.cycle == latest,
        )
        .order_by(ApprovalStep.level)
    )
    return list(result.scalars().all())


async def get_department(session: AsyncSession, department_id) -> Optional[Department]:
    if not department_id:
        return None
    result = await session.execute(select(Department).where(Department.id == department_id))
    return result.scalar_one_or_none()


async def create_chain(
    session: AsyncSession,
    entity_type: str,
    entity_id,
    requester: User,
    department: Optional[Department],
    policy_table: Optional[PolicyTable] = None,
    cycle: int = 1,
) -> list[ApprovalStep]:
    """Resolve the policy for (entity_type, department) and persist its steps."""
    table = policy_table or get_policy_table()
    policy = table.resolve(entity_type, department.code if department else None)
    directory = await load_directory(
        session, requester, department, {e.role for e in policy.entries}
    )

    steps = build_chain(
        Requester(email=requester.email, user_id=str(requester.id), name=requester.full_name),
        department.name if department else "",
        policy,
        directory,
        entity_type,
        entity_id,
        cycle=cycle,
    )
    session.add_all(steps)
    await session.flush()

    logger.info(
        "approval_workflow_created",
        entity_type=entity_type,
        entity_id=str(entity_id),
        cycle=cycle,
        steps=len(steps),
    )
    return steps


async def list_awaiting(session: AsyncSession, approver_email: str) -> list[ApprovalStep]:
    """Steps where `approver_email` is the current approver of a live chain."""
    result = await session.execute(
        select(ApprovalStep).where(
            ApprovalStep.approver_email.ilike(approver_email),
            ApprovalStep.status == STEP_PENDING,
            ApprovalStep.archived_at.is_(None),
        )
    )
    candidates = list(result.scalars().all())
    if not candidates:
        return []

    entity_ids = {s.entity_id for s in candidates}
    chain_result = await session.execute(
        select(ApprovalStep)
        .where(
            ApprovalStep.entity_id.in_(entity_ids),
            ApprovalStep.archived_at.is_(None),
        )
        .order_by(ApprovalStep.level)
    )
    chains: dict[tuple, list[ApprovalStep]] = defaultdict(list)
    for step in chain_result.scalars().all():
        chains[(step.entity_type, step.entity_id, step.cycle)].append(step)

    awaiting = []
    for step in candidates:
        current = current_step(chains[(step.entity_type, step.entity_id, step.cycle)])
        if current is not None and current.id == step.id:
            awaiting.append(step)
    awaiting.sort(key=lambda s: s.created_at or datetime.min)
    return awaiting
