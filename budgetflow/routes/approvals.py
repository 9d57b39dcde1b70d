from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from budgetflow.database import get_db
from budgetflow.middleware.auth import get_current_user
from budgetflow.models.approval import ApprovalStep
from budgetflow.schemas.approval import (
    ApprovalChainResponse,
    ApprovalStepResponse,
    ChainSummary,
)
from budgetflow.schemas.common import iso
from budgetflow.services.approval_chain import chain_summary
from budgetflow.services.approval_service import list_awaiting, load_chain
from budgetflow.services.errors import NotFound

router = APIRouter()


def step_to_response(s: ApprovalStep) -> ApprovalStepResponse:
    return ApprovalStepResponse(
        id=str(s.id),
        entity_type=s.entity_type,
        entity_id=str(s.entity_id),
        cycle=s.cycle or 1,
        level=s.level,
        stage=s.stage,
        approver_name=s.approver_name,
        approver_email=s.approver_email,
        approver_role=s.approver_role,
        approver_department=s.approver_department,
        status=s.status,
        comments=s.comments,
        decided_at=iso(s.decided_at),
        created_at=iso(s.created_at) or "",
    )


def chain_to_response(entity_type: str, entity_id, steps: list[ApprovalStep]) -> ApprovalChainResponse:
    return ApprovalChainResponse(
        entity_type=entity_type,
        entity_id=str(entity_id),
        steps=[step_to_response(s) for s in steps],
        summary=ChainSummary(**chain_summary(steps)),
    )


@router.get("/pending", response_model=list[ApprovalStepResponse])
async def list_my_pending_approvals(
    entity_type: str = Query(None),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Steps currently waiting on the caller, oldest first."""
    steps = await list_awaiting(db, current_user["email"])
    if entity_type:
        steps = [s for s in steps if s.entity_type == entity_type]
    return [step_to_response(s) for s in steps]


@router.get("/{entity_type}/{entity_id}", response_model=ApprovalChainResponse)
async def get_chain(
    entity_type: str,
    entity_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    steps = await load_chain(db, entity_type.upper(), entity_id)
    if not steps:
        raise NotFound(f"No approval chain for {entity_type} {entity_id}")
    return chain_to_response(entity_type.upper(), entity_id, steps)
