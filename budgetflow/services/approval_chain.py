"""
Approval chain primitive: ordered, single-actor-at-a-time sign-off.

A chain is the list of ApprovalStep rows of one entity. Nothing here touches
the database: callers load the steps, call these functions, and flush.

The current step is always derived by scanning in level order:
  - first PENDING step → current
  - a REJECTED step before any PENDING one → chain terminated, no current step
  - every step APPROVED → chain complete, no current step
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence

import structlog

from budgetflow.models.approval import (
    ApprovalStep,
    STEP_APPROVED,
    STEP_PENDING,
    STEP_REJECTED,
)
from budgetflow.services.approval_policy import ChainPolicy, DirectorySnapshot, Requester
from budgetflow.services.errors import (
    AlreadyDecided,
    ApproverNotFound,
    InvalidDecision,
    NotFound,
    Unauthorized,
)

logger = structlog.get_logger()

APPROVE = "approve"
REJECT = "reject"
DECISIONS = (APPROVE, REJECT)


@dataclass
class ChainOutcome:
    step: ApprovalStep
    is_final: bool
    is_rejected: bool
    next_step: Optional[ApprovalStep] = None


def _ordered(steps: Iterable[ApprovalStep]) -> list[ApprovalStep]:
    return sorted(steps, key=lambda s: s.level)


def build_chain(
    requester: Requester,
    department: str,
    policy: ChainPolicy,
    directory: DirectorySnapshot,
    entity_type: str,
    entity_id,
    cycle: int = 1,
) -> list[ApprovalStep]:
    """Resolve the policy's roles once and freeze them into PENDING steps."""
    steps: list[ApprovalStep] = []
    seen: set[tuple[str, str]] = set()

    for entry in policy.entries:
        approver = directory.lookup(entry.role)
        if approver is None:
            if entry.required:
                raise ApproverNotFound(
                    f"No active approver found for role '{entry.role}' in {department}",
                    role=entry.role,
                    department=department,
                )
            continue

        email = approver.email.lower()
        if entry.skip_if_requester and email == requester.email.lower():
            continue
        if (entry.stage, email) in seen:
            continue
        seen.add((entry.stage, email))

        steps.append(ApprovalStep(
            entity_type=entity_type,
            entity_id=entity_id,
            cycle=cycle,
            level=len(steps) + 1,
            stage=entry.stage,
            approver_user_id=approver.user_id,
            approver_name=approver.name,
            approver_email=approver.email,
            approver_role=entry.title or entry.role,
            approver_department=approver.department,
            status=STEP_PENDING,
        ))

    if not steps:
        raise ApproverNotFound(
            f"Approval policy '{policy.request_type}' resolved to an empty chain",
            department=department,
        )

    logger.info(
        "approval_chain_built",
        entity_type=entity_type,
        entity_id=str(entity_id),
        cycle=cycle,
        levels=[f"L{s.level}:{s.approver_email}({s.stage})" for s in steps],
    )
    return steps


def current_step(steps: Sequence[ApprovalStep]) -> Optional[ApprovalStep]:
    for step in _ordered(steps):
        if step.status == STEP_REJECTED:
            return None
        if step.status == STEP_PENDING:
            return step
    return None


def rejected_step(steps: Sequence[ApprovalStep]) -> Optional[ApprovalStep]:
    for step in _ordered(steps):
        if step.status == STEP_REJECTED:
            return step
    return None


def is_terminated(steps: Sequence[ApprovalStep]) -> bool:
    return rejected_step(steps) is not None


def is_complete(steps: Sequence[ApprovalStep]) -> bool:
    return bool(steps) and all(s.status == STEP_APPROVED for s in steps)


def is_last_pending(steps: Sequence[ApprovalStep], step: ApprovalStep) -> bool:
    """True when approving `step` would complete the chain."""
    return not any(s.status == STEP_PENDING and s.level > step.level for s in steps)


def archive(steps: Sequence[ApprovalStep], now: Optional[datetime] = None) -> None:
    """Take a chain out of every approver's queue, keeping its decisions."""
    now = now or datetime.utcnow()
    for step in steps:
        if step.archived_at is None:
            step.archived_at = now


def authorize(
    steps: Sequence[ApprovalStep],
    acting_email: str,
    acting_role: Optional[str] = None,
    override_roles: Iterable[str] = (),
) -> ApprovalStep:
    """Return the current step if `acting_email` may decide it, else raise."""
    if not steps:
        raise NotFound("No approval chain found for this entity")

    step = current_step(steps)
    if step is None:
        raise AlreadyDecided(
            "Approval chain is already "
            + ("rejected" if is_terminated(steps) else "fully approved")
        )

    if (acting_email or "").lower() != step.approver_email.lower():
        if acting_role is None or acting_role not in set(override_roles):
            raise Unauthorized(
                "You are not the current approver for this step",
                level=step.level,
                stage=step.stage,
            )
    return step


def decide(
    steps: Sequence[ApprovalStep],
    acting_email: str,
    decision: str,
    comments: Optional[str] = None,
    actor_id=None,
    acting_role: Optional[str] = None,
    override_roles: Iterable[str] = (),
    now: Optional[datetime] = None,
) -> ChainOutcome:
    """Stamp the current step with the decision.

    Rejection terminates the chain and leaves later steps PENDING. Approval
    of the last pending step completes it.
    """
    if decision not in DECISIONS:
        raise InvalidDecision(f"Decision must be one of {DECISIONS}", decision=decision)

    step = authorize(steps, acting_email, acting_role, override_roles)

    step.status = STEP_APPROVED if decision == APPROVE else STEP_REJECTED
    step.comments = comments
    step.decided_at = now or datetime.utcnow()
    step.decided_by = actor_id

    logger.info(
        "chain_step_decided",
        entity_type=step.entity_type,
        entity_id=str(step.entity_id),
        level=step.level,
        stage=step.stage,
        decision=decision,
        acting_email=acting_email,
    )

    if decision == REJECT:
        return ChainOutcome(step=step, is_final=False, is_rejected=True)

    next_step = current_step(steps)
    return ChainOutcome(
        step=step,
        is_final=next_step is None,
        is_rejected=False,
        next_step=next_step,
    )


def chain_summary(steps: Sequence[ApprovalStep]) -> dict:
    total = len(steps)
    approved = sum(1 for s in steps if s.status == STEP_APPROVED)
    rejected = sum(1 for s in steps if s.status == STEP_REJECTED)
    pending = sum(1 for s in steps if s.status == STEP_PENDING)
    step = current_step(steps)
    return {
        "total": total,
        "approved": approved,
        "pending": pending,
        "rejected": rejected,
        "progress": round(approved / total * 100) if total else 0,
        "current_level": step.level if step else None,
        "is_complete": is_complete(steps),
        "is_terminated": rejected > 0,
    }
