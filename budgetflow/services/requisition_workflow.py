"""
Purchase requisition state machine.

  DRAFT
    → PENDING_SUPERVISOR
    → PENDING_FINANCE_VERIFICATION      (approve reserves budget)
    → PENDING_SUPPLY_CHAIN_REVIEW
    → PENDING_BUYER_ASSIGNMENT          (approve needs buyer + sourcing type)
    → PENDING_HEAD_APPROVAL
    → APPROVED → IN_PROCUREMENT → PROCUREMENT_COMPLETE → DELIVERED

  REJECTED / SUPPLY_CHAIN_REJECTED from any gate, CANCELLED by the requester.
  A rejected requisition may be resubmitted into a new approval cycle.

The status while pending is read off the stage of the chain's current step,
so the status column can never disagree with the chain.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

import structlog

from budgetflow.models.approval import ApprovalStep, ENTITY_PURCHASE_REQUISITION
from budgetflow.models.budget_code import ALLOCATION_ALLOCATED, BudgetCode
from budgetflow.models.purchase_requisition import PrRejection, PurchaseRequisition
from budgetflow.services import approval_chain, ledger
from budgetflow.services.approval_policy import (
    STAGE_BUYER_ASSIGNMENT,
    STAGE_FINANCE,
    STAGE_HEAD,
    STAGE_SUPERVISOR,
    STAGE_SUPPLY_CHAIN,
)
from budgetflow.services.errors import (
    AlreadyDecided,
    InvalidAmount,
    InvalidDecision,
    InvalidTransition,
    Unauthorized,
)

logger = structlog.get_logger()

DRAFT = "DRAFT"
PENDING_SUPERVISOR = "PENDING_SUPERVISOR"
PENDING_FINANCE_VERIFICATION = "PENDING_FINANCE_VERIFICATION"
PENDING_SUPPLY_CHAIN_REVIEW = "PENDING_SUPPLY_CHAIN_REVIEW"
PENDING_BUYER_ASSIGNMENT = "PENDING_BUYER_ASSIGNMENT"
PENDING_HEAD_APPROVAL = "PENDING_HEAD_APPROVAL"
APPROVED = "APPROVED"
IN_PROCUREMENT = "IN_PROCUREMENT"
PROCUREMENT_COMPLETE = "PROCUREMENT_COMPLETE"
DELIVERED = "DELIVERED"
REJECTED = "REJECTED"
SUPPLY_CHAIN_REJECTED = "SUPPLY_CHAIN_REJECTED"
CANCELLED = "CANCELLED"

STAGE_STATUS = {
    STAGE_SUPERVISOR: PENDING_SUPERVISOR,
    STAGE_FINANCE: PENDING_FINANCE_VERIFICATION,
    STAGE_SUPPLY_CHAIN: PENDING_SUPPLY_CHAIN_REVIEW,
    STAGE_BUYER_ASSIGNMENT: PENDING_BUYER_ASSIGNMENT,
    STAGE_HEAD: PENDING_HEAD_APPROVAL,
}
PENDING_STATUSES = frozenset(STAGE_STATUS.values())
SUPPLY_CHAIN_STAGES = frozenset({STAGE_SUPPLY_CHAIN, STAGE_BUYER_ASSIGNMENT})
FULFILLMENT_ORDER = (APPROVED, IN_PROCUREMENT, PROCUREMENT_COMPLETE, DELIVERED)
REJECTED_STATUSES = frozenset({REJECTED, SUPPLY_CHAIN_REJECTED})
# The chain has reached a verdict; any further decision is a replay.
DECIDED_STATUSES = REJECTED_STATUSES | frozenset(FULFILLMENT_ORDER)

SOURCING_TYPES = ("direct_purchase", "quotation", "tender", "framework_agreement")


@dataclass(frozen=True)
class Actor:
    user_id: str
    email: str
    role: str

    @classmethod
    def from_claims(cls, current_user: dict) -> "Actor":
        return cls(
            user_id=str(current_user["user_id"]),
            email=current_user["email"],
            role=current_user["role"],
        )


@dataclass
class DecisionInput:
    comments: Optional[str] = None
    # finance
    budget_code_id: Optional[str] = None
    amount_cents: Optional[int] = None
    cost_center: Optional[str] = None
    # supply chain
    sourcing_type: Optional[str] = None
    purchase_type: Optional[str] = None
    buyer_id: Optional[str] = None


@dataclass
class Transition:
    from_status: str
    to_status: str
    outcome: Optional[approval_chain.ChainOutcome] = None
    ledger_entry: Optional[ledger.LedgerEntry] = None


def status_from_chain(steps: Sequence[ApprovalStep]) -> str:
    rejected = approval_chain.rejected_step(steps)
    if rejected is not None:
        return SUPPLY_CHAIN_REJECTED if rejected.stage in SUPPLY_CHAIN_STAGES else REJECTED
    step = approval_chain.current_step(steps)
    if step is None:
        return APPROVED
    return STAGE_STATUS.get(step.stage, PENDING_HEAD_APPROVAL)


def _is_override(actor: Actor, override_roles) -> bool:
    return actor.role in set(override_roles)


def submit(
    pr: PurchaseRequisition,
    steps: Sequence[ApprovalStep],
    now: Optional[datetime] = None,
) -> Transition:
    if pr.status != DRAFT:
        raise InvalidTransition(f"Cannot submit requisition in status {pr.status}", status=pr.status)
    if not pr.total_cents or pr.total_cents <= 0:
        raise InvalidAmount("Requisition has no priced line items", amount=pr.total_cents)
    if not steps:
        raise InvalidTransition("Requisition has no approval chain")

    previous = pr.status
    pr.status = status_from_chain(steps)
    pr.submitted_at = now or datetime.utcnow()
    logger.info("requisition_submitted", pr_id=str(pr.id), status=pr.status)
    return Transition(previous, pr.status)


def _validate_approval_input(step: ApprovalStep, data: DecisionInput, code: Optional[BudgetCode]) -> None:
    if step.stage == STAGE_FINANCE:
        if not data.budget_code_id or code is None or data.amount_cents is None:
            raise InvalidTransition(
                "Finance approval requires a budget code and an amount",
                stage=step.stage,
            )
    elif step.stage == STAGE_BUYER_ASSIGNMENT:
        if not data.buyer_id or not data.sourcing_type:
            raise InvalidTransition(
                "Buyer assignment requires a buyer and a sourcing type",
                stage=step.stage,
            )
        if data.sourcing_type not in SOURCING_TYPES:
            raise InvalidTransition(
                f"Sourcing type must be one of {SOURCING_TYPES}",
                sourcing_type=data.sourcing_type,
            )


def _record_decision(
    pr: PurchaseRequisition,
    step: ApprovalStep,
    decision: str,
    data: DecisionInput,
    actor: Actor,
    code: Optional[BudgetCode],
    now: datetime,
) -> None:
    approved = decision == approval_chain.APPROVE
    if step.stage == STAGE_FINANCE:
        if approved:
            pr.budget_code_id = code.id
            pr.finance_assigned_cents = data.amount_cents
            pr.finance_cost_center = data.cost_center
        pr.finance_comments = data.comments
        pr.finance_decided_by = actor.user_id
        pr.finance_decided_at = now
    elif step.stage == STAGE_SUPPLY_CHAIN:
        if approved:
            pr.purchase_type = data.purchase_type or pr.purchase_type
            pr.sourcing_type = data.sourcing_type or pr.sourcing_type
        pr.supply_chain_comments = data.comments
        pr.supply_chain_decided_by = actor.user_id
        pr.supply_chain_decided_at = now
    elif step.stage == STAGE_BUYER_ASSIGNMENT:
        if approved:
            pr.assigned_buyer_id = data.buyer_id
            pr.sourcing_type = data.sourcing_type
            pr.purchase_type = data.purchase_type or pr.purchase_type
            pr.buyer_assigned_at = now
        pr.supply_chain_comments = data.comments or pr.supply_chain_comments
    elif step.stage == STAGE_HEAD:
        pr.head_comments = data.comments
        pr.head_decided_by = actor.user_id
        pr.head_decided_at = now


def _release_if_reserved(
    pr: PurchaseRequisition,
    code: Optional[BudgetCode],
    reason: str,
    actor: Actor,
    now: datetime,
) -> Optional[ledger.LedgerEntry]:
    if code is None:
        return None
    allocation = code.allocation_for(pr.id)
    if allocation is None or allocation.status != ALLOCATION_ALLOCATED:
        return None
    return ledger.release(code, pr.id, reason, actor=actor.user_id, now=now)


def decide(
    pr: PurchaseRequisition,
    steps: Sequence[ApprovalStep],
    decision: str,
    actor: Actor,
    data: Optional[DecisionInput] = None,
    code: Optional[BudgetCode] = None,
    override_roles=(),
    now: Optional[datetime] = None,
) -> Transition:
    """Apply one approve/reject decision at the requisition's current gate.

    `code` is the locked BudgetCode the gate touches: the one chosen by finance
    on a finance approval, or the requisition's reserved code on a rejection.
    All checks run before the chain or the ledger is mutated.
    """
    data = data or DecisionInput()
    if decision not in approval_chain.DECISIONS:
        raise InvalidDecision(
            f"Decision must be one of {approval_chain.DECISIONS}", decision=decision
        )
    if pr.status in DECIDED_STATUSES:
        raise AlreadyDecided(
            f"Requisition is already {pr.status.lower()}",
            status=pr.status,
        )
    if pr.status not in PENDING_STATUSES:
        raise InvalidTransition(
            f"Requisition in status {pr.status} is not awaiting a decision",
            status=pr.status,
        )
    if (
        decision == approval_chain.APPROVE
        and str(actor.user_id) == str(pr.requester_id)
        and not _is_override(actor, override_roles)
    ):
        raise Unauthorized("You cannot approve your own purchase requisition")

    step = approval_chain.authorize(steps, actor.email, actor.role, override_roles)
    expected = STAGE_STATUS.get(step.stage)
    if expected and expected != pr.status:
        raise InvalidTransition(
            f"Requisition status {pr.status} does not match the current stage {step.stage}",
            status=pr.status,
            stage=step.stage,
        )

    now = now or datetime.utcnow()
    previous = pr.status
    entry = None

    if decision == approval_chain.APPROVE:
        _validate_approval_input(step, data, code)
        if step.stage == STAGE_FINANCE:
            entry = ledger.reserve(
                code,
                pr.id,
                data.amount_cents,
                actor=actor.user_id,
                request_type=ENTITY_PURCHASE_REQUISITION,
                now=now,
            )

    outcome = approval_chain.decide(
        steps,
        actor.email,
        decision,
        data.comments,
        actor.user_id,
        actor.role,
        override_roles,
        now=now,
    )
    _record_decision(pr, step, decision, data, actor, code, now)

    if outcome.is_rejected:
        entry = _release_if_reserved(
            pr, code, f"Requisition rejected at {step.stage.lower()} stage", actor, now
        )
        pr.rejected_at = now
    elif outcome.is_final:
        pr.approved_at = now

    pr.status = status_from_chain(steps)
    logger.info(
        "requisition_transition",
        pr_id=str(pr.id),
        from_status=previous,
        to_status=pr.status,
        stage=step.stage,
        decision=decision,
    )
    return Transition(previous, pr.status, outcome, entry)


def cancel(
    pr: PurchaseRequisition,
    actor: Actor,
    reason: Optional[str] = None,
    code: Optional[BudgetCode] = None,
    override_roles=(),
    now: Optional[datetime] = None,
    steps: Sequence[ApprovalStep] = (),
) -> Transition:
    """Requester withdrawal, allowed while the requisition is in draft or pending."""
    if str(actor.user_id) != str(pr.requester_id) and not _is_override(actor, override_roles):
        raise Unauthorized("Only the requester can cancel this requisition")
    if pr.status != DRAFT and pr.status not in PENDING_STATUSES:
        raise InvalidTransition(f"Cannot cancel requisition in status {pr.status}", status=pr.status)

    now = now or datetime.utcnow()
    previous = pr.status
    entry = _release_if_reserved(
        pr, code, reason or "Requisition cancelled by requester", actor, now
    )
    approval_chain.archive(steps, now)
    pr.status = CANCELLED
    pr.cancelled_at = now
    logger.info("requisition_cancelled", pr_id=str(pr.id), from_status=previous)
    return Transition(previous, CANCELLED, ledger_entry=entry)


def check_resubmit(pr: PurchaseRequisition, actor: Actor, override_roles=()) -> None:
    if str(actor.user_id) != str(pr.requester_id) and not _is_override(actor, override_roles):
        raise Unauthorized("Only the requester can resubmit this requisition")
    if pr.status not in REJECTED_STATUSES:
        raise InvalidTransition(
            f"Only rejected requisitions can be resubmitted (status {pr.status})",
            status=pr.status,
        )


def _reset_decisions(pr: PurchaseRequisition) -> None:
    pr.budget_code_id = None
    pr.finance_assigned_cents = None
    pr.finance_cost_center = None
    pr.finance_comments = None
    pr.finance_decided_by = None
    pr.finance_decided_at = None
    pr.assigned_buyer_id = None
    pr.buyer_assigned_at = None
    pr.supply_chain_comments = None
    pr.supply_chain_decided_by = None
    pr.supply_chain_decided_at = None
    pr.head_comments = None
    pr.head_decided_by = None
    pr.head_decided_at = None
    pr.approved_at = None
    pr.rejected_at = None


def resubmit(
    pr: PurchaseRequisition,
    previous_steps: Sequence[ApprovalStep],
    steps: Sequence[ApprovalStep],
    actor: Actor,
    notes: Optional[str] = None,
    override_roles=(),
    now: Optional[datetime] = None,
) -> Transition:
    """Send a rejected requisition through a fresh approval cycle.

    The rejection is kept in `pr.rejections` and the old chain is archived;
    `steps` is the new cycle built by the caller. Any reservation was released
    at rejection, so finance re-approval reinstates it.
    """
    check_resubmit(pr, actor, override_roles)
    if not steps:
        raise InvalidTransition("Requisition has no approval chain")
    if not pr.total_cents or pr.total_cents <= 0:
        raise InvalidAmount("Requisition has no priced line items", amount=pr.total_cents)

    now = now or datetime.utcnow()
    previous = pr.status
    rejected = approval_chain.rejected_step(previous_steps)
    cycle = previous_steps[0].cycle if previous_steps else pr.resubmission_count + 1
    pr.rejections.append(PrRejection(
        cycle=cycle,
        previous_status=previous,
        level=rejected.level if rejected else None,
        stage=rejected.stage if rejected else None,
        rejected_by=rejected.decided_by if rejected else None,
        rejector_name=rejected.approver_name if rejected else None,
        rejector_role=rejected.approver_role if rejected else None,
        reason=rejected.comments if rejected else None,
        rejected_at=pr.rejected_at,
        resubmitted_by=actor.user_id,
        resubmitted_at=now,
        resubmission_notes=notes,
    ))
    approval_chain.archive(previous_steps, now)
    _reset_decisions(pr)

    pr.resubmission_count = (pr.resubmission_count or 0) + 1
    pr.last_resubmitted_at = now
    pr.submitted_at = now
    pr.status = status_from_chain(steps)
    logger.info(
        "requisition_resubmitted",
        pr_id=str(pr.id),
        from_status=previous,
        to_status=pr.status,
        resubmission_count=pr.resubmission_count,
    )
    return Transition(previous, pr.status)


def record_disbursement(
    pr: PurchaseRequisition,
    code: BudgetCode,
    amount_cents: int,
    disbursement_ref: str,
    actor: Actor,
    now: Optional[datetime] = None,
) -> ledger.LedgerEntry:
    if pr.status not in FULFILLMENT_ORDER:
        raise InvalidTransition(
            f"Disbursements require an approved requisition (status {pr.status})",
            status=pr.status,
        )
    if pr.budget_code_id is None or str(pr.budget_code_id) != str(code.id):
        raise InvalidTransition("Requisition holds no reservation on this budget code")
    return ledger.deduct(code, pr.id, amount_cents, disbursement_ref, actor=actor.user_id, now=now)


def advance_fulfillment(pr: PurchaseRequisition, target: str) -> Transition:
    if pr.status not in FULFILLMENT_ORDER or target not in FULFILLMENT_ORDER:
        raise InvalidTransition(
            f"Cannot move requisition from {pr.status} to {target}",
            status=pr.status,
        )
    current = FULFILLMENT_ORDER.index(pr.status)
    if FULFILLMENT_ORDER.index(target) != current + 1:
        raise InvalidTransition(
            f"Cannot move requisition from {pr.status} to {target}",
            status=pr.status,
        )
    previous = pr.status
    pr.status = target
    logger.info("requisition_fulfillment_advanced", pr_id=str(pr.id), from_status=previous, to_status=target)
    return Transition(previous, target)
