"""
Budget reservation ledger: pure operations on a loaded BudgetCode aggregate.

Phases of one allocation:
  reserve   → ALLOCATED   (narrows remaining, used unchanged)
  deduct    → SPENT       (used += amount, may repeat for partial tranches)
  return    → SPENT       (used -= amount, balance_returned += amount)
  release   → RELEASED    (only while nothing has been disbursed)

Balances:
  committed = Σ active (amount − actual_spent − balance_returned)
  remaining = total − used − committed

Transfers move total between two codes once their chain approves.

Each operation checks all of its preconditions first and mutates only after
they pass, so a raised error leaves the aggregate untouched. Persistence and
locking are the caller's job (see budget_service.py).
"""

import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Sequence

import structlog

from budgetflow.config import settings
from budgetflow.models.approval import ApprovalStep, ENTITY_PURCHASE_REQUISITION
from budgetflow.models.budget_code import (
    ALLOCATION_ALLOCATED,
    ALLOCATION_RELEASED,
    ALLOCATION_SPENT,
    REVISION_APPROVED,
    REVISION_PENDING,
    REVISION_REJECTED,
    TRANSFER_APPROVED,
    TRANSFER_CANCELLED,
    TRANSFER_PENDING,
    TRANSFER_REJECTED,
    TXN_DEDUCTION,
    TXN_RELEASE,
    TXN_RESERVATION,
    TXN_RETURN,
    BudgetAllocation,
    BudgetCode,
    BudgetHistory,
    BudgetRevision,
    BudgetTransfer,
    LedgerTransaction,
)
from budgetflow.services import approval_chain
from budgetflow.services.errors import (
    AllocationConflict,
    AllocationExceeded,
    AlreadyDecided,
    BudgetCodeInactive,
    DuplicateDisbursement,
    InsufficientFunds,
    InvalidAmount,
    InvalidTransfer,
    InvalidTransition,
    NoActiveAllocation,
    RevisionPending,
    Unauthorized,
)

logger = structlog.get_logger()

STALE_RELEASE_REASON = "Automatically released: reservation older than {days} days"


@dataclass
class LedgerEntry:
    """Result of one ledger operation. `transaction` is None for a replay."""

    allocation: BudgetAllocation
    transaction: Optional[LedgerTransaction] = None

    @property
    def applied(self) -> bool:
        return self.transaction is not None


def _check_amount(amount: int, max_amount: Optional[int] = None) -> None:
    ceiling = settings.MAX_TRANSACTION_CENTS if max_amount is None else max_amount
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise InvalidAmount("Amount must be a positive integer number of cents", amount=amount)
    if amount > ceiling:
        raise InvalidAmount(
            f"Amount exceeds the per-transaction ceiling of {ceiling} cents",
            amount=amount,
        )


def _append(
    code: BudgetCode,
    allocation: BudgetAllocation,
    txn_type: str,
    amount: int,
    balance_before: int,
    actor=None,
    description: Optional[str] = None,
    disbursement_ref: Optional[str] = None,
    now: Optional[datetime] = None,
) -> LedgerTransaction:
    txn = LedgerTransaction(
        id=uuid.uuid4(),
        type=txn_type,
        request_id=allocation.request_id,
        amount_cents=amount,
        balance_before_cents=balance_before,
        balance_after_cents=code.remaining_cents,
        used_after_cents=code.used_cents,
        disbursement_ref=disbursement_ref,
        actor_id=actor,
        description=description,
        created_at=now or datetime.utcnow(),
    )
    txn.allocation = allocation
    code.transactions.append(txn)
    return txn


def _active_allocation(code: BudgetCode, request_id, statuses: Sequence[str]) -> BudgetAllocation:
    allocation = code.allocation_for(request_id)
    if allocation is None or allocation.status not in statuses:
        raise NoActiveAllocation(
            f"No {'/'.join(statuses)} allocation for request {request_id} on {code.code}",
            budget_code=code.code,
            request_id=str(request_id),
        )
    return allocation


# ---------- reserve / deduct / return / release ----------


def reserve(
    code: BudgetCode,
    request_id,
    amount: int,
    actor=None,
    request_type: str = ENTITY_PURCHASE_REQUISITION,
    now: Optional[datetime] = None,
    max_amount: Optional[int] = None,
) -> LedgerEntry:
    _check_amount(amount, max_amount)
    if not code.active:
        raise BudgetCodeInactive(f"Budget code {code.code} is inactive", budget_code=code.code)

    existing = code.allocation_for(request_id)
    freed = 0
    if existing is not None:
        if existing.status == ALLOCATION_ALLOCATED:
            if existing.amount_cents == amount:
                logger.info(
                    "budget_reservation_replayed",
                    budget_code=code.code,
                    request_id=str(request_id),
                    amount_cents=amount,
                )
                return LedgerEntry(allocation=existing)
            raise AllocationConflict(
                f"Request {request_id} already holds a reservation of "
                f"{existing.amount_cents} cents on {code.code}",
                budget_code=code.code,
                request_id=str(request_id),
            )
        if existing.status == ALLOCATION_SPENT:
            if existing.actual_spent_cents > 0:
                raise AllocationConflict(
                    f"Request {request_id} has {existing.actual_spent_cents} cents disbursed "
                    f"on {code.code}; return it before reserving again",
                    budget_code=code.code,
                    request_id=str(request_id),
                )
            # Reinstating drops whatever the old reservation still held.
            freed = existing.outstanding_cents

    remaining = code.remaining_cents
    if amount > remaining + freed:
        raise InsufficientFunds(
            f"Insufficient budget on {code.code}: requested {amount}, available {remaining + freed}",
            budget_code=code.code,
            requested_cents=amount,
            available_cents=remaining + freed,
        )

    now = now or datetime.utcnow()
    if existing is not None:
        allocation = existing
        allocation.amount_cents = amount
        allocation.status = ALLOCATION_ALLOCATED
        allocation.actual_spent_cents = 0
        allocation.balance_returned_cents = 0
        allocation.disbursement_count = 0
        allocation.allocated_at = now
        allocation.first_spent_at = None
        allocation.last_disbursement_at = None
        allocation.released_at = None
        allocation.release_reason = None
        allocation.allocated_by = actor
        description = f"Reservation reinstated for {request_type}"
    else:
        allocation = BudgetAllocation(
            id=uuid.uuid4(),
            request_type=request_type,
            request_id=request_id,
            amount_cents=amount,
            status=ALLOCATION_ALLOCATED,
            allocated_at=now,
            allocated_by=actor,
        )
        code.allocations.append(allocation)
        description = f"Funds reserved for {request_type}"

    txn = _append(code, allocation, TXN_RESERVATION, amount, remaining, actor, description, now=now)
    logger.info(
        "budget_reserved",
        budget_code=code.code,
        request_id=str(request_id),
        amount_cents=amount,
        remaining_cents=code.remaining_cents,
        reinstated=existing is not None,
    )
    return LedgerEntry(allocation=allocation, transaction=txn)


def deduct(
    code: BudgetCode,
    request_id,
    amount: int,
    disbursement_ref: str,
    actor=None,
    now: Optional[datetime] = None,
    max_amount: Optional[int] = None,
) -> LedgerEntry:
    if not disbursement_ref:
        raise ValueError("disbursement_ref is required")
    _check_amount(amount, max_amount)

    for txn in code.transactions:
        if txn.type == TXN_DEDUCTION and txn.disbursement_ref == disbursement_ref:
            if str(txn.request_id) == str(request_id) and txn.amount_cents == amount:
                logger.info(
                    "budget_deduction_replayed",
                    budget_code=code.code,
                    request_id=str(request_id),
                    disbursement_ref=disbursement_ref,
                )
                return LedgerEntry(allocation=code.allocation_for(request_id))
            raise DuplicateDisbursement(
                f"Disbursement {disbursement_ref} was already recorded with different parameters",
                budget_code=code.code,
                disbursement_ref=disbursement_ref,
            )

    allocation = _active_allocation(code, request_id, (ALLOCATION_ALLOCATED, ALLOCATION_SPENT))

    ceiling = allocation.disbursable_cents
    if allocation.actual_spent_cents + amount > ceiling:
        raise AllocationExceeded(
            f"Disbursement of {amount} would exceed the reservation: "
            f"{allocation.actual_spent_cents} of {ceiling} cents already disbursed",
            budget_code=code.code,
            request_id=str(request_id),
            disbursed_cents=allocation.actual_spent_cents,
            allocated_cents=ceiling,
        )
    if code.used_cents + amount > code.total_cents:
        raise InsufficientFunds(
            f"Disbursement of {amount} would exceed the total budget of {code.code}",
            budget_code=code.code,
            requested_cents=amount,
            available_cents=code.unspent_cents,
        )

    now = now or datetime.utcnow()
    balance_before = code.remaining_cents
    allocation.actual_spent_cents += amount
    allocation.disbursement_count += 1
    allocation.status = ALLOCATION_SPENT
    if allocation.first_spent_at is None:
        allocation.first_spent_at = now
    allocation.last_disbursement_at = now
    code.used_cents += amount

    txn = _append(
        code,
        allocation,
        TXN_DEDUCTION,
        amount,
        balance_before,
        actor,
        f"Disbursement {allocation.disbursement_count} ({disbursement_ref})",
        disbursement_ref=disbursement_ref,
        now=now,
    )
    logger.info(
        "budget_deducted",
        budget_code=code.code,
        request_id=str(request_id),
        amount_cents=amount,
        disbursed_cents=allocation.actual_spent_cents,
        used_cents=code.used_cents,
    )
    return LedgerEntry(allocation=allocation, transaction=txn)


def return_unused(
    code: BudgetCode,
    request_id,
    amount: int,
    actor=None,
    now: Optional[datetime] = None,
) -> LedgerEntry:
    allocation = _active_allocation(code, request_id, (ALLOCATION_SPENT,))
    _check_amount(amount)
    if amount > allocation.actual_spent_cents:
        raise InvalidAmount(
            f"Cannot return {amount}: only {allocation.actual_spent_cents} cents were disbursed",
            amount=amount,
        )

    balance_before = code.remaining_cents
    allocation.actual_spent_cents -= amount
    allocation.balance_returned_cents += amount
    code.used_cents -= amount

    txn = _append(
        code, allocation, TXN_RETURN, amount, balance_before, actor,
        "Unused balance returned", now=now,
    )
    logger.info(
        "budget_returned",
        budget_code=code.code,
        request_id=str(request_id),
        amount_cents=amount,
        used_cents=code.used_cents,
    )
    return LedgerEntry(allocation=allocation, transaction=txn)


def release(
    code: BudgetCode,
    request_id,
    reason: str,
    actor=None,
    now: Optional[datetime] = None,
) -> LedgerEntry:
    allocation = _active_allocation(code, request_id, (ALLOCATION_ALLOCATED,))
    return LedgerEntry(
        allocation=allocation,
        transaction=_release(code, allocation, reason, actor, now or datetime.utcnow()),
    )


def _release(
    code: BudgetCode,
    allocation: BudgetAllocation,
    reason: str,
    actor,
    now: datetime,
) -> LedgerTransaction:
    balance_before = code.remaining_cents
    allocation.status = ALLOCATION_RELEASED
    allocation.released_at = now
    allocation.release_reason = reason

    txn = _append(
        code, allocation, TXN_RELEASE, allocation.amount_cents, balance_before, actor,
        reason, now=now,
    )
    logger.info(
        "budget_released",
        budget_code=code.code,
        request_id=str(allocation.request_id),
        amount_cents=allocation.amount_cents,
        reason=reason,
    )
    return txn


def release_stale(
    code: BudgetCode,
    age_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> list[BudgetAllocation]:
    """Release every ALLOCATED reservation older than `age_days`.

    Re-running finds nothing left to release.
    """
    age_days = settings.STALE_RESERVATION_DAYS if age_days is None else age_days
    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=age_days)
    reason = STALE_RELEASE_REASON.format(days=age_days)

    stale = [
        a for a in code.allocations
        if a.status == ALLOCATION_ALLOCATED and a.allocated_at < cutoff
    ]
    for allocation in stale:
        _release(code, allocation, reason, None, now)
    return stale


# ---------- revisions ----------


def request_revision(
    code: BudgetCode,
    new_total: int,
    reason: str,
    requested_by=None,
    now: Optional[datetime] = None,
) -> BudgetRevision:
    """Open a PENDING revision. The caller attaches its approval chain."""
    if code.pending_revision() is not None:
        raise RevisionPending(
            f"Budget code {code.code} already has a pending revision",
            budget_code=code.code,
        )
    if not isinstance(new_total, int) or new_total <= 0:
        raise InvalidAmount("New budget must be a positive number of cents", amount=new_total)
    floor = code.used_cents + code.committed_cents
    if new_total < floor:
        raise InvalidAmount(
            f"New budget {new_total} is below what is already used or committed ({floor})",
            amount=new_total,
            minimum_cents=floor,
        )

    revision = BudgetRevision(
        id=uuid.uuid4(),
        previous_cents=code.total_cents,
        requested_cents=new_total,
        change_cents=new_total - code.total_cents,
        reason=reason,
        requested_by=requested_by,
        status=REVISION_PENDING,
        created_at=now or datetime.utcnow(),
    )
    code.revisions.append(revision)
    logger.info(
        "budget_revision_requested",
        budget_code=code.code,
        previous_cents=code.total_cents,
        requested_cents=new_total,
    )
    return revision


def _check_revision_open(revision: BudgetRevision) -> None:
    if revision.status != REVISION_PENDING:
        raise AlreadyDecided(
            f"Revision is already {revision.status.lower()}",
            revision_id=str(revision.id),
        )


def approve_revision(
    code: BudgetCode,
    revision: BudgetRevision,
    steps: Sequence[ApprovalStep],
    acting_email: str,
    comments: Optional[str] = None,
    actor_id=None,
    acting_role: Optional[str] = None,
    override_roles=(),
    now: Optional[datetime] = None,
) -> approval_chain.ChainOutcome:
    _check_revision_open(revision)
    step = approval_chain.authorize(steps, acting_email, acting_role, override_roles)

    if approval_chain.is_last_pending(steps, step):
        floor = code.used_cents + code.committed_cents
        if revision.requested_cents < floor:
            raise InvalidAmount(
                f"New budget {revision.requested_cents} is below what is already used "
                f"or committed ({floor})",
                amount=revision.requested_cents,
                minimum_cents=floor,
            )

    now = now or datetime.utcnow()
    outcome = approval_chain.decide(
        steps, acting_email, approval_chain.APPROVE, comments, actor_id,
        acting_role, override_roles, now=now,
    )
    if outcome.is_final:
        code.history.append(BudgetHistory(
            id=uuid.uuid4(),
            revision_id=revision.id,
            previous_cents=code.total_cents,
            new_cents=revision.requested_cents,
            reason=revision.reason,
            changed_by=actor_id,
            changed_at=now,
        ))
        code.total_cents = revision.requested_cents
        revision.status = REVISION_APPROVED
        revision.decided_at = now
        revision.applied_at = now
        logger.info(
            "budget_revision_applied",
            budget_code=code.code,
            previous_cents=revision.previous_cents,
            new_cents=revision.requested_cents,
        )
    return outcome


def reject_revision(
    code: BudgetCode,
    revision: BudgetRevision,
    steps: Sequence[ApprovalStep],
    acting_email: str,
    comments: Optional[str] = None,
    actor_id=None,
    acting_role: Optional[str] = None,
    override_roles=(),
    now: Optional[datetime] = None,
) -> approval_chain.ChainOutcome:
    _check_revision_open(revision)
    now = now or datetime.utcnow()
    outcome = approval_chain.decide(
        steps, acting_email, approval_chain.REJECT, comments, actor_id,
        acting_role, override_roles, now=now,
    )
    revision.status = REVISION_REJECTED
    revision.decided_at = now
    logger.info("budget_revision_rejected", budget_code=code.code, revision_id=str(revision.id))
    return outcome


# ---------- transfers ----------


def _check_transfer_funds(from_code: BudgetCode, to_code: BudgetCode, amount: int) -> None:
    for code in (from_code, to_code):
        if not code.active:
            raise BudgetCodeInactive(f"Budget code {code.code} is inactive", budget_code=code.code)
    if amount > from_code.remaining_cents:
        raise InsufficientFunds(
            f"Insufficient budget on {from_code.code}: requested {amount}, "
            f"available {from_code.remaining_cents}",
            budget_code=from_code.code,
            requested_cents=amount,
            available_cents=from_code.remaining_cents,
        )


def _check_transfer_codes(transfer: BudgetTransfer, from_code: BudgetCode, to_code: BudgetCode) -> None:
    if (
        str(transfer.from_budget_code_id) != str(from_code.id)
        or str(transfer.to_budget_code_id) != str(to_code.id)
    ):
        raise InvalidTransfer(
            "Budget codes do not match the transfer",
            transfer_id=str(transfer.id),
        )


def _check_transfer_open(transfer: BudgetTransfer) -> None:
    if transfer.status != TRANSFER_PENDING:
        raise AlreadyDecided(
            f"Transfer is already {transfer.status.lower()}",
            transfer_id=str(transfer.id),
        )


def request_transfer(
    from_code: BudgetCode,
    to_code: BudgetCode,
    amount: int,
    reason: str,
    requested_by=None,
    now: Optional[datetime] = None,
) -> BudgetTransfer:
    """Open a PENDING transfer. The caller attaches its approval chain."""
    if from_code is to_code or str(from_code.id) == str(to_code.id):
        raise InvalidTransfer("Cannot transfer a budget code to itself", budget_code=from_code.code)
    _check_amount(amount)
    _check_transfer_funds(from_code, to_code, amount)

    transfer = BudgetTransfer(
        id=uuid.uuid4(),
        from_budget_code_id=from_code.id,
        to_budget_code_id=to_code.id,
        amount_cents=amount,
        reason=reason,
        requested_by=requested_by,
        status=TRANSFER_PENDING,
        created_at=now or datetime.utcnow(),
    )
    logger.info(
        "budget_transfer_requested",
        from_code=from_code.code,
        to_code=to_code.code,
        amount_cents=amount,
    )
    return transfer


def approve_transfer(
    transfer: BudgetTransfer,
    from_code: BudgetCode,
    to_code: BudgetCode,
    steps: Sequence[ApprovalStep],
    acting_email: str,
    comments: Optional[str] = None,
    actor_id=None,
    acting_role: Optional[str] = None,
    override_roles=(),
    now: Optional[datetime] = None,
) -> approval_chain.ChainOutcome:
    """Approve the current step; the last approval moves the funds."""
    _check_transfer_open(transfer)
    _check_transfer_codes(transfer, from_code, to_code)
    step = approval_chain.authorize(steps, acting_email, acting_role, override_roles)
    if approval_chain.is_last_pending(steps, step):
        _check_transfer_funds(from_code, to_code, transfer.amount_cents)

    now = now or datetime.utcnow()
    outcome = approval_chain.decide(
        steps, acting_email, approval_chain.APPROVE, comments, actor_id,
        acting_role, override_roles, now=now,
    )
    if outcome.is_final:
        amount = transfer.amount_cents
        from_code.history.append(BudgetHistory(
            id=uuid.uuid4(),
            transfer_id=transfer.id,
            previous_cents=from_code.total_cents,
            new_cents=from_code.total_cents - amount,
            reason=f"Transfer to {to_code.code}: {transfer.reason}",
            changed_by=actor_id,
            changed_at=now,
        ))
        to_code.history.append(BudgetHistory(
            id=uuid.uuid4(),
            transfer_id=transfer.id,
            previous_cents=to_code.total_cents,
            new_cents=to_code.total_cents + amount,
            reason=f"Transfer from {from_code.code}: {transfer.reason}",
            changed_by=actor_id,
            changed_at=now,
        ))
        from_code.total_cents -= amount
        to_code.total_cents += amount
        transfer.status = TRANSFER_APPROVED
        transfer.decided_by = actor_id
        transfer.decided_at = now
        transfer.executed_at = now
        logger.info(
            "budget_transfer_executed",
            transfer_id=str(transfer.id),
            from_code=from_code.code,
            to_code=to_code.code,
            amount_cents=amount,
        )
    return outcome


def reject_transfer(
    transfer: BudgetTransfer,
    steps: Sequence[ApprovalStep],
    acting_email: str,
    comments: Optional[str] = None,
    actor_id=None,
    acting_role: Optional[str] = None,
    override_roles=(),
    now: Optional[datetime] = None,
) -> approval_chain.ChainOutcome:
    _check_transfer_open(transfer)
    now = now or datetime.utcnow()
    outcome = approval_chain.decide(
        steps, acting_email, approval_chain.REJECT, comments, actor_id,
        acting_role, override_roles, now=now,
    )
    transfer.status = TRANSFER_REJECTED
    transfer.decided_by = actor_id
    transfer.decided_at = now
    transfer.rejection_reason = comments
    logger.info("budget_transfer_rejected", transfer_id=str(transfer.id), level=outcome.step.level)
    return outcome


def cancel_transfer(
    transfer: BudgetTransfer,
    steps: Sequence[ApprovalStep],
    actor_id,
    acting_role: Optional[str] = None,
    override_roles=(),
    now: Optional[datetime] = None,
) -> None:
    """Withdraw a pending transfer. Only the requester may, unless overridden."""
    if transfer.status != TRANSFER_PENDING:
        raise InvalidTransition(
            f"Cannot cancel a transfer in status {transfer.status}",
            status=transfer.status,
        )
    if str(actor_id) != str(transfer.requested_by) and acting_role not in set(override_roles):
        raise Unauthorized("Only the requester can cancel this transfer")

    now = now or datetime.utcnow()
    transfer.status = TRANSFER_CANCELLED
    transfer.cancelled_at = now
    approval_chain.archive(steps, now)
    logger.info("budget_transfer_cancelled", transfer_id=str(transfer.id))


# ---------- read-only reporting ----------


UTILIZATION_THRESHOLDS = ((90, "critical"), (75, "warning"), (60, "moderate"))


def utilization_status(code: BudgetCode) -> str:
    # Compare in integer cents; utilization_percentage is rounded for display.
    if code.total_cents <= 0:
        return "healthy"
    for pct, level in UTILIZATION_THRESHOLDS:
        if code.used_cents * 100 >= pct * code.total_cents:
            return level
    return "healthy"


def _add_months(start: date, months: float) -> date:
    return start + timedelta(days=round(months * 30.44))


def forecast(code: BudgetCode, today: Optional[date] = None) -> dict:
    """Project when the code runs dry from its average monthly burn.

    Spend is grouped by the calendar month of each allocation's first
    disbursement.
    """
    today = today or datetime.utcnow().date()
    monthly: "OrderedDict[str, int]" = OrderedDict()
    for allocation in sorted(
        (a for a in code.allocations if a.first_spent_at and a.actual_spent_cents > 0),
        key=lambda a: a.first_spent_at,
    ):
        key = allocation.first_spent_at.strftime("%Y-%m")
        monthly[key] = monthly.get(key, 0) + allocation.actual_spent_cents

    remaining = code.remaining_cents
    result = {
        "remaining_cents": remaining,
        "monthly_spend": [{"month": k, "spent_cents": v} for k, v in monthly.items()],
        "average_monthly_burn_cents": 0,
        "months_remaining": None,
        "projected_exhaustion_date": None,
        "status": "unused",
    }

    if remaining <= 0:
        result["status"] = "exhausted"
        result["months_remaining"] = 0.0
        result["projected_exhaustion_date"] = today
        if monthly:
            result["average_monthly_burn_cents"] = round(sum(monthly.values()) / len(monthly))
        return result
    if not monthly:
        return result

    burn = sum(monthly.values()) / len(monthly)
    months_remaining = remaining / burn
    result["average_monthly_burn_cents"] = round(burn)
    result["months_remaining"] = round(months_remaining, 1)
    result["projected_exhaustion_date"] = _add_months(today, months_remaining)

    if months_remaining < 2:
        result["status"] = "critical"
    elif months_remaining < 4:
        result["status"] = "warning"
    elif months_remaining < 8:
        result["status"] = "monitor"
    else:
        result["status"] = "healthy"
    return result
