"""
Budget service: locked load, one ledger operation, versioned flush.

All functions use the caller's session (no commit). get_db() auto-commits.
The BudgetCode row is selected FOR UPDATE and carries a version_id column, so
two concurrent reservations against one code serialize; a lost race surfaces
as ConcurrentUpdate instead of a silent overwrite. Operations that touch two
codes lock them in ascending id order.
"""

import calendar
import uuid
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError
import structlog

from budgetflow.config import settings
from budgetflow.models.approval import (
    ApprovalStep,
    ENTITY_BUDGET_REVISION,
    ENTITY_BUDGET_TRANSFER,
)
from budgetflow.models.budget_code import (
    ALLOCATION_ALLOCATED,
    BudgetAllocation,
    BudgetCode,
    BudgetRevision,
    BudgetTransfer,
)
from budgetflow.models.user import User
from budgetflow.services import ledger
from budgetflow.services.approval_chain import ChainOutcome
from budgetflow.services.approval_service import create_chain, get_department, load_chain
from budgetflow.services.audit_service import record_transition
from budgetflow.services.errors import ConcurrentUpdate, NotFound

logger = structlog.get_logger()


def default_end_date(period: str, start: date) -> Optional[date]:
    """monthly → end of month, quarterly → end of third month, yearly → 31 Dec."""
    if period == "monthly":
        return date(start.year, start.month, calendar.monthrange(start.year, start.month)[1])
    if period == "quarterly":
        month = start.month + 2
        year = start.year + (month - 1) // 12
        month = (month - 1) % 12 + 1
        return date(year, month, calendar.monthrange(year, month)[1])
    if period == "yearly":
        return date(start.year, 12, 31)
    return None


def _lookup_clause(code_ref):
    try:
        return BudgetCode.id == uuid.UUID(str(code_ref))
    except ValueError:
        return BudgetCode.code == str(code_ref).upper()


async def get_budget_code(
    session: AsyncSession, code_ref, lock: bool = False
) -> BudgetCode:
    """Load the aggregate by id or by code, with every sub-ledger collection."""
    q = (
        select(BudgetCode)
        .where(_lookup_clause(code_ref))
        .options(
            selectinload(BudgetCode.allocations),
            selectinload(BudgetCode.transactions),
            selectinload(BudgetCode.revisions),
            selectinload(BudgetCode.history),
        )
    )
    if lock:
        q = q.with_for_update().execution_options(populate_existing=True)

    result = await session.execute(q)
    code = result.scalar_one_or_none()
    if not code:
        raise NotFound(f"Budget code '{code_ref}' not found")
    return code


async def flush_or_conflict(session: AsyncSession, label: str) -> None:
    """Flush, turning a version_id mismatch into a retryable ConcurrentUpdate."""
    try:
        await session.flush()
    except StaleDataError as e:
        logger.warning("optimistic_version_conflict", entity=label)
        raise ConcurrentUpdate(
            f"{label} was modified concurrently; retry the request",
            entity=label,
        ) from e


async def _flush(session: AsyncSession, code: BudgetCode) -> None:
    await flush_or_conflict(session, f"Budget code {code.code}")


async def create_budget_code(
    session: AsyncSession,
    *,
    code: str,
    name: str,
    total_cents: int,
    budget_type: str,
    budget_period: str,
    fiscal_year: int,
    department_id=None,
    description: Optional[str] = None,
    budget_owner: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    created_by=None,
) -> BudgetCode:
    start_date = start_date or datetime.utcnow().date()
    budget_code = BudgetCode(
        code=code.upper(),
        name=name,
        description=description,
        department_id=department_id,
        budget_type=budget_type,
        budget_period=budget_period,
        fiscal_year=fiscal_year,
        budget_owner=budget_owner,
        total_cents=total_cents,
        start_date=start_date,
        end_date=end_date or default_end_date(budget_period, start_date),
        created_by=created_by,
    )
    session.add(budget_code)
    await session.flush()
    logger.info("budget_code_created", budget_code=budget_code.code, total_cents=total_cents)
    return budget_code


async def reserve_budget(
    session: AsyncSession,
    code_ref,
    request_id,
    amount_cents: int,
    actor_id=None,
    request_type: Optional[str] = None,
) -> tuple[BudgetCode, ledger.LedgerEntry]:
    code = await get_budget_code(session, code_ref, lock=True)
    kwargs = {"request_type": request_type} if request_type else {}
    entry = ledger.reserve(code, request_id, amount_cents, actor=actor_id, **kwargs)
    await _flush(session, code)
    return code, entry


async def deduct_budget(
    session: AsyncSession,
    code_ref,
    request_id,
    amount_cents: int,
    disbursement_ref: str,
    actor_id=None,
) -> tuple[BudgetCode, ledger.LedgerEntry]:
    code = await get_budget_code(session, code_ref, lock=True)
    entry = ledger.deduct(code, request_id, amount_cents, disbursement_ref, actor=actor_id)
    await _flush(session, code)
    return code, entry


async def return_budget(
    session: AsyncSession,
    code_ref,
    request_id,
    amount_cents: int,
    actor_id=None,
) -> tuple[BudgetCode, ledger.LedgerEntry]:
    code = await get_budget_code(session, code_ref, lock=True)
    entry = ledger.return_unused(code, request_id, amount_cents, actor=actor_id)
    await _flush(session, code)
    return code, entry


async def release_budget(
    session: AsyncSession,
    code_ref,
    request_id,
    reason: str,
    actor_id=None,
) -> tuple[BudgetCode, ledger.LedgerEntry]:
    code = await get_budget_code(session, code_ref, lock=True)
    entry = ledger.release(code, request_id, reason, actor=actor_id)
    await _flush(session, code)
    return code, entry


async def release_stale_reservations(
    session: AsyncSession,
    age_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> list[BudgetAllocation]:
    """Sweep every budget code holding reservations older than `age_days`."""
    age_days = settings.STALE_RESERVATION_DAYS if age_days is None else age_days
    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=age_days)

    result = await session.execute(
        select(BudgetAllocation.budget_code_id)
        .where(
            BudgetAllocation.status == ALLOCATION_ALLOCATED,
            BudgetAllocation.allocated_at < cutoff,
        )
        .distinct()
        # Same lock order as every other multi-code operation.
        .order_by(BudgetAllocation.budget_code_id)
    )
    code_ids = list(result.scalars().all())

    released: list[BudgetAllocation] = []
    for code_id in code_ids:
        code = await get_budget_code(session, code_id, lock=True)
        swept = ledger.release_stale(code, age_days, now)
        await _flush(session, code)
        released.extend(swept)

    logger.info(
        "stale_reservations_released",
        budget_codes=len(code_ids),
        released=len(released),
        age_days=age_days,
    )
    return released


# ---------- revisions ----------


def _find_revision(code: BudgetCode, revision_id) -> BudgetRevision:
    for revision in code.revisions:
        if str(revision.id) == str(revision_id):
            return revision
    raise NotFound(f"Revision {revision_id} not found on {code.code}")


async def request_revision(
    session: AsyncSession,
    code_ref,
    new_total_cents: int,
    reason: str,
    requester: User,
) -> BudgetRevision:
    code = await get_budget_code(session, code_ref, lock=True)
    revision = ledger.request_revision(code, new_total_cents, reason, requester.id)
    await _flush(session, code)

    department = await get_department(session, code.department_id or requester.department_id)
    await create_chain(session, ENTITY_BUDGET_REVISION, revision.id, requester, department)
    return revision


async def decide_revision(
    session: AsyncSession,
    code_ref,
    revision_id,
    decision: str,
    acting_user: dict,
    comments: Optional[str] = None,
) -> tuple[BudgetRevision, ChainOutcome]:
    code = await get_budget_code(session, code_ref, lock=True)
    revision = _find_revision(code, revision_id)
    steps = await load_chain(session, ENTITY_BUDGET_REVISION, revision.id)

    fn = ledger.approve_revision if decision == "approve" else ledger.reject_revision
    outcome = fn(
        code,
        revision,
        steps,
        acting_user["email"],
        comments=comments,
        actor_id=acting_user["user_id"],
        acting_role=acting_user.get("role"),
        override_roles=settings.approval_override_roles,
    )
    await _flush(session, code)
    return revision, outcome


# ---------- transfers ----------


async def _lock_codes_in_order(session: AsyncSession, *code_refs) -> list[BudgetCode]:
    """Lock several codes in ascending id order and return them in argument order."""
    ids = []
    for ref in code_refs:
        code_id = (
            await session.execute(select(BudgetCode.id).where(_lookup_clause(ref)))
        ).scalar_one_or_none()
        if code_id is None:
            raise NotFound(f"Budget code '{ref}' not found")
        ids.append(code_id)

    locked = {}
    for code_id in sorted(set(ids), key=str):
        locked[code_id] = await get_budget_code(session, code_id, lock=True)
    return [locked[code_id] for code_id in ids]


async def get_transfer(session: AsyncSession, transfer_id, lock: bool = False) -> BudgetTransfer:
    q = select(BudgetTransfer).where(BudgetTransfer.id == transfer_id)
    if lock:
        q = q.with_for_update().execution_options(populate_existing=True)
    transfer = (await session.execute(q)).scalar_one_or_none()
    if not transfer:
        raise NotFound(f"Budget transfer {transfer_id} not found")
    return transfer


async def request_transfer(
    session: AsyncSession,
    from_ref,
    to_ref,
    amount_cents: int,
    reason: str,
    requester: User,
    current_user: dict,
) -> tuple[BudgetTransfer, list[ApprovalStep]]:
    from_code, to_code = await _lock_codes_in_order(session, from_ref, to_ref)
    transfer = ledger.request_transfer(from_code, to_code, amount_cents, reason, requester.id)
    session.add(transfer)
    await flush_or_conflict(session, "Budget transfer")

    department = await get_department(session, from_code.department_id or requester.department_id)
    steps = await create_chain(session, ENTITY_BUDGET_TRANSFER, transfer.id, requester, department)
    await record_transition(
        session, current_user, ENTITY_BUDGET_TRANSFER, transfer.id, None, transfer.status,
        from_code=from_code.code, to_code=to_code.code, amount_cents=amount_cents,
    )
    return transfer, steps


async def decide_transfer(
    session: AsyncSession,
    transfer_id,
    decision: str,
    acting_user: dict,
    comments: Optional[str] = None,
) -> tuple[BudgetTransfer, ChainOutcome]:
    transfer = await get_transfer(session, transfer_id, lock=True)
    steps = await load_chain(session, ENTITY_BUDGET_TRANSFER, transfer.id)
    previous = transfer.status
    common = dict(
        comments=comments,
        actor_id=acting_user["user_id"],
        acting_role=acting_user.get("role"),
        override_roles=settings.approval_override_roles,
    )

    if decision == "approve":
        from_code, to_code = await _lock_codes_in_order(
            session, transfer.from_budget_code_id, transfer.to_budget_code_id
        )
        outcome = ledger.approve_transfer(
            transfer, from_code, to_code, steps, acting_user["email"], **common
        )
    else:
        outcome = ledger.reject_transfer(transfer, steps, acting_user["email"], **common)

    await flush_or_conflict(session, "Budget transfer")
    if transfer.status != previous:
        await record_transition(
            session, acting_user, ENTITY_BUDGET_TRANSFER, transfer.id, previous, transfer.status,
            decision=decision, stage=outcome.step.stage,
        )
    return transfer, outcome


async def cancel_transfer(
    session: AsyncSession, transfer_id, current_user: dict, reason: Optional[str] = None
) -> BudgetTransfer:
    transfer = await get_transfer(session, transfer_id, lock=True)
    steps = await load_chain(session, ENTITY_BUDGET_TRANSFER, transfer.id)
    previous = transfer.status
    ledger.cancel_transfer(
        transfer,
        steps,
        current_user["user_id"],
        acting_role=current_user.get("role"),
        override_roles=settings.approval_override_roles,
    )
    await flush_or_conflict(session, "Budget transfer")
    await record_transition(
        session, current_user, ENTITY_BUDGET_TRANSFER, transfer.id, previous, transfer.status,
        reason=reason,
    )
    return transfer


# ---------- reporting ----------


async def list_alerting_codes(session: AsyncSession) -> list[tuple[BudgetCode, str]]:
    """Active codes whose utilization is warning or critical."""
    result = await session.execute(
        select(BudgetCode).where(BudgetCode.active == True)  # noqa: E712
    )
    alerts = []
    for code in result.scalars().all():
        level = ledger.utilization_status(code)
        if level in ("warning", "critical"):
            alerts.append((code, level))
    return alerts
