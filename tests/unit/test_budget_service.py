"""
Unit tests for budgetflow/services/budget_service.py

Uses AsyncMock to isolate from the database.
Tests: default_end_date, get_budget_code, flush_or_conflict,
       reserve_budget / release_budget wrappers, release_stale_reservations
       (lock order), transfers (two codes locked in id order, approve, reject,
       cancel), list_alerting_codes.
"""

import uuid
from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.orm.exc import StaleDataError

from budgetflow.models.approval import ENTITY_BUDGET_TRANSFER
from budgetflow.models.budget_code import (
    ALLOCATION_ALLOCATED,
    ALLOCATION_RELEASED,
    TRANSFER_APPROVED,
    TRANSFER_CANCELLED,
    TRANSFER_PENDING,
    TRANSFER_REJECTED,
)
from budgetflow.services import budget_service, ledger
from budgetflow.services.approval_policy import STAGE_FINANCE
from budgetflow.services.errors import (
    ConcurrentUpdate,
    InsufficientFunds,
    InvalidTransfer,
    NotFound,
    Unauthorized,
)
from tests.factories import make_code, make_steps


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _mock_session() -> AsyncMock:
    session = AsyncMock()
    session.flush = AsyncMock()
    session.add = MagicMock()
    return session


def _execute_result(scalar_value=None, scalars=None):
    result = MagicMock()
    result.scalar_one_or_none.return_value = scalar_value
    result.scalars.return_value.all.return_value = scalars or []
    return result


# ---------------------------------------------------------------------------
# default_end_date
# ---------------------------------------------------------------------------


def test_end_date_monthly():
    assert budget_service.default_end_date("monthly", date(2028, 2, 10)) == date(2028, 2, 29)


def test_end_date_quarterly_wraps_year():
    assert budget_service.default_end_date("quarterly", date(2026, 11, 1)) == date(2027, 1, 31)


def test_end_date_yearly_and_project():
    assert budget_service.default_end_date("yearly", date(2026, 4, 1)) == date(2026, 12, 31)
    assert budget_service.default_end_date("project", date(2026, 4, 1)) is None


# ---------------------------------------------------------------------------
# get_budget_code / flush_or_conflict
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_budget_code_found():
    code = make_code()
    session = _mock_session()
    session.execute = AsyncMock(return_value=_execute_result(code))

    assert await budget_service.get_budget_code(session, "ops-2026") is code


@pytest.mark.asyncio
async def test_get_budget_code_not_found():
    session = _mock_session()
    session.execute = AsyncMock(return_value=_execute_result(None))

    with pytest.raises(NotFound):
        await budget_service.get_budget_code(session, uuid.uuid4(), lock=True)


@pytest.mark.asyncio
async def test_flush_or_conflict_maps_stale_data():
    session = _mock_session()
    session.flush = AsyncMock(side_effect=StaleDataError("version mismatch"))

    with pytest.raises(ConcurrentUpdate) as exc:
        await budget_service.flush_or_conflict(session, "Budget code OPS-2026")
    assert exc.value.status_code == 409
    assert exc.value.detail["error"]["retryable"] is True


# ---------------------------------------------------------------------------
# ledger wrappers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reserve_budget_locks_and_flushes():
    code = make_code()
    session = _mock_session()
    pr_id = uuid.uuid4()

    with patch.object(budget_service, "get_budget_code", AsyncMock(return_value=code)) as getter:
        returned, entry = await budget_service.reserve_budget(session, code.id, pr_id, 250_000)

    getter.assert_awaited_once_with(session, code.id, lock=True)
    session.flush.assert_awaited_once()
    assert returned is code
    assert entry.applied
    assert code.remaining_cents == 750_000


@pytest.mark.asyncio
async def test_reserve_budget_failure_skips_flush():
    code = make_code(total_cents=100_000)
    session = _mock_session()

    with patch.object(budget_service, "get_budget_code", AsyncMock(return_value=code)):
        with pytest.raises(InsufficientFunds):
            await budget_service.reserve_budget(session, code.id, uuid.uuid4(), 250_000)

    session.flush.assert_not_awaited()
    assert code.allocations == []


@pytest.mark.asyncio
async def test_release_budget():
    code = make_code()
    pr_id = uuid.uuid4()
    ledger.reserve(code, pr_id, 300_000)
    session = _mock_session()

    with patch.object(budget_service, "get_budget_code", AsyncMock(return_value=code)):
        _, entry = await budget_service.release_budget(session, code.code, pr_id, "Withdrawn")

    assert entry.allocation.status == ALLOCATION_RELEASED
    assert code.remaining_cents == 1_000_000


# ---------------------------------------------------------------------------
# release_stale_reservations
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_release_stale_reservations_sweeps_each_code():
    now = datetime(2026, 6, 1)
    old_code, other_code = make_code(), make_code(code="FIN-2026")
    ledger.reserve(old_code, uuid.uuid4(), 100_000, now=now - timedelta(days=45))
    fresh = ledger.reserve(old_code, uuid.uuid4(), 100_000, now=now - timedelta(days=2)).allocation
    ledger.reserve(other_code, uuid.uuid4(), 50_000, now=now - timedelta(days=31))

    session = _mock_session()
    session.execute = AsyncMock(return_value=_execute_result(scalars=[old_code.id, other_code.id]))
    codes = {old_code.id: old_code, other_code.id: other_code}

    async def _get(session, code_ref, lock=False):
        return codes[code_ref]

    with patch.object(budget_service, "get_budget_code", side_effect=_get):
        released = await budget_service.release_stale_reservations(session, age_days=30, now=now)

    assert len(released) == 2
    assert fresh.status == ALLOCATION_ALLOCATED
    assert session.flush.await_count == 2
    assert other_code.committed_cents == 0


@pytest.mark.asyncio
async def test_release_stale_reservations_visits_codes_in_id_order():
    session = _mock_session()
    session.execute = AsyncMock(return_value=_execute_result(scalars=[]))

    await budget_service.release_stale_reservations(session, age_days=30)

    stmt = str(session.execute.await_args.args[0])
    assert "ORDER BY budget_allocations.budget_code_id" in stmt
    assert "DISTINCT" in stmt


# ---------------------------------------------------------------------------
# transfers
# ---------------------------------------------------------------------------

FINANCE_USER = {"user_id": str(uuid.uuid4()), "email": "fin@example.com", "role": "finance_officer"}


def _ordered_codes():
    """Source code with the higher id, so lock order differs from argument order."""
    source = make_code(code="OPS-2026")
    source.id = uuid.UUID(int=2)
    target = make_code(code="FIN-2026", total_cents=200_000)
    target.id = uuid.UUID(int=1)
    return source, target


def _transfer_chain(transfer):
    return make_steps(ENTITY_BUDGET_TRANSFER, transfer.id, [(STAGE_FINANCE, FINANCE_USER["email"])])


@pytest.mark.asyncio
async def test_lock_codes_in_order_locks_lower_id_first():
    source, target = _ordered_codes()
    codes = {source.id: source, target.id: target}
    session = _mock_session()
    session.execute = AsyncMock(side_effect=[
        _execute_result(source.id),
        _execute_result(target.id),
    ])
    locked = []

    async def _get(session, code_ref, lock=False):
        locked.append((code_ref, lock))
        return codes[code_ref]

    with patch.object(budget_service, "get_budget_code", side_effect=_get):
        result = await budget_service._lock_codes_in_order(session, "OPS-2026", "FIN-2026")

    assert result == [source, target]
    assert locked == [(target.id, True), (source.id, True)]


@pytest.mark.asyncio
async def test_lock_codes_in_order_unknown_code():
    session = _mock_session()
    session.execute = AsyncMock(return_value=_execute_result(None))

    with pytest.raises(NotFound):
        await budget_service._lock_codes_in_order(session, "NOPE-2026", "FIN-2026")


@pytest.mark.asyncio
async def test_request_transfer_opens_chain_and_audits():
    source, target = _ordered_codes()
    session = _mock_session()
    requester = MagicMock(id=uuid.UUID(FINANCE_USER["user_id"]), department_id=None)

    with patch.object(budget_service, "_lock_codes_in_order", AsyncMock(return_value=[source, target])), \
            patch.object(budget_service, "get_department", AsyncMock(return_value=None)), \
            patch.object(budget_service, "create_chain", AsyncMock(return_value=["step"])) as chain, \
            patch.object(budget_service, "record_transition", AsyncMock()) as audit:
        transfer, steps = await budget_service.request_transfer(
            session, "OPS-2026", "FIN-2026", 300_000, "Rebalance for Q3 campaign",
            requester, FINANCE_USER,
        )

    session.add.assert_called_once_with(transfer)
    assert transfer.status == TRANSFER_PENDING
    assert transfer.from_budget_code_id == source.id
    assert steps == ["step"]
    assert chain.await_args.args[1:3] == (ENTITY_BUDGET_TRANSFER, transfer.id)
    assert audit.await_args.kwargs["amount_cents"] == 300_000
    # nothing moves until the chain approves
    assert source.total_cents == 1_000_000


@pytest.mark.asyncio
async def test_request_transfer_to_same_code():
    code = make_code()
    session = _mock_session()

    with patch.object(budget_service, "_lock_codes_in_order", AsyncMock(return_value=[code, code])):
        with pytest.raises(InvalidTransfer):
            await budget_service.request_transfer(
                session, code.code, code.id, 1_000, "Same code both sides", MagicMock(), FINANCE_USER,
            )
    session.add.assert_not_called()


@pytest.mark.asyncio
async def test_decide_transfer_final_approval_moves_funds():
    source, target = _ordered_codes()
    transfer = ledger.request_transfer(source, target, 300_000, "Rebalance for Q3 campaign")
    session = _mock_session()

    with patch.object(budget_service, "get_transfer", AsyncMock(return_value=transfer)) as getter, \
            patch.object(budget_service, "load_chain", AsyncMock(return_value=_transfer_chain(transfer))), \
            patch.object(budget_service, "_lock_codes_in_order", AsyncMock(return_value=[source, target])) as lock, \
            patch.object(budget_service, "record_transition", AsyncMock()) as audit:
        _, outcome = await budget_service.decide_transfer(session, transfer.id, "approve", FINANCE_USER)

    getter.assert_awaited_once_with(session, transfer.id, lock=True)
    lock.assert_awaited_once_with(session, source.id, target.id)
    assert outcome.is_final
    assert transfer.status == TRANSFER_APPROVED
    assert source.total_cents == 700_000
    assert target.total_cents == 500_000
    assert audit.await_args.args[4:6] == (TRANSFER_PENDING, TRANSFER_APPROVED)


@pytest.mark.asyncio
async def test_decide_transfer_reject_touches_no_code():
    source, target = _ordered_codes()
    transfer = ledger.request_transfer(source, target, 300_000, "Rebalance for Q3 campaign")
    session = _mock_session()

    with patch.object(budget_service, "get_transfer", AsyncMock(return_value=transfer)), \
            patch.object(budget_service, "load_chain", AsyncMock(return_value=_transfer_chain(transfer))), \
            patch.object(budget_service, "_lock_codes_in_order", AsyncMock()) as lock, \
            patch.object(budget_service, "record_transition", AsyncMock()):
        await budget_service.decide_transfer(
            session, transfer.id, "reject", FINANCE_USER, "Campaign postponed",
        )

    lock.assert_not_awaited()
    assert transfer.status == TRANSFER_REJECTED
    assert transfer.rejection_reason == "Campaign postponed"
    assert source.total_cents == 1_000_000


@pytest.mark.asyncio
async def test_cancel_transfer_by_requester():
    source, target = _ordered_codes()
    requester_id = uuid.uuid4()
    transfer = ledger.request_transfer(source, target, 300_000, "Rebalance for Q3 campaign", requester_id)
    steps = _transfer_chain(transfer)
    session = _mock_session()
    requester = {"user_id": str(requester_id), "email": "dh@example.com", "role": "department_head"}

    with patch.object(budget_service, "get_transfer", AsyncMock(return_value=transfer)), \
            patch.object(budget_service, "load_chain", AsyncMock(return_value=steps)), \
            patch.object(budget_service, "record_transition", AsyncMock()):
        await budget_service.cancel_transfer(session, transfer.id, requester, "Not needed")

    assert transfer.status == TRANSFER_CANCELLED
    assert all(s.archived_at is not None for s in steps)


@pytest.mark.asyncio
async def test_cancel_transfer_by_someone_else():
    source, target = _ordered_codes()
    transfer = ledger.request_transfer(source, target, 300_000, "Rebalance for Q3 campaign", uuid.uuid4())
    session = _mock_session()

    with patch.object(budget_service, "get_transfer", AsyncMock(return_value=transfer)), \
            patch.object(budget_service, "load_chain", AsyncMock(return_value=[])):
        with pytest.raises(Unauthorized):
            await budget_service.cancel_transfer(session, transfer.id, FINANCE_USER)
    session.flush.assert_not_awaited()


# ---------------------------------------------------------------------------
# list_alerting_codes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_list_alerting_codes_filters_levels():
    healthy = make_code(used_cents=100_000)
    warning = make_code(used_cents=800_000, code="FIN-2026")
    critical = make_code(used_cents=950_000, code="HR-2026")
    session = _mock_session()
    session.execute = AsyncMock(return_value=_execute_result(scalars=[healthy, warning, critical]))

    alerts = await budget_service.list_alerting_codes(session)

    assert alerts == [(warning, "warning"), (critical, "critical")]
