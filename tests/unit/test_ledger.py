"""
Unit tests for budgetflow/services/ledger.py

The ledger works on transient BudgetCode aggregates, so no database is needed.
"""

import uuid
from datetime import datetime, timedelta

import pytest

from budgetflow.models.budget_code import (
    ALLOCATION_ALLOCATED,
    ALLOCATION_RELEASED,
    ALLOCATION_SPENT,
    TXN_DEDUCTION,
    TXN_RELEASE,
    TXN_RESERVATION,
    TXN_RETURN,
)
from budgetflow.services import ledger
from budgetflow.services.errors import (
    AllocationConflict,
    AllocationExceeded,
    BudgetCodeInactive,
    DuplicateDisbursement,
    InsufficientFunds,
    InvalidAmount,
    NoActiveAllocation,
)
from tests.factories import make_code


def _balances(code):
    return code.used_cents, code.committed_cents, code.remaining_cents


def _assert_conserved(code):
    assert code.used_cents + code.committed_cents + code.remaining_cents == code.total_cents
    assert 0 <= code.used_cents <= code.total_cents
    assert code.committed_cents >= 0


# ---------------------------------------------------------------------------
# reserve
# ---------------------------------------------------------------------------


def test_reserve_narrows_remaining_only(code):
    pr = uuid.uuid4()
    entry = ledger.reserve(code, pr, 400_000)

    assert entry.applied
    assert entry.allocation.status == ALLOCATION_ALLOCATED
    assert _balances(code) == (0, 400_000, 600_000)
    assert entry.transaction.type == TXN_RESERVATION
    assert entry.transaction.balance_before_cents == 1_000_000
    assert entry.transaction.balance_after_cents == 600_000
    _assert_conserved(code)


def test_reserve_exact_remaining_succeeds(code):
    ledger.reserve(code, uuid.uuid4(), 1_000_000)
    assert code.remaining_cents == 0


def test_reserve_over_remaining_raises_and_leaves_state(code):
    ledger.reserve(code, uuid.uuid4(), 700_000)
    with pytest.raises(InsufficientFunds) as exc:
        ledger.reserve(code, uuid.uuid4(), 300_001)

    assert exc.value.status_code == 422
    assert exc.value.detail["error"]["available_cents"] == 300_000
    assert len(code.allocations) == 1
    assert len(code.transactions) == 1
    _assert_conserved(code)


def test_reserve_same_amount_is_replay(code):
    pr = uuid.uuid4()
    first = ledger.reserve(code, pr, 250_000)
    again = ledger.reserve(code, pr, 250_000)

    assert not again.applied
    assert again.allocation is first.allocation
    assert len(code.transactions) == 1
    assert code.committed_cents == 250_000


def test_reserve_different_amount_conflicts(code):
    pr = uuid.uuid4()
    ledger.reserve(code, pr, 250_000)
    with pytest.raises(AllocationConflict):
        ledger.reserve(code, pr, 300_000)


def test_reserve_rejects_non_positive_and_float_amounts(code):
    for bad in (0, -5, 10.5, True):
        with pytest.raises(InvalidAmount):
            ledger.reserve(code, uuid.uuid4(), bad)
    assert code.allocations == []


def test_reserve_respects_transaction_ceiling(code):
    with pytest.raises(InvalidAmount):
        ledger.reserve(code, uuid.uuid4(), 5_000, max_amount=4_999)


def test_reserve_on_inactive_code():
    code = make_code(active=False)
    with pytest.raises(BudgetCodeInactive):
        ledger.reserve(code, uuid.uuid4(), 100)


def test_reserve_after_release_reinstates_same_allocation(code):
    pr = uuid.uuid4()
    first = ledger.reserve(code, pr, 300_000)
    ledger.release(code, pr, "requester withdrew")
    assert code.committed_cents == 0

    again = ledger.reserve(code, pr, 200_000)
    assert again.allocation is first.allocation
    assert again.allocation.status == ALLOCATION_ALLOCATED
    assert again.allocation.released_at is None
    assert code.committed_cents == 200_000
    _assert_conserved(code)


def test_reserve_again_after_disbursement_conflicts(code):
    pr = uuid.uuid4()
    ledger.reserve(code, pr, 300_000)
    ledger.deduct(code, pr, 100_000, "PAY-1")
    with pytest.raises(AllocationConflict):
        ledger.reserve(code, pr, 300_000)


def test_reserve_reinstates_fully_returned_allocation(code):
    pr = uuid.uuid4()
    ledger.reserve(code, pr, 300_000)
    ledger.deduct(code, pr, 100_000, "PAY-1")
    ledger.return_unused(code, pr, 100_000)
    # 200_000 still outstanding on the old reservation; reinstating frees it.
    assert code.committed_cents == 200_000

    entry = ledger.reserve(code, pr, 900_000)
    assert entry.allocation.amount_cents == 900_000
    assert entry.allocation.balance_returned_cents == 0
    assert _balances(code) == (0, 900_000, 100_000)


# ---------------------------------------------------------------------------
# deduct
# ---------------------------------------------------------------------------


def test_deduct_moves_commitment_into_used(code):
    pr = uuid.uuid4()
    ledger.reserve(code, pr, 400_000)
    entry = ledger.deduct(code, pr, 400_000, "PAY-001")

    assert entry.allocation.status == ALLOCATION_SPENT
    assert entry.transaction.type == TXN_DEDUCTION
    assert entry.transaction.disbursement_ref == "PAY-001"
    assert entry.transaction.used_after_cents == 400_000
    assert _balances(code) == (400_000, 0, 600_000)
    _assert_conserved(code)


def test_partial_disbursements_up_to_reservation(code):
    pr = uuid.uuid4()
    ledger.reserve(code, pr, 1_000)
    ledger.deduct(code, pr, 600, "T-1")
    ledger.deduct(code, pr, 400, "T-2")

    allocation = code.allocation_for(pr)
    assert allocation.actual_spent_cents == 1_000
    assert allocation.disbursement_count == 2
    with pytest.raises(AllocationExceeded):
        ledger.deduct(code, pr, 1, "T-3")
    assert code.used_cents == 1_000


def test_first_and_last_disbursement_timestamps(code):
    pr = uuid.uuid4()
    t1 = datetime(2026, 3, 1, 9)
    t2 = datetime(2026, 4, 1, 9)
    ledger.reserve(code, pr, 1_000, now=t1)
    ledger.deduct(code, pr, 500, "T-1", now=t1)
    ledger.deduct(code, pr, 500, "T-2", now=t2)

    allocation = code.allocation_for(pr)
    assert allocation.first_spent_at == t1
    assert allocation.last_disbursement_at == t2


def test_deduct_replay_with_same_ref_is_noop(code):
    pr = uuid.uuid4()
    ledger.reserve(code, pr, 1_000)
    ledger.deduct(code, pr, 500, "PAY-9")
    replay = ledger.deduct(code, pr, 500, "PAY-9")

    assert not replay.applied
    assert replay.allocation is code.allocation_for(pr)
    assert code.used_cents == 500
    assert sum(1 for t in code.transactions if t.type == TXN_DEDUCTION) == 1


def test_deduct_ref_reused_with_other_amount_is_rejected(code):
    pr = uuid.uuid4()
    ledger.reserve(code, pr, 1_000)
    ledger.deduct(code, pr, 500, "PAY-9")
    with pytest.raises(DuplicateDisbursement):
        ledger.deduct(code, pr, 400, "PAY-9")


def test_deduct_without_reservation(code):
    with pytest.raises(NoActiveAllocation):
        ledger.deduct(code, uuid.uuid4(), 100, "PAY-1")


def test_deduct_requires_reference(code):
    pr = uuid.uuid4()
    ledger.reserve(code, pr, 100)
    with pytest.raises(ValueError):
        ledger.deduct(code, pr, 100, "")


def test_deduct_after_release(code):
    pr = uuid.uuid4()
    ledger.reserve(code, pr, 100)
    ledger.release(code, pr, "cancelled")
    with pytest.raises(NoActiveAllocation):
        ledger.deduct(code, pr, 100, "PAY-1")


# ---------------------------------------------------------------------------
# return / release
# ---------------------------------------------------------------------------


def test_return_gives_back_used_and_capacity(code):
    pr = uuid.uuid4()
    ledger.reserve(code, pr, 400_000)
    ledger.deduct(code, pr, 400_000, "PAY-1")
    entry = ledger.return_unused(code, pr, 100_000)

    assert entry.transaction.type == TXN_RETURN
    assert entry.allocation.balance_returned_cents == 100_000
    assert entry.allocation.actual_spent_cents == 300_000
    assert _balances(code) == (300_000, 0, 700_000)
    _assert_conserved(code)


def test_return_more_than_disbursed(code):
    pr = uuid.uuid4()
    ledger.reserve(code, pr, 1_000)
    ledger.deduct(code, pr, 200, "PAY-1")
    with pytest.raises(InvalidAmount):
        ledger.return_unused(code, pr, 201)
    assert code.used_cents == 200


def test_returned_amount_cannot_be_disbursed_again(code):
    pr = uuid.uuid4()
    ledger.reserve(code, pr, 1_000)
    ledger.deduct(code, pr, 1_000, "PAY-1")
    ledger.return_unused(code, pr, 300)
    # disbursable is now 700 and all of it was disbursed
    with pytest.raises(AllocationExceeded):
        ledger.deduct(code, pr, 1, "PAY-2")


def test_return_requires_spent_allocation(code):
    pr = uuid.uuid4()
    ledger.reserve(code, pr, 1_000)
    with pytest.raises(NoActiveAllocation):
        ledger.return_unused(code, pr, 100)


def test_release_restores_remaining(code):
    pr = uuid.uuid4()
    ledger.reserve(code, pr, 400_000)
    entry = ledger.release(code, pr, "rejected by finance")

    assert entry.allocation.status == ALLOCATION_RELEASED
    assert entry.allocation.release_reason == "rejected by finance"
    assert entry.transaction.type == TXN_RELEASE
    assert _balances(code) == (0, 0, 1_000_000)


def test_release_after_disbursement_is_refused(code):
    pr = uuid.uuid4()
    ledger.reserve(code, pr, 1_000)
    ledger.deduct(code, pr, 100, "PAY-1")
    with pytest.raises(NoActiveAllocation):
        ledger.release(code, pr, "too late")


def test_release_twice(code):
    pr = uuid.uuid4()
    ledger.reserve(code, pr, 1_000)
    ledger.release(code, pr, "first")
    with pytest.raises(NoActiveAllocation):
        ledger.release(code, pr, "second")


# ---------------------------------------------------------------------------
# stale sweep
# ---------------------------------------------------------------------------


def test_release_stale_only_touches_old_unspent_reservations(code):
    now = datetime(2026, 6, 1)
    old, fresh, spent = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    ledger.reserve(code, old, 100, now=now - timedelta(days=45))
    ledger.reserve(code, fresh, 100, now=now - timedelta(days=5))
    ledger.reserve(code, spent, 100, now=now - timedelta(days=60))
    ledger.deduct(code, spent, 50, "PAY-1", now=now - timedelta(days=59))

    released = ledger.release_stale(code, age_days=30, now=now)

    assert [a.request_id for a in released] == [old]
    assert code.allocation_for(old).status == ALLOCATION_RELEASED
    assert "30 days" in code.allocation_for(old).release_reason
    assert code.allocation_for(fresh).status == ALLOCATION_ALLOCATED
    assert code.allocation_for(spent).status == ALLOCATION_SPENT


def test_release_stale_is_idempotent(code):
    now = datetime(2026, 6, 1)
    ledger.reserve(code, uuid.uuid4(), 100, now=now - timedelta(days=45))

    assert len(ledger.release_stale(code, age_days=30, now=now)) == 1
    txn_count = len(code.transactions)
    assert ledger.release_stale(code, age_days=30, now=now) == []
    assert len(code.transactions) == txn_count


# ---------------------------------------------------------------------------
# ledger history
# ---------------------------------------------------------------------------


def test_transaction_log_replays_to_current_balances(code):
    a, b = uuid.uuid4(), uuid.uuid4()
    ledger.reserve(code, a, 300_000)
    ledger.reserve(code, b, 200_000)
    ledger.deduct(code, a, 250_000, "PAY-A")
    ledger.return_unused(code, a, 50_000)
    ledger.release(code, b, "no longer needed")

    assert [t.type for t in code.transactions] == [
        TXN_RESERVATION, TXN_RESERVATION, TXN_DEDUCTION, TXN_RETURN, TXN_RELEASE,
    ]
    last = code.transactions[-1]
    assert last.balance_after_cents == code.remaining_cents
    assert last.used_after_cents == code.used_cents == 200_000
    for prev, nxt in zip(code.transactions, code.transactions[1:]):
        assert nxt.balance_before_cents == prev.balance_after_cents
    _assert_conserved(code)
