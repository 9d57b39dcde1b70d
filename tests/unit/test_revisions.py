"""
Unit tests for budget revisions in budgetflow/services/ledger.py

Tests: request_revision floor and single-pending rule, approve_revision
       applying the new total with history, final-step floor re-check,
       reject_revision.
"""

import uuid
from datetime import datetime

import pytest

from budgetflow.models.approval import ENTITY_BUDGET_REVISION, STEP_APPROVED, STEP_PENDING
from budgetflow.models.budget_code import (
    REVISION_APPROVED,
    REVISION_PENDING,
    REVISION_REJECTED,
)
from budgetflow.services import ledger
from budgetflow.services.approval_policy import STAGE_DEPARTMENT_HEAD, STAGE_FINANCE, STAGE_HEAD
from budgetflow.services.errors import (
    AlreadyDecided,
    InvalidAmount,
    RevisionPending,
    Unauthorized,
)
from tests.factories import make_steps


def _revision_steps(revision):
    return make_steps(ENTITY_BUDGET_REVISION, revision.id, [
        (STAGE_DEPARTMENT_HEAD, "head@example.com"),
        (STAGE_HEAD, "ceo@example.com"),
        (STAGE_FINANCE, "fin@example.com"),
    ])


def _approve_all(code, revision, steps, now=None):
    outcome = None
    for email in ("head@example.com", "ceo@example.com", "fin@example.com"):
        outcome = ledger.approve_revision(code, revision, steps, email, actor_id="actor", now=now)
    return outcome


# ---------------------------------------------------------------------------
# request_revision
# ---------------------------------------------------------------------------


def test_request_revision_opens_pending(code):
    revision = ledger.request_revision(code, 1_500_000, "Expanded scope", requested_by="u1")

    assert revision.status == REVISION_PENDING
    assert revision.previous_cents == 1_000_000
    assert revision.requested_cents == 1_500_000
    assert revision.change_cents == 500_000
    assert code.pending_revision() is revision
    # total is untouched until the chain completes
    assert code.total_cents == 1_000_000


def test_request_revision_below_used_plus_committed(code):
    spent = uuid.uuid4()
    ledger.reserve(code, spent, 300_000)
    ledger.deduct(code, spent, 200_000, "DSB-1")
    ledger.reserve(code, uuid.uuid4(), 250_000)

    # floor = used 200k + committed (100k + 250k)
    with pytest.raises(InvalidAmount) as exc:
        ledger.request_revision(code, 549_999, "Cut")
    assert exc.value.detail["error"]["minimum_cents"] == 550_000

    revision = ledger.request_revision(code, 550_000, "Cut")
    assert revision.change_cents == -450_000


@pytest.mark.parametrize("new_total", [0, -5, 10.5])
def test_request_revision_rejects_bad_amounts(code, new_total):
    with pytest.raises(InvalidAmount):
        ledger.request_revision(code, new_total, "Bad")
    assert code.revisions == []


def test_only_one_pending_revision(code):
    ledger.request_revision(code, 1_200_000, "First")
    with pytest.raises(RevisionPending):
        ledger.request_revision(code, 1_300_000, "Second")


# ---------------------------------------------------------------------------
# approve / reject
# ---------------------------------------------------------------------------


def test_intermediate_approval_does_not_apply(code):
    revision = ledger.request_revision(code, 1_500_000, "Expanded scope")
    steps = _revision_steps(revision)

    outcome = ledger.approve_revision(code, revision, steps, "head@example.com")

    assert not outcome.is_final
    assert revision.status == REVISION_PENDING
    assert code.total_cents == 1_000_000
    assert code.history == []


def test_final_approval_applies_total_and_records_history(code):
    revision = ledger.request_revision(code, 1_500_000, "Expanded scope")
    steps = _revision_steps(revision)
    now = datetime(2026, 4, 1, 9, 0)

    outcome = _approve_all(code, revision, steps, now=now)

    assert outcome.is_final
    assert code.total_cents == 1_500_000
    assert revision.status == REVISION_APPROVED
    assert revision.applied_at == now
    assert len(code.history) == 1
    entry = code.history[0]
    assert (entry.previous_cents, entry.new_cents) == (1_000_000, 1_500_000)
    assert entry.revision_id == revision.id
    assert entry.changed_by == "actor"
    assert code.pending_revision() is None


def test_final_approval_rechecks_floor(code):
    revision = ledger.request_revision(code, 400_000, "Cut")
    steps = _revision_steps(revision)
    ledger.approve_revision(code, revision, steps, "head@example.com")
    ledger.approve_revision(code, revision, steps, "ceo@example.com")

    # Funds committed while the revision was in flight.
    ledger.reserve(code, uuid.uuid4(), 500_000)

    with pytest.raises(InvalidAmount):
        ledger.approve_revision(code, revision, steps, "fin@example.com")
    assert steps[2].status == STEP_PENDING
    assert revision.status == REVISION_PENDING
    assert code.total_cents == 1_000_000


def test_revision_approver_must_be_current(code):
    revision = ledger.request_revision(code, 1_500_000, "Expanded scope")
    steps = _revision_steps(revision)
    with pytest.raises(Unauthorized):
        ledger.approve_revision(code, revision, steps, "fin@example.com")


def test_reject_revision_leaves_total(code):
    revision = ledger.request_revision(code, 1_500_000, "Expanded scope")
    steps = _revision_steps(revision)
    ledger.approve_revision(code, revision, steps, "head@example.com")

    outcome = ledger.reject_revision(code, revision, steps, "ceo@example.com", "Not this year")

    assert outcome.is_rejected
    assert steps[0].status == STEP_APPROVED
    assert revision.status == REVISION_REJECTED
    assert code.total_cents == 1_000_000
    # a new revision may now be requested
    assert ledger.request_revision(code, 1_100_000, "Smaller ask").status == REVISION_PENDING


def test_decided_revision_cannot_be_decided_again(code):
    revision = ledger.request_revision(code, 1_500_000, "Expanded scope")
    steps = _revision_steps(revision)
    _approve_all(code, revision, steps)

    with pytest.raises(AlreadyDecided):
        ledger.reject_revision(code, revision, steps, "fin@example.com")
