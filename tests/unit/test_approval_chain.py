"""
Unit tests for budgetflow/services/approval_chain.py

Tests: build_chain (skip, dedup, missing roles, cycle), current_step derivation,
       authorize / decide (approve, reject, wrong approver, override),
       chain length (one approval per level), is_last_pending, archive,
       chain_summary.
"""

import uuid
from datetime import datetime

import pytest

from budgetflow.models.approval import (
    ENTITY_PURCHASE_REQUISITION,
    STEP_APPROVED,
    STEP_PENDING,
    STEP_REJECTED,
)
from budgetflow.services import approval_chain
from budgetflow.services.approval_policy import (
    DEFAULT_POLICIES,
    ROLE_DEPARTMENT_HEAD,
    ROLE_FINANCE_OFFICER,
    ROLE_HEAD_OF_BUSINESS,
    ROLE_SUPERVISOR,
    ROLE_SUPPLY_CHAIN_COORDINATOR,
    STAGE_BUYER_ASSIGNMENT,
    STAGE_FINANCE,
    STAGE_HEAD,
    STAGE_SUPERVISOR,
    STAGE_SUPPLY_CHAIN,
    ApproverIdentity,
    ChainPolicy,
    DirectorySnapshot,
    PolicyEntry,
    Requester,
)
from budgetflow.services.errors import (
    AlreadyDecided,
    ApproverNotFound,
    InvalidDecision,
    NotFound,
    Unauthorized,
)
from tests.factories import make_steps


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _identity(role: str, email: str) -> ApproverIdentity:
    return ApproverIdentity(name=email.split("@")[0], email=email, role=role, user_id=str(uuid.uuid4()))


def _full_directory() -> DirectorySnapshot:
    d = DirectorySnapshot()
    d.add(ROLE_SUPERVISOR, _identity(ROLE_SUPERVISOR, "sup@example.com"))
    d.add(ROLE_DEPARTMENT_HEAD, _identity(ROLE_DEPARTMENT_HEAD, "head.ops@example.com"))
    d.add(ROLE_FINANCE_OFFICER, _identity(ROLE_FINANCE_OFFICER, "fin@example.com"))
    d.add(ROLE_SUPPLY_CHAIN_COORDINATOR, _identity(ROLE_SUPPLY_CHAIN_COORDINATOR, "sc@example.com"))
    d.add(ROLE_HEAD_OF_BUSINESS, _identity(ROLE_HEAD_OF_BUSINESS, "ceo@example.com"))
    return d


def _requester(email: str = "employee@example.com") -> Requester:
    return Requester(email=email, user_id=str(uuid.uuid4()))


PR_POLICY = DEFAULT_POLICIES[ENTITY_PURCHASE_REQUISITION]


def _pr_steps():
    return make_steps(ENTITY_PURCHASE_REQUISITION, uuid.uuid4(), [
        (STAGE_SUPERVISOR, "sup@example.com"),
        (STAGE_FINANCE, "fin@example.com"),
        (STAGE_HEAD, "ceo@example.com"),
    ])


# ---------------------------------------------------------------------------
# build_chain
# ---------------------------------------------------------------------------


def test_build_chain_resolves_policy_in_order():
    entity_id = uuid.uuid4()
    steps = approval_chain.build_chain(
        _requester(), "Operations", PR_POLICY, _full_directory(),
        ENTITY_PURCHASE_REQUISITION, entity_id,
    )

    assert [s.level for s in steps] == [1, 2, 3, 4, 5]
    assert [s.stage for s in steps] == [
        STAGE_SUPERVISOR, STAGE_FINANCE, STAGE_SUPPLY_CHAIN, STAGE_BUYER_ASSIGNMENT, STAGE_HEAD,
    ]
    assert steps[0].approver_email == "sup@example.com"
    assert steps[0].approver_role == "Supervisor"
    assert all(s.status == STEP_PENDING for s in steps)
    assert all(s.entity_id == entity_id for s in steps)


def test_build_chain_stamps_cycle():
    steps = approval_chain.build_chain(
        _requester(), "Operations", PR_POLICY, _full_directory(),
        ENTITY_PURCHASE_REQUISITION, uuid.uuid4(), cycle=3,
    )
    assert {s.cycle for s in steps} == {3}
    assert [s.level for s in steps] == [1, 2, 3, 4, 5]


def test_build_chain_skips_supervisor_when_requester_is_supervisor():
    steps = approval_chain.build_chain(
        _requester("SUP@example.com"), "Operations", PR_POLICY, _full_directory(),
        ENTITY_PURCHASE_REQUISITION, uuid.uuid4(),
    )
    assert steps[0].stage == STAGE_FINANCE
    assert steps[0].level == 1
    assert len(steps) == 4


def test_build_chain_falls_back_to_department_head():
    directory = _full_directory()
    directory.approvers.pop(ROLE_SUPERVISOR)
    steps = approval_chain.build_chain(
        _requester(), "Operations", PR_POLICY, directory,
        ENTITY_PURCHASE_REQUISITION, uuid.uuid4(),
    )
    assert steps[0].stage == STAGE_SUPERVISOR
    assert steps[0].approver_email == "head.ops@example.com"


def test_build_chain_missing_required_role():
    directory = _full_directory()
    directory.approvers.pop(ROLE_FINANCE_OFFICER)
    with pytest.raises(ApproverNotFound) as exc:
        approval_chain.build_chain(
            _requester(), "Operations", PR_POLICY, directory,
            ENTITY_PURCHASE_REQUISITION, uuid.uuid4(),
        )
    assert exc.value.detail["error"]["role"] == ROLE_FINANCE_OFFICER


def test_build_chain_skips_missing_optional_role():
    policy = ChainPolicy("CUSTOM", (
        PolicyEntry("auditor", "AUDIT", required=False),
        PolicyEntry(ROLE_HEAD_OF_BUSINESS, STAGE_HEAD),
    ))
    steps = approval_chain.build_chain(
        _requester(), "Operations", policy, _full_directory(), "CUSTOM", uuid.uuid4(),
    )
    assert [(s.level, s.stage) for s in steps] == [(1, STAGE_HEAD)]


def test_build_chain_dedupes_same_stage_and_person():
    policy = ChainPolicy("CUSTOM", (
        PolicyEntry(ROLE_HEAD_OF_BUSINESS, STAGE_HEAD),
        PolicyEntry(ROLE_HEAD_OF_BUSINESS, STAGE_HEAD),
    ))
    steps = approval_chain.build_chain(
        _requester(), "Operations", policy, _full_directory(), "CUSTOM", uuid.uuid4(),
    )
    assert len(steps) == 1


def test_build_chain_empty_result_is_an_error():
    policy = ChainPolicy("CUSTOM", (
        PolicyEntry(ROLE_SUPERVISOR, STAGE_SUPERVISOR, skip_if_requester=True),
    ))
    with pytest.raises(ApproverNotFound):
        approval_chain.build_chain(
            _requester("sup@example.com"), "Operations", policy, _full_directory(),
            "CUSTOM", uuid.uuid4(),
        )


# ---------------------------------------------------------------------------
# current step / decisions
# ---------------------------------------------------------------------------


def test_current_step_is_lowest_pending():
    steps = _pr_steps()
    steps[0].status = STEP_APPROVED
    assert approval_chain.current_step(steps) is steps[1]
    # order of the list does not matter
    assert approval_chain.current_step(list(reversed(steps))) is steps[1]


def test_approve_advances_to_next_step():
    steps = _pr_steps()
    outcome = approval_chain.decide(steps, "sup@example.com", "approve", "ok", actor_id="u1")

    assert outcome.step is steps[0]
    assert not outcome.is_final
    assert not outcome.is_rejected
    assert outcome.next_step is steps[1]
    assert steps[0].status == STEP_APPROVED
    assert steps[0].comments == "ok"
    assert steps[0].decided_by == "u1"
    assert isinstance(steps[0].decided_at, datetime)


def test_final_approval_completes_chain():
    steps = _pr_steps()
    for email in ("sup@example.com", "fin@example.com"):
        approval_chain.decide(steps, email, "approve")
    outcome = approval_chain.decide(steps, "CEO@example.com", "approve")

    assert outcome.is_final
    assert outcome.next_step is None
    assert approval_chain.is_complete(steps)
    assert approval_chain.current_step(steps) is None


def test_reject_terminates_and_leaves_later_steps_pending():
    steps = _pr_steps()
    approval_chain.decide(steps, "sup@example.com", "approve")
    outcome = approval_chain.decide(steps, "fin@example.com", "reject", "over budget")

    assert outcome.is_rejected
    assert steps[1].status == STEP_REJECTED
    assert steps[2].status == STEP_PENDING
    assert approval_chain.is_terminated(steps)
    assert approval_chain.current_step(steps) is None

    with pytest.raises(AlreadyDecided):
        approval_chain.decide(steps, "ceo@example.com", "approve")


def test_wrong_approver_is_refused_without_mutation():
    steps = _pr_steps()
    with pytest.raises(Unauthorized):
        approval_chain.decide(steps, "fin@example.com", "approve")
    assert all(s.status == STEP_PENDING for s in steps)


def test_override_role_may_act_for_current_step():
    steps = _pr_steps()
    outcome = approval_chain.decide(
        steps, "admin@example.com", "approve",
        acting_role="admin", override_roles={"admin"},
    )
    assert outcome.step is steps[0]


def test_invalid_decision():
    with pytest.raises(InvalidDecision):
        approval_chain.decide(_pr_steps(), "sup@example.com", "maybe")


def test_authorize_on_empty_chain():
    with pytest.raises(NotFound):
        approval_chain.authorize([], "sup@example.com")


def test_completed_chain_cannot_be_decided_again():
    steps = _pr_steps()
    for email in ("sup@example.com", "fin@example.com", "ceo@example.com"):
        approval_chain.decide(steps, email, "approve")
    with pytest.raises(AlreadyDecided):
        approval_chain.decide(steps, "ceo@example.com", "approve")


# ---------------------------------------------------------------------------
# chain length
# ---------------------------------------------------------------------------


def _chain_of(levels: int):
    return make_steps(
        ENTITY_PURCHASE_REQUISITION,
        uuid.uuid4(),
        [(f"STAGE_{n}", f"approver{n}@example.com") for n in range(1, levels + 1)],
    )


def test_single_level_chain_is_final_on_its_only_approval():
    steps = _chain_of(1)
    assert approval_chain.is_last_pending(steps, steps[0])

    outcome = approval_chain.decide(steps, "approver1@example.com", "approve")

    assert outcome.is_final
    assert not outcome.is_rejected
    assert outcome.next_step is None
    assert approval_chain.is_complete(steps)


@pytest.mark.parametrize("levels", [2, 3, 5])
def test_chain_needs_exactly_one_approval_per_level(levels):
    steps = _chain_of(levels)

    for n in range(1, levels):
        outcome = approval_chain.decide(steps, f"approver{n}@example.com", "approve")
        assert not outcome.is_final
        assert outcome.next_step is steps[n]
        assert not approval_chain.is_complete(steps)

    assert approval_chain.is_last_pending(steps, steps[-1])
    outcome = approval_chain.decide(steps, f"approver{levels}@example.com", "approve")
    assert outcome.is_final
    assert approval_chain.is_complete(steps)
    assert approval_chain.chain_summary(steps)["approved"] == levels

    with pytest.raises(AlreadyDecided):
        approval_chain.decide(steps, f"approver{levels}@example.com", "approve")


def test_is_last_pending_false_before_last_level():
    steps = _pr_steps()
    assert not approval_chain.is_last_pending(steps, steps[0])
    assert not approval_chain.is_last_pending(steps, steps[1])
    assert approval_chain.is_last_pending(steps, steps[2])


def test_archive_stamps_each_step_once():
    steps = _pr_steps()
    first = datetime(2026, 3, 1)
    approval_chain.archive(steps[:1], first)
    approval_chain.archive(steps, datetime(2026, 3, 2))

    assert steps[0].archived_at == first
    assert steps[1].archived_at == datetime(2026, 3, 2)
    assert all(s.status == STEP_PENDING for s in steps)


# ---------------------------------------------------------------------------
# chain_summary
# ---------------------------------------------------------------------------


def test_chain_summary():
    steps = _pr_steps()
    approval_chain.decide(steps, "sup@example.com", "approve")
    summary = approval_chain.chain_summary(steps)

    assert summary == {
        "total": 3,
        "approved": 1,
        "pending": 2,
        "rejected": 0,
        "progress": 33,
        "current_level": 2,
        "is_complete": False,
        "is_terminated": False,
    }
