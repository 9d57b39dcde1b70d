"""
Unit tests for budgetflow/services/notification_service.py

send_email is patched; nothing leaves the process.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from budgetflow.models.approval import ENTITY_PURCHASE_REQUISITION
from budgetflow.services import notification_service as ns
from budgetflow.services.approval_chain import ChainOutcome
from tests.factories import make_steps


def _outcome(is_final=False, is_rejected=False, with_next=True):
    steps = make_steps(ENTITY_PURCHASE_REQUISITION, uuid.uuid4(), [
        ("FINANCE", "fin@example.com"),
        ("HEAD", "ceo@example.com"),
    ])
    return ChainOutcome(
        step=steps[0],
        is_final=is_final,
        is_rejected=is_rejected,
        next_step=steps[1] if with_next else None,
    )


def _queued(background_tasks):
    _, kwargs = background_tasks.add_task.call_args
    return kwargs


# ---------------------------------------------------------------------------
# render
# ---------------------------------------------------------------------------


def test_format_amount():
    assert ns.format_amount(500_000) == "5,000.00"
    assert ns.format_amount(5) == "0.05"


def test_render_adds_display_amounts():
    subject, html = ns.render("budget_alert", {
        "code": "OPS-2026",
        "name": "Operations",
        "utilization": 91.5,
        "level": "critical",
        "remaining_cents": 1_234_500,
    })
    assert subject == "[BudgetFlow] Budget code OPS-2026 is at 91.5% (critical)"
    assert "XAF 12,345.00" in html


def test_render_missing_key():
    with pytest.raises(KeyError):
        ns.render("approved", {"reference": "PR-000001"})


# ---------------------------------------------------------------------------
# send_notification
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_send_notification_sends_rendered_email():
    with patch.object(ns, "send_email", AsyncMock(return_value=True)) as send:
        ok = await ns.send_notification(
            "approved",
            ["req@example.com", ""],
            {"entity_label": "Purchase requisition", "reference": "PR-000001"},
        )
    assert ok is True
    recipients, subject, _ = send.await_args.args
    assert recipients == ["req@example.com"]
    assert subject == "[BudgetFlow] Purchase requisition PR-000001: approved"


@pytest.mark.asyncio
async def test_send_notification_without_recipients():
    with patch.object(ns, "send_email", AsyncMock()) as send:
        assert await ns.send_notification("approved", [], {}) is False
    send.assert_not_awaited()


@pytest.mark.asyncio
async def test_send_notification_unknown_template():
    with patch.object(ns, "send_email", AsyncMock()) as send:
        assert await ns.send_notification("nope", ["a@example.com"], {}) is False
    send.assert_not_awaited()


@pytest.mark.asyncio
async def test_send_notification_render_error_is_logged_not_raised():
    with patch.object(ns, "send_email", AsyncMock()) as send:
        assert await ns.send_notification("approved", ["a@example.com"], {}) is False
    send.assert_not_awaited()


# ---------------------------------------------------------------------------
# queue_chain_notifications
# ---------------------------------------------------------------------------


def _queue(outcome, background_tasks):
    ns.queue_chain_notifications(
        background_tasks,
        outcome,
        entity_label="Purchase requisition",
        reference="PR-000001",
        requester_email="req@example.com",
        amount_cents=400_000,
        reason="Over budget",
    )


def test_next_approver_is_notified():
    bt = MagicMock()
    _queue(_outcome(), bt)
    kwargs = _queued(bt)
    assert kwargs["template_id"] == "approval_request"
    assert kwargs["recipient_emails"] == ["ceo@example.com"]
    assert kwargs["context"]["stage"] == "head"


def test_requester_told_on_rejection():
    bt = MagicMock()
    _queue(_outcome(is_rejected=True, with_next=False), bt)
    kwargs = _queued(bt)
    assert kwargs["template_id"] == "rejected"
    assert kwargs["recipient_emails"] == ["req@example.com"]
    assert kwargs["context"]["reason"] == "Over budget"


def test_requester_told_on_final_approval():
    bt = MagicMock()
    _queue(_outcome(is_final=True, with_next=False), bt)
    assert _queued(bt)["template_id"] == "approved"
