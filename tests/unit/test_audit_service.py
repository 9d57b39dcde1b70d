"""
Unit tests for budgetflow/services/audit_service.py

Tests: transition rows carry actor, statuses, request id and JSON-safe details.
"""

import uuid
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
import structlog

from budgetflow.services.audit_service import record_transition


def _mock_session() -> AsyncMock:
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    return session


@pytest.fixture
def bound_request_id():
    structlog.contextvars.bind_contextvars(request_id="req-123")
    yield "req-123"
    structlog.contextvars.clear_contextvars()


@pytest.mark.asyncio
async def test_record_transition_stages_row(bound_request_id):
    session = _mock_session()
    actor_id = uuid.uuid4()
    entity_id = uuid.uuid4()
    code_id = uuid.uuid4()

    audit = await record_transition(
        session,
        {"user_id": str(actor_id), "email": "fin@example.com"},
        "PURCHASE_REQUISITION",
        str(entity_id),
        "PENDING_FINANCE",
        "FINANCE_APPROVED",
        budget_code_id=code_id,
        decided_at=datetime(2026, 3, 1, 9, 30),
        comments=None,
    )

    session.add.assert_called_once_with(audit)
    session.flush.assert_awaited_once()
    assert audit.actor_id == actor_id
    assert audit.actor_email == "fin@example.com"
    assert audit.entity_id == entity_id
    assert (audit.from_status, audit.to_status) == ("PENDING_FINANCE", "FINANCE_APPROVED")
    assert audit.request_id == bound_request_id
    assert audit.details == {
        "budget_code_id": str(code_id),
        "decided_at": "2026-03-01 09:30:00",
    }


@pytest.mark.asyncio
async def test_record_transition_without_actor():
    session = _mock_session()

    audit = await record_transition(session, None, "BUDGET_CODE", uuid.uuid4(), None, "RELEASED")

    assert audit.actor_id is None
    assert audit.actor_email is None
    assert audit.details == {}


@pytest.mark.asyncio
async def test_record_transition_requires_entity_id():
    with pytest.raises(ValueError):
        await record_transition(_mock_session(), None, "BUDGET_CODE", "not-a-uuid", None, "RELEASED")
