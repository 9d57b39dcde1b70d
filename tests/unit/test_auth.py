"""
Unit tests for budgetflow/services/auth_service.py and budgetflow/middleware/*

Tokens are signed with the HS256 test secret from conftest.
Tests: access token claims, get_current_user (valid, garbage, inactive),
       require_roles, check_requester, password hashing.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from budgetflow.middleware.auth import get_current_user
from budgetflow.middleware.authorization import FINANCE_ROLES, check_requester, require_roles
from budgetflow.services.auth_service import (
    create_access_token,
    hash_password,
    verify_access_token,
    verify_password,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _credentials(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def _mock_session(is_active) -> AsyncMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = is_active
    session = AsyncMock()
    session.execute = AsyncMock(return_value=result)
    return session


# ---------------------------------------------------------------------------
# tokens
# ---------------------------------------------------------------------------


def test_access_token_claims():
    user_id, dept_id = uuid.uuid4(), uuid.uuid4()
    token = create_access_token(user_id, "finance_officer", "fin@example.com", dept_id)
    claims = verify_access_token(token)

    assert claims["sub"] == str(user_id)
    assert claims["role"] == "finance_officer"
    assert claims["department_id"] == str(dept_id)
    assert claims["type"] == "access"


def test_password_hash_roundtrip():
    hashed = hash_password("BudgetFlow123!")
    assert hashed != "BudgetFlow123!"
    assert verify_password("BudgetFlow123!", hashed)
    assert not verify_password("wrong", hashed)


# ---------------------------------------------------------------------------
# get_current_user
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_current_user_returns_claims():
    user_id = uuid.uuid4()
    token = create_access_token(user_id, "supervisor", "sup@example.com")

    user = await get_current_user(_credentials(token), _mock_session(True))

    assert user == {
        "user_id": str(user_id),
        "role": "supervisor",
        "email": "sup@example.com",
        "department_id": None,
    }


@pytest.mark.asyncio
async def test_get_current_user_rejects_garbage():
    session = _mock_session(True)
    with pytest.raises(HTTPException) as exc:
        await get_current_user(_credentials("not-a-jwt"), session)
    assert exc.value.status_code == 401
    assert exc.value.detail["error"]["code"] == "AUTH_TOKEN_INVALID"
    session.execute.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("is_active", [False, None])
async def test_get_current_user_rejects_inactive_user(is_active):
    token = create_access_token(uuid.uuid4(), "supervisor", "sup@example.com")
    with pytest.raises(HTTPException) as exc:
        await get_current_user(_credentials(token), _mock_session(is_active))
    assert exc.value.detail["error"]["code"] == "AUTH_USER_INACTIVE"


# ---------------------------------------------------------------------------
# authorization
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_require_roles():
    check = require_roles(*FINANCE_ROLES)
    assert await check({"role": "finance_officer"}) is None

    with pytest.raises(HTTPException) as exc:
        await check({"role": "employee"})
    assert exc.value.status_code == 403


def test_check_requester():
    owner = str(uuid.uuid4())
    check_requester({"user_id": owner, "role": "employee"}, owner)
    check_requester({"user_id": str(uuid.uuid4()), "role": "admin"}, owner)
    with pytest.raises(HTTPException):
        check_requester({"user_id": str(uuid.uuid4()), "role": "employee"}, owner)
