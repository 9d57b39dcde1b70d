"""
Unit tests for the database exception handlers in budgetflow/main.py

Tests: lock timeout and deadlock map to a retryable 409, other driver errors
       map to a 500 DATABASE_ERROR.
"""

import json
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import DBAPIError

from budgetflow.main import dbapi_error_handler


class _DriverError(Exception):
    def __init__(self, sqlstate):
        super().__init__(f"sqlstate {sqlstate}")
        self.sqlstate = sqlstate


def _request():
    request = MagicMock()
    request.url.path = "/api/v1/purchase-requisitions/x/approve"
    return request


def _dbapi_error(sqlstate):
    return DBAPIError("SELECT ... FOR UPDATE", {}, _DriverError(sqlstate))


@pytest.mark.asyncio
@pytest.mark.parametrize("sqlstate", ["55P03", "40P01"])
async def test_lock_contention_is_retryable_conflict(sqlstate):
    response = await dbapi_error_handler(_request(), _dbapi_error(sqlstate))

    assert response.status_code == 409
    body = json.loads(response.body)
    assert body["error"]["code"] == "CONCURRENT_UPDATE"
    assert body["error"]["retryable"] is True


@pytest.mark.asyncio
async def test_other_driver_error_is_server_error():
    response = await dbapi_error_handler(_request(), _dbapi_error("42P01"))

    assert response.status_code == 500
    body = json.loads(response.body)
    assert body["error"]["code"] == "DATABASE_ERROR"
    assert "retryable" not in body["error"]
