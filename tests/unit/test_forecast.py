"""
Unit tests for the read-only reporting in budgetflow/services/ledger.py

Tests: utilization_status thresholds, forecast burn-rate projection.
"""

import uuid
from datetime import date, datetime

import pytest

from budgetflow.services import ledger
from tests.factories import make_code


def _spend(code, amount: int, when: datetime, ref: str) -> None:
    request_id = uuid.uuid4()
    ledger.reserve(code, request_id, amount, now=when)
    ledger.deduct(code, request_id, amount, ref, now=when)


# ---------------------------------------------------------------------------
# utilization_status
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "used_cents, expected",
    [
        (0, "healthy"),
        (599_999, "healthy"),
        (600_000, "moderate"),
        (749_999, "moderate"),
        (750_000, "warning"),
        (899_999, "warning"),
        (900_000, "critical"),
        (1_000_000, "critical"),
    ],
)
def test_utilization_status_thresholds(used_cents, expected):
    assert ledger.utilization_status(make_code(used_cents=used_cents)) == expected


def test_utilization_status_ignores_display_rounding():
    # 89.99999% rounds to 90.0 for display but is still below the critical line
    code = make_code(total_cents=10_000_000, used_cents=8_999_999)
    assert code.utilization_percentage == 90.0
    assert ledger.utilization_status(code) == "warning"


def test_utilization_of_zero_budget_is_healthy():
    code = make_code(total_cents=0)
    assert code.utilization_percentage == 0.0
    assert ledger.utilization_status(code) == "healthy"


# ---------------------------------------------------------------------------
# forecast
# ---------------------------------------------------------------------------


def test_forecast_unused_code():
    result = ledger.forecast(make_code(), today=date(2026, 3, 1))

    assert result["status"] == "unused"
    assert result["remaining_cents"] == 1_000_000
    assert result["monthly_spend"] == []
    assert result["months_remaining"] is None
    assert result["projected_exhaustion_date"] is None


def test_forecast_groups_spend_by_month():
    code = make_code(total_cents=1_200_000)
    _spend(code, 100_000, datetime(2026, 1, 5), "DSB-1")
    _spend(code, 200_000, datetime(2026, 1, 20), "DSB-2")
    _spend(code, 300_000, datetime(2026, 2, 10), "DSB-3")

    result = ledger.forecast(code, today=date(2026, 3, 1))

    assert result["monthly_spend"] == [
        {"month": "2026-01", "spent_cents": 300_000},
        {"month": "2026-02", "spent_cents": 300_000},
    ]
    assert result["average_monthly_burn_cents"] == 300_000
    assert result["remaining_cents"] == 600_000
    assert result["months_remaining"] == 2.0
    assert result["status"] == "warning"
    # 2 months at 30.44 days each, rounded to 61 days
    assert result["projected_exhaustion_date"] == date(2026, 5, 1)


def test_forecast_ignores_reservations_without_spend():
    code = make_code()
    _spend(code, 100_000, datetime(2026, 1, 5), "DSB-1")
    ledger.reserve(code, uuid.uuid4(), 300_000)

    result = ledger.forecast(code, today=date(2026, 2, 1))

    assert len(result["monthly_spend"]) == 1
    # remaining already excludes the open reservation
    assert result["remaining_cents"] == 600_000
    assert result["months_remaining"] == 6.0
    assert result["status"] == "monitor"


def test_forecast_critical_when_under_two_months():
    code = make_code()
    _spend(code, 800_000, datetime(2026, 1, 5), "DSB-1")

    result = ledger.forecast(code, today=date(2026, 2, 1))
    assert result["status"] == "critical"
    assert result["months_remaining"] < 2


def test_forecast_healthy_with_long_runway():
    code = make_code()
    _spend(code, 100_000, datetime(2026, 1, 5), "DSB-1")

    result = ledger.forecast(code, today=date(2026, 2, 1))
    assert result["months_remaining"] == 9.0
    assert result["status"] == "healthy"


def test_forecast_exhausted_when_fully_committed():
    code = make_code(total_cents=500_000)
    request_id = uuid.uuid4()
    ledger.reserve(code, request_id, 500_000, now=datetime(2026, 1, 5))
    ledger.deduct(code, request_id, 200_000, "DSB-1", now=datetime(2026, 1, 6))

    today = date(2026, 2, 1)
    result = ledger.forecast(code, today=today)

    assert result["status"] == "exhausted"
    assert result["remaining_cents"] == 0
    assert result["months_remaining"] == 0.0
    assert result["projected_exhaustion_date"] == today
    assert result["average_monthly_burn_cents"] == 200_000
