"""Tier resolver and month-key helpers."""

from datetime import datetime
from decimal import Decimal

import pytest

from services.errors import InvalidMonthKey, InvalidTierTable
from services.tiers import (
    commission_for,
    month_key_of,
    normalize_tiers,
    previous_month_key,
    resolve_percent,
    round2,
    validate_month_key,
)

TIERS = [
    {"min_monthly_sales": 0, "percent": 1},
    {"min_monthly_sales": 10000, "percent": 2},
    {"min_monthly_sales": 50000, "percent": 5},
]


@pytest.mark.parametrize("sales, expected", [
    (0, "1"),
    (9999, "1"),
    (10000, "2"),
    (49999, "2"),
    (50000, "5"),
    (250000, "5"),
])
def test_resolve_percent_step_function(sales, expected):
    assert resolve_percent(TIERS, sales) == Decimal(expected)


def test_resolve_percent_empty_table_is_zero():
    assert resolve_percent([], 100000) == Decimal("0")
    assert resolve_percent(None, 0) == Decimal("0")


def test_resolve_percent_below_first_threshold_is_zero():
    tiers = [{"min_monthly_sales": 1000, "percent": 3}]
    assert resolve_percent(tiers, 999) == Decimal("0")


def test_resolve_percent_ignores_table_order():
    assert resolve_percent(list(reversed(TIERS)), 10000) == Decimal("2")


def test_commission_rounds_half_up():
    assert commission_for(Decimal("100.50"), 1) == Decimal("1.01")
    assert commission_for(Decimal("333.33"), 2) == Decimal("6.67")
    assert round2("0.005") == Decimal("0.01")


def test_normalize_tiers_sorts_and_accepts_short_shape():
    tiers = normalize_tiers([{"min": 5000, "rate": 3}, {"min_monthly_sales": 0, "percent": 1}])
    assert tiers == [
        {"min_monthly_sales": 0.0, "percent": 1.0},
        {"min_monthly_sales": 5000.0, "percent": 3.0},
    ]


@pytest.mark.parametrize("bad", [
    [{"min_monthly_sales": -1, "percent": 1}],
    [{"min_monthly_sales": 0, "percent": 101}],
    [{"min_monthly_sales": "lots", "percent": 1}],
    ["not-a-tier"],
])
def test_normalize_tiers_rejects_bad_tables(bad):
    with pytest.raises(InvalidTierTable):
        normalize_tiers(bad)


def test_month_keys():
    assert month_key_of(datetime(2024, 6, 30, 23, 59)) == "2024-06"
    assert previous_month_key(datetime(2024, 6, 1)) == "2024-05"
    assert previous_month_key(datetime(2024, 1, 10)) == "2023-12"


@pytest.mark.parametrize("value", ["2024-6", "2024-13", "24-06", "", None])
def test_validate_month_key_rejects_malformed(value):
    with pytest.raises(InvalidMonthKey):
        validate_month_key(value)
