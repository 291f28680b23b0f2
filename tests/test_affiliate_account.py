"""Affiliate account: enrollment, month rollover and atomic accrual."""

from datetime import datetime
from decimal import Decimal

from database.affiliate_models import Affiliate
from services.affiliate_account import (
    apply_accrual,
    ensure_current_month,
    find_active_affiliate,
    get_or_create_affiliate,
)
from tests.factories import NOW


def test_enrollment_is_idempotent(db, user):
    first = get_or_create_affiliate(db, user, NOW)
    db.commit()
    second = get_or_create_affiliate(db, user, NOW)

    assert first.id == second.id
    assert len(first.code) == 8
    assert first.month_key == "2024-06"
    assert first.rules[0] == {"min_monthly_sales": 0.0, "percent": 1.0}
    assert db.query(Affiliate).count() == 1


def test_find_active_affiliate_skips_inactive(db, affiliate):
    assert find_active_affiliate(db, affiliate.code).id == affiliate.id
    assert find_active_affiliate(db, None) is None

    affiliate.active = False
    db.commit()
    assert find_active_affiliate(db, affiliate.code) is None


def test_rollover_resets_stale_month(db, affiliate):
    affiliate.month_key = "2024-05"
    affiliate.month_sales = Decimal("1000")
    affiliate.month_orders = 3
    affiliate.month_commission_accrued = Decimal("10")
    affiliate.lifetime_sales = Decimal("1000")
    db.commit()

    ensure_current_month(db, affiliate, datetime(2024, 6, 1, 0, 5))
    db.commit()

    assert affiliate.month_key == "2024-06"
    assert affiliate.month_sales == Decimal("0")
    assert affiliate.month_orders == 0
    assert affiliate.month_commission_accrued == Decimal("0")
    assert affiliate.lifetime_sales == Decimal("1000")


def test_rollover_never_moves_backwards(db, affiliate):
    affiliate.month_sales = Decimal("500")
    db.commit()

    # A late writer still on May must not reset June's counters
    ensure_current_month(db, affiliate, datetime(2024, 5, 31, 23, 59))
    db.commit()

    assert affiliate.month_key == "2024-06"
    assert affiliate.month_sales == Decimal("500")


def test_apply_accrual_moves_month_and_lifetime(db, affiliate):
    touched = apply_accrual(db, affiliate.id, "2024-06", Decimal("2500.00"), Decimal("25.00"))
    apply_accrual(db, affiliate.id, "2024-06", Decimal("500.00"), Decimal("5.00"))
    db.commit()

    assert touched is True
    db.refresh(affiliate)
    assert affiliate.month_sales == Decimal("3000.00")
    assert affiliate.month_orders == 2
    assert affiliate.month_commission_accrued == Decimal("30.00")
    assert affiliate.lifetime_sales == Decimal("3000.00")
    assert affiliate.lifetime_commission == Decimal("30.00")


def test_apply_accrual_for_other_month_only_moves_lifetime(db, affiliate):
    touched = apply_accrual(db, affiliate.id, "2024-05", Decimal("-100.00"), Decimal("-1.00"), orders=-1)
    db.commit()

    assert touched is False
    db.refresh(affiliate)
    assert affiliate.month_sales == Decimal("0")
    assert affiliate.month_orders == 0
    assert affiliate.lifetime_sales == Decimal("-100.00")
    assert affiliate.lifetime_commission == Decimal("-1.00")
