# Commission tier resolution and month-key helpers

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable, List, Optional
import re

from services.errors import InvalidMonthKey, InvalidTierTable

CENT = Decimal("0.01")
MONTH_KEY_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


def round2(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def commission_for(amount, percent) -> Decimal:
    """round2(amount * percent / 100)"""
    return round2(to_decimal(amount) * to_decimal(percent) / Decimal("100"))


# ============================================================================
# MONTH KEYS
# ============================================================================

def month_key_of(now: Optional[datetime] = None) -> str:
    return (now or datetime.utcnow()).strftime("%Y-%m")


def previous_month_key(now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    if now.month == 1:
        return f"{now.year - 1}-12"
    return f"{now.year}-{now.month - 1:02d}"


def validate_month_key(month_key: str) -> str:
    if not month_key or not MONTH_KEY_RE.match(month_key):
        raise InvalidMonthKey(f"Month must be formatted YYYY-MM, got {month_key!r}")
    return month_key


# ============================================================================
# TIER TABLE
# ============================================================================

def normalize_tiers(tiers: Optional[Iterable]) -> List[dict]:
    """
    Normalize a tier table to [{"min_monthly_sales": float, "percent": float}] sorted ascending.

    Accepts the stored shape as well as the shorter {"min": ..., "rate": ...} shape
    the back office sends.
    """
    normalized = []
    for tier in tiers or []:
        if not isinstance(tier, dict):
            raise InvalidTierTable("Each tier must be an object")
        minimum = tier.get("min_monthly_sales", tier.get("min", 0))
        percent = tier.get("percent", tier.get("rate", 0))
        try:
            minimum = to_decimal(minimum)
            percent = to_decimal(percent)
        except (InvalidOperation, ValueError):
            raise InvalidTierTable(f"Tier values must be numeric: {tier!r}")
        if minimum < 0 or percent < 0 or percent > 100:
            raise InvalidTierTable(f"Tier out of range: {tier!r}")
        normalized.append({"min_monthly_sales": float(minimum), "percent": float(percent)})

    normalized.sort(key=lambda t: t["min_monthly_sales"])
    return normalized


def resolve_percent(tiers: Optional[Iterable[dict]], prior_month_sales) -> Decimal:
    """
    Commission percent for an order given the affiliate's month-to-date sales
    *before* the order. Step function: the last tier whose threshold is met
    (>=) wins; an empty table or no qualifying tier yields 0.
    """
    sales = to_decimal(prior_month_sales)
    percent = Decimal("0")
    for tier in sorted(tiers or [], key=lambda t: to_decimal(t.get("min_monthly_sales", 0))):
        if sales >= to_decimal(tier.get("min_monthly_sales", 0)):
            percent = to_decimal(tier.get("percent", 0))
        else:
            break
    return percent
