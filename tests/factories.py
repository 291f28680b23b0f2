"""Event and form builders shared by the ledger tests."""

from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

NOW = datetime(2024, 6, 15, 12, 0, 0)
NEXT_MONTH = datetime(2024, 7, 2, 9, 0, 0)


def order_event(order_id, amount, code, durable=True, **extra):
    """Order Finalized event in the shape the order pipeline posts."""
    return SimpleNamespace(
        order_id=order_id,
        order_number=extra.get("order_number", f"ORD-{order_id}"),
        eligible_subtotal=Decimal(str(amount)),
        referral_code=code,
        click_id=extra.get("click_id"),
        durable=durable,
    )


def kyc_form(**overrides):
    values = {
        "month_key": None,
        "account_holder": "Asha Verma",
        "bank_account": "001234567890",
        "ifsc": "HDFC0001234",
        "bank_name": "HDFC Bank",
        "city": "Pune",
        "upi_id": None,
        "aadhaar": "1234 5678 9012",
        "pan": "abcde1234f",
    }
    values.update(overrides)
    return SimpleNamespace(**values)
