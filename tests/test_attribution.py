"""Attribution recorder: idempotent booking, tier selection and durability."""

from datetime import datetime
from decimal import Decimal

from database.affiliate_models import AffiliateAttribution, AttributionEntryTypeDB, AttributionStatusDB
from services import AttributionService
from services import attribution_service
from services.ledger import ledger_balance
from tests.factories import NOW, order_event


def _originals(db, order_id):
    return db.query(AffiliateAttribution).filter(
        AffiliateAttribution.order_id == order_id,
        AffiliateAttribution.entry_type == AttributionEntryTypeDB.ORIGINAL,
    ).all()


def test_durable_order_is_booked_and_accrued(db, affiliate):
    row = AttributionService(db).record(order_event("o-1", "2500.00", affiliate.code), now=NOW)

    assert row.status == AttributionStatusDB.APPROVED
    assert row.commission_percent == Decimal("1")
    assert row.commission_amount == Decimal("25.00")
    assert row.month_key == "2024-06"
    assert row.accrued_at == NOW

    db.refresh(affiliate)
    assert affiliate.month_sales == Decimal("2500.00")
    assert affiliate.month_orders == 1
    assert affiliate.month_commission_accrued == Decimal("25.00")
    assert affiliate.lifetime_commission == Decimal("25.00")


def test_duplicate_delivery_is_a_no_op(db, affiliate):
    service = AttributionService(db)
    first = service.record(order_event("o-1", "1000.00", affiliate.code), now=NOW)
    second = service.record(order_event("o-1", "1000.00", affiliate.code), now=NOW)

    assert first.id == second.id
    assert len(_originals(db, "o-1")) == 1
    db.refresh(affiliate)
    assert affiliate.month_orders == 1
    assert affiliate.month_commission_accrued == Decimal("10.00")


def test_percent_uses_sales_before_the_order(db, affiliate):
    service = AttributionService(db)
    service.record(order_event("o-1", "9000.00", affiliate.code), now=NOW)
    crossing = service.record(order_event("o-2", "2000.00", affiliate.code), now=NOW)
    after = service.record(order_event("o-3", "1000.00", affiliate.code), now=NOW)

    # 9000 before o-2 is still tier 1; o-3 sees 11000
    assert crossing.commission_percent == Decimal("1")
    assert crossing.commission_amount == Decimal("20.00")
    assert after.commission_percent == Decimal("2")
    assert after.commission_amount == Decimal("20.00")


def test_unknown_or_missing_code_is_skipped(db, affiliate):
    service = AttributionService(db)
    assert service.record(order_event("o-1", "100.00", "NOPE1234"), now=NOW) is None
    assert service.record(order_event("o-2", "100.00", None), now=NOW) is None
    assert db.query(AffiliateAttribution).count() == 0


def test_inactive_affiliate_is_skipped(db, affiliate):
    affiliate.active = False
    db.commit()
    assert AttributionService(db).record(order_event("o-1", "100.00", affiliate.code), now=NOW) is None


def test_pending_order_is_promoted_once_durable(db, affiliate):
    service = AttributionService(db)
    pending = service.record(order_event("o-1", "1000.00", affiliate.code, durable=False), now=NOW)

    assert pending.status == AttributionStatusDB.PENDING
    assert pending.accrued_at is None
    db.refresh(affiliate)
    assert affiliate.month_commission_accrued == Decimal("0")

    promoted = service.record(order_event("o-1", "1000.00", affiliate.code), now=NOW)
    assert promoted.id == pending.id
    assert promoted.status == AttributionStatusDB.APPROVED
    assert promoted.accrued_at is not None

    # A repeat of the durable event does not accrue again
    service.record(order_event("o-1", "1000.00", affiliate.code), now=NOW)
    db.refresh(affiliate)
    assert affiliate.month_orders == 1
    assert affiliate.month_commission_accrued == Decimal("10.00")


def test_first_order_of_new_month_rolls_counters_over(db, affiliate):
    service = AttributionService(db)
    service.record(order_event("o-1", "20000.00", affiliate.code), now=NOW)

    july = service.record(order_event("o-2", "1000.00", affiliate.code), now=datetime(2024, 7, 1, 0, 1))

    assert july.month_key == "2024-07"
    assert july.commission_percent == Decimal("1")
    db.refresh(affiliate)
    assert affiliate.month_key == "2024-07"
    assert affiliate.month_sales == Decimal("1000.00")
    assert affiliate.lifetime_sales == Decimal("21000.00")


def test_balance_matches_counter(db, affiliate):
    service = AttributionService(db)
    for i, amount in enumerate(["1000.00", "2500.00", "7000.00"]):
        service.record(order_event(f"o-{i}", amount, affiliate.code), now=NOW)

    db.refresh(affiliate)
    assert ledger_balance(db, affiliate.id, "2024-06") == affiliate.month_commission_accrued


def test_manual_adjustment_books_a_row_and_accrues(db, affiliate):
    row = AttributionService(db).record_adjustment(affiliate.id, Decimal("15.50"), note="goodwill", now=NOW)

    assert row.entry_type == AttributionEntryTypeDB.ADJUSTMENT
    assert row.status == AttributionStatusDB.APPROVED
    assert row.commission_amount == Decimal("15.50")
    db.refresh(affiliate)
    assert affiliate.month_commission_accrued == Decimal("15.50")
    assert affiliate.month_orders == 0
    assert ledger_balance(db, affiliate.id, "2024-06") == Decimal("15.50")


def test_concurrent_original_insert_keeps_one_row(db, affiliate, monkeypatch):
    real_find_active_affiliate = attribution_service.find_active_affiliate
    competitor = {}

    def other_worker_books_first(session, code):
        found = real_find_active_affiliate(session, code)
        if not competitor:
            row = AffiliateAttribution(
                affiliate_id=found.id,
                order_id="o-1",
                entry_type=AttributionEntryTypeDB.ORIGINAL,
                amount=Decimal("1000.00"),
                commission_percent=Decimal("1"),
                commission_amount=Decimal("10.00"),
                status=AttributionStatusDB.APPROVED,
                month_key="2024-06",
                accrued_at=NOW,
            )
            session.add(row)
            session.flush()
            competitor["id"] = row.id
        return found

    monkeypatch.setattr(attribution_service, "find_active_affiliate", other_worker_books_first)

    row = AttributionService(db).record(order_event("o-1", "1000.00", affiliate.code), now=NOW)

    assert row.id == competitor["id"]
    assert len(_originals(db, "o-1")) == 1
    # The losing insert does not accrue a second time
    db.refresh(affiliate)
    assert affiliate.month_orders == 0
    assert affiliate.month_commission_accrued == Decimal("0.00")
