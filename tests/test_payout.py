"""Payout request service and KYC validation."""

from datetime import datetime
from decimal import Decimal

import pytest

from database.affiliate_models import AffiliatePayout, PayoutSourceDB, PayoutStatusDB
from services import AttributionService, MonthCloseService, PayoutService
from services import payout_service
from services.errors import (
    AlreadyRequestedThisMonth,
    IllegalStatusTransition,
    InvalidAadhaarLength,
    InvalidKyc,
    InvalidUpiFormat,
    MonthNotClosed,
    NotAnAffiliate,
    NothingToPay,
)
from services.kyc import validate_kyc
from tests.factories import NEXT_MONTH, NOW, kyc_form, order_event


def _book(db, affiliate, order_id, amount, now=NOW):
    return AttributionService(db).record(order_event(order_id, amount, affiliate.code), now=now)


# ============================================================================
# KYC
# ============================================================================

def test_kyc_snapshot_masks_aadhaar():
    snapshot, flags = validate_kyc(kyc_form(aadhaar="123456789012", upi_id="asha.v@okhdfc"))

    assert snapshot["aadhaar_masked"] == "XXXXXXXX9012"
    assert "aadhaar" not in snapshot
    assert snapshot["pan"] == "ABCDE1234F"
    assert snapshot["upi_id"] == "asha.v@okhdfc"
    assert flags == {"ifsc_format_ok": True, "kyc_mismatch": False}


@pytest.mark.parametrize("aadhaar", ["12345", "1234567890123", "abcd"])
def test_kyc_rejects_bad_aadhaar(aadhaar):
    with pytest.raises(InvalidAadhaarLength):
        validate_kyc(kyc_form(aadhaar=aadhaar))


@pytest.mark.parametrize("upi", ["no-at-sign", "a@1bank", "x@y", "@okaxis"])
def test_kyc_rejects_bad_upi(upi):
    with pytest.raises(InvalidUpiFormat):
        validate_kyc(kyc_form(upi_id=upi))


def test_kyc_lists_missing_fields():
    with pytest.raises(InvalidKyc) as exc:
        validate_kyc(kyc_form(city="", pan=None))
    assert exc.value.details["missing"] == ["city", "pan"]


def test_kyc_flags_ifsc_bank_mismatch():
    _, flags = validate_kyc(kyc_form(ifsc="sbin0001234", bank_name="HDFC Bank"))
    assert flags["kyc_mismatch"] is True
    assert flags["ifsc_format_ok"] is True

    _, flags = validate_kyc(kyc_form(ifsc="HDFC12", bank_name="HDFC Bank"))
    assert flags["ifsc_format_ok"] is False


# ============================================================================
# REQUESTS
# ============================================================================

def test_request_creates_payout_for_previous_month(db, affiliate, user):
    _book(db, affiliate, "o-1", "1000.00")
    _book(db, affiliate, "o-2", "2000.00")

    payout, meta = PayoutService(db).request_payout(user.id, kyc_form(), now=NEXT_MONTH)

    assert payout.month_key == "2024-06"
    assert payout.amount == Decimal("30.00")
    assert payout.status == PayoutStatusDB.REQUESTED
    assert payout.source == PayoutSourceDB.USER
    assert payout.aadhaar_masked == "XXXXXXXX9012"
    assert meta["accrued"] == Decimal("30.00")
    assert meta["prior_payouts"] == Decimal("0.00")
    assert meta["eligible"] == Decimal("30.00")
    assert meta["already_requested"] is False


def test_double_request_returns_the_same_payout(db, affiliate, user):
    _book(db, affiliate, "o-1", "1000.00")
    service = PayoutService(db)

    first, _ = service.request_payout(user.id, kyc_form(), now=NEXT_MONTH)
    second, meta = service.request_payout(user.id, kyc_form(), now=NEXT_MONTH)

    assert first.id == second.id
    assert meta["already_requested"] is True
    assert db.query(AffiliatePayout).count() == 1


def test_eligible_is_accrued_minus_prior_payouts(db, affiliate, user):
    _book(db, affiliate, "o-1", "50000.00")
    db.add(AffiliatePayout(
        affiliate_id=affiliate.id,
        user_id=user.id,
        month_key="2024-06",
        amount=Decimal("200.00"),
        status=PayoutStatusDB.REQUESTED,
        source=PayoutSourceDB.USER,
    ))
    db.commit()

    payout, meta = PayoutService(db).request_payout(user.id, kyc_form(), now=NEXT_MONTH)

    assert payout.amount == Decimal("200.00")
    assert meta["accrued"] == Decimal("500.00")
    assert meta["prior_payouts"] == Decimal("200.00")
    assert meta["eligible"] == Decimal("300.00")
    assert meta["already_requested"] is True


def test_nothing_to_pay(db, affiliate, user):
    with pytest.raises(NothingToPay):
        PayoutService(db).request_payout(user.id, kyc_form(), now=NEXT_MONTH)
    assert db.query(AffiliatePayout).count() == 0


def test_settled_month_cannot_be_requested_again(db, affiliate, user):
    _book(db, affiliate, "o-1", "1000.00")
    service = PayoutService(db)
    payout, _ = service.request_payout(user.id, kyc_form(), now=NEXT_MONTH)
    service.mark_paid(payout.id, txn_id="UTR123456", method="neft")

    with pytest.raises(AlreadyRequestedThisMonth):
        service.request_payout(user.id, kyc_form(), now=NEXT_MONTH)


def test_non_affiliate_cannot_request(db, user):
    with pytest.raises(NotAnAffiliate):
        PayoutService(db).request_payout(user.id, kyc_form(), now=NEXT_MONTH)


def test_previous_closed_policy_rejects_open_month(db, affiliate, user):
    _book(db, affiliate, "o-1", "1000.00")
    with pytest.raises(MonthNotClosed):
        PayoutService(db).request_payout(user.id, kyc_form(month_key="2024-06"), now=NOW)
    with pytest.raises(MonthNotClosed):
        PayoutService(db).request_payout(user.id, kyc_form(month_key="2024-09"), now=NEXT_MONTH)


def test_current_policy_pays_open_month(db, affiliate, user):
    _book(db, affiliate, "o-1", "1000.00")

    payout, meta = PayoutService(db, month_policy="current").request_payout(user.id, kyc_form(), now=NOW)

    assert payout.month_key == "2024-06"
    assert meta["accrued"] == Decimal("10.00")


def test_closed_month_uses_ledger_after_rollover(db, affiliate, user):
    _book(db, affiliate, "o-1", "1000.00")
    _book(db, affiliate, "o-2", "4000.00", now=datetime(2024, 7, 1, 9, 0))

    payout, meta = PayoutService(db).request_payout(user.id, kyc_form(), now=NEXT_MONTH)

    assert meta["accrued"] == Decimal("10.00")
    assert payout.amount == Decimal("10.00")


def test_request_attaches_kyc_to_month_close_payout(db, affiliate, user):
    _book(db, affiliate, "o-1", "1000.00")
    MonthCloseService(db).close_month("2024-06", now=NEXT_MONTH)

    payout, meta = PayoutService(db).request_payout(user.id, kyc_form(), now=NEXT_MONTH)

    assert payout.source == PayoutSourceDB.MONTH_CLOSE
    assert payout.bank_account == "001234567890"
    assert payout.ifsc == "HDFC0001234"
    assert meta["already_requested"] is True
    assert db.query(AffiliatePayout).count() == 1


# ============================================================================
# BACK OFFICE
# ============================================================================

def test_back_office_transitions(db, affiliate, user):
    _book(db, affiliate, "o-1", "1000.00")
    service = PayoutService(db)
    payout, _ = service.request_payout(user.id, kyc_form(), now=NEXT_MONTH)

    service.mark_processing(payout.id, note="batch 7")
    paid = service.mark_paid(payout.id, txn_id="UTR999", method="imps", now=NEXT_MONTH)

    assert paid.status == PayoutStatusDB.PAID
    assert paid.txn_id == "UTR999"
    assert paid.paid_at == NEXT_MONTH
    assert paid.notes == "batch 7"


def test_rejected_payout_cannot_be_paid(db, affiliate, user):
    _book(db, affiliate, "o-1", "1000.00")
    service = PayoutService(db)
    payout, _ = service.request_payout(user.id, kyc_form(), now=NEXT_MONTH)
    service.reject(payout.id, reason="name mismatch")

    with pytest.raises(IllegalStatusTransition):
        service.mark_paid(payout.id, txn_id="UTR1")


# ============================================================================
# CONCURRENT REQUESTS
# ============================================================================

def test_request_that_loses_the_insert_returns_the_winner(db, affiliate, user, monkeypatch):
    _book(db, affiliate, "o-1", "1000.00")
    real_prior_payouts_total = payout_service.prior_payouts_total
    winner = {}

    def competing_request_commits_before_insert(session, affiliate_id, month_key):
        total = real_prior_payouts_total(session, affiliate_id, month_key)
        if not winner:
            competitor = AffiliatePayout(
                affiliate_id=affiliate_id,
                user_id=user.id,
                month_key=month_key,
                amount=Decimal("10.00"),
                status=PayoutStatusDB.REQUESTED,
                source=PayoutSourceDB.USER,
            )
            session.add(competitor)
            session.flush()
            winner["id"] = competitor.id
        return total

    monkeypatch.setattr(payout_service, "prior_payouts_total", competing_request_commits_before_insert)

    payout, meta = PayoutService(db).request_payout(user.id, kyc_form(), now=NEXT_MONTH)

    assert payout.id == winner["id"]
    assert meta["eligible"] == Decimal("10.00")
    assert meta["already_requested"] is True
    assert db.query(AffiliatePayout).count() == 1


def test_request_racing_month_close_returns_staged_payout(db, affiliate, user, monkeypatch):
    _book(db, affiliate, "o-1", "1000.00")
    MonthCloseService(db).close_month("2024-06", now=NEXT_MONTH)
    real_find_payout = payout_service.find_payout
    calls = []

    def misses_the_seed_once(session, affiliate_id, month_key, for_update=False):
        calls.append(month_key)
        if len(calls) == 1:
            return None
        return real_find_payout(session, affiliate_id, month_key, for_update)

    monkeypatch.setattr(payout_service, "find_payout", misses_the_seed_once)

    payout, meta = PayoutService(db).request_payout(user.id, kyc_form(), now=NEXT_MONTH)

    assert len(calls) == 2
    assert payout.source == PayoutSourceDB.MONTH_CLOSE
    assert payout.amount == Decimal("10.00")
    assert payout.bank_account == "001234567890"
    assert meta["already_requested"] is True
    assert db.query(AffiliatePayout).count() == 1
