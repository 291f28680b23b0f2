# Payout Request Service
# One payout per (affiliate, month). The request path re-checks and inserts in one
# transaction, and the unique constraint backs it up, so double submissions
# resolve to a single row.

from sqlalchemy import update
from sqlalchemy.orm import Session, joinedload
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple
import logging

from config.app_config import PAYOUT_MONTH_POLICY
from database.affiliate_models import (
    Affiliate,
    AffiliatePayout,
    PayoutSourceDB,
    PayoutStatusDB,
)
from database.config import run_in_transaction
from services.affiliate_account import get_affiliate_for_user
from services.errors import AlreadyRequestedThisMonth, MonthNotClosed, NotAnAffiliate, NothingToPay, PayoutNotFound
from services.kyc import validate_kyc
from services.ledger import find_payout, insert_payout_if_absent, ledger_balance, prior_payouts_total, transition_payout
from services.tiers import month_key_of, previous_month_key, round2, validate_month_key

logger = logging.getLogger(__name__)

PREVIOUS_CLOSED = "previous_closed"


class PayoutService:

    def __init__(self, db: Session, month_policy: str = PAYOUT_MONTH_POLICY):
        self.db = db
        self.month_policy = month_policy

    # ========================================================================
    # AFFILIATE REQUEST
    # ========================================================================

    def resolve_month_key(self, requested: Optional[str], now: datetime) -> str:
        current = month_key_of(now)
        if not requested:
            return previous_month_key(now) if self.month_policy == PREVIOUS_CLOSED else current

        month_key = validate_month_key(requested)
        if month_key > current:
            raise MonthNotClosed(f"{month_key} is in the future")
        if self.month_policy == PREVIOUS_CLOSED and month_key == current:
            raise MonthNotClosed(f"Payouts for {month_key} open once the month has closed")
        return month_key

    def accrued_for_month(self, affiliate: Affiliate, month_key: str) -> Decimal:
        """Open month: the running counter. Any other month: the ledger balance."""
        if affiliate.month_key == month_key:
            return round2(affiliate.month_commission_accrued)
        return round2(ledger_balance(self.db, affiliate.id, month_key))

    def request_payout(self, user_id: str, form, now: Optional[datetime] = None) -> Tuple[AffiliatePayout, dict]:
        """
        Create (or return the existing) payout for the affiliate's month.

        Returns (payout, meta) where meta carries accrued, prior_payouts,
        eligible, kyc_mismatch and already_requested.
        """
        now = now or datetime.utcnow()
        snapshot, kyc_flags = validate_kyc(form)

        affiliate = get_affiliate_for_user(self.db, user_id)
        if not affiliate:
            raise NotAnAffiliate("No affiliate account for this user")

        month_key = self.resolve_month_key(getattr(form, "month_key", None), now)
        return run_in_transaction(
            self.db, self._create_payout, affiliate.id, user_id, month_key, snapshot, kyc_flags
        )

    def _create_payout(self, db: Session, affiliate_id, user_id, month_key, snapshot, kyc_flags):
        affiliate = db.get(Affiliate, affiliate_id)
        db.refresh(affiliate)

        existing = find_payout(db, affiliate_id, month_key, for_update=True)
        accrued = self.accrued_for_month(affiliate, month_key)
        prior = prior_payouts_total(db, affiliate_id, month_key)
        eligible = round2(accrued - prior)

        meta = {
            "month_key": month_key,
            "accrued": accrued,
            "prior_payouts": prior,
            "eligible": eligible,
            "kyc_mismatch": kyc_flags["kyc_mismatch"],
            "ifsc_format_ok": kyc_flags["ifsc_format_ok"],
            "already_requested": False,
        }

        if not existing and eligible <= 0:
            # A payout committed after the first check still wins over NothingToPay
            existing = find_payout(db, affiliate_id, month_key, for_update=True)

        if existing:
            return self._existing_payout(db, existing, affiliate, snapshot, meta)

        if eligible <= 0:
            raise NothingToPay(f"No commission to withdraw for {month_key}", accrued=str(accrued), prior_payouts=str(prior))

        payout, created = insert_payout_if_absent(
            db,
            affiliate_id=affiliate_id,
            user_id=user_id,
            month_key=month_key,
            amount=eligible,
            status=PayoutStatusDB.REQUESTED,
            source=PayoutSourceDB.USER,
            metadata_json=self._serialize(meta),
            **snapshot,
        )
        if not created:
            # Lost the insert to a concurrent request or month close
            return self._existing_payout(db, payout, affiliate, snapshot, meta)

        logger.info(f"Affiliate {affiliate.code}: payout {payout.id} of {eligible} requested for {month_key}")
        return payout, meta

    def _existing_payout(self, db: Session, existing: AffiliatePayout, affiliate: Affiliate, snapshot: dict, meta: dict):
        month_key = existing.month_key
        if PayoutStatusDB(existing.status) not in (PayoutStatusDB.REQUESTED, PayoutStatusDB.PROCESSING):
            raise AlreadyRequestedThisMonth(
                f"Payout for {month_key} is already {existing.status.value}",
                payout_id=existing.id,
            )
        if existing.source == PayoutSourceDB.MONTH_CLOSE and not existing.bank_account:
            # Staged by month close without bank details: attach the form
            db.execute(
                update(AffiliatePayout)
                .where(AffiliatePayout.id == existing.id, AffiliatePayout.bank_account.is_(None))
                .values(**snapshot, metadata_json={**(existing.metadata_json or {}), **self._serialize(meta)})
                .execution_options(synchronize_session=False)
            )
            db.refresh(existing)
        meta["already_requested"] = True
        logger.info(f"Affiliate {affiliate.code}: payout for {month_key} already {existing.status.value}")
        return existing, meta

    @staticmethod
    def _serialize(meta: dict) -> dict:
        return {key: (str(value) if isinstance(value, Decimal) else value) for key, value in meta.items()}

    # ========================================================================
    # BACK OFFICE
    # ========================================================================

    def get_payout(self, payout_id: str) -> AffiliatePayout:
        payout = self.db.query(AffiliatePayout).filter(AffiliatePayout.id == payout_id).first()
        if not payout:
            raise PayoutNotFound(f"Payout {payout_id} not found")
        return payout

    def list_payouts(
        self,
        status: Optional[str] = None,
        month_key: Optional[str] = None,
        affiliate_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AffiliatePayout]:
        query = self.db.query(AffiliatePayout).options(
            joinedload(AffiliatePayout.affiliate),
            joinedload(AffiliatePayout.user),
        )
        if status:
            query = query.filter(AffiliatePayout.status == PayoutStatusDB(status))
        if month_key:
            query = query.filter(AffiliatePayout.month_key == month_key)
        if affiliate_id:
            query = query.filter(AffiliatePayout.affiliate_id == affiliate_id)
        return query.order_by(AffiliatePayout.created_at.desc()).limit(limit).all()

    def mark_processing(self, payout_id: str, note: Optional[str] = None) -> AffiliatePayout:
        payout = self.get_payout(payout_id)
        transition_payout(self.db, payout, PayoutStatusDB.PROCESSING, notes=note or payout.notes)
        self.db.commit()
        return payout

    def mark_paid(
        self,
        payout_id: str,
        txn_id: str,
        method: Optional[str] = None,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AffiliatePayout:
        payout = self.get_payout(payout_id)
        transition_payout(
            self.db, payout, PayoutStatusDB.PAID,
            txn_id=txn_id,
            method=method,
            notes=note or payout.notes,
            paid_at=now or datetime.utcnow(),
        )
        self.db.commit()
        logger.info(f"Payout {payout.id} marked paid (txn {txn_id})")
        return payout

    def reject(self, payout_id: str, reason: Optional[str] = None) -> AffiliatePayout:
        payout = self.get_payout(payout_id)
        transition_payout(self.db, payout, PayoutStatusDB.REJECTED, rejection_reason=reason or "Rejected by admin")
        self.db.commit()
        logger.info(f"Payout {payout.id} rejected: {reason}")
        return payout
