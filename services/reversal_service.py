# Reversal Engine
# Consumes order cancellation / refund events and books compensating ledger entries.
# Money already staged for payout is never adjusted silently: those cases go to
# the reconciliation queue.

from sqlalchemy.orm import Session
from datetime import datetime
from typing import List, Optional
import logging

from database.affiliate_models import (
    AffiliateAttribution,
    AffiliateReconciliationFlag,
    AttributionEntryTypeDB,
    AttributionStatusDB,
    PayoutStatusDB,
)
from database.config import run_in_transaction
from services.affiliate_account import apply_accrual
from services.errors import FlagNotFound
from services.ledger import ACTIVE_PAYOUT_STATUSES, find_payout, reversed_amount_for, transition_attribution
from services.tiers import commission_for, round2, to_decimal

logger = logging.getLogger(__name__)


class ReversalService:

    def __init__(self, db: Session):
        self.db = db

    def reverse(
        self,
        order_id: str,
        reason: str,
        partial_amount=None,
        now: Optional[datetime] = None,
    ) -> Optional[AffiliateAttribution]:
        """
        Claw back commission for a cancelled or partially refunded order.

        Full reversal (no `partial_amount`) marks the original row `reversed` in
        place while its month is still open; a locked or partially refunded row
        gets a compensating row for whatever is left instead. Partial reversal
        always appends a compensating row.

        Returns the row that now carries the reversal, or None when there was
        nothing to reverse. Never raises.
        """
        now = now or datetime.utcnow()
        try:
            return run_in_transaction(self.db, self._reverse, order_id, reason, partial_amount, now)
        except Exception as e:
            logger.error(f"Reversal for order {order_id} failed: {e}")
            return None

    def _reverse(self, db: Session, order_id, reason, partial_amount, now) -> Optional[AffiliateAttribution]:
        row = db.query(AffiliateAttribution).filter(
            AffiliateAttribution.order_id == order_id,
            AffiliateAttribution.entry_type == AttributionEntryTypeDB.ORIGINAL,
            AffiliateAttribution.status != AttributionStatusDB.REVERSED
        ).order_by(AffiliateAttribution.created_at.desc()).with_for_update().first()

        if not row:
            logger.info(f"Order {order_id}: no attribution to reverse")
            return None

        # Never accrued: nothing to claw back, just stop it from being promoted later
        if row.accrued_at is None:
            if partial_amount is None:
                return transition_attribution(db, row, AttributionStatusDB.REVERSED, reason=reason)
            logger.info(f"Order {order_id}: partial refund before the order was durable, nothing accrued")
            return None

        already_amount, already_commission = reversed_amount_for(db, row)
        remaining_amount = to_decimal(row.amount) - already_amount
        remaining_commission = to_decimal(row.commission_amount) - already_commission
        if remaining_amount <= 0 and remaining_commission <= 0:
            logger.info(f"Order {order_id}: already fully reversed")
            return None

        payout = find_payout(db, row.affiliate_id, row.month_key)
        if payout is not None and PayoutStatusDB(payout.status) not in ACTIVE_PAYOUT_STATUSES:
            payout = None

        full = partial_amount is None
        if full:
            amount, commission = remaining_amount, remaining_commission
        else:
            amount = min(round2(partial_amount), remaining_amount)
            if amount <= 0:
                logger.info(f"Order {order_id}: partial amount {partial_amount} ignored")
                return None
            if amount == remaining_amount:
                commission = remaining_commission
            else:
                commission = min(commission_for(amount, row.commission_percent), remaining_commission)

        in_place = (
            full
            and payout is None
            and already_amount == 0
            and AttributionStatusDB(row.status) in (AttributionStatusDB.PENDING, AttributionStatusDB.APPROVED)
        )

        if in_place:
            target = transition_attribution(db, row, AttributionStatusDB.REVERSED, reason=reason)
        else:
            target = AffiliateAttribution(
                affiliate_id=row.affiliate_id,
                order_id=row.order_id,
                order_number=row.order_number,
                click_id=row.click_id,
                entry_type=AttributionEntryTypeDB.REVERSAL,
                reversal_of_id=row.id,
                amount=-amount,
                commission_percent=row.commission_percent,
                commission_amount=-commission,
                status=AttributionStatusDB.REVERSED,
                reason=reason,
                month_key=row.month_key,
                accrued_at=now,
            )
            db.add(target)
            db.flush()

        if payout is not None:
            flag = AffiliateReconciliationFlag(
                affiliate_id=row.affiliate_id,
                payout_id=payout.id,
                attribution_id=target.id,
                order_id=row.order_id,
                month_key=row.month_key,
                commission_delta=-commission,
                reason=reason,
            )
            db.add(flag)
            db.flush()
            logger.warning(
                f"Order {order_id}: reversal of {commission} hit {row.month_key} with payout {payout.id} "
                f"({payout.status.value}); flagged for reconciliation"
            )
            return target

        apply_accrual(db, row.affiliate_id, row.month_key, -amount, -commission, orders=-1 if full else 0)
        logger.info(f"Order {order_id}: reversed {commission} commission ({'full' if full else 'partial'})")
        return target

    # ========================================================================
    # RECONCILIATION QUEUE
    # ========================================================================

    def list_flags(self, resolved: Optional[bool] = False, limit: int = 100) -> List[AffiliateReconciliationFlag]:
        query = self.db.query(AffiliateReconciliationFlag)
        if resolved is not None:
            query = query.filter(AffiliateReconciliationFlag.resolved.is_(resolved))
        return query.order_by(AffiliateReconciliationFlag.created_at.desc()).limit(limit).all()

    def resolve_flag(self, flag_id: str, resolved_by: str, note: Optional[str] = None) -> AffiliateReconciliationFlag:
        flag = self.db.query(AffiliateReconciliationFlag).filter(AffiliateReconciliationFlag.id == flag_id).first()
        if not flag:
            raise FlagNotFound(f"Reconciliation flag {flag_id} not found")

        flag.resolved = True
        flag.resolution_note = note
        flag.resolved_by = resolved_by
        flag.resolved_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(flag)
        return flag
