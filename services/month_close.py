# Month-Close Job
# Locks the accrued attributions of a finished month and stages one payout per affiliate.
# Safe to re-run: locking only touches open rows and payout staging is insert-if-absent.

from sqlalchemy import func, update
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional
import logging

from database.affiliate_models import (
    Affiliate,
    AffiliateAttribution,
    AttributionStatusDB,
    PayoutSourceDB,
    PayoutStatusDB,
)
from database.config import run_in_transaction
from services.errors import MonthNotClosed
from services.ledger import insert_payout_if_absent, ledger_balance
from services.tiers import month_key_of, previous_month_key, validate_month_key

logger = logging.getLogger(__name__)

OPEN_STATUSES = (AttributionStatusDB.PENDING, AttributionStatusDB.APPROVED)


def _open_accrued_rows(month_key: str):
    # Unaccrued pending rows are pre-created orders that never became durable
    return (
        AffiliateAttribution.month_key == month_key,
        AffiliateAttribution.status.in_(OPEN_STATUSES),
        AffiliateAttribution.accrued_at.isnot(None),
    )


class MonthCloseService:

    def __init__(self, db: Session):
        self.db = db

    def close_month(self, month_key: Optional[str] = None, now: Optional[datetime] = None) -> dict:
        """
        Close `month_key` (default: the month before `now`).

        Each affiliate is locked and staged in its own transaction; one
        affiliate failing is logged and does not stop the batch.
        """
        now = now or datetime.utcnow()
        month_key = validate_month_key(month_key) if month_key else previous_month_key(now)
        if month_key >= month_key_of(now):
            raise MonthNotClosed(f"{month_key} has not ended yet")

        affiliate_ids = [
            affiliate_id for (affiliate_id,) in self.db.query(AffiliateAttribution.affiliate_id).filter(
                *_open_accrued_rows(month_key)
            ).group_by(AffiliateAttribution.affiliate_id).all()
        ]
        # Finish the read transaction before the per-affiliate writes
        self.db.rollback()

        summary = {
            "month_key": month_key,
            "affiliates": len(affiliate_ids),
            "rows_locked": 0,
            "payouts_created": 0,
            "failures": [],
        }
        logger.info(f"Closing {month_key}: {len(affiliate_ids)} affiliate(s) with open attributions")

        for affiliate_id in affiliate_ids:
            try:
                locked, created = run_in_transaction(self.db, self._close_affiliate, affiliate_id, month_key, now)
                summary["rows_locked"] += locked
                summary["payouts_created"] += int(created)
            except Exception as e:
                logger.error(f"Month close {month_key} failed for affiliate {affiliate_id}: {e}")
                summary["failures"].append({"affiliate_id": affiliate_id, "error": str(e)})

        logger.info(
            f"Closed {month_key}: {summary['rows_locked']} row(s) locked, "
            f"{summary['payouts_created']} payout(s) staged, {len(summary['failures'])} failure(s)"
        )
        return summary

    def _close_affiliate(self, db: Session, affiliate_id: str, month_key: str, now: datetime):
        affiliate = db.get(Affiliate, affiliate_id)

        result = db.execute(
            update(AffiliateAttribution)
            .where(AffiliateAttribution.affiliate_id == affiliate_id, *_open_accrued_rows(month_key))
            .values(status=AttributionStatusDB.LOCKED, locked_at=now)
            .execution_options(synchronize_session=False)
        )
        locked = result.rowcount or 0

        total = ledger_balance(db, affiliate_id, month_key)
        if total <= 0:
            logger.info(f"Affiliate {affiliate.code}: nothing payable for {month_key} ({total})")
            return locked, False

        locked_rows = db.query(func.count(AffiliateAttribution.id)).filter(
            AffiliateAttribution.affiliate_id == affiliate_id,
            AffiliateAttribution.month_key == month_key,
            AffiliateAttribution.status == AttributionStatusDB.LOCKED,
        ).scalar()

        _, created = insert_payout_if_absent(
            db,
            affiliate_id=affiliate_id,
            user_id=affiliate.user_id,
            month_key=month_key,
            amount=total,
            status=PayoutStatusDB.REQUESTED,
            source=PayoutSourceDB.MONTH_CLOSE,
            metadata_json={"accrued": str(total), "locked_rows": locked_rows, "closed_at": now.isoformat()},
        )
        return locked, created
