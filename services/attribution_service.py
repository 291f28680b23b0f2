# Attribution Recorder
# Consumes "order finalized" events from the order pipeline and books commission.
# Best effort: nothing here ever raises back into checkout.

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from datetime import datetime
from decimal import Decimal
from typing import Optional
import logging

from database.affiliate_models import (
    Affiliate,
    AffiliateAttribution,
    AttributionEntryTypeDB,
    AttributionStatusDB,
)
from database.config import run_in_transaction
from services.affiliate_account import apply_accrual, ensure_current_month, find_active_affiliate
from services.errors import AffiliateNotFound
from services.ledger import transition_attribution
from services.tiers import commission_for, resolve_percent, round2, to_decimal, validate_month_key

logger = logging.getLogger(__name__)


class AttributionService:
    """
    Books one ledger row per attributed order and accrues it to the affiliate.

    Non-durable orders (awaiting payment) get a `pending` row that does not
    accrue. The durable event for the same order promotes that row to
    `approved` and accrues it; a durable order seen first is booked directly
    as `approved`. Re-delivered events are no-ops.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(self, event, now: Optional[datetime] = None) -> Optional[AffiliateAttribution]:
        now = now or datetime.utcnow()
        try:
            return run_in_transaction(self.db, self._record, event, now)
        except Exception as e:
            logger.error(f"Skipping attribution for order {getattr(event, 'order_id', None)}: {e}")
            return None

    def _record(self, db: Session, event, now: datetime) -> Optional[AffiliateAttribution]:
        existing = db.query(AffiliateAttribution).filter(
            AffiliateAttribution.order_id == event.order_id,
            AffiliateAttribution.entry_type == AttributionEntryTypeDB.ORIGINAL
        ).first()

        if existing:
            if event.durable and existing.status == AttributionStatusDB.PENDING and existing.accrued_at is None:
                return self._promote(db, existing, event, now)
            logger.info(f"Order {event.order_id} already attributed ({existing.status.value}), ignoring")
            return existing

        affiliate = find_active_affiliate(db, event.referral_code)
        if not affiliate:
            logger.info(f"Order {event.order_id}: no active affiliate for code {event.referral_code!r}")
            return None

        eligible = max(Decimal("0"), round2(event.eligible_subtotal))

        ensure_current_month(db, affiliate, now)
        # Serialize tier reads for this affiliate
        db.refresh(affiliate, with_for_update=True)
        month_key = affiliate.month_key
        percent = resolve_percent(affiliate.rules, affiliate.month_sales)
        commission = commission_for(eligible, percent)

        row = AffiliateAttribution(
            affiliate_id=affiliate.id,
            order_id=event.order_id,
            order_number=event.order_number,
            click_id=event.click_id,
            entry_type=AttributionEntryTypeDB.ORIGINAL,
            amount=eligible,
            commission_percent=percent,
            commission_amount=commission,
            status=AttributionStatusDB.APPROVED if event.durable else AttributionStatusDB.PENDING,
            month_key=month_key,
            accrued_at=now if event.durable else None,
        )
        try:
            with db.begin_nested():
                db.add(row)
        except IntegrityError:
            logger.info(f"Order {event.order_id} attributed concurrently, ignoring duplicate")
            return db.query(AffiliateAttribution).filter(
                AffiliateAttribution.order_id == event.order_id,
                AffiliateAttribution.entry_type == AttributionEntryTypeDB.ORIGINAL
            ).first()

        if event.durable:
            apply_accrual(db, affiliate.id, month_key, eligible, commission)

        logger.info(
            f"Attributed order {event.order_id} to affiliate {affiliate.code}: "
            f"{eligible} @ {percent}% = {commission} ({row.status.value})"
        )
        return row

    def _promote(self, db: Session, row: AffiliateAttribution, event, now: datetime) -> AffiliateAttribution:
        affiliate = db.get(Affiliate, row.affiliate_id)
        eligible = max(Decimal("0"), round2(event.eligible_subtotal))

        ensure_current_month(db, affiliate, now)
        db.refresh(affiliate, with_for_update=True)
        month_key = affiliate.month_key
        percent = resolve_percent(affiliate.rules, affiliate.month_sales)
        commission = commission_for(eligible, percent)

        # Losing to a concurrent promote or reversal re-runs _record, which then sees the new status
        transition_attribution(
            db, row, AttributionStatusDB.APPROVED,
            amount=eligible,
            commission_percent=percent,
            commission_amount=commission,
            month_key=month_key,
            accrued_at=now,
        )

        apply_accrual(db, affiliate.id, month_key, eligible, commission)
        logger.info(f"Order {row.order_id} became durable, accrued {commission} to affiliate {affiliate.code}")
        return row

    # ========================================================================
    # MANUAL ADJUSTMENTS
    # ========================================================================

    def record_adjustment(
        self,
        affiliate_id: str,
        amount,
        note: str = "manual_adjustment",
        month_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AffiliateAttribution:
        """Operator +/- commission correction, booked as its own ledger row."""
        now = now or datetime.utcnow()
        return run_in_transaction(self.db, self._record_adjustment, affiliate_id, amount, note, month_key, now)

    def _record_adjustment(self, db: Session, affiliate_id, amount, note, month_key, now) -> AffiliateAttribution:
        affiliate = db.get(Affiliate, affiliate_id)
        if not affiliate:
            raise AffiliateNotFound(f"Affiliate {affiliate_id} not found")

        ensure_current_month(db, affiliate, now)
        month_key = validate_month_key(month_key) if month_key else affiliate.month_key
        commission = round2(to_decimal(amount))

        row = AffiliateAttribution(
            affiliate_id=affiliate.id,
            order_number=f"ADJ-{int(now.timestamp() * 1000)}",
            entry_type=AttributionEntryTypeDB.ADJUSTMENT,
            amount=Decimal("0"),
            commission_percent=Decimal("0"),
            commission_amount=commission,
            status=AttributionStatusDB.APPROVED,
            month_key=month_key,
            note=note,
            accrued_at=now,
        )
        db.add(row)
        db.flush()

        apply_accrual(db, affiliate.id, month_key, Decimal("0"), commission, orders=0)
        logger.info(f"Adjustment {commission} booked for affiliate {affiliate.code} in {month_key}: {note}")
        return row
