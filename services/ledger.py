# Ledger primitives shared by the recorder, month close, payouts and reversals:
# status state machines, ledger balance and insert-if-absent for payouts.

from sqlalchemy import and_, func, or_, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from decimal import Decimal
from typing import Optional, Tuple
import logging

from database.affiliate_models import (
    AffiliateAttribution,
    AffiliatePayout,
    AttributionEntryTypeDB,
    AttributionStatusDB,
    PayoutStatusDB,
)
from services.errors import ConcurrentUpdate, IllegalStatusTransition
from services.tiers import round2

logger = logging.getLogger(__name__)


# ============================================================================
# STATE MACHINES
# ============================================================================

ATTRIBUTION_TRANSITIONS = {
    AttributionStatusDB.PENDING: {AttributionStatusDB.APPROVED, AttributionStatusDB.LOCKED, AttributionStatusDB.REVERSED},
    AttributionStatusDB.APPROVED: {AttributionStatusDB.LOCKED, AttributionStatusDB.REVERSED},
    # A locked month is only clawed back through a compensating row
    AttributionStatusDB.LOCKED: set(),
    AttributionStatusDB.REVERSED: set(),
}

PAYOUT_TRANSITIONS = {
    PayoutStatusDB.REQUESTED: {PayoutStatusDB.PROCESSING, PayoutStatusDB.PAID, PayoutStatusDB.REJECTED},
    PayoutStatusDB.PROCESSING: {PayoutStatusDB.PAID, PayoutStatusDB.REJECTED},
    PayoutStatusDB.PAID: set(),
    PayoutStatusDB.REJECTED: set(),
}

# Payouts that count against a month's accrued commission
ACTIVE_PAYOUT_STATUSES = (PayoutStatusDB.REQUESTED, PayoutStatusDB.PROCESSING, PayoutStatusDB.PAID)


def check_transition(table: dict, current, new) -> None:
    if new not in table.get(current, set()):
        raise IllegalStatusTransition(
            f"Cannot move from {current.value} to {new.value}",
            current=current.value,
            requested=new.value,
        )


def transition_attribution(db: Session, row: AffiliateAttribution, new_status: AttributionStatusDB, **values) -> AffiliateAttribution:
    """
    Move one ledger row to `new_status`. The UPDATE is conditioned on the status
    we read, so a concurrent writer that got there first raises ConcurrentUpdate
    instead of being silently overwritten; the caller's transaction is re-run.
    """
    current = AttributionStatusDB(row.status)
    check_transition(ATTRIBUTION_TRANSITIONS, current, new_status)

    result = db.execute(
        update(AffiliateAttribution)
        .where(AffiliateAttribution.id == row.id, AffiliateAttribution.status == current)
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise ConcurrentUpdate(
            "Attribution changed concurrently",
            attribution_id=row.id,
            requested=new_status.value,
        )
    db.refresh(row)
    return row


def transition_payout(db: Session, payout: AffiliatePayout, new_status: PayoutStatusDB, **values) -> AffiliatePayout:
    current = PayoutStatusDB(payout.status)
    check_transition(PAYOUT_TRANSITIONS, current, new_status)

    result = db.execute(
        update(AffiliatePayout)
        .where(AffiliatePayout.id == payout.id, AffiliatePayout.status == current)
        .values(status=new_status, **values)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise ConcurrentUpdate(
            "Payout changed concurrently",
            payout_id=payout.id,
            requested=new_status.value,
        )
    db.refresh(payout)
    return payout


# ============================================================================
# LEDGER BALANCE
# ============================================================================

def counts_toward_balance():
    """
    Rows whose commission is part of the payable balance: every compensating
    and adjustment row, plus accrued originals that were not reversed in place.
    """
    return or_(
        AffiliateAttribution.entry_type != AttributionEntryTypeDB.ORIGINAL,
        and_(
            AffiliateAttribution.accrued_at.isnot(None),
            AffiliateAttribution.status != AttributionStatusDB.REVERSED,
        ),
    )


def ledger_balance(db: Session, affiliate_id: str, month_key: str) -> Decimal:
    total = db.query(func.coalesce(func.sum(AffiliateAttribution.commission_amount), 0)).filter(
        AffiliateAttribution.affiliate_id == affiliate_id,
        AffiliateAttribution.month_key == month_key,
        counts_toward_balance(),
    ).scalar()
    return round2(total)


def reversed_amount_for(db: Session, original: AffiliateAttribution) -> Tuple[Decimal, Decimal]:
    """(amount, commission) already clawed back from `original` by compensating rows."""
    amount, commission = db.query(
        func.coalesce(func.sum(AffiliateAttribution.amount), 0),
        func.coalesce(func.sum(AffiliateAttribution.commission_amount), 0),
    ).filter(
        AffiliateAttribution.reversal_of_id == original.id,
        AffiliateAttribution.entry_type == AttributionEntryTypeDB.REVERSAL,
    ).one()
    return -round2(amount), -round2(commission)


# ============================================================================
# PAYOUT INSERT-IF-ABSENT
# ============================================================================

def find_payout(db: Session, affiliate_id: str, month_key: str, for_update: bool = False) -> Optional[AffiliatePayout]:
    query = db.query(AffiliatePayout).filter(
        AffiliatePayout.affiliate_id == affiliate_id,
        AffiliatePayout.month_key == month_key,
    )
    if for_update:
        query = query.with_for_update()
    return query.populate_existing().first()


def prior_payouts_total(db: Session, affiliate_id: str, month_key: str) -> Decimal:
    total = db.query(func.coalesce(func.sum(AffiliatePayout.amount), 0)).filter(
        AffiliatePayout.affiliate_id == affiliate_id,
        AffiliatePayout.month_key == month_key,
        AffiliatePayout.status.in_(ACTIVE_PAYOUT_STATUSES),
    ).scalar()
    return round2(total)


def insert_payout_if_absent(db: Session, **values) -> Tuple[AffiliatePayout, bool]:
    """
    Insert a payout for (affiliate_id, month_key) unless one exists.
    Returns (payout, created). Uses ON CONFLICT DO NOTHING where the dialect
    has it; elsewhere a savepoint insert with the unique constraint as backstop.
    """
    dialect = db.get_bind().dialect.name
    if dialect in ("postgresql", "sqlite"):
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(AffiliatePayout).values(**values).on_conflict_do_nothing(
            index_elements=["affiliate_id", "month_key"]
        )
        created = bool(db.execute(stmt).rowcount)
    else:
        try:
            with db.begin_nested():
                db.add(AffiliatePayout(**values))
            created = True
        except IntegrityError:
            created = False

    payout = find_payout(db, values["affiliate_id"], values["month_key"])
    if not created:
        logger.info(f"Payout for affiliate {values['affiliate_id']} / {values['month_key']} already exists")
    return payout, created
