# Affiliate Account Service
# Owns the per-affiliate running totals. Every counter change is a single
# conditional UPDATE so concurrent handlers never lose increments.

from sqlalchemy import case, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from datetime import datetime
from decimal import Decimal
from typing import Optional
import logging
import secrets
import string

from config.app_config import DEFAULT_COMMISSION_TIERS, REFERRAL_CODE_LENGTH
from database.affiliate_models import Affiliate
from database.models import User
from services.tiers import month_key_of, normalize_tiers, to_decimal

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_referral_code(db: Session) -> str:
    """Generate unique referral code."""
    code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
    while db.query(Affiliate.id).filter(Affiliate.code == code).first():
        code = "".join(secrets.choice(CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
    return code


def get_affiliate_for_user(db: Session, user_id: str) -> Optional[Affiliate]:
    return db.query(Affiliate).filter(Affiliate.user_id == user_id).first()


def find_active_affiliate(db: Session, code: Optional[str]) -> Optional[Affiliate]:
    if not code:
        return None
    return db.query(Affiliate).filter(
        Affiliate.code == code.strip(),
        Affiliate.active.is_(True)
    ).first()


def get_or_create_affiliate(db: Session, user: User, now: Optional[datetime] = None) -> Affiliate:
    """
    Return the user's affiliate account, creating it on first referral activity.
    A concurrent creation for the same user resolves to the row that won.
    """
    affiliate = get_affiliate_for_user(db, user.id)
    if affiliate:
        return affiliate

    affiliate = Affiliate(
        user_id=user.id,
        code=generate_referral_code(db),
        active=True,
        rules=normalize_tiers(DEFAULT_COMMISSION_TIERS),
        month_key=month_key_of(now),
        month_sales=Decimal("0"),
        month_orders=0,
        month_commission_accrued=Decimal("0"),
        lifetime_sales=Decimal("0"),
        lifetime_commission=Decimal("0"),
    )
    try:
        with db.begin_nested():
            db.add(affiliate)
    except IntegrityError:
        logger.info(f"Affiliate for user {user.id} created concurrently, reusing it")
        affiliate = get_affiliate_for_user(db, user.id)
    return affiliate


def ensure_current_month(db: Session, affiliate: Affiliate, now: Optional[datetime] = None) -> Affiliate:
    """
    Reset the open-month counters when the wall-clock month has moved past the
    stored month key. The reset only applies to an older key, so a second writer
    can never clobber a fresh month with stale zeros.
    """
    key = month_key_of(now)
    if affiliate.month_key == key:
        return affiliate

    result = db.execute(
        update(Affiliate)
        .where(
            Affiliate.id == affiliate.id,
            or_(Affiliate.month_key.is_(None), Affiliate.month_key < key)
        )
        .values(
            month_key=key,
            month_sales=0,
            month_orders=0,
            month_commission_accrued=0,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info(f"Affiliate {affiliate.id} rolled over to {key}")
    db.refresh(affiliate)
    return affiliate


def apply_accrual(
    db: Session,
    affiliate_id: str,
    month_key: str,
    eligible_amount,
    commission_amount,
    orders: int = 1,
) -> bool:
    """
    Atomically add an accrual to the affiliate's counters.

    Month counters only move when the account is still on `month_key`;
    lifetime totals always move. Negative values are used for reversals.
    Returns True when the month counters were touched.
    """
    eligible_amount = to_decimal(eligible_amount)
    commission_amount = to_decimal(commission_amount)
    same_month = Affiliate.month_key == month_key

    db.execute(
        update(Affiliate)
        .where(Affiliate.id == affiliate_id)
        .values(
            month_sales=case((same_month, Affiliate.month_sales + eligible_amount), else_=Affiliate.month_sales),
            month_orders=case((same_month, Affiliate.month_orders + orders), else_=Affiliate.month_orders),
            month_commission_accrued=case(
                (same_month, Affiliate.month_commission_accrued + commission_amount),
                else_=Affiliate.month_commission_accrued
            ),
            lifetime_sales=Affiliate.lifetime_sales + eligible_amount,
            lifetime_commission=Affiliate.lifetime_commission + commission_amount,
        )
        .execution_options(synchronize_session=False)
    )

    touched = db.query(Affiliate.id).filter(
        Affiliate.id == affiliate_id,
        Affiliate.month_key == month_key
    ).first() is not None

    affiliate = db.get(Affiliate, affiliate_id)
    if affiliate is not None:
        db.refresh(affiliate)
    return touched
