# Affiliate Endpoints (for referring users and the order pipeline)

from fastapi import APIRouter, Depends, HTTPException, status, Query, Response
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import datetime
import uuid

from config.app_config import CLICK_COOKIE_MAX_AGE_DAYS, CODE_COOKIE_MAX_AGE_DAYS
from database.models import User
from database.affiliate_models import (
    AffiliateAttribution,
    AffiliatePayout,
    AttributionStatusDB,
)
from schemas.affiliate import (
    AffiliateResponse,
    AffiliateSummary,
    AttributionResponse,
    EventAck,
    OrderCancelledEvent,
    OrderFinalizedEvent,
    PayoutMeta,
    PayoutRequest,
    PayoutRequestResponse,
    PayoutResponse,
    VisitRequest,
    VisitResponse,
)
from services import AttributionService, PayoutService, ReversalService
from services.affiliate_account import (
    ensure_current_month,
    find_active_affiliate,
    get_affiliate_for_user,
    get_or_create_affiliate,
)
from services.errors import AffiliateError, NotAnAffiliate
from services.tiers import resolve_percent, validate_month_key
from database.config import get_db
from auth.dependencies import get_current_user
from auth.decorators import require_internal_token

router = APIRouter(prefix="/api/affiliate", tags=["Affiliate System"])


# ============================================================================
# ENROLLMENT & REFERRAL LINKS
# ============================================================================

@router.post("/enroll", response_model=AffiliateResponse)
async def enroll(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Create the caller's affiliate account (or return the existing one)."""
    affiliate = get_or_create_affiliate(db, current_user)
    db.commit()
    db.refresh(affiliate)
    return affiliate


@router.post("/visit", response_model=VisitResponse)
async def track_visit(
    visit: VisitRequest,
    response: Response,
    db: Session = Depends(get_db)
):
    """
    Capture a referral link visit.
    Sets the referral code and click id cookies read back at checkout.
    """
    affiliate = find_active_affiliate(db, visit.code)
    if not affiliate:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Invalid affiliate code"
        )

    click_id = str(uuid.uuid4())
    response.set_cookie(
        "aff_code", affiliate.code,
        max_age=CODE_COOKIE_MAX_AGE_DAYS * 24 * 3600,
        httponly=True,
        samesite="lax",
    )
    response.set_cookie(
        "aff_click", click_id,
        max_age=CLICK_COOKIE_MAX_AGE_DAYS * 24 * 3600,
        httponly=True,
        samesite="lax",
    )
    return VisitResponse(code=affiliate.code, click_id=click_id)


# ============================================================================
# AFFILIATE DASHBOARD
# ============================================================================

@router.get("/summary", response_model=AffiliateSummary)
async def get_summary(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Open month counters, lifetime totals, tiers and the latest payouts."""
    affiliate = get_affiliate_for_user(db, current_user.id)
    if not affiliate:
        return AffiliateSummary(active=False)

    ensure_current_month(db, affiliate)
    db.commit()
    db.refresh(affiliate)

    payouts = db.query(AffiliatePayout).filter(
        AffiliatePayout.affiliate_id == affiliate.id
    ).order_by(AffiliatePayout.created_at.desc()).limit(6).all()

    return AffiliateSummary(
        active=affiliate.active,
        code=affiliate.code,
        month_key=affiliate.month_key,
        month_orders=affiliate.month_orders,
        month_sales=affiliate.month_sales,
        month_commission_accrued=affiliate.month_commission_accrued,
        lifetime_sales=affiliate.lifetime_sales,
        lifetime_commission=affiliate.lifetime_commission,
        current_percent=resolve_percent(affiliate.rules, affiliate.month_sales),
        rules=affiliate.rules or [],
        payouts=[PayoutResponse.model_validate(p) for p in payouts],
    )


@router.get("/history", response_model=List[AttributionResponse])
async def get_history(
    month: Optional[str] = None,
    status_filter: Optional[AttributionStatusDB] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Ledger rows for the caller, newest first."""
    affiliate = get_affiliate_for_user(db, current_user.id)
    if not affiliate:
        return []

    query = db.query(AffiliateAttribution).filter(
        AffiliateAttribution.affiliate_id == affiliate.id
    )
    if month:
        try:
            query = query.filter(AffiliateAttribution.month_key == validate_month_key(month))
        except AffiliateError as e:
            raise e.to_http()
    if status_filter:
        query = query.filter(AffiliateAttribution.status == status_filter)

    return query.order_by(AffiliateAttribution.created_at.desc()).limit(limit).all()


# ============================================================================
# PAYOUTS
# ============================================================================

@router.post("/payouts/request", response_model=PayoutRequestResponse)
async def request_payout(
    form: PayoutRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Request the payout for a month.
    A second request for the same month returns the existing payout.
    """
    try:
        payout, meta = PayoutService(db).request_payout(current_user.id, form)
    except AffiliateError as e:
        raise e.to_http()

    return PayoutRequestResponse(payout=PayoutResponse.model_validate(payout), meta=PayoutMeta(**meta))


@router.get("/payouts", response_model=List[PayoutResponse])
async def get_my_payouts(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    affiliate = get_affiliate_for_user(db, current_user.id)
    if not affiliate:
        raise NotAnAffiliate("No affiliate account for this user").to_http()

    return db.query(AffiliatePayout).filter(
        AffiliatePayout.affiliate_id == affiliate.id
    ).order_by(AffiliatePayout.month_key.desc()).all()


# ============================================================================
# ORDER PIPELINE EVENTS
# ============================================================================

@router.post("/events/order-finalized", response_model=EventAck, dependencies=[Depends(require_internal_token())])
async def order_finalized(
    event: OrderFinalizedEvent,
    db: Session = Depends(get_db)
):
    """Book commission for an order. Always acknowledged; failures are logged."""
    row = AttributionService(db).record(event, now=datetime.utcnow())
    return EventAck(applied=row is not None, attribution_id=row.id if row else None)


@router.post("/events/order-cancelled", response_model=EventAck, dependencies=[Depends(require_internal_token())])
async def order_cancelled(
    event: OrderCancelledEvent,
    db: Session = Depends(get_db)
):
    """Claw back commission for a cancelled or partially refunded order."""
    row = ReversalService(db).reverse(event.order_id, event.reason, event.partial_amount, now=datetime.utcnow())
    return EventAck(applied=row is not None, attribution_id=row.id if row else None)
