"""
Admin Affiliate Ledger Router
Operator views over affiliates, the attribution ledger and payouts,
plus the payout back-office transitions and the reconciliation queue.
"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import or_, desc
from typing import Optional, List
import csv
import io

from database.config import get_db
from database.models import User
from database.affiliate_models import (
    Affiliate,
    AffiliateAttribution,
    AffiliatePayout,
    AttributionEntryTypeDB,
    AttributionStatusDB,
    PayoutStatusDB,
)
from schemas.affiliate import (
    AdjustmentCreate,
    AffiliateResponse,
    AttributionResponse,
    MonthCloseRequest,
    MonthCloseSummary,
    PayoutAdminRow,
    PayoutApprove,
    PayoutProcessing,
    PayoutReject,
    PayoutResponse,
    ReconciliationFlagResponse,
    ReconciliationResolve,
    TierTableUpdate,
)
from services import AttributionService, MonthCloseService, PayoutService, ReversalService
from services.errors import AffiliateError, AffiliateNotFound
from services.tiers import normalize_tiers, validate_month_key
from auth.decorators import require_admin

router = APIRouter(prefix="/admin/affiliates", tags=["Admin - Affiliates"])

CSV_COLUMNS = [
    "id", "affiliate_code", "order_id", "order_number", "entry_type", "status", "month_key",
    "amount", "commission_percent", "commission_amount", "reason", "created_at",
]


def _payout_row(payout: AffiliatePayout) -> PayoutAdminRow:
    data = PayoutResponse.model_validate(payout).model_dump()
    return PayoutAdminRow(
        **data,
        affiliate_code=payout.affiliate.code if payout.affiliate else None,
        user_name=payout.user.name if payout.user else None,
        user_email=payout.user.email if payout.user else None,
    )


def _attribution_query(
    db: Session,
    affiliate_id: Optional[str] = None,
    month: Optional[str] = None,
    status_filter: Optional[AttributionStatusDB] = None,
    entry_type: Optional[AttributionEntryTypeDB] = None,
):
    query = db.query(AffiliateAttribution)
    if affiliate_id:
        query = query.filter(AffiliateAttribution.affiliate_id == affiliate_id)
    if month:
        query = query.filter(AffiliateAttribution.month_key == validate_month_key(month))
    if status_filter:
        query = query.filter(AffiliateAttribution.status == status_filter)
    if entry_type:
        query = query.filter(AffiliateAttribution.entry_type == entry_type)
    return query.order_by(desc(AffiliateAttribution.created_at))


# ============================================================================
# AFFILIATES
# ============================================================================

@router.get("")
async def list_affiliates(
    q: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin())
):
    """Affiliates with their owner, searchable by code, name or email."""

    query = db.query(Affiliate).join(User, Affiliate.user_id == User.id).options(
        joinedload(Affiliate.user)
    )
    if q:
        pattern = f"%{q.strip()}%"
        query = query.filter(or_(
            Affiliate.code.ilike(pattern),
            User.name.ilike(pattern),
            User.email.ilike(pattern),
        ))

    total = query.count()
    affiliates = query.order_by(
        desc(Affiliate.month_sales), desc(Affiliate.created_at)
    ).offset((page - 1) * limit).limit(limit).all()

    result = []
    for a in affiliates:
        row = AffiliateResponse.model_validate(a).model_dump()
        row["user"] = {
            "id": a.user.id,
            "name": a.user.name,
            "email": a.user.email,
        } if a.user else None
        result.append(row)

    return {
        "affiliates": result,
        "total": total,
        "page": page,
        "pages": (total + limit - 1) // limit
    }


# ============================================================================
# ATTRIBUTION LEDGER
# ============================================================================

@router.get("/attributions", response_model=List[AttributionResponse])
async def list_attributions(
    affiliate_id: Optional[str] = None,
    month: Optional[str] = None,
    status_filter: Optional[AttributionStatusDB] = Query(None, alias="status"),
    entry_type: Optional[AttributionEntryTypeDB] = None,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin())
):
    try:
        query = _attribution_query(db, affiliate_id, month, status_filter, entry_type)
    except AffiliateError as e:
        raise e.to_http()
    return query.limit(limit).all()


@router.get("/attributions/export")
async def export_attributions(
    affiliate_id: Optional[str] = None,
    month: Optional[str] = None,
    status_filter: Optional[AttributionStatusDB] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin())
):
    """Download the filtered ledger as CSV."""
    try:
        query = _attribution_query(db, affiliate_id, month, status_filter)
    except AffiliateError as e:
        raise e.to_http()
    rows = query.options(joinedload(AffiliateAttribution.affiliate)).all()

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_COLUMNS)
    for r in rows:
        writer.writerow([
            r.id,
            r.affiliate.code if r.affiliate else "",
            r.order_id or "",
            r.order_number or "",
            r.entry_type.value,
            r.status.value,
            r.month_key,
            r.amount,
            r.commission_percent,
            r.commission_amount,
            r.reason or "",
            r.created_at.isoformat() if r.created_at else "",
        ])

    filename = f"affiliate-attributions-{month or 'all'}.csv"
    return StreamingResponse(
        iter([buffer.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )


# ============================================================================
# PAYOUTS
# ============================================================================

@router.get("/payouts", response_model=List[PayoutAdminRow])
async def list_payouts(
    status_filter: Optional[PayoutStatusDB] = Query(None, alias="status"),
    month: Optional[str] = None,
    affiliate_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin())
):
    """Payout queue with the affiliate code and owner joined in."""
    payouts = PayoutService(db).list_payouts(
        status=status_filter.value if status_filter else None,
        month_key=month,
        affiliate_id=affiliate_id,
        limit=limit,
    )
    return [_payout_row(p) for p in payouts]


@router.post("/payouts/{payout_id}/processing", response_model=PayoutResponse)
async def mark_payout_processing(
    payout_id: str,
    body: Optional[PayoutProcessing] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin())
):
    try:
        return PayoutService(db).mark_processing(payout_id, note=body.note if body else None)
    except AffiliateError as e:
        raise e.to_http()


@router.post("/payouts/{payout_id}/paid", response_model=PayoutResponse)
async def mark_payout_paid(
    payout_id: str,
    body: PayoutApprove,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin())
):
    """Record the bank / UPI transfer for a payout."""
    try:
        return PayoutService(db).mark_paid(payout_id, body.txn_id, method=body.method, note=body.note)
    except AffiliateError as e:
        raise e.to_http()


@router.post("/payouts/{payout_id}/reject", response_model=PayoutResponse)
async def reject_payout(
    payout_id: str,
    body: PayoutReject,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin())
):
    try:
        return PayoutService(db).reject(payout_id, reason=body.reason)
    except AffiliateError as e:
        raise e.to_http()


# ============================================================================
# RECONCILIATION QUEUE
# ============================================================================

@router.get("/reconciliation", response_model=List[ReconciliationFlagResponse])
async def list_reconciliation_flags(
    resolved: Optional[bool] = False,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin())
):
    return ReversalService(db).list_flags(resolved=resolved, limit=limit)


@router.post("/reconciliation/{flag_id}/resolve", response_model=ReconciliationFlagResponse)
async def resolve_reconciliation_flag(
    flag_id: str,
    body: ReconciliationResolve,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin())
):
    try:
        return ReversalService(db).resolve_flag(flag_id, resolved_by=current_user.id, note=body.note)
    except AffiliateError as e:
        raise e.to_http()


# ============================================================================
# MONTH CLOSE
# ============================================================================

@router.post("/month-close", response_model=MonthCloseSummary)
async def run_month_close(
    body: MonthCloseRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin())
):
    """Close a finished month by hand. Safe to repeat."""
    try:
        return MonthCloseService(db).close_month(body.month_key)
    except AffiliateError as e:
        raise e.to_http()


# ============================================================================
# SINGLE AFFILIATE
# ============================================================================

@router.get("/{affiliate_id}")
async def get_affiliate(
    affiliate_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin())
):
    affiliate = db.query(Affiliate).options(joinedload(Affiliate.user)).filter(
        Affiliate.id == affiliate_id
    ).first()
    if not affiliate:
        raise AffiliateNotFound(f"Affiliate {affiliate_id} not found").to_http()

    payouts = db.query(AffiliatePayout).filter(
        AffiliatePayout.affiliate_id == affiliate.id
    ).order_by(desc(AffiliatePayout.month_key)).all()

    return {
        "affiliate": AffiliateResponse.model_validate(affiliate).model_dump(),
        "user": {
            "id": affiliate.user.id,
            "name": affiliate.user.name,
            "email": affiliate.user.email,
        } if affiliate.user else None,
        "payouts": [PayoutResponse.model_validate(p).model_dump() for p in payouts],
    }


@router.put("/{affiliate_id}/rules", response_model=AffiliateResponse)
async def update_tier_table(
    affiliate_id: str,
    body: TierTableUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin())
):
    """Replace the affiliate's commission tiers. Applies to orders booked from now on."""
    affiliate = db.query(Affiliate).filter(Affiliate.id == affiliate_id).first()
    if not affiliate:
        raise AffiliateNotFound(f"Affiliate {affiliate_id} not found").to_http()

    try:
        affiliate.rules = normalize_tiers(body.tiers)
    except AffiliateError as e:
        raise e.to_http()

    db.commit()
    db.refresh(affiliate)
    return affiliate


@router.post("/{affiliate_id}/adjustments", response_model=AttributionResponse)
async def create_adjustment(
    affiliate_id: str,
    body: AdjustmentCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin())
):
    """Book a manual +/- commission correction."""
    try:
        return AttributionService(db).record_adjustment(
            affiliate_id, body.amount, note=body.note, month_key=body.month_key
        )
    except AffiliateError as e:
        raise e.to_http()
