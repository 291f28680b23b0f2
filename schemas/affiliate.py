# Pydantic Schemas for the Affiliate Ledger API

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
from enum import Enum


# ============================================================================
# ENUMS
# ============================================================================

class AttributionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    LOCKED = "locked"
    REVERSED = "reversed"


class AttributionEntryType(str, Enum):
    ORIGINAL = "original"
    REVERSAL = "reversal"
    ADJUSTMENT = "adjustment"


class PayoutStatus(str, Enum):
    REQUESTED = "requested"
    PROCESSING = "processing"
    PAID = "paid"
    REJECTED = "rejected"


class PayoutSource(str, Enum):
    USER = "user"
    MONTH_CLOSE = "month_close"


# ============================================================================
# INBOUND EVENTS (order pipeline)
# ============================================================================

class OrderFinalizedEvent(BaseModel):
    order_id: str
    order_number: Optional[str] = None
    eligible_subtotal: Decimal = Field(..., description="Order value net of shipping, tax and fees")
    referral_code: Optional[str] = None
    click_id: Optional[str] = None
    durable: bool = Field(True, description="Paid/confirmed; False for awaiting-payment orders")


class OrderCancelledEvent(BaseModel):
    order_id: str
    reason: str = "order_cancelled"
    partial_amount: Optional[Decimal] = Field(None, description="Portion of the eligible subtotal refunded; omit for full reversal")

    @validator('partial_amount')
    def positive_partial(cls, v):
        if v is not None and v <= 0:
            raise ValueError('partial_amount must be positive')
        return v


class EventAck(BaseModel):
    accepted: bool = True
    applied: bool
    attribution_id: Optional[str] = None


# ============================================================================
# TIERS
# ============================================================================

class CommissionTier(BaseModel):
    min_monthly_sales: Decimal = Field(..., ge=0)
    percent: Decimal = Field(..., ge=0, le=100)


class TierTableUpdate(BaseModel):
    tiers: List[Dict[str, Any]]

    @validator('tiers')
    def not_empty(cls, v):
        if not v:
            raise ValueError('At least one tier is required')
        return v


# ============================================================================
# AFFILIATE
# ============================================================================

class VisitRequest(BaseModel):
    code: str


class VisitResponse(BaseModel):
    success: bool = True
    code: str
    click_id: str


class AffiliateSummary(BaseModel):
    active: bool
    code: Optional[str] = None
    month_key: Optional[str] = None
    month_orders: int = 0
    month_sales: Decimal = Decimal("0")
    month_commission_accrued: Decimal = Decimal("0")
    lifetime_sales: Decimal = Decimal("0")
    lifetime_commission: Decimal = Decimal("0")
    current_percent: Decimal = Decimal("0")
    rules: List[CommissionTier] = []
    payouts: List["PayoutResponse"] = []


class AffiliateResponse(BaseModel):
    id: str
    user_id: str
    code: str
    active: bool
    rules: List[CommissionTier]
    month_key: Optional[str]
    month_sales: Decimal
    month_orders: int
    month_commission_accrued: Decimal
    lifetime_sales: Decimal
    lifetime_commission: Decimal
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class AttributionResponse(BaseModel):
    id: str
    affiliate_id: str
    order_id: Optional[str]
    order_number: Optional[str]
    click_id: Optional[str]
    entry_type: AttributionEntryType
    reversal_of_id: Optional[str]
    amount: Decimal
    commission_percent: Decimal
    commission_amount: Decimal
    status: AttributionStatus
    month_key: str
    reason: Optional[str]
    note: Optional[str]
    accrued_at: Optional[datetime]
    locked_at: Optional[datetime]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


# ============================================================================
# PAYOUTS
# ============================================================================

class PayoutRequest(BaseModel):
    month_key: Optional[str] = Field(None, description="YYYY-MM; defaults per payout month policy")
    account_holder: Optional[str] = None
    bank_account: Optional[str] = None
    ifsc: Optional[str] = None
    bank_name: Optional[str] = None
    city: Optional[str] = None
    upi_id: Optional[str] = None
    aadhaar: Optional[str] = Field(None, description="12-digit Aadhaar number; only the masked form is stored")
    pan: Optional[str] = None


class PayoutResponse(BaseModel):
    id: str
    affiliate_id: str
    user_id: str
    month_key: str
    amount: Decimal
    status: PayoutStatus
    source: PayoutSource
    account_holder: Optional[str]
    bank_account: Optional[str]
    ifsc: Optional[str]
    bank_name: Optional[str]
    city: Optional[str]
    upi_id: Optional[str]
    aadhaar_masked: Optional[str]
    pan: Optional[str]
    metadata_json: Optional[Dict[str, Any]]
    txn_id: Optional[str]
    method: Optional[str]
    notes: Optional[str]
    rejection_reason: Optional[str]
    paid_at: Optional[datetime]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class PayoutMeta(BaseModel):
    month_key: str
    accrued: Decimal
    prior_payouts: Decimal
    eligible: Decimal
    kyc_mismatch: bool
    ifsc_format_ok: bool
    already_requested: bool


class PayoutRequestResponse(BaseModel):
    success: bool = True
    payout: PayoutResponse
    meta: PayoutMeta


class PayoutAdminRow(PayoutResponse):
    affiliate_code: Optional[str] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None


class PayoutApprove(BaseModel):
    txn_id: str = Field(..., min_length=1)
    method: Optional[str] = None
    note: Optional[str] = None


class PayoutReject(BaseModel):
    reason: Optional[str] = None


class PayoutProcessing(BaseModel):
    note: Optional[str] = None


# ============================================================================
# BACK OFFICE
# ============================================================================

class AdjustmentCreate(BaseModel):
    amount: Decimal
    note: str = "manual_adjustment"
    month_key: Optional[str] = None

    @validator('amount')
    def non_zero(cls, v):
        if v == 0:
            raise ValueError('Adjustment amount must be non-zero')
        return v


class ReconciliationFlagResponse(BaseModel):
    id: str
    affiliate_id: str
    payout_id: Optional[str]
    attribution_id: Optional[str]
    order_id: Optional[str]
    month_key: str
    commission_delta: Decimal
    reason: Optional[str]
    resolved: bool
    resolution_note: Optional[str]
    resolved_by: Optional[str]
    resolved_at: Optional[datetime]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class ReconciliationResolve(BaseModel):
    note: Optional[str] = None


class MonthCloseRequest(BaseModel):
    month_key: Optional[str] = None


class MonthCloseSummary(BaseModel):
    month_key: str
    affiliates: int
    rows_locked: int
    payouts_created: int
    failures: List[Dict[str, Any]] = []


AffiliateSummary.model_rebuild()
