# Affiliate Commission Ledger Database Models
# Per-affiliate running totals, the append-only attribution ledger, payouts and the reconciliation queue

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, JSON, Enum, Boolean, Numeric, Index, UniqueConstraint, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from database.models import Base, generate_uuid


# ============================================================================
# ENUMS
# ============================================================================

class AttributionStatusDB(str, enum.Enum):
    PENDING = "pending"           # Recorded, order not yet durable or month still open
    APPROVED = "approved"         # Order durable, accrued to the affiliate account
    LOCKED = "locked"             # Finalized by month close
    REVERSED = "reversed"         # Cancelled in place, or a compensating row


class AttributionEntryTypeDB(str, enum.Enum):
    ORIGINAL = "original"         # First row for an order
    REVERSAL = "reversal"         # Compensating row (negative amounts)
    ADJUSTMENT = "adjustment"     # Manual operator adjustment


class PayoutStatusDB(str, enum.Enum):
    REQUESTED = "requested"
    PROCESSING = "processing"
    PAID = "paid"
    REJECTED = "rejected"


class PayoutSourceDB(str, enum.Enum):
    USER = "user"                 # Affiliate submitted the payout form
    MONTH_CLOSE = "month_close"   # Staged by the month-close job


def _enum(enum_cls, name):
    return Enum(enum_cls, values_callable=lambda x: [e.value for e in x], name=name)


# ============================================================================
# AFFILIATE ACCOUNT
# ============================================================================

class Affiliate(Base):
    """One account per referring user, holding the open month and lifetime counters."""
    __tablename__ = "affiliates"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False, index=True)

    # Referral code used in ?aff=CODE links
    code = Column(String(50), unique=True, nullable=False, index=True)
    active = Column(Boolean, default=True, nullable=False)

    # Tier table: [{"min_monthly_sales": 0, "percent": 1.0}, ...] sorted ascending
    rules = Column(JSON, nullable=False, default=list)

    # Open period counters (reset lazily when the wall-clock month changes)
    month_key = Column(String(7), index=True)  # YYYY-MM
    month_sales = Column(Numeric(12, 2), nullable=False, default=0)
    month_orders = Column(Integer, nullable=False, default=0)
    month_commission_accrued = Column(Numeric(12, 2), nullable=False, default=0)

    # Lifetime totals
    lifetime_sales = Column(Numeric(14, 2), nullable=False, default=0)
    lifetime_commission = Column(Numeric(14, 2), nullable=False, default=0)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_affiliates_active_code", "active", "code"),
    )

    # Relationships
    user = relationship("User", back_populates="affiliate")
    attributions = relationship("AffiliateAttribution", back_populates="affiliate", cascade="all, delete-orphan")
    payouts = relationship("AffiliatePayout", back_populates="affiliate", cascade="all, delete-orphan")


# ============================================================================
# ATTRIBUTION LEDGER
# ============================================================================

class AffiliateAttribution(Base):
    """
    Append-only ledger row linking an order (or a reversal of it) to its commission impact.
    Only the status column is ever updated in place.
    """
    __tablename__ = "affiliate_attributions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    affiliate_id = Column(String(36), ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False, index=True)

    # Order pipeline references (orders live outside this service)
    order_id = Column(String(64), index=True)
    order_number = Column(String(64), index=True)
    click_id = Column(String(64), index=True)

    entry_type = Column(_enum(AttributionEntryTypeDB, "attributionentrytypedb"), nullable=False, default=AttributionEntryTypeDB.ORIGINAL)
    reversal_of_id = Column(String(36), ForeignKey("affiliate_attributions.id", ondelete="SET NULL"), nullable=True)

    # Amounts (negative for reversals)
    amount = Column(Numeric(12, 2), nullable=False)             # Eligible subtotal attributed
    commission_percent = Column(Numeric(5, 2), nullable=False)
    commission_amount = Column(Numeric(12, 2), nullable=False)

    status = Column(_enum(AttributionStatusDB, "attributionstatusdb"), nullable=False, default=AttributionStatusDB.PENDING, index=True)
    month_key = Column(String(7), nullable=False, index=True)
    reason = Column(Text)
    note = Column(Text)

    accrued_at = Column(DateTime)    # NULL while the order is not durable
    locked_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        # Exactly one original row per order
        Index(
            "uq_affiliate_attributions_original_order",
            "order_id",
            unique=True,
            postgresql_where=text("entry_type = 'original'"),
            sqlite_where=text("entry_type = 'original'"),
        ),
        Index("ix_affiliate_attributions_affiliate_month_status", "affiliate_id", "month_key", "status"),
    )

    # Relationships
    affiliate = relationship("Affiliate", back_populates="attributions")
    reversal_of = relationship("AffiliateAttribution", remote_side=[id])


# ============================================================================
# PAYOUTS
# ============================================================================

class AffiliatePayout(Base):
    """At most one payout per affiliate per month."""
    __tablename__ = "affiliate_payouts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    affiliate_id = Column(String(36), ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    month_key = Column(String(7), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(_enum(PayoutStatusDB, "payoutstatusdb"), nullable=False, default=PayoutStatusDB.REQUESTED, index=True)
    source = Column(_enum(PayoutSourceDB, "payoutsourcedb"), nullable=False, default=PayoutSourceDB.USER)

    # KYC snapshot taken at request time
    account_holder = Column(String(255))
    bank_account = Column(String(64))
    ifsc = Column(String(11))
    bank_name = Column(String(255))
    city = Column(String(120))
    upi_id = Column(String(255))
    aadhaar_masked = Column(String(12))
    pan = Column(String(10))

    # accrued, prior_payouts, eligible, kyc_mismatch ...
    metadata_json = Column(JSON)

    # Back-office
    txn_id = Column(String(100))
    method = Column(String(50))
    notes = Column(Text)
    rejection_reason = Column(Text)
    paid_at = Column(DateTime)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("affiliate_id", "month_key", name="uq_affiliate_payouts_affiliate_month"),
    )

    # Relationships
    affiliate = relationship("Affiliate", back_populates="payouts")
    user = relationship("User")


# ============================================================================
# RECONCILIATION QUEUE
# ============================================================================

class AffiliateReconciliationFlag(Base):
    """Reversal that landed on a month with a payout; needs manual back-office handling."""
    __tablename__ = "affiliate_reconciliation_flags"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    affiliate_id = Column(String(36), ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False, index=True)
    payout_id = Column(String(36), ForeignKey("affiliate_payouts.id", ondelete="SET NULL"), nullable=True)
    attribution_id = Column(String(36), ForeignKey("affiliate_attributions.id", ondelete="SET NULL"), nullable=True)
    order_id = Column(String(64), index=True)
    month_key = Column(String(7), nullable=False, index=True)

    commission_delta = Column(Numeric(12, 2), nullable=False)
    reason = Column(Text)

    resolved = Column(Boolean, default=False, nullable=False, index=True)
    resolution_note = Column(Text)
    resolved_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    resolved_at = Column(DateTime)

    created_at = Column(DateTime, server_default=func.now())

    # Relationships
    affiliate = relationship("Affiliate")
    payout = relationship("AffiliatePayout")
    attribution = relationship("AffiliateAttribution")
