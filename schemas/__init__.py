# Schemas module for the Affiliate Ledger
# Organizes all Pydantic schemas in a modular structure

from schemas.affiliate import (
    # Enums
    AttributionStatus,
    AttributionEntryType,
    PayoutStatus,
    PayoutSource,

    # Order pipeline events
    OrderFinalizedEvent,
    OrderCancelledEvent,
    EventAck,

    # Affiliate schemas
    CommissionTier,
    TierTableUpdate,
    VisitRequest,
    VisitResponse,
    AffiliateSummary,
    AffiliateResponse,
    AttributionResponse,

    # Payout schemas
    PayoutRequest,
    PayoutResponse,
    PayoutMeta,
    PayoutRequestResponse,
    PayoutAdminRow,
    PayoutApprove,
    PayoutReject,
    PayoutProcessing,

    # Back office
    AdjustmentCreate,
    ReconciliationFlagResponse,
    ReconciliationResolve,
    MonthCloseRequest,
    MonthCloseSummary,
)

__all__ = [
    'AttributionStatus',
    'AttributionEntryType',
    'PayoutStatus',
    'PayoutSource',
    'OrderFinalizedEvent',
    'OrderCancelledEvent',
    'EventAck',
    'CommissionTier',
    'TierTableUpdate',
    'VisitRequest',
    'VisitResponse',
    'AffiliateSummary',
    'AffiliateResponse',
    'AttributionResponse',
    'PayoutRequest',
    'PayoutResponse',
    'PayoutMeta',
    'PayoutRequestResponse',
    'PayoutAdminRow',
    'PayoutApprove',
    'PayoutReject',
    'PayoutProcessing',
    'AdjustmentCreate',
    'ReconciliationFlagResponse',
    'ReconciliationResolve',
    'MonthCloseRequest',
    'MonthCloseSummary',
]
