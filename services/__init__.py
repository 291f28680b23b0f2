# Services Module for the Affiliate Ledger
# Contains business logic services

from services.attribution_service import AttributionService
from services.month_close import MonthCloseService
from services.payout_service import PayoutService
from services.reversal_service import ReversalService

__all__ = [
    'AttributionService',
    'MonthCloseService',
    'PayoutService',
    'ReversalService',
]
