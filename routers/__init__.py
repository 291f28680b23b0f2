# Affiliate Ledger Routers Module
# Exports the API routers mounted by server.py

from routers.affiliate import router as affiliate_router
from routers.admin_affiliates import router as admin_affiliates_router

__all__ = [
    'affiliate_router',
    'admin_affiliates_router',
]
