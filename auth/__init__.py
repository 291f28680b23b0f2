# Auth module for the Affiliate Ledger
# Provides JWT authentication and access-control dependencies

from auth.dependencies import (
    create_access_token,
    decode_access_token,
    get_current_user,
)

from auth.decorators import (
    AuthError,
    require_admin,
    require_internal_token,
)

__all__ = [
    # Tokens
    "create_access_token",
    "decode_access_token",
    "get_current_user",

    # Decorators
    "AuthError",
    "require_admin",
    "require_internal_token",
]
