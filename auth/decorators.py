# Authorization dependencies for the Affiliate Ledger

import hmac
from typing import Optional
from fastapi import HTTPException, status, Depends, Header

from config.app_config import INTERNAL_EVENT_TOKEN
from database.models import User
from auth.dependencies import get_current_user


class AuthError(HTTPException):
    """Custom exception for authentication/authorization errors."""

    def __init__(self, detail: str, status_code: int = status.HTTP_403_FORBIDDEN):
        super().__init__(status_code=status_code, detail=detail)


def require_admin():
    """
    Dependency that requires the user to be an admin.

    Usage:
        @router.get("/admin/payouts")
        async def list_payouts(user: User = Depends(require_admin())):
            ...
    """
    async def dependency(current_user: User = Depends(get_current_user)) -> User:
        if not current_user.is_admin:
            raise AuthError(
                detail="Admin access required",
                status_code=status.HTTP_403_FORBIDDEN
            )
        return current_user

    return dependency


def require_internal_token():
    """
    Dependency for service-to-service calls from the order pipeline.
    Callers send the shared secret in the X-Internal-Token header.
    """
    async def dependency(x_internal_token: Optional[str] = Header(None)) -> None:
        if not x_internal_token or not hmac.compare_digest(x_internal_token, INTERNAL_EVENT_TOKEN):
            raise AuthError(
                detail="Invalid internal token",
                status_code=status.HTTP_401_UNAUTHORIZED
            )

    return dependency
