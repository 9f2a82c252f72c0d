"""Authentication for the admin API."""

import hmac
import logging

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from remitcore.config import Settings, get_settings

logger = logging.getLogger(__name__)

# HTTP Bearer token security scheme
security = HTTPBearer()


async def verify_admin_token(
    credentials: HTTPAuthorizationCredentials = Security(security),
    settings: Settings = Depends(get_settings),
) -> str:
    """
    Verify admin API token for protected endpoints.

    Args:
        credentials: HTTP Bearer token credentials

    Returns:
        The validated token

    Raises:
        HTTPException: If token is invalid or missing
    """
    token = credentials.credentials

    if not settings.admin_api_token:
        logger.warning(
            "REMITCORE_ADMIN_API_TOKEN not configured - admin endpoints are UNPROTECTED! "
            "This is ONLY acceptable in development."
        )
        # In development without token, allow access but warn
        if settings.debug:
            return "dev-bypass-token"
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Admin authentication not configured - set REMITCORE_ADMIN_API_TOKEN",
        )

    if not hmac.compare_digest(token, settings.admin_api_token):
        logger.warning("Invalid admin token attempt")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or missing admin token",
        )

    return token
