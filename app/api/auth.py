"""
Bearer token authentication for the management and query API.
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config.settings import get_settings

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


async def require_api_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[str]:
    """Verify the bearer token against the configured API token."""
    settings = get_settings()
    if not settings.require_api_token:
        return None

    if credentials is None or not settings.api_token or not hmac.compare_digest(
        credentials.credentials, settings.api_token
    ):
        logger.warning("Rejected request with missing or invalid API token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials
