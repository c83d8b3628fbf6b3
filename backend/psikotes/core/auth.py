"""
FastAPI authentication dependencies.
"""
import logging
import secrets

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from psikotes.core.config import settings
from psikotes.core.error_responses import (
    AssessmentError,
    ErrorKind,
    ErrorMessages,
    raise_not_configured,
    raise_unauthorized,
)
from psikotes.core.security import ACCESS_TOKEN_TYPE, decode_token
from psikotes.models import User, get_db

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme
security = HTTPBearer()


def _user_id_from_token(token: str) -> int:
    """
    Decode an access token and return its user_id claim.

    Raises:
        HTTPException: 401 if the token is invalid, of the wrong type,
            or carries no user_id
    """
    payload = decode_token(token)
    if payload is None:
        raise_unauthorized(ErrorMessages.INVALID_TOKEN)

    if payload.get("type") != ACCESS_TOKEN_TYPE:
        raise_unauthorized(ErrorMessages.INVALID_TOKEN)

    user_id = payload.get("user_id")
    if user_id is None:
        raise_unauthorized(ErrorMessages.INVALID_TOKEN_PAYLOAD)

    return int(user_id)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Get the current authenticated user from JWT token.

    Raises:
        HTTPException: 401 if token is invalid or the user is unknown or disabled
    """
    user_id = _user_id_from_token(credentials.credentials)
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        raise_unauthorized(ErrorMessages.USER_NOT_FOUND_AUTH)
    return user


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Restrict an endpoint to users with the admin role."""
    if not current_user.is_admin:
        raise AssessmentError(ErrorKind.FORBIDDEN, ErrorMessages.ADMIN_REQUIRED)
    return current_user


async def verify_admin_token(x_admin_token: str = Header(...)) -> bool:
    """
    Verify the X-Admin-Token header used by cron dispatch and operators.

    Uses constant-time comparison to prevent timing attacks.

    Raises:
        HTTPException: 500 if no token is configured, 401 if it doesn't match
    """
    if not settings.ADMIN_TOKEN:
        raise_not_configured(ErrorMessages.ADMIN_TOKEN_NOT_CONFIGURED)

    if not secrets.compare_digest(x_admin_token, settings.ADMIN_TOKEN):
        logger.warning("Rejected admin request with invalid token")
        raise_unauthorized(
            ErrorMessages.ADMIN_TOKEN_INVALID, include_www_authenticate=False
        )

    return True
