"""
JWT helpers.

Access tokens are issued by the auth service with the same secret; this
module only needs to verify them. ``create_access_token`` exists for
service-to-service calls and test fixtures.
"""
from datetime import timedelta
from typing import Any, Dict, Optional
import uuid

from jose import JWTError, jwt

from psikotes.core.config import settings
from psikotes.core.datetime_utils import utc_now

ACCESS_TOKEN_TYPE = "access"
DEFAULT_ACCESS_TOKEN_EXPIRY = timedelta(minutes=30)


def create_access_token(
    data: Dict[str, Any], expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Claims to encode (typically ``{"user_id": ...}``)
        expires_delta: Optional custom expiration time delta

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()
    now = utc_now()
    expire = now + (expires_delta or DEFAULT_ACCESS_TOKEN_EXPIRY)
    to_encode.update(
        {"exp": expire, "iat": now, "type": ACCESS_TOKEN_TYPE, "jti": str(uuid.uuid4())}
    )
    return jwt.encode(
        to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM
    )


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and verify a JWT token.

    Returns:
        Decoded payload, or None if the signature or expiry check fails
    """
    try:
        return jwt.decode(
            token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError:
        return None
