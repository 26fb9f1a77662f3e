"""
Security utilities
Mobile app bearer tokens and helpers for keeping secrets out of logs
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from jose import JWTError
from jose import jwt as jose_jwt

from .config import SECRET_KEY

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
MOBILE_TOKEN_LIFETIME = timedelta(days=30)


# ============================================================================
# MOBILE TOKENS
# ============================================================================


def create_mobile_token(
    user_id: int,
    identity_uid: str,
    email: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create the bearer token the mobile app sends in the Authorization header

    Args:
        user_id: Local user id
        identity_uid: Identity provider subject the token was issued for
        email: User email
        expires_delta: Token lifetime (default 30 days)
    """
    expire = datetime.utcnow() + (expires_delta or MOBILE_TOKEN_LIFETIME)
    to_encode = {
        "sub": identity_uid,
        "userId": str(user_id),
        "email": email,
        "exp": expire,
    }
    return jose_jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_mobile_token(token: str) -> Optional[dict[str, Any]]:
    """
    Verify and decode a mobile bearer token

    Returns:
        Decoded payload if valid, None if invalid or expired
    """
    try:
        return jose_jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.debug(f"Mobile JWT verification failed: {e}")
        return None


def extract_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    if not auth_header:
        return None
    parts = auth_header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]


# ============================================================================
# LOGGING
# ============================================================================


def mask_sensitive_data(data: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask sensitive data for logging/display

    Args:
        data: Sensitive data to mask
        visible_chars: Number of characters to show at the end

    Returns:
        Masked string
    """
    if not data:
        return ""
    if len(data) <= visible_chars:
        return "*" * len(data)

    return "*" * (len(data) - visible_chars) + data[-visible_chars:]
