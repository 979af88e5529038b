"""
JWT token management for account authentication.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from pydantic import BaseModel

from ..config import get_settings


class TokenData(BaseModel):
    """Token data model for JWT payload."""
    account: Optional[str] = None


def encode_token(claims: Dict[str, Any], expires_delta: timedelta) -> str:
    """
    Sign a set of claims with the service secret.

    ``iat`` and ``exp`` are added to the claims.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    to_encode = dict(claims)
    to_encode.update({"iat": now, "exp": now + expires_delta})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Verify signature and expiry of a token and return its claims.

    Raises:
        JWTError: If the token is malformed, tampered with or expired
    """
    settings = get_settings()
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT access token.

    Args:
        data: The data to encode in the token; ``sub`` holds the account
        expires_delta: Optional custom expiration time

    Returns:
        The encoded JWT token
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=get_settings().ACCESS_TOKEN_EXPIRE_MINUTES)
    return encode_token(data, expires_delta)


def verify_token(token: str) -> Optional[TokenData]:
    """
    Verify and decode a JWT access token.

    Args:
        token: The JWT token to verify

    Returns:
        TokenData if token is valid, None otherwise
    """
    try:
        payload = decode_token(token)
    except JWTError:
        return None

    # Check-in tokens are not access tokens
    if payload.get("typ") is not None:
        return None

    account = payload.get("sub")
    if not account:
        return None

    return TokenData(account=account)
