"""
JWT token creation and validation.
Uses python-jose for JWT handling.

Two token types share the signing key: "access" bearer tokens identifying
the calling organization, and short-lived "oauth_state" tokens that bind an
OAuth authorization round-trip to an organization.
"""

from datetime import timedelta
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from qbosync.config import get_settings
from qbosync.utils.timeutil import utcnow

ACCESS_TOKEN_TYPE = "access"


def encode_token(
    data: Dict[str, Any],
    token_type: str,
    expires_delta: timedelta,
) -> str:
    """Sign a payload with an expiry and a token type."""
    settings = get_settings()
    now = utcnow()
    to_encode = data.copy()
    to_encode.update(
        {
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
        }
    )

    return jwt.encode(
        to_encode,
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )


def decode_token(token: str, token_type: str) -> Dict[str, Any]:
    """
    Decode a token and check its type.

    Raises:
        JWTError: If the token is invalid, expired or of another type
    """
    settings = get_settings()

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        raise JWTError(f"Token validation failed: {str(e)}")

    if payload.get("type") != token_type:
        raise JWTError("Invalid token type")

    return payload


def create_access_token(
    data: Dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Payload data to encode; "sub" carries the organization id
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token
    """
    settings = get_settings()
    return encode_token(
        data,
        ACCESS_TOKEN_TYPE,
        expires_delta or timedelta(minutes=settings.jwt_expiration_minutes),
    )


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT access token.

    Raises:
        JWTError: If token is invalid or expired
    """
    return decode_token(token, ACCESS_TOKEN_TYPE)
