"""
OAuth state parameter for the QuickBooks connect flow.

The state is a signed, short-lived JWT carrying the organization id and a
random nonce. It travels both as the `state` query parameter and in a secure
HttpOnly cookie; the callback requires both to match and consumes the nonce
exactly once.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError

from qbosync.auth.jwt import decode_token, encode_token
from qbosync.config import get_settings
from qbosync.storage.base import StorageBackend
from qbosync.utils.logging import get_logger

logger = get_logger(__name__)

OAUTH_STATE_TOKEN_TYPE = "oauth_state"


class OAuthStateError(Exception):
    """The OAuth state is missing, forged, expired or already used."""

    pass


@dataclass(frozen=True)
class OAuthState:
    org_id: str
    nonce: str
    expires_at: datetime


def issue_state(org_id: str, ttl_seconds: Optional[int] = None) -> str:
    """Create a state token bound to the organization and a fresh nonce."""
    ttl = ttl_seconds or get_settings().oauth_state_ttl_seconds
    return encode_token(
        {"sub": org_id, "nonce": secrets.token_urlsafe(24)},
        OAUTH_STATE_TOKEN_TYPE,
        timedelta(seconds=ttl),
    )


def validate_state(
    state: Optional[str],
    cookie_value: Optional[str],
    storage: StorageBackend,
) -> OAuthState:
    """
    Validate the callback state against the cookie and consume its nonce.

    Raises:
        OAuthStateError: If validation fails for any reason
    """
    if not state or not cookie_value:
        logger.warning("oauth_state_rejected", reason="missing_state")
        raise OAuthStateError("Missing OAuth state")

    if not secrets.compare_digest(state, cookie_value):
        logger.warning("oauth_state_rejected", reason="cookie_mismatch")
        raise OAuthStateError("OAuth state does not match the session")

    try:
        payload = decode_token(state, OAUTH_STATE_TOKEN_TYPE)
    except JWTError as e:
        logger.warning("oauth_state_rejected", reason="invalid_token", error=str(e))
        raise OAuthStateError("Invalid or expired OAuth state") from e

    org_id = payload.get("sub")
    nonce = payload.get("nonce")
    if not org_id or not nonce:
        logger.warning("oauth_state_rejected", reason="incomplete_payload")
        raise OAuthStateError("Invalid OAuth state payload")

    expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc).replace(tzinfo=None)
    if not storage.consume_oauth_nonce(nonce, org_id, expires_at):
        logger.warning("oauth_state_rejected", reason="nonce_reused", org_id=org_id)
        raise OAuthStateError("OAuth state was already used")

    return OAuthState(org_id=org_id, nonce=nonce, expires_at=expires_at)
