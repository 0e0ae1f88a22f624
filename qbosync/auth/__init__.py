"""JWT authentication and OAuth state module."""

from qbosync.auth.dependencies import get_current_org_id
from qbosync.auth.jwt import create_access_token, decode_access_token
from qbosync.auth.oauth_state import OAuthStateError, issue_state, validate_state

__all__ = [
    "OAuthStateError",
    "create_access_token",
    "decode_access_token",
    "get_current_org_id",
    "issue_state",
    "validate_state",
]
