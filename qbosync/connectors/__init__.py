"""
QuickBooks Online connector.

This package is the HTTP boundary to Intuit:
- OAuth2 authorization, code exchange, token refresh and revocation
- Entity create/update/get and queries against one company
- Webhook signature verification and event extraction

Main Components:
    QBOClient: OAuth2 endpoints and per-company API clients
    QBOCompanyClient: Entity operations for one realm and access token
    WebhookHandler: Verifies and parses Intuit webhook notifications

Usage:
    >>> from qbosync.connectors import QBOClient
    >>>
    >>> async with QBOClient(
    ...     client_id="your_client_id",
    ...     client_secret="your_secret",
    ...     redirect_uri="http://localhost:8000/api/v1/oauth/callback"
    ... ) as client:
    ...     tokens = await client.exchange_code(auth_code="...")
    ...     company = client.company(realm_id="123", access_token=tokens.access_token)
    ...     invoice = await company.get_entity("Invoice", "145")
"""

from qbosync.connectors.qbo_client import (
    AccessTokenRejected,
    QBOAuthError,
    QBOClient,
    QBOCompanyClient,
)
from qbosync.connectors.webhook_handler import (
    WebhookEvent,
    WebhookHandler,
    WebhookVerificationError,
    compute_signature,
    extract_events,
    verify_signature,
)

__all__ = [
    # Core client
    "QBOClient",
    "QBOCompanyClient",
    "QBOAuthError",
    "AccessTokenRejected",
    # Webhook handling
    "WebhookHandler",
    "WebhookEvent",
    "WebhookVerificationError",
    "compute_signature",
    "extract_events",
    "verify_signature",
]
