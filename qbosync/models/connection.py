"""
Connection models for QuickBooks Online OAuth connections.

One connection per organization holds the OAuth credentials, the QuickBooks
company (realm) id and the organization's sync configuration.
"""

from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from qbosync.utils.timeutil import utcnow

from .enums import ConnectionStatus, CustomerSyncMode

# Intuit defaults when the token response omits lifetimes
DEFAULT_ACCESS_TOKEN_LIFETIME = 3600
DEFAULT_REFRESH_TOKEN_LIFETIME = 8640000  # 100 days


class ConnectionSettings(BaseModel):
    """
    Per-organization sync configuration.

    Attributes:
        auto_sync: Enable/disable flag for automatic synchronization
        account_mapping: Local line category -> QuickBooks item id
        default_item_id: QuickBooks item used for unmapped lines
        default_income_account_id: Income account used when a default item must be created
        customer_sync_mode: Whether to create customers or only match existing ones
    """

    auto_sync: bool = Field(default=True, description="Synchronize on local mutation")
    account_mapping: dict[str, str] = Field(
        default_factory=dict, description="Local category -> QuickBooks item id"
    )
    default_item_id: Optional[str] = Field(default=None, description="Fallback item id")
    default_income_account_id: Optional[str] = Field(
        default=None, description="Income account for a created default item"
    )
    customer_sync_mode: CustomerSyncMode = Field(default=CustomerSyncMode.CREATE_NEW)


class OAuthTokens(BaseModel):
    """Token endpoint response (authorization_code or refresh_token grant)."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = DEFAULT_ACCESS_TOKEN_LIFETIME
    x_refresh_token_expires_in: Optional[int] = None
    token_type: str = "bearer"

    def access_expiry(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.expires_in)

    def refresh_expiry(self, now: datetime) -> datetime:
        return now + timedelta(
            seconds=self.x_refresh_token_expires_in or DEFAULT_REFRESH_TOKEN_LIFETIME
        )


class Connection(BaseModel):
    """
    QuickBooks connection for one organization.

    Tokens on this model are plaintext; the storage layer encrypts them at rest.
    """

    connection_id: str = Field(default_factory=lambda: str(uuid4()))
    org_id: str
    realm_id: str
    company_name: Optional[str] = None
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: Optional[datetime] = None
    status: ConnectionStatus = ConnectionStatus.CONNECTED
    last_refreshed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    settings: ConnectionSettings = Field(default_factory=ConnectionSettings)
    connected_at: datetime = Field(default_factory=utcnow)
    disconnected_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    def expires_within(self, seconds: int, now: Optional[datetime] = None) -> bool:
        """True when the access token expires within the given window."""
        now = now or utcnow()
        return self.access_token_expires_at - now <= timedelta(seconds=seconds)

    def refresh_token_expired(self, now: Optional[datetime] = None) -> bool:
        if self.refresh_token_expires_at is None:
            return False
        return (now or utcnow()) >= self.refresh_token_expires_at

    @property
    def is_active(self) -> bool:
        return self.status != ConnectionStatus.DISCONNECTED


class AccessGrant(BaseModel):
    """A valid access token and the company it is scoped to."""

    org_id: str
    realm_id: str
    access_token: str
    expires_at: datetime
