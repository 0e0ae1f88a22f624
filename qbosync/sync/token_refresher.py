"""
Token refresher.

Guarantees a valid access token before every outbound call, with at most one
refresh in flight per organization:

- In-process: an asyncio.Lock per organization serializes callers. The
  connection is re-read after the lock is acquired, so callers queued behind
  a refresh reuse its result instead of refreshing again.
- Across processes: a storage-level refresh lease (owner + expiry) is taken
  before calling the token endpoint. A caller that cannot take the lease
  polls until the token is fresh or the lease lapses.

Intuit rotates refresh tokens on every refresh, so two concurrent refreshes
would invalidate each other; both layers are required.
"""

import asyncio
import os
import socket
import time
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4

from qbosync.config import Settings, get_settings
from qbosync.connectors.qbo_client import QBOClient
from qbosync.models.connection import AccessGrant, Connection
from qbosync.models.enums import ConnectionStatus, DomainEventType, FailureReason
from qbosync.sync.connection_store import ConnectionStore
from qbosync.sync.errors import NotConnectedError, ReauthorizationRequired, SyncError, TransientNetworkError
from qbosync.utils.logging import get_logger
from qbosync.utils.timeutil import utcnow

logger = get_logger(__name__)


def default_owner() -> str:
    """Lease owner id unique to this process."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class TokenRefresher:
    """
    Single-flight access token refresh per organization.

    Args:
        store: Connection store
        qbo_client: Client for the Intuit token endpoint
        settings: Refresh margin, lease and grace configuration
        owner: Lease owner id (defaults to host:pid:random)
        poll_interval: Seconds between checks while another process refreshes
    """

    def __init__(
        self,
        store: ConnectionStore,
        qbo_client: QBOClient,
        settings: Optional[Settings] = None,
        owner: Optional[str] = None,
        poll_interval: float = 0.25,
    ):
        self.store = store
        self.qbo_client = qbo_client
        self.settings = settings or get_settings()
        self.owner = owner or default_owner()
        self.poll_interval = poll_interval
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def margin_seconds(self) -> int:
        return self.settings.token_refresh_margin_seconds

    def _lock_for(self, org_id: str) -> asyncio.Lock:
        lock = self._locks.get(org_id)
        if lock is None:
            lock = self._locks[org_id] = asyncio.Lock()
        return lock

    @staticmethod
    def _grant(connection: Connection) -> AccessGrant:
        return AccessGrant(
            org_id=connection.org_id,
            realm_id=connection.realm_id,
            access_token=connection.access_token,
            expires_at=connection.access_token_expires_at,
        )

    def _check_usable(self, connection: Connection) -> None:
        if connection.status == ConnectionStatus.ERROR:
            raise ReauthorizationRequired(
                "QuickBooks connection needs to be reauthorized",
                detail=connection.last_error,
            )

    async def ensure_fresh_access_token(
        self,
        org_id: str,
        rejected_token: Optional[str] = None,
    ) -> AccessGrant:
        """
        Return a valid access token, refreshing it when it expires within the margin.

        Args:
            org_id: Organization id
            rejected_token: An access token the API just rejected; forces a
                refresh unless another caller already replaced it

        Raises:
            NotConnectedError: If the organization has no active connection
            ReauthorizationRequired: If the refresh token was revoked or expired
            TransientNetworkError: If the token endpoint is unavailable
        """
        connection = self.store.get_connection(org_id)
        self._check_usable(connection)

        def needs_refresh(conn: Connection) -> bool:
            if rejected_token is not None and conn.access_token == rejected_token:
                return True
            return conn.expires_within(self.margin_seconds)

        if not needs_refresh(connection):
            return self._grant(connection)

        async with self._lock_for(org_id):
            connection = await self._refresh_single_flight(org_id, needs_refresh)
            return self._grant(connection)

    async def _refresh_single_flight(
        self,
        org_id: str,
        needs_refresh: Callable[[Connection], bool],
    ) -> Connection:
        lease_seconds = self.settings.token_refresh_lease_seconds
        deadline = time.monotonic() + lease_seconds + self.settings.token_refresh_grace_seconds

        while True:
            connection = self.store.get_connection(org_id)
            self._check_usable(connection)
            if not needs_refresh(connection):
                logger.debug("token_refresh_reused", org_id=org_id)
                return connection

            now = utcnow()
            if self.store.storage.acquire_refresh_lease(
                connection.connection_id,
                self.owner,
                now,
                now + timedelta(seconds=lease_seconds),
            ):
                return await self._refresh_with_lease(org_id, needs_refresh)

            if time.monotonic() >= deadline:
                logger.warning("token_refresh_wait_timeout", org_id=org_id)
                raise TransientNetworkError("Timed out waiting for a concurrent token refresh")

            logger.debug("token_refresh_waiting_for_lease", org_id=org_id)
            await asyncio.sleep(self.poll_interval)

    async def _refresh_with_lease(
        self,
        org_id: str,
        needs_refresh: Callable[[Connection], bool],
    ) -> Connection:
        storage = self.store.storage

        # Another process may have refreshed between our read and the lease
        connection = self.store.get_connection(org_id)
        if not needs_refresh(connection):
            storage.release_refresh_lease(connection.connection_id, self.owner)
            return connection

        if connection.refresh_token_expired():
            storage.release_refresh_lease(connection.connection_id, self.owner)
            self.store.mark_error(connection, FailureReason.REAUTHORIZATION_REQUIRED.value)
            raise ReauthorizationRequired("QuickBooks refresh token has expired")

        try:
            tokens = await self.qbo_client.refresh_tokens(connection.refresh_token)
        except ReauthorizationRequired:
            storage.release_refresh_lease(connection.connection_id, self.owner)
            self.store.mark_error(connection, FailureReason.REAUTHORIZATION_REQUIRED.value)
            raise
        except SyncError:
            storage.release_refresh_lease(connection.connection_id, self.owner)
            raise

        now = utcnow()
        refresh_token = tokens.refresh_token or connection.refresh_token
        refresh_expires_at: Optional[datetime] = (
            tokens.refresh_expiry(now) if tokens.x_refresh_token_expires_in else None
        )
        storage.update_connection_tokens(
            connection.connection_id,
            access_token=tokens.access_token,
            refresh_token=refresh_token,
            access_token_expires_at=tokens.access_expiry(now),
            refresh_token_expires_at=refresh_expires_at,
            refreshed_at=now,
        )

        # Keep the lease for a short grace period so late pollers re-read
        # the rotated token instead of refreshing with the old one
        storage.acquire_refresh_lease(
            connection.connection_id,
            self.owner,
            now,
            now + timedelta(seconds=self.settings.token_refresh_grace_seconds),
        )

        logger.info(
            "access_token_refreshed",
            org_id=org_id,
            connection_id=connection.connection_id,
            rotated_refresh_token=bool(tokens.refresh_token),
            expires_in=tokens.expires_in,
        )
        self.store.events.emit_integration(
            org_id,
            DomainEventType.TOKEN_REFRESHED,
            connection.connection_id,
            expires_in=tokens.expires_in,
        )
        return self.store.get_connection(org_id)

    async def refresh_due_connections(self, limit: int = 50) -> dict[str, int]:
        """
        Keepalive pass over connected organizations.

        Refreshes connections whose access token is inside the refresh margin
        or whose tokens have not been rotated within the keepalive window, so
        idle organizations keep a live refresh token.

        Returns:
            Counts of refreshed and failed connections
        """
        now = utcnow()
        stale_before = now - timedelta(days=self.settings.token_keepalive_days)
        connections = self.store.storage.list_connections_for_keepalive(
            access_expiring_before=now + timedelta(seconds=self.margin_seconds),
            refreshed_before=stale_before,
            limit=limit,
        )

        def needs_refresh(conn: Connection) -> bool:
            last = conn.last_refreshed_at or conn.connected_at
            return conn.expires_within(self.margin_seconds) or last <= stale_before

        refreshed = failed = 0
        for connection in connections:
            try:
                async with self._lock_for(connection.org_id):
                    await self._refresh_single_flight(connection.org_id, needs_refresh)
                refreshed += 1
            except SyncError as e:
                failed += 1
                logger.warning(
                    "token_keepalive_failed",
                    org_id=connection.org_id,
                    failure_reason=e.reason.value,
                    error=e.message,
                )
            except NotConnectedError:
                logger.info("token_keepalive_skipped", org_id=connection.org_id, reason="disconnected")

        if connections:
            logger.info("token_keepalive_complete", refreshed=refreshed, failed=failed)
        return {"refreshed": refreshed, "failed": failed}
