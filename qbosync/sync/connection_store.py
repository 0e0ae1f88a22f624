"""
Connection store.

One QuickBooks connection per organization, looked up explicitly by
organization id. There is no process-wide "current connection".
"""

from typing import Any, Optional

from qbosync.connectors.qbo_client import QBOClient
from qbosync.models.connection import Connection, ConnectionSettings, OAuthTokens
from qbosync.models.enums import ConnectionStatus, DomainEventType, JobState
from qbosync.storage.base import DuplicateKeyError, StorageBackend
from qbosync.sync.errors import ConflictError, NotConnectedError
from qbosync.sync.events import EventEmitter
from qbosync.utils.logging import get_logger
from qbosync.utils.timeutil import utcnow

logger = get_logger(__name__)


class ConnectionStore:
    """
    Persistence and lifecycle of organization connections.

    Args:
        storage: Storage backend
        events: Domain event emitter (defaults to one on the same storage)
        qbo_client: Used only for best-effort token revocation on disconnect
    """

    def __init__(
        self,
        storage: StorageBackend,
        events: Optional[EventEmitter] = None,
        qbo_client: Optional[QBOClient] = None,
    ):
        self.storage = storage
        self.events = events or EventEmitter(storage)
        self.qbo_client = qbo_client

    def find_connection(self, org_id: str) -> Optional[Connection]:
        """The organization's connected or errored connection, if any."""
        return self.storage.get_active_connection(org_id)

    def get_connection(self, org_id: str) -> Connection:
        """
        Get the organization's active connection.

        Raises:
            NotConnectedError: If the organization has no active connection
        """
        connection = self.storage.get_active_connection(org_id)
        if connection is None:
            raise NotConnectedError(f"Organization {org_id} is not connected to QuickBooks")
        return connection

    def get_connection_by_realm(self, realm_id: str) -> Optional[Connection]:
        return self.storage.get_connection_by_realm(realm_id)

    def save_initial_connection(
        self,
        org_id: str,
        tokens: OAuthTokens,
        realm_id: str,
        company_name: Optional[str] = None,
    ) -> Connection:
        """
        Persist the connection created by a completed OAuth flow.

        A connection in error status (reauthorization) is superseded.

        Raises:
            ConflictError: If the organization already has a connected connection
            ValueError: If the token response carries no refresh token
        """
        if not tokens.refresh_token:
            raise ValueError("A refresh token is required to create a connection")

        now = utcnow()
        connection = Connection(
            org_id=org_id,
            realm_id=realm_id,
            company_name=company_name,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            access_token_expires_at=tokens.access_expiry(now),
            refresh_token_expires_at=tokens.refresh_expiry(now),
            status=ConnectionStatus.CONNECTED,
            last_refreshed_at=now,
            connected_at=now,
            updated_at=now,
        )

        try:
            self.storage.create_connection(connection)
        except DuplicateKeyError as e:
            logger.warning("connection_conflict", org_id=org_id, realm_id=realm_id)
            raise ConflictError(f"Organization {org_id} already has an active QuickBooks connection") from e

        logger.info(
            "connection_created",
            org_id=org_id,
            realm_id=realm_id,
            connection_id=connection.connection_id,
        )
        self.events.emit_integration(
            org_id,
            DomainEventType.CONNECTION_CREATED,
            connection.connection_id,
            realm_id=realm_id,
            company_name=company_name,
        )
        return connection

    async def disconnect(self, org_id: str) -> Connection:
        """
        Disconnect an organization.

        The local soft-delete and job cancellation happen first and never
        depend on Intuit; token revocation afterwards is best effort.

        Raises:
            NotConnectedError: If the organization has no active connection
        """
        connection = self.get_connection(org_id)
        now = utcnow()

        self.storage.disconnect_connection(connection.connection_id, now)
        cancelled = self.storage.cancel_jobs_for_org(org_id, now, "QuickBooks connection was disconnected")

        logger.info(
            "connection_disconnected",
            org_id=org_id,
            connection_id=connection.connection_id,
            cancelled_jobs=cancelled,
        )
        self.events.emit_integration(
            org_id,
            DomainEventType.CONNECTION_DISCONNECTED,
            connection.connection_id,
            realm_id=connection.realm_id,
            cancelled_jobs=cancelled,
        )

        revoked = False
        if self.qbo_client is not None:
            revoked = await self.qbo_client.revoke_token(connection.refresh_token)
            if not revoked:
                logger.warning(
                    "connection_revoke_failed",
                    org_id=org_id,
                    connection_id=connection.connection_id,
                )

        return connection.model_copy(
            update={
                "status": ConnectionStatus.DISCONNECTED,
                "disconnected_at": now,
                "updated_at": now,
            }
        )

    def update_settings(self, org_id: str, partial: dict[str, Any]) -> ConnectionSettings:
        """
        Merge a partial settings update into the organization's settings.

        Raises:
            NotConnectedError: If the organization has no active connection
            pydantic.ValidationError: If the merged settings are invalid
        """
        connection = self.get_connection(org_id)
        merged = connection.settings.model_dump()
        merged.update(partial)
        settings = ConnectionSettings.model_validate(merged)

        self.storage.update_connection_settings(connection.connection_id, settings)
        logger.info("connection_settings_updated", org_id=org_id, fields=sorted(partial))
        return settings

    def mark_error(self, connection: Connection, reason: str) -> None:
        """Flag a connection as needing reauthorization."""
        self.storage.update_connection_status(connection.connection_id, ConnectionStatus.ERROR, reason)
        logger.warning(
            "connection_marked_error",
            org_id=connection.org_id,
            connection_id=connection.connection_id,
            reason=reason,
        )
        self.events.emit_integration(
            connection.org_id,
            DomainEventType.CONNECTION_ERROR,
            connection.connection_id,
            reason=reason,
        )

    def pending_job_count(self, org_id: str) -> int:
        counts = self.storage.count_jobs_by_state(org_id)
        return sum(counts.get(state.value, 0) for state in (JobState.PENDING, JobState.FAILED))
