"""
Abstract storage interface for the accounting sync service.

This module defines the storage abstraction layer so the sync core can run on
DuckDB (local development, single-process deployments) or a server database
without changing application code. All persistence operations are abstract
methods enforcing a consistent contract across implementations.

The storage layer holds:
- Connections: OAuth credentials (encrypted at rest) and per-org sync settings
- Sync jobs: the durable outbox drained by the worker pool
- Webhook receipts: the rolling set of processed webhook identities
- Invoices: the local entity snapshot and its sync-status projection
- Domain events, OAuth state nonces and invoice number reservations

Implementations must enforce the uniqueness invariants at the storage layer,
not in callers: one active connection per organization, one non-terminal job
per (organization, entity type, local id), and one active reservation per
(organization, invoice number).
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from qbosync.models.connection import Connection, ConnectionSettings
from qbosync.models.enums import ConnectionStatus, EntityType, JobState, ReservationStatus, SyncStatus
from qbosync.models.events import DomainEvent
from qbosync.models.invoices import InvoiceSnapshot, SyncProjection
from qbosync.models.jobs import SyncJob
from qbosync.models.reservations import InvoiceNumberReservation


class StorageError(Exception):
    """Base exception for all storage operation failures."""

    pass


class DuplicateKeyError(StorageError):
    """An insert or update would violate a uniqueness invariant."""

    pass


class StorageBackend(ABC):
    """
    Abstract base class for all storage implementations.

    Storage implementations should ensure:
    - Thread safety for concurrent access
    - Atomic multi-statement operations (claim, coalescing upsert, lease CAS)
    - Uniqueness enforced by the database, not by read-then-write in callers
    - Comprehensive error handling with structured logging
    """

    # =========================================================================
    # Connections
    # =========================================================================

    @abstractmethod
    def create_connection(self, connection: Connection) -> Connection:
        """
        Insert a new active connection for an organization.

        An existing connection in `error` status is superseded (marked
        disconnected) in the same transaction.

        Raises:
            DuplicateKeyError: If the organization already has a connected connection
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    def get_active_connection(self, org_id: str) -> Optional[Connection]:
        """Get the organization's connection unless it is disconnected."""
        pass

    @abstractmethod
    def get_connection_by_realm(self, realm_id: str) -> Optional[Connection]:
        """Get the active connection bound to a QuickBooks company id."""
        pass

    @abstractmethod
    def update_connection_tokens(
        self,
        connection_id: str,
        access_token: str,
        refresh_token: str,
        access_token_expires_at: datetime,
        refresh_token_expires_at: Optional[datetime],
        refreshed_at: datetime,
    ) -> None:
        """Persist rotated credentials and clear any previous error."""
        pass

    @abstractmethod
    def update_connection_status(
        self,
        connection_id: str,
        status: ConnectionStatus,
        last_error: Optional[str] = None,
    ) -> None:
        """Set connected/error status. Use disconnect_connection to soft-delete."""
        pass

    @abstractmethod
    def update_connection_settings(self, connection_id: str, settings: ConnectionSettings) -> None:
        pass

    @abstractmethod
    def disconnect_connection(self, connection_id: str, disconnected_at: datetime) -> bool:
        """
        Soft-delete a connection.

        Returns:
            True if the connection was active before the call
        """
        pass

    @abstractmethod
    def acquire_refresh_lease(
        self,
        connection_id: str,
        owner: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> bool:
        """
        Atomically claim the right to refresh a connection's tokens.

        Succeeds when no lease is held, the held lease has expired, or the
        caller already holds it.

        Returns:
            True if the caller now holds the lease
        """
        pass

    @abstractmethod
    def release_refresh_lease(self, connection_id: str, owner: str) -> None:
        """Release the refresh lease if the caller still holds it."""
        pass

    @abstractmethod
    def list_connections_for_keepalive(
        self,
        access_expiring_before: datetime,
        refreshed_before: datetime,
        limit: int = 50,
    ) -> list[Connection]:
        """
        Connected connections whose access token expires before the first cutoff
        or whose tokens were last rotated before the second.
        """
        pass

    # =========================================================================
    # Sync jobs
    # =========================================================================

    @abstractmethod
    def upsert_job(
        self,
        org_id: str,
        entity_type: EntityType,
        local_id: str,
        reason: str,
        now: datetime,
        replace_reason: bool = True,
    ) -> tuple[SyncJob, bool]:
        """
        Insert a pending job or coalesce into the existing non-terminal one.

        Coalescing updates updated_at, and reason unless replace_reason is
        False. If the existing job is in progress, rerun_requested is set so
        the mutation is not lost.

        Returns:
            Tuple of (job, created)
        """
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[SyncJob]:
        pass

    @abstractmethod
    def find_active_job(self, org_id: str, entity_type: EntityType, local_id: str) -> Optional[SyncJob]:
        """Get the non-terminal job for an entity, if any."""
        pass

    @abstractmethod
    def claim_jobs(
        self,
        owner: str,
        limit: int,
        now: datetime,
        lease_expires_at: datetime,
    ) -> list[SyncJob]:
        """
        Atomically claim up to `limit` eligible jobs for a worker.

        Eligible: pending or failed with next_run_at <= now, or in_progress
        with an expired lease, and belonging to an organization whose
        connection is `connected`. Claimed jobs move to in_progress with the
        owner and lease expiry stamped.
        """
        pass

    @abstractmethod
    def update_job(
        self,
        job: SyncJob,
        expected_state: JobState,
        expected_owner: Optional[str] = None,
        expected_updated_at: Optional[datetime] = None,
    ) -> bool:
        """
        Compare-and-set write of a job's mutable fields.

        The write applies only while the stored job is in `expected_state`
        and, when given, still leased by `expected_owner` and unchanged since
        `expected_updated_at` (a coalescing enqueue bumps updated_at).

        Returns:
            True if the write was applied

        Raises:
            DuplicateKeyError: If reactivating the job would create a second
                non-terminal job for the same entity
        """
        pass

    @abstractmethod
    def cancel_jobs_for_org(self, org_id: str, now: datetime, error_summary: str) -> int:
        """Move every non-terminal job of an organization to cancelled."""
        pass

    @abstractmethod
    def release_expired_leases(self, now: datetime) -> int:
        """Return in-progress jobs with lapsed leases to failed, eligible immediately."""
        pass

    @abstractmethod
    def count_jobs_by_state(self, org_id: str) -> dict[str, int]:
        pass

    @abstractmethod
    def list_jobs(
        self,
        org_id: str,
        states: Optional[list[JobState]] = None,
        limit: int = 100,
    ) -> list[SyncJob]:
        """Jobs of an organization, most recently updated first."""
        pass

    # =========================================================================
    # Webhook receipts
    # =========================================================================

    @abstractmethod
    def record_webhook_receipt(self, identity: str, realm_id: str, received_at: datetime) -> bool:
        """
        Insert a webhook identity if it has not been seen.

        Returns:
            True if the identity is new, False if it was already recorded
        """
        pass

    @abstractmethod
    def delete_webhook_receipt(self, identity: str) -> None:
        """Forget a recorded identity so a redelivery is processed again."""
        pass

    @abstractmethod
    def purge_webhook_receipts(self, received_before: datetime) -> int:
        pass

    # =========================================================================
    # Invoices (local entity and sync-status projection)
    # =========================================================================

    @abstractmethod
    def write_invoice(self, invoice: InvoiceSnapshot) -> str:
        """Insert or replace a local invoice including its lines and projection."""
        pass

    @abstractmethod
    def read_invoice(self, org_id: str, invoice_id: str) -> Optional[InvoiceSnapshot]:
        pass

    @abstractmethod
    def find_invoice_by_external_id(self, org_id: str, external_id: str) -> Optional[InvoiceSnapshot]:
        pass

    @abstractmethod
    def update_sync_projection(self, org_id: str, invoice_id: str, projection: SyncProjection) -> bool:
        """
        Write the sync-status projection of an invoice. None fields are left unchanged.

        Returns:
            True if the invoice exists
        """
        pass

    @abstractmethod
    def count_invoices_by_sync_status(self, org_id: str, status: SyncStatus) -> int:
        pass

    @abstractmethod
    def list_invoice_numbers(self, org_id: str) -> list[str]:
        pass

    # =========================================================================
    # Domain events
    # =========================================================================

    @abstractmethod
    def write_domain_event(self, event: DomainEvent) -> str:
        pass

    @abstractmethod
    def read_domain_events(
        self,
        org_id: str,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> list[DomainEvent]:
        """Events of an organization in emission order."""
        pass

    # =========================================================================
    # OAuth state nonces
    # =========================================================================

    @abstractmethod
    def consume_oauth_nonce(self, nonce: str, org_id: str, expires_at: datetime) -> bool:
        """
        Record an OAuth state nonce as used.

        Returns:
            True on first use, False if the nonce was already consumed
        """
        pass

    # =========================================================================
    # Invoice number reservations
    # =========================================================================

    @abstractmethod
    def create_reservation(self, reservation: InvoiceNumberReservation) -> InvoiceNumberReservation:
        """
        Raises:
            DuplicateKeyError: If the number is already reserved or used in the organization
        """
        pass

    @abstractmethod
    def get_reservation(self, reservation_id: str) -> Optional[InvoiceNumberReservation]:
        pass

    @abstractmethod
    def update_reservation_status(
        self,
        reservation_id: str,
        status: ReservationStatus,
        used_by_invoice_id: Optional[str] = None,
    ) -> bool:
        """
        Move a `reserved` reservation to used, released or expired.

        Returns:
            True if the reservation was still reserved
        """
        pass

    @abstractmethod
    def expire_reservations(self, now: datetime) -> int:
        pass

    @abstractmethod
    def list_active_reserved_numbers(self, org_id: str) -> list[str]:
        """Numbers currently reserved or used through a reservation."""
        pass
