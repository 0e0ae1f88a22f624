"""
Pydantic v2 data models for the accounting sync service.

Model Organization:
    - enums: Enumeration types and state sets
    - connection: OAuth connection, tokens, and per-org sync settings
    - jobs: Durable sync job (outbox row)
    - invoices: Local invoice snapshot and sync-status projection
    - events: Domain events for the audit/notification collaborator
    - reservations: Invoice number reservations
    - system: Diagnostics aggregations

Usage:
    >>> from qbosync.models import SyncJob, JobState
    >>> job = SyncJob(org_id="org-1", local_id="inv-1")
    >>> job.state is JobState.PENDING
    True
"""

from .connection import AccessGrant, Connection, ConnectionSettings, OAuthTokens
from .enums import (
    ConnectionStatus,
    CustomerSyncMode,
    DomainEventType,
    EntityType,
    FailureReason,
    JobState,
    ReservationStatus,
    SyncStatus,
    WebhookEventKind,
)
from .events import DomainEvent
from .invoices import InvoiceLine, InvoiceSnapshot, SyncProjection
from .jobs import SyncJob, active_job_key
from .reservations import InvoiceNumberReservation
from .system import ConnectionSummary, JobFailure, SyncDiagnostics

__all__ = [
    # Enums
    "ConnectionStatus",
    "CustomerSyncMode",
    "DomainEventType",
    "EntityType",
    "FailureReason",
    "JobState",
    "ReservationStatus",
    "SyncStatus",
    "WebhookEventKind",
    # Connection
    "AccessGrant",
    "Connection",
    "ConnectionSettings",
    "OAuthTokens",
    # Jobs
    "SyncJob",
    "active_job_key",
    # Invoices
    "InvoiceLine",
    "InvoiceSnapshot",
    "SyncProjection",
    # Events
    "DomainEvent",
    # Reservations
    "InvoiceNumberReservation",
    # Diagnostics
    "ConnectionSummary",
    "JobFailure",
    "SyncDiagnostics",
]
