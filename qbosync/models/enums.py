"""
Enumeration types for the accounting sync service.

All enums inherit from str to ensure JSON serialization compatibility and
so their values can be stored directly in the database.
"""

from enum import Enum


class ConnectionStatus(str, Enum):
    """Lifecycle of an organization's QuickBooks connection."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class JobState(str, Enum):
    """
    Sync job states.

    pending/in_progress/failed are non-terminal; succeeded, dead and cancelled
    are terminal and retained for audit and diagnostics.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD = "dead"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATES


TERMINAL_JOB_STATES = frozenset({JobState.SUCCEEDED, JobState.DEAD, JobState.CANCELLED})
NON_TERMINAL_JOB_STATES = frozenset({JobState.PENDING, JobState.IN_PROGRESS, JobState.FAILED})


class EntityType(str, Enum):
    """Local financial entities eligible for synchronization."""

    INVOICE = "invoice"


class SyncStatus(str, Enum):
    """Sync-status projection stored alongside each synced local entity."""

    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"
    SKIPPED = "skipped"


class FailureReason(str, Enum):
    """Categorized reason codes exposed to diagnostics."""

    TRANSIENT_NETWORK = "transient_network"
    RATE_LIMITED = "rate_limited"
    REAUTHORIZATION_REQUIRED = "reauthorization_required"
    VALIDATION_REJECTED = "validation_rejected"
    NOT_FOUND_REMOTE = "not_found_remote"
    PERMANENT_LOCAL = "permanent_local"
    LEASE_EXPIRED = "lease_expired"
    TIMEOUT = "timeout"
    CONNECTION_DISCONNECTED = "connection_disconnected"


class DomainEventType(str, Enum):
    """Events handed to the audit/notification collaborator."""

    CONNECTION_CREATED = "connection_created"
    CONNECTION_DISCONNECTED = "connection_disconnected"
    CONNECTION_ERROR = "connection_error"
    TOKEN_REFRESHED = "token_refreshed"
    ENTITY_CREATED = "entity_created"
    ENTITY_UPDATED = "entity_updated"
    SYNC_FAILED = "sync_failed"
    SYNC_DEAD = "sync_dead"
    JOB_RETRIED = "job_retried"
    SYNC_SKIPPED = "sync_skipped"
    INVOICE_NUMBER_CHANGED = "invoice_number_changed"


class WebhookEventKind(str, Enum):
    """Notification variants understood by the event extractor."""

    DATA_CHANGE = "data_change"
    CLOUD_EVENT = "cloud_event"
    UNKNOWN = "unknown"


class ReservationStatus(str, Enum):
    """Invoice number reservation lifecycle."""

    RESERVED = "reserved"
    USED = "used"
    EXPIRED = "expired"
    RELEASED = "released"


class CustomerSyncMode(str, Enum):
    """How invoice customers are resolved in QuickBooks."""

    CREATE_NEW = "create_new"
    MATCH_EXISTING = "match_existing"


# QuickBooks entity names (webhook "name" field) mapped to local entity types
QBO_ENTITY_NAMES: dict[str, EntityType] = {
    "invoice": EntityType.INVOICE,
}
