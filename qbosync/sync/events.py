"""
Domain event emission.

Connection and job state transitions are written to the domain_events table,
an outbox read by the audit and notification collaborator. Emission is
best-effort: a failed write is logged and never interrupts the transition
that produced it.
"""

from typing import Any, Optional

from qbosync.models.enums import DomainEventType
from qbosync.models.events import DomainEvent
from qbosync.storage.base import StorageBackend, StorageError
from qbosync.utils.logging import get_logger

logger = get_logger(__name__)

INTEGRATION_ENTITY = "integration"


class EventEmitter:
    """Writes domain events to storage and the structured log."""

    def __init__(self, storage: StorageBackend):
        self.storage = storage

    def emit(
        self,
        org_id: str,
        event_type: DomainEventType,
        entity_type: str,
        entity_id: str,
        payload: Optional[dict[str, Any]] = None,
        job_id: Optional[str] = None,
    ) -> Optional[DomainEvent]:
        event = DomainEvent(
            org_id=org_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=payload or {},
            job_id=job_id,
        )

        try:
            self.storage.write_domain_event(event)
        except StorageError as e:
            logger.error(
                "domain_event_write_failed",
                org_id=org_id,
                event_type=event_type.value,
                entity_id=entity_id,
                error=str(e),
            )
            return None

        logger.info(
            "domain_event_emitted",
            org_id=org_id,
            event_type=event_type.value,
            entity_type=entity_type,
            entity_id=entity_id,
            job_id=job_id,
        )
        return event

    def emit_integration(
        self,
        org_id: str,
        event_type: DomainEventType,
        connection_id: str,
        **payload: Any,
    ) -> Optional[DomainEvent]:
        """Emit an event about the organization's QuickBooks connection."""
        return self.emit(org_id, event_type, INTEGRATION_ENTITY, connection_id, payload)
