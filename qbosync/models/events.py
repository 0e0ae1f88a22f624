"""
Domain event model.

State transitions of connections and sync jobs are recorded as domain events
for the external audit/notification collaborator. This service never sends
user-facing notifications itself.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from qbosync.utils.timeutil import utcnow

from .enums import DomainEventType


class DomainEvent(BaseModel):
    """
    Audit record of a sync-relevant state transition.

    Attributes:
        event_id: Unique identifier for this event
        org_id: Organization the event belongs to
        event_type: What happened
        entity_type: Kind of entity the event is about ("invoice", "integration")
        entity_id: Local id of that entity
        payload: Event-specific context (external ids, reason codes)
        created_at: When the transition happened
    """

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    org_id: str
    event_type: DomainEventType
    entity_type: str
    entity_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    job_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
