"""
Sync job model.

A SyncJob means "this local entity needs to be pushed to (or reconciled with)
QuickBooks". At most one non-terminal job exists per
(organization, entity type, local entity id).
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from qbosync.utils.timeutil import utcnow

from .enums import EntityType, FailureReason, JobState


def active_job_key(org_id: str, entity_type: EntityType | str, local_id: str) -> str:
    """Uniqueness key held by a job while it is non-terminal."""
    entity = entity_type.value if isinstance(entity_type, EntityType) else entity_type
    return f"{org_id}|{entity}|{local_id}"


class SyncJob(BaseModel):
    """
    Durable outbox row for one entity synchronization.

    Attributes:
        job_id: Unique job identifier
        org_id: Owning organization
        entity_type: Local entity type (currently invoice)
        local_id: Local entity id
        external_id: QuickBooks id, null until the first successful push
        state: Current job state
        attempts: Failed attempts so far
        reason: Why the job was enqueued (latest mutation wins)
        last_error: Verbatim error text (internal, never exposed raw)
        failure_reason: Categorized reason code
        error_summary: Human-readable failure summary for diagnostics
        next_run_at: Earliest time the job is eligible for dequeue
        lease_owner: Worker holding the claim
        lease_expires_at: When the claim lapses if not completed
        rerun_requested: A mutation arrived while the job was in progress
        idempotency_key: Stable key sent with create calls
    """

    job_id: str = Field(default_factory=lambda: str(uuid4()))
    org_id: str
    entity_type: EntityType = EntityType.INVOICE
    local_id: str
    external_id: Optional[str] = None
    state: JobState = JobState.PENDING
    attempts: int = Field(default=0, ge=0)
    reason: str = "local_mutation"
    last_error: Optional[str] = None
    failure_reason: Optional[FailureReason] = None
    error_summary: Optional[str] = None
    next_run_at: datetime = Field(default_factory=utcnow)
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    rerun_requested: bool = False
    idempotency_key: str = Field(default_factory=lambda: uuid4().hex)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def active_key(self) -> Optional[str]:
        if self.is_terminal:
            return None
        return active_job_key(self.org_id, self.entity_type, self.local_id)
