"""
Diagnostics models for the admin surface.

These are read-only aggregations. They carry categorized reason codes and
truncated summaries, never raw provider error payloads.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .enums import ConnectionStatus, EntityType, FailureReason, JobState


class ConnectionSummary(BaseModel):
    """Connection health as shown in diagnostics."""

    connection_id: str
    status: ConnectionStatus
    realm_id: str
    company_name: Optional[str] = None
    access_token_expires_at: datetime
    last_refreshed_at: Optional[datetime] = None
    last_error: Optional[str] = Field(
        default=None, description="Categorized reason code of the last connection error"
    )


class JobFailure(BaseModel):
    """One recent job failure."""

    job_id: str
    entity_type: EntityType
    local_id: str
    state: JobState
    attempts: int
    failure_reason: Optional[FailureReason] = None
    error: Optional[str] = Field(default=None, description="Truncated human-readable summary")
    updated_at: datetime


class SyncDiagnostics(BaseModel):
    """Aggregated sync health for one organization."""

    org_id: str
    connection: Optional[ConnectionSummary] = None
    job_counts: dict[str, int] = Field(default_factory=dict)
    recent_failures: list[JobFailure] = Field(default_factory=list)
    invoices_with_sync_errors: int = 0
    generated_at: datetime
