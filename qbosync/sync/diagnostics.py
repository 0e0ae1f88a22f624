"""
Sync diagnostics for the admin surface.

Read-only aggregation over connections, jobs and invoice projections. Only
categorized reason codes and truncated summaries leave this module; the
verbatim provider error text stays on the job row.
"""

from typing import Optional

from qbosync.config import Settings, get_settings
from qbosync.models.enums import JobState, SyncStatus
from qbosync.models.jobs import SyncJob
from qbosync.models.system import ConnectionSummary, JobFailure, SyncDiagnostics
from qbosync.storage.base import StorageBackend
from qbosync.sync.connection_store import ConnectionStore
from qbosync.sync.queue import SyncQueue
from qbosync.utils.logging import get_logger
from qbosync.utils.timeutil import utcnow

logger = get_logger(__name__)


def truncate(text: Optional[str], max_chars: int) -> Optional[str]:
    if text is None or len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."


class SyncDiagnosticsService:
    """
    Diagnostics and manual recovery for one organization at a time.

    Args:
        storage: Storage backend
        store: Connection store
        queue: Sync job queue (manual retries)
        settings: Failure list and truncation limits
    """

    def __init__(
        self,
        storage: StorageBackend,
        store: ConnectionStore,
        queue: SyncQueue,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage
        self.store = store
        self.queue = queue
        self.settings = settings or get_settings()

    def _failure(self, job: SyncJob) -> JobFailure:
        return JobFailure(
            job_id=job.job_id,
            entity_type=job.entity_type,
            local_id=job.local_id,
            state=job.state,
            attempts=job.attempts,
            failure_reason=job.failure_reason,
            error=truncate(job.error_summary, self.settings.diagnostics_error_max_chars),
            updated_at=job.updated_at,
        )

    def get_diagnostics(self, org_id: str) -> SyncDiagnostics:
        """
        Aggregate sync health for an organization.

        Returns:
            Connection summary (absent when not connected), job counts for
            every state, the most recent failed or dead jobs and the number
            of invoices whose projection is in error
        """
        summary = None
        connection = self.store.find_connection(org_id)
        if connection is not None:
            summary = ConnectionSummary(
                connection_id=connection.connection_id,
                status=connection.status,
                realm_id=connection.realm_id,
                company_name=connection.company_name,
                access_token_expires_at=connection.access_token_expires_at,
                last_refreshed_at=connection.last_refreshed_at,
                last_error=connection.last_error,
            )

        failures = self.storage.list_jobs(
            org_id,
            states=[JobState.FAILED, JobState.DEAD],
            limit=self.settings.diagnostics_failure_limit,
        )

        diagnostics = SyncDiagnostics(
            org_id=org_id,
            connection=summary,
            job_counts=self.storage.count_jobs_by_state(org_id),
            recent_failures=[self._failure(job) for job in failures],
            invoices_with_sync_errors=self.storage.count_invoices_by_sync_status(org_id, SyncStatus.ERROR),
            generated_at=utcnow(),
        )

        logger.debug(
            "sync_diagnostics_generated",
            org_id=org_id,
            connected=summary is not None,
            failures=len(diagnostics.recent_failures),
        )
        return diagnostics

    def retry_job(self, org_id: str, job_id: str) -> SyncJob:
        return self.queue.retry_job(org_id, job_id)

    def retry_failed_jobs(self, org_id: str) -> list[SyncJob]:
        return self.queue.retry_failed_jobs(org_id)
