"""
Sync job queue.

A durable outbox of SyncJob rows with:
- Coalescing enqueue: one non-terminal job per (org, entity type, local id),
  enforced by the storage layer's unique active key
- Lease-based claiming so two workers never process the same job, and a
  crashed worker's jobs become eligible again when the lease lapses
- Exponential backoff with jitter, and a dead state after the retry budget
- Manual retry of dead jobs

Every transition after the claim is a compare-and-set guarded by the lease
owner, so a worker whose lease expired cannot overwrite the next holder.
"""

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from qbosync.config import Settings, get_settings
from qbosync.models.enums import DomainEventType, EntityType, FailureReason, JobState, SyncStatus
from qbosync.models.invoices import SyncProjection
from qbosync.models.jobs import SyncJob
from qbosync.storage.base import DuplicateKeyError, StorageBackend
from qbosync.sync.errors import (
    InvalidJobStateError,
    JobNotFoundError,
    LeaseLostError,
    SyncError,
)
from qbosync.sync.events import EventEmitter
from qbosync.utils.logging import get_logger
from qbosync.utils.timeutil import utcnow

logger = get_logger(__name__)

# Verbatim error text kept on the job (internal only)
LAST_ERROR_MAX_CHARS = 4000
SUMMARY_MAX_CHARS = 500

_CAS_RETRIES = 5

_FAILURE_EVENTS = {
    JobState.FAILED: "sync_job_failed",
    JobState.DEAD: "sync_job_dead",
    JobState.PENDING: "sync_job_requeued",
}


def _dead_or_rerun(job: SyncJob, now: datetime) -> dict:
    """Terminal fields for a job out of retries, unless a newer mutation is waiting."""
    if job.rerun_requested:
        return {"state": JobState.PENDING, "attempts": 0, "next_run_at": now}
    return {"state": JobState.DEAD, "completed_at": now}


@dataclass
class BackoffPolicy:
    """
    Exponential backoff with jitter.

    delay(n) = min(cap, base * 2^(n-1) * U(0.5, 1)) for the n-th failure.
    The lower bound of delay(n+1) equals the upper bound of delay(n), so
    delays never decrease as attempts grow, whatever the jitter draws.

    Attributes:
        base_seconds: Delay scale for the first failure
        cap_seconds: Upper bound on any delay
        max_attempts: Failures allowed; the next one makes the job dead
    """

    base_seconds: float = 30.0
    cap_seconds: float = 3600.0
    max_attempts: int = 8
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "BackoffPolicy":
        settings = settings or get_settings()
        return cls(
            base_seconds=settings.sync_backoff_base_seconds,
            cap_seconds=settings.sync_backoff_cap_seconds,
            max_attempts=settings.sync_max_attempts,
        )

    def delay(self, attempt: int, jitter: Optional[float] = None) -> float:
        """
        Seconds to wait after the given (1-based) failed attempt.

        Args:
            attempt: Number of failures so far, at least 1
            jitter: Fixed jitter factor in [0.5, 1.0] (random when omitted)
        """
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        if jitter is None:
            jitter = self.rng.uniform(0.5, 1.0)
        elif not 0.5 <= jitter <= 1.0:
            raise ValueError("jitter must be within [0.5, 1.0]")

        exponential = self.base_seconds * (2 ** min(attempt - 1, 62))
        return min(self.cap_seconds, exponential * jitter)

    def is_exhausted(self, attempts: int) -> bool:
        """True once failures exceed the retry budget."""
        return attempts > self.max_attempts


def summarize_error(error: Union[SyncError, str]) -> str:
    message = error.message if isinstance(error, SyncError) else str(error)
    message = " ".join(message.split())
    if len(message) > SUMMARY_MAX_CHARS:
        message = message[: SUMMARY_MAX_CHARS - 3] + "..."
    return message


def verbatim_error(error: Union[SyncError, str]) -> str:
    if isinstance(error, SyncError):
        text = error.message if not error.detail else f"{error.message}: {error.detail}"
    else:
        text = str(error)
    return text[:LAST_ERROR_MAX_CHARS]


class SyncQueue:
    """
    Sync job outbox operations.

    Args:
        storage: Storage backend
        settings: Queue configuration (lease length)
        policy: Backoff policy (defaults from settings)
        events: Domain event emitter
    """

    def __init__(
        self,
        storage: StorageBackend,
        settings: Optional[Settings] = None,
        policy: Optional[BackoffPolicy] = None,
        events: Optional[EventEmitter] = None,
    ):
        self.storage = storage
        self.settings = settings or get_settings()
        self.policy = policy or BackoffPolicy.from_settings(self.settings)
        self.events = events or EventEmitter(storage)

    # =========================================================================
    # Producer side
    # =========================================================================

    def enqueue(
        self,
        org_id: str,
        entity_type: EntityType,
        local_id: str,
        reason: str = "local_mutation",
        replace_reason: bool = True,
    ) -> SyncJob:
        """
        Enqueue a sync of one local entity, coalescing into the active job.

        A coalesced job takes the new reason unless replace_reason is False;
        webhook reconciliation passes False so it never masks a local edit.

        Returns:
            The new job, or the existing non-terminal job it coalesced into
        """
        now = utcnow()
        try:
            job, created = self.storage.upsert_job(org_id, entity_type, local_id, reason, now, replace_reason)
        except DuplicateKeyError:
            # Lost an insert race with another process; the winner's job is active now
            job, created = self.storage.upsert_job(org_id, entity_type, local_id, reason, now, replace_reason)

        if entity_type == EntityType.INVOICE:
            self.storage.update_sync_projection(org_id, local_id, SyncProjection(status=SyncStatus.PENDING))

        logger.info(
            "sync_job_enqueued" if created else "sync_job_coalesced",
            job_id=job.job_id,
            org_id=org_id,
            entity_type=entity_type.value,
            local_id=local_id,
            reason=reason,
            state=job.state.value,
        )
        return job

    # =========================================================================
    # Consumer side
    # =========================================================================

    def dequeue_batch(self, limit: int, owner: str) -> list[SyncJob]:
        """
        Claim up to `limit` eligible jobs for `owner`.

        Jobs of organizations whose connection is not `connected` are never
        claimed; they wait in place until the organization reconnects.
        """
        now = utcnow()
        lease_expires_at = now + timedelta(seconds=self.settings.sync_job_lease_seconds)
        jobs = self.storage.claim_jobs(owner, limit, now, lease_expires_at)
        if jobs:
            logger.info("sync_jobs_claimed", owner=owner, count=len(jobs))
        return jobs

    def _transition(
        self,
        job_id: str,
        owner: str,
        change: Callable[[SyncJob], SyncJob],
    ) -> SyncJob:
        """Apply a lease-guarded compare-and-set transition to an in-progress job."""
        for _ in range(_CAS_RETRIES):
            current = self.storage.get_job(job_id)
            if current is None:
                raise JobNotFoundError(f"Sync job {job_id} not found")
            if current.state != JobState.IN_PROGRESS or current.lease_owner != owner:
                logger.warning(
                    "sync_job_lease_lost",
                    job_id=job_id,
                    owner=owner,
                    state=current.state.value,
                    lease_owner=current.lease_owner,
                )
                raise LeaseLostError(f"Worker {owner} no longer holds the lease on job {job_id}")

            updated = change(current)
            if self.storage.update_job(
                updated,
                expected_state=JobState.IN_PROGRESS,
                expected_owner=owner,
                expected_updated_at=current.updated_at,
            ):
                return updated

            # A coalescing enqueue touched the row between read and write
            logger.debug("sync_job_cas_retry", job_id=job_id)

        raise LeaseLostError(f"Job {job_id} kept changing while completing")

    def mark_succeeded(self, job_id: str, owner: str, external_id: Optional[str] = None) -> SyncJob:
        """
        Complete a job.

        If a mutation arrived while the job was in progress, the job returns
        to pending (with the external id recorded) instead of terminating, so
        the newer local state is pushed too.
        """
        now = utcnow()

        def change(job: SyncJob) -> SyncJob:
            common = {
                "external_id": external_id or job.external_id,
                "lease_owner": None,
                "lease_expires_at": None,
                "last_error": None,
                "failure_reason": None,
                "error_summary": None,
                "updated_at": now,
            }
            if job.rerun_requested:
                return job.model_copy(
                    update={
                        **common,
                        "state": JobState.PENDING,
                        "attempts": 0,
                        "rerun_requested": False,
                        "next_run_at": now,
                    }
                )
            return job.model_copy(update={**common, "state": JobState.SUCCEEDED, "completed_at": now})

        job = self._transition(job_id, owner, change)
        logger.info(
            "sync_job_succeeded" if job.state == JobState.SUCCEEDED else "sync_job_requeued",
            job_id=job_id,
            org_id=job.org_id,
            external_id=job.external_id,
        )
        return job

    def mark_failed(
        self,
        job_id: str,
        owner: str,
        error: Union[SyncError, str],
        retry_after: Optional[float] = None,
        reason: Optional[FailureReason] = None,
    ) -> SyncJob:
        """
        Record a retryable failure.

        The job becomes `failed` with its next run pushed out by the backoff
        policy, or by `retry_after` seconds when the provider supplied a hint.
        Once failures exceed the retry budget the job becomes `dead`.
        """
        now = utcnow()
        if reason is None:
            reason = error.reason if isinstance(error, SyncError) else FailureReason.TRANSIENT_NETWORK

        def change(job: SyncJob) -> SyncJob:
            attempts = job.attempts + 1
            update = {
                "attempts": attempts,
                "last_error": verbatim_error(error),
                "failure_reason": reason,
                "error_summary": summarize_error(error),
                "lease_owner": None,
                "lease_expires_at": None,
                "rerun_requested": False,
                "updated_at": now,
            }
            if self.policy.is_exhausted(attempts):
                update.update(_dead_or_rerun(job, now))
            else:
                delay = retry_after if retry_after is not None else self.policy.delay(attempts)
                update.update({"state": JobState.FAILED, "next_run_at": now + timedelta(seconds=delay)})
            return job.model_copy(update=update)

        job = self._transition(job_id, owner, change)
        logger.warning(
            _FAILURE_EVENTS[job.state],
            job_id=job_id,
            org_id=job.org_id,
            attempts=job.attempts,
            failure_reason=reason.value,
            next_run_at=job.next_run_at.isoformat() if job.state != JobState.DEAD else None,
        )
        return job

    def mark_dead(self, job_id: str, owner: str, error: Union[SyncError, str]) -> SyncJob:
        """
        Record a non-retryable failure. Only a manual retry revives the job.

        A mutation that arrived while the job was in progress may be the fix
        for the rejected payload, so such a job returns to pending with a
        fresh retry budget instead of dying.
        """
        now = utcnow()
        reason = error.reason if isinstance(error, SyncError) else FailureReason.VALIDATION_REJECTED

        def change(job: SyncJob) -> SyncJob:
            return job.model_copy(
                update={
                    "attempts": job.attempts + 1,
                    "last_error": verbatim_error(error),
                    "failure_reason": reason,
                    "error_summary": summarize_error(error),
                    "lease_owner": None,
                    "lease_expires_at": None,
                    "rerun_requested": False,
                    "updated_at": now,
                    **_dead_or_rerun(job, now),
                }
            )

        job = self._transition(job_id, owner, change)
        logger.warning(
            _FAILURE_EVENTS[job.state],
            job_id=job_id,
            org_id=job.org_id,
            attempts=job.attempts,
            failure_reason=reason.value,
        )
        return job

    # =========================================================================
    # Manual retry and maintenance
    # =========================================================================

    def get_job(self, org_id: str, job_id: str) -> SyncJob:
        job = self.storage.get_job(job_id)
        if job is None or job.org_id != org_id:
            raise JobNotFoundError(f"Sync job {job_id} not found")
        return job

    def retry_job(self, org_id: str, job_id: str) -> SyncJob:
        """
        Reset a dead or failed job to pending with zero attempts.

        If another non-terminal job already exists for the same entity, the
        dead job stays dead and the active job is returned.

        Raises:
            JobNotFoundError: If the job does not exist in the organization
            InvalidJobStateError: If the job is not dead or failed
        """
        job = self.get_job(org_id, job_id)
        if job.state not in (JobState.DEAD, JobState.FAILED):
            raise InvalidJobStateError(f"Job {job_id} is {job.state.value}; only dead or failed jobs can be retried")

        now = utcnow()
        reset = job.model_copy(
            update={
                "state": JobState.PENDING,
                "attempts": 0,
                "next_run_at": now,
                "lease_owner": None,
                "lease_expires_at": None,
                "completed_at": None,
                "updated_at": now,
                "reason": "manual_retry",
            }
        )

        try:
            applied = self.storage.update_job(reset, expected_state=job.state)
        except DuplicateKeyError:
            active = self.storage.find_active_job(org_id, job.entity_type, job.local_id)
            logger.info(
                "sync_job_retry_superseded",
                job_id=job_id,
                active_job_id=active.job_id if active else None,
            )
            if active is None:
                raise
            return active

        if not applied:
            # Changed concurrently; report the current state
            return self.get_job(org_id, job_id)

        logger.info("sync_job_retried", job_id=job_id, org_id=org_id, previous_state=job.state.value)
        self.events.emit(
            org_id,
            DomainEventType.JOB_RETRIED,
            job.entity_type.value,
            job.local_id,
            {"previous_state": job.state.value, "attempts": job.attempts},
            job_id=job_id,
        )
        return reset

    def retry_failed_jobs(self, org_id: str, limit: int = 500) -> list[SyncJob]:
        """Retry every dead or failed job of an organization."""
        retried: dict[str, SyncJob] = {}
        for job in self.storage.list_jobs(org_id, states=[JobState.DEAD, JobState.FAILED], limit=limit):
            try:
                result = self.retry_job(org_id, job.job_id)
            except InvalidJobStateError:
                continue
            retried[result.job_id] = result
        logger.info("sync_jobs_bulk_retried", org_id=org_id, count=len(retried))
        return list(retried.values())

    def release_expired_leases(self) -> int:
        return self.storage.release_expired_leases(utcnow())
