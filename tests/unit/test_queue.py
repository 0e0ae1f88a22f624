"""
Unit tests for the sync job queue: coalescing, leases, backoff and retry.
"""

from datetime import timedelta

import pytest

from qbosync.models.enums import ConnectionStatus, EntityType, FailureReason, JobState, SyncStatus
from qbosync.sync.errors import (
    InvalidJobStateError,
    JobNotFoundError,
    LeaseLostError,
    RateLimited,
    TransientNetworkError,
    ValidationRejected,
)
from qbosync.sync.queue import BackoffPolicy, SyncQueue, summarize_error
from qbosync.utils.timeutil import utcnow
from tests.factories import ORG_ID, make_invoice

OWNER = "worker-a"
OTHER = "worker-b"


@pytest.fixture
def queue(services):
    return services.queue


@pytest.fixture
def eager_queue(services):
    """Queue whose backoff is zero so failed jobs are claimable at once."""
    return SyncQueue(
        services.storage,
        settings=services.settings,
        policy=BackoffPolicy(base_seconds=0, cap_seconds=0, max_attempts=3),
        events=services.events,
    )


class TestEnqueue:
    def test_enqueue_is_idempotent(self, queue, storage):
        first = queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        second = queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1", reason="status_change")

        assert second.job_id == first.job_id
        assert second.reason == "status_change"
        assert storage.count_jobs_by_state(ORG_ID)[JobState.PENDING.value] == 1

    def test_coalesce_can_keep_existing_reason(self, queue, storage):
        first = queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1", reason="local_mutation")
        second = queue.enqueue(
            ORG_ID, EntityType.INVOICE, "inv-1", reason="webhook_reconciliation", replace_reason=False
        )

        assert second.job_id == first.job_id
        assert second.reason == "local_mutation"

    def test_distinct_entities_get_distinct_jobs(self, queue, storage):
        queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-2")
        queue.enqueue("org-other", EntityType.INVOICE, "inv-1")

        assert storage.count_jobs_by_state(ORG_ID)[JobState.PENDING.value] == 2

    def test_enqueue_sets_projection_pending(self, queue, storage):
        storage.write_invoice(make_invoice())
        queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")

        assert storage.read_invoice(ORG_ID, "inv-1").sync.status == SyncStatus.PENDING

    def test_terminal_job_does_not_block_new_enqueue(self, queue, connected_org):
        job = queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        queue.dequeue_batch(10, OWNER)
        queue.mark_succeeded(job.job_id, OWNER, external_id="145")

        again = queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        assert again.job_id != job.job_id
        assert again.state == JobState.PENDING

    def test_mutation_during_processing_requests_rerun(self, queue, connected_org):
        job = queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        (claimed,) = queue.dequeue_batch(10, OWNER)

        coalesced = queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1", reason="edited")
        assert coalesced.job_id == job.job_id
        assert coalesced.rerun_requested is True

        done = queue.mark_succeeded(claimed.job_id, OWNER, external_id="145")
        assert done.state == JobState.PENDING
        assert done.external_id == "145"
        assert done.rerun_requested is False


class TestDequeue:
    def test_claim_sets_lease(self, queue, connected_org):
        queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        (job,) = queue.dequeue_batch(10, OWNER)

        assert job.state == JobState.IN_PROGRESS
        assert job.lease_owner == OWNER
        assert job.lease_expires_at > utcnow()

    def test_claimed_job_not_claimed_twice(self, queue, connected_org):
        queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        assert len(queue.dequeue_batch(10, OWNER)) == 1
        assert queue.dequeue_batch(10, OTHER) == []

    def test_limit_respected(self, queue, connected_org):
        for i in range(5):
            queue.enqueue(ORG_ID, EntityType.INVOICE, f"inv-{i}")
        assert len(queue.dequeue_batch(3, OWNER)) == 3
        assert len(queue.dequeue_batch(3, OTHER)) == 2

    def test_unconnected_org_not_claimed(self, queue):
        queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        assert queue.dequeue_batch(10, OWNER) == []

    def test_org_needing_reauthorization_not_claimed(self, queue, storage, connected_org):
        queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        storage.update_connection_status(
            connected_org.connection_id, ConnectionStatus.ERROR, FailureReason.REAUTHORIZATION_REQUIRED.value
        )
        assert queue.dequeue_batch(10, OWNER) == []

    def test_expired_lease_is_reclaimed(self, queue, storage, connected_org):
        queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        now = utcnow()
        (stale,) = storage.claim_jobs(OWNER, 10, now, now - timedelta(seconds=1))

        (reclaimed,) = queue.dequeue_batch(10, OTHER)
        assert reclaimed.job_id == stale.job_id
        assert reclaimed.lease_owner == OTHER
        assert reclaimed.attempts == 0

        with pytest.raises(LeaseLostError):
            queue.mark_succeeded(stale.job_id, OWNER)

    def test_release_expired_leases(self, queue, storage, connected_org):
        queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        now = utcnow()
        (stale,) = storage.claim_jobs(OWNER, 10, now, now - timedelta(seconds=1))

        assert queue.release_expired_leases() == 1
        job = storage.get_job(stale.job_id)
        assert job.state == JobState.FAILED
        assert job.failure_reason == FailureReason.LEASE_EXPIRED
        assert job.attempts == 0


class TestTransitions:
    def test_mark_failed_schedules_backoff(self, queue, connected_org):
        queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        (job,) = queue.dequeue_batch(10, OWNER)
        before = utcnow()

        failed = queue.mark_failed(job.job_id, OWNER, TransientNetworkError("QuickBooks unreachable"))

        assert failed.state == JobState.FAILED
        assert failed.attempts == 1
        assert failed.failure_reason == FailureReason.TRANSIENT_NETWORK
        assert failed.lease_owner is None
        delay = (failed.next_run_at - before).total_seconds()
        assert 15 - 1 <= delay <= 30 + 1
        assert queue.dequeue_batch(10, OWNER) == []

    def test_mark_failed_honors_retry_after(self, queue, connected_org):
        queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        (job,) = queue.dequeue_batch(10, OWNER)
        before = utcnow()

        failed = queue.mark_failed(job.job_id, OWNER, RateLimited("slow down", retry_after=120), retry_after=120)

        assert failed.failure_reason == FailureReason.RATE_LIMITED
        assert 119 <= (failed.next_run_at - before).total_seconds() <= 121

    def test_dead_after_max_attempts_plus_one(self, eager_queue, connected_org):
        job = eager_queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")

        states = []
        for _ in range(4):
            (claimed,) = eager_queue.dequeue_batch(10, OWNER)
            states.append(eager_queue.mark_failed(claimed.job_id, OWNER, "timeout").state)

        assert states == [JobState.FAILED, JobState.FAILED, JobState.FAILED, JobState.DEAD]
        dead = eager_queue.get_job(ORG_ID, job.job_id)
        assert dead.attempts == 4
        assert dead.completed_at is not None
        assert eager_queue.dequeue_batch(10, OWNER) == []

    def test_mark_dead_records_reason(self, queue, connected_org):
        queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        (job,) = queue.dequeue_batch(10, OWNER)

        dead = queue.mark_dead(job.job_id, OWNER, ValidationRejected("Invalid Reference Id", fault_code="2500"))

        assert dead.state == JobState.DEAD
        assert dead.failure_reason == FailureReason.VALIDATION_REJECTED
        assert dead.error_summary == "Invalid Reference Id"

    def test_mutation_during_processing_survives_dead(self, queue, connected_org):
        job = queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        (claimed,) = queue.dequeue_batch(10, OWNER)
        queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1", reason="user_fix")

        requeued = queue.mark_dead(claimed.job_id, OWNER, ValidationRejected("Invalid Reference Id", fault_code="2500"))

        assert requeued.state == JobState.PENDING
        assert requeued.attempts == 0
        assert requeued.rerun_requested is False
        assert requeued.completed_at is None
        assert queue.storage.find_active_job(ORG_ID, EntityType.INVOICE, "inv-1").job_id == job.job_id
        (again,) = queue.dequeue_batch(10, OWNER)
        assert again.reason == "user_fix"

    def test_mutation_during_last_attempt_survives_exhaustion(self, eager_queue, connected_org):
        eager_queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        for _ in range(3):
            (claimed,) = eager_queue.dequeue_batch(10, OWNER)
            eager_queue.mark_failed(claimed.job_id, OWNER, "timeout")

        (claimed,) = eager_queue.dequeue_batch(10, OWNER)
        eager_queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1", reason="user_fix")
        requeued = eager_queue.mark_failed(claimed.job_id, OWNER, "timeout")

        assert requeued.state == JobState.PENDING
        assert requeued.attempts == 0
        assert len(eager_queue.dequeue_batch(10, OWNER)) == 1

    def test_transition_by_non_owner_rejected(self, queue, connected_org):
        queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        (job,) = queue.dequeue_batch(10, OWNER)

        with pytest.raises(LeaseLostError):
            queue.mark_failed(job.job_id, OTHER, "nope")
        assert queue.get_job(ORG_ID, job.job_id).lease_owner == OWNER

    def test_summary_is_bounded(self):
        assert len(summarize_error("x" * 5000)) == 500


class TestManualRetry:
    def _dead_job(self, queue):
        job = queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        queue.dequeue_batch(10, OWNER)
        return queue.mark_dead(job.job_id, OWNER, ValidationRejected("bad customer"))

    def test_retry_dead_job(self, queue, connected_org):
        dead = self._dead_job(queue)

        retried = queue.retry_job(ORG_ID, dead.job_id)

        assert retried.job_id == dead.job_id
        assert retried.state == JobState.PENDING
        assert retried.attempts == 0
        assert retried.reason == "manual_retry"
        assert len(queue.dequeue_batch(10, OWNER)) == 1

    def test_retry_when_active_job_exists_returns_active(self, queue, connected_org):
        dead = self._dead_job(queue)
        active = queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")

        result = queue.retry_job(ORG_ID, dead.job_id)

        assert result.job_id == active.job_id
        assert queue.get_job(ORG_ID, dead.job_id).state == JobState.DEAD

    def test_retry_pending_job_rejected(self, queue):
        job = queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1")
        with pytest.raises(InvalidJobStateError):
            queue.retry_job(ORG_ID, job.job_id)

    def test_retry_other_org_job_not_found(self, queue, connected_org):
        dead = self._dead_job(queue)
        with pytest.raises(JobNotFoundError):
            queue.retry_job("org-other", dead.job_id)

    def test_retry_failed_jobs_bulk(self, queue, connected_org):
        dead = self._dead_job(queue)
        other = queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-2")
        queue.dequeue_batch(10, OWNER)
        queue.mark_failed(other.job_id, OWNER, "boom")

        retried = queue.retry_failed_jobs(ORG_ID)

        assert {job.job_id for job in retried} == {dead.job_id, other.job_id}
        assert all(job.state == JobState.PENDING for job in retried)
