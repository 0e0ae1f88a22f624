"""
Unit tests for the sync worker against the fake QuickBooks backend.
"""

import asyncio

import httpx
import pytest

from qbosync.models.enums import DomainEventType, EntityType, FailureReason, JobState, SyncStatus
from qbosync.models.invoices import SyncProjection
from qbosync.sync.reconciliation import RECONCILIATION_REASON
from qbosync.sync.worker import WorkerPool
from qbosync.utils.timeutil import utcnow
from tests.factories import ORG_ID, REALM_ID, make_invoice, make_tokens


@pytest.fixture
def worker(services):
    return services.worker("worker-test")


def enqueue_invoice(services, invoice=None):
    invoice = invoice or make_invoice()
    services.storage.write_invoice(invoice)
    return services.queue.enqueue(ORG_ID, EntityType.INVOICE, invoice.invoice_id)


def event_types(services) -> list[str]:
    return [e.event_type.value for e in services.storage.read_domain_events(ORG_ID)]


class TestCreateAndUpdate:
    async def test_first_sync_creates_invoice(self, services, worker, connected_org, fake_qbo):
        job = enqueue_invoice(services)

        (done,) = await worker.run_once()

        assert done.state == JobState.SUCCEEDED
        assert done.external_id == "102"  # customer was created first as 101
        remote = fake_qbo.invoices["102"]
        assert remote["DocNumber"] == "1001"
        assert remote["CustomerRef"] == {"value": "101"}
        assert [line["Amount"] for line in remote["Line"]] == [1000.0, 500.0]

        (create,) = fake_qbo.api_requests("POST", "invoice")
        assert create.url.params["requestid"] == job.idempotency_key

        invoice = services.storage.read_invoice(ORG_ID, "inv-1")
        assert invoice.sync.status == SyncStatus.SYNCED
        assert invoice.sync.external_id == "102"
        assert invoice.sync.sync_token == "0"
        assert DomainEventType.ENTITY_CREATED.value in event_types(services)

    async def test_second_sync_updates_with_sync_token(self, services, worker, connected_org, fake_qbo):
        enqueue_invoice(services)
        await worker.run_once()

        current = services.storage.read_invoice(ORG_ID, "inv-1")
        enqueue_invoice(services, current.model_copy(update={"title": "Progress billing #1 (revised)"}))
        (done,) = await worker.run_once()

        assert done.state == JobState.SUCCEEDED
        assert done.external_id == "102"
        assert len(fake_qbo.invoices) == 1

        create, update = fake_qbo.api_requests("POST", "invoice")
        assert "requestid" not in update.url.params
        assert fake_qbo.invoices["102"]["SyncToken"] == "1"
        assert fake_qbo.invoices["102"]["PrivateNote"] == "Progress billing #1 (revised)"
        assert services.storage.read_invoice(ORG_ID, "inv-1").sync.sync_token == "1"
        assert DomainEventType.ENTITY_UPDATED.value in event_types(services)

    async def test_account_mapping_used_for_line_items(self, services, worker, connected_org, fake_qbo):
        services.store.update_settings(ORG_ID, {"account_mapping": {"labor": "55"}})
        enqueue_invoice(services)

        await worker.run_once()

        items = [line["SalesItemLineDetail"]["ItemRef"]["value"] for line in fake_qbo.invoices["102"]["Line"]]
        assert items == ["55", "1"]

    async def test_remote_deleted_invoice_recreated(self, services, worker, connected_org, fake_qbo):
        enqueue_invoice(services, make_invoice(sync=SyncProjection(external_id="999", status=SyncStatus.SYNCED)))

        (done,) = await worker.run_once()

        assert done.state == JobState.SUCCEEDED
        assert done.external_id != "999"
        assert done.external_id in fake_qbo.invoices
        assert services.storage.read_invoice(ORG_ID, "inv-1").sync.external_id == done.external_id

    async def test_missing_local_invoice_completes_without_calls(self, services, worker, connected_org, fake_qbo):
        services.queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-gone")

        (done,) = await worker.run_once()

        assert done.state == JobState.SUCCEEDED
        assert fake_qbo.api_requests() == []
        (skipped,) = [
            e for e in services.storage.read_domain_events(ORG_ID) if e.event_type == DomainEventType.SYNC_SKIPPED
        ]
        assert skipped.payload["failure_reason"] == FailureReason.PERMANENT_LOCAL.value

    async def test_duplicate_doc_number_renumbers_once(self, services, worker, connected_org, fake_qbo):
        fake_qbo.invoices["500"] = {"Id": "500", "SyncToken": "0", "DocNumber": "1001"}
        job = enqueue_invoice(services)

        (done,) = await worker.run_once()

        assert done.state == JobState.SUCCEEDED
        invoice = services.storage.read_invoice(ORG_ID, "inv-1")
        assert invoice.invoice_number == "1002"
        assert fake_qbo.invoices[done.external_id]["DocNumber"] == "1002"

        rejected, accepted = fake_qbo.api_requests("POST", "invoice")
        assert rejected.url.params["requestid"] == job.idempotency_key
        assert accepted.url.params["requestid"] != job.idempotency_key

        (changed,) = [
            e for e in services.storage.read_domain_events(ORG_ID)
            if e.event_type == DomainEventType.INVOICE_NUMBER_CHANGED
        ]
        assert changed.payload == {"previous_number": "1001", "invoice_number": "1002"}


class TestReconciliation:
    async def sync_then_echo(self, services, worker, times: int):
        enqueue_invoice(services)
        await worker.run_once()
        results = []
        for _ in range(times):
            services.queue.enqueue(
                ORG_ID, EntityType.INVOICE, "inv-1", reason=RECONCILIATION_REASON, replace_reason=False
            )
            results.extend(await worker.run_once())
        return results

    async def test_echo_of_own_write_is_not_pushed_again(self, services, worker, connected_org, fake_qbo):
        results = await self.sync_then_echo(services, worker, times=3)

        assert [job.state for job in results] == [JobState.SUCCEEDED] * 3
        assert len(fake_qbo.api_requests("POST", "invoice")) == 1
        assert fake_qbo.invoices["102"]["SyncToken"] == "0"
        assert services.storage.read_invoice(ORG_ID, "inv-1").sync.status == SyncStatus.SYNCED
        assert event_types(services).count(DomainEventType.SYNC_SKIPPED.value) == 3

    async def test_remote_edit_is_overwritten_with_local_state(self, services, worker, connected_org, fake_qbo):
        enqueue_invoice(services)
        await worker.run_once()
        fake_qbo.invoices["102"].update({"SyncToken": "1", "PrivateNote": "edited in QuickBooks"})

        services.queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1", reason=RECONCILIATION_REASON, replace_reason=False)
        (done,) = await worker.run_once()

        assert done.state == JobState.SUCCEEDED
        assert fake_qbo.invoices["102"]["SyncToken"] == "2"
        assert fake_qbo.invoices["102"]["PrivateNote"] == "Progress billing #1"
        assert services.storage.read_invoice(ORG_ID, "inv-1").sync.sync_token == "2"

    async def test_local_edit_since_sync_is_pushed(self, services, worker, connected_org, fake_qbo):
        enqueue_invoice(services)
        await worker.run_once()
        current = services.storage.read_invoice(ORG_ID, "inv-1")
        services.storage.write_invoice(current.model_copy(update={"title": "Revised", "updated_at": utcnow()}))

        services.queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1", reason=RECONCILIATION_REASON, replace_reason=False)
        await worker.run_once()

        assert fake_qbo.invoices["102"]["SyncToken"] == "1"
        assert fake_qbo.invoices["102"]["PrivateNote"] == "Revised"


class TestFailureClassification:
    async def test_rate_limited_honors_retry_after(self, services, worker, connected_org, fake_qbo):
        enqueue_invoice(services)
        fake_qbo.api_failures.append(httpx.Response(429, headers={"Retry-After": "90"}))
        before = utcnow()

        (failed,) = await worker.run_once()

        assert failed.state == JobState.FAILED
        assert failed.failure_reason == FailureReason.RATE_LIMITED
        assert failed.attempts == 1
        assert 89 <= (failed.next_run_at - before).total_seconds() <= 91
        assert DomainEventType.SYNC_FAILED.value in event_types(services)

    async def test_server_error_is_retried_later(self, services, worker, connected_org, fake_qbo):
        enqueue_invoice(services)
        fake_qbo.api_failures.append(httpx.Response(503, text="Service Unavailable"))

        (failed,) = await worker.run_once()

        assert failed.state == JobState.FAILED
        assert failed.failure_reason == FailureReason.TRANSIENT_NETWORK
        assert failed.next_run_at > utcnow()
        assert services.storage.read_invoice(ORG_ID, "inv-1").sync.status == SyncStatus.PENDING

    async def test_validation_rejection_goes_dead(self, services, worker, connected_org, fake_qbo):
        enqueue_invoice(services)
        fake_qbo.api_failures.append(
            httpx.Response(
                400,
                json={"Fault": {"Error": [{"Message": "Invalid Reference Id", "code": "2500"}]}},
            )
        )

        (dead,) = await worker.run_once()

        assert dead.state == JobState.DEAD
        assert dead.failure_reason == FailureReason.VALIDATION_REJECTED
        assert "Invalid Reference Id" in dead.error_summary
        assert services.storage.read_invoice(ORG_ID, "inv-1").sync.status == SyncStatus.ERROR
        assert DomainEventType.SYNC_DEAD.value in event_types(services)

    async def test_rejection_with_pending_edit_requeues(self, services, worker, connected_org, fake_qbo):
        enqueue_invoice(services)
        (claimed,) = services.queue.dequeue_batch(10, worker.owner)
        services.queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1", reason="user_fix")
        fake_qbo.api_failures.append(
            httpx.Response(400, json={"Fault": {"Error": [{"Message": "Invalid Reference Id", "code": "2500"}]}})
        )

        requeued = await worker.process_job(claimed)

        assert requeued.state == JobState.PENDING
        assert requeued.attempts == 0
        assert services.storage.read_invoice(ORG_ID, "inv-1").sync.status == SyncStatus.PENDING
        assert DomainEventType.SYNC_DEAD.value not in event_types(services)
        assert DomainEventType.SYNC_FAILED.value in event_types(services)

        (done,) = await worker.run_once()
        assert done.state == JobState.SUCCEEDED

    async def test_rejected_access_token_refreshed_once(self, services, worker, connected_org, fake_qbo):
        fake_qbo.valid_access_tokens.discard("access-0")
        enqueue_invoice(services)

        (done,) = await worker.run_once()

        assert done.state == JobState.SUCCEEDED
        assert fake_qbo.refresh_calls == 1
        assert services.store.get_connection(ORG_ID).access_token == "access-1"

    async def test_reauthorization_halts_org(self, services, worker, fake_qbo):
        services.store.save_initial_connection(ORG_ID, make_tokens(expires_in=60), REALM_ID)
        fake_qbo.refresh_mode = "invalid_grant"
        enqueue_invoice(services)

        (failed,) = await worker.run_once()

        assert failed.state == JobState.FAILED
        assert failed.failure_reason == FailureReason.REAUTHORIZATION_REQUIRED
        assert services.storage.read_invoice(ORG_ID, "inv-1").sync.status == SyncStatus.ERROR
        assert await worker.run_once() == []

    async def test_job_over_budget_times_out(self, services, worker, fake_qbo):
        services.store.save_initial_connection(ORG_ID, make_tokens(expires_in=60), REALM_ID)
        fake_qbo.refresh_delay = 1.0
        worker.settings = services.settings.model_copy(update={"sync_job_budget_seconds": 0.05})
        enqueue_invoice(services)

        (failed,) = await worker.run_once()

        assert failed.state == JobState.FAILED
        assert failed.failure_reason == FailureReason.TIMEOUT

    async def test_disconnect_during_processing_cancels(self, services, worker, connected_org):
        job = enqueue_invoice(services)
        (claimed,) = services.queue.dequeue_batch(10, worker.owner)
        await services.store.disconnect(ORG_ID)

        result = await worker.process_job(claimed)

        assert result.job_id == job.job_id
        assert result.state == JobState.CANCELLED
        assert result.failure_reason == FailureReason.CONNECTION_DISCONNECTED


class TestWorkerPool:
    async def test_pool_drains_queue_and_stops(self, services, connected_org, fake_qbo):
        settings = services.settings.model_copy(update={"worker_poll_interval_seconds": 0.01})
        pool = WorkerPool(
            workers=[services.worker("pool-0"), services.worker("pool-1")],
            refresher=services.refresher,
            settings=settings,
            maintenance=[services.queue.release_expired_leases],
        )
        for i in range(3):
            enqueue_invoice(services, make_invoice(invoice_id=f"inv-{i}", invoice_number=str(1001 + i)))

        await pool.start()
        try:
            for _ in range(200):
                if services.storage.count_jobs_by_state(ORG_ID)[JobState.SUCCEEDED.value] == 3:
                    break
                await asyncio.sleep(0.01)
        finally:
            await pool.stop()

        assert services.storage.count_jobs_by_state(ORG_ID)[JobState.SUCCEEDED.value] == 3
        assert len(fake_qbo.api_requests("POST", "invoice")) == 3
        assert not pool.running
