"""
Sync worker.

Drains claimed jobs, performs the QuickBooks call and resolves every outcome
into a job state transition:

1. Load the local entity as of claim time (missing entity: nothing to sync)
2. Obtain a fresh access token (reauthorization halts the organization)
3. No external id yet: create the entity
4. External id known: read it for its SyncToken and update it; a record
   deleted in QuickBooks is created again. A webhook echo of our own last
   write (SyncToken unchanged, no local edit since) writes nothing
5. Network, 5xx and 429 responses: failed with backoff (429 honors Retry-After)
6. Duplicate DocNumber: the invoice takes the next free number, once
7. Other validation rejections: dead, with the reason kept for diagnostics

Each job is time-boxed; a job that overruns its budget is a transient
failure, and the lease is the backstop if the process dies.
"""

import asyncio
from typing import Optional
from uuid import NAMESPACE_OID, uuid5

from qbosync.config import Settings, get_settings
from qbosync.connectors.qbo_client import FAULT_DUPLICATE_DOC_NUMBER, AccessTokenRejected, QBOClient
from qbosync.models.enums import DomainEventType, FailureReason, JobState, SyncStatus
from qbosync.models.invoices import InvoiceSnapshot, SyncProjection
from qbosync.models.jobs import SyncJob
from qbosync.storage.base import StorageBackend
from qbosync.sync.connection_store import ConnectionStore
from qbosync.sync.entities import QBO_ENTITY_TYPES, InvoicePayloadBuilder
from qbosync.sync.errors import (
    JobTimeoutError,
    LeaseLostError,
    NotConnectedError,
    NotFoundRemote,
    RateLimited,
    ReauthorizationRequired,
    SyncError,
    ValidationRejected,
)
from qbosync.sync.events import EventEmitter
from qbosync.sync.invoice_numbers import InvoiceNumberService
from qbosync.sync.queue import SyncQueue
from qbosync.sync.reconciliation import RECONCILIATION_REASON
from qbosync.sync.token_refresher import TokenRefresher, default_owner
from qbosync.utils.logging import get_logger
from qbosync.utils.timeutil import utcnow

logger = get_logger(__name__)


def _echo_of_last_push(invoice: InvoiceSnapshot, remote: dict) -> bool:
    """
    True when a webhook only reports our own last write.

    The remote SyncToken must still be the one we stored, and the local
    invoice must not have changed since that sync.
    """
    projection = invoice.sync
    if projection.sync_token is None or str(remote.get("SyncToken")) != projection.sync_token:
        return False
    if invoice.updated_at is None:
        return True
    return projection.last_synced_at is not None and invoice.updated_at <= projection.last_synced_at


class SyncWorker:
    """
    Processes sync jobs under one lease owner id.

    Args:
        storage: Storage backend
        store: Connection store
        queue: Sync job queue
        refresher: Token refresher
        qbo_client: Shared QuickBooks client
        settings: Budget and batch configuration
        owner: Lease owner id for claimed jobs
        invoice_numbers: Renumbers invoices QuickBooks rejects as duplicates
    """

    def __init__(
        self,
        storage: StorageBackend,
        store: ConnectionStore,
        queue: SyncQueue,
        refresher: TokenRefresher,
        qbo_client: QBOClient,
        settings: Optional[Settings] = None,
        owner: Optional[str] = None,
        invoice_numbers: Optional[InvoiceNumberService] = None,
    ):
        self.storage = storage
        self.store = store
        self.queue = queue
        self.refresher = refresher
        self.qbo_client = qbo_client
        self.settings = settings or get_settings()
        self.owner = owner or default_owner()
        self.invoice_numbers = invoice_numbers or InvoiceNumberService(
            storage, settings=self.settings, refresher=refresher, qbo_client=qbo_client
        )

    @property
    def events(self) -> EventEmitter:
        return self.queue.events

    async def run_once(self, limit: Optional[int] = None) -> list[SyncJob]:
        """Claim one batch and process it sequentially."""
        jobs = self.queue.dequeue_batch(limit or self.settings.sync_batch_size, self.owner)
        results = []
        for job in jobs:
            results.append(await self.process_job(job))
        return results

    async def process_job(self, job: SyncJob) -> SyncJob:
        """
        Process one claimed job within the wall-clock budget.

        Never raises for sync outcomes; the returned job carries the result.
        """
        log = logger.bind(job_id=job.job_id, org_id=job.org_id, local_id=job.local_id)
        log.info("sync_job_started", entity_type=job.entity_type.value, attempts=job.attempts)

        try:
            return await asyncio.wait_for(self._process(job), timeout=self.settings.sync_job_budget_seconds)
        except asyncio.TimeoutError:
            log.warning("sync_job_timeout", budget_seconds=self.settings.sync_job_budget_seconds)
            return self._fail(job, JobTimeoutError("Sync job exceeded its time budget"))
        except LeaseLostError:
            log.warning("sync_job_abandoned", reason="lease_lost")
            return self.storage.get_job(job.job_id) or job

    async def _process(self, job: SyncJob) -> SyncJob:
        try:
            return await self._push(job)
        except LeaseLostError:
            raise
        except ReauthorizationRequired as e:
            self._set_projection(job, SyncStatus.ERROR)
            return self._fail(job, e)
        except SyncError as e:
            if e.retryable:
                return self._fail(job, e)
            return self._kill(job, e)
        except NotConnectedError:
            return self._fail(
                job,
                "QuickBooks connection was disconnected",
                reason=FailureReason.CONNECTION_DISCONNECTED,
            )
        except Exception as e:
            logger.exception("sync_job_unexpected_error", job_id=job.job_id, error=str(e))
            return self._fail(job, f"Unexpected error: {e}")

    async def _push(self, job: SyncJob) -> SyncJob:
        entity_name = QBO_ENTITY_TYPES[job.entity_type]

        invoice = self.storage.read_invoice(job.org_id, job.local_id)
        if invoice is None:
            logger.info(
                "sync_job_skipped",
                job_id=job.job_id,
                local_id=job.local_id,
                failure_reason=FailureReason.PERMANENT_LOCAL.value,
            )
            done = self.queue.mark_succeeded(job.job_id, self.owner)
            self.events.emit(
                job.org_id,
                DomainEventType.SYNC_SKIPPED,
                job.entity_type.value,
                job.local_id,
                {"failure_reason": FailureReason.PERMANENT_LOCAL.value, "reason": job.reason},
                job_id=job.job_id,
            )
            return done

        connection = self.store.get_connection(job.org_id)
        grant = await self.refresher.ensure_fresh_access_token(job.org_id)

        token_retried = False
        renumbered = False
        while True:
            company = self.qbo_client.company(grant.realm_id, grant.access_token)
            builder = InvoicePayloadBuilder(company, connection.settings)
            request_id = job.idempotency_key
            if renumbered:
                # A fresh create key, or QuickBooks replays the rejected request
                request_id = uuid5(NAMESPACE_OID, f"{job.idempotency_key}:{invoice.invoice_number}").hex
            try:
                outcome, entity = await self._create_or_update(
                    job, invoice, entity_name, company, builder, request_id
                )
                break
            except AccessTokenRejected:
                # One inline retry when the API rejects a token we believed valid
                if token_retried:
                    raise
                token_retried = True
                logger.info("access_token_rejected_refreshing", org_id=job.org_id)
                grant = await self.refresher.ensure_fresh_access_token(
                    job.org_id, rejected_token=grant.access_token
                )
            except ValidationRejected as e:
                if e.fault_code != FAULT_DUPLICATE_DOC_NUMBER or renumbered:
                    raise
                invoice = await self._renumber(job, invoice)
                renumbered = True

        external_id = str(entity["Id"])
        self.storage.update_sync_projection(
            job.org_id,
            job.local_id,
            SyncProjection(
                external_id=external_id,
                sync_token=str(entity.get("SyncToken", "0")),
                last_synced_at=utcnow(),
                status=SyncStatus.SYNCED,
            ),
        )
        done = self.queue.mark_succeeded(job.job_id, self.owner, external_id=external_id)

        payload = {"external_id": external_id, "reason": job.reason}
        if outcome == DomainEventType.SYNC_SKIPPED:
            payload["skip_reason"] = "remote_unchanged"
        self.events.emit(job.org_id, outcome, job.entity_type.value, job.local_id, payload, job_id=job.job_id)
        return done

    async def _create_or_update(
        self, job, invoice, entity_name, company, builder, request_id
    ) -> tuple[DomainEventType, dict]:
        """Returns (event type, entity); SYNC_SKIPPED when nothing was written."""
        external_id = invoice.external_id or job.external_id

        if external_id:
            try:
                remote = await company.get_entity(entity_name, external_id)
                if job.reason == RECONCILIATION_REASON and _echo_of_last_push(invoice, remote):
                    logger.info("sync_reconciliation_unchanged", job_id=job.job_id, external_id=external_id)
                    return DomainEventType.SYNC_SKIPPED, remote
                payload = await builder.build(invoice, external_id=external_id, sync_token=remote.get("SyncToken"))
                entity = await company.update_entity(entity_name, payload)
                logger.info("sync_entity_updated", job_id=job.job_id, external_id=external_id)
                return DomainEventType.ENTITY_UPDATED, entity
            except NotFoundRemote:
                logger.warning(
                    "sync_remote_missing_recreating",
                    job_id=job.job_id,
                    external_id=external_id,
                )

        payload = await builder.build(invoice)
        entity = await company.create_entity(entity_name, payload, request_id=request_id)
        logger.info("sync_entity_created", job_id=job.job_id, external_id=entity.get("Id"))
        return DomainEventType.ENTITY_CREATED, entity

    async def _renumber(self, job: SyncJob, invoice: InvoiceSnapshot) -> InvoiceSnapshot:
        """Give the invoice the next free number after QuickBooks reports a duplicate."""
        reservation = await self.invoice_numbers.reserve(job.org_id)
        renumbered = invoice.model_copy(update={"invoice_number": reservation.reserved_number})
        self.storage.write_invoice(renumbered)
        self.invoice_numbers.mark_used(job.org_id, reservation.reservation_id, invoice.invoice_id)

        logger.warning(
            "sync_invoice_renumbered",
            job_id=job.job_id,
            previous_number=invoice.invoice_number,
            invoice_number=renumbered.invoice_number,
        )
        self.events.emit(
            job.org_id,
            DomainEventType.INVOICE_NUMBER_CHANGED,
            job.entity_type.value,
            job.local_id,
            {"previous_number": invoice.invoice_number, "invoice_number": renumbered.invoice_number},
            job_id=job.job_id,
        )
        return renumbered

    def _set_projection(self, job: SyncJob, status: SyncStatus) -> None:
        self.storage.update_sync_projection(job.org_id, job.local_id, SyncProjection(status=status))

    def _fail(self, job: SyncJob, error, reason: Optional[FailureReason] = None) -> SyncJob:
        retry_after = error.retry_after if isinstance(error, RateLimited) else None
        try:
            failed = self.queue.mark_failed(job.job_id, self.owner, error, retry_after=retry_after, reason=reason)
        except LeaseLostError:
            return self.storage.get_job(job.job_id) or job

        if failed.state == JobState.DEAD:
            self._set_projection(job, SyncStatus.ERROR)
            event_type = DomainEventType.SYNC_DEAD
        else:
            event_type = DomainEventType.SYNC_FAILED
        self._emit_failure(failed, event_type)
        return failed

    def _kill(self, job: SyncJob, error: SyncError) -> SyncJob:
        try:
            dead = self.queue.mark_dead(job.job_id, self.owner, error)
        except LeaseLostError:
            return self.storage.get_job(job.job_id) or job

        if dead.state == JobState.DEAD:
            self._set_projection(job, SyncStatus.ERROR)
            self._emit_failure(dead, DomainEventType.SYNC_DEAD)
        else:
            # A newer local edit arrived mid-flight; the job was requeued for it
            self._set_projection(job, SyncStatus.PENDING)
            self._emit_failure(dead, DomainEventType.SYNC_FAILED)
        return dead

    def _emit_failure(self, job: SyncJob, event_type: DomainEventType) -> None:
        self.events.emit(
            job.org_id,
            event_type,
            job.entity_type.value,
            job.local_id,
            {
                "failure_reason": job.failure_reason.value if job.failure_reason else None,
                "attempts": job.attempts,
                "error": job.error_summary,
            },
            job_id=job.job_id,
        )


class WorkerPool:
    """
    Runs N polling workers plus a maintenance task.

    Each polling task owns a distinct lease owner id. The maintenance task
    runs the token keepalive, releases lapsed leases, expires invoice number
    reservations and trims the webhook dedup set.
    """

    def __init__(
        self,
        workers: list[SyncWorker],
        refresher: TokenRefresher,
        settings: Optional[Settings] = None,
        maintenance: Optional[list] = None,
    ):
        self.workers = workers
        self.refresher = refresher
        self.settings = settings or get_settings()
        self.maintenance = maintenance or []
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._poll_loop(worker), name=f"sync-worker-{i}")
            for i, worker in enumerate(self.workers)
        ]
        self._tasks.append(asyncio.create_task(self._maintenance_loop(), name="sync-maintenance"))
        logger.info("worker_pool_started", workers=len(self.workers))

    async def stop(self) -> None:
        self._stopping.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("worker_pool_stopped")

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _poll_loop(self, worker: SyncWorker) -> None:
        while not self._stopping.is_set():
            try:
                processed = await worker.run_once()
            except Exception as e:
                logger.exception("worker_poll_failed", owner=worker.owner, error=str(e))
                processed = []
            if not processed:
                await self._sleep(self.settings.worker_poll_interval_seconds)

    async def _maintenance_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.refresher.refresh_due_connections()
                for task in self.maintenance:
                    task()
            except Exception as e:
                logger.exception("worker_maintenance_failed", error=str(e))
            await self._sleep(self.settings.worker_keepalive_interval_seconds)
