"""
Sync service wiring.

Builds the sync core once per process around a shared storage backend and
QuickBooks client. Routers receive the bundle through `get_sync_services`,
which tests override with a bundle built on a temporary database and a
mocked Intuit transport.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import httpx

from qbosync.config import Settings, get_settings
from qbosync.connectors.qbo_client import QBOClient
from qbosync.connectors.webhook_handler import WebhookHandler
from qbosync.storage import get_storage
from qbosync.storage.base import StorageBackend
from qbosync.sync.connection_store import ConnectionStore
from qbosync.sync.diagnostics import SyncDiagnosticsService
from qbosync.sync.events import EventEmitter
from qbosync.sync.invoice_numbers import InvoiceNumberService
from qbosync.sync.queue import BackoffPolicy, SyncQueue
from qbosync.sync.reconciliation import WebhookIngestor
from qbosync.sync.token_refresher import TokenRefresher, default_owner
from qbosync.sync.worker import SyncWorker, WorkerPool
from qbosync.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class SyncServices:
    """Every sync component, sharing one storage backend and client."""

    settings: Settings
    storage: StorageBackend
    qbo_client: QBOClient
    events: EventEmitter
    store: ConnectionStore
    refresher: TokenRefresher
    queue: SyncQueue
    webhooks: WebhookIngestor
    diagnostics: SyncDiagnosticsService
    invoice_numbers: InvoiceNumberService

    def worker(self, owner: Optional[str] = None) -> SyncWorker:
        return SyncWorker(
            storage=self.storage,
            store=self.store,
            queue=self.queue,
            refresher=self.refresher,
            qbo_client=self.qbo_client,
            settings=self.settings,
            owner=owner,
            invoice_numbers=self.invoice_numbers,
        )

    def worker_pool(self, concurrency: Optional[int] = None, owner: Optional[str] = None) -> WorkerPool:
        """N workers with owner ids `{owner}-{i}` plus the maintenance task."""
        base = owner or default_owner()
        count = concurrency or self.settings.worker_concurrency
        return WorkerPool(
            workers=[self.worker(f"{base}-{i}") for i in range(count)],
            refresher=self.refresher,
            settings=self.settings,
            maintenance=[
                self.queue.release_expired_leases,
                self.invoice_numbers.expire_stale,
                self.webhooks.purge_receipts,
            ],
        )

    async def aclose(self) -> None:
        await self.qbo_client.aclose()


def build_sync_services(
    storage: Optional[StorageBackend] = None,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    policy: Optional[BackoffPolicy] = None,
) -> SyncServices:
    """
    Assemble the sync core.

    Args:
        storage: Storage backend (defaults to the configured one)
        settings: Settings (defaults to the cached environment settings)
        transport: httpx transport for the QuickBooks client
        policy: Backoff policy (defaults from settings)
    """
    settings = settings or get_settings()
    storage = storage or get_storage()

    qbo_client = QBOClient.from_settings(settings, transport=transport)
    events = EventEmitter(storage)
    store = ConnectionStore(storage, events=events, qbo_client=qbo_client)
    refresher = TokenRefresher(store, qbo_client, settings=settings)
    queue = SyncQueue(storage, settings=settings, policy=policy, events=events)

    services = SyncServices(
        settings=settings,
        storage=storage,
        qbo_client=qbo_client,
        events=events,
        store=store,
        refresher=refresher,
        queue=queue,
        webhooks=WebhookIngestor(
            storage,
            store,
            queue,
            WebhookHandler(settings.intuit_webhook_verifier_token),
            settings=settings,
        ),
        diagnostics=SyncDiagnosticsService(storage, store, queue, settings=settings),
        invoice_numbers=InvoiceNumberService(storage, settings=settings, refresher=refresher, qbo_client=qbo_client),
    )
    logger.info("sync_services_built", environment=settings.intuit_env)
    return services


@lru_cache
def get_sync_services() -> SyncServices:
    """Process-wide sync services (FastAPI dependency)."""
    return build_sync_services()
