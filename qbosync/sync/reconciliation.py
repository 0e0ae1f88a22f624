"""
Webhook ingestion.

Turns a verified Intuit notification into reconciliation jobs. Intuit
delivers at least once and may redeliver, so every event identity is
recorded before anything is enqueued; a redelivered event is counted as a
duplicate and has no further effect. If enqueueing fails the receipt is
forgotten again, so the redelivery is processed.
"""

from datetime import timedelta
from typing import Optional

from qbosync.config import Settings, get_settings
from qbosync.connectors.webhook_handler import UNKNOWN, WebhookEvent, WebhookHandler
from qbosync.models.enums import QBO_ENTITY_NAMES, WebhookEventKind
from qbosync.storage.base import StorageBackend
from qbosync.sync.connection_store import ConnectionStore
from qbosync.sync.queue import SyncQueue
from qbosync.utils.logging import get_logger
from qbosync.utils.timeutil import utcnow

logger = get_logger(__name__)

RECONCILIATION_REASON = "webhook_reconciliation"


class WebhookIngestor:
    """
    Verify, dedupe and enqueue webhook events.

    Args:
        storage: Storage backend (dedup set and invoice lookup)
        store: Connection store for realm -> organization mapping
        queue: Sync job queue
        handler: Webhook verifier/parser
        settings: Dedup retention configuration
    """

    def __init__(
        self,
        storage: StorageBackend,
        store: ConnectionStore,
        queue: SyncQueue,
        handler: WebhookHandler,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage
        self.store = store
        self.queue = queue
        self.handler = handler
        self.settings = settings or get_settings()

    def ingest(self, raw_body: bytes, signature: Optional[str]) -> dict[str, int]:
        """
        Process one webhook delivery.

        Args:
            raw_body: Exact request body bytes
            signature: intuit-signature header value

        Returns:
            Counts: received, duplicates, enqueued, ignored

        Raises:
            WebhookVerificationError: If the signature does not verify
            ValueError: If the verified body is not JSON
        """
        self.handler.verify(raw_body, signature)
        events = self.handler.parse(raw_body)

        counts = {"received": len(events), "duplicates": 0, "enqueued": 0, "ignored": 0}
        received_at = utcnow()

        for event in events:
            if not self.storage.record_webhook_receipt(event.identity, event.realm_id, received_at):
                counts["duplicates"] += 1
                logger.info("webhook_event_duplicate", identity=event.identity)
                continue

            try:
                enqueued = self._reconcile(event)
            except Exception as e:
                # Forget the receipt so Intuit's redelivery is not taken for a duplicate
                self.storage.delete_webhook_receipt(event.identity)
                logger.error("webhook_event_reconcile_failed", identity=event.identity, error=str(e))
                raise

            if enqueued:
                counts["enqueued"] += 1
            else:
                counts["ignored"] += 1

        logger.info("webhook_ingested", **counts)
        return counts

    def _ignore(self, event: WebhookEvent, reason: str) -> bool:
        logger.info(
            "webhook_event_ignored",
            reason=reason,
            realm_id=event.realm_id,
            entity_name=event.entity_name,
            entity_id=event.entity_id,
        )
        return False

    def _reconcile(self, event: WebhookEvent) -> bool:
        """Enqueue a reconciliation job for one event. Returns True when enqueued."""
        if event.kind == WebhookEventKind.UNKNOWN or UNKNOWN in (event.realm_id, event.entity_id):
            return self._ignore(event, "unknown_event")

        entity_type = QBO_ENTITY_NAMES.get(event.entity_name.lower())
        if entity_type is None:
            return self._ignore(event, "unmapped_entity")

        connection = self.store.get_connection_by_realm(event.realm_id)
        if connection is None or not connection.is_active:
            return self._ignore(event, "unknown_realm")

        invoice = self.storage.find_invoice_by_external_id(connection.org_id, event.entity_id)
        if invoice is None:
            return self._ignore(event, "no_local_entity")

        job = self.queue.enqueue(
            connection.org_id,
            entity_type,
            invoice.invoice_id,
            reason=RECONCILIATION_REASON,
            replace_reason=False,
        )
        logger.info(
            "webhook_event_enqueued",
            org_id=connection.org_id,
            job_id=job.job_id,
            local_id=invoice.invoice_id,
            operation=event.operation,
        )
        return True

    def purge_receipts(self, older_than_days: Optional[int] = None) -> int:
        """Drop dedup entries past the retention window."""
        days = self.settings.webhook_dedup_retention_days if older_than_days is None else older_than_days
        purged = self.storage.purge_webhook_receipts(utcnow() - timedelta(days=days))
        if purged:
            logger.info("webhook_receipts_purged", count=purged)
        return purged
