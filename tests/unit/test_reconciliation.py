"""
Unit tests for webhook ingestion and reconciliation enqueueing.
"""

import json

import pytest

from qbosync.connectors.webhook_handler import WebhookVerificationError
from qbosync.models.enums import EntityType, JobState
from qbosync.models.invoices import SyncProjection
from qbosync.storage.base import StorageError
from qbosync.sync.reconciliation import RECONCILIATION_REASON
from tests.factories import ORG_ID, REALM_ID, data_change_payload, entity_change, make_invoice, sign


def delivery(entities, realm_id=REALM_ID):
    body = json.dumps(data_change_payload(entities, realm_id)).encode()
    return body, sign(body)


@pytest.fixture
def synced_invoice(services, connected_org):
    invoice = make_invoice(sync=SyncProjection(external_id="145", sync_token="3"))
    services.storage.write_invoice(invoice)
    return invoice


class TestIngest:
    def test_known_invoice_enqueues_reconciliation(self, services, synced_invoice):
        counts = services.webhooks.ingest(*delivery([entity_change("145")]))

        assert counts == {"received": 1, "duplicates": 0, "enqueued": 1, "ignored": 0}
        job = services.storage.find_active_job(ORG_ID, EntityType.INVOICE, "inv-1")
        assert job.state == JobState.PENDING
        assert job.reason == RECONCILIATION_REASON

    def test_redelivery_is_a_duplicate(self, services, synced_invoice):
        body, signature = delivery([entity_change("145")])
        services.webhooks.ingest(body, signature)

        counts = services.webhooks.ingest(body, signature)

        assert counts == {"received": 1, "duplicates": 1, "enqueued": 0, "ignored": 0}
        assert services.storage.count_jobs_by_state(ORG_ID)[JobState.PENDING.value] == 1

    def test_new_timestamp_is_a_new_event(self, services, synced_invoice):
        services.webhooks.ingest(*delivery([entity_change("145")]))
        counts = services.webhooks.ingest(*delivery([entity_change("145", last_updated="2026-03-02T11:00:00.000Z")]))

        assert counts["enqueued"] == 1
        # Both deliveries coalesce into the same pending job
        assert services.storage.count_jobs_by_state(ORG_ID)[JobState.PENDING.value] == 1

    def test_unmatched_events_ignored(self, services, synced_invoice):
        counts = services.webhooks.ingest(
            *delivery([entity_change("999"), entity_change("7", name="Customer"), {"name": "Invoice"}])
        )

        assert counts == {"received": 3, "duplicates": 0, "enqueued": 0, "ignored": 3}

    def test_unknown_realm_ignored(self, services, synced_invoice):
        counts = services.webhooks.ingest(*delivery([entity_change("145")], realm_id="1111"))
        assert counts["ignored"] == 1

    async def test_disconnected_realm_ignored(self, services, synced_invoice):
        await services.store.disconnect(ORG_ID)

        counts = services.webhooks.ingest(*delivery([entity_change("145")]))

        assert counts["ignored"] == 1
        assert services.storage.count_jobs_by_state(ORG_ID)[JobState.PENDING.value] == 0

    def test_bad_signature_rejected_before_recording(self, services, synced_invoice):
        body, signature = delivery([entity_change("145")])
        with pytest.raises(WebhookVerificationError):
            services.webhooks.ingest(body, sign(b"other body"))

        # Nothing was recorded, so the genuine delivery still counts
        assert services.webhooks.ingest(body, signature)["enqueued"] == 1

    def test_failed_enqueue_lets_redelivery_through(self, services, synced_invoice, monkeypatch):
        body, signature = delivery([entity_change("145")])
        enqueue = services.queue.enqueue
        calls = []

        def flaky_enqueue(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise StorageError("Failed to upsert sync job")
            return enqueue(*args, **kwargs)

        monkeypatch.setattr(services.queue, "enqueue", flaky_enqueue)

        with pytest.raises(StorageError):
            services.webhooks.ingest(body, signature)

        counts = services.webhooks.ingest(body, signature)
        assert counts == {"received": 1, "duplicates": 0, "enqueued": 1, "ignored": 0}
        assert services.storage.find_active_job(ORG_ID, EntityType.INVOICE, "inv-1") is not None

    def test_webhook_does_not_replace_local_reason(self, services, synced_invoice):
        services.queue.enqueue(ORG_ID, EntityType.INVOICE, "inv-1", reason="local_mutation")

        services.webhooks.ingest(*delivery([entity_change("145")]))

        job = services.storage.find_active_job(ORG_ID, EntityType.INVOICE, "inv-1")
        assert job.reason == "local_mutation"

    def test_invalid_json_raises_value_error(self, services):
        body = b"{not json"
        with pytest.raises(ValueError):
            services.webhooks.ingest(body, sign(body))


def test_purged_receipts_are_accepted_again(services, synced_invoice):
    body, signature = delivery([entity_change("145")])
    services.webhooks.ingest(body, signature)

    assert services.webhooks.purge_receipts(older_than_days=0) == 1

    counts = services.webhooks.ingest(body, signature)
    assert counts["duplicates"] == 0
    assert counts["enqueued"] == 1
