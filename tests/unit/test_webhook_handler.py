"""
Unit tests for webhook signature verification and event extraction.
"""

import hashlib
import hmac
import json

import pytest
from structlog.testing import capture_logs

from qbosync.connectors.webhook_handler import (
    UNKNOWN,
    WebhookHandler,
    WebhookVerificationError,
    compute_signature,
    extract_events,
    verify_signature,
)
from qbosync.models.enums import WebhookEventKind
from tests.factories import REALM_ID, VERIFIER_TOKEN, data_change_payload, entity_change, sign


# =============================================================================
# verify_signature
# =============================================================================


class TestVerifySignature:
    body = json.dumps(data_change_payload([entity_change("145")])).encode()

    def test_valid_base64_signature(self):
        assert verify_signature(self.body, sign(self.body), VERIFIER_TOKEN) is True

    def test_valid_hex_signature_with_prefix(self):
        digest = hmac.new(VERIFIER_TOKEN.encode(), self.body, hashlib.sha256).hexdigest()
        assert verify_signature(self.body, f"sha256={digest}", VERIFIER_TOKEN) is True

    def test_compute_signature_matches_intuit_format(self):
        assert compute_signature(self.body, VERIFIER_TOKEN) == sign(self.body)

    def test_single_altered_byte_rejected(self):
        signature = sign(self.body)
        tampered = bytearray(self.body)
        tampered[10] ^= 0x01
        assert verify_signature(bytes(tampered), signature, VERIFIER_TOKEN) is False

    def test_reserialized_json_rejected(self):
        """Verification is over the raw bytes, not the parsed document."""
        signature = sign(self.body)
        reserialized = json.dumps(json.loads(self.body), indent=2).encode()
        assert verify_signature(reserialized, signature, VERIFIER_TOKEN) is False

    def test_wrong_secret_rejected(self):
        assert verify_signature(self.body, sign(self.body, "other-secret"), VERIFIER_TOKEN) is False

    @pytest.mark.parametrize("header", [None, "", "   ", "not base64!!", "sha256=zz", "sha256="])
    def test_missing_or_malformed_header_is_false(self, header):
        assert verify_signature(self.body, header, VERIFIER_TOKEN) is False

    def test_empty_secret_is_false(self):
        assert verify_signature(self.body, sign(self.body, ""), "") is False


class TestWebhookHandler:
    def test_verify_logs_warning_on_rejection(self):
        handler = WebhookHandler(VERIFIER_TOKEN)
        with capture_logs() as logs:
            with pytest.raises(WebhookVerificationError):
                handler.verify(b"{}", sign(b"{ }"))

        rejected = [entry for entry in logs if entry["event"] == "webhook_signature_rejected"]
        assert len(rejected) == 1
        assert rejected[0]["log_level"] == "warning"
        assert rejected[0]["reason"] == "signature_mismatch"

    def test_rejection_log_does_not_carry_full_signature(self):
        handler = WebhookHandler(VERIFIER_TOKEN)
        signature = sign(b"{ }")
        with capture_logs() as logs:
            with pytest.raises(WebhookVerificationError):
                handler.verify(b"{}", signature)

        (rejected,) = [entry for entry in logs if entry["event"] == "webhook_signature_rejected"]
        assert "signature" not in rejected
        assert rejected["signature_prefix"] == signature[:8]
        assert all(signature not in str(value) for value in rejected.values())

    def test_verify_rejects_when_token_not_configured(self):
        handler = WebhookHandler("")
        with pytest.raises(WebhookVerificationError):
            handler.verify(b"{}", sign(b"{}", ""))

    def test_parse_invalid_json_raises_value_error(self):
        handler = WebhookHandler(VERIFIER_TOKEN)
        with pytest.raises(ValueError):
            handler.parse(b"{not json")

    def test_response_envelope(self):
        response = WebhookHandler(VERIFIER_TOKEN).generate_webhook_response(received=2, enqueued=1)
        assert response["success"] is True
        assert response["data"] == {"received": 2, "enqueued": 1}


# =============================================================================
# extract_events
# =============================================================================


class TestExtractEvents:
    def test_legacy_payload(self):
        events = extract_events(
            data_change_payload([entity_change("145"), entity_change("7", name="Customer", operation="Create")])
        )

        assert [(e.entity_name, e.entity_id, e.operation) for e in events] == [
            ("invoice", "145", "update"),
            ("customer", "7", "create"),
        ]
        assert all(e.realm_id == REALM_ID for e in events)
        assert all(e.kind == WebhookEventKind.DATA_CHANGE for e in events)

    def test_identity_format(self):
        event = extract_events(data_change_payload([entity_change("145")]))[0]
        assert event.identity == f"{REALM_ID}|invoice|145|update|2026-03-02T10:15:00.000Z"

    def test_cloud_events_payload(self):
        payload = [
            {
                "specversion": "1.0",
                "id": "88cd52a6",
                "type": "qbo.invoice.updated.v1",
                "time": "2026-03-02T10:15:00.000Z",
                "intuitentityid": "145",
                "intuitaccountid": REALM_ID,
            }
        ]
        (event,) = extract_events(payload)

        assert event.kind == WebhookEventKind.CLOUD_EVENT
        assert event.entity_name == "invoice"
        assert event.operation == "update"
        # Same change in either format yields the same identity
        assert event.identity == extract_events(data_change_payload([entity_change("145")]))[0].identity

    def test_malformed_entry_does_not_affect_siblings(self):
        payload = data_change_payload([entity_change("1"), "garbage", {"name": "Invoice"}, entity_change("2")])
        events = extract_events(payload)

        assert [e.entity_id for e in events if e.kind == WebhookEventKind.DATA_CHANGE and e.entity_id != UNKNOWN] == [
            "1",
            "2",
        ]
        assert any(e.kind == WebhookEventKind.UNKNOWN for e in events)
        missing = [e for e in events if e.entity_name == "invoice" and e.entity_id == UNKNOWN]
        assert missing and missing[0].operation == UNKNOWN and missing[0].last_updated == ""

    def test_duplicates_within_payload_collapse_in_order(self):
        payload = data_change_payload([entity_change("2"), entity_change("1"), entity_change("2")])
        assert [e.entity_id for e in extract_events(payload)] == ["2", "1"]

    @pytest.mark.parametrize("payload", [None, 42, "text", {}, {"eventNotifications": "x"}, []])
    def test_non_payloads_yield_nothing(self, payload):
        assert extract_events(payload) == []

    def test_last_updated_parsed(self):
        event = extract_events(data_change_payload([entity_change("145")]))[0]
        assert event.last_updated_at is not None
        assert event.last_updated_at.tzinfo is None
