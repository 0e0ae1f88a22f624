"""
Webhook handler for Intuit real-time notifications.

Intuit sends webhook notifications when entities are created, updated or
deleted in QuickBooks. Deliveries are at-least-once, so every change is
reduced to a deterministic identity that the ingestion layer deduplicates.

Webhook flow:
1. Read the raw request body before any parsing
2. Verify the intuit-signature header (HMAC-SHA256 over the raw bytes)
3. Parse the JSON payload and extract one event per changed entity
4. Hand events to reconciliation (see qbosync.sync.reconciliation)

Two payload shapes are understood:

Legacy data-change notifications::

    {"eventNotifications": [{"realmId": "123",
        "dataChangeEvent": {"entities": [
            {"name": "Invoice", "id": "145", "operation": "Update",
             "lastUpdated": "2016-10-25T16:27:46.000Z"}]}}]}

CloudEvents (a JSON list)::

    [{"specversion": "1.0", "id": "...", "type": "qbo.invoice.updated.v1",
      "time": "2025-01-01T00:00:00Z", "intuitentityid": "145",
      "intuitaccountid": "123"}]

Extraction is pure and tolerant: missing fields fall back to sentinel values,
a malformed entry never affects its siblings, and nothing here raises on
unexpected shapes.
"""

import base64
import binascii
import hashlib
import hmac
import json
from datetime import datetime
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from qbosync.models.enums import WebhookEventKind
from qbosync.utils.timeutil import to_naive_utc, utcnow

logger = structlog.get_logger(__name__)

UNKNOWN = "unknown"

# CloudEvents operations are past tense; identities use the legacy verbs
_OPERATION_ALIASES = {
    "created": "create",
    "updated": "update",
    "deleted": "delete",
    "merged": "merge",
    "voided": "void",
}


class WebhookEvent(BaseModel):
    """
    One entity change extracted from a webhook payload.

    Attributes:
        realm_id: QuickBooks company ID where the change occurred
        entity_name: QuickBooks entity name (lower-cased), e.g. "invoice"
        entity_id: QuickBooks entity ID
        operation: Operation (lower-cased), e.g. "create", "update"
        last_updated: Provider-reported timestamp string, verbatim
        kind: Which payload shape the event came from
    """

    realm_id: str = Field(default=UNKNOWN, description="QuickBooks company ID")
    entity_name: str = Field(default=UNKNOWN, description="Entity name, lower-cased")
    entity_id: str = Field(default=UNKNOWN, description="QuickBooks entity ID")
    operation: str = Field(default=UNKNOWN, description="Operation, lower-cased")
    last_updated: str = Field(default="", description="Provider timestamp, verbatim")
    kind: WebhookEventKind = Field(default=WebhookEventKind.UNKNOWN)

    model_config = {
        "json_schema_extra": {
            "example": {
                "realm_id": "123146096291789",
                "entity_name": "invoice",
                "entity_id": "145",
                "operation": "update",
                "last_updated": "2026-02-10T14:30:00.000Z",
                "kind": "data_change",
            }
        }
    }

    @property
    def identity(self) -> str:
        """Deterministic identity used for exactly-once processing."""
        return "|".join(
            [self.realm_id, self.entity_name, self.entity_id, self.operation, self.last_updated]
        )

    @property
    def last_updated_at(self) -> Optional[datetime]:
        """Parsed timestamp (naive UTC), or None when absent or malformed."""
        if not self.last_updated:
            return None
        try:
            return to_naive_utc(datetime.fromisoformat(self.last_updated.replace("Z", "+00:00")))
        except ValueError:
            return None


class WebhookVerificationError(Exception):
    """Raised when webhook signature verification fails."""

    pass


# =============================================================================
# Verification
# =============================================================================


def compute_signature(raw_body: bytes, shared_secret: str) -> str:
    """Intuit-style signature: base64 of HMAC-SHA256(secret, raw body)."""
    digest = hmac.new(shared_secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(raw_body: bytes, signature_header: Optional[str], shared_secret: str) -> bool:
    """
    Verify a webhook signature over the exact raw request bytes.

    Accepts Intuit's base64 digest and the "sha256=<hex>" form. Comparison is
    constant-time. A missing or malformed header, or an empty secret, is a
    failed verification rather than an error.

    Args:
        raw_body: Request body exactly as received
        signature_header: Value of the intuit-signature header
        shared_secret: Webhook verifier token from the Intuit app settings

    Returns:
        True if the signature matches
    """
    if not shared_secret or not signature_header or not isinstance(raw_body, (bytes, bytearray)):
        return False

    signature = signature_header.strip()
    digest = hmac.new(shared_secret.encode("utf-8"), bytes(raw_body), hashlib.sha256).digest()

    if signature.lower().startswith("sha256="):
        received = signature[len("sha256="):].strip().lower()
        try:
            received_bytes = binascii.unhexlify(received)
        except (binascii.Error, ValueError):
            return False
        return hmac.compare_digest(digest, received_bytes)

    try:
        received_bytes = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        return False
    return hmac.compare_digest(digest, received_bytes)


# =============================================================================
# Extraction
# =============================================================================


def _text(value: Any, default: str = UNKNOWN) -> str:
    if value is None:
        return default
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        text = str(value).strip()
        return text or default
    return default


def _normalize_operation(value: Any) -> str:
    operation = _text(value).lower()
    return _OPERATION_ALIASES.get(operation, operation)


def _data_change_events(payload: dict) -> list[WebhookEvent]:
    events: list[WebhookEvent] = []
    notifications = payload.get("eventNotifications")
    if not isinstance(notifications, list):
        return events

    for notification in notifications:
        if not isinstance(notification, dict):
            events.append(WebhookEvent(kind=WebhookEventKind.UNKNOWN))
            continue

        realm_id = _text(notification.get("realmId"))
        data_change = notification.get("dataChangeEvent")
        entities = data_change.get("entities") if isinstance(data_change, dict) else None
        if not isinstance(entities, list):
            continue

        for entity in entities:
            if not isinstance(entity, dict):
                events.append(WebhookEvent(realm_id=realm_id, kind=WebhookEventKind.UNKNOWN))
                continue
            events.append(
                WebhookEvent(
                    realm_id=realm_id,
                    entity_name=_text(entity.get("name")).lower(),
                    entity_id=_text(entity.get("id")),
                    operation=_normalize_operation(entity.get("operation")),
                    last_updated=_text(entity.get("lastUpdated"), default=""),
                    kind=WebhookEventKind.DATA_CHANGE,
                )
            )

    return events


def _cloud_event(entry: Any) -> WebhookEvent:
    if not isinstance(entry, dict):
        return WebhookEvent(kind=WebhookEventKind.UNKNOWN)

    # type: qbo.<entity>.<operation>.v<version>
    entity_name, operation = UNKNOWN, UNKNOWN
    event_type = _text(entry.get("type"), default="")
    parts = event_type.split(".")
    if len(parts) >= 3 and parts[0].lower() == "qbo":
        entity_name = parts[1].lower() or UNKNOWN
        operation = _normalize_operation(parts[2])

    return WebhookEvent(
        realm_id=_text(entry.get("intuitaccountid")),
        entity_name=entity_name,
        entity_id=_text(entry.get("intuitentityid")),
        operation=operation,
        last_updated=_text(entry.get("time"), default=""),
        kind=WebhookEventKind.CLOUD_EVENT,
    )


def extract_events(payload: Any) -> list[WebhookEvent]:
    """
    Extract entity change events from a parsed webhook payload.

    Pure and total: never raises, preserves payload order, and collapses
    duplicate identities within one payload to their first occurrence.

    Args:
        payload: Parsed JSON payload (legacy object or CloudEvents list)

    Returns:
        List of WebhookEvent objects
    """
    if isinstance(payload, dict):
        candidates = _data_change_events(payload)
    elif isinstance(payload, list):
        candidates = [_cloud_event(entry) for entry in payload]
    else:
        candidates = []

    seen: set[str] = set()
    events: list[WebhookEvent] = []
    for event in candidates:
        if event.identity in seen:
            continue
        seen.add(event.identity)
        events.append(event)

    return events


class WebhookHandler:
    """
    Verifies and parses Intuit webhook notifications with the configured
    verifier token.
    """

    def __init__(self, verifier_token: str):
        """
        Initialize webhook handler.

        Args:
            verifier_token: Webhook verifier token from Intuit app settings,
                used as the HMAC key
        """
        self.verifier_token = verifier_token

        logger.info(
            "webhook_handler_initialized",
            has_verifier_token=bool(verifier_token),
        )

    def verify(self, raw_body: bytes, signature: Optional[str]) -> None:
        """
        Verify a delivery, logging every rejection.

        Raises:
            WebhookVerificationError: If the signature is missing or does not match
        """
        if not self.verifier_token:
            logger.warning("webhook_signature_rejected", reason="verifier_token_not_configured")
            raise WebhookVerificationError("Webhook verifier token is not configured")

        if not signature:
            logger.warning("webhook_signature_rejected", reason="missing_signature")
            raise WebhookVerificationError("Missing intuit-signature header")

        if not verify_signature(raw_body, signature, self.verifier_token):
            logger.warning(
                "webhook_signature_rejected",
                reason="signature_mismatch",
                body_bytes=len(raw_body),
                signature_prefix=signature[:8],
            )
            raise WebhookVerificationError("Webhook signature mismatch")

        logger.debug("webhook_signature_verified", body_bytes=len(raw_body))

    def parse(self, raw_body: bytes) -> list[WebhookEvent]:
        """
        Parse a verified body into events.

        Raises:
            ValueError: If the body is not valid JSON
        """
        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("webhook_payload_invalid_json", error=str(e))
            raise ValueError(f"Webhook body is not valid JSON: {e}") from e

        events = extract_events(payload)
        logger.info("webhook_payload_parsed", event_count=len(events))
        return events

    def generate_webhook_response(self, **counts: int) -> dict[str, Any]:
        """
        Standard webhook acknowledgement.

        Intuit expects a 200 OK to acknowledge receipt; anything else is retried.
        """
        return {
            "success": True,
            "data": counts,
            "timestamp": utcnow().isoformat(),
        }
