"""
Intuit webhook receiver.

The signature is computed over the exact request bytes, so the body is read
raw and only parsed after verification. Intuit retries any non-200 answer,
which is why a verified delivery is acknowledged as soon as its events are
recorded and enqueued.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from qbosync.connectors.webhook_handler import WebhookVerificationError
from qbosync.services import SyncServices, get_sync_services
from qbosync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.post("/qbo")
async def receive_qbo_webhook(
    request: Request,
    intuit_signature: Optional[str] = Header(default=None, alias="intuit-signature"),
    services: SyncServices = Depends(get_sync_services),
):
    """
    Receive a QuickBooks webhook delivery.

    Returns 401 for a missing or invalid signature, 400 for a body that is
    not JSON, and 200 once every event is recorded.
    """
    raw_body = await request.body()

    try:
        counts = services.webhooks.ingest(raw_body, intuit_signature)
    except WebhookVerificationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return services.webhooks.handler.generate_webhook_response(**counts)
