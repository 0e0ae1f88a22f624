"""
QuickBooks connection management router.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ValidationError

from qbosync.auth.dependencies import get_current_org_id
from qbosync.models.enums import CustomerSyncMode
from qbosync.services import SyncServices, get_sync_services
from qbosync.sync.errors import NotConnectedError, ReauthorizationRequired, TransientNetworkError
from qbosync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class ConnectionSettingsUpdate(BaseModel):
    """Partial settings update; omitted fields are left unchanged."""

    auto_sync: Optional[bool] = None
    account_mapping: Optional[dict[str, str]] = None
    default_item_id: Optional[str] = None
    default_income_account_id: Optional[str] = None
    customer_sync_mode: Optional[CustomerSyncMode] = None


def _not_connected(e: NotConnectedError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/status")
async def get_connection_status(
    org_id: str = Depends(get_current_org_id),
    services: SyncServices = Depends(get_sync_services),
):
    """
    Get QuickBooks connection status for the calling organization.
    """
    logger.info("connection_status_check", org_id=org_id)

    connection = services.store.find_connection(org_id)
    if connection is None:
        return {"success": True, "data": {"connected": False}}

    return {
        "success": True,
        "data": {
            "connected": True,
            "status": connection.status.value,
            "realm_id": connection.realm_id,
            "company_name": connection.company_name,
            "token_expires_at": connection.access_token_expires_at.isoformat(),
            "last_refreshed_at": connection.last_refreshed_at.isoformat() if connection.last_refreshed_at else None,
            "last_error": connection.last_error,
            "settings": connection.settings.model_dump(mode="json"),
            "pending_jobs": services.store.pending_job_count(org_id),
        },
    }


@router.post("/disconnect")
async def disconnect_quickbooks(
    org_id: str = Depends(get_current_org_id),
    services: SyncServices = Depends(get_sync_services),
):
    """
    Disconnect QuickBooks.
    Cancels outstanding sync jobs and revokes tokens at Intuit (best effort).
    """
    try:
        connection = await services.store.disconnect(org_id)
    except NotConnectedError as e:
        raise _not_connected(e)

    return {
        "success": True,
        "data": {
            "connection_id": connection.connection_id,
            "status": connection.status.value,
            "disconnected_at": connection.disconnected_at.isoformat(),
        },
    }


@router.patch("/settings")
async def update_connection_settings(
    update: ConnectionSettingsUpdate,
    org_id: str = Depends(get_current_org_id),
    services: SyncServices = Depends(get_sync_services),
):
    """
    Update sync settings (auto sync flag, account mapping, customer mode).
    """
    try:
        settings = services.store.update_settings(org_id, update.model_dump(exclude_unset=True))
    except NotConnectedError as e:
        raise _not_connected(e)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.errors())

    return {"success": True, "data": settings.model_dump(mode="json")}


@router.post("/refresh")
async def refresh_connection(
    org_id: str = Depends(get_current_org_id),
    services: SyncServices = Depends(get_sync_services),
):
    """
    Force an access token refresh.
    Useful to check that the stored refresh token is still accepted.
    """
    try:
        current = services.store.get_connection(org_id)
        grant = await services.refresher.ensure_fresh_access_token(org_id, rejected_token=current.access_token)
    except NotConnectedError as e:
        raise _not_connected(e)
    except ReauthorizationRequired as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except TransientNetworkError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)

    return {"success": True, "data": {"token_expires_at": grant.expires_at.isoformat()}}
