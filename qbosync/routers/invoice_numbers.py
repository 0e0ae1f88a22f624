"""
Invoice number reservation router.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from qbosync.auth.dependencies import get_current_org_id
from qbosync.services import SyncServices, get_sync_services
from qbosync.sync.errors import ConflictError
from qbosync.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class ReserveRequest(BaseModel):
    number: Optional[str] = Field(default=None, min_length=1, max_length=21, description="Specific number to claim")


class UseRequest(BaseModel):
    invoice_id: str = Field(..., min_length=1)


def _missing(reservation_id: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Reservation {reservation_id} not found")


@router.post("/reserve")
async def reserve_invoice_number(
    request: Optional[ReserveRequest] = None,
    org_id: str = Depends(get_current_org_id),
    services: SyncServices = Depends(get_sync_services),
):
    """
    Reserve the next free invoice number, or a specific one.
    """
    number = request.number if request else None
    try:
        reservation = await services.invoice_numbers.reserve(org_id, number)
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return {"success": True, "data": reservation.model_dump(mode="json")}


@router.post("/{reservation_id}/use")
async def use_invoice_number(
    reservation_id: str,
    request: UseRequest,
    org_id: str = Depends(get_current_org_id),
    services: SyncServices = Depends(get_sync_services),
):
    try:
        updated = services.invoice_numbers.mark_used(org_id, reservation_id, request.invoice_id)
    except KeyError:
        raise _missing(reservation_id)
    return {"success": True, "data": {"used": updated}}


@router.post("/{reservation_id}/release")
async def release_invoice_number(
    reservation_id: str,
    org_id: str = Depends(get_current_org_id),
    services: SyncServices = Depends(get_sync_services),
):
    try:
        released = services.invoice_numbers.release(org_id, reservation_id)
    except KeyError:
        raise _missing(reservation_id)
    return {"success": True, "data": {"released": released}}
