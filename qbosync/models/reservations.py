"""Invoice number reservation model."""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from qbosync.utils.timeutil import utcnow

from .enums import ReservationStatus


class InvoiceNumberReservation(BaseModel):
    """
    A claim on an invoice number (QuickBooks DocNumber) for one organization.

    Only one reservation per (org, number) may be active at a time; used
    reservations stay unique through the invoice itself.
    """

    reservation_id: str = Field(default_factory=lambda: str(uuid4()))
    org_id: str
    reserved_number: str
    status: ReservationStatus = ReservationStatus.RESERVED
    reserved_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    used_by_invoice_id: Optional[str] = None
