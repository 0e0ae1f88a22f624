"""
Local invoice models as seen by the sync core.

Invoices are owned by the CRUD layer; the sync core only reads a snapshot at
claim time and writes the small sync-status projection back.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from .enums import SyncStatus


class InvoiceLine(BaseModel):
    """A single invoice line. Amounts are integer cents."""

    description: str = ""
    quantity: Decimal = Field(default=Decimal("1"))
    unit_price_cents: int = 0
    category: Optional[str] = Field(default=None, description="Local category for account mapping")

    @property
    def amount_cents(self) -> int:
        return int((self.quantity * self.unit_price_cents).to_integral_value())


class SyncProjection(BaseModel):
    """Sync-status projection stored alongside the local entity."""

    external_id: Optional[str] = None
    sync_token: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    status: Optional[SyncStatus] = None


class InvoiceSnapshot(BaseModel):
    """Local invoice state read at claim time."""

    invoice_id: str
    org_id: str
    invoice_number: str
    customer_name: str = "Customer"
    title: Optional[str] = None
    status: str = "draft"
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    total_cents: int = 0
    lines: list[InvoiceLine] = Field(default_factory=list)
    sync: SyncProjection = Field(default_factory=SyncProjection)
    updated_at: Optional[datetime] = None

    @property
    def external_id(self) -> Optional[str]:
        return self.sync.external_id
