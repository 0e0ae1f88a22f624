"""
Local entity to QuickBooks payload mapping.

Local state is authoritative for the fields this system owns (amounts, line
items, dates, document number); updates are sent as sparse updates so fields
edited only in QuickBooks are left alone.
"""

from decimal import Decimal
from typing import Any, Optional

from qbosync.connectors.qbo_client import QBOCompanyClient
from qbosync.models.connection import ConnectionSettings
from qbosync.models.enums import CustomerSyncMode, EntityType
from qbosync.models.invoices import InvoiceLine, InvoiceSnapshot

# Local entity type -> QuickBooks entity name
QBO_ENTITY_TYPES: dict[EntityType, str] = {
    EntityType.INVOICE: "Invoice",
}


def cents_to_amount(cents: int) -> float:
    return float(Decimal(cents) / Decimal(100))


class InvoicePayloadBuilder:
    """
    Builds QuickBooks Invoice payloads from local invoice snapshots.

    Customer and item references are resolved through the company client:
    customers by display name (created unless the organization matches
    existing customers only), items from the account mapping by line category,
    falling back to the configured or discovered default service item.
    """

    def __init__(self, company: QBOCompanyClient, settings: ConnectionSettings):
        self.company = company
        self.settings = settings
        self._default_item: Optional[dict[str, str]] = None

    async def _customer_ref(self, invoice: InvoiceSnapshot) -> dict[str, str]:
        customer = await self.company.get_or_create_customer(
            invoice.customer_name,
            create=self.settings.customer_sync_mode == CustomerSyncMode.CREATE_NEW,
        )
        return {"value": str(customer["Id"])}

    async def _item_ref(self, line: InvoiceLine) -> dict[str, str]:
        if line.category and line.category in self.settings.account_mapping:
            return {"value": self.settings.account_mapping[line.category]}
        if self.settings.default_item_id:
            return {"value": self.settings.default_item_id}
        if self._default_item is None:
            self._default_item = await self.company.get_default_service_item(
                self.settings.default_income_account_id
            )
        return {"value": self._default_item["value"]}

    async def _line(self, line: InvoiceLine) -> dict[str, Any]:
        return {
            "DetailType": "SalesItemLineDetail",
            "Amount": cents_to_amount(line.amount_cents),
            "Description": line.description,
            "SalesItemLineDetail": {
                "ItemRef": await self._item_ref(line),
                "Qty": float(line.quantity),
                "UnitPrice": cents_to_amount(line.unit_price_cents),
            },
        }

    async def build(
        self,
        invoice: InvoiceSnapshot,
        external_id: Optional[str] = None,
        sync_token: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Build a create payload, or a sparse update payload when an external
        id and SyncToken are given.
        """
        lines = invoice.lines or [
            InvoiceLine(description=invoice.title or "Invoice", unit_price_cents=invoice.total_cents)
        ]

        payload: dict[str, Any] = {
            "CustomerRef": await self._customer_ref(invoice),
            "DocNumber": invoice.invoice_number,
            "Line": [await self._line(line) for line in lines],
        }
        if invoice.issue_date:
            payload["TxnDate"] = invoice.issue_date.isoformat()
        if invoice.due_date:
            payload["DueDate"] = invoice.due_date.isoformat()
        if invoice.title:
            payload["PrivateNote"] = invoice.title

        if external_id is not None:
            payload.update({"Id": external_id, "SyncToken": sync_token or "0", "sparse": True})

        return payload
