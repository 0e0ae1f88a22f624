"""API routers for all endpoints."""

from qbosync.routers import connection, invoice_numbers, oauth, sync, system, webhooks

__all__ = [
    "connection",
    "invoice_numbers",
    "oauth",
    "sync",
    "system",
    "webhooks",
]
