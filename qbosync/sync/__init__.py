"""
Accounting sync core.

Modules:
    errors: Classified failure taxonomy
    events: Domain event emission
    connection_store: Per-organization QuickBooks connections
    token_refresher: Single-flight access token refresh
    queue: Durable sync job outbox with leases and backoff
    entities: Local entity to QuickBooks payload mapping
    worker: Job processing and the polling worker pool
    reconciliation: Webhook ingestion into reconciliation jobs
    diagnostics: Read-only sync health and manual retries
    invoice_numbers: Invoice number reservations
"""
