"""
DuckDB storage implementation for the accounting sync service.

Provides a local storage backend using DuckDB for connections, the sync job
outbox, webhook receipts, the local invoice projection, domain events, OAuth
nonces and invoice number reservations.

Key features:
- Thread-local connections to one database file
- Idempotent schema creation
- A process-level write lock plus explicit transactions for every
  multi-statement write (claim, coalescing upsert, compare-and-set)
- UNIQUE "active key" columns that hold a key while a row is active and NULL
  once it is terminal, so the database itself rejects duplicate active rows
- OAuth tokens encrypted at rest with Fernet
- Comprehensive error handling with structured logging

DuckDB allows a single writing process per database file; the write lock
makes every claim and compare-and-set atomic within that process.
"""

import json
import os
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import duckdb
import structlog

from qbosync.models.connection import Connection, ConnectionSettings
from qbosync.models.enums import (
    NON_TERMINAL_JOB_STATES,
    ConnectionStatus,
    EntityType,
    FailureReason,
    JobState,
    ReservationStatus,
    SyncStatus,
)
from qbosync.models.events import DomainEvent
from qbosync.models.invoices import InvoiceLine, InvoiceSnapshot, SyncProjection
from qbosync.models.jobs import SyncJob, active_job_key
from qbosync.models.reservations import InvoiceNumberReservation
from qbosync.utils.crypto import TokenCipher, get_token_cipher
from qbosync.utils.timeutil import utcnow

from .base import DuplicateKeyError, StorageBackend, StorageError

logger = structlog.get_logger(__name__)

_NON_TERMINAL = tuple(sorted(s.value for s in NON_TERMINAL_JOB_STATES))

_JOB_COLUMNS = """
    job_id, org_id, entity_type, local_id, external_id, state, attempts, reason,
    last_error, failure_reason, error_summary, next_run_at, lease_owner,
    lease_expires_at, rerun_requested, idempotency_key, created_at, updated_at,
    completed_at
"""

_CONNECTION_COLUMNS = """
    connection_id, org_id, realm_id, company_name, access_token_enc, refresh_token_enc,
    access_token_expires_at, refresh_token_expires_at, status, last_refreshed_at,
    last_error, settings, connected_at, disconnected_at, updated_at
"""

_INVOICE_COLUMNS = """
    invoice_id, org_id, invoice_number, customer_name, title, status, issue_date,
    due_date, total_cents, lines, external_id, sync_token, last_synced_at,
    sync_status, updated_at
"""

_RESERVATION_COLUMNS = """
    reservation_id, org_id, reserved_number, status, reserved_at, expires_at,
    used_by_invoice_id
"""


def _reservation_key(org_id: str, number: str) -> str:
    return f"{org_id}|{number}"


def _placeholders(values: list | tuple) -> str:
    return ", ".join("?" for _ in values)


class DuckDBStorage(StorageBackend):
    """
    DuckDB implementation of the storage backend.

    Attributes:
        db_path: Path to the DuckDB database file
        _local: Thread-local storage for per-thread connections
        _lock: Thread lock for schema operations
        _write_lock: Serializes transactions that must be atomic
        _cipher: Token encryption for connection credentials
    """

    def __init__(self, db_path: str = "./data/qbosync.duckdb", cipher: Optional[TokenCipher] = None):
        """
        Initialize DuckDB storage backend.

        Args:
            db_path: Path to DuckDB database file (default: ./data/qbosync.duckdb)
            cipher: Token cipher (default: configured process cipher)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Thread-local storage for connections
        self._local = threading.local()
        self._lock = threading.Lock()
        self._write_lock = threading.RLock()
        self._initialized = False
        self._cipher = cipher or get_token_cipher()

        logger.info("duckdb_storage_initialized", db_path=str(self.db_path))

        # Initialize schema
        self._initialize_schema()

    @contextmanager
    def _get_connection(self):
        """
        Get a thread-local DuckDB connection.

        Yields:
            DuckDB connection instance

        Raises:
            StorageError: If connection cannot be established
        """
        if not hasattr(self._local, "connection"):
            try:
                self._local.connection = duckdb.connect(str(self.db_path))
                logger.debug("duckdb_connection_created", thread_id=threading.get_ident())
            except Exception as e:
                logger.error("duckdb_connection_failed", error=str(e))
                raise StorageError(f"Failed to connect to DuckDB: {e}") from e

        yield self._local.connection

    @contextmanager
    def _transaction(self):
        """
        Run a block as one serialized transaction.

        Commits on success and rolls back on any exception, which is re-raised.
        """
        with self._write_lock:
            with self._get_connection() as conn:
                conn.begin()
                try:
                    yield conn
                except Exception:
                    conn.rollback()
                    raise
                conn.commit()

    @staticmethod
    def _fetch_dicts(conn, query: str, params: Optional[list] = None) -> list[dict[str, Any]]:
        cursor = conn.execute(query, params or [])
        columns = [d[0] for d in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def _initialize_schema(self):
        """
        Initialize all database tables and indexes.

        This method is idempotent and safe to call multiple times.

        Raises:
            StorageError: If schema creation fails
        """
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            try:
                with self._get_connection() as conn:
                    # =========================================================
                    # Connections
                    # =========================================================

                    # active_key = org_id while not disconnected
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS connections (
                            connection_id VARCHAR PRIMARY KEY,
                            org_id VARCHAR NOT NULL,
                            realm_id VARCHAR NOT NULL,
                            company_name VARCHAR,
                            access_token_enc VARCHAR NOT NULL,
                            refresh_token_enc VARCHAR NOT NULL,
                            access_token_expires_at TIMESTAMP NOT NULL,
                            refresh_token_expires_at TIMESTAMP,
                            status VARCHAR NOT NULL,
                            last_refreshed_at TIMESTAMP,
                            last_error VARCHAR,
                            settings JSON NOT NULL,
                            connected_at TIMESTAMP NOT NULL,
                            disconnected_at TIMESTAMP,
                            updated_at TIMESTAMP NOT NULL,
                            refresh_lease_owner VARCHAR,
                            refresh_lease_expires_at TIMESTAMP,
                            active_key VARCHAR UNIQUE
                        )
                    """)

                    conn.execute("""
                        CREATE INDEX IF NOT EXISTS idx_connections_org_id
                        ON connections(org_id)
                    """)

                    conn.execute("""
                        CREATE INDEX IF NOT EXISTS idx_connections_realm_id
                        ON connections(realm_id)
                    """)

                    # =========================================================
                    # Sync jobs
                    # =========================================================

                    # active_key = org|entity|local_id while non-terminal
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS sync_jobs (
                            job_id VARCHAR PRIMARY KEY,
                            org_id VARCHAR NOT NULL,
                            entity_type VARCHAR NOT NULL,
                            local_id VARCHAR NOT NULL,
                            external_id VARCHAR,
                            state VARCHAR NOT NULL,
                            attempts INTEGER NOT NULL DEFAULT 0,
                            reason VARCHAR NOT NULL,
                            last_error TEXT,
                            failure_reason VARCHAR,
                            error_summary VARCHAR,
                            next_run_at TIMESTAMP NOT NULL,
                            lease_owner VARCHAR,
                            lease_expires_at TIMESTAMP,
                            rerun_requested BOOLEAN NOT NULL DEFAULT FALSE,
                            idempotency_key VARCHAR NOT NULL,
                            created_at TIMESTAMP NOT NULL,
                            updated_at TIMESTAMP NOT NULL,
                            completed_at TIMESTAMP,
                            active_key VARCHAR UNIQUE
                        )
                    """)

                    conn.execute("""
                        CREATE INDEX IF NOT EXISTS idx_sync_jobs_org_state
                        ON sync_jobs(org_id, state)
                    """)

                    conn.execute("""
                        CREATE INDEX IF NOT EXISTS idx_sync_jobs_next_run_at
                        ON sync_jobs(next_run_at)
                    """)

                    # =========================================================
                    # Webhook receipts (rolling dedup set)
                    # =========================================================

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS webhook_receipts (
                            identity VARCHAR PRIMARY KEY,
                            realm_id VARCHAR NOT NULL,
                            received_at TIMESTAMP NOT NULL
                        )
                    """)

                    # =========================================================
                    # Local invoices with sync-status projection
                    # =========================================================

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS invoices (
                            invoice_id VARCHAR PRIMARY KEY,
                            org_id VARCHAR NOT NULL,
                            invoice_number VARCHAR NOT NULL,
                            customer_name VARCHAR NOT NULL,
                            title VARCHAR,
                            status VARCHAR NOT NULL,
                            issue_date DATE,
                            due_date DATE,
                            total_cents BIGINT NOT NULL,
                            lines JSON NOT NULL,
                            external_id VARCHAR,
                            sync_token VARCHAR,
                            last_synced_at TIMESTAMP,
                            sync_status VARCHAR,
                            updated_at TIMESTAMP
                        )
                    """)

                    conn.execute("""
                        CREATE INDEX IF NOT EXISTS idx_invoices_org_external
                        ON invoices(org_id, external_id)
                    """)

                    # =========================================================
                    # Domain events
                    # =========================================================

                    conn.execute("CREATE SEQUENCE IF NOT EXISTS domain_event_seq")

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS domain_events (
                            event_id VARCHAR PRIMARY KEY,
                            seq BIGINT NOT NULL DEFAULT nextval('domain_event_seq'),
                            org_id VARCHAR NOT NULL,
                            event_type VARCHAR NOT NULL,
                            entity_type VARCHAR NOT NULL,
                            entity_id VARCHAR NOT NULL,
                            job_id VARCHAR,
                            payload JSON NOT NULL,
                            created_at TIMESTAMP NOT NULL
                        )
                    """)

                    conn.execute("""
                        CREATE INDEX IF NOT EXISTS idx_domain_events_org
                        ON domain_events(org_id)
                    """)

                    # =========================================================
                    # OAuth state nonces
                    # =========================================================

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS oauth_nonces (
                            nonce VARCHAR PRIMARY KEY,
                            org_id VARCHAR NOT NULL,
                            expires_at TIMESTAMP NOT NULL,
                            consumed_at TIMESTAMP NOT NULL
                        )
                    """)

                    # =========================================================
                    # Invoice number reservations
                    # =========================================================

                    # active_key = org|number while reserved or used
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS invoice_number_reservations (
                            reservation_id VARCHAR PRIMARY KEY,
                            org_id VARCHAR NOT NULL,
                            reserved_number VARCHAR NOT NULL,
                            status VARCHAR NOT NULL,
                            reserved_at TIMESTAMP NOT NULL,
                            expires_at TIMESTAMP NOT NULL,
                            used_by_invoice_id VARCHAR,
                            active_key VARCHAR UNIQUE
                        )
                    """)

                    conn.commit()
                    logger.info("duckdb_schema_initialized", table_count=7)
                    self._initialized = True

            except Exception as e:
                logger.error("duckdb_schema_initialization_failed", error=str(e))
                raise StorageError(f"Failed to initialize schema: {e}") from e

    def clear_for_testing(self) -> None:
        """
        Delete all rows. For testing only, active when TESTING=true.
        """
        if not os.environ.get("TESTING"):
            return
        tables = [
            "connections", "sync_jobs", "webhook_receipts", "invoices",
            "domain_events", "oauth_nonces", "invoice_number_reservations",
        ]
        with self._transaction() as conn:
            for t in tables:
                conn.execute(f"DELETE FROM {t}")

    # =========================================================================
    # Connections
    # =========================================================================

    def _row_to_connection(self, row: dict[str, Any]) -> Connection:
        return Connection(
            connection_id=row["connection_id"],
            org_id=row["org_id"],
            realm_id=row["realm_id"],
            company_name=row["company_name"],
            access_token=self._cipher.decrypt(row["access_token_enc"]),
            refresh_token=self._cipher.decrypt(row["refresh_token_enc"]),
            access_token_expires_at=row["access_token_expires_at"],
            refresh_token_expires_at=row["refresh_token_expires_at"],
            status=row["status"],
            last_refreshed_at=row["last_refreshed_at"],
            last_error=row["last_error"],
            settings=ConnectionSettings.model_validate(json.loads(row["settings"])),
            connected_at=row["connected_at"],
            disconnected_at=row["disconnected_at"],
            updated_at=row["updated_at"],
        )

    def create_connection(self, connection: Connection) -> Connection:
        """Insert a new active connection, superseding one in error status."""
        try:
            with self._write_lock:
                # Superseding and inserting run as separate transactions: DuckDB
                # rejects re-inserting a unique key released in the same transaction.
                with self._transaction() as conn:
                    existing = conn.execute(
                        "SELECT connection_id, status FROM connections WHERE active_key = ?",
                        [connection.org_id],
                    ).fetchone()
                    if existing and existing[1] == ConnectionStatus.CONNECTED.value:
                        raise DuplicateKeyError(
                            f"Organization {connection.org_id} already has an active connection"
                        )
                    if existing:
                        conn.execute(
                            """
                            UPDATE connections
                            SET status = ?, disconnected_at = ?, updated_at = ?, active_key = NULL
                            WHERE connection_id = ?
                            """,
                            [
                                ConnectionStatus.DISCONNECTED.value,
                                connection.connected_at,
                                connection.connected_at,
                                existing[0],
                            ],
                        )
                        logger.info(
                            "connection_superseded",
                            org_id=connection.org_id,
                            connection_id=existing[0],
                        )

                with self._transaction() as conn:
                    conn.execute(
                        f"""
                        INSERT INTO connections ({_CONNECTION_COLUMNS}, active_key)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        [
                            connection.connection_id,
                            connection.org_id,
                            connection.realm_id,
                            connection.company_name,
                            self._cipher.encrypt(connection.access_token),
                            self._cipher.encrypt(connection.refresh_token),
                            connection.access_token_expires_at,
                            connection.refresh_token_expires_at,
                            connection.status.value,
                            connection.last_refreshed_at,
                            connection.last_error,
                            connection.settings.model_dump_json(),
                            connection.connected_at,
                            connection.disconnected_at,
                            connection.updated_at,
                            connection.org_id,
                        ],
                    )

            logger.debug(
                "connection_written",
                connection_id=connection.connection_id,
                org_id=connection.org_id,
            )
            return connection

        except DuplicateKeyError:
            raise
        except duckdb.ConstraintException as e:
            raise DuplicateKeyError(
                f"Organization {connection.org_id} already has an active connection"
            ) from e
        except Exception as e:
            logger.error("create_connection_failed", org_id=connection.org_id, error=str(e))
            raise StorageError(f"Failed to create connection: {e}") from e

    def get_active_connection(self, org_id: str) -> Optional[Connection]:
        """Read the organization's connection unless disconnected."""
        try:
            with self._get_connection() as conn:
                rows = self._fetch_dicts(
                    conn,
                    f"SELECT {_CONNECTION_COLUMNS} FROM connections WHERE active_key = ?",
                    [org_id],
                )
                return self._row_to_connection(rows[0]) if rows else None

        except Exception as e:
            logger.error("get_active_connection_failed", org_id=org_id, error=str(e))
            raise StorageError(f"Failed to read connection: {e}") from e

    def get_connection_by_realm(self, realm_id: str) -> Optional[Connection]:
        """Read the active connection for a QuickBooks company."""
        try:
            with self._get_connection() as conn:
                rows = self._fetch_dicts(
                    conn,
                    f"""
                    SELECT {_CONNECTION_COLUMNS} FROM connections
                    WHERE realm_id = ? AND active_key IS NOT NULL
                    ORDER BY connected_at DESC
                    LIMIT 1
                    """,
                    [realm_id],
                )
                return self._row_to_connection(rows[0]) if rows else None

        except Exception as e:
            logger.error("get_connection_by_realm_failed", realm_id=realm_id, error=str(e))
            raise StorageError(f"Failed to read connection by realm: {e}") from e

    def update_connection_tokens(
        self,
        connection_id: str,
        access_token: str,
        refresh_token: str,
        access_token_expires_at: datetime,
        refresh_token_expires_at: Optional[datetime],
        refreshed_at: datetime,
    ) -> None:
        """Persist rotated tokens."""
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    UPDATE connections
                    SET access_token_enc = ?,
                        refresh_token_enc = ?,
                        access_token_expires_at = ?,
                        refresh_token_expires_at = COALESCE(?, refresh_token_expires_at),
                        last_refreshed_at = ?,
                        status = ?,
                        last_error = NULL,
                        updated_at = ?
                    WHERE connection_id = ? AND active_key IS NOT NULL
                    """,
                    [
                        self._cipher.encrypt(access_token),
                        self._cipher.encrypt(refresh_token),
                        access_token_expires_at,
                        refresh_token_expires_at,
                        refreshed_at,
                        ConnectionStatus.CONNECTED.value,
                        refreshed_at,
                        connection_id,
                    ],
                )

        except Exception as e:
            logger.error("update_connection_tokens_failed", connection_id=connection_id, error=str(e))
            raise StorageError(f"Failed to update connection tokens: {e}") from e

    def update_connection_status(
        self,
        connection_id: str,
        status: ConnectionStatus,
        last_error: Optional[str] = None,
    ) -> None:
        """Set connected/error status on an active connection."""
        if status == ConnectionStatus.DISCONNECTED:
            raise ValueError("Use disconnect_connection to disconnect")

        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    UPDATE connections
                    SET status = ?, last_error = ?, updated_at = ?
                    WHERE connection_id = ? AND active_key IS NOT NULL
                    """,
                    [status.value, last_error, utcnow(), connection_id],
                )

        except Exception as e:
            logger.error("update_connection_status_failed", connection_id=connection_id, error=str(e))
            raise StorageError(f"Failed to update connection status: {e}") from e

    def update_connection_settings(self, connection_id: str, settings: ConnectionSettings) -> None:
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    UPDATE connections
                    SET settings = ?, updated_at = ?
                    WHERE connection_id = ?
                    """,
                    [settings.model_dump_json(), utcnow(), connection_id],
                )

        except Exception as e:
            logger.error("update_connection_settings_failed", connection_id=connection_id, error=str(e))
            raise StorageError(f"Failed to update connection settings: {e}") from e

    def disconnect_connection(self, connection_id: str, disconnected_at: datetime) -> bool:
        """Soft-delete a connection."""
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    UPDATE connections
                    SET status = ?, disconnected_at = ?, updated_at = ?,
                        refresh_lease_owner = NULL, refresh_lease_expires_at = NULL,
                        active_key = NULL
                    WHERE connection_id = ? AND active_key IS NOT NULL
                    RETURNING connection_id
                    """,
                    [
                        ConnectionStatus.DISCONNECTED.value,
                        disconnected_at,
                        disconnected_at,
                        connection_id,
                    ],
                ).fetchall()
                return bool(rows)

        except Exception as e:
            logger.error("disconnect_connection_failed", connection_id=connection_id, error=str(e))
            raise StorageError(f"Failed to disconnect connection: {e}") from e

    def acquire_refresh_lease(
        self,
        connection_id: str,
        owner: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> bool:
        """Claim the refresh lease when free, expired or already ours."""
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    UPDATE connections
                    SET refresh_lease_owner = ?, refresh_lease_expires_at = ?
                    WHERE connection_id = ?
                      AND active_key IS NOT NULL
                      AND (
                        refresh_lease_owner IS NULL
                        OR refresh_lease_owner = ?
                        OR refresh_lease_expires_at <= ?
                      )
                    RETURNING connection_id
                    """,
                    [owner, lease_expires_at, connection_id, owner, now],
                ).fetchall()
                acquired = bool(rows)

            logger.debug(
                "refresh_lease_attempt",
                connection_id=connection_id,
                owner=owner,
                acquired=acquired,
            )
            return acquired

        except Exception as e:
            logger.error("acquire_refresh_lease_failed", connection_id=connection_id, error=str(e))
            raise StorageError(f"Failed to acquire refresh lease: {e}") from e

    def release_refresh_lease(self, connection_id: str, owner: str) -> None:
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    UPDATE connections
                    SET refresh_lease_owner = NULL, refresh_lease_expires_at = NULL
                    WHERE connection_id = ? AND refresh_lease_owner = ?
                    """,
                    [connection_id, owner],
                )

        except Exception as e:
            logger.error("release_refresh_lease_failed", connection_id=connection_id, error=str(e))
            raise StorageError(f"Failed to release refresh lease: {e}") from e

    def list_connections_for_keepalive(
        self,
        access_expiring_before: datetime,
        refreshed_before: datetime,
        limit: int = 50,
    ) -> list[Connection]:
        try:
            with self._get_connection() as conn:
                rows = self._fetch_dicts(
                    conn,
                    f"""
                    SELECT {_CONNECTION_COLUMNS} FROM connections
                    WHERE status = ?
                      AND (
                        access_token_expires_at <= ?
                        OR COALESCE(last_refreshed_at, connected_at) <= ?
                      )
                    ORDER BY access_token_expires_at
                    LIMIT ?
                    """,
                    [ConnectionStatus.CONNECTED.value, access_expiring_before, refreshed_before, limit],
                )
                return [self._row_to_connection(row) for row in rows]

        except Exception as e:
            logger.error("list_connections_for_keepalive_failed", error=str(e))
            raise StorageError(f"Failed to list connections for keepalive: {e}") from e

    # =========================================================================
    # Sync jobs
    # =========================================================================

    @staticmethod
    def _row_to_job(row: dict[str, Any]) -> SyncJob:
        return SyncJob(**row)

    def upsert_job(
        self,
        org_id: str,
        entity_type: EntityType,
        local_id: str,
        reason: str,
        now: datetime,
        replace_reason: bool = True,
    ) -> tuple[SyncJob, bool]:
        """Insert a pending job or coalesce into the active one."""
        key = active_job_key(org_id, entity_type, local_id)

        try:
            with self._transaction() as conn:
                existing = conn.execute(
                    "SELECT job_id FROM sync_jobs WHERE active_key = ?", [key]
                ).fetchone()

                if existing:
                    conn.execute(
                        """
                        UPDATE sync_jobs
                        SET reason = CASE WHEN ? THEN ? ELSE reason END,
                            updated_at = ?,
                            rerun_requested = rerun_requested OR state = ?
                        WHERE job_id = ?
                        """,
                        [replace_reason, reason, now, JobState.IN_PROGRESS.value, existing[0]],
                    )
                    job_id = existing[0]
                    created = False
                else:
                    job = SyncJob(
                        org_id=org_id,
                        entity_type=entity_type,
                        local_id=local_id,
                        reason=reason,
                        next_run_at=now,
                        created_at=now,
                        updated_at=now,
                    )
                    conn.execute(
                        f"""
                        INSERT INTO sync_jobs ({_JOB_COLUMNS}, active_key)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        [
                            job.job_id,
                            job.org_id,
                            job.entity_type.value,
                            job.local_id,
                            job.external_id,
                            job.state.value,
                            job.attempts,
                            job.reason,
                            job.last_error,
                            None,
                            job.error_summary,
                            job.next_run_at,
                            job.lease_owner,
                            job.lease_expires_at,
                            job.rerun_requested,
                            job.idempotency_key,
                            job.created_at,
                            job.updated_at,
                            job.completed_at,
                            key,
                        ],
                    )
                    job_id = job.job_id
                    created = True

                rows = self._fetch_dicts(
                    conn, f"SELECT {_JOB_COLUMNS} FROM sync_jobs WHERE job_id = ?", [job_id]
                )

            return self._row_to_job(rows[0]), created

        except duckdb.ConstraintException as e:
            logger.error("upsert_job_conflict", active_key=key, error=str(e))
            raise DuplicateKeyError(f"Concurrent job insert for {key}") from e
        except Exception as e:
            logger.error("upsert_job_failed", active_key=key, error=str(e))
            raise StorageError(f"Failed to upsert sync job: {e}") from e

    def get_job(self, job_id: str) -> Optional[SyncJob]:
        try:
            with self._get_connection() as conn:
                rows = self._fetch_dicts(
                    conn, f"SELECT {_JOB_COLUMNS} FROM sync_jobs WHERE job_id = ?", [job_id]
                )
                return self._row_to_job(rows[0]) if rows else None

        except Exception as e:
            logger.error("get_job_failed", job_id=job_id, error=str(e))
            raise StorageError(f"Failed to read sync job: {e}") from e

    def find_active_job(self, org_id: str, entity_type: EntityType, local_id: str) -> Optional[SyncJob]:
        key = active_job_key(org_id, entity_type, local_id)
        try:
            with self._get_connection() as conn:
                rows = self._fetch_dicts(
                    conn, f"SELECT {_JOB_COLUMNS} FROM sync_jobs WHERE active_key = ?", [key]
                )
                return self._row_to_job(rows[0]) if rows else None

        except Exception as e:
            logger.error("find_active_job_failed", active_key=key, error=str(e))
            raise StorageError(f"Failed to read active sync job: {e}") from e

    def claim_jobs(
        self,
        owner: str,
        limit: int,
        now: datetime,
        lease_expires_at: datetime,
    ) -> list[SyncJob]:
        """Claim eligible jobs of connected organizations in one transaction."""
        if limit <= 0:
            return []

        try:
            with self._transaction() as conn:
                candidates = conn.execute(
                    """
                    SELECT j.job_id
                    FROM sync_jobs j
                    JOIN connections c
                      ON c.org_id = j.org_id AND c.active_key IS NOT NULL
                    WHERE c.status = ?
                      AND (
                        (j.state IN (?, ?) AND j.next_run_at <= ?)
                        OR (j.state = ? AND j.lease_expires_at <= ?)
                      )
                    ORDER BY j.next_run_at, j.created_at
                    LIMIT ?
                    """,
                    [
                        ConnectionStatus.CONNECTED.value,
                        JobState.PENDING.value,
                        JobState.FAILED.value,
                        now,
                        JobState.IN_PROGRESS.value,
                        now,
                        limit,
                    ],
                ).fetchall()
                job_ids = [row[0] for row in candidates]
                if not job_ids:
                    return []

                conn.execute(
                    f"""
                    UPDATE sync_jobs
                    SET state = ?, lease_owner = ?, lease_expires_at = ?, updated_at = ?
                    WHERE job_id IN ({_placeholders(job_ids)})
                    """,
                    [JobState.IN_PROGRESS.value, owner, lease_expires_at, now, *job_ids],
                )
                rows = self._fetch_dicts(
                    conn,
                    f"""
                    SELECT {_JOB_COLUMNS} FROM sync_jobs
                    WHERE job_id IN ({_placeholders(job_ids)})
                    ORDER BY next_run_at, created_at
                    """,
                    job_ids,
                )

            jobs = [self._row_to_job(row) for row in rows]
            logger.debug("sync_jobs_claimed", owner=owner, count=len(jobs))
            return jobs

        except Exception as e:
            logger.error("claim_jobs_failed", owner=owner, error=str(e))
            raise StorageError(f"Failed to claim sync jobs: {e}") from e

    def update_job(
        self,
        job: SyncJob,
        expected_state: JobState,
        expected_owner: Optional[str] = None,
        expected_updated_at: Optional[datetime] = None,
    ) -> bool:
        """
        Compare-and-set write of a job's mutable fields.

        The active key column is only written when the job crosses between
        terminal and non-terminal states.
        """
        set_clauses = [
            "external_id = ?",
            "state = ?",
            "attempts = ?",
            "reason = ?",
            "last_error = ?",
            "failure_reason = ?",
            "error_summary = ?",
            "next_run_at = ?",
            "lease_owner = ?",
            "lease_expires_at = ?",
            "rerun_requested = ?",
            "updated_at = ?",
            "completed_at = ?",
        ]
        params: list[Any] = [
            job.external_id,
            job.state.value,
            job.attempts,
            job.reason,
            job.last_error,
            job.failure_reason.value if job.failure_reason else None,
            job.error_summary,
            job.next_run_at,
            job.lease_owner,
            job.lease_expires_at,
            job.rerun_requested,
            job.updated_at,
            job.completed_at,
        ]

        if expected_state.is_terminal != job.state.is_terminal:
            set_clauses.append("active_key = ?")
            params.append(job.active_key)

        where = ["job_id = ?", "state = ?"]
        params.extend([job.job_id, expected_state.value])
        if expected_owner is not None:
            where.append("lease_owner = ?")
            params.append(expected_owner)
        if expected_updated_at is not None:
            where.append("updated_at = ?")
            params.append(expected_updated_at)

        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    f"""
                    UPDATE sync_jobs
                    SET {', '.join(set_clauses)}
                    WHERE {' AND '.join(where)}
                    RETURNING job_id
                    """,
                    params,
                ).fetchall()
                return bool(rows)

        except duckdb.ConstraintException as e:
            raise DuplicateKeyError(f"Another active job exists for {job.local_id}") from e
        except Exception as e:
            logger.error("update_job_failed", job_id=job.job_id, error=str(e))
            raise StorageError(f"Failed to update sync job: {e}") from e

    def cancel_jobs_for_org(self, org_id: str, now: datetime, error_summary: str) -> int:
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    f"""
                    UPDATE sync_jobs
                    SET state = ?,
                        failure_reason = ?,
                        error_summary = ?,
                        lease_owner = NULL,
                        lease_expires_at = NULL,
                        updated_at = ?,
                        completed_at = ?,
                        active_key = NULL
                    WHERE org_id = ? AND state IN ({_placeholders(_NON_TERMINAL)})
                    RETURNING job_id
                    """,
                    [
                        JobState.CANCELLED.value,
                        FailureReason.CONNECTION_DISCONNECTED.value,
                        error_summary,
                        now,
                        now,
                        org_id,
                        *_NON_TERMINAL,
                    ],
                ).fetchall()

            logger.info("sync_jobs_cancelled", org_id=org_id, count=len(rows))
            return len(rows)

        except Exception as e:
            logger.error("cancel_jobs_for_org_failed", org_id=org_id, error=str(e))
            raise StorageError(f"Failed to cancel sync jobs: {e}") from e

    def release_expired_leases(self, now: datetime) -> int:
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    UPDATE sync_jobs
                    SET state = ?,
                        failure_reason = ?,
                        error_summary = 'Worker lease expired before completion',
                        lease_owner = NULL,
                        lease_expires_at = NULL,
                        next_run_at = ?,
                        updated_at = ?
                    WHERE state = ? AND lease_expires_at <= ?
                    RETURNING job_id
                    """,
                    [
                        JobState.FAILED.value,
                        FailureReason.LEASE_EXPIRED.value,
                        now,
                        now,
                        JobState.IN_PROGRESS.value,
                        now,
                    ],
                ).fetchall()

            if rows:
                logger.warning("sync_job_leases_released", count=len(rows))
            return len(rows)

        except Exception as e:
            logger.error("release_expired_leases_failed", error=str(e))
            raise StorageError(f"Failed to release expired leases: {e}") from e

    def count_jobs_by_state(self, org_id: str) -> dict[str, int]:
        try:
            with self._get_connection() as conn:
                result = conn.execute(
                    "SELECT state, COUNT(*) FROM sync_jobs WHERE org_id = ? GROUP BY state",
                    [org_id],
                ).fetchall()
                counts = {state.value: 0 for state in JobState}
                counts.update({row[0]: int(row[1]) for row in result})
                return counts

        except Exception as e:
            logger.error("count_jobs_by_state_failed", org_id=org_id, error=str(e))
            raise StorageError(f"Failed to count sync jobs: {e}") from e

    def list_jobs(
        self,
        org_id: str,
        states: Optional[list[JobState]] = None,
        limit: int = 100,
    ) -> list[SyncJob]:
        try:
            with self._get_connection() as conn:
                query = f"SELECT {_JOB_COLUMNS} FROM sync_jobs WHERE org_id = ?"
                params: list[Any] = [org_id]

                if states:
                    query += f" AND state IN ({_placeholders(states)})"
                    params.extend(s.value for s in states)

                query += " ORDER BY updated_at DESC, created_at DESC LIMIT ?"
                params.append(limit)

                return [self._row_to_job(row) for row in self._fetch_dicts(conn, query, params)]

        except Exception as e:
            logger.error("list_jobs_failed", org_id=org_id, error=str(e))
            raise StorageError(f"Failed to list sync jobs: {e}") from e

    # =========================================================================
    # Webhook receipts
    # =========================================================================

    def record_webhook_receipt(self, identity: str, realm_id: str, received_at: datetime) -> bool:
        try:
            with self._transaction() as conn:
                seen = conn.execute(
                    "SELECT 1 FROM webhook_receipts WHERE identity = ?", [identity]
                ).fetchone()
                if seen:
                    return False
                conn.execute(
                    "INSERT INTO webhook_receipts (identity, realm_id, received_at) VALUES (?, ?, ?)",
                    [identity, realm_id, received_at],
                )
                return True

        except duckdb.ConstraintException:
            return False
        except Exception as e:
            logger.error("record_webhook_receipt_failed", realm_id=realm_id, error=str(e))
            raise StorageError(f"Failed to record webhook receipt: {e}") from e

    def delete_webhook_receipt(self, identity: str) -> None:
        try:
            with self._transaction() as conn:
                conn.execute("DELETE FROM webhook_receipts WHERE identity = ?", [identity])

        except Exception as e:
            logger.error("delete_webhook_receipt_failed", error=str(e))
            raise StorageError(f"Failed to delete webhook receipt: {e}") from e

    def purge_webhook_receipts(self, received_before: datetime) -> int:
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    "DELETE FROM webhook_receipts WHERE received_at < ? RETURNING identity",
                    [received_before],
                ).fetchall()
            return len(rows)

        except Exception as e:
            logger.error("purge_webhook_receipts_failed", error=str(e))
            raise StorageError(f"Failed to purge webhook receipts: {e}") from e

    # =========================================================================
    # Invoices
    # =========================================================================

    @staticmethod
    def _row_to_invoice(row: dict[str, Any]) -> InvoiceSnapshot:
        return InvoiceSnapshot(
            invoice_id=row["invoice_id"],
            org_id=row["org_id"],
            invoice_number=row["invoice_number"],
            customer_name=row["customer_name"],
            title=row["title"],
            status=row["status"],
            issue_date=row["issue_date"],
            due_date=row["due_date"],
            total_cents=row["total_cents"],
            lines=[InvoiceLine.model_validate(line) for line in json.loads(row["lines"])],
            sync=SyncProjection(
                external_id=row["external_id"],
                sync_token=row["sync_token"],
                last_synced_at=row["last_synced_at"],
                status=row["sync_status"],
            ),
            updated_at=row["updated_at"],
        )

    def write_invoice(self, invoice: InvoiceSnapshot) -> str:
        lines_json = json.dumps([line.model_dump(mode="json") for line in invoice.lines])
        sync = invoice.sync

        values = [
            invoice.org_id,
            invoice.invoice_number,
            invoice.customer_name,
            invoice.title,
            invoice.status,
            invoice.issue_date,
            invoice.due_date,
            invoice.total_cents,
            lines_json,
            sync.external_id,
            sync.sync_token,
            sync.last_synced_at,
            sync.status.value if sync.status else None,
            invoice.updated_at,
        ]

        try:
            with self._transaction() as conn:
                exists = conn.execute(
                    "SELECT 1 FROM invoices WHERE invoice_id = ?", [invoice.invoice_id]
                ).fetchone()
                if exists:
                    conn.execute(
                        """
                        UPDATE invoices
                        SET org_id = ?, invoice_number = ?, customer_name = ?, title = ?,
                            status = ?, issue_date = ?, due_date = ?, total_cents = ?,
                            lines = ?, external_id = ?, sync_token = ?, last_synced_at = ?,
                            sync_status = ?, updated_at = ?
                        WHERE invoice_id = ?
                        """,
                        [*values, invoice.invoice_id],
                    )
                else:
                    conn.execute(
                        f"""
                        INSERT INTO invoices ({_INVOICE_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        [invoice.invoice_id, *values],
                    )

            logger.debug("invoice_written", invoice_id=invoice.invoice_id, org_id=invoice.org_id)
            return invoice.invoice_id

        except Exception as e:
            logger.error("write_invoice_failed", invoice_id=invoice.invoice_id, error=str(e))
            raise StorageError(f"Failed to write invoice: {e}") from e

    def read_invoice(self, org_id: str, invoice_id: str) -> Optional[InvoiceSnapshot]:
        try:
            with self._get_connection() as conn:
                rows = self._fetch_dicts(
                    conn,
                    f"SELECT {_INVOICE_COLUMNS} FROM invoices WHERE org_id = ? AND invoice_id = ?",
                    [org_id, invoice_id],
                )
                return self._row_to_invoice(rows[0]) if rows else None

        except Exception as e:
            logger.error("read_invoice_failed", invoice_id=invoice_id, error=str(e))
            raise StorageError(f"Failed to read invoice: {e}") from e

    def find_invoice_by_external_id(self, org_id: str, external_id: str) -> Optional[InvoiceSnapshot]:
        try:
            with self._get_connection() as conn:
                rows = self._fetch_dicts(
                    conn,
                    f"SELECT {_INVOICE_COLUMNS} FROM invoices WHERE org_id = ? AND external_id = ? LIMIT 1",
                    [org_id, external_id],
                )
                return self._row_to_invoice(rows[0]) if rows else None

        except Exception as e:
            logger.error("find_invoice_by_external_id_failed", external_id=external_id, error=str(e))
            raise StorageError(f"Failed to find invoice by external id: {e}") from e

    def update_sync_projection(self, org_id: str, invoice_id: str, projection: SyncProjection) -> bool:
        updates = {
            "external_id": projection.external_id,
            "sync_token": projection.sync_token,
            "last_synced_at": projection.last_synced_at,
            "sync_status": projection.status.value if projection.status else None,
        }
        updates = {k: v for k, v in updates.items() if v is not None}
        if not updates:
            return self.read_invoice(org_id, invoice_id) is not None

        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    f"""
                    UPDATE invoices
                    SET {', '.join(f'{column} = ?' for column in updates)}
                    WHERE org_id = ? AND invoice_id = ?
                    RETURNING invoice_id
                    """,
                    [*updates.values(), org_id, invoice_id],
                ).fetchall()
                return bool(rows)

        except Exception as e:
            logger.error("update_sync_projection_failed", invoice_id=invoice_id, error=str(e))
            raise StorageError(f"Failed to update sync projection: {e}") from e

    def count_invoices_by_sync_status(self, org_id: str, status: SyncStatus) -> int:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) FROM invoices WHERE org_id = ? AND sync_status = ?",
                    [org_id, status.value],
                ).fetchone()
                return int(row[0])

        except Exception as e:
            logger.error("count_invoices_by_sync_status_failed", org_id=org_id, error=str(e))
            raise StorageError(f"Failed to count invoices: {e}") from e

    def list_invoice_numbers(self, org_id: str) -> list[str]:
        try:
            with self._get_connection() as conn:
                result = conn.execute(
                    "SELECT invoice_number FROM invoices WHERE org_id = ?", [org_id]
                ).fetchall()
                return [row[0] for row in result]

        except Exception as e:
            logger.error("list_invoice_numbers_failed", org_id=org_id, error=str(e))
            raise StorageError(f"Failed to list invoice numbers: {e}") from e

    # =========================================================================
    # Domain events
    # =========================================================================

    def write_domain_event(self, event: DomainEvent) -> str:
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO domain_events (
                        event_id, org_id, event_type, entity_type, entity_id,
                        job_id, payload, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        event.event_id,
                        event.org_id,
                        event.event_type.value,
                        event.entity_type,
                        event.entity_id,
                        event.job_id,
                        json.dumps(event.payload, default=str),
                        event.created_at,
                    ],
                )
            return event.event_id

        except Exception as e:
            logger.error("write_domain_event_failed", event_type=event.event_type.value, error=str(e))
            raise StorageError(f"Failed to write domain event: {e}") from e

    def read_domain_events(
        self,
        org_id: str,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> list[DomainEvent]:
        try:
            with self._get_connection() as conn:
                query = """
                    SELECT event_id, org_id, event_type, entity_type, entity_id,
                           job_id, payload, created_at
                    FROM domain_events
                    WHERE org_id = ?
                """
                params: list[Any] = [org_id]

                if event_type:
                    query += " AND event_type = ?"
                    params.append(event_type)

                query += " ORDER BY seq LIMIT ?"
                params.append(limit)

                events = []
                for row in self._fetch_dicts(conn, query, params):
                    row["payload"] = json.loads(row["payload"])
                    events.append(DomainEvent(**row))
                return events

        except Exception as e:
            logger.error("read_domain_events_failed", org_id=org_id, error=str(e))
            raise StorageError(f"Failed to read domain events: {e}") from e

    # =========================================================================
    # OAuth state nonces
    # =========================================================================

    def consume_oauth_nonce(self, nonce: str, org_id: str, expires_at: datetime) -> bool:
        try:
            with self._transaction() as conn:
                used = conn.execute("SELECT 1 FROM oauth_nonces WHERE nonce = ?", [nonce]).fetchone()
                if used:
                    return False
                conn.execute(
                    "INSERT INTO oauth_nonces (nonce, org_id, expires_at, consumed_at) VALUES (?, ?, ?, ?)",
                    [nonce, org_id, expires_at, utcnow()],
                )
                return True

        except duckdb.ConstraintException:
            return False
        except Exception as e:
            logger.error("consume_oauth_nonce_failed", org_id=org_id, error=str(e))
            raise StorageError(f"Failed to consume OAuth nonce: {e}") from e

    # =========================================================================
    # Invoice number reservations
    # =========================================================================

    def create_reservation(self, reservation: InvoiceNumberReservation) -> InvoiceNumberReservation:
        try:
            with self._transaction() as conn:
                conn.execute(
                    f"""
                    INSERT INTO invoice_number_reservations ({_RESERVATION_COLUMNS}, active_key)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        reservation.reservation_id,
                        reservation.org_id,
                        reservation.reserved_number,
                        reservation.status.value,
                        reservation.reserved_at,
                        reservation.expires_at,
                        reservation.used_by_invoice_id,
                        _reservation_key(reservation.org_id, reservation.reserved_number),
                    ],
                )
            return reservation

        except duckdb.ConstraintException as e:
            raise DuplicateKeyError(
                f"Invoice number {reservation.reserved_number} is already reserved"
            ) from e
        except Exception as e:
            logger.error("create_reservation_failed", org_id=reservation.org_id, error=str(e))
            raise StorageError(f"Failed to create reservation: {e}") from e

    def get_reservation(self, reservation_id: str) -> Optional[InvoiceNumberReservation]:
        try:
            with self._get_connection() as conn:
                rows = self._fetch_dicts(
                    conn,
                    f"SELECT {_RESERVATION_COLUMNS} FROM invoice_number_reservations WHERE reservation_id = ?",
                    [reservation_id],
                )
                return InvoiceNumberReservation(**rows[0]) if rows else None

        except Exception as e:
            logger.error("get_reservation_failed", reservation_id=reservation_id, error=str(e))
            raise StorageError(f"Failed to read reservation: {e}") from e

    def update_reservation_status(
        self,
        reservation_id: str,
        status: ReservationStatus,
        used_by_invoice_id: Optional[str] = None,
    ) -> bool:
        # Used numbers keep their key; released and expired ones free it
        release_key = status in (ReservationStatus.RELEASED, ReservationStatus.EXPIRED)

        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    f"""
                    UPDATE invoice_number_reservations
                    SET status = ?,
                        used_by_invoice_id = COALESCE(?, used_by_invoice_id)
                        {', active_key = NULL' if release_key else ''}
                    WHERE reservation_id = ? AND status = ?
                    RETURNING reservation_id
                    """,
                    [status.value, used_by_invoice_id, reservation_id, ReservationStatus.RESERVED.value],
                ).fetchall()
                return bool(rows)

        except Exception as e:
            logger.error("update_reservation_status_failed", reservation_id=reservation_id, error=str(e))
            raise StorageError(f"Failed to update reservation: {e}") from e

    def expire_reservations(self, now: datetime) -> int:
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    UPDATE invoice_number_reservations
                    SET status = ?, active_key = NULL
                    WHERE status = ? AND expires_at <= ?
                    RETURNING reservation_id
                    """,
                    [ReservationStatus.EXPIRED.value, ReservationStatus.RESERVED.value, now],
                ).fetchall()
            return len(rows)

        except Exception as e:
            logger.error("expire_reservations_failed", error=str(e))
            raise StorageError(f"Failed to expire reservations: {e}") from e

    def list_active_reserved_numbers(self, org_id: str) -> list[str]:
        try:
            with self._get_connection() as conn:
                result = conn.execute(
                    """
                    SELECT reserved_number FROM invoice_number_reservations
                    WHERE org_id = ? AND active_key IS NOT NULL
                    """,
                    [org_id],
                ).fetchall()
                return [row[0] for row in result]

        except Exception as e:
            logger.error("list_active_reserved_numbers_failed", org_id=org_id, error=str(e))
            raise StorageError(f"Failed to list reserved numbers: {e}") from e
