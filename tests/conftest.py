"""
Pytest configuration and shared fixtures for the qbosync test suite.

Every test gets its own DuckDB file, a FakeQBO backend behind
httpx.MockTransport and a freshly wired service bundle, so tests never share
queue or connection state.
"""

import os
import random
import tempfile
import uuid as _uuid

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient

# Set testing environment BEFORE importing the app. DuckDB needs a real file
# path: ":memory:" gives each thread-local connection its own database.
_test_db_path = os.path.join(tempfile.gettempdir(), f"qbosync_test_{_uuid.uuid4().hex[:8]}.duckdb")
os.environ["TESTING"] = "true"
os.environ["DB_PATH"] = _test_db_path
os.environ["TOKEN_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["INTUIT_CLIENT_ID"] = "test-client-id"
os.environ["INTUIT_CLIENT_SECRET"] = "test-client-secret"
os.environ["INTUIT_WEBHOOK_VERIFIER_TOKEN"] = "test-verifier-token"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["OAUTH_STATE_COOKIE_SECURE"] = "false"
os.environ["WORKER_ENABLED"] = "false"
os.environ["LOG_FORMAT"] = "console"

from qbosync.auth.jwt import create_access_token  # noqa: E402
from qbosync.config import get_settings  # noqa: E402
from qbosync.models.connection import Connection  # noqa: E402
from qbosync.services import SyncServices, build_sync_services, get_sync_services  # noqa: E402
from qbosync.storage.duckdb_storage import DuckDBStorage  # noqa: E402
from qbosync.sync.queue import BackoffPolicy  # noqa: E402
from tests.factories import ORG_ID, REALM_ID, FakeQBO, make_tokens  # noqa: E402


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    """Application settings built from the test environment."""
    return get_settings()


@pytest.fixture
def storage(tmp_path):
    """Fresh DuckDB storage in a per-test file."""
    return DuckDBStorage(db_path=str(tmp_path / "qbosync.duckdb"))


@pytest.fixture
def fake_qbo():
    """Fake Intuit OAuth and accounting API."""
    return FakeQBO()


@pytest.fixture
def services(storage, settings, fake_qbo) -> SyncServices:
    """Sync services wired to the test storage and FakeQBO, with seeded jitter."""
    return build_sync_services(
        storage=storage,
        settings=settings,
        transport=fake_qbo.transport,
        policy=BackoffPolicy(
            base_seconds=settings.sync_backoff_base_seconds,
            cap_seconds=settings.sync_backoff_cap_seconds,
            max_attempts=settings.sync_max_attempts,
            rng=random.Random(1234),
        ),
    )


@pytest.fixture
def connected_org(services) -> Connection:
    """ORG_ID connected to REALM_ID with a fresh access token."""
    return services.store.save_initial_connection(ORG_ID, make_tokens(), REALM_ID, "Acme Builders LLC")


@pytest.fixture
def client(services):
    """FastAPI test client routed to the per-test services."""
    from qbosync.main import app

    app.dependency_overrides[get_sync_services] = lambda: services
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Authenticated request headers for ORG_ID."""
    return {
        "Authorization": f"Bearer {create_access_token({'sub': ORG_ID})}",
        "X-Request-ID": str(_uuid.uuid4()),
    }
