"""
Unit tests for QuickBooks client request throttling.
"""

import asyncio
import time

import pytest

from qbosync.connectors.qbo_client import QBOClient


@pytest.fixture
def throttled_client():
    """Client allowing one request per half second per realm."""
    client = QBOClient("client-id", "client-secret", "http://localhost/callback")
    client.RATE_LIMIT_REQUESTS = 1
    client.RATE_LIMIT_WINDOW = 0.5
    return client


class TestRateLimitWait:
    async def test_full_window_delays_same_realm(self, throttled_client):
        await throttled_client._rate_limit_wait("realm-a")

        started = time.monotonic()
        await throttled_client._rate_limit_wait("realm-a")

        assert time.monotonic() - started >= 0.4

    async def test_throttled_realm_does_not_block_other_realms(self, throttled_client):
        await throttled_client._rate_limit_wait("realm-a")
        waiting = asyncio.create_task(throttled_client._rate_limit_wait("realm-a"))
        await asyncio.sleep(0.01)

        await asyncio.wait_for(throttled_client._rate_limit_wait("realm-b"), timeout=0.2)

        assert not waiting.done()
        await waiting
