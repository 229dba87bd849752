"""
Shared test fixtures.

Nothing here touches a real vendor: remote endpoints are httpx.MockTransport
handlers and sleeps are recorded instead of awaited.
"""
import asyncio
import os

# Must be set before app.config is first imported
os.environ.setdefault("LOG_DIR", "")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENABLE_SCHEDULER", "false")

import httpx
import pytest

from app.config import Settings
from app.connectors.fetcher import CredentialGate
from app.storage.memory import InMemorySyncStore
from app.sync.types import SyncStatus


def run(coro):
    """Run a coroutine to completion in a fresh loop"""
    return asyncio.run(coro)


class SleepRecorder:
    """Stands in for asyncio.sleep; records requested delays and yields once"""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)
        await asyncio.sleep(0)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def settings():
    return Settings(
        log_dir="",
        quick_sync_days=3,
        quick_sync_timeout_seconds=5.0,
        pagination_max_pages=10,
        fetch_max_attempts=3,
        fetch_base_delay_seconds=2.0,
        fetch_max_delay_seconds=10.0,
        write_batch_size=100,
        bulk_result_max_pages=50,
    )


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def gate():
    return CredentialGate(max_in_flight=4)


@pytest.fixture
def store():
    return InMemorySyncStore()


@pytest.fixture
def shopify_connection(store):
    return store.create_connection(
        platform="shopify",
        account_ref="test-store.myshopify.com",
        credential_handle="shpat_test",
        brand_id="brand-1",
    )


@pytest.fixture
def importing_connection(store, shopify_connection):
    """A connection already past quick sync"""
    shopify_connection.sync_status = SyncStatus.BULK_IMPORTING
    store.save_connection(shopify_connection)
    return shopify_connection
