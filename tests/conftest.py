"""
Pytest configuration and shared fixtures.

Environment variables are set here before any sms_pipeline import so the
cached settings pick them up.
"""

import asyncio
import os
import tempfile
from contextlib import asynccontextmanager

TEST_DB_PATH = os.path.join(tempfile.gettempdir(), "sms_pipeline_test.db")

os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB_PATH}"
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ["BULK_SEND_DELAY_SECONDS"] = "0"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Clear settings cache before any app imports to ensure test env vars are used
from sms_pipeline.config import get_settings
get_settings.cache_clear()

from sms_pipeline import models  # noqa: F401
from sms_pipeline.main import app, get_provider
from sms_pipeline.provider import ProviderClient, ProviderReceipt
from sms_pipeline.storage import Base, InMemoryMessageLogStore, SqlMessageLogStore


class FakeProvider(ProviderClient):
    """Provider double that records every transmit call."""

    def __init__(self):
        self.configured = True
        self.delay = 0.0
        self.failures = {}
        self.calls = []
        # when set, every transmit returns this id
        self.fixed_message_id = None
        self._counter = 0

    @property
    def is_configured(self) -> bool:
        return self.configured

    @property
    def sender_address(self):
        return "+15005550006" if self.configured else None

    async def transmit(self, recipient, body, sender_address):
        self.calls.append((recipient, body, sender_address))
        if self.delay:
            await asyncio.sleep(self.delay)
        error = self.failures.get(recipient)
        if error is not None:
            raise error
        self._counter += 1
        message_id = self.fixed_message_id or f"SM{self._counter:032d}"
        return ProviderReceipt(provider_message_id=message_id, status="queued")


def _remove_test_db():
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def memory_store() -> InMemoryMessageLogStore:
    return InMemoryMessageLogStore()


@asynccontextmanager
async def sqlite_memory_store():
    """SQL store on a private in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        # sessions share the one connection; a reset on check-in would roll
        # back writes a concurrent session has not committed yet
        pool_reset_on_return=None,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield SqlMessageLogStore(async_sessionmaker(engine, expire_on_commit=False))
    finally:
        await engine.dispose()


@pytest.fixture
async def sql_store():
    async with sqlite_memory_store() as store:
        yield store


@pytest.fixture(params=["memory", "sql"])
async def store(request):
    """Run a test once against each store adapter."""
    if request.param == "memory":
        yield InMemoryMessageLogStore()
    else:
        async with sqlite_memory_store() as sql:
            yield sql


@pytest.fixture(scope="function")
def client(fake_provider):
    """Create test client with a fresh database and a fake SMS provider."""
    _remove_test_db()
    app.dependency_overrides[get_provider] = lambda: fake_provider

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    _remove_test_db()
