"""
Shared fixtures for the chat backend tests.

MongoDB is replaced by mongomock_motor and the realtime bus by the in-process
LocalBus; timing settings are shrunk so timers and retries finish quickly.
"""

import asyncio
import os

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

# Set test environment
os.environ.setdefault("JWT_SECRET", "test-secret")

from beliyo.core.config import Settings
from beliyo.core.context import AppContext
from beliyo.utils.realtime_bus import LocalBus
from beliyo.utils.security import create_access_token


@pytest.fixture
def settings() -> Settings:
    return Settings(
        typing_timeout_seconds=0.05,
        presence_heartbeat_seconds=60,
        max_retry_attempts=3,
        reconnect_delays=[0.01, 0.02, 0.03],
        send_max_attempts=2,
        send_retry_delay_seconds=0.01,
    )


@pytest.fixture
def db():
    client = AsyncMongoMockClient()
    return client["beliyo_test"]


@pytest.fixture
def bus() -> LocalBus:
    return LocalBus()


@pytest_asyncio.fixture
async def ctx(settings, db, bus):
    context = AppContext(settings=settings, db=db, bus=bus)
    await context.ensure_indexes()
    yield context
    await context.teardown()
    await bus.close()


@pytest.fixture
def settle():
    """Poll until a condition holds; realtime delivery happens on other tasks."""

    async def _settle(predicate, timeout: float = 2.0) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if predicate():
                return True
            await asyncio.sleep(0.01)
        return predicate()

    return _settle


@pytest.fixture
def auth_headers():
    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return _headers
