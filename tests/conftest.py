"""
Pytest configuration and shared fixtures.
"""

import asyncio
import inspect
from collections.abc import AsyncGenerator, Callable
from typing import Any
from uuid import uuid4

import fakeredis
import pytest
import pytest_asyncio

from jobqueue.config import Settings
from jobqueue.queue import Queue, create_queue
from jobqueue.store.connection import ClientFactory


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    """A fresh in-memory Redis server shared by every client of one test."""
    return fakeredis.FakeServer()


@pytest.fixture
def client_factory(redis_server: fakeredis.FakeServer) -> ClientFactory:
    """Factory of independent clients connected to the test server."""
    def factory() -> fakeredis.FakeAsyncRedis:
        return fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    return factory


@pytest.fixture
def prefix() -> str:
    """Unique key prefix per test."""
    return f"test-{uuid4().hex[:8]}"


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        log_level="DEBUG",
        log_format="console",
        default_max_attempts=1,
        promotion_interval_ms=50,
        worker_poll_interval_seconds=0.01,
        worker_poll_max_interval_seconds=0.05,
        worker_max_store_failures=3,
        shutdown_timeout_seconds=2.0,
    )


@pytest_asyncio.fixture
async def queue(
    client_factory: ClientFactory,
    prefix: str,
    test_settings: Settings,
) -> AsyncGenerator[Queue]:
    """A queue bound to the test server."""
    q = create_queue(client_factory, prefix, settings=test_settings)
    yield q
    await q.shutdown(timeout=1.0)


@pytest_asyncio.fixture
async def other_queue(
    client_factory: ClientFactory,
    prefix: str,
    test_settings: Settings,
) -> AsyncGenerator[Queue]:
    """A second queue on the same keyspace, standing in for another process."""
    q = create_queue(client_factory, prefix, settings=test_settings)
    yield q
    await q.shutdown(timeout=1.0)


@pytest.fixture
def eventually() -> Callable[..., Any]:
    """Poll a (possibly async) predicate until it is truthy."""
    async def _eventually(
        predicate: Callable[[], Any],
        timeout: float = 3.0,
        interval: float = 0.02,
    ) -> Any:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = predicate()
            if inspect.isawaitable(result):
                result = await result
            if result:
                return result
            if loop.time() > deadline:
                raise AssertionError(f"condition not met within {timeout}s")
            await asyncio.sleep(interval)
    return _eventually


@pytest.fixture
def sample_job_data() -> dict[str, Any]:
    """Create a sample job payload."""
    return {"to": "user@example.com", "subject": "Hello, World!"}
