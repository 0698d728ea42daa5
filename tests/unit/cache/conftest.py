"""Fixtures for cache client tests against the in-memory Redis fake."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
import pytest_asyncio

from mirrorcache.cache.client import CacheClient
from mirrorcache.cache.events import CacheEvent
from mirrorcache.cache.local import MemoryLocalCache
from mirrorcache.cache.serializers import MsgpackSerializer
from mirrorcache.config import CacheConfig
from tests.fake_redis import FakeRedisServer

ClientBuilder = Callable[..., CacheClient]


@pytest.fixture
def server() -> FakeRedisServer:
    """Shared fake Redis server."""
    return FakeRedisServer()


@pytest.fixture
def make_client(server: FakeRedisServer) -> ClientBuilder:
    """Build clients wired to the fake server.

    The liveness probe is off and reconnect retries are fast unless a test
    overrides them.
    """

    def _make(**overrides: Any) -> CacheClient:
        values: dict[str, Any] = {
            "store_url": "redis://fake:6379/0",
            "serializer": MsgpackSerializer(),
            "local_cache": MemoryLocalCache(),
            "reconnect_interval": 0.01,
            "health_check_interval": 0,
        }
        values.update(overrides)
        return CacheClient(CacheConfig(**values), client_factory=server.client_factory)

    return _make


@pytest_asyncio.fixture
async def client(make_client: ClientBuilder) -> AsyncIterator[CacheClient]:
    """Connected client with the default ``cache:`` prefix."""
    cache = make_client()
    await cache.connect()
    assert cache.is_ready
    yield cache
    await cache.close()


@pytest.fixture
def events() -> list[CacheEvent]:
    """Collects events from a listener registered by the test."""
    return []

