"""Integration test fixtures using Docker.

Provides a containerized Redis for testing tracking and reconnection against
a real server.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Iterator

import pytest
import pytest_asyncio

from tests.integration.docker_utils import RedisContainer, get_docker_client, redis_container

REDIS_IMAGE = "redis:7-alpine"


def pytest_collection_modifyitems(items):
    """Mark everything in this directory as an integration test."""
    for item in items:
        if "tests/integration" in str(item.fspath).replace("\\", "/"):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def docker_client():
    """Create a Docker client or skip if Docker is unavailable."""
    try:
        client = get_docker_client()
        client.ping()
    except Exception as exc:
        pytest.skip(f"Docker not available: {exc}")
    yield client
    client.close()


@pytest.fixture(scope="session")
def redis_server(docker_client) -> Iterator[RedisContainer]:
    """One Redis container for the whole session."""
    with redis_container(docker_client, REDIS_IMAGE) as redis:
        yield redis


@pytest.fixture(scope="session")
def redis_url(redis_server: RedisContainer) -> str:
    return redis_server.url()


@pytest_asyncio.fixture
async def redis_client(redis_url: str):
    """Plain Redis client playing "another process" in tests."""
    import redis.asyncio as redis

    client = redis.from_url(redis_url)
    await _wait_for_redis(client)
    yield client
    await client.flushdb()  # Clean up after each test
    await client.aclose()


@pytest_asyncio.fixture
async def cache(redis_url: str, redis_client) -> AsyncIterator:
    """Connected cache client under the ``it:`` prefix."""
    from mirrorcache.cache.client import CacheClient
    from mirrorcache.cache.local import MemoryLocalCache
    from mirrorcache.cache.serializers import MsgpackSerializer
    from mirrorcache.config import CacheConfig

    config = CacheConfig(
        store_url=redis_url,
        key_prefix="it:",
        serializer=MsgpackSerializer(),
        local_cache=MemoryLocalCache(),
        reconnect_interval=0.1,
        health_check_interval=0.5,
    )
    client = CacheClient(config)
    await client.connect()
    assert await client.wait_until_ready(timeout=10.0)
    yield client
    await client.close()


async def _wait_for_redis(client, timeout: float = 30.0) -> None:
    """Wait for Redis to accept connections."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            await client.ping()
            return
        except Exception:
            if time.monotonic() >= deadline:
                raise
            await asyncio.sleep(0.5)
