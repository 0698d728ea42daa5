"""Tests for cache client reads, writes and coherence."""

from __future__ import annotations

import asyncio

import msgpack
import pytest
from redis.exceptions import ResponseError

from mirrorcache.cache.client import CacheClient, InFlight
from mirrorcache.cache.events import CacheEvent, CacheEventType, ClientState
from mirrorcache.cache.serializers import JsonSerializer
from mirrorcache.errors import NotReadyError
from tests.fake_redis import FakeRedisServer, wait_for


def packed(value: object) -> bytes:
    return msgpack.packb(value, use_bin_type=True)


class TestReadsAndWrites:
    """Basic get/set/delete behaviour."""

    @pytest.mark.asyncio
    async def test_get_absent_key_returns_none(self, client: CacheClient) -> None:
        """Absent key reads as None and leaves nothing in the mirror."""
        assert await client.get("missing") is None
        assert client.config.local_cache.get("cache:missing") is None

    @pytest.mark.asyncio
    async def test_set_then_get_reads_from_mirror(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """A value just written is served locally without an MGET."""
        await client.set("user", {"name": "Ada"})

        assert await client.get("user") == {"name": "Ada"}
        assert server.commands_named("MGET") == []

    @pytest.mark.asyncio
    async def test_set_writes_store_with_default_ttl_and_touches(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """SET uses the configured TTL and is followed by TOUCH."""
        await client.set("k", 1)

        assert ("SET", "cache:k", 3600) in server.commands
        assert ("TOUCH", ("cache:k",)) in server.commands
        assert server.data["cache:k"] == packed(1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("ttl", "expected"),
        [(0.2, 1), ("500ms", 1), ("10m", 600), (90, 90), ("1 hour", 3600)],
    )
    async def test_set_resolves_ttl(
        self, client: CacheClient, server: FakeRedisServer, ttl: object, expected: int
    ) -> None:
        """Per-call TTLs are resolved to whole seconds, at least one."""
        await client.set("k", "v", ttl=ttl)

        assert server.expiry["cache:k"] == expected

    @pytest.mark.asyncio
    async def test_mset_and_mget(self, client: CacheClient, server: FakeRedisServer) -> None:
        """Batch write then batch read returns values and None for absent keys."""
        await client.mset([("a", 1), ("b", 2)])

        result = await client.mget("a", "b", "c")

        assert result == {"a": 1, "b": 2, "c": None}
        assert server.commands_named("MGET") == [("MGET", ("cache:c",))]

    @pytest.mark.asyncio
    async def test_mset_accepts_mapping(self, client: CacheClient) -> None:
        """Entries may be given as a mapping."""
        await client.mset({"x": [1, 2], "y": "z"})

        assert await client.mget("x", "y") == {"x": [1, 2], "y": "z"}

    @pytest.mark.asyncio
    async def test_mset_empty_is_noop(self, client: CacheClient, server: FakeRedisServer) -> None:
        """Empty batch writes nothing."""
        await client.mset([])

        assert server.commands_named("SET") == []
        assert server.commands_named("TOUCH") == []

    @pytest.mark.asyncio
    async def test_mget_fetches_and_mirrors(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """A store hit is mirrored so the next read is local."""
        server.data["cache:remote"] = packed({"a": 1})

        assert await client.get("remote") == {"a": 1}
        assert await client.get("remote") == {"a": 1}
        assert len(server.commands_named("MGET")) == 1

    @pytest.mark.asyncio
    async def test_mget_duplicate_keys_fetched_once(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """Repeated keys in one call are fetched once."""
        server.data["cache:a"] = packed("x")

        result = await client.mget("a", "a")

        assert result == {"a": "x"}
        assert server.commands_named("MGET") == [("MGET", ("cache:a",))]

    @pytest.mark.asyncio
    async def test_delete_removes_store_and_mirror(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """Delete removes the key everywhere."""
        await client.set("k", 1)

        assert await client.delete("k") == 1
        assert "cache:k" not in server.data
        assert await client.get("k") is None

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, client: CacheClient) -> None:
        """Deleting an absent key succeeds and reports zero."""
        assert await client.delete("never") == 0
        assert await client.delete("never") == 0

    @pytest.mark.asyncio
    async def test_mdel_counts_deleted(self, client: CacheClient) -> None:
        """mdel returns how many keys the store deleted."""
        await client.mset([("a", 1), ("b", 2)])

        assert await client.mdel("a", "b", "c") == 2
        assert await client.mget("a", "b") == {"a": None, "b": None}

    @pytest.mark.asyncio
    async def test_mdel_empty(self, client: CacheClient, server: FakeRedisServer) -> None:
        """No keys means no DEL."""
        assert await client.mdel() == 0
        assert server.commands_named("DEL") == []

    @pytest.mark.asyncio
    async def test_set_local_skips_store(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """set_local only writes the mirror."""
        await client.set_local("k", "local")

        assert await client.get("k") == "local"
        assert "cache:k" not in server.data
        assert server.commands_named("SET") == []

    @pytest.mark.asyncio
    async def test_set_local_works_when_not_ready(self, make_client) -> None:
        """set_local does not require a connection."""
        cache = make_client()

        await cache.set_local("k", 1)

        assert cache.config.local_cache.get("cache:k") == 1

    @pytest.mark.asyncio
    async def test_json_serializer_decodes_text(
        self, make_client, server: FakeRedisServer
    ) -> None:
        """Text serializers get decoded strings from the store."""
        cache = make_client(serializer=JsonSerializer())
        await cache.connect()
        try:
            await cache.set("k", {"a": 1})
            server.data["cache:j"] = b'{"b":2}'

            assert server.data["cache:k"] == b'{"a":1}'
            assert await cache.get("j") == {"b": 2}
        finally:
            await cache.close()


class TestNotReady:
    """Operations before connect."""

    @pytest.mark.asyncio
    async def test_operations_raise_not_ready(self, make_client) -> None:
        """Data operations raise NotReadyError with the CACHE_NOT_READY code."""
        cache = make_client()

        for call in (
            lambda: cache.get("k"),
            lambda: cache.mget("k"),
            lambda: cache.set("k", 1),
            lambda: cache.mset([("k", 1)]),
            lambda: cache.delete("k"),
            lambda: cache.mdel("k"),
            lambda: cache.clear(),
            lambda: cache.keys(),
            lambda: cache.ttl("k"),
        ):
            with pytest.raises(NotReadyError) as exc_info:
                await call()
            assert exc_info.value.code == "CACHE_NOT_READY"


class TestInFlightDeduplication:
    """Concurrent reads of the same missing key."""

    @pytest.mark.asyncio
    async def test_concurrent_reader_gets_none_without_second_fetch(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """Second reader sees the in-flight marker and gets None."""
        server.data["cache:k"] = packed("v")
        server.mget_gate = asyncio.Event()

        first = asyncio.create_task(client.get("k"))
        await wait_for(lambda: len(server.commands_named("MGET")) == 1)

        assert isinstance(client.config.local_cache.get("cache:k"), InFlight)
        assert await client.get("k") is None

        server.mget_gate.set()
        assert await first == "v"
        assert len(server.commands_named("MGET")) == 1
        assert await client.get("k") == "v"

    @pytest.mark.asyncio
    async def test_failed_fetch_releases_only_own_markers(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """A failed MGET clears this call's markers and keeps other calls' markers."""
        errors: list[CacheEvent] = []
        client.add_listener(lambda event: errors.append(event) if event.error else None)

        local = client.config.local_cache
        foreign = InFlight()
        local.set("cache:k1", foreign)
        server.fail_mget = ResponseError("WRONGTYPE Operation against a key")

        result = await client.mget("k1", "k2")

        assert result == {"k1": None, "k2": None}
        assert local.get("cache:k1") is foreign
        assert local.get("cache:k2") is None
        assert server.commands_named("MGET") == [("MGET", ("cache:k2",))]
        assert [type(event.error) for event in errors] == [ResponseError]
        assert client.state == ClientState.READY

    @pytest.mark.asyncio
    async def test_undecodable_value_reads_as_absent(
        self, client: CacheClient, server: FakeRedisServer, events: list[CacheEvent]
    ) -> None:
        """A value the serializer rejects is reported and not mirrored."""
        client.add_listener(events.append)
        server.data["cache:bad"] = b"\xc1"

        assert await client.get("bad") is None
        assert client.config.local_cache.get("cache:bad") is None
        assert any(event.type == CacheEventType.ERROR for event in events)

    @pytest.mark.asyncio
    async def test_invalidation_during_fetch_is_not_overwritten(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """An invalidation that lands mid-fetch keeps the stale value out of the mirror."""
        local = client.config.local_cache
        server.data["cache:k"] = packed("old")
        server.mget_gate = asyncio.Event()

        first = asyncio.create_task(client.get("k"))
        await wait_for(lambda: len(server.commands_named("MGET")) == 1)

        server.invalidate(["cache:k"])
        await wait_for(lambda: local.get("cache:k") is None)

        server.mget_gate.set()
        assert await first == "old"
        assert local.get("cache:k") is None

    @pytest.mark.asyncio
    async def test_local_write_during_fetch_wins(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """A set() that lands mid-fetch is what the reader and mirror end with."""
        server.data["cache:k"] = packed("old")
        server.mget_gate = asyncio.Event()

        first = asyncio.create_task(client.get("k"))
        await wait_for(lambda: len(server.commands_named("MGET")) == 1)

        await client.set("k", "new")
        server.mget_gate.set()

        assert await first == "new"
        assert client.config.local_cache.get("cache:k") == "new"

    @pytest.mark.asyncio
    async def test_cancelled_fetch_releases_markers(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """Cancelling a read mid-fetch leaves no marker behind."""
        server.mget_gate = asyncio.Event()

        task = asyncio.create_task(client.get("k"))
        await wait_for(lambda: len(server.commands_named("MGET")) == 1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert client.config.local_cache.get("cache:k") is None


class TestInvalidation:
    """Mirror coherence through tracking invalidations."""

    @pytest.mark.asyncio
    async def test_remote_write_evicts_mirror(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """After another client writes, the next read returns the new value."""
        await client.set("k", 1)

        server.write_from_other_client("cache:k", packed(2))
        await wait_for(lambda: client.config.local_cache.get("cache:k") is None)

        assert await client.get("k") == 2

    @pytest.mark.asyncio
    async def test_write_on_another_connection_evicts(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """A SET from any connection other than the tracked one is reported."""
        await client.set("k", 1)
        other = server.client_factory("redis://other:6379/0")

        await other.set("cache:k", packed(2))
        await wait_for(lambda: client.config.local_cache.get("cache:k") is None)

        assert await client.get("k") == 2

    @pytest.mark.asyncio
    async def test_writes_run_on_tracked_connection(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """SET, TOUCH and DEL go over the connection that enabled tracking."""
        await client.mset({"a": 1, "b": 2})
        await client.delete("a")

        tracked = set(server.tracking)
        assert len(tracked) == 1
        assert server.connections_used("SET") == tracked
        assert server.connections_used("TOUCH") == tracked
        assert server.connections_used("DEL") == tracked

    @pytest.mark.asyncio
    async def test_own_writes_keep_mirror(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """NOLOOP: overwriting a key does not evict the value just written."""
        await client.set("mine", 1)
        await client.set("mine", 2)
        await asyncio.sleep(0.05)

        assert client.config.local_cache.get("cache:mine") == 2

    @pytest.mark.asyncio
    async def test_flush_notification_is_ignored(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """A None invalidation batch leaves the mirror alone."""
        await client.set("k", 1)

        server.invalidate(None)
        server.invalidate(["cache:other"])
        await wait_for(lambda: server.subscribers[0].queue.empty())
        await asyncio.sleep(0.01)

        assert client.config.local_cache.get("cache:k") == 1

    @pytest.mark.asyncio
    async def test_invalidation_of_unknown_key_is_harmless(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """Invalidating keys that are not mirrored does nothing."""
        server.invalidate(["cache:nothing", "elsewhere:x"])
        await wait_for(lambda: server.subscribers[0].queue.empty())

        assert client.is_ready


class TestKeyManagement:
    """clear, keys and ttl."""

    @pytest.mark.asyncio
    async def test_clear_only_deletes_own_prefix(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """clear() removes this namespace from the store and empties the mirror."""
        server.data["cache:a"] = packed(1)
        server.data["cache:b"] = packed(2)
        server.data["other:c"] = packed(3)
        await client.set_local("x", 1)

        deleted = await client.clear()

        assert deleted == 2
        assert set(server.data) == {"other:c"}
        assert len(client.config.local_cache) == 0

    @pytest.mark.asyncio
    async def test_clear_deletes_in_batches(self, make_client, server: FakeRedisServer) -> None:
        """Keys are deleted in batches of scan_batch_size."""
        for index in range(5):
            server.data[f"cache:{index}"] = packed(index)
        cache = make_client(scan_batch_size=2)
        await cache.connect()
        try:
            assert await cache.clear() == 5
        finally:
            await cache.close()

        assert [len(command[1]) for command in server.commands_named("DEL")] == [2, 2, 1]
        assert server.commands_named("SCAN") == [("SCAN", "cache:*", 2)]

    @pytest.mark.asyncio
    async def test_clear_empty_namespace(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """Clearing an empty namespace deletes nothing."""
        assert await client.clear() == 0
        assert server.commands_named("DEL") == []

    @pytest.mark.asyncio
    async def test_keys_lists_logical_names(
        self, client: CacheClient, server: FakeRedisServer
    ) -> None:
        """keys() strips the prefix and honours the pattern."""
        for name in ("cache:user:1", "cache:user:2", "cache:order:1", "other:user:3"):
            server.data[name] = packed(0)

        assert sorted(await client.keys("user:*")) == ["user:1", "user:2"]
        assert len(await client.keys()) == 3

    @pytest.mark.asyncio
    async def test_keys_escapes_glob_in_prefix(
        self, make_client, server: FakeRedisServer
    ) -> None:
        """Glob characters in the prefix match literally."""
        server.data["a*b:1"] = packed(0)
        server.data["axb:2"] = packed(0)
        cache = make_client(key_prefix="a*b")
        await cache.connect()
        try:
            assert await cache.keys() == ["1"]
        finally:
            await cache.close()

    @pytest.mark.asyncio
    async def test_ttl_reports_remaining_seconds(self, client: CacheClient) -> None:
        """ttl() returns the store TTL."""
        await client.set("k", 1, ttl="2m")

        assert await client.ttl("k") == 120

    @pytest.mark.asyncio
    async def test_ttl_no_expiry(self, client: CacheClient, server: FakeRedisServer) -> None:
        """-1 is returned for keys without expiry."""
        server.data["cache:forever"] = packed(1)

        assert await client.ttl("forever") == -1

    @pytest.mark.asyncio
    async def test_ttl_absent_key_evicts_mirror(self, client: CacheClient) -> None:
        """-2 means absent, and the stale mirror entry is dropped."""
        await client.set_local("ghost", 1)

        assert await client.ttl("ghost") == -2
        assert client.config.local_cache.get("cache:ghost") is None


class TestHealthCheck:
    """health_check() reporting."""

    @pytest.mark.asyncio
    async def test_health_check_when_ready(self, client: CacheClient) -> None:
        """A ready client reports a reachable store and its tracking client id."""
        health = await client.health_check()

        assert health["state"] == "ready"
        assert health["ready"] is True
        assert health["namespace"] == "cache:"
        assert health["store_reachable"] is True
        assert isinstance(health["invalidation_client_id"], int)

    @pytest.mark.asyncio
    async def test_health_check_when_disconnected(self, make_client) -> None:
        """A client that never connected is not reachable."""
        health = await make_client().health_check()

        assert health["state"] == "disconnected"
        assert health["ready"] is False
        assert health["store_reachable"] is False
        assert health["invalidation_client_id"] is None
