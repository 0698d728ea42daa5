"""Two-tier cache client.

A process-local mirror (``LocalCache``) holds entries read from or written to
Redis. Redis client-side caching keeps the mirror coherent:

1. The invalidation session reports its CLIENT ID
2. The data session enables ``CLIENT TRACKING ON REDIRECT <id> NOLOOP``
3. The invalidation session subscribes to ``__redis__:invalidate``

From then on Redis pushes the name of every tracked key that another client
changes (or that expires), and the mirror drops it. Writes made by this
client are not echoed back (NOLOOP); they already updated the mirror.

Concurrent reads of a missing key are deduplicated with an in-flight marker
placed in the mirror: the first reader fetches, later readers get ``None``
instead of waiting or issuing a second fetch.

Example:
    client = CacheClient.from_settings(key_prefix="users:")
    await client.connect()

    await client.set("42", {"name": "Ada"}, ttl="10m")
    user = await client.get("42")

    await client.close()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from mirrorcache.cache.connection import (
    TRANSPORT_ERRORS,
    ClientFactory,
    InvalidationSession,
    StoreConnectionManager,
)
from mirrorcache.cache.events import (
    CacheEvent,
    CacheEventType,
    ClientState,
    EventDispatcher,
    EventListener,
)
from mirrorcache.cache.keys import Keyspace
from mirrorcache.cache.ttl import TTL, resolve_ttl
from mirrorcache.errors import MissingClientIdError, NotReadyError
from mirrorcache.observability.logging import LogContext
from mirrorcache.observability.metrics import (
    record_inflight_skip,
    record_invalidations,
    record_local_hit,
    record_local_miss,
    record_reconnect,
    record_store_fetch,
    record_store_fetch_error,
    set_client_state,
)

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from mirrorcache.config import CacheConfig


class InFlight:
    """Mirror entry for a key whose store fetch is in progress.

    Each ``mget`` call uses its own instance, so a call can tell its own
    markers apart from markers placed by concurrent calls.
    """

    __slots__ = ()

    def __repr__(self) -> str:
        return f"<InFlight {id(self):#x}>"


class CacheClient:
    """Cache orchestrator: mirror + Redis + coherence + reconnection.

    States: DISCONNECTED -> CONNECTING -> READY, and READY -> RECONNECTING
    when either connection is lost. The reconnect loop runs as a single
    background task and retries every ``reconnect_interval`` seconds until
    it succeeds or ``close()`` is called.

    Data operations raise ``NotReadyError`` unless the client is READY.
    """

    def __init__(
        self,
        config: CacheConfig,
        *,
        logger: logging.Logger | None = None,
        client_factory: ClientFactory | None = None,
    ):
        self.config = config
        self.keyspace = Keyspace(config.key_prefix)
        self._local = config.local_cache
        self._serializer = config.serializer
        self._logger = logger or logging.getLogger(__name__)
        self._events = EventDispatcher(self._logger)
        self._connections = StoreConnectionManager(
            config.store_url,
            self._handle_client_error,
            self._handle_connection_lost,
            health_check_interval=config.health_check_interval,
            client_factory=client_factory,
        )

        self._state = ClientState.DISCONNECTED
        self._lock = asyncio.Lock()
        self._ready = asyncio.Event()
        self._reconnecting = False
        self._lost_while_connecting = False
        self._closed = False
        self._reconnect_task: asyncio.Task[None] | None = None
        self._invalidation_client_id: int | None = None

    @classmethod
    def from_settings(
        cls,
        *,
        logger: logging.Logger | None = None,
        client_factory: ClientFactory | None = None,
        **overrides: Any,
    ) -> "CacheClient":
        """Create a client from environment settings plus overrides."""
        from mirrorcache.config import CacheConfig

        return cls(
            CacheConfig.from_settings(**overrides),
            logger=logger,
            client_factory=client_factory,
        )

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ClientState:
        """Get current client state."""
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == ClientState.READY and not self._reconnecting

    @property
    def namespace(self) -> str:
        return self.keyspace.prefix

    def add_listener(self, listener: EventListener) -> None:
        """Register a listener for error, reconnecting and state events."""
        self._events.add_listener(listener)

    def remove_listener(self, listener: EventListener) -> None:
        self._events.remove_listener(listener)

    async def wait_until_ready(self, timeout: float | None = None) -> bool:
        """Wait until the client is READY.

        Returns:
            True once ready, False if ``timeout`` elapsed first.
        """
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _set_state(self, state: ClientState) -> None:
        if state == self._state:
            return

        previous = self._state
        self._state = state
        if state == ClientState.READY:
            self._ready.set()
        else:
            self._ready.clear()

        self._logger.info(f"Cache client state: {previous.value} -> {state.value}")
        set_client_state(self.namespace, state.value)
        self._events.emit(CacheEvent(type=CacheEventType.STATE_CHANGED, state=state))

    def _emit_error(self, error: BaseException) -> None:
        self._logger.warning(f"Cache client error: {error!r}")
        self._events.emit(CacheEvent(type=CacheEventType.ERROR, error=error))

    def _ensure_ready(self) -> None:
        if not self.is_ready:
            raise NotReadyError()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> "CacheClient":
        """Connect both sessions and register for invalidations.

        A failed attempt is emitted as an error event and hands over to the
        background reconnect loop; it is not raised. Use
        ``wait_until_ready`` to wait for the connection. Does nothing while
        the client is ready or reconnecting.
        """
        self._closed = False
        if self.is_ready or self._reconnecting:
            return self

        try:
            await self._establish()
        except Exception as e:
            self._emit_error(e)
            self._start_reconnect()
        return self

    async def close(self) -> None:
        """Disconnect, stop reconnecting and clear the mirror.

        Idempotent; safe to call in any state.
        """
        self._closed = True
        self._reconnecting = False

        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        async with self._lock:
            try:
                await self._connections.close_clients()
            finally:
                self._invalidation_client_id = None
                self._local.clear()
                self._set_state(ClientState.DISCONNECTED)

    async def __aenter__(self) -> "CacheClient":
        return await self.connect()

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _establish(self) -> None:
        """One connect attempt: open sessions, then run the tracking protocol."""
        async with self._lock:
            # A concurrent connect() got here first
            if self.is_ready:
                return

            self._lost_while_connecting = False
            self._set_state(ClientState.CONNECTING)
            try:
                invalidation = await self._connections.connect_clients()
                await self._configure_tracking(invalidation)
                if self._lost_while_connecting:
                    raise RedisConnectionError("Connection lost during setup")
            except BaseException:
                self._set_state(
                    ClientState.RECONNECTING if self._reconnecting else ClientState.DISCONNECTED
                )
                raise

            self._reconnecting = False
            self._set_state(ClientState.READY)

    async def _configure_tracking(self, invalidation: InvalidationSession) -> None:
        client_id = await invalidation.client_id()
        if not client_id:
            raise MissingClientIdError()
        self._invalidation_client_id = client_id

        data = self._connections.get_data_client()
        await data.client_tracking_on(clientid=client_id, noloop=True)
        await invalidation.subscribe(self._handle_invalidation)

        self._logger.debug(f"Tracking enabled, invalidations redirected to client {client_id}")

    async def _teardown(self) -> None:
        """Close sessions and drop the mirror; it may have missed invalidations."""
        try:
            await self._connections.close_clients()
        finally:
            self._invalidation_client_id = None
            self._local.clear()

    # -------------------------------------------------------------------------
    # Reconnection
    # -------------------------------------------------------------------------

    def _handle_client_error(self, error: BaseException) -> None:
        self._emit_error(error)
        self._local.clear()

    def _handle_connection_lost(self) -> None:
        if self._closed:
            return
        if self._state == ClientState.CONNECTING:
            self._lost_while_connecting = True
            return
        self._start_reconnect()

    def _start_reconnect(self) -> None:
        if self._reconnecting or self._closed:
            return

        self._reconnecting = True
        self._set_state(ClientState.RECONNECTING)
        record_reconnect(self.namespace)
        self._events.emit(CacheEvent(type=CacheEventType.RECONNECTING))
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    @contextmanager
    def _data_command(self) -> Iterator[None]:
        """Treat a transport error from a data session command as connection loss.

        redis-py reopens a failed connection on the next command, with a new
        CLIENT ID and without tracking, so both sessions are rebuilt instead.
        """
        try:
            yield
        except TRANSPORT_ERRORS as e:
            if not self._closed:
                self._logger.warning(f"Data connection lost: {e}")
                self._local.clear()
            self._handle_connection_lost()
            raise

    async def _reconnect_loop(self) -> None:
        """Tear down and reconnect until it works or the client is closed."""
        interval = self.config.reconnect_interval
        attempt = 0

        with LogContext(namespace=self.namespace, operation="reconnect"):
            while not self._closed:
                attempt += 1
                try:
                    await self._teardown()
                except Exception as e:
                    self._emit_error(e)

                try:
                    await self._establish()
                except Exception as e:
                    self._emit_error(e)
                    self._logger.warning(
                        f"Reconnect attempt {attempt} failed, retrying in {interval:.1f}s"
                    )
                    await asyncio.sleep(interval)
                    continue

                self._logger.info(f"Reconnected after {attempt} attempt(s)")
                return

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    def _handle_invalidation(self, keys: list[str] | None) -> None:
        # A None batch is a flush notification; nothing is tracked per-flush
        if keys is None:
            self._logger.debug("Ignoring invalidation flush notification")
            return

        for key in keys:
            self._logger.debug(f"Invalidating key: {key}")
            self._local.delete(key)
        record_invalidations(self.namespace, len(keys))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def mset(
        self,
        entries: Mapping[str, Any] | Iterable[tuple[str, Any]],
        ttl: TTL | None = None,
    ) -> None:
        """Store several values locally and in Redis.

        The mirror is updated before the Redis round-trip, so readers in this
        process see the new values immediately.
        """
        self._ensure_ready()

        items = list(entries.items()) if isinstance(entries, Mapping) else list(entries)
        if not items:
            return

        expiry = resolve_ttl(ttl) if ttl is not None else self.config.ttl
        local_ttl_ms = expiry * 1000 if ttl is not None else None
        data = self._connections.get_data_client()

        encoded = [
            (self.keyspace.physical(key), value, self._serializer.serialize(value))
            for key, value in items
        ]
        for full_key, value, _ in encoded:
            self._local.set(full_key, value, ttl_ms=local_ttl_ms)

        # One SET at a time on the tracked connection; NOLOOP only covers its own writes
        with self._data_command():
            for full_key, _, payload in encoded:
                await data.set(full_key, payload, ex=expiry)

            # TOUCH is a read command, so it also registers the keys for tracking
            await data.touch(*[full_key for full_key, _, _ in encoded])

    async def set(self, key: str, value: Any, ttl: TTL | None = None) -> None:
        """Store a value locally and in Redis."""
        await self.mset([(key, value)], ttl=ttl)

    async def set_local(self, key: str, value: Any, ttl: TTL | None = None) -> None:
        """Store a value in the mirror only; Redis is not touched."""
        local_ttl_ms = resolve_ttl(ttl) * 1000 if ttl is not None else None
        self._local.set(self.keyspace.physical(key), value, ttl_ms=local_ttl_ms)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def mget(self, *keys: str) -> dict[str, Any]:
        """Get several values, from the mirror where possible.

        Keys missing from the mirror are fetched from Redis in one MGET. A
        key already being fetched by a concurrent call is returned as None
        rather than waited for. If the MGET itself fails, the error is
        emitted and the affected keys are returned as None.

        Returns:
            Mapping of each requested key to its value, or None if absent.
        """
        self._ensure_ready()
        data = self._connections.get_data_client()

        result: dict[str, Any] = {}
        marker = InFlight()
        pending: list[tuple[str, str]] = []

        for key in dict.fromkeys(keys):
            full_key = self.keyspace.physical(key)
            cached = self._local.get(full_key)

            if isinstance(cached, InFlight):
                record_inflight_skip(self.namespace)
                result[key] = None
            elif cached is not None:
                record_local_hit(self.namespace)
                result[key] = cached
            else:
                self._local.set(full_key, marker)
                pending.append((key, full_key))
                result[key] = None

        if not pending:
            return result

        record_local_miss(self.namespace, len(pending))
        self._logger.debug(f"Fetching {len(pending)} key(s) from store")
        started = time.perf_counter()
        try:
            with self._data_command():
                raw_values = await data.mget([full_key for _, full_key in pending])
        except asyncio.CancelledError:
            self._release_markers(marker, pending)
            raise
        except (RedisError, OSError) as e:
            self._release_markers(marker, pending)
            record_store_fetch_error(self.namespace)
            self._emit_error(e)
            return result
        record_store_fetch(self.namespace, time.perf_counter() - started)

        for (key, full_key), raw in zip(pending, raw_values):
            result[key] = self._resolve_fetched(marker, full_key, raw)

        return result

    async def get(self, key: str) -> Any:
        """Get a value, or None if absent."""
        result = await self.mget(key)
        return result.get(key)

    def _resolve_fetched(self, marker: InFlight, full_key: str, raw: Any) -> Any:
        """Apply one fetched value to the mirror and return what the caller sees."""
        try:
            value = self._decode(raw) if raw is not None else None
        except Exception as e:
            if self._local.get(full_key) is marker:
                self._local.delete(full_key)
            self._emit_error(e)
            return None

        current = self._local.get(full_key)
        if current is marker:
            if value is None:
                self._local.delete(full_key)
            else:
                self._local.set(full_key, value)
            return value

        # Marker was replaced by a local write or removed by an invalidation
        # while the fetch was in flight; leave the mirror as it is.
        if current is not None and not isinstance(current, InFlight):
            return current
        return value

    def _release_markers(self, marker: InFlight, pending: list[tuple[str, str]]) -> None:
        for _, full_key in pending:
            if self._local.get(full_key) is marker:
                self._local.delete(full_key)

    def _decode(self, raw: Any) -> Any:
        if not self._serializer.binary and isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return self._serializer.deserialize(raw)

    # -------------------------------------------------------------------------
    # Deletes and key management
    # -------------------------------------------------------------------------

    async def mdel(self, *keys: str) -> int:
        """Delete keys from Redis, then from the mirror.

        Returns:
            Number of keys Redis reported as deleted.
        """
        self._ensure_ready()
        if not keys:
            return 0

        full_keys = self.keyspace.physical_many(keys)
        data = self._connections.get_data_client()

        with self._data_command():
            deleted = int(await data.delete(*full_keys))
        for full_key in full_keys:
            self._local.delete(full_key)
        return deleted

    async def delete(self, key: str) -> int:
        """Delete one key from Redis and the mirror."""
        return await self.mdel(key)

    async def clear(self) -> int:
        """Delete every key under this client's prefix and empty the mirror.

        The whole mirror is cleared, not only this namespace: the local cache
        belongs to this client alone.

        Returns:
            Number of keys deleted from Redis.
        """
        self._ensure_ready()
        data = self._connections.get_data_client()
        batch_size = self.config.scan_batch_size

        deleted = 0
        batch: list[Any] = []
        with LogContext(namespace=self.namespace, operation="clear"), self._data_command():
            # Use SCAN to avoid blocking on large keyspaces
            async for key in data.scan_iter(match=self.keyspace.match(), count=batch_size):
                batch.append(key)
                if len(batch) >= batch_size:
                    deleted += int(await data.delete(*batch))
                    batch = []
            if batch:
                deleted += int(await data.delete(*batch))

            self._local.clear()
            self._logger.info(f"Cleared {deleted} key(s) from {self.namespace}")
        return deleted

    async def keys(self, pattern: str = "*") -> list[str]:
        """List logical keys in this namespace matching a glob pattern."""
        self._ensure_ready()
        data = self._connections.get_data_client()

        found: dict[str, None] = {}
        with self._data_command():
            async for raw in data.scan_iter(
                match=self.keyspace.match(pattern), count=self.config.scan_batch_size
            ):
                full_key = raw.decode("utf-8") if isinstance(raw, bytes) else raw
                found[self.keyspace.logical(full_key)] = None
        return list(found)

    async def ttl(self, key: str) -> int:
        """Remaining TTL of a key in seconds.

        Returns -1 for keys without expiry and -2 for absent keys; an absent
        key is also dropped from the mirror.
        """
        self._ensure_ready()
        full_key = self.keyspace.physical(key)
        data = self._connections.get_data_client()

        with self._data_command():
            remaining = int(await data.ttl(full_key))
        if remaining == -2:
            self._local.delete(full_key)
        return remaining

    async def health_check(self) -> dict[str, Any]:
        """Return connection health status."""
        reachable = False
        if self.is_ready:
            try:
                data: Redis = self._connections.get_data_client()
                with self._data_command():
                    reachable = bool(await data.ping())
            except (RedisError, OSError, NotReadyError):
                reachable = False

        return {
            "state": self._state.value,
            "ready": self.is_ready,
            "namespace": self.namespace,
            "invalidation_client_id": self._invalidation_client_id,
            "store_reachable": reachable,
        }
