"""Redis connection pair for the cache client.

Two sessions are kept per client:
- DataSession: a single-connection client for reads and writes. Client-side
  tracking in Redis is per connection, so reads must always go through the
  same connection that had tracking enabled.
- InvalidationSession: a Pub/Sub connection subscribed to the invalidation
  channel that tracking redirects to.

Neither session reconnects by itself. Loss of either connection is reported
through the ``on_error`` / ``on_connection_lost`` handlers and the owner
rebuilds both sessions.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, cast

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from mirrorcache.errors import NotReadyError, PingError

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from redis.asyncio.client import PubSub

logger = logging.getLogger(__name__)

# Channel Redis publishes tracking invalidations on (RESP2 redirect mode)
INVALIDATION_CHANNEL = "__redis__:invalidate"

# How long one get_message call waits before the listener re-checks state
LISTEN_POLL_TIMEOUT = 1.0

# Errors that mean the connection itself is gone
TRANSPORT_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)

ErrorHandler = Callable[[BaseException], None]
ConnectionLostHandler = Callable[[], None]
InvalidationHandler = Callable[[list[str] | None], None]
ClientFactory = Callable[[str], "Redis"]


def create_redis_client(url: str) -> Redis:
    """Create a dedicated single-connection Redis client.

    The connection speaks RESP2: over RESP3, Redis delivers redirected
    invalidations as push frames instead of messages on the invalidation
    channel.

    redis-py retries are disabled: a silently re-established connection gets
    a new CLIENT ID and loses its tracking registration, so reconnects are
    left to the cache client.
    """
    return redis.Redis.from_url(
        url,
        protocol=2,
        decode_responses=False,
        single_connection_client=True,
        retry=Retry(NoBackoff(), 0),
        retry_on_timeout=False,
    )


def _decode_key(key: Any) -> str:
    return key.decode("utf-8") if isinstance(key, bytes) else str(key)


class DataSession:
    """Connection used for all cache reads and writes.

    Runs a PING liveness probe every ``health_check_interval`` seconds
    (disabled when 0), since a dead data connection is otherwise only
    noticed by the next command that uses it.
    """

    def __init__(
        self,
        url: str,
        on_error: ErrorHandler,
        on_connection_lost: ConnectionLostHandler,
        *,
        health_check_interval: float = 5.0,
        client_factory: ClientFactory | None = None,
    ):
        self.url = url
        self.health_check_interval = health_check_interval
        self.client: Redis | None = None
        self._on_error = on_error
        self._on_connection_lost = on_connection_lost
        self._client_factory = client_factory or create_redis_client
        self._probe_task: asyncio.Task[None] | None = None
        self._closing = False

    async def connect(self) -> None:
        """Open the connection and start the liveness probe."""
        self._closing = False
        self.client = self._client_factory(self.url)
        await self.client.ping()

        if self.health_check_interval > 0:
            self._probe_task = asyncio.create_task(self._probe_loop())

    async def close(self) -> None:
        """Close the connection. Safe to call when never connected."""
        self._closing = True

        task = self._probe_task
        self._probe_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        client = self.client
        self.client = None
        if client is not None:
            await client.aclose()

    async def _probe_loop(self) -> None:
        """Ping periodically; report PingError and connection loss on failure."""
        while not self._closing:
            await asyncio.sleep(self.health_check_interval)
            client = self.client
            if self._closing or client is None:
                return

            try:
                await client.ping()
            except (RedisError, OSError) as e:
                if self._closing:
                    return
                logger.warning(f"Data connection liveness probe failed: {e}")
                error = PingError()
                error.__cause__ = e
                self._on_error(error)
                self._on_connection_lost()
                return


class InvalidationSession:
    """Pub/Sub connection that receives tracking invalidations."""

    def __init__(
        self,
        url: str,
        on_error: ErrorHandler,
        on_connection_lost: ConnectionLostHandler,
        *,
        client_factory: ClientFactory | None = None,
        poll_timeout: float = LISTEN_POLL_TIMEOUT,
    ):
        self.url = url
        self.channel = INVALIDATION_CHANNEL
        self.poll_timeout = poll_timeout
        self.client: Redis | None = None
        self.pubsub: PubSub | None = None
        self._on_error = on_error
        self._on_connection_lost = on_connection_lost
        self._client_factory = client_factory or create_redis_client
        self._handler: InvalidationHandler | None = None
        self._listener_task: asyncio.Task[None] | None = None
        self._closing = False

    async def connect(self) -> None:
        """Open the Pub/Sub connection (without subscribing yet)."""
        self._closing = False
        self.client = self._client_factory(self.url)
        self.pubsub = self.client.pubsub()
        await self.pubsub.connect()

    async def client_id(self) -> int | None:
        """CLIENT ID of the Pub/Sub connection.

        Must run before subscribing: a subscribed RESP2 connection only
        accepts (un)subscribe commands.
        """
        if self.pubsub is None or self.pubsub.connection is None:
            raise NotReadyError()

        connection = self.pubsub.connection
        await connection.send_command("CLIENT", "ID")
        response = await connection.read_response()
        return cast(int | None, response)

    async def subscribe(self, handler: InvalidationHandler) -> None:
        """Subscribe to the invalidation channel and start listening."""
        if self.pubsub is None:
            raise NotReadyError()

        self._handler = handler
        await self.pubsub.subscribe(self.channel)
        self._listener_task = asyncio.create_task(self._listen_loop())
        logger.debug(f"Listening for invalidations on {self.channel}")

    async def close(self) -> None:
        """Stop listening and close the connection."""
        self._closing = True

        task = self._listener_task
        self._listener_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        pubsub = self.pubsub
        self.pubsub = None
        if pubsub is not None:
            await pubsub.aclose()

        client = self.client
        self.client = None
        if client is not None:
            await client.aclose()

    async def _listen_loop(self) -> None:
        """Main loop for receiving invalidation messages."""
        while not self._closing and self.pubsub is not None:
            try:
                message = await self.pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=self.poll_timeout,
                )
            except TRANSPORT_ERRORS as e:
                if self._closing:
                    return
                logger.warning(f"Invalidation connection lost: {e}")
                self._on_error(e)
                self._on_connection_lost()
                return

            if message is None or message["type"] != "message":
                continue

            self._dispatch(message["data"])

    def _dispatch(self, data: Any) -> None:
        """Decode an invalidation payload and hand it to the handler.

        ``None`` (a flush notification) is passed through as ``None``.
        """
        if self._handler is None:
            return

        keys: list[str] | None
        if data is None:
            keys = None
        elif isinstance(data, (list, tuple)):
            keys = [_decode_key(key) for key in data]
        else:
            keys = [_decode_key(data)]

        try:
            self._handler(keys)
        except Exception as e:
            logger.error(f"Invalidation handler failed: {e}")


class StoreConnectionManager:
    """Owns the data and invalidation sessions of one cache client.

    Fresh sessions are created on every ``connect_clients`` call; closed
    redis-py clients are never reused.
    """

    def __init__(
        self,
        url: str,
        on_error: ErrorHandler,
        on_connection_lost: ConnectionLostHandler,
        *,
        health_check_interval: float = 5.0,
        client_factory: ClientFactory | None = None,
    ):
        self.url = url
        self.health_check_interval = health_check_interval
        self._on_error = on_error
        self._on_connection_lost = on_connection_lost
        self._client_factory = client_factory
        self._data: DataSession | None = None
        self._invalidation: InvalidationSession | None = None

    def _initialize_sessions(self) -> None:
        self._data = DataSession(
            self.url,
            self._on_error,
            self._on_connection_lost,
            health_check_interval=self.health_check_interval,
            client_factory=self._client_factory,
        )
        self._invalidation = InvalidationSession(
            self.url,
            self._on_error,
            self._on_connection_lost,
            client_factory=self._client_factory,
        )

    async def connect_clients(self) -> InvalidationSession:
        """Connect both sessions concurrently.

        Sessions left over from a previous call are closed first.

        Returns:
            The invalidation session, for the caller to subscribe on.
        """
        if self.has_sessions:
            await self.close_clients()

        self._initialize_sessions()
        assert self._data is not None and self._invalidation is not None

        await asyncio.gather(self._data.connect(), self._invalidation.connect())
        return self._invalidation

    async def close_clients(self) -> None:
        """Close both sessions.

        Each close runs even if the other fails; the first failure is
        re-raised afterwards.
        """
        sessions = (self._data, self._invalidation)
        self._data = None
        self._invalidation = None

        first_error: Exception | None = None
        for session in sessions:
            if session is None:
                continue
            try:
                await session.close()
            except Exception as e:
                logger.warning(f"Error closing Redis session: {e}")
                if first_error is None:
                    first_error = e

        if first_error is not None:
            raise first_error

    def get_data_client(self) -> Redis:
        """Redis client of the data session.

        Raises:
            NotReadyError: If the data session is not connected.
        """
        if self._data is None or self._data.client is None:
            raise NotReadyError()
        return self._data.client

    @property
    def has_sessions(self) -> bool:
        return self._data is not None or self._invalidation is not None

    @property
    def invalidation_session(self) -> InvalidationSession | None:
        return self._invalidation
