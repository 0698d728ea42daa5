"""Cache layer for mirrorcache.

Provides a local mirror kept coherent with Redis:
- Mirror reads with deduplicated, batched store fetches
- Optimistic local writes followed by Redis writes
- Invalidation via Redis client-side tracking (RESP2 redirect)
- Automatic reconnection with a fixed retry interval
"""

from mirrorcache.cache.client import CacheClient, InFlight
from mirrorcache.cache.connection import (
    INVALIDATION_CHANNEL,
    DataSession,
    InvalidationSession,
    StoreConnectionManager,
    create_redis_client,
)
from mirrorcache.cache.events import CacheEvent, CacheEventType, ClientState
from mirrorcache.cache.keys import Keyspace
from mirrorcache.cache.local import LocalCache, MemoryLocalCache
from mirrorcache.cache.serializers import (
    JsonSerializer,
    MsgpackSerializer,
    PickleSerializer,
    Serializer,
    create_serializer,
)
from mirrorcache.cache.ttl import parse_duration, resolve_ttl

__all__ = [
    # Client
    "CacheClient",
    "InFlight",
    "ClientState",
    "CacheEvent",
    "CacheEventType",
    # Connections
    "StoreConnectionManager",
    "DataSession",
    "InvalidationSession",
    "INVALIDATION_CHANNEL",
    "create_redis_client",
    # Collaborators
    "LocalCache",
    "MemoryLocalCache",
    "Serializer",
    "MsgpackSerializer",
    "JsonSerializer",
    "PickleSerializer",
    "create_serializer",
    # Keys and TTLs
    "Keyspace",
    "parse_duration",
    "resolve_ttl",
]
