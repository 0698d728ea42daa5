"""mirrorcache: a process-local cache kept coherent with Redis."""

from mirrorcache.cache import (
    CacheClient,
    CacheEvent,
    CacheEventType,
    ClientState,
    JsonSerializer,
    LocalCache,
    MemoryLocalCache,
    MsgpackSerializer,
    PickleSerializer,
    Serializer,
)
from mirrorcache.config import CacheConfig, CacheSettings, settings
from mirrorcache.errors import CacheError, MissingClientIdError, NotReadyError, PingError

__version__ = "0.1.0"

__all__ = [
    "CacheClient",
    "CacheConfig",
    "CacheSettings",
    "settings",
    "ClientState",
    "CacheEvent",
    "CacheEventType",
    "LocalCache",
    "MemoryLocalCache",
    "Serializer",
    "MsgpackSerializer",
    "JsonSerializer",
    "PickleSerializer",
    "CacheError",
    "NotReadyError",
    "MissingClientIdError",
    "PingError",
]
