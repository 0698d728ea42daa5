"""Error types raised by the cache client.

Transport and server failures from redis-py are not wrapped; they propagate
as ``redis.exceptions.RedisError`` (or ``OSError``) unchanged.
"""

from __future__ import annotations


class CacheError(Exception):
    """Base exception for cache client errors."""

    def __init__(self, message: str, code: str):
        self.code = code
        super().__init__(message)


class NotReadyError(CacheError):
    """Operation attempted while the client is not connected and ready."""

    def __init__(self) -> None:
        super().__init__(
            "The cache is not ready yet. Please wait for the cache to be ready.",
            "CACHE_NOT_READY",
        )


class MissingClientIdError(CacheError):
    """The invalidation connection did not report a CLIENT ID."""

    def __init__(self) -> None:
        super().__init__("Missing client id.", "MISSING_CLIENT_ID")


class PingError(CacheError):
    """Liveness probe on the data connection failed."""

    def __init__(self) -> None:
        super().__init__("Client ping error.", "PING_ERROR")
