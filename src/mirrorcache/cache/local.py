"""Process-local cache used as the mirror.

The client only relies on the ``LocalCache`` protocol. ``MemoryLocalCache``
is the default implementation: a dict with per-entry expiry and an optional
size bound (oldest entry evicted first).
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class LocalCache(Protocol):
    """Contract for the process-local mirror.

    ``get`` returns ``None`` for absent (or expired) keys.
    """

    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...


class MemoryLocalCache:
    """In-memory LocalCache with optional TTL and size bound.

    Not thread-safe; it is meant to be driven from a single event loop.
    """

    def __init__(self, max_size: int | None = None):
        if max_size is not None and max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._entries: OrderedDict[str, tuple[Any, float | None]] = OrderedDict()

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None

        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl_ms: int | None = None) -> None:
        expires_at = time.monotonic() + ttl_ms / 1000 if ttl_ms else None
        self._entries[key] = (value, expires_at)
        self._entries.move_to_end(key)

        if self.max_size is not None:
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None
