"""Key namespacing for the cache.

Key format: {prefix}{logical_key}

Where:
- prefix: namespace for one client in a shared Redis, always ending in ":"
- logical_key: the key the caller uses

The same physical key is used for Redis and for the local mirror, so
invalidation messages (which carry physical keys) apply to the mirror as-is.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

SEPARATOR = ":"

_GLOB_CHARS = re.compile(r"([*?\[\]\\])")


def normalize_prefix(prefix: str) -> str:
    """Ensure the prefix ends with the separator."""
    if not prefix.endswith(SEPARATOR):
        prefix += SEPARATOR
    return prefix


def escape_glob(value: str) -> str:
    """Escape Redis glob metacharacters so the value matches literally."""
    return _GLOB_CHARS.sub(r"\\\1", value)


class Keyspace:
    """Maps logical keys to physical keys under one prefix."""

    def __init__(self, prefix: str):
        self.prefix = normalize_prefix(prefix)

    def physical(self, key: str) -> str:
        """Physical key for a logical key."""
        return f"{self.prefix}{key}"

    def physical_many(self, keys: Iterable[str]) -> list[str]:
        return [self.physical(key) for key in keys]

    def owns(self, physical_key: str) -> bool:
        """Whether a physical key belongs to this namespace."""
        return physical_key.startswith(self.prefix)

    def logical(self, physical_key: str) -> str:
        """Strip the prefix from a physical key.

        Keys outside the namespace are returned unchanged.
        """
        if self.owns(physical_key):
            return physical_key[len(self.prefix) :]
        return physical_key

    def match(self, pattern: str = "*") -> str:
        """SCAN MATCH pattern for logical keys matching ``pattern``.

        The prefix is escaped; ``pattern`` keeps its glob semantics.
        """
        return f"{escape_glob(self.prefix)}{pattern}"
