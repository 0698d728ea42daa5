"""Value serializers for the Redis side of the cache.

Values in the local mirror are kept as Python objects; only what goes over
the wire is serialized. ``binary`` tells the client whether raw bytes from
Redis must be handed to ``deserialize`` as-is (True) or decoded to text
first (False).
"""

from __future__ import annotations

import pickle
from typing import Any, Protocol, runtime_checkable

import msgpack
import orjson


@runtime_checkable
class Serializer(Protocol):
    """Contract for value codecs."""

    binary: bool

    def serialize(self, value: Any) -> bytes | str: ...

    def deserialize(self, data: bytes | str) -> Any: ...


class MsgpackSerializer:
    """MessagePack codec. Compact binary encoding; the default."""

    binary = True

    def serialize(self, value: Any) -> bytes:
        return msgpack.packb(value, use_bin_type=True)

    def deserialize(self, data: bytes | str) -> Any:
        if isinstance(data, str):
            data = data.encode("utf-8")
        return msgpack.unpackb(data, raw=False, strict_map_key=False)


class JsonSerializer:
    """JSON codec backed by orjson.

    Args:
        as_bytes: Emit UTF-8 bytes instead of ``str`` from ``serialize``.
    """

    binary = False

    def __init__(self, as_bytes: bool = False):
        self.as_bytes = as_bytes

    def serialize(self, value: Any) -> bytes | str:
        encoded = orjson.dumps(value)
        return encoded if self.as_bytes else encoded.decode("utf-8")

    def deserialize(self, data: bytes | str) -> Any:
        return orjson.loads(data)


class PickleSerializer:
    """Pickle codec for arbitrary Python objects.

    Only use against a Redis that is not writable by untrusted parties;
    unpickling runs arbitrary code.
    """

    binary = True

    def __init__(self, protocol: int = pickle.HIGHEST_PROTOCOL):
        self.protocol = protocol

    def serialize(self, value: Any) -> bytes:
        return pickle.dumps(value, protocol=self.protocol)

    def deserialize(self, data: bytes | str) -> Any:
        if isinstance(data, str):
            data = data.encode("latin-1")
        return pickle.loads(data)  # nosec B301 - trusted store only


SERIALIZERS: dict[str, type[MsgpackSerializer | JsonSerializer | PickleSerializer]] = {
    "msgpack": MsgpackSerializer,
    "json": JsonSerializer,
    "pickle": PickleSerializer,
}


def create_serializer(name: str) -> Serializer:
    """Build a serializer by name (``msgpack``, ``json`` or ``pickle``)."""
    try:
        serializer_cls = SERIALIZERS[name.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown serializer {name!r}; expected one of {', '.join(SERIALIZERS)}"
        ) from None
    return serializer_cls()
