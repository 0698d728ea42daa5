"""TTL parsing.

TTLs are accepted as seconds (int/float), ``timedelta`` or a short duration
string such as ``"1 hour"``, ``"30s"`` or ``"500ms"``. Redis only takes
whole seconds for ``EX``, so every TTL resolves to an int of at least 1.
"""

from __future__ import annotations

import math
import re
from datetime import timedelta
from typing import Union

TTL = Union[int, float, str, timedelta]

MIN_TTL_SECONDS = 1

_DURATION_RE = re.compile(r"^\s*(-?\d*\.?\d+)\s*([a-z]*)\s*$", re.IGNORECASE)

_UNIT_SECONDS: dict[str, float] = {
    "": 1.0,
    "ms": 0.001,
    "msec": 0.001,
    "msecs": 0.001,
    "millisecond": 0.001,
    "milliseconds": 0.001,
    "s": 1.0,
    "sec": 1.0,
    "secs": 1.0,
    "second": 1.0,
    "seconds": 1.0,
    "m": 60.0,
    "min": 60.0,
    "mins": 60.0,
    "minute": 60.0,
    "minutes": 60.0,
    "h": 3600.0,
    "hr": 3600.0,
    "hrs": 3600.0,
    "hour": 3600.0,
    "hours": 3600.0,
    "d": 86400.0,
    "day": 86400.0,
    "days": 86400.0,
    "w": 604800.0,
    "week": 604800.0,
    "weeks": 604800.0,
    "y": 31557600.0,
    "yr": 31557600.0,
    "yrs": 31557600.0,
    "year": 31557600.0,
    "years": 31557600.0,
}


def parse_duration(value: TTL) -> float:
    """Convert a TTL value into (possibly fractional) seconds.

    A bare number, numeric or string, is taken as seconds.

    Raises:
        ValueError: If a string cannot be parsed or uses an unknown unit.
        TypeError: If the value is of an unsupported type.
    """
    if isinstance(value, bool):
        raise TypeError("TTL must be a number, timedelta or duration string, not bool")
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _DURATION_RE.match(value)
        if match is None:
            raise ValueError(f"Invalid TTL duration: {value!r}")
        amount, unit = match.groups()
        factor = _UNIT_SECONDS.get(unit.lower())
        if factor is None:
            raise ValueError(f"Unknown TTL unit {unit!r} in {value!r}")
        return float(amount) * factor
    raise TypeError(f"Unsupported TTL type: {type(value).__name__}")


def resolve_ttl(value: TTL) -> int:
    """Resolve a TTL to whole seconds, clamped to a minimum of one second."""
    seconds = parse_duration(value)
    return max(math.ceil(seconds), MIN_TTL_SECONDS)
