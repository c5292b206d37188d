"""Duration parsing utilities."""

import re
from datetime import timedelta

from querycascade.types import Duration

_DURATION_PATTERN = re.compile(r"^(\d+)(ms|s|m|h|d)$")
_UNITS: dict[str, int] = {
    "ms": 1,
    "s": 1000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}


def parse_duration(duration: Duration) -> int:
    """Parse a duration to milliseconds.

    Accepts "30s"-style strings, integer milliseconds or timedelta.
    """
    if isinstance(duration, bool):
        raise ValueError(f"Invalid duration: {duration!r}")
    if isinstance(duration, timedelta):
        ms = int(duration.total_seconds() * 1000)
    elif isinstance(duration, int):
        ms = duration
    elif isinstance(duration, str):
        match = _DURATION_PATTERN.match(duration.strip())
        if not match:
            raise ValueError(f"Invalid duration: {duration!r}")
        value, unit = match.groups()
        ms = int(value) * _UNITS[unit]
    else:
        raise ValueError(f"Invalid duration: {duration!r}")

    if ms < 0:
        raise ValueError(f"Duration must not be negative: {duration!r}")
    return ms
