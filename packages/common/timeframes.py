from __future__ import annotations

import re

_INTERVAL_RE = re.compile(r"^(\d+)([smhdw])$")

_UNIT_MS = {
    "s": 1_000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
    "w": 604_800_000,
}


def interval_to_ms(interval: str) -> int:
    """
    Fixed-length intervals only ('1m', '5m', '1h', '1d', '1w').

    Calendar intervals such as '1M' are rejected: open times must be exact
    multiples of the interval measured from the epoch.
    """
    m = _INTERVAL_RE.match(interval.strip())
    if not m:
        raise ValueError(f"Invalid interval: {interval!r} (expected e.g. '1m', '5m', '1h')")

    n = int(m.group(1))
    if n <= 0:
        raise ValueError(f"Invalid interval: {interval!r} (length must be positive)")
    return n * _UNIT_MS[m.group(2)]


def floor_ts(ts_ms: int, interval_ms: int) -> int:
    return (ts_ms // interval_ms) * interval_ms


def ceil_ts(ts_ms: int, interval_ms: int) -> int:
    if ts_ms % interval_ms == 0:
        return ts_ms
    return ((ts_ms // interval_ms) + 1) * interval_ms


def is_aligned(ts_ms: int, interval_ms: int) -> bool:
    return ts_ms % interval_ms == 0


def candles_between(start_ms: int, end_ms_excl: int, interval_ms: int) -> int:
    """Number of grid open times in [start_ms, end_ms_excl)."""
    if end_ms_excl <= start_ms:
        return 0
    return (ceil_ts(end_ms_excl, interval_ms) - ceil_ts(start_ms, interval_ms)) // interval_ms
