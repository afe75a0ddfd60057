from __future__ import annotations

from datetime import datetime, timezone


def parse_iso8601_to_ms(s: str) -> int:
    """
    Accepts:
      - 2024-01-01                 (midnight UTC)
      - 2024-01-01T00:05:00Z
      - 2024-01-01T00:05:00+00:00
      - 2024-01-01T00:05:00        (assumed UTC)
    Returns epoch ms.
    """
    ss = s.strip()
    if not ss:
        raise ValueError("empty timestamp")
    if ss.endswith("Z"):
        ss = ss[:-1] + "+00:00"

    try:
        dt = datetime.fromisoformat(ss)
    except ValueError as e:
        raise ValueError(f"Invalid ISO-8601 timestamp: {s!r}") from e

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)

    return int(dt.timestamp() * 1000)


def ms_to_iso8601_z(ts_ms: int) -> str:
    """1704067200000 -> '2024-01-01T00:00:00Z'"""
    dt = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")


def now_ms() -> int:
    return int(datetime.now(tz=timezone.utc).timestamp() * 1000)


def parse_date_range(start: str, end: str | None) -> tuple[int, int]:
    """
    Resolve CLI/config date strings to [start_ms, end_ms).
    A missing end means "up to now".
    """
    start_ms = parse_iso8601_to_ms(start)
    end_ms = parse_iso8601_to_ms(end) if end else now_ms()
    if end_ms <= start_ms:
        raise ValueError(f"end must be after start (start={start!r} end={end!r})")
    return start_ms, end_ms
