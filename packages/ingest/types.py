from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

from packages.common.datetime_utils import ms_to_iso8601_z


@dataclass(frozen=True)
class Kline:
    symbol: str
    interval: str
    open_time_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    quote_volume: float = 0.0
    trades: int = 0

    def is_consistent(self) -> bool:
        """High/low bracket open and close, volume is non-negative."""
        return (
            self.low <= min(self.open, self.close)
            and self.high >= max(self.open, self.close)
            and self.volume >= 0
        )


@dataclass(frozen=True)
class TimeWindow:
    start_ms: int      # inclusive
    end_ms: int        # exclusive

    def __post_init__(self) -> None:
        if self.start_ms >= self.end_ms:
            raise ValueError(f"TimeWindow requires start < end (got [{self.start_ms}..{self.end_ms}))")

    def contains(self, ts_ms: int) -> bool:
        return self.start_ms <= ts_ms < self.end_ms

    def candles(self, interval_ms: int) -> int:
        return (self.end_ms - self.start_ms) // interval_ms

    def split(self, interval_ms: int, max_candles: int) -> List["TimeWindow"]:
        """Consecutive sub-windows of at most max_candles each, tiling this window exactly."""
        if max_candles <= 0:
            raise ValueError("max_candles must be positive")
        step = interval_ms * max_candles
        out: List[TimeWindow] = []
        cursor = self.start_ms
        while cursor < self.end_ms:
            nxt = min(cursor + step, self.end_ms)
            out.append(TimeWindow(cursor, nxt))
            cursor = nxt
        return out

    def __str__(self) -> str:
        return f"[{ms_to_iso8601_z(self.start_ms)}..{ms_to_iso8601_z(self.end_ms)})"


@dataclass(frozen=True)
class DownloadTask:
    symbol: str
    interval: str
    window: TimeWindow


class KlineSource(Protocol):
    venue: str

    async def fetch_klines(
        self,
        symbol: str,
        interval: str,
        start_ms: int,
        end_ms: Optional[int],
        limit: int,
    ) -> List[Kline]:
        """
        Return candles with open time in [start_ms, end_ms) sorted ascending,
        at most `limit` of them. end_ms=None means unbounded.

        Raises FetchError subclasses; RateLimitedError for throttling.
        """
        ...
