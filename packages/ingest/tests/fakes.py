# packages/ingest/tests/fakes.py

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Set, Tuple

from packages.common.datetime_utils import parse_iso8601_to_ms
from packages.common.timeframes import ceil_ts, interval_to_ms
from packages.ingest.checkpoint import CheckpointStore
from packages.ingest.errors import InvalidSymbolError, SinkError
from packages.ingest.sink import SQLiteKlineSink
from packages.ingest.types import Kline


HORIZON_MS = parse_iso8601_to_ms("2030-01-01T00:00:00Z")


def make_kline(symbol: str, interval: str, ts: int) -> Kline:
    step = (ts // interval_to_ms(interval)) % 10
    px = 100.0 + step
    return Kline(
        symbol=symbol,
        interval=interval,
        open_time_ms=ts,
        open=px,
        high=px + 1,
        low=px - 1,
        close=px + 0.5,
        volume=1.0,
        quote_volume=px,
        trades=3,
    )


@dataclass(frozen=True)
class Call:
    symbol: str
    start_ms: int
    end_ms: Optional[int]
    limit: int


@dataclass
class DummySource:
    """
    Synthetic, grid-aligned kline series behaving like the Binance endpoint:
    - emits open times in [max(start, listing) .. end) stepping by the interval, at most `limit`
    - `holes`: open times that never exist upstream
    - `drop_once`: open times missing from the first response that would contain them
    - `duplicate_once`: open times emitted twice in the first response that contains them
    - `bad_candles`: open times served with a high below the close
    - `errors` / `errors_at`: exceptions raised (in order) for a symbol / (symbol, start_ms)
    """

    venue: str = "test_venue"
    listings: Dict[str, int] = field(default_factory=dict)
    holes: Set[int] = field(default_factory=set)
    drop_once: Set[int] = field(default_factory=set)
    duplicate_once: Set[int] = field(default_factory=set)
    bad_candles: Set[int] = field(default_factory=set)
    invalid_symbols: Set[str] = field(default_factory=set)
    errors: Dict[str, List[Exception]] = field(default_factory=dict)
    errors_at: Dict[Tuple[str, int], List[Exception]] = field(default_factory=dict)
    ignore_end: bool = False
    offset_ms: int = 0
    delay_s: float = 0.0

    calls: List[Call] = field(default_factory=list)
    in_flight: int = 0
    max_in_flight: int = 0

    async def fetch_klines(
        self,
        symbol: str,
        interval: str,
        start_ms: int,
        end_ms: Optional[int],
        limit: int,
    ) -> List[Kline]:
        self.calls.append(Call(symbol, start_ms, end_ms, limit))

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay_s:
                await asyncio.sleep(self.delay_s)

            queued = self.errors_at.get((symbol, start_ms)) or self.errors.get(symbol)
            if queued:
                raise queued.pop(0)
            if symbol in self.invalid_symbols:
                raise InvalidSymbolError(f"invalid symbol {symbol}")

            return self._series(symbol, interval, start_ms, end_ms, limit)
        finally:
            self.in_flight -= 1

    def _series(self, symbol: str, interval: str, start_ms: int, end_ms: Optional[int], limit: int) -> List[Kline]:
        interval_ms = interval_to_ms(interval)
        listed = self.listings.get(symbol, 0)

        first = ceil_ts(max(start_ms, listed), interval_ms)
        if self.ignore_end:
            # Page overlaps both window boundaries.
            first = max(ceil_ts(listed, interval_ms), first - 2 * interval_ms)
        stop = HORIZON_MS if (end_ms is None or self.ignore_end) else end_ms

        out: List[Kline] = []
        ts = first
        while ts < stop and len(out) < limit:
            if ts in self.drop_once:
                self.drop_once.discard(ts)
            elif ts not in self.holes:
                k = make_kline(symbol, interval, ts + self.offset_ms)
                if ts in self.bad_candles:
                    k = replace(k, high=k.close - 1)
                out.append(k)
                if ts in self.duplicate_once and len(out) < limit:
                    self.duplicate_once.discard(ts)
                    out.append(k)
            ts += interval_ms
        return out

    def calls_for(self, symbol: str) -> List[Call]:
        return [c for c in self.calls if c.symbol == symbol]


@dataclass
class FlakySink:
    """Wraps the real sink; the first `failures` persists raise SinkError."""

    inner: SQLiteKlineSink
    failures: int = 0
    persist_calls: int = 0
    max_persisted: Dict[str, int] = field(default_factory=dict)

    async def persist(self, klines: Sequence[Kline]) -> int:
        self.persist_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise SinkError("disk I/O error (injected)")
        written = await self.inner.persist(klines)
        for k in klines:
            self.max_persisted[k.symbol] = max(self.max_persisted.get(k.symbol, k.open_time_ms), k.open_time_ms)
        return written


class RecordingCheckpointStore(CheckpointStore):
    """Keeps every successful advance, in order, per symbol."""

    def __init__(self, path, interval: str):
        super().__init__(path, interval)
        self.history: Dict[str, List[int]] = {}

    def advance(self, symbol: str, new_open_ms: int) -> bool:
        moved = super().advance(symbol, new_open_ms)
        if moved:
            self.history.setdefault(symbol, []).append(new_open_ms)
        return moved


class StopAtCheckpointStore(CheckpointStore):
    """Sets `stop` once any symbol's checkpoint reaches `stop_at_ms` (simulated crash point)."""

    def __init__(self, path, interval: str, stop: asyncio.Event, stop_at_ms: int):
        super().__init__(path, interval)
        self._stop = stop
        self._stop_at_ms = stop_at_ms

    async def advance_async(self, symbol: str, new_open_ms: int) -> bool:
        moved = await super().advance_async(symbol, new_open_ms)
        if new_open_ms >= self._stop_at_ms:
            self._stop.set()
        return moved
