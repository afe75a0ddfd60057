from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from loguru import logger

from packages.common.config import IngestConfig
from packages.common.datetime_utils import ms_to_iso8601_z
from packages.common.timeframes import interval_to_ms, is_aligned
from packages.ingest.errors import (
    DataUnavailableError,
    GapError,
    MalformedResponseError,
    RateLimitedError,
    TransientFetchError,
)
from packages.ingest.rate_limiter import RateLimiter
from packages.ingest.types import DownloadTask, Kline, KlineSource, TimeWindow


def missing_ranges(open_times, window: TimeWindow, interval_ms: int) -> List[TimeWindow]:
    """Maximal runs of grid open times inside window that are absent from open_times."""
    present = set(open_times)
    out: List[TimeWindow] = []
    gap_start: Optional[int] = None

    for ts in range(window.start_ms, window.end_ms, interval_ms):
        if ts in present:
            if gap_start is not None:
                out.append(TimeWindow(gap_start, ts))
                gap_start = None
        elif gap_start is None:
            gap_start = ts

    if gap_start is not None:
        out.append(TimeWindow(gap_start, window.end_ms))
    return out


class FetchWorker:
    """
    Fetches one DownloadTask into a complete, ordered list of klines.

    Every upstream call goes through the shared RateLimiter and is bounded by a
    timeout. Holes and ordering faults are re-fetched narrowly (only the
    affected sub-range) for up to gap_retries rounds before GapError.
    """

    def __init__(
        self,
        source: KlineSource,
        limiter: RateLimiter,
        *,
        page_limit: int = 1000,
        request_timeout_s: float = 15.0,
        gap_retries: int = 2,
        request_weight: int = 1,
    ):
        if page_limit <= 0:
            raise ValueError("page_limit must be positive")

        self.source = source
        self.limiter = limiter
        self.page_limit = int(page_limit)
        self.request_timeout_s = float(request_timeout_s)
        self.gap_retries = int(gap_retries)
        self.request_weight = int(request_weight)

        self.requests = 0

    @classmethod
    def from_config(cls, source: KlineSource, limiter: RateLimiter, cfg: IngestConfig) -> "FetchWorker":
        return cls(
            source,
            limiter,
            page_limit=cfg.fetch.page_limit,
            request_timeout_s=cfg.fetch.request_timeout_s,
            gap_retries=cfg.fetch.gap_retries,
            request_weight=cfg.rate_limit.request_weight,
        )

    async def fetch(self, task: DownloadTask) -> List[Kline]:
        interval_ms = interval_to_ms(task.interval)
        window = task.window
        if not (is_aligned(window.start_ms, interval_ms) and is_aligned(window.end_ms, interval_ms)):
            raise ValueError(f"Window {window} is not aligned to interval={task.interval}")

        by_open: Dict[int, Kline] = {}
        await self._fetch_into(by_open, task, window, interval_ms)
        await self._check_leading(by_open, task)

        missing = missing_ranges(by_open.keys(), window, interval_ms)
        rounds = 0
        while missing and rounds < self.gap_retries:
            rounds += 1
            logger.warning(
                "{} {} {}: {} missing range(s), narrow re-fetch {}/{}",
                task.symbol,
                task.interval,
                window,
                len(missing),
                rounds,
                self.gap_retries,
            )
            for rng in missing:
                await self._fetch_into(by_open, task, rng, interval_ms)
            missing = missing_ranges(by_open.keys(), window, interval_ms)

        if missing:
            raise GapError(
                f"{task.symbol} {task.interval} {window}: still missing "
                + ", ".join(str(m) for m in missing),
                missing=missing,
            )

        return [by_open[ts] for ts in sorted(by_open)]

    # =========================
    # internals
    # =========================

    async def _fetch_into(
        self,
        by_open: Dict[int, Kline],
        task: DownloadTask,
        rng: TimeWindow,
        interval_ms: int,
    ) -> None:
        """
        Paginate rng and merge into by_open. Any stretch where open times went
        backwards or repeated is dropped again so the next round re-fetches it.
        """
        pages = await self._paginate(task.symbol, task.interval, rng, interval_ms)

        disordered: List[TimeWindow] = []
        for page in pages:
            prev: Optional[int] = None
            for k in page:
                ts = k.open_time_ms
                if not is_aligned(ts, interval_ms):
                    raise MalformedResponseError(
                        f"{task.symbol} {task.interval}: open time {ts} is not aligned to the interval grid"
                    )
                if not rng.contains(ts):
                    continue
                if not k.is_consistent():
                    raise MalformedResponseError(
                        f"{task.symbol} {task.interval}: impossible candle at {ms_to_iso8601_z(ts)} "
                        f"(o={k.open} h={k.high} l={k.low} c={k.close} v={k.volume})"
                    )
                if prev is not None and ts <= prev:
                    disordered.append(TimeWindow(ts, prev + interval_ms))
                else:
                    prev = ts
                by_open[ts] = k

        for bad in disordered:
            logger.warning("{} {}: out-of-order/duplicate open times in {}", task.symbol, task.interval, bad)
            for ts in range(bad.start_ms, bad.end_ms, interval_ms):
                by_open.pop(ts, None)

    async def _paginate(
        self,
        symbol: str,
        interval: str,
        rng: TimeWindow,
        interval_ms: int,
    ) -> List[List[Kline]]:
        pages: List[List[Kline]] = []
        cursor = rng.start_ms
        while cursor < rng.end_ms:
            page = await self._request(symbol, interval, cursor, rng.end_ms, self.page_limit)
            if not page:
                break
            pages.append(page)

            nxt = max(k.open_time_ms for k in page) + interval_ms
            if len(page) < self.page_limit or nxt <= cursor:
                break
            cursor = nxt
        return pages

    async def _check_leading(self, by_open: Dict[int, Kline], task: DownloadTask) -> None:
        """
        A window that starts later than requested is either a hole (re-fetch)
        or a range before the first candle the source has (permanent).

        It is only the latter when the source has nothing before window.start
        either; a leading absence after earlier data is an upstream hole.
        """
        window = task.window
        first = min(by_open) if by_open else None
        if first == window.start_ms:
            return

        probe = await self._request(task.symbol, task.interval, window.start_ms, None, 1)
        first_available = probe[0].open_time_ms if probe else None
        fetched_from = first if first is not None else window.end_ms

        if first_available is not None and first_available < fetched_from:
            return

        earlier = await self._request(task.symbol, task.interval, 0, window.start_ms, 1)
        if earlier and earlier[0].open_time_ms < window.start_ms:
            logger.warning(
                "{} {}: no data from {} but the source has candles before it, treating as a hole",
                task.symbol,
                task.interval,
                ms_to_iso8601_z(window.start_ms),
            )
            return

        where = ms_to_iso8601_z(first_available) if first_available is not None else "never"
        raise DataUnavailableError(
            f"{task.symbol} {task.interval}: no data from {ms_to_iso8601_z(window.start_ms)}, "
            f"first available candle: {where}",
            first_available_ms=first_available,
        )

    async def _request(
        self,
        symbol: str,
        interval: str,
        start_ms: int,
        end_ms: Optional[int],
        limit: int,
    ) -> List[Kline]:
        await self.limiter.acquire(self.request_weight)
        self.requests += 1
        try:
            page = await asyncio.wait_for(
                self.source.fetch_klines(symbol, interval, start_ms, end_ms, limit),
                timeout=self.request_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise TransientFetchError(
                f"{symbol} {interval}: request from {ms_to_iso8601_z(start_ms)} timed out "
                f"after {self.request_timeout_s:.1f}s"
            ) from e
        except RateLimitedError as e:
            self.limiter.on_rate_limited(e.retry_after_s)
            raise

        self.limiter.on_success()
        return list(page)
