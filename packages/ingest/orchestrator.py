from __future__ import annotations

import asyncio
import random
from collections import deque
from typing import Awaitable, Callable, Deque, List, Optional, Sequence

from loguru import logger

from packages.common.config import RetryConfig
from packages.common.datetime_utils import ms_to_iso8601_z, now_ms
from packages.common.timeframes import ceil_ts, floor_ts, interval_to_ms
from packages.ingest.checkpoint import CheckpointStore
from packages.ingest.errors import CheckpointError, DataUnavailableError, FetchError, SinkError
from packages.ingest.fetcher import FetchWorker
from packages.ingest.report import FailedWindow, RunReport, SymbolReport
from packages.ingest.sink import KlineSink
from packages.ingest.types import DownloadTask, TimeWindow


class _WindowFailed(Exception):
    def __init__(self, failed: FailedWindow):
        super().__init__(failed.message)
        self.failed = failed


class Orchestrator:
    """
    Drives a bulk ingestion run.

    Per symbol: outstanding window from the checkpoint, split into page-sized
    sub-windows processed strictly in order; a checkpoint only moves after the
    sub-window is persisted. Symbols run concurrently, at most max_workers
    fetching or persisting at any time.
    """

    def __init__(
        self,
        worker: FetchWorker,
        sink: KlineSink,
        checkpoints: CheckpointStore,
        *,
        retry: Optional[RetryConfig] = None,
        max_workers: int = 4,
        skip_pre_listing: bool = False,
        stop: Optional[asyncio.Event] = None,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")

        self.worker = worker
        self.sink = sink
        self.checkpoints = checkpoints
        self.retry = retry or RetryConfig()
        self.max_workers = int(max_workers)
        self.skip_pre_listing = bool(skip_pre_listing)
        self.stop = stop or asyncio.Event()

        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

    async def run(
        self,
        symbols: Sequence[str],
        start_ms: int,
        end_ms: int,
        interval: str,
    ) -> RunReport:
        if interval != self.checkpoints.interval:
            raise ValueError(
                f"interval={interval!r} does not match checkpoint store interval={self.checkpoints.interval!r}"
            )

        interval_ms = interval_to_ms(interval)
        start = ceil_ts(start_ms, interval_ms)
        end = floor_ts(min(end_ms, self._clock()), interval_ms)
        if start >= end:
            raise ValueError(
                f"Empty range after alignment to {interval}: "
                f"[{ms_to_iso8601_z(start)}..{ms_to_iso8601_z(end)})"
            )
        target = TimeWindow(start, end)

        self.checkpoints.load()

        report = RunReport(interval=interval, start_ms=start, end_ms=end, started_at_ms=now_ms())
        for sym in symbols:
            report.symbols[sym] = SymbolReport(symbol=sym)

        logger.info(
            "Ingestion starting: {} symbol(s) interval={} {} workers={} page_limit={}",
            len(report.symbols),
            interval,
            target,
            self.max_workers,
            self.worker.page_limit,
        )

        sem = asyncio.Semaphore(self.max_workers)
        await asyncio.gather(
            *(self._run_symbol(rep, interval, interval_ms, target, sem) for rep in report.symbols.values())
        )

        report.finished_at_ms = now_ms()
        report.stopped = self.stop.is_set()
        report.rate_limit_acquired = self.worker.limiter.acquired
        report.rate_limit_signals = self.worker.limiter.rate_limit_signals
        return report

    # =========================
    # per symbol
    # =========================

    async def _run_symbol(
        self,
        rep: SymbolReport,
        interval: str,
        interval_ms: int,
        target: TimeWindow,
        sem: asyncio.Semaphore,
    ) -> None:
        symbol = rep.symbol
        cp = self.checkpoints.get(symbol)
        rep.checkpoint_ms = cp

        resume_from = target.start_ms if cp is None else max(target.start_ms, cp + interval_ms)
        if resume_from >= target.end_ms:
            logger.info("{} already complete up to {}", symbol, ms_to_iso8601_z(cp))
            return

        rep.outstanding = TimeWindow(resume_from, target.end_ms)
        if cp is not None:
            logger.info("{} resuming from {} (checkpoint {})", symbol, ms_to_iso8601_z(resume_from), ms_to_iso8601_z(cp))

        pending: Deque[TimeWindow] = deque(rep.outstanding.split(interval_ms, self.worker.page_limit))
        while pending:
            if self.stop.is_set():
                rep.stopped = True
                logger.info("{} stopping, outstanding {}", symbol, rep.outstanding)
                return

            window = pending.popleft()
            task = DownloadTask(symbol=symbol, interval=interval, window=window)

            try:
                written = await self._process(task, sem)
            except _WindowFailed as f:
                rep.failed_windows.append(f.failed)
                logger.error("{} window {} failed: {}", symbol, window, f.failed.message)
                return
            except DataUnavailableError as e:
                skip_to = self._pre_listing_skip(rep, e, window, interval_ms, target)
                if skip_to is None:
                    rep.failed_windows.append(_failed(window, e, attempts=1))
                    logger.error("{} window {} failed: {}", symbol, window, e)
                    return

                skip_from = rep.skipped_pre_listing.start_ms if rep.skipped_pre_listing else window.start_ms
                rep.skipped_pre_listing = TimeWindow(skip_from, skip_to)
                logger.warning("{} skipping pre-listing range {}", symbol, rep.skipped_pre_listing)

                if not await self._advance(rep, window, skip_to - interval_ms):
                    return
                if skip_to >= target.end_ms:
                    rep.outstanding = None
                    return
                rep.outstanding = TimeWindow(skip_to, target.end_ms)
                pending = deque(rep.outstanding.split(interval_ms, self.worker.page_limit))
                continue

            rep.records_written += written
            rep.windows_completed += 1
            if not await self._advance(rep, window, window.end_ms - interval_ms):
                return
            rep.outstanding = TimeWindow(window.end_ms, target.end_ms) if window.end_ms < target.end_ms else None

        logger.info("{} complete: {} records in {} window(s)", symbol, rep.records_written, rep.windows_completed)

    def _pre_listing_skip(
        self,
        rep: SymbolReport,
        e: DataUnavailableError,
        window: TimeWindow,
        interval_ms: int,
        target: TimeWindow,
    ) -> Optional[int]:
        """Where to resume after a pre-listing range, or None when it must be treated as a failure."""
        if not self.skip_pre_listing:
            return None
        if rep.checkpoint_ms is not None or rep.windows_completed:
            # Data was already persisted before this window: it cannot precede the listing.
            return None
        if e.first_available_ms is None:
            return target.end_ms
        skip_to = min(ceil_ts(e.first_available_ms, interval_ms), target.end_ms)
        return skip_to if skip_to > window.start_ms else None

    async def _advance(self, rep: SymbolReport, window: TimeWindow, new_open_ms: int) -> bool:
        try:
            await self.checkpoints.advance_async(rep.symbol, new_open_ms)
        except CheckpointError as e:
            rep.failed_windows.append(_failed(window, e, attempts=1))
            logger.error("{} checkpoint write failed at {}: {}", rep.symbol, window, e)
            return False
        rep.checkpoint_ms = self.checkpoints.get(rep.symbol)
        return True

    # =========================
    # per window
    # =========================

    async def _process(self, task: DownloadTask, sem: asyncio.Semaphore) -> int:
        """
        Fetch then persist one sub-window. Transient fetch errors retry the
        fetch; sink errors retry the already-fetched batch only. Backoff sleeps
        happen outside the worker slot.
        """
        klines: Optional[List] = None
        fetch_attempts = 0
        sink_attempts = 0

        while True:
            async with sem:
                try:
                    if klines is None:
                        fetch_attempts += 1
                        klines = await self.worker.fetch(task)
                    sink_attempts += 1
                    written = await self.sink.persist(klines)
                    logger.debug("{} {} persisted {} klines", task.symbol, task.window, written)
                    return written
                except DataUnavailableError:
                    raise
                except FetchError as e:
                    if not e.transient or fetch_attempts >= self.retry.max_attempts:
                        raise _WindowFailed(_failed(task.window, e, attempts=fetch_attempts)) from e
                    delay = self._backoff(fetch_attempts)
                    logger.warning(
                        "{} {} fetch attempt {}/{} failed ({}), retrying in {:.2f}s",
                        task.symbol,
                        task.window,
                        fetch_attempts,
                        self.retry.max_attempts,
                        e,
                        delay,
                    )
                except SinkError as e:
                    if sink_attempts >= self.retry.sink_max_attempts:
                        raise _WindowFailed(_failed(task.window, e, attempts=sink_attempts)) from e
                    delay = self._backoff(sink_attempts)
                    logger.warning(
                        "{} {} persist attempt {}/{} failed ({}), retrying in {:.2f}s",
                        task.symbol,
                        task.window,
                        sink_attempts,
                        self.retry.sink_max_attempts,
                        e,
                        delay,
                    )

            await self._sleep(delay)

    def _backoff(self, attempt: int) -> float:
        base = min(self.retry.base_delay_s * (2 ** (attempt - 1)), self.retry.max_delay_s)
        return base + self._rng.uniform(0, self.retry.jitter_s)


def _failed(window: TimeWindow, e: Exception, *, attempts: int) -> FailedWindow:
    permanent = not getattr(e, "transient", True)
    return FailedWindow(
        window=window,
        error_kind=type(e).__name__,
        message=str(e),
        attempts=attempts,
        permanent=permanent,
    )
