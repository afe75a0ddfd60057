from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from loguru import logger

from packages.common.timeframes import ceil_ts, floor_ts, interval_to_ms
from packages.ingest.errors import DataUnavailableError, FetchError, GapError, SinkError
from packages.ingest.fetcher import FetchWorker
from packages.ingest.report import FailedWindow
from packages.ingest.sink import SQLiteKlineSink
from packages.ingest.types import DownloadTask, TimeWindow


@dataclass
class RepairResult:
    symbol: str
    interval: str
    gaps_found: int = 0
    gaps_skipped: int = 0
    chunks_attempted: int = 0
    records_written: int = 0
    unrecoverable: List[TimeWindow] = field(default_factory=list)
    failed: List[FailedWindow] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class GapRepairService:
    """
    Post-hoc reconciliation: find holes already in the store and re-fetch them.

    Works on the store alone and never moves checkpoints. Chunks the source
    proves empty are reported as unrecoverable instead of retried.
    """

    def __init__(
        self,
        worker: FetchWorker,
        sink: SQLiteKlineSink,
        *,
        max_gaps: int = 200,
        max_gap_candles: Optional[int] = None,
    ):
        self._worker = worker
        self._sink = sink
        self._max_gaps = int(max_gaps)
        self._max_gap_candles = max_gap_candles

    async def repair(self, symbol: str, interval: str, start_ms: int, end_ms: int) -> RepairResult:
        interval_ms = interval_to_ms(interval)
        start = ceil_ts(start_ms, interval_ms)
        end = floor_ts(end_ms, interval_ms)
        result = RepairResult(symbol=symbol, interval=interval)
        if start >= end:
            return result

        gaps = await self._sink.find_gaps(symbol, interval, start, end, limit=self._max_gaps)
        result.gaps_found = len(gaps)
        if not gaps:
            logger.info("No gaps found {} {} {}", symbol, interval, TimeWindow(start, end))
            return result

        logger.warning("Found {} gap range(s) {} {}", len(gaps), symbol, interval)

        for gap in gaps:
            candles = gap.candles(interval_ms)
            if self._max_gap_candles is not None and candles > self._max_gap_candles:
                result.gaps_skipped += 1
                logger.warning("Skipping huge gap {} {} {} candles={}", symbol, interval, gap, candles)
                continue

            logger.info("Repairing gap {} {} {} candles={}", symbol, interval, gap, candles)
            for chunk in gap.split(interval_ms, self._worker.page_limit):
                result.chunks_attempted += 1
                await self._repair_chunk(DownloadTask(symbol=symbol, interval=interval, window=chunk), result)

        logger.info(
            "Gap repair {} {} done: written={} unrecoverable={} failed={}",
            symbol,
            interval,
            result.records_written,
            len(result.unrecoverable),
            len(result.failed),
        )
        return result

    async def _repair_chunk(self, task: DownloadTask, result: RepairResult) -> None:
        try:
            klines = await self._worker.fetch(task)
            result.records_written += await self._sink.persist(klines)
        except DataUnavailableError as e:
            window = task.window
            resume = e.first_available_ms
            if resume is not None:
                resume = ceil_ts(resume, interval_to_ms(task.interval))
            if resume is not None and window.start_ms < resume < window.end_ms:
                # Upstream has nothing before `resume`; the tail of the chunk may still be recoverable.
                result.unrecoverable.append(TimeWindow(window.start_ms, resume))
                logger.info("Chunk {} has no upstream data before {}", window, resume)
                await self._repair_chunk(
                    DownloadTask(symbol=task.symbol, interval=task.interval, window=TimeWindow(resume, window.end_ms)),
                    result,
                )
                return
            result.unrecoverable.append(window)
            logger.info("Chunk {} has no upstream data: {}", window, e)
        except GapError as e:
            if e.missing != [task.window]:
                self._record_failed(task, e, result)
                return
            # Listed before and after, but the source has nothing at all inside the chunk.
            result.unrecoverable.append(task.window)
            logger.info("Chunk {} is a hole upstream as well", task.window)
        except (FetchError, SinkError) as e:
            self._record_failed(task, e, result)

    def _record_failed(self, task: DownloadTask, e: Exception, result: RepairResult) -> None:
        result.failed.append(
            FailedWindow(
                window=task.window,
                error_kind=type(e).__name__,
                message=str(e),
                attempts=1,
                permanent=not getattr(e, "transient", True),
            )
        )
        logger.error("Chunk {} repair failed: {}", task.window, e)
