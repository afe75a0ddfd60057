# packages/ingest/tests/test_repair.py

from __future__ import annotations

import asyncio
import os
import tempfile

from packages.common.datetime_utils import parse_iso8601_to_ms
from packages.ingest.fetcher import FetchWorker
from packages.ingest.rate_limiter import RateLimiter
from packages.ingest.repair import GapRepairService
from packages.ingest.sink import SQLiteKlineSink
from packages.ingest.tests.fakes import DummySource, make_kline
from packages.ingest.types import TimeWindow


T0 = parse_iso8601_to_ms("2024-03-01T00:00:00Z")
M1 = 60_000


async def _repair(db_path: str, source: DummySource, seed_opens, start: int, end: int, **kw):
    sink = await SQLiteKlineSink.open(db_path)
    try:
        await sink.persist([make_kline("BTCUSDT", "1m", ts) for ts in seed_opens])
        worker = FetchWorker(source, RateLimiter(1_000, 1_000), page_limit=30, gap_retries=1)
        result = await GapRepairService(worker, sink, **kw).repair("BTCUSDT", "1m", start, end)
        gaps_after = await sink.find_gaps("BTCUSDT", "1m", start, end)
        opens = await sink.open_times("BTCUSDT", "1m")
    finally:
        await sink.close()
    return result, gaps_after, opens


def test_repairs_holes_in_the_store():
    end = T0 + 100 * M1
    seed = [T0 + i * M1 for i in range(100) if not (10 <= i < 20 or 70 <= i < 75)]
    source = DummySource()

    with tempfile.TemporaryDirectory() as d:
        result, gaps_after, opens = asyncio.run(_repair(os.path.join(d, "k.sqlite"), source, seed, T0, end))

    assert result.gaps_found == 2
    assert result.records_written == 15
    assert result.ok
    assert gaps_after == []
    assert opens == [T0 + i * M1 for i in range(100)]
    # Only the holes were requested.
    assert sorted(c.start_ms for c in source.calls) == [T0 + 10 * M1, T0 + 70 * M1]


def test_empty_store_is_one_big_gap_fetched_in_page_sized_chunks():
    end = T0 + 75 * M1
    source = DummySource()

    with tempfile.TemporaryDirectory() as d:
        result, gaps_after, opens = asyncio.run(_repair(os.path.join(d, "k.sqlite"), source, [], T0, end))

    assert result.gaps_found == 1
    assert result.chunks_attempted == 3  # 30 + 30 + 15
    assert result.records_written == 75
    assert gaps_after == []


def test_range_before_listing_is_unrecoverable_not_failed():
    listing = T0 + 40 * M1
    end = T0 + 60 * M1
    source = DummySource(listings={"BTCUSDT": listing})

    with tempfile.TemporaryDirectory() as d:
        result, gaps_after, opens = asyncio.run(_repair(os.path.join(d, "k.sqlite"), source, [], T0, end))

    assert result.ok
    assert result.unrecoverable == [TimeWindow(T0, T0 + 30 * M1), TimeWindow(T0 + 30 * M1, listing)]
    assert opens == [T0 + i * M1 for i in range(40, 60)]
    assert gaps_after == [TimeWindow(T0, listing)]


def test_gap_the_source_cannot_fill_is_unrecoverable():
    end = T0 + 20 * M1
    seed = [T0 + i * M1 for i in range(20) if i != 5]
    source = DummySource(holes={T0 + 5 * M1})

    with tempfile.TemporaryDirectory() as d:
        result, gaps_after, _ = asyncio.run(_repair(os.path.join(d, "k.sqlite"), source, seed, T0, end))

    assert result.ok
    assert result.unrecoverable == [TimeWindow(T0 + 5 * M1, T0 + 6 * M1)]
    assert gaps_after == [TimeWindow(T0 + 5 * M1, T0 + 6 * M1)]


def test_partially_fillable_gap_is_reported_as_failed():
    end = T0 + 20 * M1
    seed = [T0 + i * M1 for i in range(20) if not (5 <= i < 8)]
    source = DummySource(holes={T0 + 6 * M1})

    with tempfile.TemporaryDirectory() as d:
        result, gaps_after, _ = asyncio.run(_repair(os.path.join(d, "k.sqlite"), source, seed, T0, end))

    assert not result.ok
    assert result.failed[0].error_kind == "GapError"
    assert result.failed[0].window == TimeWindow(T0 + 5 * M1, T0 + 8 * M1)
    assert gaps_after == [TimeWindow(T0 + 5 * M1, T0 + 8 * M1)]


def test_huge_gaps_can_be_skipped():
    end = T0 + 100 * M1
    seed = [T0 + i * M1 for i in range(100) if not (10 <= i < 60 or 80 <= i < 82)]
    source = DummySource()

    with tempfile.TemporaryDirectory() as d:
        result, gaps_after, _ = asyncio.run(
            _repair(os.path.join(d, "k.sqlite"), source, seed, T0, end, max_gap_candles=10)
        )

    assert result.gaps_skipped == 1
    assert result.records_written == 2
    assert gaps_after == [TimeWindow(T0 + 10 * M1, T0 + 60 * M1)]
