# packages/ingest/tests/test_fetcher.py

from __future__ import annotations

import asyncio

import pytest

from packages.common.datetime_utils import parse_iso8601_to_ms
from packages.ingest.errors import (
    DataUnavailableError,
    GapError,
    MalformedResponseError,
    RateLimitedError,
    TransientFetchError,
)
from packages.ingest.fetcher import FetchWorker, missing_ranges
from packages.ingest.rate_limiter import RateLimiter
from packages.ingest.tests.fakes import DummySource
from packages.ingest.types import DownloadTask, TimeWindow


T0 = parse_iso8601_to_ms("2024-01-01T00:00:00Z")
M5 = 5 * 60_000


def _worker(source, *, page_limit: int = 10, gap_retries: int = 2, timeout_s: float = 5.0) -> FetchWorker:
    return FetchWorker(
        source,
        RateLimiter(1_000, 1_000),
        page_limit=page_limit,
        request_timeout_s=timeout_s,
        gap_retries=gap_retries,
        request_weight=2,
    )


def _task(n_candles: int, *, symbol: str = "BTCUSDT", start: int = T0) -> DownloadTask:
    return DownloadTask(symbol=symbol, interval="5m", window=TimeWindow(start, start + n_candles * M5))


def _opens(klines) -> list[int]:
    return [k.open_time_ms for k in klines]


def test_single_page_window_is_one_request():
    source = DummySource()
    worker = _worker(source)

    out = asyncio.run(worker.fetch(_task(10)))

    assert _opens(out) == [T0 + i * M5 for i in range(10)]
    assert len(source.calls) == 1
    assert source.calls[0].start_ms == T0
    assert source.calls[0].end_ms == T0 + 10 * M5
    assert worker.limiter.acquired == worker.requests == 1


def test_paginates_until_window_end():
    source = DummySource()
    worker = _worker(source, page_limit=10)

    out = asyncio.run(worker.fetch(_task(25)))

    assert _opens(out) == [T0 + i * M5 for i in range(25)]
    assert [c.start_ms for c in source.calls] == [T0, T0 + 10 * M5, T0 + 20 * M5]


def test_records_outside_window_are_discarded():
    source = DummySource(ignore_end=True)
    worker = _worker(source)

    out = asyncio.run(worker.fetch(_task(10)))

    assert _opens(out) == [T0 + i * M5 for i in range(10)]


def test_misaligned_open_time_is_malformed():
    source = DummySource(offset_ms=1)
    worker = _worker(source)

    with pytest.raises(MalformedResponseError):
        asyncio.run(worker.fetch(_task(10)))


def test_inner_gap_is_refetched_narrowly():
    missing = T0 + 4 * M5
    source = DummySource(drop_once={missing})
    worker = _worker(source, page_limit=20)

    out = asyncio.run(worker.fetch(_task(10)))

    assert _opens(out) == [T0 + i * M5 for i in range(10)]
    # First call short page, then one narrow call for just the hole.
    assert len(source.calls) == 2
    assert source.calls[1].start_ms == missing
    assert source.calls[1].end_ms == missing + M5


def test_leading_hole_is_refetched_not_pre_listing():
    source = DummySource(drop_once={T0, T0 + M5})
    worker = _worker(source, page_limit=20)

    out = asyncio.run(worker.fetch(_task(10)))

    assert _opens(out) == [T0 + i * M5 for i in range(10)]


def test_duplicates_are_dropped_and_refetched():
    dup = T0 + 3 * M5
    source = DummySource(duplicate_once={dup})
    worker = _worker(source, page_limit=20)

    out = asyncio.run(worker.fetch(_task(10)))

    opens = _opens(out)
    assert opens == sorted(set(opens))
    assert opens == [T0 + i * M5 for i in range(10)]


def test_persistent_gap_raises_gap_error_after_retry_budget():
    hole = T0 + 6 * M5
    source = DummySource(holes={hole, hole + M5})
    worker = _worker(source, page_limit=20, gap_retries=2)

    with pytest.raises(GapError) as exc:
        asyncio.run(worker.fetch(_task(10)))

    assert exc.value.transient
    assert exc.value.missing == [TimeWindow(hole, hole + 2 * M5)]
    # initial page + 2 narrow rounds of one range each
    assert len(source.calls) == 3


def test_window_before_listing_is_data_unavailable():
    listing = T0 + 100 * M5
    source = DummySource(listings={"NEWUSDT": listing})
    worker = _worker(source)

    with pytest.raises(DataUnavailableError) as exc:
        asyncio.run(worker.fetch(_task(10, symbol="NEWUSDT")))

    assert not exc.value.transient
    assert exc.value.first_available_ms == listing


def test_listing_inside_window_is_data_unavailable_with_listing_time():
    listing = T0 + 4 * M5
    source = DummySource(listings={"NEWUSDT": listing})
    worker = _worker(source)

    with pytest.raises(DataUnavailableError) as exc:
        asyncio.run(worker.fetch(_task(10, symbol="NEWUSDT")))

    assert exc.value.first_available_ms == listing


def test_window_starting_inside_an_upstream_hole_is_a_gap_not_pre_listing():
    start = T0 + 50 * M5
    source = DummySource(holes={start, start + M5})
    worker = _worker(source, page_limit=20, gap_retries=1)

    with pytest.raises(GapError) as exc:
        asyncio.run(worker.fetch(_task(10, start=start)))

    assert exc.value.transient
    assert exc.value.missing == [TimeWindow(start, start + 2 * M5)]
    # the source was asked whether anything exists before the window
    assert any(c.start_ms == 0 and c.end_ms == start and c.limit == 1 for c in source.calls)


def test_window_entirely_inside_an_upstream_hole_is_a_gap():
    start = T0 + 50 * M5
    source = DummySource(holes={start + i * M5 for i in range(10)})
    worker = _worker(source, page_limit=20, gap_retries=1)

    with pytest.raises(GapError) as exc:
        asyncio.run(worker.fetch(_task(10, start=start)))

    assert exc.value.missing == [TimeWindow(start, start + 10 * M5)]


def test_impossible_candle_is_malformed():
    bad = T0 + 3 * M5
    source = DummySource(bad_candles={bad})
    worker = _worker(source)

    with pytest.raises(MalformedResponseError) as exc:
        asyncio.run(worker.fetch(_task(10)))

    assert not exc.value.transient
    assert "impossible candle" in str(exc.value)


def test_no_data_at_all_reports_none():
    source = DummySource(listings={"GHOSTUSDT": 10**15})
    worker = _worker(source)

    with pytest.raises(DataUnavailableError) as exc:
        asyncio.run(worker.fetch(_task(10, symbol="GHOSTUSDT")))

    assert exc.value.first_available_ms is None


def test_timeout_is_transient():
    source = DummySource(delay_s=0.5)
    worker = _worker(source, timeout_s=0.01)

    with pytest.raises(TransientFetchError) as exc:
        asyncio.run(worker.fetch(_task(10)))

    assert exc.value.transient


def test_rate_limited_signals_the_limiter_and_propagates():
    source = DummySource(errors={"BTCUSDT": [RateLimitedError("429", retry_after_s=3.0)]})
    worker = _worker(source)

    with pytest.raises(RateLimitedError):
        asyncio.run(worker.fetch(_task(10)))

    assert worker.limiter.rate_limit_signals == 1
    assert worker.limiter.cooling_down


def test_misaligned_window_is_rejected():
    worker = _worker(DummySource())
    task = DownloadTask(symbol="BTCUSDT", interval="5m", window=TimeWindow(T0 + 1, T0 + 10 * M5))

    with pytest.raises(ValueError):
        asyncio.run(worker.fetch(task))


def test_missing_ranges_groups_runs():
    w = TimeWindow(0, 10 * M5)
    present = [0, M5, 4 * M5, 5 * M5, 9 * M5]

    assert missing_ranges(present, w, M5) == [
        TimeWindow(2 * M5, 4 * M5),
        TimeWindow(6 * M5, 9 * M5),
    ]
    assert missing_ranges([], w, M5) == [w]
    assert missing_ranges([i * M5 for i in range(10)], w, M5) == []
