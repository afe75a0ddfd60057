# apps/repair_gaps/main.py

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from loguru import logger

from packages.adapters.binance_spot.klines import BinanceSpotKlineSource
from packages.common.config import load_ingest_config
from packages.common.datetime_utils import parse_date_range
from packages.common.types import normalize_symbol
from packages.ingest.fetcher import FetchWorker
from packages.ingest.rate_limiter import RateLimiter
from packages.ingest.repair import GapRepairService, RepairResult
from packages.ingest.sink import SQLiteKlineSink


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Kline gap repair: re-fetch holes already in the store.")

    p.add_argument("--config", default=None, help="Config yaml (default: config/ingest.yaml if present)")
    p.add_argument("--symbols", default=None, help="Comma-separated symbols override")
    p.add_argument("--interval", default=None, help="Interval override, e.g. 5m")
    p.add_argument("--db-path", default=None, help="SQLite path override")

    p.add_argument("--start", default=None, help="Scan start ISO (inclusive); default: run.start_date")
    p.add_argument("--end", default=None, help="Scan end ISO (exclusive); default: run.end_date or now")

    p.add_argument("--max-gap-candles", type=int, default=None, help="Skip gaps larger than this")
    p.add_argument("--max-gaps", type=int, default=200, help="Max number of distinct gaps to attempt per symbol")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    return p.parse_args(argv)


async def main_async(args: argparse.Namespace) -> List[RepairResult]:
    cfg = load_ingest_config(Path(args.config), required=True) if args.config else load_ingest_config()

    symbols = (
        [normalize_symbol(s) for s in args.symbols.split(",") if s.strip()]
        if args.symbols
        else list(cfg.run.symbols)
    )
    interval = args.interval or cfg.run.interval
    db_path = args.db_path or cfg.storage.db_path
    if not symbols:
        raise ValueError("No symbols resolved (set run.symbols or pass --symbols)")

    start_ms, end_ms = parse_date_range(args.start or cfg.run.start_date, args.end or cfg.run.end_date)

    logger.info(
        "Gap repair starting db={} symbols={} interval={} start={} end={}",
        db_path,
        symbols,
        interval,
        args.start or cfg.run.start_date,
        args.end or cfg.run.end_date or "NOW",
    )

    limiter = RateLimiter.from_config(cfg.rate_limit)
    results: List[RepairResult] = []

    async with BinanceSpotKlineSource(base_url=cfg.source.base_url) as source:
        sink = await SQLiteKlineSink.open(db_path)
        try:
            repair = GapRepairService(
                FetchWorker.from_config(source, limiter, cfg),
                sink,
                max_gaps=args.max_gaps,
                max_gap_candles=args.max_gap_candles,
            )
            for symbol in symbols:
                results.append(await repair.repair(symbol, interval, start_ms, end_ms))
        finally:
            await sink.close()

    total = sum(r.records_written for r in results)
    logger.info("Gap repair complete. symbols={} records_written={}", len(results), total)
    for r in results:
        if r.unrecoverable:
            logger.warning("{}: {} range(s) have no upstream data", r.symbol, len(r.unrecoverable))
        for f in r.failed:
            logger.error("{}: {} {}: {}", r.symbol, f.window, f.error_kind, f.message)
    return results


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if args.verbose else "INFO")

    try:
        results = asyncio.run(main_async(args))
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        sys.exit(130)

    sys.exit(0 if all(r.ok for r in results) else 1)


if __name__ == "__main__":
    main()
