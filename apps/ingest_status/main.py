from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from loguru import logger

from packages.common.config import load_ingest_config
from packages.common.datetime_utils import ms_to_iso8601_z, parse_date_range
from packages.common.timeframes import candles_between, ceil_ts, floor_ts, interval_to_ms
from packages.common.types import normalize_symbol
from packages.ingest.checkpoint import CheckpointStore, checkpoint_path_for
from packages.ingest.sink import SQLiteKlineSink


@dataclass(frozen=True)
class SymbolStatusRow:
    symbol: str
    checkpoint_ms: Optional[int]
    first_open_ms: Optional[int]
    last_open_ms: Optional[int]
    stored: int
    expected: int
    gaps: int

    @property
    def complete(self) -> bool:
        return self.stored >= self.expected and self.gaps == 0

    def render(self) -> str:
        def iso(ts: Optional[int]) -> str:
            return ms_to_iso8601_z(ts) if ts is not None else "-"

        pct = (100.0 * self.stored / self.expected) if self.expected else 100.0
        return (
            f"{self.symbol:<14} checkpoint={iso(self.checkpoint_ms)} "
            f"stored={self.stored}/{self.expected} ({pct:.1f}%) gaps={self.gaps} "
            f"first={iso(self.first_open_ms)} last={iso(self.last_open_ms)}"
        )


async def collect_status(
    sink: SQLiteKlineSink,
    checkpoints: CheckpointStore,
    symbols: Sequence[str],
    interval: str,
    start_ms: int,
    end_ms: int,
) -> List[SymbolStatusRow]:
    interval_ms = interval_to_ms(interval)
    start = ceil_ts(start_ms, interval_ms)
    end = floor_ts(end_ms, interval_ms)
    expected = candles_between(start, end, interval_ms)

    rows: List[SymbolStatusRow] = []
    for symbol in symbols:
        cov = await sink.coverage(symbol, interval)
        stored = await sink.count(symbol, interval, start, end) if end > start else 0
        gaps = await sink.find_gaps(symbol, interval, start, end) if end > start else []
        rows.append(
            SymbolStatusRow(
                symbol=symbol,
                checkpoint_ms=checkpoints.get(symbol),
                first_open_ms=cov.first_open_ms if cov else None,
                last_open_ms=cov.last_open_ms if cov else None,
                stored=stored,
                expected=expected,
                gaps=len(gaps),
            )
        )
    return rows


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Show ingestion status: checkpoints, stored coverage and gaps.")
    p.add_argument("--config", default=None, help="Config yaml (default: config/ingest.yaml if present)")
    p.add_argument("--symbols", default=None, help="Comma-separated symbols override")
    p.add_argument("--interval", default=None, help="Interval override, e.g. 5m")
    p.add_argument("--start", default=None, help="Range start ISO; default: run.start_date")
    p.add_argument("--end", default=None, help="Range end ISO; default: run.end_date or now")
    p.add_argument("--db-path", default=None, help="SQLite path override")
    p.add_argument("--checkpoint-dir", default=None, help="Checkpoint directory override")
    return p.parse_args(argv)


async def main_async(args: argparse.Namespace) -> List[SymbolStatusRow]:
    cfg = load_ingest_config(Path(args.config), required=True) if args.config else load_ingest_config()

    symbols = (
        [normalize_symbol(s) for s in args.symbols.split(",") if s.strip()]
        if args.symbols
        else list(cfg.run.symbols)
    )
    if not symbols:
        raise ValueError("No symbols resolved (set run.symbols or pass --symbols)")

    interval = args.interval or cfg.run.interval
    start_ms, end_ms = parse_date_range(args.start or cfg.run.start_date, args.end or cfg.run.end_date)
    checkpoints = CheckpointStore(
        checkpoint_path_for(args.checkpoint_dir or cfg.storage.checkpoint_dir, interval),
        interval,
    )

    sink = await SQLiteKlineSink.open(args.db_path or cfg.storage.db_path)
    try:
        return await collect_status(sink, checkpoints, symbols, interval, start_ms, end_ms)
    finally:
        await sink.close()


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    logger.remove()
    logger.add(sys.stderr, level="INFO")

    rows = asyncio.run(main_async(args))
    for r in rows:
        logger.info(r.render())

    done = sum(1 for r in rows if r.complete)
    logger.info("{}/{} symbol(s) complete", done, len(rows))


if __name__ == "__main__":
    main()
