from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import List, Optional

from loguru import logger

from packages.adapters.binance_spot.klines import BINANCE_SUPPORTED_INTERVALS, BinanceSpotKlineSource
from packages.common.config import IngestConfig, load_ingest_config, load_symbols_file
from packages.common.datetime_utils import parse_date_range
from packages.common.types import normalize_symbol
from packages.ingest.checkpoint import CheckpointStore, checkpoint_path_for
from packages.ingest.fetcher import FetchWorker
from packages.ingest.orchestrator import Orchestrator
from packages.ingest.rate_limiter import RateLimiter
from packages.ingest.report import RunReport
from packages.ingest.sink import SQLiteKlineSink


def configure_logging(verbose: bool, log_file: Optional[str]) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")
    if log_file:
        logger.add(log_file, level="DEBUG", rotation="50 MB", retention=5, enqueue=True)


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Resumable bulk kline ingestion (Binance spot -> SQLite).")

    p.add_argument("symbols", nargs="?", default=None, help="Comma-separated symbols, e.g. BTCUSDT,ETH/USDT")
    p.add_argument("--symbols-file", default=None, help="File with one symbol per line")
    p.add_argument("--config", default=None, help="Config yaml (default: config/ingest.yaml if present)")

    p.add_argument("--start", default=None, help="Start ISO (inclusive), e.g. 2024-01-01")
    p.add_argument("--end", default=None, help="End ISO (exclusive); default: now")
    p.add_argument("--interval", default=None, help="Kline interval, e.g. 1m, 5m, 1h")

    p.add_argument("--db-path", default=None, help="SQLite path override")
    p.add_argument("--checkpoint-dir", default=None, help="Checkpoint directory override")
    p.add_argument("--max-workers", type=int, default=None, help="Concurrent fetch/persist slots")
    p.add_argument("--page-limit", type=int, default=None, help="Candles per request (Binance max is 1000)")

    p.add_argument("--skip-pre-listing", action="store_true", help="Skip ranges before a symbol's first candle")
    p.add_argument("--reset-checkpoints", action="store_true", help="Forget checkpoints for the given symbols first")
    p.add_argument("--report-json", default=None, help="Write the run report as JSON to this path")
    p.add_argument("--log-file", default=None, help="Also log to this file (rotated)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    return p.parse_args(argv)


def resolve_config(args: argparse.Namespace) -> IngestConfig:
    """Config file first, then CLI overrides on top."""
    if args.config:
        cfg = load_ingest_config(Path(args.config), required=True)
    else:
        cfg = load_ingest_config()

    run: dict = {}
    if args.symbols_file:
        run["symbols"] = load_symbols_file(Path(args.symbols_file))
    if args.symbols:
        run["symbols"] = [normalize_symbol(s) for s in args.symbols.split(",") if s.strip()]
    if args.start:
        run["start_date"] = args.start
    if args.end:
        run["end_date"] = args.end
    if args.interval:
        run["interval"] = args.interval
    if args.max_workers is not None:
        run["max_workers"] = args.max_workers
    if args.skip_pre_listing:
        run["skip_pre_listing"] = True

    storage: dict = {}
    if args.db_path:
        storage["db_path"] = args.db_path
    if args.checkpoint_dir:
        storage["checkpoint_dir"] = args.checkpoint_dir

    fetch: dict = {}
    if args.page_limit is not None:
        fetch["page_limit"] = args.page_limit

    raw = cfg.model_dump()
    raw["run"].update(run)
    raw["storage"].update(storage)
    raw["fetch"].update(fetch)
    return IngestConfig.model_validate(raw)


def _install_stop_handlers(stop: asyncio.Event) -> None:
    if sys.platform == "win32":
        return
    loop = asyncio.get_running_loop()

    def handle_signal(sig: signal.Signals) -> None:
        if stop.is_set():
            return
        logger.warning("Received {}, finishing in-flight windows then stopping", sig.name)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)


def write_report_json(report: RunReport, path: str) -> None:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(report.to_dict(), indent=2))
    logger.info("Run report written to {}", out)


async def run_ingest(cfg: IngestConfig, *, reset_checkpoints: bool = False, report_json: Optional[str] = None) -> int:
    symbols = cfg.run.symbols
    if not symbols:
        raise ValueError("No symbols given (positional CSV, --symbols-file or run.symbols in config)")
    if cfg.run.interval not in BINANCE_SUPPORTED_INTERVALS:
        raise ValueError(f"Interval {cfg.run.interval!r} is not served by Binance spot klines")

    start_ms, end_ms = parse_date_range(cfg.run.start_date, cfg.run.end_date)

    checkpoints = CheckpointStore(checkpoint_path_for(cfg.storage.checkpoint_dir, cfg.run.interval), cfg.run.interval)
    if reset_checkpoints:
        checkpoints.reset(symbols)

    stop = asyncio.Event()
    _install_stop_handlers(stop)

    limiter = RateLimiter.from_config(cfg.rate_limit)

    async with BinanceSpotKlineSource(base_url=cfg.source.base_url) as source:
        sink = await SQLiteKlineSink.open(cfg.storage.db_path)
        try:
            orchestrator = Orchestrator(
                FetchWorker.from_config(source, limiter, cfg),
                sink,
                checkpoints,
                retry=cfg.retry,
                max_workers=cfg.run.max_workers,
                skip_pre_listing=cfg.run.skip_pre_listing,
                stop=stop,
            )
            report = await orchestrator.run(symbols, start_ms, end_ms, cfg.run.interval)
        finally:
            await sink.close()

    for line in report.summary_lines():
        logger.info(line)
    if report_json:
        write_report_json(report, report_json)

    return report.exit_code()


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    configure_logging(args.verbose, args.log_file)

    cfg = resolve_config(args)
    logger.info(
        "Ingest config: {} symbol(s) interval={} start={} end={} db={} checkpoints={}",
        len(cfg.run.symbols),
        cfg.run.interval,
        cfg.run.start_date,
        cfg.run.end_date or "NOW",
        cfg.storage.db_path,
        cfg.storage.checkpoint_dir,
    )

    try:
        code = asyncio.run(
            run_ingest(cfg, reset_checkpoints=args.reset_checkpoints, report_json=args.report_json)
        )
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        code = 130

    sys.exit(code)


if __name__ == "__main__":
    main()
