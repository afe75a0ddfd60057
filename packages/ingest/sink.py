from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

import aiosqlite
from loguru import logger

from packages.common.timeframes import interval_to_ms
from packages.ingest.errors import SinkError
from packages.ingest.types import Kline, TimeWindow


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS klines (
  symbol TEXT NOT NULL,
  interval TEXT NOT NULL,
  open_time_ms INTEGER NOT NULL,
  open REAL NOT NULL,
  high REAL NOT NULL,
  low REAL NOT NULL,
  close REAL NOT NULL,
  volume REAL NOT NULL,
  quote_volume REAL NOT NULL DEFAULT 0,
  trades INTEGER NOT NULL DEFAULT 0,
  PRIMARY KEY (symbol, interval, open_time_ms)
);
"""

_UPSERT_SQL = """
INSERT INTO klines (symbol, interval, open_time_ms, open, high, low, close, volume, quote_volume, trades)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(symbol, interval, open_time_ms) DO UPDATE SET
  open=excluded.open,
  high=excluded.high,
  low=excluded.low,
  close=excluded.close,
  volume=excluded.volume,
  quote_volume=excluded.quote_volume,
  trades=excluded.trades
"""


class KlineSink(Protocol):
    async def persist(self, klines: Sequence[Kline]) -> int: ...


@dataclass(frozen=True)
class Coverage:
    symbol: str
    interval: str
    first_open_ms: int
    last_open_ms: int
    count: int


@dataclass
class SQLiteKlineSink:
    """
    Idempotent, all-or-nothing kline writer.

    - upsert keyed by (symbol, interval, open_time_ms): re-persisting a window
      overwrites in place, never duplicates
    - one transaction per batch; any failure rolls the whole batch back
    - the connection is shared by all workers, so batches are serialised by a lock
    """

    db_path: Path
    conn: aiosqlite.Connection
    _write_lock: asyncio.Lock

    @classmethod
    async def open(cls, db_path: str | Path) -> "SQLiteKlineSink":
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(path))
        await conn.executescript(SCHEMA_SQL)
        await conn.commit()
        logger.info("Kline sink ready: {}", path)
        return cls(db_path=path, conn=conn, _write_lock=asyncio.Lock())

    async def close(self) -> None:
        await self.conn.close()
        logger.info("Kline sink closed")

    async def __aenter__(self) -> "SQLiteKlineSink":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # =========================
    # write
    # =========================

    async def persist(self, klines: Sequence[Kline]) -> int:
        if not klines:
            return 0

        rows = [
            (k.symbol, k.interval, k.open_time_ms, k.open, k.high, k.low, k.close, k.volume, k.quote_volume, k.trades)
            for k in klines
        ]

        async with self._write_lock:
            try:
                await self.conn.execute("BEGIN")
                await self.conn.executemany(_UPSERT_SQL, rows)
                await self.conn.commit()
            except sqlite3.Error as e:
                await self._rollback()
                raise SinkError(f"Failed to persist {len(rows)} klines: {e}") from e

        return len(rows)

    async def _rollback(self) -> None:
        try:
            await self.conn.rollback()
        except sqlite3.Error as e:
            logger.error("Rollback failed: {}", e)

    # =========================
    # read
    # =========================

    async def count(
        self,
        symbol: str,
        interval: str,
        start_ms: Optional[int] = None,
        end_ms_excl: Optional[int] = None,
    ) -> int:
        where, params = _range_filter(symbol, interval, start_ms, end_ms_excl)
        async with self.conn.execute(f"SELECT COUNT(*) FROM klines WHERE {where}", params) as cur:
            row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def open_times(
        self,
        symbol: str,
        interval: str,
        start_ms: Optional[int] = None,
        end_ms_excl: Optional[int] = None,
    ) -> List[int]:
        where, params = _range_filter(symbol, interval, start_ms, end_ms_excl)
        async with self.conn.execute(
            f"SELECT open_time_ms FROM klines WHERE {where} ORDER BY open_time_ms", params
        ) as cur:
            rows = await cur.fetchall()
        return [int(r[0]) for r in rows]

    async def coverage(self, symbol: str, interval: str) -> Optional[Coverage]:
        async with self.conn.execute(
            """
            SELECT MIN(open_time_ms), MAX(open_time_ms), COUNT(*)
            FROM klines
            WHERE symbol=? AND interval=?
            """,
            (symbol, interval),
        ) as cur:
            row = await cur.fetchone()
        if not row or row[0] is None:
            return None
        return Coverage(
            symbol=symbol,
            interval=interval,
            first_open_ms=int(row[0]),
            last_open_ms=int(row[1]),
            count=int(row[2]),
        )

    async def find_gaps(
        self,
        symbol: str,
        interval: str,
        start_ms: int,
        end_ms_excl: int,
        limit: int = 10_000,
    ) -> List[TimeWindow]:
        """
        Missing ranges inside [start_ms, end_ms_excl), including a missing head
        or tail. An empty range yields one gap covering all of it.
        """
        interval_ms = interval_to_ms(interval)
        where, params = _range_filter(symbol, interval, start_ms, end_ms_excl)

        sql = f"""
        WITH ordered AS (
          SELECT open_time_ms,
                 LAG(open_time_ms) OVER (ORDER BY open_time_ms) AS prev_ts
          FROM klines
          WHERE {where}
        )
        SELECT prev_ts + {interval_ms} AS gap_start, open_time_ms AS gap_end
        FROM ordered
        WHERE prev_ts IS NOT NULL AND (open_time_ms - prev_ts) != {interval_ms}
        ORDER BY gap_start
        LIMIT ?
        """
        async with self.conn.execute(sql, (*params, int(limit))) as cur:
            inner = await cur.fetchall()

        async with self.conn.execute(
            f"SELECT MIN(open_time_ms), MAX(open_time_ms) FROM klines WHERE {where}", params
        ) as cur:
            bounds = await cur.fetchone()

        if not bounds or bounds[0] is None:
            return [TimeWindow(start_ms, end_ms_excl)]

        first_ts, last_ts = int(bounds[0]), int(bounds[1])
        out: List[TimeWindow] = []
        if first_ts > start_ms:
            out.append(TimeWindow(start_ms, first_ts))
        for gs, ge in inner:
            if int(ge) > int(gs):
                out.append(TimeWindow(int(gs), int(ge)))
        if last_ts + interval_ms < end_ms_excl:
            out.append(TimeWindow(last_ts + interval_ms, end_ms_excl))
        return out[:limit]


def _range_filter(
    symbol: str,
    interval: str,
    start_ms: Optional[int],
    end_ms_excl: Optional[int],
) -> tuple[str, tuple]:
    where = ["symbol=? AND interval=?"]
    params: list[object] = [symbol, interval]
    if start_ms is not None:
        where.append("open_time_ms >= ?")
        params.append(int(start_ms))
    if end_ms_excl is not None:
        where.append("open_time_ms < ?")
        params.append(int(end_ms_excl))
    return " AND ".join(where), tuple(params)
