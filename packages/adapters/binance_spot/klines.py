from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional, Set

import aiohttp
from loguru import logger

from packages.ingest.errors import (
    InvalidSymbolError,
    MalformedResponseError,
    PermanentFetchError,
    RateLimitedError,
    TransientFetchError,
)
from packages.ingest.types import Kline


BINANCE_SUPPORTED_INTERVALS: Set[str] = {
    "1s", "1m", "3m", "5m", "15m", "30m",
    "1h", "2h", "4h", "6h", "8h", "12h",
    "1d", "3d", "1w",
}

# Binance error code for "Invalid symbol."
_INVALID_SYMBOL_CODE = -1121


def _symbol_to_binance(symbol: str) -> str:
    return symbol.replace("/", "").upper()


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _classify(status: int, text: str, retry_after: Optional[str], symbol: str) -> Exception:
    """Map a non-200 klines response to the ingest error taxonomy."""
    snippet = text[:200]

    if status in (418, 429):
        return RateLimitedError(
            f"Binance klines HTTP {status} for {symbol}: {snippet}",
            retry_after_s=_parse_retry_after(retry_after),
        )

    if status >= 500:
        return TransientFetchError(f"Binance klines HTTP {status} for {symbol}: {snippet}")

    code: Optional[int] = None
    try:
        body = json.loads(text)
        if isinstance(body, dict) and "code" in body:
            code = int(body["code"])
    except (ValueError, TypeError):
        code = None

    if code == _INVALID_SYMBOL_CODE:
        return InvalidSymbolError(f"Binance rejected symbol {symbol!r}: {snippet}")
    return PermanentFetchError(f"Binance klines HTTP {status} for {symbol}: {snippet}")


def _parse_rows(data: Any, symbol: str, interval: str) -> List[Kline]:
    """
    Binance kline row:
      [open_time, open, high, low, close, volume, close_time, quote_volume, trades, ...]
    """
    if not isinstance(data, list):
        raise MalformedResponseError(f"Binance klines for {symbol}: expected a list, got {type(data).__name__}")

    out: List[Kline] = []
    for row in data:
        try:
            out.append(
                Kline(
                    symbol=symbol,
                    interval=interval,
                    open_time_ms=int(row[0]),
                    open=float(row[1]),
                    high=float(row[2]),
                    low=float(row[3]),
                    close=float(row[4]),
                    volume=float(row[5]),
                    quote_volume=float(row[7]) if len(row) > 7 else 0.0,
                    trades=int(row[8]) if len(row) > 8 else 0,
                )
            )
        except (IndexError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Binance klines for {symbol}: bad row {row!r}") from e

    out.sort(key=lambda k: k.open_time_ms)
    return out


@dataclass
class BinanceSpotKlineSource:
    """
    GET /api/v3/klines over one shared aiohttp session.

    No retries here: failures are classified and raised, the fetch worker and
    orchestrator own retry and rate-limit policy.
    """

    venue: str = "binance_spot"
    base_url: str = "https://api.binance.com"
    request_timeout_s: float = 30.0
    _session: Optional[aiohttp.ClientSession] = field(default=None, init=False, repr=False)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "BinanceSpotKlineSource":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def fetch_klines(
        self,
        symbol: str,
        interval: str,
        start_ms: int,
        end_ms: Optional[int],
        limit: int,
    ) -> List[Kline]:
        if interval not in BINANCE_SUPPORTED_INTERVALS:
            raise PermanentFetchError(f"Unsupported Binance interval {interval!r}")

        params = {
            "symbol": _symbol_to_binance(symbol),
            "interval": interval,
            "startTime": str(start_ms),
            "limit": str(limit),
        }
        if end_ms is not None:
            # Binance endTime is inclusive.
            params["endTime"] = str(end_ms - 1)

        url = f"{self.base_url}/api/v3/klines"
        try:
            async with self._get_session().get(url, params=params) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise _classify(resp.status, text, resp.headers.get("Retry-After"), symbol)
        except aiohttp.ClientError as e:
            raise TransientFetchError(f"Binance klines request failed for {symbol}: {e}") from e

        try:
            data = json.loads(text)
        except ValueError as e:
            raise MalformedResponseError(f"Binance klines for {symbol}: invalid JSON") from e

        rows = _parse_rows(data, symbol, interval)
        if end_ms is not None:
            rows = [k for k in rows if k.open_time_ms < end_ms]

        logger.debug("Binance klines {} {} from {} -> {} rows", symbol, interval, start_ms, len(rows))
        return rows
