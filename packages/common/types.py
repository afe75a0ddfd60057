from __future__ import annotations

import re
from typing import Literal


VenueId = Literal["binance_spot"]

_SYMBOL_PART_RE = re.compile(r"^[A-Z0-9]+$")


def normalize_symbol(symbol: str) -> str:
    """
    Accepts 'btcusdt', 'BTCUSDT' or 'BTC/USDT'.
    Returns the single canonical form 'BTCUSDT' used for checkpoints and storage.
    """
    s = symbol.strip().upper()
    if not s:
        raise ValueError("symbol must be non-empty")

    parts = s.split("/", 1) if "/" in s else [s]
    for p in parts:
        if not _SYMBOL_PART_RE.match(p):
            raise ValueError(f"symbol must look like 'BTCUSDT' or 'BTC/USDT' (got {symbol!r})")
    return "".join(parts)
