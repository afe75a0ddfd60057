from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from loguru import logger

from packages.common.datetime_utils import ms_to_iso8601_z, now_ms
from packages.ingest.errors import CheckpointError

_FORMAT_VERSION = 1


def checkpoint_path_for(checkpoint_dir: str | Path, interval: str) -> Path:
    return Path(checkpoint_dir) / f"klines_{interval}.json"


class CheckpointStore:
    """
    Durable symbol -> last fully persisted open time (ms), one JSON file per interval.

    File layout (kept human-readable for manual recovery):

        {
          "version": 1,
          "interval": "5m",
          "symbols": {
            "BTCUSDT": {"last_open_ms": 1704153600000,
                        "last_open": "2024-01-02T00:00:00Z",
                        "updated_at": "..."}
          }
        }

    Every write goes to a temp file in the same directory, is fsynced and then
    os.replace()d over the previous file, so readers only ever see a complete
    state. advance() never moves a value backwards; reset() is the only way to.
    """

    def __init__(self, path: str | Path, interval: str):
        self.path = Path(path)
        self.interval = interval
        self._state: Optional[Dict[str, int]] = None
        self._write_lock = asyncio.Lock()

    # =========================
    # read
    # =========================

    def load(self) -> Dict[str, int]:
        self._state = self._read()
        logger.info("Loaded {} checkpoint(s) from {}", len(self._state), self.path)
        return dict(self._state)

    def get(self, symbol: str) -> Optional[int]:
        return self._ensure_loaded().get(symbol)

    def _ensure_loaded(self) -> Dict[str, int]:
        if self._state is None:
            self._state = self._read()
        return self._state

    def _read(self) -> Dict[str, int]:
        if not self.path.exists():
            return {}

        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise CheckpointError(f"Unreadable checkpoint file {self.path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("symbols"), dict):
            raise CheckpointError(f"Invalid checkpoint structure in {self.path}")

        file_interval = data.get("interval")
        if file_interval != self.interval:
            raise CheckpointError(
                f"Checkpoint file {self.path} is for interval={file_interval!r}, not {self.interval!r}"
            )

        out: Dict[str, int] = {}
        for symbol, entry in data["symbols"].items():
            try:
                out[str(symbol)] = int(entry["last_open_ms"])
            except (KeyError, TypeError, ValueError) as e:
                raise CheckpointError(f"Invalid checkpoint entry for {symbol!r} in {self.path}") from e
        return out

    # =========================
    # write
    # =========================

    def advance(self, symbol: str, new_open_ms: int) -> bool:
        """Durably record new_open_ms if it moves the checkpoint forward. Returns True if written."""
        state = self._ensure_loaded()
        current = state.get(symbol)
        if current is not None and new_open_ms <= current:
            return False

        updated = dict(state)
        updated[symbol] = int(new_open_ms)
        self._write(updated)
        self._state = updated

        logger.debug("Checkpoint {} -> {}", symbol, ms_to_iso8601_z(new_open_ms))
        return True

    async def advance_async(self, symbol: str, new_open_ms: int) -> bool:
        """
        advance() for callers on the event loop: the write and its fsyncs run in
        a worker thread, one at a time, so concurrent symbols never interleave.
        """
        async with self._write_lock:
            return await asyncio.to_thread(self.advance, symbol, new_open_ms)

    def reset(self, symbols: Optional[Iterable[str]] = None) -> None:
        """Forget checkpoints for the given symbols (all when None)."""
        state = self._ensure_loaded()
        if symbols is None:
            updated: Dict[str, int] = {}
        else:
            drop = set(symbols)
            updated = {s: v for s, v in state.items() if s not in drop}

        self._write(updated)
        self._state = updated
        logger.warning("Checkpoints reset ({} remaining) in {}", len(updated), self.path)

    def _write(self, state: Dict[str, int]) -> None:
        stamp = ms_to_iso8601_z(now_ms())
        doc: Dict[str, Any] = {
            "version": _FORMAT_VERSION,
            "interval": self.interval,
            "symbols": {
                s: {"last_open_ms": v, "last_open": ms_to_iso8601_z(v), "updated_at": stamp}
                for s, v in sorted(state.items())
            },
        }
        payload = json.dumps(doc, indent=2)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise CheckpointError(f"Failed to write checkpoint {self.path}: {e}") from e

        self._fsync_dir()

    def _fsync_dir(self) -> None:
        # Makes the rename itself durable; not available on every platform.
        try:
            dfd = os.open(self.path.parent, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dfd)
        except OSError:
            pass
        finally:
            os.close(dfd)
