from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from packages.common.datetime_utils import ms_to_iso8601_z
from packages.ingest.types import TimeWindow


class SymbolStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"
    NOT_STARTED = "not_started"
    STOPPED = "stopped"


@dataclass(frozen=True)
class FailedWindow:
    window: TimeWindow
    error_kind: str
    message: str
    attempts: int
    permanent: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window": _window_dict(self.window),
            "error_kind": self.error_kind,
            "message": self.message,
            "attempts": self.attempts,
            "permanent": self.permanent,
        }


@dataclass
class SymbolReport:
    symbol: str
    checkpoint_ms: Optional[int] = None
    records_written: int = 0
    windows_completed: int = 0
    failed_windows: List[FailedWindow] = field(default_factory=list)
    outstanding: Optional[TimeWindow] = None
    skipped_pre_listing: Optional[TimeWindow] = None
    stopped: bool = False

    @property
    def status(self) -> SymbolStatus:
        if self.failed_windows:
            return SymbolStatus.PARTIAL if self.windows_completed > 0 else SymbolStatus.FAILED
        if self.outstanding is None:
            return SymbolStatus.COMPLETE
        if self.windows_completed == 0:
            return SymbolStatus.NOT_STARTED
        return SymbolStatus.STOPPED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "status": self.status.value,
            "checkpoint_ms": self.checkpoint_ms,
            "checkpoint": ms_to_iso8601_z(self.checkpoint_ms) if self.checkpoint_ms is not None else None,
            "records_written": self.records_written,
            "windows_completed": self.windows_completed,
            "failed_windows": [f.to_dict() for f in self.failed_windows],
            "outstanding": _window_dict(self.outstanding),
            "skipped_pre_listing": _window_dict(self.skipped_pre_listing),
            "stopped": self.stopped,
        }


@dataclass
class RunReport:
    interval: str
    start_ms: int
    end_ms: int
    started_at_ms: int
    finished_at_ms: Optional[int] = None
    symbols: Dict[str, SymbolReport] = field(default_factory=dict)
    stopped: bool = False
    rate_limit_acquired: int = 0
    rate_limit_signals: int = 0

    @property
    def records_written(self) -> int:
        return sum(s.records_written for s in self.symbols.values())

    @property
    def duration_s(self) -> float:
        if self.finished_at_ms is None:
            return 0.0
        return (self.finished_at_ms - self.started_at_ms) / 1000.0

    def by_status(self, status: SymbolStatus) -> List[SymbolReport]:
        return [s for s in self.symbols.values() if s.status == status]

    def has_failures(self) -> bool:
        return any(s.failed_windows for s in self.symbols.values())

    def exit_code(self) -> int:
        """1 on any failed window, 130 when a stop signal left work outstanding, else 0."""
        if self.has_failures():
            return 1
        if self.stopped and any(s.outstanding is not None for s in self.symbols.values()):
            return 130
        return 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interval": self.interval,
            "start": ms_to_iso8601_z(self.start_ms),
            "end": ms_to_iso8601_z(self.end_ms),
            "started_at": ms_to_iso8601_z(self.started_at_ms),
            "finished_at": ms_to_iso8601_z(self.finished_at_ms) if self.finished_at_ms is not None else None,
            "duration_s": round(self.duration_s, 3),
            "stopped": self.stopped,
            "records_written": self.records_written,
            "rate_limit": {
                "acquired": self.rate_limit_acquired,
                "signals": self.rate_limit_signals,
            },
            "counts": {st.value: len(self.by_status(st)) for st in SymbolStatus},
            "symbols": {sym: rep.to_dict() for sym, rep in sorted(self.symbols.items())},
            "exit_code": self.exit_code(),
        }

    def summary_lines(self) -> List[str]:
        counts = ", ".join(f"{st.value}={len(self.by_status(st))}" for st in SymbolStatus)
        lines = [
            f"Run {self.interval} [{ms_to_iso8601_z(self.start_ms)}..{ms_to_iso8601_z(self.end_ms)}) "
            f"took {self.duration_s:.1f}s: {counts}",
            f"Records written: {self.records_written} | rate limiter: "
            f"{self.rate_limit_acquired} acquisitions, {self.rate_limit_signals} throttle signals",
        ]

        for sym, rep in sorted(self.symbols.items()):
            if rep.status == SymbolStatus.COMPLETE and rep.skipped_pre_listing is None:
                continue
            line = f"  {sym}: {rep.status.value}"
            if rep.outstanding is not None:
                line += f" outstanding {rep.outstanding}"
            if rep.skipped_pre_listing is not None:
                line += f" skipped pre-listing {rep.skipped_pre_listing}"
            lines.append(line)
            for f in rep.failed_windows:
                kind = "permanent" if f.permanent else f"after {f.attempts} attempt(s)"
                lines.append(f"    {f.window} {f.error_kind} ({kind}): {f.message}")
        return lines


def _window_dict(w: Optional[TimeWindow]) -> Optional[Dict[str, Any]]:
    if w is None:
        return None
    return {
        "start_ms": w.start_ms,
        "end_ms": w.end_ms,
        "start": ms_to_iso8601_z(w.start_ms),
        "end": ms_to_iso8601_z(w.end_ms),
    }
