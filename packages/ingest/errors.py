from __future__ import annotations

from typing import Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from packages.ingest.types import TimeWindow


class IngestError(Exception):
    """Base class for every failure the ingestion pipeline reports."""


class FetchError(IngestError):
    transient: bool = True


class TransientFetchError(FetchError):
    """Network trouble, timeouts, 5xx. Worth retrying."""

    transient = True


class RateLimitedError(TransientFetchError):
    def __init__(self, message: str, retry_after_s: Optional[float] = None):
        super().__init__(message)
        self.retry_after_s = retry_after_s


class GapError(TransientFetchError):
    """Expected open times still missing after the narrow re-fetch budget."""

    def __init__(self, message: str, missing: Sequence["TimeWindow"] = ()):
        super().__init__(message)
        self.missing = list(missing)


class PermanentFetchError(FetchError):
    transient = False


class InvalidSymbolError(PermanentFetchError):
    pass


class MalformedResponseError(PermanentFetchError):
    pass


class DataUnavailableError(PermanentFetchError):
    """
    The window (or its leading part) lies before the first candle the source has.
    first_available_ms is None when the source has no data at all from that point.
    """

    def __init__(self, message: str, first_available_ms: Optional[int] = None):
        super().__init__(message)
        self.first_available_ms = first_available_ms


class SinkError(IngestError):
    pass


class CheckpointError(IngestError):
    pass
