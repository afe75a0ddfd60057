from __future__ import annotations

from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .datetime_utils import parse_iso8601_to_ms
from .timeframes import interval_to_ms
from .types import VenueId, normalize_symbol


class SourceConfig(BaseModel):
    venue: VenueId = "binance_spot"
    base_url: str = "https://api.binance.com"


class RateLimitConfig(BaseModel):
    # Binance spot: 6000 request weight / minute; klines cost 2 per call.
    capacity: float = Field(default=100.0, gt=0)
    refill_per_s: float = Field(default=40.0, gt=0)
    request_weight: int = Field(default=2, ge=1)

    cooldown_base_s: float = Field(default=1.0, gt=0)
    cooldown_max_s: float = Field(default=120.0, gt=0)
    cooldown_reset_s: float = Field(default=60.0, ge=0)

    @model_validator(mode="after")
    def _weight_fits_bucket(self) -> "RateLimitConfig":
        if self.request_weight > self.capacity:
            raise ValueError("rate_limit.request_weight must not exceed rate_limit.capacity")
        return self


class FetchConfig(BaseModel):
    page_limit: int = Field(default=1000, ge=1, le=1000)  # Binance klines max is 1000
    request_timeout_s: float = Field(default=15.0, gt=0)
    gap_retries: int = Field(default=2, ge=0)


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=5, ge=1)
    sink_max_attempts: int = Field(default=3, ge=1)
    base_delay_s: float = Field(default=1.0, ge=0)
    max_delay_s: float = Field(default=30.0, ge=0)
    jitter_s: float = Field(default=0.25, ge=0)


class StorageConfig(BaseModel):
    db_path: str = "data/klines.sqlite"
    checkpoint_dir: str = "data/checkpoints"


class RunConfig(BaseModel):
    symbols: List[str] = Field(default_factory=list)
    start_date: str = "2024-01-01T00:00:00Z"
    end_date: Optional[str] = None
    interval: str = "5m"
    max_workers: int = Field(default=4, ge=1)
    skip_pre_listing: bool = False

    @field_validator("symbols", mode="before")
    @classmethod
    def _normalize_symbols(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        out: List[str] = []
        for x in v:
            if str(x).strip():
                s = normalize_symbol(str(x))
                if s not in out:
                    out.append(s)
        return out

    @field_validator("interval")
    @classmethod
    def _validate_interval(cls, v: str) -> str:
        interval_to_ms(v)
        return v.strip()

    @field_validator("start_date")
    @classmethod
    def _validate_start(cls, v: str) -> str:
        parse_iso8601_to_ms(v)
        return v

    @field_validator("end_date")
    @classmethod
    def _validate_end(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        parse_iso8601_to_ms(v)
        return v


class IngestConfig(BaseModel):
    source: SourceConfig = Field(default_factory=SourceConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    run: RunConfig = Field(default_factory=RunConfig)


def _maybe_load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text())
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML structure in {path}")
    return data


def load_ingest_config(
    path: Path = Path("config/ingest.yaml"),
    *,
    required: bool = False,
) -> IngestConfig:
    """
    Missing file -> all defaults, unless required (an explicit --config).
    """
    if required and not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    raw = _maybe_load_yaml(path)
    return IngestConfig.model_validate(raw) if raw else IngestConfig()


def load_symbols_file(path: Path) -> List[str]:
    """One symbol per line; blank lines and '#' comments ignored."""
    if not path.exists():
        raise FileNotFoundError(f"Symbols file not found: {path}")
    out: List[str] = []
    for line in path.read_text().splitlines():
        s = line.split("#", 1)[0].strip()
        if s:
            out.append(normalize_symbol(s))
    return out
