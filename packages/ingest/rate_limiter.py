from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

from loguru import logger

from packages.common.config import RateLimitConfig

# Float slack so refill arithmetic never leaves a sub-ulp deficit to sleep on.
_EPS = 1e-9


class RateLimiter:
    """
    Async token bucket shared by every fetch worker.

    - capacity tokens, refilled continuously at refill_per_s (starts full)
    - on_rate_limited(): budget zeroed, refill paused for an exponential cooldown
      (base * 2^(k-1), capped), never shorter than the upstream Retry-After
    - on_success(): after cooldown_reset_s without a new signal, k resets

    Waiters queue on one asyncio.Lock, which wakes them in arrival order, so a
    waiter is delayed by at most the cooldown plus the refill time of the
    requests ahead of it.
    """

    def __init__(
        self,
        capacity: float,
        refill_per_s: float,
        *,
        cooldown_base_s: float = 1.0,
        cooldown_max_s: float = 120.0,
        cooldown_reset_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if capacity <= 0 or refill_per_s <= 0:
            raise ValueError("capacity and refill_per_s must be positive")

        self.capacity = float(capacity)
        self.refill_per_s = float(refill_per_s)
        self.cooldown_base_s = float(cooldown_base_s)
        self.cooldown_max_s = float(cooldown_max_s)
        self.cooldown_reset_s = float(cooldown_reset_s)

        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

        self._tokens = self.capacity
        self._last_ts = clock()
        self._cooldown_until = 0.0
        self._consecutive_signals = 0
        self._last_signal_ts: Optional[float] = None

        self.acquired = 0
        self.rate_limit_signals = 0

    @classmethod
    def from_config(cls, cfg: RateLimitConfig, **kwargs) -> "RateLimiter":
        return cls(
            cfg.capacity,
            cfg.refill_per_s,
            cooldown_base_s=cfg.cooldown_base_s,
            cooldown_max_s=cfg.cooldown_max_s,
            cooldown_reset_s=cfg.cooldown_reset_s,
            **kwargs,
        )

    @property
    def tokens(self) -> float:
        self._refill(self._clock())
        return self._tokens

    @property
    def cooling_down(self) -> bool:
        return self._clock() < self._cooldown_until

    def _refill(self, now: float) -> None:
        # No refill accrues while cooling down.
        since = max(self._last_ts, self._cooldown_until)
        if now > since:
            self._tokens = min(self.capacity, self._tokens + (now - since) * self.refill_per_s)
        self._last_ts = max(self._last_ts, now)

    def _wait_time(self, cost: float, now: float) -> float:
        self._refill(now)
        if now < self._cooldown_until:
            return (self._cooldown_until - now) + cost / self.refill_per_s
        if self._tokens + _EPS >= cost:
            return 0.0
        return (cost - self._tokens) / self.refill_per_s

    async def acquire(self, cost: int = 1) -> None:
        if cost > self.capacity:
            raise ValueError(f"cost={cost} exceeds bucket capacity={self.capacity}")
        if cost <= 0:
            return

        async with self._lock:
            while True:
                wait = self._wait_time(cost, self._clock())
                if wait <= 0:
                    self._tokens = max(0.0, self._tokens - cost)
                    self.acquired += 1
                    return
                await self._sleep(wait)

    def on_rate_limited(self, retry_after_s: Optional[float] = None) -> float:
        """Upstream said 'too many requests'. Returns the cooldown applied (seconds)."""
        now = self._clock()
        self._refill(now)

        self._consecutive_signals += 1
        self.rate_limit_signals += 1
        self._last_signal_ts = now

        backoff = min(self.cooldown_base_s * (2 ** (self._consecutive_signals - 1)), self.cooldown_max_s)
        if retry_after_s is not None:
            backoff = max(backoff, float(retry_after_s))

        self._tokens = 0.0
        self._cooldown_until = max(self._cooldown_until, now + backoff)

        logger.warning(
            "Rate limited (signal #{} in a row) - budget zeroed, refill paused {:.1f}s",
            self._consecutive_signals,
            backoff,
        )
        return backoff

    def on_success(self) -> None:
        if self._consecutive_signals == 0 or self._last_signal_ts is None:
            return
        if self._clock() - self._last_signal_ts >= self.cooldown_reset_s:
            logger.info("Rate limiter back to baseline after {} signals", self._consecutive_signals)
            self._consecutive_signals = 0
            self._last_signal_ts = None
