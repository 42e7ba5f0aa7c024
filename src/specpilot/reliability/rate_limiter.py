"""Per-key request limiter for inbound traffic shaping.

Independent of the circuit breaker: the breaker protects outbound
provider calls, this limiter caps how often one client (session, IP)
may call in. Each key gets a window that opens on its first request
and admits ``max_requests`` until it expires.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from specpilot.config import RateLimitConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPreset:
    max_requests: int
    window_seconds: float


PRESETS: dict[str, RateLimitPreset] = {
    "strict": RateLimitPreset(10, 60.0),
    "default": RateLimitPreset(60, 60.0),
    "chat": RateLimitPreset(30, 60.0),
    "api": RateLimitPreset(1000, 3600.0),
    "form_submit": RateLimitPreset(10, 3600.0),
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: int
    limit: int


@dataclass
class _Window:
    count: int
    reset_at: float
    first_request: float


class SlidingWindowRateLimiter:
    """Per-key request cap inside a time window."""

    # Expired windows are swept every this many checks.
    PURGE_EVERY = 100

    def __init__(
        self,
        max_requests: int = 60,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests <= 0:
            raise ValueError(f"max_requests must be positive, got {max_requests}")
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {window_seconds}")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._checks = 0

    @classmethod
    def from_preset(
        cls, name: str, clock: Callable[[], float] = time.monotonic,
    ) -> SlidingWindowRateLimiter:
        try:
            preset = PRESETS[name.lower()]
        except KeyError as e:
            raise ValueError(f"Unknown rate limit preset: {name!r}") from e
        return cls(preset.max_requests, preset.window_seconds, clock=clock)

    @classmethod
    def from_config(cls, config: RateLimitConfig) -> SlidingWindowRateLimiter:
        return cls(config.max_requests, config.window_seconds)

    def check(self, key: str) -> RateLimitResult:
        """Count one request for ``key`` and report whether it is allowed."""
        self._checks += 1
        if self._checks % self.PURGE_EVERY == 0:
            self.purge_expired()
        now = self._clock()
        window = self._windows.get(key)
        if window is None or now >= window.reset_at:
            window = _Window(count=0, reset_at=now + self.window_seconds, first_request=now)
            self._windows[key] = window

        if window.count >= self.max_requests:
            retry_after = max(1, math.ceil(window.reset_at - now))
            logger.info("Rate limit exceeded for %s; retry in %ds", key, retry_after)
            return RateLimitResult(
                allowed=False, remaining=0, retry_after=retry_after, limit=self.max_requests,
            )

        window.count += 1
        return RateLimitResult(
            allowed=True,
            remaining=self.max_requests - window.count,
            retry_after=0,
            limit=self.max_requests,
        )

    @staticmethod
    def headers(result: RateLimitResult) -> dict[str, str]:
        """HTTP headers describing ``result``."""
        headers = {
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
        }
        if not result.allowed:
            headers["Retry-After"] = str(result.retry_after)
        return headers

    def reset(self, key: str) -> None:
        self._windows.pop(key, None)

    def clear(self) -> None:
        self._windows.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, w in self._windows.items() if now >= w.reset_at]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def stats(self) -> dict:
        now = self._clock()
        active = sum(1 for w in self._windows.values() if now < w.reset_at)
        return {
            "tracked_keys": len(self._windows),
            "active_keys": active,
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
        }
