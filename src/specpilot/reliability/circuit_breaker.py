"""Named circuit breakers guarding downstream dependencies.

States:
- CLOSED: normal operation, consecutive failures are counted
- OPEN: calls fail fast with CircuitOpenError until the cool-down elapses
- HALF_OPEN: probing; enough consecutive successes close the circuit,
  any failure reopens it

The OPEN -> HALF_OPEN move happens on the next call attempt after the
cool-down, never on a background timer.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeVar

from specpilot.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

StateChangeHandler = Callable[[str, "CircuitState", "CircuitState"], Any]


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class BreakerStats:
    total_requests: int = 0
    success_count: int = 0
    failure_count: int = 0
    rejected_count: int = 0
    last_state_change: float = 0.0


class CircuitBreaker:
    """Consecutive-failure circuit breaker for one logical dependency."""

    def __init__(
        self,
        name: str,
        threshold: int = 5,
        timeout_seconds: float = 60.0,
        half_open_attempts: int = 3,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: StateChangeHandler | None = None,
    ):
        if threshold <= 0:
            raise ValueError(f"threshold must be positive, got {threshold}")
        if half_open_attempts <= 0:
            raise ValueError(f"half_open_attempts must be positive, got {half_open_attempts}")
        self.name = name
        self.threshold = threshold
        self.timeout_seconds = timeout_seconds
        self.half_open_attempts = half_open_attempts
        self._clock = clock
        self._on_state_change = on_state_change
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._half_open_successes = 0
        self._last_failure_time: float | None = None
        self._stats = BreakerStats(last_state_change=clock())

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def half_open_success_count(self) -> int:
        return self._half_open_successes

    @property
    def last_failure_time(self) -> float | None:
        return self._last_failure_time

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` through the breaker.

        Raises CircuitOpenError without calling ``fn`` while OPEN and
        inside the cool-down window.
        """
        self._before_call()
        try:
            result = await fn()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        self._stats.success_count += 1
        self._consecutive_failures = 0
        if self._state is CircuitState.HALF_OPEN:
            self._half_open_successes += 1
            if self._half_open_successes >= self.half_open_attempts:
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._stats.failure_count += 1
        self._consecutive_failures += 1
        self._last_failure_time = self._clock()
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif (
            self._state is CircuitState.CLOSED
            and self._consecutive_failures >= self.threshold
        ):
            self._transition(CircuitState.OPEN)

    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    def time_until_reset(self) -> float:
        """Seconds until an OPEN circuit will admit a probe; 0 otherwise."""
        if self._state is not CircuitState.OPEN or self._last_failure_time is None:
            return 0.0
        elapsed = self._clock() - self._last_failure_time
        return max(0.0, self.timeout_seconds - elapsed)

    def reset(self) -> None:
        """Force CLOSED and clear counters (manual intervention)."""
        self._consecutive_failures = 0
        self._half_open_successes = 0
        self._last_failure_time = None
        if self._state is not CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)

    def stats(self) -> BreakerStats:
        return BreakerStats(**vars(self._stats))

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self._state.value,
            "consecutive_failures": self._consecutive_failures,
            "half_open_success_count": self._half_open_successes,
            "last_failure_time": self._last_failure_time,
            "threshold": self.threshold,
            "timeout_seconds": self.timeout_seconds,
            "half_open_attempts": self.half_open_attempts,
            "total_requests": self._stats.total_requests,
            "success_count": self._stats.success_count,
            "failure_count": self._stats.failure_count,
            "rejected_count": self._stats.rejected_count,
            "time_until_reset": self.time_until_reset(),
        }

    def _before_call(self) -> None:
        self._stats.total_requests += 1
        if self._state is not CircuitState.OPEN:
            return
        if self.time_until_reset() > 0:
            self._stats.rejected_count += 1
            raise CircuitOpenError(self.name, retry_after=self.time_until_reset())
        self._transition(CircuitState.HALF_OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        self._stats.last_state_change = self._clock()
        if new_state is CircuitState.HALF_OPEN:
            self._half_open_successes = 0
        elif new_state is CircuitState.CLOSED:
            self._consecutive_failures = 0
            self._half_open_successes = 0
        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log("Circuit breaker %s: %s -> %s", self.name, old_state.value, new_state.value)
        if self._on_state_change is not None:
            self._on_state_change(self.name, old_state, new_state)

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name={self.name!r}, state={self._state.value}, "
            f"failures={self._consecutive_failures}/{self.threshold})"
        )


class BreakerRegistry:
    """One breaker per dependency name, built once and injected.

    Replaces process-wide breaker maps so tests and runtimes never share
    hidden state.
    """

    def __init__(
        self,
        threshold: int = 5,
        timeout_seconds: float = 60.0,
        half_open_attempts: int = 3,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: StateChangeHandler | None = None,
    ):
        self._defaults = {
            "threshold": threshold,
            "timeout_seconds": timeout_seconds,
            "half_open_attempts": half_open_attempts,
        }
        self._clock = clock
        self._on_state_change = on_state_change
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str, **overrides) -> CircuitBreaker:
        """Return the breaker for ``name``, creating it on first use.

        Overrides only apply at creation time.
        """
        breaker = self._breakers.get(name)
        if breaker is None:
            settings = {**self._defaults, **overrides}
            breaker = CircuitBreaker(
                name,
                clock=self._clock,
                on_state_change=self._on_state_change,
                **settings,
            )
            self._breakers[name] = breaker
        return breaker

    def __contains__(self, name: str) -> bool:
        return name in self._breakers

    def all_stats(self) -> dict[str, dict]:
        return {name: b.to_dict() for name, b in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
