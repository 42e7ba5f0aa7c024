"""Latency tracking for model calls.

``LatencyStats`` keeps a bounded window of samples per agent so the
runtime can report p50/p95 call latency. Per-call log lines are only
written when ``SPECPILOT_LATENCY_DIAGNOSTICS`` is set.
"""

from __future__ import annotations

import logging
import os
import time
from collections import defaultdict, deque
from collections.abc import Callable
from contextlib import contextmanager
from typing import Any

_ENABLED_VALUES = {"1", "true", "yes", "on"}


def diagnostics_enabled() -> bool:
    value = os.environ.get("SPECPILOT_LATENCY_DIAGNOSTICS", "")
    return value.strip().lower() in _ENABLED_VALUES


def log_latency_event(
    logger: logging.Logger,
    *,
    event: str,
    duration_seconds: float,
    fields: dict[str, Any] | None = None,
) -> None:
    """Write one ``latency event=... duration_ms=...`` line if diagnostics are on."""
    if not diagnostics_enabled():
        return
    extra = "".join(f" {key}={value}" for key, value in (fields or {}).items())
    logger.info(
        "latency event=%s duration_ms=%.2f%s",
        event, max(0.0, duration_seconds) * 1000.0, extra,
    )


@contextmanager
def timed_block(
    logger: logging.Logger,
    *,
    event: str,
    fields: dict[str, Any] | None = None,
    sink: Callable[[float], None] | None = None,
):
    """Measure the wrapped block; elapsed seconds go to ``sink`` and the log."""
    started = time.monotonic()
    try:
        yield
    finally:
        elapsed = time.monotonic() - started
        if sink is not None:
            sink(elapsed)
        log_latency_event(logger, event=event, duration_seconds=elapsed, fields=fields)


def _percentile(ordered: list[float], fraction: float) -> float:
    if not ordered:
        return 0.0
    index = min(len(ordered) - 1, int(round(fraction * (len(ordered) - 1))))
    return ordered[index]


class LatencyStats:
    """Rolling per-label latency samples in milliseconds."""

    def __init__(self, window: int = 200):
        if window < 1:
            raise ValueError("window must be >= 1")
        self._window = window
        self._samples: dict[str, deque[float]] = defaultdict(lambda: deque(maxlen=self._window))
        self._counts: dict[str, int] = defaultdict(int)

    def record(self, label: str, latency_ms: float) -> None:
        self._samples[label].append(max(0.0, float(latency_ms)))
        self._counts[label] += 1

    def labels(self) -> list[str]:
        return sorted(self._samples)

    def summary(self, label: str) -> dict:
        ordered = sorted(self._samples.get(label, ()))
        if not ordered:
            return {"count": 0, "mean_ms": 0.0, "p50_ms": 0.0, "p95_ms": 0.0, "max_ms": 0.0}
        return {
            "count": self._counts[label],
            "mean_ms": round(sum(ordered) / len(ordered), 2),
            "p50_ms": _percentile(ordered, 0.5),
            "p95_ms": _percentile(ordered, 0.95),
            "max_ms": ordered[-1],
        }

    def to_dict(self) -> dict:
        return {label: self.summary(label) for label in self.labels()}

    def reset(self) -> None:
        self._samples.clear()
        self._counts.clear()
