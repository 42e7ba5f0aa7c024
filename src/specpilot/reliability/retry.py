"""Adaptive retry for outbound model calls.

Errors are classified before deciding whether and how long to wait:

- RETRYABLE (timeouts, connection resets, 5xx) back off as base * 2^n
- THROTTLED (429, rate limit, quota) back off as base * 3^n
- NON_RETRYABLE (401/403, other 4xx, open circuit, full queue) raise at once

Delays are capped at ``max_delay_seconds`` and then jittered by
``jitter_ratio`` in both directions.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TypeVar

from specpilot.config import RetryConfig
from specpilot.exceptions import (
    AuthError,
    CircuitOpenError,
    QueueFullError,
    RequestRejectedError,
    SpecPilotError,
    ThrottleError,
    TransientError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorClass(StrEnum):
    RETRYABLE = "retryable"
    THROTTLED = "throttled"
    NON_RETRYABLE = "non_retryable"


# Any 4xx status except 429.
_CLIENT_STATUS_RE = re.compile(r"\b(4(?!29)\d\d)\b")

# Message patterns, first match wins.
_PATTERNS: list[tuple[re.Pattern, ErrorClass]] = [
    (
        re.compile(r"rate limit|too many requests|\b429\b|quota", re.IGNORECASE),
        ErrorClass.THROTTLED,
    ),
    (
        re.compile(
            r"timeout|timed out|network|econnrefused|econnreset|etimedout"
            r"|fetch failed|connection",
            re.IGNORECASE,
        ),
        ErrorClass.RETRYABLE,
    ),
    (
        re.compile(
            r"unauthorized|authentication|invalid key|invalid token|\b401\b|\b403\b",
            re.IGNORECASE,
        ),
        ErrorClass.NON_RETRYABLE,
    ),
    (_CLIENT_STATUS_RE, ErrorClass.NON_RETRYABLE),
    (re.compile(r"\b50[0234]\b"), ErrorClass.RETRYABLE),
]

_AUTH_RE = _PATTERNS[2][0]


def classify_error(error: BaseException) -> ErrorClass:
    """Decide how an invocation failure should be retried."""
    if isinstance(
        error, (CircuitOpenError, QueueFullError, AuthError, RequestRejectedError, ValidationError),
    ):
        return ErrorClass.NON_RETRYABLE
    if isinstance(error, ThrottleError):
        return ErrorClass.THROTTLED
    if isinstance(error, (TransientError, TimeoutError, ConnectionError)):
        return ErrorClass.RETRYABLE

    text = str(error or "")
    for pattern, error_class in _PATTERNS:
        if pattern.search(text):
            return error_class
    return ErrorClass.RETRYABLE


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings. ``max_retries`` counts retries, not attempts."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    jitter_ratio: float = 0.3

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        base = max(0.0, config.base_delay_seconds)
        return cls(
            max_retries=max(0, config.max_retries),
            base_delay_seconds=base,
            max_delay_seconds=max(base, config.max_delay_seconds),
            jitter_ratio=min(1.0, max(0.0, config.jitter_ratio)),
        )

    def base_delay_for(self, attempt: int, error_class: ErrorClass) -> float:
        """Un-jittered delay after the ``attempt``-th failure (0-based)."""
        multiplier = 3 if error_class is ErrorClass.THROTTLED else 2
        return min(self.max_delay_seconds, self.base_delay_seconds * multiplier**attempt)

    def delay_for(
        self,
        attempt: int,
        error_class: ErrorClass,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> float:
        delay = self.base_delay_for(attempt, error_class)
        if self.jitter_ratio > 0:
            delay *= 1 + uniform(-self.jitter_ratio, self.jitter_ratio)
        return max(0.0, delay)


def _surface(error: Exception, error_class: ErrorClass) -> Exception:
    """Map a final failure onto the public error taxonomy."""
    if isinstance(error, SpecPilotError):
        return error
    if error_class is ErrorClass.THROTTLED:
        return ThrottleError(f"Provider throttled the request: {error}")
    if error_class is ErrorClass.RETRYABLE:
        return TransientError(f"Service unavailable: {error}")
    if _AUTH_RE.search(str(error)):
        return AuthError(f"Provider rejected credentials: {error}")
    match = _CLIENT_STATUS_RE.search(str(error))
    if match:
        return RequestRejectedError(
            f"Provider rejected the request: {error}", status_code=int(match.group(1)),
        )
    return error


async def call_with_adaptive_retry(
    invoke: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    timeout_seconds: float | None = None,
    classify: Callable[[BaseException], ErrorClass] = classify_error,
    on_retry: Callable[[int, BaseException, ErrorClass, float], None] | None = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    uniform: Callable[[float, float], float] = random.uniform,
) -> T:
    """Invoke an async call, retrying according to the error class.

    Each attempt races ``timeout_seconds``; a timed-out attempt is
    cancelled locally and counts as RETRYABLE. The request may still
    complete at the provider, but its late result is never observed.
    """
    attempt = 0
    while True:
        try:
            if timeout_seconds and timeout_seconds > 0:
                try:
                    return await asyncio.wait_for(invoke(), timeout=timeout_seconds)
                except TimeoutError as e:
                    raise TransientError(
                        f"Attempt timed out after {timeout_seconds:.1f}s"
                    ) from e
            return await invoke()
        except Exception as error:
            error_class = classify(error)
            if error_class is ErrorClass.NON_RETRYABLE or attempt >= policy.max_retries:
                surfaced = _surface(error, error_class)
                if error_class is not ErrorClass.NON_RETRYABLE:
                    logger.warning(
                        "Giving up after %d attempts (%s): %s",
                        attempt + 1, error_class.value, error,
                    )
                if surfaced is error:
                    raise
                if isinstance(surfaced, ThrottleError):
                    surfaced.retry_after = policy.base_delay_for(attempt + 1, error_class)
                raise surfaced from error

            delay = policy.delay_for(attempt, error_class, uniform)
            logger.info(
                "Retrying after %s failure (attempt %d/%d) in %.2fs: %s",
                error_class.value, attempt + 1, policy.max_retries + 1, delay, error,
            )
            if on_retry is not None:
                on_retry(attempt + 1, error, error_class, delay)
            if delay > 0:
                await sleep(delay)
            attempt += 1
