"""Outbound call protection and inbound rate limiting."""

from specpilot.reliability.circuit_breaker import (
    BreakerRegistry,
    CircuitBreaker,
    CircuitState,
)
from specpilot.reliability.invoker import ResilientInvoker
from specpilot.reliability.pool import ConcurrencyPool, PoolStats, Priority
from specpilot.reliability.rate_limiter import (
    PRESETS,
    RateLimitResult,
    SlidingWindowRateLimiter,
)
from specpilot.reliability.retry import (
    ErrorClass,
    RetryPolicy,
    call_with_adaptive_retry,
    classify_error,
)

__all__ = [
    "PRESETS",
    "BreakerRegistry",
    "CircuitBreaker",
    "CircuitState",
    "ConcurrencyPool",
    "ErrorClass",
    "PoolStats",
    "Priority",
    "RateLimitResult",
    "ResilientInvoker",
    "RetryPolicy",
    "SlidingWindowRateLimiter",
    "call_with_adaptive_retry",
    "classify_error",
]
