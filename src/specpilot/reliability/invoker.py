"""Resilient execution of outbound model calls.

Every call takes a pool slot, then runs the adaptive retry loop. Each
individual attempt passes through the circuit breaker and races its
own timeout inside it, so the breaker sees one outcome per attempt
(timeouts included) and an open circuit stops the retry loop at once.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from specpilot.exceptions import TransientError
from specpilot.reliability.circuit_breaker import CircuitBreaker
from specpilot.reliability.pool import ConcurrencyPool, Priority
from specpilot.reliability.retry import ErrorClass, RetryPolicy, call_with_adaptive_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ResilientInvoker:
    """Pool + breaker + adaptive retry + per-attempt timeout."""

    def __init__(
        self,
        pool: ConcurrencyPool,
        breaker: CircuitBreaker,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.pool = pool
        self.breaker = breaker
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        priority: Priority = Priority.NORMAL,
        timeout: float | None = None,
    ) -> T:
        """Run ``fn`` with full protection; raises the surfaced error on exhaustion.

        ``timeout`` bounds each attempt and defaults to the pool's task
        timeout. Time spent queued for a slot is not counted against it.
        """
        attempt_timeout = self.pool.task_timeout_seconds if timeout is None else timeout

        async def attempt() -> T:
            if not attempt_timeout or attempt_timeout <= 0:
                return await fn()
            try:
                return await asyncio.wait_for(fn(), timeout=attempt_timeout)
            except TimeoutError as e:
                raise TransientError(f"Attempt timed out after {attempt_timeout:.1f}s") from e

        async def guarded() -> T:
            return await self.breaker.execute(attempt)

        async def job() -> T:
            return await call_with_adaptive_retry(
                guarded,
                policy=self.retry_policy,
                on_retry=self._log_retry,
                sleep=self._sleep,
            )

        return await self.pool.submit(job, priority=priority, timeout=0)

    def _log_retry(
        self, attempt: int, error: BaseException, error_class: ErrorClass, delay: float,
    ) -> None:
        logger.debug(
            "Invoker retry %d via breaker %s (%s, %.2fs): %s",
            attempt, self.breaker.name, error_class.value, delay, error,
        )
