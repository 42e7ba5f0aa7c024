"""Bounded-concurrency executor with a priority queue.

At most ``max_concurrent`` jobs run at once. Extra submissions wait in
a heap ordered URGENT > HIGH > NORMAL > LOW, FIFO within a level. The
queue is capacity-bounded and rejects with QueueFullError instead of
growing.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import TypeVar

from specpilot.config import PoolConfig
from specpilot.exceptions import QueueFullError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Priority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2
    URGENT = 3


@dataclass
class PoolTask:
    """A queued job waiting for a slot."""

    id: str
    priority: Priority
    enqueued_at: float
    waiter: asyncio.Future = field(repr=False)


@dataclass
class PoolStats:
    pool_size: int
    running: int
    queued: int
    completed: int
    failed: int
    avg_execution_time: float

    def to_dict(self) -> dict:
        return dict(vars(self))


class ConcurrencyPool:
    """Semaphore-style slot accounting with explicit priority hand-off.

    A finishing job hands its slot directly to the best queued task, so
    a newly submitted job can never jump ahead of the queue.
    """

    def __init__(
        self,
        max_concurrent: int = 5,
        max_queue_size: int = 100,
        task_timeout_seconds: float = 30.0,
    ):
        if max_concurrent <= 0:
            raise ValueError(f"max_concurrent must be positive, got {max_concurrent}")
        self._max_concurrent = max_concurrent
        self._max_queue_size = max_queue_size
        self._task_timeout = task_timeout_seconds
        self._queue: list[tuple[int, int, PoolTask]] = []
        self._seq = itertools.count()
        self._running = 0
        self._completed = 0
        self._failed = 0
        self._total_execution_time = 0.0
        self._idle = asyncio.Event()
        self._idle.set()

    @classmethod
    def for_llm(cls) -> ConcurrencyPool:
        return cls(max_concurrent=5, max_queue_size=50, task_timeout_seconds=30.0)

    @classmethod
    def from_config(cls, config: PoolConfig) -> ConcurrencyPool:
        return cls(
            max_concurrent=config.max_concurrent,
            max_queue_size=config.max_queue_size,
            task_timeout_seconds=config.task_timeout_seconds,
        )

    @property
    def task_timeout_seconds(self) -> float:
        return self._task_timeout

    async def submit(
        self,
        fn: Callable[[], Awaitable[T]],
        priority: Priority = Priority.NORMAL,
        timeout: float | None = None,
    ) -> T:
        """Run ``fn`` once a slot is free.

        ``timeout`` of None uses the pool default; 0 disables the limit.
        """
        await self._acquire(Priority(priority))
        try:
            return await self._run(fn, self._task_timeout if timeout is None else timeout)
        finally:
            self._release()

    def stats(self) -> PoolStats:
        avg = self._total_execution_time / self._completed if self._completed else 0.0
        return PoolStats(
            pool_size=self._max_concurrent,
            running=self._running,
            queued=len(self._queue),
            completed=self._completed,
            failed=self._failed,
            avg_execution_time=avg,
        )

    def is_idle(self) -> bool:
        return self._running == 0 and not self._queue

    async def drain(self) -> None:
        """Wait until nothing is running or queued."""
        while not self.is_idle():
            self._idle.clear()
            await self._idle.wait()

    def clear_queue(self) -> int:
        """Reject every queued task with QueueFullError; running jobs continue."""
        cleared = 0
        while self._queue:
            _, _, task = heapq.heappop(self._queue)
            if not task.waiter.done():
                task.waiter.set_exception(QueueFullError("pool queue cleared"))
                cleared += 1
        logger.info("Pool queue cleared: %d tasks rejected", cleared)
        self._maybe_idle()
        return cleared

    def reset_stats(self) -> None:
        self._completed = 0
        self._failed = 0
        self._total_execution_time = 0.0

    # ------------------------------------------------------------------
    # Slot management
    # ------------------------------------------------------------------

    async def _acquire(self, priority: Priority) -> None:
        self._idle.clear()
        if self._running < self._max_concurrent and not self._queue:
            self._running += 1
            return
        if len(self._queue) >= self._max_queue_size:
            self._maybe_idle()
            raise QueueFullError(
                f"pool queue is full ({self._max_queue_size} tasks waiting)"
            )

        seq = next(self._seq)
        task = PoolTask(
            id=f"task-{seq}",
            priority=priority,
            enqueued_at=time.monotonic(),
            waiter=asyncio.get_running_loop().create_future(),
        )
        entry = (-int(priority), seq, task)
        heapq.heappush(self._queue, entry)
        logger.debug("Queued %s (priority=%s, depth=%d)", task.id, priority.name, len(self._queue))
        try:
            await task.waiter
        except asyncio.CancelledError:
            if task.waiter.done() and not task.waiter.cancelled():
                # Slot was handed over before the cancel landed.
                if task.waiter.exception() is None:
                    self._release()
            else:
                self._discard(entry)
            raise

    def _release(self) -> None:
        while self._queue:
            _, _, task = heapq.heappop(self._queue)
            if not task.waiter.done():
                task.waiter.set_result(None)
                return
        self._running -= 1
        self._maybe_idle()

    def _discard(self, entry: tuple[int, int, PoolTask]) -> None:
        try:
            self._queue.remove(entry)
        except ValueError:
            return
        heapq.heapify(self._queue)
        self._maybe_idle()

    def _maybe_idle(self) -> None:
        if self.is_idle():
            self._idle.set()

    async def _run(self, fn: Callable[[], Awaitable[T]], timeout: float) -> T:
        started = time.monotonic()
        try:
            if timeout and timeout > 0:
                try:
                    result = await asyncio.wait_for(fn(), timeout=timeout)
                except TimeoutError as e:
                    raise TransientError(f"Pool task timed out after {timeout:.1f}s") from e
            else:
                result = await fn()
        except BaseException:
            self._failed += 1
            raise
        self._completed += 1
        self._total_execution_time += time.monotonic() - started
        return result
