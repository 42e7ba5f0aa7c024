"""Capacity-bounded LRU map with per-entry TTL and hit accounting."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass
class CacheStats:
    size: int = 0
    max_size: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> dict:
        return {
            "size": self.size,
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hit_rate,
            "evictions": self.evictions,
            "expirations": self.expirations,
        }


@dataclass
class _Slot(Generic[V]):
    value: V
    expires_at: float | None


class LRUCache(Generic[V]):
    """Least-recently-used cache. A TTL of 0 means the entry never expires.

    Expired entries are purged lazily on access and by ``purge_expired``;
    there is no background sweeper.
    """

    def __init__(
        self,
        max_size: int = 200,
        default_ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self._max_size = max_size
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._data: OrderedDict[str, _Slot[V]] = OrderedDict()
        self._stats = CacheStats(max_size=max_size)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: str) -> bool:
        return self.peek(key) is not None

    def get(self, key: str) -> V | None:
        """Return the value and mark it most recently used, or None on miss."""
        slot = self._live_slot(key)
        if slot is None:
            self._stats.misses += 1
            return None
        self._data.move_to_end(key)
        self._stats.hits += 1
        return slot.value

    def peek(self, key: str) -> V | None:
        """Read without touching recency or hit statistics."""
        slot = self._live_slot(key)
        return slot.value if slot is not None else None

    def set(self, key: str, value: V, ttl_seconds: float | None = None) -> None:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        expires_at = self._clock() + ttl if ttl and ttl > 0 else None
        if key in self._data:
            self._data.move_to_end(key)
        elif len(self._data) >= self._max_size:
            evicted, _ = self._data.popitem(last=False)
            self._stats.evictions += 1
            logger.debug("LRU evicted %s", evicted[:50])
        self._data[key] = _Slot(value=value, expires_at=expires_at)

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def clear(self) -> None:
        self._data.clear()

    def keys(self) -> list[str]:
        """Live keys, least recently used first."""
        self.purge_expired()
        return list(self._data)

    def items(self) -> list[tuple[str, V]]:
        self.purge_expired()
        return [(key, slot.value) for key, slot in self._data.items()]

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [
            key for key, slot in self._data.items()
            if slot.expires_at is not None and slot.expires_at <= now
        ]
        for key in expired:
            del self._data[key]
        self._stats.expirations += len(expired)
        return len(expired)

    def stats(self) -> CacheStats:
        self._stats.size = len(self._data)
        return CacheStats(**vars(self._stats))

    def reset_stats(self) -> None:
        self._stats = CacheStats(max_size=self._max_size)

    def _live_slot(self, key: str) -> _Slot[V] | None:
        slot = self._data.get(key)
        if slot is None:
            return None
        if slot.expires_at is not None and slot.expires_at <= self._clock():
            del self._data[key]
            self._stats.expirations += 1
            return None
        return slot
