"""Response cache for idempotent LLM calls.

Entries are keyed by a fingerprint of the effective prompt (see
``cache_key``) and carry reuse metadata. Hits are counted here rather
than in the underlying LRU so ``hit_rate`` reflects caller-visible
lookups exactly.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from specpilot.cache.lru import LRUCache

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_PREFIX_CHARS = 500


@dataclass
class CacheMetadata:
    agent_type: str
    reuse_count: int = 0
    last_validated_at: float = field(default_factory=time.time)
    tags: tuple[str, ...] = ()
    cost_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "agent_type": self.agent_type,
            "reuse_count": self.reuse_count,
            "last_validated_at": self.last_validated_at,
            "tags": list(self.tags),
            "cost_seconds": self.cost_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict) -> CacheMetadata:
        return cls(
            agent_type=str(data.get("agent_type", "")),
            reuse_count=int(data.get("reuse_count", 0)),
            last_validated_at=float(data.get("last_validated_at") or time.time()),
            tags=tuple(data.get("tags") or ()),
            cost_seconds=float(data.get("cost_seconds", 0.0)),
        )


@dataclass
class CacheEntry:
    key: str
    value: Any
    metadata: CacheMetadata

    def to_dict(self) -> dict:
        return {"key": self.key, "value": self.value, "metadata": self.metadata.to_dict()}


def _sha1(payload: Any) -> str:
    text = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def history_fingerprint(history: Sequence[dict] | None) -> str | None:
    """Digest of role/content pairs; timestamps are ignored."""
    if not history:
        return None
    return _sha1([[m.get("role", ""), m.get("content", "")] for m in history])


def cache_key(
    agent_type: str,
    system_prompt: str,
    user_message: str,
    history: Sequence[dict] | None = None,
    prefix_chars: int = DEFAULT_PROMPT_PREFIX_CHARS,
) -> str:
    """Deterministic key for an LLM call.

    The system prompt is truncated to ``prefix_chars`` so calls that
    differ only beyond that point share an entry.
    """
    payload = {
        "agent": agent_type,
        "system": system_prompt[:prefix_chars],
        "user": user_message,
        "history": history_fingerprint(history),
    }
    return f"llm:{agent_type}:{_sha1(payload)}"


class ResponseCache:
    """LRU cache of LLM results with reuse metadata, warm-up and export."""

    def __init__(
        self,
        max_size: int = 500,
        default_ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self._store: LRUCache[CacheEntry] = LRUCache(
            max_size=max_size, default_ttl_seconds=default_ttl_seconds, clock=clock,
        )
        self._wall_clock = wall_clock
        self._hits = 0
        self._misses = 0
        self._time_saved = 0.0

    def __len__(self) -> int:
        return len(self._store)

    # ------------------------------------------------------------------
    # Lookup and storage
    # ------------------------------------------------------------------

    def get(self, key: str) -> CacheEntry | None:
        entry = self._store.get(key)
        if entry is None:
            self._misses += 1
            logger.debug("Cache miss %s", key[:50])
            return None
        self._hits += 1
        entry.metadata.reuse_count += 1
        entry.metadata.last_validated_at = self._wall_clock()
        self._time_saved += entry.metadata.cost_seconds
        logger.debug(
            "Cache hit %s (agent=%s, reuse=%d)",
            key[:50], entry.metadata.agent_type, entry.metadata.reuse_count,
        )
        return entry

    def set(
        self,
        key: str,
        value: Any,
        agent_type: str,
        tags: Iterable[str] = (),
        ttl_seconds: float | None = None,
        cost_seconds: float = 0.0,
    ) -> CacheEntry:
        entry = CacheEntry(
            key=key,
            value=value,
            metadata=CacheMetadata(
                agent_type=agent_type,
                last_validated_at=self._wall_clock(),
                tags=tuple(tags),
                cost_seconds=max(0.0, cost_seconds),
            ),
        )
        self._store.set(key, entry, ttl_seconds=ttl_seconds)
        return entry

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        agent_type: str,
        tags: Iterable[str] = (),
        ttl_seconds: float | None = None,
    ) -> Any:
        """Return the cached value, or await ``factory`` and cache its result.

        Factory failures propagate and nothing is cached.
        """
        entry = self.get(key)
        if entry is not None:
            return entry.value
        started = time.monotonic()
        value = await factory()
        self.set(
            key, value, agent_type,
            tags=tags, ttl_seconds=ttl_seconds, cost_seconds=time.monotonic() - started,
        )
        return value

    def delete(self, key: str) -> bool:
        return self._store.delete(key)

    def clear(self) -> None:
        self._store.clear()
        logger.info("Response cache cleared")

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate_by_agent(self, agent_type: str) -> int:
        doomed = [
            key for key, entry in self._store.items()
            if entry.metadata.agent_type == agent_type
        ]
        for key in doomed:
            self._store.delete(key)
        logger.info("Cache invalidated %d entries for agent %s", len(doomed), agent_type)
        return len(doomed)

    def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        wanted = set(tags)
        doomed = [
            key for key, entry in self._store.items()
            if wanted.intersection(entry.metadata.tags)
        ]
        for key in doomed:
            self._store.delete(key)
        logger.info("Cache invalidated %d entries for tags %s", len(doomed), sorted(wanted))
        return len(doomed)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        lru = self._store.stats()
        total = self._hits + self._misses
        return {
            "size": lru.size,
            "max_size": lru.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "total_requests": total,
            "hit_rate": self._hits / total if total else 0.0,
            "evictions": lru.evictions,
            "expirations": lru.expirations,
            "time_saved": self._time_saved,
            "avg_time_saved": self._time_saved / self._hits if self._hits else 0.0,
        }

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0
        self._time_saved = 0.0
        self._store.reset_stats()

    # ------------------------------------------------------------------
    # Warm-up and persistence
    # ------------------------------------------------------------------

    def warmup(self, items: Iterable[dict]) -> int:
        """Pre-seed entries. Each item: ``{key, value, agent_type, ttl?, tags?}``."""
        count = 0
        for item in items:
            self.set(
                item["key"],
                item["value"],
                item.get("agent_type", ""),
                tags=item.get("tags", ()),
                ttl_seconds=item.get("ttl"),
            )
            count += 1
        logger.info("Cache warmed up with %d entries", count)
        return count

    def export(self) -> list[dict]:
        """Serialize live entries, least recently used first."""
        return [entry.to_dict() for _, entry in self._store.items()]

    def import_entries(self, data: Iterable[dict]) -> int:
        """Load entries produced by ``export``; metadata is restored as-is."""
        count = 0
        for item in data:
            entry = CacheEntry(
                key=str(item["key"]),
                value=item.get("value"),
                metadata=CacheMetadata.from_dict(item.get("metadata") or {}),
            )
            self._store.set(entry.key, entry)
            count += 1
        logger.info("Cache imported %d entries", count)
        return count

    def export_json(self) -> str:
        return json.dumps(self.export(), ensure_ascii=False)

    def import_json(self, text: str) -> int:
        data = json.loads(text)
        if not isinstance(data, list):
            raise ValueError("cache export must be a JSON array")
        return self.import_entries(data)
