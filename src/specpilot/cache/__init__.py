"""Caching of LLM responses."""

from specpilot.cache.lru import CacheStats, LRUCache
from specpilot.cache.response_cache import (
    CacheEntry,
    CacheMetadata,
    ResponseCache,
    cache_key,
    history_fingerprint,
)

__all__ = [
    "CacheEntry",
    "CacheMetadata",
    "CacheStats",
    "LRUCache",
    "ResponseCache",
    "cache_key",
    "history_fingerprint",
]
