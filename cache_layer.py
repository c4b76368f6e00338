from __future__ import annotations

import os
import threading
from typing import Any, Callable

from cachetools import TTLCache

# Key namespaces. Writers invalidate by prefix.
RBAC_PREFIX = "RBAC:"
ROLES_PREFIX = "ROLES:"
PIPELINE_PREFIX = "PIPELINE:"

_MISSING = object()


def make_cache_key(namespace: str, *parts: Any) -> str:
    ns = str(namespace or "").strip().upper().rstrip(":")
    tail = [str(p or "").strip() for p in parts]
    return ":".join([ns] + tail)


class _InMemoryTTLCache:
    """
    Thread-safe TTL cache. Unlike a plain dict lookup, a stored `None` is a
    hit, so "no rule configured" answers are cached too.
    """

    def __init__(self):
        ttl = int(os.getenv("CACHE_TTL_SECONDS", "60") or "60")
        max_items = int(os.getenv("CACHE_MAX_ITEMS", "10000") or "10000")
        ttl = max(1, min(3600, ttl))
        max_items = max(100, min(500_000, max_items))
        self._cache = TTLCache(maxsize=max_items, ttl=ttl)
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            val = self._cache.get(key, _MISSING)
            if val is _MISSING:
                self._misses += 1
                return default
            self._hits += 1
            return val

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._cache[key] = value

    def get_or_set(self, key: str, factory: Callable[[], Any]) -> Any:
        with self._lock:
            val = self._cache.get(key, _MISSING)
            if val is not _MISSING:
                self._hits += 1
                return val
            self._misses += 1
        # Compute outside the lock; the factory may hit the database.
        computed = factory()
        with self._lock:
            existing = self._cache.get(key, _MISSING)
            if existing is not _MISSING:
                return existing
            self._cache[key] = computed
        return computed

    def invalidate_prefix(self, prefix: str) -> int:
        pfx = str(prefix or "")
        if not pfx:
            return 0
        with self._lock:
            keys = [k for k in list(self._cache.keys()) if str(k).startswith(pfx)]
            for k in keys:
                self._cache.pop(k, None)
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            hit_rate = (self._hits / total * 100) if total > 0 else 0.0
            return {
                "size": len(self._cache),
                "maxsize": self._cache.maxsize,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(hit_rate, 2),
            }


_cache = _InMemoryTTLCache()


def cache_get(key: str, default: Any = None) -> Any:
    return _cache.get(key, default)


def cache_set(key: str, value: Any) -> None:
    _cache.set(key, value)


def cache_get_or_set(key: str, factory: Callable[[], Any]) -> Any:
    return _cache.get_or_set(key, factory)


def invalidate_rbac() -> None:
    _cache.invalidate_prefix(RBAC_PREFIX)
    _cache.invalidate_prefix(ROLES_PREFIX)


def invalidate_pipeline() -> None:
    _cache.invalidate_prefix(PIPELINE_PREFIX)


def cache_clear() -> None:
    _cache.clear()


def cache_stats() -> dict[str, Any]:
    """Returns cache stats: size, maxsize, hits, misses, hit_rate."""
    return _cache.stats()
