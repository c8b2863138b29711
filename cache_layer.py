"""
Process-local TTL cache.

Holds RBAC lookups (roles index, permission rules, per-role permission lists) so that
`assert_permission` does not hit the database on every RPC call. Each worker process
has its own cache; entries expire after CACHE_TTL_SECONDS, and writes to roles or
permissions call `invalidate_rbac()`.
"""
from __future__ import annotations

import os
import threading
from typing import Any

from cachetools import TTLCache


RBAC_PREFIX = "RBAC:"


class _LocalTTLCache:
    def __init__(self):
        ttl = int(os.getenv("CACHE_TTL_SECONDS", "60") or "60")
        max_items = int(os.getenv("CACHE_MAX_ITEMS", "5000") or "5000")
        ttl = max(1, min(3600, ttl))
        max_items = max(100, min(100_000, max_items))
        self._cache = TTLCache(maxsize=max_items, ttl=ttl)
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Any:
        with self._lock:
            val = self._cache.get(key)
            if val is None:
                self._misses += 1
            else:
                self._hits += 1
            return val

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._cache[key] = value

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
            return {
                "size": len(self._cache),
                "maxsize": self._cache.maxsize,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total * 100, 2) if total else 0.0,
            }


_cache = _LocalTTLCache()


def cache_get(key: str) -> Any:
    return _cache.get(key)


def cache_set(key: str, value: Any) -> None:
    _cache.set(key, value)


def invalidate_rbac() -> int:
    return _cache.invalidate_prefix(RBAC_PREFIX)


def cache_clear() -> None:
    _cache.clear()


def cache_stats() -> dict[str, Any]:
    return _cache.stats()
