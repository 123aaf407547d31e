"""
Request coalescing cache for affiliate API reads.

Two jobs:
1. TTL cache of successful responses, keyed by operation + params
2. In-flight dedup: concurrent callers for the same key share one fetch

Usage:
    cache = RequestCoalescer()
    key = make_cache_key("actions", {"page": 1, "start": "2025-01-01"})
    page = await cache.get_or_fetch(key, TTLClass.EARNINGS, lambda: client._get(...))

Failures are never cached and never leave a stale in-flight entry behind.
"""
import asyncio
import hashlib
import json
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from app.config import settings

logger = logging.getLogger(__name__)


class TTLClass(str, Enum):
    EARNINGS = "earnings"
    ANALYTICS = "analytics"
    SALES = "sales"
    PERFORMANCE = "performance"
    DEFAULT = "default"


def ttl_seconds(ttl_class: TTLClass) -> int:
    return {
        TTLClass.EARNINGS: settings.CACHE_TTL_EARNINGS,
        TTLClass.ANALYTICS: settings.CACHE_TTL_ANALYTICS,
        TTLClass.SALES: settings.CACHE_TTL_SALES,
        TTLClass.PERFORMANCE: settings.CACHE_TTL_PERFORMANCE,
    }.get(ttl_class, settings.CACHE_TTL_DEFAULT)


def make_cache_key(operation: str, params: Optional[Dict[str, Any]] = None) -> str:
    """Stable key: operation prefix + md5 of the params with sorted keys."""
    payload = json.dumps(params or {}, sort_keys=True, default=str)
    digest = hashlib.md5(payload.encode("utf-8")).hexdigest()
    return f"{operation}:{digest}"


def _entry_size(value: Any) -> int:
    if hasattr(value, "model_dump_json"):
        return len(value.model_dump_json())
    try:
        return len(json.dumps(value, default=str))
    except (TypeError, ValueError):
        # Unserializable values are sized by repr
        return len(repr(value))


class RequestCoalescer:
    """In-memory TTL cache with in-flight request dedup."""

    def __init__(
        self,
        max_entries: Optional[int] = None,
        max_entry_bytes: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries or settings.CACHE_MAX_ENTRIES
        self.max_entry_bytes = max_entry_bytes or settings.CACHE_MAX_ENTRY_BYTES
        self._clock = clock
        # key -> (value, expires_at, stored_at)
        self._cache: Dict[str, Tuple[Any, float, float]] = {}
        self._in_flight: Dict[str, "asyncio.Future[Any]"] = {}
        self._hits = 0
        self._misses = 0
        self._coalesced = 0
        self._fetches = 0

    def get(self, key: str) -> Optional[Any]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        value, expires_at, _ = entry
        if expires_at > self._clock():
            return value
        del self._cache[key]
        return None

    def set(self, key: str, value: Any, ttl_class: TTLClass = TTLClass.DEFAULT) -> bool:
        size = _entry_size(value)
        if size > self.max_entry_bytes:
            logger.warning(f"Cache entry {key} too large ({size} bytes), not caching")
            return False
        if key not in self._cache and len(self._cache) >= self.max_entries:
            self._evict()
        now = self._clock()
        self._cache[key] = (value, now + ttl_seconds(ttl_class), now)
        return True

    def _evict(self) -> None:
        """Drop expired entries, then the oldest until there is room."""
        self.purge_expired()
        while self._cache and len(self._cache) >= self.max_entries:
            oldest = min(self._cache, key=lambda k: self._cache[k][2])
            del self._cache[oldest]

    async def get_or_fetch(
        self,
        key: str,
        ttl_class: TTLClass,
        fetch_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Return the cached value for key, join an in-flight fetch for key, or
        start a new fetch. Exactly one fetch_fn call per key at a time.
        """
        cached = self.get(key)
        if cached is not None:
            self._hits += 1
            return cached

        task = self._in_flight.get(key)
        if task is not None:
            self._coalesced += 1
            logger.debug(f"Joining in-flight request for {key}")
        else:
            self._misses += 1
            self._fetches += 1
            task = asyncio.ensure_future(self._fetch_and_store(key, ttl_class, fetch_fn))
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))

        # Shield so one cancelled caller does not cancel the shared fetch
        return await asyncio.shield(task)

    async def _fetch_and_store(
        self,
        key: str,
        ttl_class: TTLClass,
        fetch_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        value = await fetch_fn()
        if value is not None:
            self.set(key, value, ttl_class)
        return value

    def _release(self, key: str, task: "asyncio.Future[Any]") -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # Consume the exception so an unawaited shared failure is not logged as lost
        if not task.cancelled():
            task.exception()

    def invalidate(self, prefix: str = "") -> int:
        """Remove entries whose key starts with prefix. Returns count removed."""
        keys = [k for k in self._cache if k.startswith(prefix)]
        for key in keys:
            del self._cache[key]
        return len(keys)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at, _) in self._cache.items() if expires_at <= now]
        for key in expired:
            del self._cache[key]
        return len(expired)

    def clear(self) -> None:
        self._cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        lookups = self._hits + self._misses + self._coalesced
        return {
            "entries": len(self._cache),
            "in_flight": len(self._in_flight),
            "hits": self._hits,
            "misses": self._misses,
            "coalesced": self._coalesced,
            "fetches": self._fetches,
            "hit_rate": round(self._hits / lookups, 3) if lookups else 0.0,
            "max_entries": self.max_entries,
        }
