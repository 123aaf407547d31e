"""Tests for the TTL cache and in-flight request coalescing."""
import asyncio

import pytest

from app.core.exceptions import NetworkError
from app.services.request_cache import RequestCoalescer, TTLClass, make_cache_key


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestRequestCoalescer:

    async def test_concurrent_callers_share_one_fetch(self):
        cache = RequestCoalescer()
        calls = []

        async def fetch():
            calls.append(1)
            await asyncio.sleep(0.01)
            return {"Actions": []}

        key = make_cache_key("actions", {"Page": 1})
        results = await asyncio.gather(
            *(cache.get_or_fetch(key, TTLClass.EARNINGS, fetch) for _ in range(5))
        )

        assert len(calls) == 1
        assert all(r == {"Actions": []} for r in results)
        stats = cache.get_stats()
        assert stats["fetches"] == 1
        assert stats["coalesced"] == 4
        assert stats["in_flight"] == 0

    async def test_result_is_cached(self):
        cache = RequestCoalescer()
        calls = []

        async def fetch():
            calls.append(1)
            return [1, 2, 3]

        await cache.get_or_fetch("k", TTLClass.SALES, fetch)
        assert await cache.get_or_fetch("k", TTLClass.SALES, fetch) == [1, 2, 3]
        assert len(calls) == 1
        assert cache.get_stats()["hits"] == 1

    async def test_failures_are_not_cached(self):
        cache = RequestCoalescer()
        calls = []

        async def fetch():
            calls.append(1)
            if len(calls) == 1:
                raise NetworkError("boom")
            return "ok"

        with pytest.raises(NetworkError):
            await cache.get_or_fetch("k", TTLClass.DEFAULT, fetch)
        assert cache.get_stats()["in_flight"] == 0

        assert await cache.get_or_fetch("k", TTLClass.DEFAULT, fetch) == "ok"
        assert len(calls) == 2

    async def test_shared_failure_reaches_every_waiter(self):
        cache = RequestCoalescer()

        async def fetch():
            await asyncio.sleep(0.01)
            raise NetworkError("down")

        results = await asyncio.gather(
            *(cache.get_or_fetch("k", TTLClass.DEFAULT, fetch) for _ in range(3)),
            return_exceptions=True,
        )
        assert all(isinstance(r, NetworkError) for r in results)
        assert cache.get_stats()["fetches"] == 1

    def test_entries_expire_by_ttl_class(self):
        clock = FakeClock()
        cache = RequestCoalescer(clock=clock)
        cache.set("sales", "value", TTLClass.SALES)
        clock.now = 179
        assert cache.get("sales") == "value"
        clock.now = 181
        assert cache.get("sales") is None

    def test_oversized_entries_are_not_cached(self):
        cache = RequestCoalescer(max_entry_bytes=10)
        assert cache.set("big", "x" * 100) is False
        assert cache.get("big") is None

    def test_oldest_entry_evicted_at_capacity(self):
        clock = FakeClock()
        cache = RequestCoalescer(max_entries=2, clock=clock)
        cache.set("a", 1)
        clock.now = 1
        cache.set("b", 2)
        clock.now = 2
        cache.set("c", 3)
        assert cache.get("a") is None
        assert cache.get("b") == 2
        assert cache.get("c") == 3

    def test_invalidate_by_prefix(self):
        cache = RequestCoalescer()
        cache.set("actions:1", 1)
        cache.set("actions:2", 2)
        cache.set("report:1", 3)
        assert cache.invalidate("actions:") == 2
        assert cache.get("report:1") == 3

    def test_cache_key_ignores_param_order(self):
        first = make_cache_key("actions", {"Page": 1, "PageSize": 100})
        second = make_cache_key("actions", {"PageSize": 100, "Page": 1})
        assert first == second
        assert first.startswith("actions:")
        assert first != make_cache_key("actions", {"Page": 2, "PageSize": 100})
