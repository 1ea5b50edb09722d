"""
TTL cache and rate limiter - Unit Tests
"""

import asyncio

import pytest

from core.ttl_cache import RateLimiter, TTLCache

pytestmark = [pytest.mark.unit]


class ManualClock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture
def mclock():
    return ManualClock()


@pytest.fixture
def cache(mclock):
    return TTLCache(default_ttl=60, clock=mclock)


class TestTTLCache:

    def test_get_before_expiry(self, cache, mclock):
        cache.set("a", 1)
        mclock.advance(59)
        assert cache.get("a") == 1

    def test_entry_expires(self, cache, mclock):
        cache.set("a", 1, ttl=10)
        mclock.advance(10)
        assert cache.get("a") is None
        assert "a" not in cache

    def test_sweep_removes_only_expired(self, cache, mclock):
        cache.set("short", 1, ttl=5)
        cache.set("long", 2, ttl=500)
        mclock.advance(6)
        assert cache.sweep() == 1
        assert len(cache) == 1
        assert cache.get("long") == 2

    def test_delete_prefix(self, cache):
        cache.set("order:1", "a")
        cache.set("order:2", "b")
        cache.set("rate:x", 1)
        assert cache.delete_prefix("order:") == 2
        assert len(cache) == 1

    def test_stats_count_hits_and_misses(self, cache):
        cache.set("a", 1)
        cache.get("a")
        cache.get("missing")
        assert cache.stats() == {"keys": 1, "hits": 1, "misses": 1}

    @pytest.mark.asyncio
    async def test_background_sweeper(self, mclock):
        cache = TTLCache(default_ttl=1, clock=mclock)
        cache.set("a", 1)
        mclock.advance(5)
        cache.start_sweeper(interval=0.01)
        await asyncio.sleep(0.05)
        await cache.stop_sweeper()
        assert len(cache) == 0


class TestRateLimiter:

    def test_blocks_after_limit(self, cache):
        limiter = RateLimiter(cache, limit=5, window_seconds=900, prefix="payment")
        decisions = [limiter.hit("10.0.0.1") for _ in range(6)]
        assert [d.allowed for d in decisions] == [True] * 5 + [False]
        assert decisions[4].remaining == 0

    def test_clients_are_counted_separately(self, cache):
        limiter = RateLimiter(cache, limit=1, window_seconds=60)
        assert limiter.hit("a").allowed
        assert limiter.hit("b").allowed
        assert not limiter.hit("a").allowed

    def test_window_does_not_slide_on_hits(self, cache, mclock):
        limiter = RateLimiter(cache, limit=2, window_seconds=100)
        limiter.hit("ip")
        mclock.advance(60)
        limiter.hit("ip")
        assert not limiter.hit("ip").allowed
        mclock.advance(41)
        assert limiter.hit("ip").allowed

    def test_reset_after_window(self, cache, mclock):
        limiter = RateLimiter(cache, limit=10, window_seconds=3600, prefix="refund")
        for _ in range(10):
            limiter.hit("ip")
        assert not limiter.hit("ip").allowed
        mclock.advance(3600)
        decision = limiter.hit("ip")
        assert decision.allowed
        assert decision.remaining == 9

    def test_limit_must_be_positive(self, cache):
        with pytest.raises(ValueError):
            RateLimiter(cache, limit=0, window_seconds=60)
