"""
TTL store tests
"""

from caching.simple_cache import SimpleCache


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestSimpleCache:

    def test_entries_expire(self):
        """TEST 1: values disappear once their TTL passes"""
        clock = FakeClock()
        cache = SimpleCache(default_ttl=60, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2, ttl=10)

        clock.now = 30
        assert cache.get("a") == 1, "❌ 'a' should still be alive"
        assert cache.get("b") is None, "❌ 'b' should have expired"
        assert cache.get_stats()["evictions"] == 1, "❌ One eviction expected"

    def test_counter_expiry_is_not_extended(self):
        """TEST 2: increments keep the original expiry"""
        clock = FakeClock()
        cache = SimpleCache(clock=clock)
        assert cache.increment("fraud:1", ttl=100) == 1
        clock.now = 90
        assert cache.increment("fraud:1", ttl=100) == 2, "❌ Counter should accumulate"
        assert cache.ttl_remaining("fraud:1") == 10, "❌ Expiry must not be reset by increments"

        clock.now = 101
        assert not cache.exists("fraud:1"), "❌ Counter should expire"
        assert cache.increment("fraud:1", ttl=100) == 1, "❌ Expired counter restarts at 1"

    def test_explicit_eviction_and_delete(self):
        """TEST 3: evict_expired reports the count"""
        clock = FakeClock()
        cache = SimpleCache(default_ttl=5, clock=clock)
        for key in ("x", "y", "z"):
            cache.set(key, key)
        assert cache.delete("z"), "❌ Delete should report success"
        assert not cache.delete("z"), "❌ Second delete finds nothing"

        clock.now = 6
        assert cache.evict_expired() == 2, "❌ Two expired entries expected"
        assert cache.get_stats()["cache_size"] == 0, "❌ Cache should be empty"
