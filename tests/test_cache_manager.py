from cache_manager import CacheManager


def test_memory_cache_set_get_delete():
    cache = CacheManager(use_redis=False)
    assert cache.get("missing") is None
    cache.set("k", {"a": 1})
    assert cache.get("k") == {"a": 1}
    assert cache.delete("k")
    assert cache.get("k") is None


def test_entries_expire():
    cache = CacheManager(use_redis=False)
    cache.set("k", "v", ttl_seconds=1)
    cache.memory_cache["k"] = ("v", cache.memory_cache["k"][1].replace(year=2000))
    assert cache.get("k") is None


def test_invalidate_pattern_uses_prefix():
    cache = CacheManager(use_redis=False)
    cache.set("analytics:a", 1)
    cache.set("analytics:b", 2)
    cache.set("summary:book:1", 3)
    assert cache.invalidate_pattern("analytics:*") == 2
    assert cache.get("summary:book:1") == 3


def test_stats_track_hits_and_misses():
    cache = CacheManager(use_redis=False)
    cache.set("k", 1)
    cache.get("k")
    cache.get("nope")
    stats = cache.get_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["redis_available"] is False
    assert stats["hit_ratio"] == 0.5


class FakeRedis:
    """Minimal in-process stand-in for a shared Redis server."""

    def __init__(self, store):
        self.store = store

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value

    def delete(self, *keys):
        return sum(1 for k in keys if self.store.pop(k, None) is not None)

    def keys(self, pattern):
        prefix = pattern.replace('*', '')
        return [k for k in self.store if k.startswith(prefix)]


def test_invalidation_from_another_process_is_seen():
    shared = {}
    api_cache = CacheManager(use_redis=False)
    cli_cache = CacheManager(use_redis=False)
    api_cache.redis_client = FakeRedis(shared)
    cli_cache.redis_client = FakeRedis(shared)

    api_cache.set("analytics:db", {"borrows": 1})
    assert api_cache.get("analytics:db") == {"borrows": 1}
    assert api_cache.memory_cache == {}

    cli_cache.invalidate_pattern("analytics:*")
    assert api_cache.get("analytics:db") is None


def test_memory_store_serves_when_redis_fails():
    import redis

    class BrokenRedis(FakeRedis):
        def get(self, key):
            raise redis.ConnectionError("down")

        def setex(self, key, ttl, value):
            raise redis.ConnectionError("down")

    cache = CacheManager(use_redis=False)
    cache.redis_client = BrokenRedis({})
    cache.set("k", "v")
    assert cache.get("k") == "v"
    assert cache.get_stats()["memory_hits"] == 1
