import pytest

from core.lru_cache import LRUCache, is_cache_valid


class TestIsCacheValid:
    def test_newer_cache_is_valid(self):
        assert is_cache_valid(200, 100)

    def test_equal_timestamps_are_valid(self):
        assert is_cache_valid(100, 100)

    def test_older_cache_is_stale(self):
        assert not is_cache_valid(99, 100)

    def test_missing_cache_timestamp_is_stale(self):
        assert not is_cache_valid(None, 100)

    def test_missing_source_timestamp_keeps_cache(self):
        assert is_cache_valid(100, None)


class TestLRUCache:
    def test_evicts_least_recently_used(self):
        cache = LRUCache(max_size=2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")  # touch a, b is now oldest

        evicted = cache.put("c", 3)

        assert evicted == "b"
        assert "a" in cache and "c" in cache
        assert len(cache) == 2

    def test_put_existing_key_refreshes_without_eviction(self):
        cache = LRUCache(max_size=2)
        cache.put("a", 1)
        cache.put("b", 2)
        assert cache.put("a", 10) is None
        assert cache.get("a") == 10
        assert cache.keys() == ["b", "a"]

    def test_hit_and_miss_counters(self):
        cache = LRUCache(max_size=4)
        cache.put("a", 1)
        cache.get("a")
        cache.get("missing")
        assert (cache.hits, cache.misses) == (1, 1)

    def test_get_default(self):
        assert LRUCache().get("nope", default=42) == 42

    def test_invalidate_by_predicate(self):
        cache = LRUCache()
        cache.put(("lib1", 1), "x")
        cache.put(("lib1", 2), "y")
        cache.put(("lib2", 1), "z")

        removed = cache.invalidate(lambda key: key[0] == "lib1")

        assert removed == 2
        assert cache.keys() == [("lib2", 1)]

    def test_clear(self):
        cache = LRUCache()
        cache.put("a", 1)
        cache.clear()
        assert len(cache) == 0

    def test_pop(self):
        cache = LRUCache()
        cache.put("a", 1)
        assert cache.pop("a") == 1
        assert cache.pop("a", "gone") == "gone"

    def test_non_positive_size_rejected(self):
        with pytest.raises(ValueError):
            LRUCache(max_size=0)
