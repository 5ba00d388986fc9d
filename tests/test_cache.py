import pytest

from content_pipeline.cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TTLCache(10, clock=clock)
    cache.set("k", "v")
    clock.now = 9.9
    assert cache.get("k") == "v"
    clock.now = 10.0
    assert cache.get("k") is None

    stats = cache.stats()
    assert stats.hits == 1
    assert stats.misses == 1
    assert stats.evictions == 1
    assert stats.size == 0


def test_get_or_compute_only_computes_on_miss():
    cache = TTLCache(60)
    calls = []

    def compute():
        calls.append(1)
        return 42

    assert cache.get_or_compute("answer", compute) == 42
    assert cache.get_or_compute("answer", compute) == 42
    assert len(calls) == 1


def test_cached_none_is_returned_by_get_or_compute():
    cache = TTLCache(60)
    cache.set("k", None)
    assert cache.get_or_compute("k", lambda: "computed") is None


def test_purge_and_invalidate():
    clock = FakeClock()
    cache = TTLCache(5, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2, ttl_seconds=100)
    assert cache.invalidate("missing") is False
    clock.now = 6
    assert cache.purge_expired() == 1
    assert len(cache) == 1
    assert cache.invalidate("b") is True
    assert len(cache) == 0


def test_rejects_non_positive_ttl():
    with pytest.raises(ValueError):
        TTLCache(0)
