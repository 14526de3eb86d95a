"""Tests for ExpiringCache (per-run and TTL caches)."""

from attribution_engine.services.ttl_cache import ExpiringCache
from conftest import FakeClock


def test_entries_without_ttl_never_expire():
    clock = FakeClock()
    cache = ExpiringCache(clock=clock)
    cache.set("k", 1)
    clock.advance(10_000)
    assert cache.get("k") == 1


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = ExpiringCache(ttl_seconds=30, clock=clock)
    cache.set("k", "v")

    clock.advance(30)
    assert cache.get("k") == "v"

    clock.advance(1)
    assert cache.get("k", "gone") == "gone"
    assert len(cache) == 0


def test_cached_none_is_a_hit():
    cache = ExpiringCache()
    calls = []

    def compute():
        calls.append(1)
        return None

    assert cache.get_or_compute("k", compute) is None
    assert cache.get_or_compute("k", compute) is None
    assert len(calls) == 1
    assert cache.hits == 1
    assert cache.misses == 1


def test_invalidate_one_key_or_all():
    cache = ExpiringCache()
    cache.set("a", 1)
    cache.set("b", 2)

    cache.invalidate("a")
    assert cache.get("a") is None
    assert cache.get("b") == 2

    cache.invalidate()
    assert len(cache) == 0
