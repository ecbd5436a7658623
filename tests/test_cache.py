"""Tests for the TTL cache."""

import pytest

from voice_director.cache import TTLCache, make_key


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_get_set():
    cache = TTLCache(max_entries=4, ttl_s=10)
    cache.set("a", 1)
    assert cache.get("a") == 1
    assert cache.get("missing") is None


def test_expired_entry_evicted_on_read():
    clock = FakeClock()
    cache = TTLCache(max_entries=4, ttl_s=10, clock=clock)
    cache.set("a", 1)
    clock.now = 9.9
    assert cache.get("a") == 1
    clock.now = 10.0
    assert cache.get("a") is None
    assert len(cache) == 0


def test_oldest_evicted_at_capacity():
    cache = TTLCache(max_entries=2, ttl_s=100)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("a", 3)  # refresh moves "a" to newest
    cache.set("c", 4)
    assert cache.get("b") is None
    assert cache.get("a") == 3
    assert cache.get("c") == 4


def test_clear():
    cache = TTLCache()
    cache.set("a", 1)
    cache.clear()
    assert len(cache) == 0


def test_invalid_capacity():
    with pytest.raises(ValueError):
        TTLCache(max_entries=0)


def test_make_key_is_stable():
    assert make_key("m", {"b": 1, "a": 2}) == make_key("m", {"a": 2, "b": 1})
    assert make_key("m", 1) != make_key("m", 2)
