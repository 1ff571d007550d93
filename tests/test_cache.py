import pytest

from core.cache import TTLCache


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_entries_expire():
    clock = Clock()
    cache = TTLCache(max_size=4, ttl=10, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2, ttl=30)

    clock.now += 11
    assert cache.get("a") is None
    assert cache.get("b") == 2

    clock.now += 30
    assert cache.cleanup() == 1
    assert len(cache) == 0


def test_least_recently_used_entry_is_evicted():
    cache = TTLCache(max_size=2, ttl=60, clock=Clock())
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)

    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3


def test_delete_and_clear():
    cache = TTLCache(max_size=2, clock=Clock())
    cache.set("a", 1)
    assert cache.delete("a") is True
    assert cache.delete("a") is False
    cache.set("b", 2)
    cache.clear()
    assert len(cache) == 0


def test_invalid_size():
    with pytest.raises(ValueError):
        TTLCache(max_size=0)
