"""Unit tests for the TTL cache."""

import pytest

from homiio.cache import TTLCache

pytestmark = pytest.mark.unit


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


def test_entries_expire_after_ttl(clock):
    cache = TTLCache(ttl=30, clock=clock)
    cache.set("folders", ["a"])

    clock.now = 29.9
    assert cache.get("folders") == ["a"]
    clock.now = 30.0
    assert cache.get("folders") is None
    assert len(cache) == 0


def test_least_recently_used_is_evicted(clock):
    cache = TTLCache(ttl=30, maxsize=2, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)

    assert "a" in cache
    assert "b" not in cache
    assert "c" in cache


def test_invalidate_by_prefix(clock):
    cache = TTLCache(clock=clock)
    cache.set("saved-properties", [])
    cache.set("folders", [])

    assert cache.invalidate("saved-") == 1
    assert "folders" in cache
    assert cache.invalidate() == 1
    assert len(cache) == 0


def test_falsy_values_are_cached(clock):
    cache = TTLCache(clock=clock)
    cache.set("empty", [])
    assert cache.get("empty", "missing") == []


def test_maxsize_must_be_positive():
    with pytest.raises(ValueError):
        TTLCache(maxsize=0)


def test_write_is_skipped_after_invalidation(clock):
    cache = TTLCache(ttl=30, clock=clock)
    generation = cache.generation
    cache.invalidate()

    assert cache.set("folders", ["stale"], generation=generation) is False
    assert "folders" not in cache
    assert cache.set("folders", ["fresh"], generation=cache.generation) is True
    assert cache.get("folders") == ["fresh"]
