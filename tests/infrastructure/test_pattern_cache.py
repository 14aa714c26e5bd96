"""Tests for the LRU/age-bounded pattern cache."""

from __future__ import annotations

import pytest

from runtime_error_sage.domain.entities import ErrorPattern
from runtime_error_sage.infrastructure.pattern_cache import PatternCache


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _make_pattern(pattern_id: str = "p1", service: str = "svc") -> ErrorPattern:
    return ErrorPattern(service_name=service, error_type="ValueError", pattern_id=pattern_id)


class TestPatternCache:

    def test_hit_and_miss(self) -> None:
        cache = PatternCache()
        assert cache.get(("svc", "p1")) is None
        cache.put(_make_pattern())
        assert cache.get(("svc", "p1")) is not None
        assert cache.hits == 1
        assert cache.misses == 1

    def test_returns_private_copies(self) -> None:
        cache = PatternCache()
        pattern = _make_pattern()
        cache.put(pattern)
        pattern.occurrence_count = 99
        first = cache.get(("svc", "p1"))
        assert first is not None and first.occurrence_count == 1
        first.occurrence_count = 50
        assert cache.get(("svc", "p1")).occurrence_count == 1

    def test_lru_eviction(self) -> None:
        cache = PatternCache(max_size=2)
        cache.put(_make_pattern("a"))
        cache.put(_make_pattern("b"))
        cache.get(("svc", "a"))
        cache.put(_make_pattern("c"))
        assert ("svc", "a") in cache
        assert ("svc", "b") not in cache
        assert len(cache) == 2

    def test_entries_expire(self) -> None:
        clock = _Clock()
        cache = PatternCache(max_age=10.0, clock=clock)
        cache.put(_make_pattern())
        clock.now = 11.0
        assert cache.get(("svc", "p1")) is None
        assert len(cache) == 0

    def test_purge_expired(self) -> None:
        clock = _Clock()
        cache = PatternCache(max_age=10.0, clock=clock)
        cache.put(_make_pattern("old"))
        clock.now = 8.0
        cache.put(_make_pattern("new"))
        clock.now = 12.0
        assert cache.purge_expired() == 1
        assert ("svc", "new") in cache

    def test_zero_size_disables_caching(self) -> None:
        cache = PatternCache(max_size=0)
        cache.put(_make_pattern())
        assert len(cache) == 0

    def test_invalidate(self) -> None:
        cache = PatternCache()
        cache.put(_make_pattern())
        assert cache.invalidate(("svc", "p1"))
        assert not cache.invalidate(("svc", "p1"))

    def test_invalid_bounds(self) -> None:
        with pytest.raises(ValueError):
            PatternCache(max_size=-1)
        with pytest.raises(ValueError):
            PatternCache(max_age=0)
