"""Tests for the in-memory TTL cache."""

from __future__ import annotations

import pytest

from voice_receptionist.services.cache import TTLCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


# ── Core operations ──────────────────────────────────────────────────


class TestTTLCacheBasics:
    def test_put_and_get(self):
        cache = TTLCache()
        cache.put("key1", {"name": "Alice"})
        assert cache.get("key1") == {"name": "Alice"}

    def test_get_returns_none_for_missing_key(self):
        cache = TTLCache()
        assert cache.get("nonexistent") is None

    def test_put_overwrites_existing_key(self):
        cache = TTLCache()
        cache.put("key1", "old")
        cache.put("key1", "new")
        assert cache.get("key1") == "new"
        assert cache.entry_count == 1

    def test_invalidate_removes_key(self):
        cache = TTLCache()
        cache.put("key1", "value")
        assert cache.invalidate("key1") is True
        assert cache.get("key1") is None

    def test_invalidate_returns_false_for_missing_key(self):
        cache = TTLCache()
        assert cache.invalidate("nonexistent") is False

    def test_clear_removes_all_entries(self):
        cache = TTLCache()
        cache.put("a", 1)
        cache.put("b", 2)
        cache.clear()
        assert cache.entry_count == 0

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            TTLCache(max_entries=0)


# ── Eviction ─────────────────────────────────────────────────────────


class TestTTLCacheEviction:
    def test_evicts_least_recently_used(self):
        cache = TTLCache(max_entries=2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")  # "b" is now least recently used
        cache.put("c", 3)
        assert cache.has("a")
        assert not cache.has("b")
        assert cache.has("c")

    def test_expired_entries_are_purged_before_lru(self):
        clock = FakeClock()
        cache = TTLCache(max_entries=2, ttl_seconds=10, clock=clock)
        cache.put("short", 1, ttl_seconds=1)
        cache.put("long", 2)
        clock.now += 5
        cache.put("new", 3)
        assert not cache.has("short")
        assert cache.get("long") == 2
        assert cache.get("new") == 3


# ── Expiry ───────────────────────────────────────────────────────────


class TestTTLCacheExpiry:
    def test_entry_expires_after_ttl(self):
        clock = FakeClock()
        cache = TTLCache(ttl_seconds=60, clock=clock)
        cache.put("k", "v")
        clock.now += 59
        assert cache.get("k") == "v"
        clock.now += 1
        assert cache.get("k") is None
        assert cache.entry_count == 0

    def test_per_put_ttl_overrides_default(self):
        clock = FakeClock()
        cache = TTLCache(ttl_seconds=60, clock=clock)
        cache.put("k", "v", ttl_seconds=600)
        clock.now += 300
        assert cache.get("k") == "v"

    def test_none_ttl_never_expires(self):
        clock = FakeClock()
        cache = TTLCache(ttl_seconds=None, clock=clock)
        cache.put("k", "v")
        clock.now += 10**9
        assert cache.get("k") == "v"

    def test_has_does_not_promote(self):
        cache = TTLCache(max_entries=2)
        cache.put("a", 1)
        cache.put("b", 2)
        assert cache.has("a")
        cache.put("c", 3)
        assert not cache.has("a")
