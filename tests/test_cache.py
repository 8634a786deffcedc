"""Tests for the two-tier cache."""
from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from creator_sync.cache import CacheEntry, CacheKey, MemoryStore, SQLiteStore, TieredCache
from creator_sync.errors import DurableWriteFailure

KEY = CacheKey("instagram", "jane.doe", "profile")


class BrokenStore(MemoryStore):
    """Durable tier that refuses every write."""

    def set(self, key: str, value: dict) -> None:
        raise DurableWriteFailure(key, OSError("disk full"))


class LockedStore(MemoryStore):
    """Durable tier whose database cannot be read."""

    def keys(self) -> list[str]:
        raise sqlite3.OperationalError("database is locked")


class TestCacheKey:
    def test_string_form(self):
        assert str(KEY) == "cache_instagram_jane.doe_profile"

    def test_default_kind(self):
        assert str(CacheKey("tiktok", "jane")) == "cache_tiktok_jane_profile"


class TestCacheEntry:
    def test_expiry_boundary(self):
        entry = CacheEntry(payload={}, written_at=100.0, ttl=10.0)
        assert not entry.expired(109.9)
        assert entry.expired(110.0)

    def test_from_dict_rejects_corrupt_entries(self):
        assert CacheEntry.from_dict(None) is None
        assert CacheEntry.from_dict({"payload": 1}) is None
        assert CacheEntry.from_dict({"payload": 1, "writtenAt": "soon", "ttl": 5}) is None


class TestTieredCache:
    """Tests for read-through, expiry and durable failures."""

    def test_put_then_get_within_ttl(self, clock):
        cache = TieredCache(clock=clock)
        cache.put(KEY, {"follower_count": 46200}, ttl=3600)
        clock.advance(3599)
        assert cache.get(KEY) == {"follower_count": 46200}

    def test_get_after_ttl_is_miss(self, clock):
        cache = TieredCache(clock=clock)
        cache.put(KEY, {"follower_count": 46200}, ttl=3600)
        clock.advance(3600)
        assert cache.get(KEY) is None
        assert cache.durable.get(str(KEY)) is None

    def test_durable_hit_is_promoted(self, clock):
        durable = MemoryStore()
        TieredCache(durable=durable, clock=clock).put(KEY, {"n": 1}, ttl=60)

        fresh = TieredCache(durable=durable, clock=clock)
        assert fresh.volatile.get(str(KEY)) is None
        assert fresh.get(KEY) == {"n": 1}
        assert fresh.volatile.get(str(KEY)) is not None

    def test_durable_write_failure_still_caches_in_memory(self, clock):
        cache = TieredCache(durable=BrokenStore(), clock=clock)
        cache.put(KEY, {"n": 1}, ttl=60)
        assert cache.get(KEY) == {"n": 1}

    def test_invalidate(self, clock):
        cache = TieredCache(clock=clock)
        cache.put(KEY, {"n": 1}, ttl=60)
        cache.invalidate(KEY)
        assert cache.get(KEY) is None

    def test_cleanup_removes_expired_entries(self, clock):
        cache = TieredCache(clock=clock)
        cache.put(KEY, {"n": 1}, ttl=60)
        cache.put(CacheKey("tiktok", "jane.doe"), {"n": 2}, ttl=600)
        clock.advance(120)
        # one expired entry in each tier
        assert cache.cleanup() == 2
        assert cache.get(CacheKey("tiktok", "jane.doe")) == {"n": 2}

    def test_clear_only_touches_cache_keys(self, clock):
        durable = MemoryStore()
        durable.set("settings", {"keep": True})
        cache = TieredCache(durable=durable, clock=clock)
        cache.put(KEY, {"n": 1}, ttl=60)
        cache.clear()
        assert cache.get(KEY) is None
        assert durable.get("settings") == {"keep": True}
        assert cache.size == 0

    def test_clear_survives_durable_failure(self, clock):
        cache = TieredCache(durable=LockedStore(), clock=clock)
        cache.put(KEY, {"n": 1}, ttl=60)
        assert cache.clear() is False
        assert cache.size == 0

    def test_clear_reports_success(self, clock):
        cache = TieredCache(clock=clock)
        cache.put(KEY, {"n": 1}, ttl=60)
        assert cache.clear() is True


class TestMemoryStore:
    def test_evicts_oldest_beyond_capacity(self):
        store = MemoryStore(max_entries=2)
        store.set("a", {})
        store.set("b", {})
        store.set("c", {})
        assert store.keys() == ["b", "c"]

    def test_rewrite_refreshes_position(self):
        store = MemoryStore(max_entries=2)
        store.set("a", {})
        store.set("b", {})
        store.set("a", {"v": 2})
        store.set("c", {})
        assert store.keys() == ["a", "c"]


class TestSQLiteStore:
    """Tests for the durable tier."""

    def test_survives_reopen(self, tmp_path: Path):
        db = tmp_path / "cache" / "cache.db"
        SQLiteStore(db).set("cache_instagram_jane_profile", {"payload": 1, "writtenAt": 0, "ttl": 5})
        reopened = SQLiteStore(db)
        assert reopened.get("cache_instagram_jane_profile") == {"payload": 1, "writtenAt": 0, "ttl": 5}
        assert reopened.keys() == ["cache_instagram_jane_profile"]

    def test_delete_and_missing(self, tmp_path: Path):
        store = SQLiteStore(tmp_path / "cache.db")
        store.set("k", {"v": 1})
        store.delete("k")
        assert store.get("k") is None

    def test_unserializable_value_raises_durable_write_failure(self, tmp_path: Path):
        store = SQLiteStore(tmp_path / "cache.db")
        with pytest.raises(DurableWriteFailure) as exc_info:
            store.set("k", {"v": object()})
        assert exc_info.value.key == "k"

    def test_tiered_cache_over_sqlite(self, tmp_path: Path, clock):
        db = tmp_path / "cache.db"
        TieredCache(durable=SQLiteStore(db), clock=clock).put(KEY, {"n": 7}, ttl=60)
        assert TieredCache(durable=SQLiteStore(db), clock=clock).get(KEY) == {"n": 7}

    def test_not_a_database(self, tmp_path: Path):
        db = tmp_path / "cache.db"
        db.write_text("this file is not a SQLite database\n" * 200)
        with pytest.raises(sqlite3.DatabaseError):
            SQLiteStore(db)
