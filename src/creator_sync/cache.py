"""Two-tier (volatile + durable) cache with lazy per-entry expiry."""
from __future__ import annotations

import json
import sqlite3
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog

from .errors import DurableWriteFailure

logger = structlog.get_logger(__name__)

KEY_PREFIX = "cache_"


@dataclass(frozen=True)
class CacheKey:
    platform: str
    username: str
    kind: str = "profile"

    def __str__(self) -> str:
        return f"{KEY_PREFIX}{self.platform}_{self.username}_{self.kind}"


@dataclass(frozen=True)
class CacheEntry:
    payload: Any
    written_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.written_at >= self.ttl

    def to_dict(self) -> dict[str, Any]:
        return {"payload": self.payload, "writtenAt": self.written_at, "ttl": self.ttl}

    @classmethod
    def from_dict(cls, data: Any) -> CacheEntry | None:
        try:
            return cls(payload=data["payload"], written_at=float(data["writtenAt"]), ttl=float(data["ttl"]))
        except (KeyError, TypeError, ValueError):
            return None


@runtime_checkable
class KeyValueStore(Protocol):
    """What a cache tier must provide. Values are JSON-serializable dicts."""

    def get(self, key: str) -> dict | None:
        ...

    def set(self, key: str, value: dict) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self) -> list[str]:
        ...


class MemoryStore:
    """In-process tier. Evicts the oldest entry beyond ``max_entries``."""

    def __init__(self, max_entries: int | None = None) -> None:
        self.max_entries = max_entries
        self._data: dict[str, dict] = {}

    def get(self, key: str) -> dict | None:
        return self._data.get(key)

    def set(self, key: str, value: dict) -> None:
        self._data.pop(key, None)
        self._data[key] = value
        if self.max_entries is not None:
            while len(self._data) > self.max_entries:
                oldest = next(iter(self._data))
                del self._data[oldest]
                logger.debug("cache.evicted", key=oldest)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)

    def __len__(self) -> int:
        return len(self._data)


class SQLiteStore:
    """Durable tier: one row per key, value stored as JSON text."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def _get_conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA busy_timeout=5000;")
            yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._get_conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_entries (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def get(self, key: str) -> dict | None:
        try:
            with self._get_conn() as conn:
                row = conn.execute("SELECT value FROM cache_entries WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            logger.warning("cache.durable_read_failed", key=key, error=str(e))
            return None
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("cache.durable_corrupt", key=key)
            return None

    def set(self, key: str, value: dict) -> None:
        try:
            text = json.dumps(value)
            with self._get_conn() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO cache_entries (key, value) VALUES (?, ?)",
                    (key, text),
                )
                conn.commit()
        except (sqlite3.Error, OSError, TypeError, ValueError) as e:
            raise DurableWriteFailure(key, e) from e

    def delete(self, key: str) -> None:
        with self._get_conn() as conn:
            conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            conn.commit()

    def keys(self) -> list[str]:
        with self._get_conn() as conn:
            return [row[0] for row in conn.execute("SELECT key FROM cache_entries")]


class TieredCache:
    """Read-through over a volatile and a durable ``KeyValueStore``.

    Reads try the volatile tier, then the durable tier (promoting valid hits).
    Writes go to both; a durable failure is logged and the write still counts.
    None of the methods suspend, so a lookup-and-promote is never interleaved
    with another task.
    """

    def __init__(
        self,
        volatile: KeyValueStore | None = None,
        durable: KeyValueStore | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.volatile = volatile if volatile is not None else MemoryStore()
        self.durable = durable if durable is not None else MemoryStore()
        self._clock = clock

    def get(self, key: CacheKey | str) -> Any | None:
        """Look up a live entry.

        Args:
            key: Cache key or its string form

        Returns:
            The stored payload, or None on a miss or an expired entry
        """
        key = str(key)
        now = self._clock()

        entry = CacheEntry.from_dict(self.volatile.get(key))
        if entry is not None:
            if not entry.expired(now):
                return entry.payload
            self.volatile.delete(key)

        entry = CacheEntry.from_dict(self.durable.get(key))
        if entry is None:
            return None
        if entry.expired(now):
            self._discard_durable(key)
            return None
        self.volatile.set(key, entry.to_dict())
        logger.debug("cache.promoted", key=key)
        return entry.payload

    def put(self, key: CacheKey | str, payload: Any, ttl: float) -> CacheEntry:
        """Write ``payload`` to both tiers.

        Args:
            key: Cache key or its string form
            payload: JSON-serializable value
            ttl: Seconds the entry stays valid; stored with the entry

        Returns:
            The entry that was written
        """
        key = str(key)
        entry = CacheEntry(payload=payload, written_at=self._clock(), ttl=ttl)
        self.volatile.set(key, entry.to_dict())
        try:
            self.durable.set(key, entry.to_dict())
        except DurableWriteFailure as e:
            logger.warning("cache.durable_write_failed", key=key, error=str(e.cause))
        return entry

    def invalidate(self, key: CacheKey | str) -> None:
        key = str(key)
        self.volatile.delete(key)
        self._discard_durable(key)

    def cleanup(self) -> int:
        """Drop expired entries from both tiers; return how many were removed."""
        now = self._clock()
        removed = 0
        for store in (self.volatile, self.durable):
            for key in store.keys():
                entry = CacheEntry.from_dict(store.get(key))
                if entry is None or entry.expired(now):
                    store.delete(key)
                    removed += 1
        if removed:
            logger.info("cache.cleanup", removed=removed)
        return removed

    @staticmethod
    def _clear_store(store: KeyValueStore) -> None:
        for key in store.keys():
            if key.startswith(KEY_PREFIX):
                store.delete(key)

    def clear(self) -> bool:
        """Remove every cached profile from both tiers, leaving foreign keys alone.

        Returns:
            False if the durable tier could not be cleared. The volatile tier
            is always cleared.
        """
        self._clear_store(self.volatile)
        try:
            self._clear_store(self.durable)
        except sqlite3.Error as e:
            logger.warning("cache.durable_clear_failed", error=str(e))
            return False
        logger.info("cache.cleared")
        return True

    @property
    def size(self) -> int:
        return len(self.volatile.keys())

    def _discard_durable(self, key: str) -> None:
        try:
            self.durable.delete(key)
        except sqlite3.Error as e:
            logger.warning("cache.durable_delete_failed", key=key, error=str(e))
