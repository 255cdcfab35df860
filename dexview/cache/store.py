"""
Local key-value persistence with expiry.

The store is best-effort: every failure is logged and absorbed so callers
degrade to fetching from the network instead of crashing.
"""
import sqlite3
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

from dexview.errors import CacheReadError, CacheWriteError
from .core import CacheEntry, DEFAULT_TTL_SECONDS

logger = logging.getLogger("cache.store")


SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class KeyValueBackend(Protocol):
    """String key-value storage used by the TTL store."""

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def clear(self) -> None: ...


class SQLiteBackend:
    """
    SQLite-backed key-value storage.

    Uses a connection per operation so it can be shared across threads.
    Each value is written with a single INSERT OR REPLACE, so readers never
    see a partially written entry.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def get_item(self, key: str) -> Optional[str]:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT value FROM cache_entries WHERE key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as e:
            raise CacheReadError(str(e)) from e
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        now = datetime.utcnow().isoformat() + "Z"
        try:
            with self._get_connection() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO cache_entries (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, value, now),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise CacheWriteError(str(e)) from e

    def remove_item(self, key: str) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                conn.commit()
        except sqlite3.Error as e:
            raise CacheWriteError(str(e)) from e

    def clear(self) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM cache_entries")
                conn.commit()
        except sqlite3.Error as e:
            raise CacheWriteError(str(e)) from e


class MemoryBackend:
    """In-process key-value storage."""

    def __init__(self):
        self._items: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def _is_storage_full(error: Exception) -> bool:
    return "database or disk is full" in str(error)


class TTLStore:
    """
    Key-value cache whose entries expire after a fixed TTL.

    - put() never raises: write failures are logged and swallowed
    - get() never raises: unreadable or expired entries read as absent
    - expired entries are deleted on read (best effort)
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._stats_lock = threading.Lock()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "expired": 0,
            "write_failures": 0,
            "read_failures": 0,
        }

    def _bump(self, name: str) -> None:
        with self._stats_lock:
            self._stats[name] += 1

    def put(self, key: str, value: Any) -> None:
        """Store value under key, stamped with the current time."""
        entry = CacheEntry(stored_at=self._clock(), payload=value)
        try:
            self._backend.set_item(key, entry.to_json())
        except Exception as e:
            self._bump("write_failures")
            if _is_storage_full(e):
                logger.warning(f"Cache full, entry not saved: {key}")
            else:
                logger.error(f"Failed to write cache entry {key}: {e}")

    def get(self, key: str) -> Optional[Any]:
        """Return the live payload for key, or None."""
        try:
            raw = self._backend.get_item(key)
            if raw is None:
                self._bump("misses")
                return None
            entry = CacheEntry.from_json(raw)
        except Exception as e:
            self._bump("read_failures")
            logger.warning(f"Failed to read cache entry {key}: {e}")
            return None

        if not entry.is_live(self.ttl_seconds, self._clock()):
            self._bump("expired")
            logger.debug(f"Cache expired for {key}")
            try:
                self._backend.remove_item(key)
            except Exception as e:
                logger.debug(f"Could not remove expired entry {key}: {e}")
            return None

        self._bump("hits")
        return entry.payload

    def clear(self) -> None:
        """Wipe every entry."""
        try:
            self._backend.clear()
            logger.info("Cache cleared")
        except Exception as e:
            logger.error(f"Failed to clear cache: {e}")

    def stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._stats)
