"""
SQLite-backed persistent cache for place lists and per-place opening hours.

Every value is stored as a JSON envelope ``{"data": ..., "timestamp": ...}``
under a namespaced key. Storage problems never escape this module: reads
degrade to a miss and writes to a no-op, so callers simply fetch fresh data.
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

PLACES_PREFIX = "osm_cache_"
HOURS_PREFIX = "osm_hours_"

DEFAULT_TTL_SECONDS = 24 * 3600


class PersistentCacheStore:
    def __init__(
        self,
        db_path: str,
        places_ttl_s: float = DEFAULT_TTL_SECONDS,
        hours_ttl_s: float = DEFAULT_TTL_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.db_path = db_path
        self.ttls: Dict[str, float] = {PLACES_PREFIX: places_ttl_s, HOURS_PREFIX: hours_ttl_s}
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        try:
            if db_path != ":memory:":
                os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._init_schema()
        except (OSError, sqlite3.Error) as e:
            logger.warning("Persistent cache unavailable at %s, running without it: %s", db_path, e)
            self._conn = None

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS cache_entries (
                key TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                written_at REAL NOT NULL
            )
            """
        )
        self._conn.commit()

    def _ttl_for(self, prefix: str) -> float:
        return self.ttls.get(prefix, DEFAULT_TTL_SECONDS)

    def get(self, prefix: str, key: str) -> Optional[Any]:
        """Return the cached value, or None when missing, expired or unreadable."""
        if self._conn is None:
            return None
        full_key = prefix + key
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT payload FROM cache_entries WHERE key=?", (full_key,)
                ).fetchone()
            if row is None:
                return None
            envelope = json.loads(row[0])
            timestamp = float(envelope["timestamp"])
            if self._clock() - timestamp >= self._ttl_for(prefix):
                self._delete(full_key)
                return None
            return envelope["data"]
        except (sqlite3.Error, ValueError, KeyError, TypeError) as e:
            logger.warning("Error reading cache key %s: %s", full_key, e)
            return None

    def set(self, prefix: str, key: str, value: Any) -> None:
        if self._conn is None:
            return
        full_key = prefix + key
        now = self._clock()
        try:
            payload = json.dumps({"data": value, "timestamp": now})
            with self._lock:
                self._conn.execute(
                    "INSERT OR REPLACE INTO cache_entries (key, payload, written_at) VALUES (?, ?, ?)",
                    (full_key, payload, now),
                )
                self._conn.commit()
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.warning("Error writing cache key %s: %s", full_key, e)

    def _delete(self, full_key: str) -> None:
        try:
            with self._lock:
                self._conn.execute("DELETE FROM cache_entries WHERE key=?", (full_key,))
                self._conn.commit()
        except sqlite3.Error as e:
            logger.warning("Error evicting cache key %s: %s", full_key, e)

    def delete_matching_prefix(self, prefix: str) -> int:
        if self._conn is None:
            return 0
        try:
            with self._lock:
                # substr instead of LIKE: prefixes contain "_" which LIKE treats as a wildcard
                cur = self._conn.execute(
                    "DELETE FROM cache_entries WHERE substr(key, 1, ?) = ?", (len(prefix), prefix)
                )
                self._conn.commit()
            return cur.rowcount
        except sqlite3.Error as e:
            logger.warning("Error clearing cache prefix %s: %s", prefix, e)
            return 0

    def clear(self, prefixes: Iterable[str] = (PLACES_PREFIX, HOURS_PREFIX)) -> int:
        removed = sum(self.delete_matching_prefix(prefix) for prefix in set(prefixes))
        logger.info("Cleared %d persisted cache keys", removed)
        return removed

    def purge_expired(self) -> int:
        """Delete every expired entry in all known namespaces."""
        if self._conn is None:
            return 0
        now = self._clock()
        removed = 0
        try:
            with self._lock:
                for prefix, ttl in self.ttls.items():
                    cur = self._conn.execute(
                        "DELETE FROM cache_entries WHERE substr(key, 1, ?) = ? AND written_at <= ?",
                        (len(prefix), prefix, now - ttl),
                    )
                    removed += cur.rowcount
                self._conn.commit()
        except sqlite3.Error as e:
            logger.warning("Error purging expired cache entries: %s", e)
        return removed

    def get_places(self, key: str) -> Optional[List[dict]]:
        data = self.get(PLACES_PREFIX, key)
        return data if isinstance(data, list) else None

    def set_places(self, key: str, places: List[dict]) -> None:
        self.set(PLACES_PREFIX, key, places)

    def get_hours_entry(self, place_id: str) -> Optional[List[str]]:
        """Stored hours for a place; [] is the marker for "looked up, has none"."""
        data = self.get(HOURS_PREFIX, place_id)
        if isinstance(data, list):
            return [str(line) for line in data]
        return None

    def get_hours(self, place_id: str) -> Optional[List[str]]:
        return self.get_hours_entry(place_id) or None

    def set_hours(self, place_id: str, hours: List[str]) -> None:
        self.set(HOURS_PREFIX, place_id, hours)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
