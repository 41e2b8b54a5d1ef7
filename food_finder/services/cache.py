from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar

T = TypeVar("T")

Clock = Callable[[], float]


@dataclass
class CacheEntry(Generic[T]):
    value: T
    written_at: float


class TTLCache(Generic[T]):
    """Simple in-memory TTL cache with max size eviction.

    An entry is a hit while ``now - written_at < ttl_s``.
    """

    def __init__(self, *, ttl_s: float, max_size: int, clock: Optional[Clock] = None) -> None:
        self.ttl_s = ttl_s
        self.max_size = max_size
        self._clock = clock or time.monotonic
        self._store: Dict[str, CacheEntry[T]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[T]:
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if now - entry.written_at >= self.ttl_s:
                self._store.pop(key, None)
                return None
            return entry.value

    def set(self, key: str, value: T) -> None:
        now = self._clock()
        with self._lock:
            self._purge_expired(now)
            if key not in self._store and len(self._store) >= self.max_size:
                self._evict_oldest()
            self._store[key] = CacheEntry(value=value, written_at=now)

    def pop(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    def _purge_expired(self, now: float) -> None:
        expired_keys = [key for key, entry in self._store.items() if now - entry.written_at >= self.ttl_s]
        for key in expired_keys:
            self._store.pop(key, None)

    def _evict_oldest(self) -> None:
        if not self._store:
            return
        oldest_key = min(self._store.items(), key=lambda item: item[1].written_at)[0]
        self._store.pop(oldest_key, None)


def make_cache_key(*parts: object) -> str:
    return "|".join(str(part) for part in parts)


def search_cache_key(lat: float, lon: float, radius_km: float, *, precision: int = 4, version: str = "v2") -> str:
    """Derive the cache key for a nearby search.

    Coordinates are rounded to ``precision`` decimal places, so every request
    inside the same rounding cell (about 11 m at 4 places, 1.1 km at 2) shares
    one cache entry and one upstream fetch.
    """
    if not 0 <= precision <= 8:
        raise ValueError(f"precision must be between 0 and 8, got {precision}")
    # + 0.0 folds -0.0 into 0.0 so both sides of the equator/meridian agree
    lat_part = f"{round(lat, precision) + 0.0:.{precision}f}"
    lon_part = f"{round(lon, precision) + 0.0:.{precision}f}"
    return make_cache_key("food", version, lat_part, lon_part, f"{radius_km:g}")
