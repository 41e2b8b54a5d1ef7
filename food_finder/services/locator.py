"""Nearby food resource search with two cache tiers and single-flight fetches.

Lookup order for a search key:

1. in-memory TTLCache (short TTL, process lifetime)
2. PersistentCacheStore place namespace (long TTL, survives restarts)
3. an already running fetch for the same key, shared by every waiter
4. a new fetch: sources -> merge by id -> distance sort -> truncate ->
   hours hydration -> write both tiers

``force=True`` skips 1-3 and only drops the in-memory entry up front; the
persistent entry is overwritten when the new fetch succeeds, so a failed
forced refresh keeps the last good copy.
"""
from __future__ import annotations

import asyncio
import logging
import math
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from food_finder.config import Settings
from food_finder.errors import InvalidSearchError
from food_finder.models import Place
from food_finder.services.cache import TTLCache, search_cache_key
from food_finder.services.distance import distance_miles
from food_finder.services.events import CacheInvalidationBroadcaster, Listener
from food_finder.services.hours import HoursHydrator
from food_finder.services.overpass import OverpassClient
from food_finder.services.store import HOURS_PREFIX, PLACES_PREFIX, PersistentCacheStore

logger = logging.getLogger(__name__)


class PlaceSource(Protocol):
    async def fetch_places(self, lat: float, lon: float, radius_m: float) -> List[Place]:
        ...


def merge_places(*batches: Sequence[Place]) -> List[Place]:
    """Union of batches keyed by place id; the last occurrence wins, first-seen order is kept."""
    merged: Dict[str, Place] = {}
    for batch in batches:
        for place in batch:
            merged[place.id] = place
    return list(merged.values())


def _has_finite_coords(place: Place) -> bool:
    return math.isfinite(place.lat) and math.isfinite(place.lon)


class FoodLocator:
    def __init__(
        self,
        sources: Sequence[PlaceSource],
        store: PersistentCacheStore,
        hydrator: HoursHydrator,
        *,
        memory_ttl_s: float = 30 * 60,
        memory_max_size: int = 512,
        max_results: int = 50,
        default_radius_km: float = 5.0,
        key_precision: int = 4,
        cache_version: str = "v2",
        broadcaster: Optional[CacheInvalidationBroadcaster] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if not sources:
            raise ValueError("at least one place source is required")
        if max_results < 1:
            raise ValueError("max_results must be >= 1")
        self.sources = list(sources)
        self.store = store
        self.hydrator = hydrator
        self.max_results = max_results
        self.default_radius_km = default_radius_km
        self.key_precision = key_precision
        self.cache_version = cache_version
        self.broadcaster = broadcaster or CacheInvalidationBroadcaster()
        self._memory: TTLCache[List[Place]] = TTLCache(ttl_s=memory_ttl_s, max_size=memory_max_size, clock=clock)
        self._inflight: Dict[str, asyncio.Task] = {}
        # Bumped by clear_all so fetches started earlier do not repopulate the caches.
        self._generation = 0

    @classmethod
    def from_settings(cls, client: OverpassClient, settings: Settings) -> "FoodLocator":
        store = PersistentCacheStore(
            settings.cache_db_path,
            places_ttl_s=settings.persistent_cache_ttl_s,
            hours_ttl_s=settings.hours_cache_ttl_s,
        )
        hydrator = HoursHydrator(
            store,
            client.fetch_opening_hours,
            workers=settings.hours_workers,
            pacing_s=settings.hours_pacing_s,
        )
        return cls(
            [client],
            store,
            hydrator,
            memory_ttl_s=settings.memory_cache_ttl_s,
            memory_max_size=settings.memory_cache_max_size,
            max_results=settings.max_results,
            default_radius_km=settings.default_radius_km,
            key_precision=settings.cache_key_precision,
            cache_version=settings.cache_version,
        )

    def cache_key(self, lat: float, lon: float, radius_km: float) -> str:
        return search_cache_key(lat, lon, radius_km, precision=self.key_precision, version=self.cache_version)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def search(
        self,
        lat: float,
        lon: float,
        radius_km: Optional[float] = None,
        force: bool = False,
    ) -> List[Place]:
        """Places near (lat, lon), nearest first, at most ``max_results`` of them.

        Never raises for upstream or storage problems; those yield an empty list.
        """
        if radius_km is None:
            radius_km = self.default_radius_km
        self._validate(lat, lon, radius_km)
        key = self.cache_key(lat, lon, radius_km)

        if not force:
            cached = self._memory.get(key)
            if cached is not None:
                logger.debug("Memory cache hit for %s (%d places)", key, len(cached))
                self.hydrator.remember(cached)
                return cached

            persisted = self._load_persisted(key)
            if persisted is not None:
                logger.debug("Persistent cache hit for %s (%d places)", key, len(persisted))
                self._memory.set(key, persisted)
                self.hydrator.remember(persisted)
                return persisted

            pending = self._inflight.get(key)
            if pending is not None:
                logger.debug("Joining in-flight fetch for %s", key)
                return await asyncio.shield(pending)
        else:
            self._memory.pop(key)

        task = asyncio.ensure_future(self._fetch(key, lat, lon, radius_km, self._generation))
        self._inflight[key] = task
        task.add_done_callback(lambda t, k=key: self._release(k, t))
        # shield: a caller that goes away must not cancel the shared fetch
        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task) -> None:
        # a forced refresh may have replaced the entry with a newer task
        if self._inflight.get(key) is task:
            del self._inflight[key]

    @staticmethod
    def _validate(lat: float, lon: float, radius_km: float) -> None:
        if not (isinstance(lat, (int, float)) and math.isfinite(lat) and -90.0 <= lat <= 90.0):
            raise InvalidSearchError(f"Invalid latitude: {lat!r}")
        if not (isinstance(lon, (int, float)) and math.isfinite(lon) and -180.0 <= lon <= 180.0):
            raise InvalidSearchError(f"Invalid longitude: {lon!r}")
        if not (isinstance(radius_km, (int, float)) and math.isfinite(radius_km) and radius_km > 0):
            raise InvalidSearchError(f"Invalid radius: {radius_km!r}")

    def _load_persisted(self, key: str) -> Optional[List[Place]]:
        raw = self.store.get_places(key)
        if raw is None:
            return None
        places: List[Place] = []
        for item in raw:
            try:
                places.append(Place.model_validate(item))
            except ValueError as e:
                logger.debug("Skipping malformed cached place in %s: %s", key, e)
        if raw and not places:
            return None
        return places

    async def _fetch(self, key: str, lat: float, lon: float, radius_km: float, generation: int) -> List[Place]:
        try:
            radius_m = radius_km * 1000.0
            batches = []
            for source in self.sources:
                batches.append(await source.fetch_places(lat, lon, radius_m))
            merged = merge_places(*batches)

            located = [p for p in merged if _has_finite_coords(p)]
            for place in located:
                place.distance_mi = distance_miles(lat, lon, place.lat, place.lon)
            located.sort(key=lambda p: p.distance_mi)
            results = located[: self.max_results]

            await self.hydrator.hydrate(results)

            if generation == self._generation:
                self.store.set_places(key, [p.model_dump(mode="json") for p in results])
                self._memory.set(key, results)
            if not results:
                logger.info("No places found for %s", key)
            return results
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Search fetch failed for %s", key)
            return []

    async def get_hours(self, place_id: str) -> Optional[List[str]]:
        """Cached opening hours for a place; never goes to the network."""
        return self.hydrator.cached_hours(place_id)

    async def clear_all(self) -> None:
        """Drop every cache tier, then notify subscribers."""
        self._generation += 1
        self._memory.clear()
        self._inflight.clear()
        self.hydrator.clear()
        self.store.clear((PLACES_PREFIX, HOURS_PREFIX))
        self.broadcaster.publish()

    def on_cleared(self, listener: Listener) -> Callable[[], None]:
        return self.broadcaster.subscribe(listener)
