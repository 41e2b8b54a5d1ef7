"""Opening-hours formatting and the bounded worker pool that fills them in.

Places that did not arrive with their full tag set (for example ones restored
from an older cache entry) may lack hours, so after a search the hydrator
looks each of them up: first in its own memory map, then in the
persistent hours namespace, and only then through a per-place network lookup.
Network lookups run on a small fixed pool of asyncio tasks, each pausing for
``pacing_s`` after every attempt to keep the per-entity endpoint happy.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable, Dict, List, Optional

from food_finder.models import Place
from food_finder.services.store import PersistentCacheStore

logger = logging.getLogger(__name__)

HoursLookup = Callable[[str], Awaitable[Optional[str]]]

_TOKEN_LABELS = {
    "Mo": "Mon",
    "Tu": "Tue",
    "We": "Wed",
    "Th": "Thu",
    "Fr": "Fri",
    "Sa": "Sat",
    "Su": "Sun",
    "PH": "Holidays",
    "off": "Closed",
}
_TOKEN_RE = re.compile(r"\b(" + "|".join(_TOKEN_LABELS) + r")\b")


def format_opening_hours(raw: Optional[str]) -> List[str]:
    """Turn an OSM ``opening_hours`` value into display lines.

    >>> format_opening_hours("Mo-Fr 09:00-17:00; Sa 10:00-14:00")
    ['Mon-Fri 09:00-17:00', 'Sat 10:00-14:00']
    """
    if not raw or not raw.strip():
        return []
    value = raw.strip()
    if value == "24/7":
        return ["Open 24 hours"]
    lines = []
    for rule in value.split(";"):
        rule = rule.strip()
        if not rule:
            continue
        lines.append(_TOKEN_RE.sub(lambda m: _TOKEN_LABELS[m.group(1)], rule))
    return lines


class HoursHydrator:
    """Fills in missing opening hours, remembering both hits and confirmed misses.

    ``lookup`` returns the raw ``opening_hours`` value, ``""`` when the place
    is known to have none, or ``None`` when the answer could not be fetched.
    Only the first two are cached; an empty list in ``hours_map`` or in the
    persistent hours namespace marks a place that has no hours.

    Places flagged ``hours_checked`` came with their complete tag set, so
    they are never looked up again.
    """

    def __init__(
        self,
        store: PersistentCacheStore,
        lookup: HoursLookup,
        *,
        workers: int = 2,
        pacing_s: float = 0.35,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.store = store
        self.lookup = lookup
        self.workers = workers
        self.pacing_s = pacing_s
        self._sleep = sleep or asyncio.sleep
        self.hours_map: Dict[str, List[str]] = {}
        # Bumped by clear() so batches started earlier do not repopulate the caches.
        self._generation = 0

    def remember(self, places: List[Place]) -> None:
        for place in places:
            if place.opening_hours:
                self.hours_map[place.id] = place.opening_hours

    def _known_hours(self, place_id: str) -> Optional[List[str]]:
        if place_id in self.hours_map:
            return self.hours_map[place_id]
        hours = self.store.get_hours_entry(place_id)
        if hours is not None:
            self.hours_map[place_id] = hours
        return hours

    def cached_hours(self, place_id: str) -> Optional[List[str]]:
        return self._known_hours(place_id) or None

    def clear(self) -> None:
        self._generation += 1
        self.hours_map.clear()

    def _record(self, place_id: str, hours: List[str], generation: int) -> None:
        if generation != self._generation:
            return
        self.hours_map[place_id] = hours
        self.store.set_hours(place_id, hours)

    async def hydrate(self, places: List[Place]) -> List[Place]:
        """Fill ``opening_hours`` in place for every place that lacks them."""
        generation = self._generation
        pending: List[Place] = []
        for place in places:
            if place.opening_hours:
                if self.hours_map.get(place.id) != place.opening_hours:
                    self._record(place.id, place.opening_hours, generation)
                continue
            if place.hours_checked:
                if self.hours_map.get(place.id) != []:
                    self._record(place.id, [], generation)
                continue
            known = self._known_hours(place.id)
            if known:
                place.opening_hours = known
            elif known is None:
                pending.append(place)

        if not pending:
            return places

        queue: asyncio.Queue[Place] = asyncio.Queue()
        for place in pending:
            queue.put_nowait(place)

        found = {"count": 0}

        async def worker() -> None:
            while True:
                try:
                    place = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    raw = await self.lookup(place.id)
                    if raw is not None:
                        hours = format_opening_hours(raw)
                        if hours:
                            place.opening_hours = hours
                            found["count"] += 1
                        self._record(place.id, hours, generation)
                except Exception as e:
                    logger.warning("Opening hours lookup failed for %s: %s", place.id, e)
                await self._sleep(self.pacing_s)

        await asyncio.gather(*(worker() for _ in range(min(self.workers, len(pending)))))
        logger.debug("Hydrated hours for %d of %d places", found["count"], len(pending))
        return places
