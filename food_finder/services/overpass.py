from __future__ import annotations

import asyncio
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import aiohttp

from food_finder.config import Settings
from food_finder.models import Address, Place
from food_finder.services.formatters import FOOD_TAGS
from food_finder.services.hours import format_opening_hours
from food_finder.services.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

METERS_PER_DEGREE = 111_000.0

_PLACE_ID_RE = re.compile(r"^overpass_(node|way|relation)_(\d+)$")


@dataclass(frozen=True)
class BoundingBox:
    south: float
    west: float
    north: float
    east: float

    def as_overpass(self) -> str:
        return f"({self.south:.6f},{self.west:.6f},{self.north:.6f},{self.east:.6f})"


def bounding_box(lat: float, lon: float, radius_m: float) -> BoundingBox:
    """Square box around the centre; ~111 km per degree is close enough for a search scope."""
    delta = radius_m / METERS_PER_DEGREE
    return BoundingBox(south=lat - delta, west=lon - delta, north=lat + delta, east=lon + delta)


def build_query(bbox: BoundingBox, tags: Sequence[Tuple[str, str]] = FOOD_TAGS, timeout_s: int = 25) -> str:
    box = bbox.as_overpass()
    lines = []
    for key, value in tags:
        lines.append(f'  node["{key}"="{value}"]{box};')
        lines.append(f'  way["{key}"="{value}"]{box};')
    body = "\n".join(lines)
    # Note: for ways we request center.
    return f"""[out:json][timeout:{timeout_s}];
(
{body}
);
out center tags;
"""


def build_hours_query(osm_type: str, osm_id: int, timeout_s: int = 25) -> str:
    return f"[out:json][timeout:{timeout_s}];\n{osm_type}(id:{osm_id});\nout tags;\n"


def place_id_for(osm_type: str, osm_id: Any) -> str:
    return f"overpass_{osm_type}_{osm_id}"


def parse_place_id(place_id: str) -> Optional[Tuple[str, int]]:
    match = _PLACE_ID_RE.match(place_id or "")
    if not match:
        return None
    return match.group(1), int(match.group(2))


def _finite(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _address_from_tags(tags: Dict[str, Any]) -> Optional[Address]:
    address = Address(
        house_number=tags.get("addr:housenumber"),
        road=tags.get("addr:street"),
        city=tags.get("addr:city") or tags.get("addr:town") or tags.get("addr:village"),
        state=tags.get("addr:state"),
        postcode=tags.get("addr:postcode"),
    )
    if not any(address.model_dump().values()):
        return None
    return address


def element_to_place(el: Dict[str, Any]) -> Optional[Place]:
    """Map one Overpass element to a Place, or None when it has no usable coordinates."""
    osm_type = str(el.get("type", ""))
    osm_id = el.get("id")
    if not osm_type or osm_id is None:
        return None

    # Coordinates: node => lat/lon, others => center
    if osm_type == "node":
        plat, plon = el.get("lat"), el.get("lon")
    else:
        center = el.get("center")
        if not isinstance(center, dict):
            center = {}
        plat, plon = center.get("lat"), center.get("lon")
    plat, plon = _finite(plat), _finite(plon)
    if plat is None or plon is None:
        return None

    tags = el.get("tags")
    if not isinstance(tags, dict):
        tags = {}
    category = tags.get("shop") or tags.get("amenity") or "food_resource"
    name = tags.get("name") or tags.get("operator") or tags.get("brand") or f"{category} ({osm_type}/{osm_id})"

    return Place(
        id=place_id_for(osm_type, osm_id),
        lat=plat,
        lon=plon,
        display_name=str(name),
        category=str(category),
        address=_address_from_tags(tags),
        address_text=tags.get("addr:full"),
        opening_hours=format_opening_hours(tags.get("opening_hours")) or None,
        # search queries use "out center tags", so the tag set is complete
        hours_checked=True,
    )


class OverpassClient:
    """Rate-limited Overpass client.

    Every search request, retries included, first passes the client's
    RateLimiter. Per-place hours lookups use ``hours_rate_limiter`` instead
    (None by default, leaving their pacing to the caller) so they never
    queue behind or delay searches.
    Failures are retried ``retry_limit`` times with linear backoff
    (``base * attempt``); 429s use ``rate_limit_backoff_s`` as the base, any
    other failure ``retry_backoff_s``. When retries run out the public
    methods return an empty result instead of raising.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        base_url: str = "https://overpass-api.de/api/interpreter",
        user_agent: str = "food-finder/0.1.0",
        timeout_s: float = 25.0,
        rate_limiter: Optional[RateLimiter] = None,
        hours_rate_limiter: Optional[RateLimiter] = None,
        retry_limit: int = 3,
        rate_limit_backoff_s: float = 2.0,
        retry_backoff_s: float = 1.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.session = session
        self.base_url = base_url
        self.headers = {"User-Agent": user_agent, "Accept": "application/json"}
        self.timeout_s = timeout_s
        self.rate_limiter = rate_limiter or RateLimiter(2.0)
        self.hours_rate_limiter = hours_rate_limiter
        self.retry_limit = retry_limit
        self.rate_limit_backoff_s = rate_limit_backoff_s
        self.retry_backoff_s = retry_backoff_s
        self._sleep = sleep or asyncio.sleep
        self.last_attempts = 0

    @classmethod
    def from_settings(cls, session: aiohttp.ClientSession, settings: Settings) -> "OverpassClient":
        return cls(
            session,
            base_url=str(settings.overpass_base_url),
            user_agent=settings.user_agent,
            timeout_s=settings.http_timeout_s,
            rate_limiter=RateLimiter(settings.min_request_interval_s),
            retry_limit=settings.retry_limit,
            rate_limit_backoff_s=settings.rate_limit_backoff_s,
            retry_backoff_s=settings.retry_backoff_s,
        )

    async def _post_query(
        self, query: str, purpose: str, limiter: Optional[RateLimiter]
    ) -> Optional[Dict[str, Any]]:
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        max_attempts = self.retry_limit + 1
        self.last_attempts = 0

        for attempt in range(1, max_attempts + 1):
            if limiter is not None:
                await limiter.wait()
            self.last_attempts = attempt
            backoff_base = self.retry_backoff_s
            try:
                async with self.session.post(
                    self.base_url, data={"data": query}, headers=self.headers, timeout=timeout
                ) as resp:
                    if resp.status == 429:
                        backoff_base = self.rate_limit_backoff_s
                        logger.warning(
                            "Overpass rate limited (429) on %s, attempt %d/%d", purpose, attempt, max_attempts
                        )
                    elif resp.status >= 400:
                        logger.warning(
                            "Overpass HTTP %d on %s, attempt %d/%d", resp.status, purpose, attempt, max_attempts
                        )
                    else:
                        data = await resp.json(content_type=None)
                        if isinstance(data, dict):
                            return data
                        logger.warning("Overpass returned malformed payload on %s, attempt %d", purpose, attempt)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("Overpass network error on %s, attempt %d/%d: %s", purpose, attempt, max_attempts, e)
            except ValueError as e:
                logger.warning("Overpass returned invalid JSON on %s, attempt %d/%d: %s", purpose, attempt, max_attempts, e)

            if attempt < max_attempts:
                await self._sleep(backoff_base * attempt)

        logger.warning("Overpass %s gave up after %d attempts", purpose, max_attempts)
        return None

    async def fetch_places(self, lat: float, lon: float, radius_m: float) -> List[Place]:
        """Food places inside the bounding box around (lat, lon); [] when the provider is unavailable."""
        query = build_query(bounding_box(lat, lon, radius_m), timeout_s=int(self.timeout_s))
        data = await self._post_query(query, "place search", self.rate_limiter)
        if data is None:
            return []

        places: List[Place] = []
        for el in data.get("elements") or []:
            if not isinstance(el, dict):
                continue
            place = element_to_place(el)
            if place is not None:
                places.append(place)
        logger.info("Overpass returned %d places around (%.4f, %.4f)", len(places), lat, lon)
        return places

    async def fetch_opening_hours(self, place_id: str) -> Optional[str]:
        """Raw ``opening_hours`` tag for one place.

        Returns "" when the element was fetched (or no longer exists) and has
        no hours, and None when the lookup failed or the id is not an OSM id.
        """
        parsed = parse_place_id(place_id)
        if parsed is None:
            return None
        osm_type, osm_id = parsed
        query = build_hours_query(osm_type, osm_id, int(self.timeout_s))
        data = await self._post_query(query, f"hours {place_id}", self.hours_rate_limiter)
        if data is None:
            return None
        for el in data.get("elements") or []:
            if not isinstance(el, dict):
                continue
            tags = el.get("tags")
            if isinstance(tags, dict) and tags.get("opening_hours"):
                return str(tags["opening_hours"])
        return ""
