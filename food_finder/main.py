from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import aiohttp
from fastapi import Depends, FastAPI, HTTPException, Query, Request

from food_finder.config import get_settings
from food_finder.errors import register_error_handlers
from food_finder.models import Place, PlaceHours
from food_finder.services.formatters import list_categories
from food_finder.services.locator import FoodLocator
from food_finder.services.overpass import OverpassClient

settings = get_settings()

logging.basicConfig(level=settings.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with aiohttp.ClientSession() as session:
        client = OverpassClient.from_settings(session, settings)
        locator = FoodLocator.from_settings(client, settings)
        purged = locator.store.purge_expired()
        if purged:
            logger.info("Purged %d expired cache entries", purged)
        app.state.locator = locator
        try:
            yield
        finally:
            locator.store.close()


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Service to find nearby food resources using OpenStreetMap data.",
    lifespan=lifespan,
)
register_error_handlers(app)


def get_locator(request: Request) -> FoodLocator:
    return request.app.state.locator


@app.get("/", tags=["Root"])
async def root():
    return {"ok": True, "service": settings.app_name, "version": settings.version}


@app.get("/health", tags=["Healthcheck"])
async def health():
    return {"ok": True}


@app.get("/api/categories", tags=["Api Categories"])
async def api_categories():
    return {"categories": list_categories()}


@app.get("/api/search", response_model=List[Place], tags=["Api Search"])
async def api_search(
    lat: float = Query(..., ge=-90.0, le=90.0),
    lon: float = Query(..., ge=-180.0, le=180.0),
    radius_km: Optional[float] = Query(None, gt=0.0, le=50.0),
    force: bool = Query(False, description="Bypass the in-memory and persisted caches"),
    locator: FoodLocator = Depends(get_locator),
):
    return await locator.search(lat, lon, radius_km, force=force)


@app.get("/api/places/{place_id}/hours", response_model=PlaceHours, tags=["Api Hours"])
async def api_place_hours(place_id: str, locator: FoodLocator = Depends(get_locator)):
    hours = await locator.get_hours(place_id)
    if not hours:
        raise HTTPException(status_code=404, detail="No cached opening hours for this place")
    return PlaceHours(place_id=place_id, opening_hours=hours)


@app.post("/api/cache/clear", tags=["Api Cache"])
async def api_clear_cache(locator: FoodLocator = Depends(get_locator)):
    await locator.clear_all()
    return {"ok": True}
