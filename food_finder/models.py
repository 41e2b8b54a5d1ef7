from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class Address(BaseModel):
    house_number: Optional[str] = None
    road: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postcode: Optional[str] = None

    def has_street(self) -> bool:
        return bool((self.house_number or "").strip() or (self.road or "").strip())


class Place(BaseModel):
    id: str = Field(..., description="Stable id derived from the OSM element, e.g. overpass_node_123")
    lat: float
    lon: float
    display_name: str
    category: str = "food_resource"
    address: Optional[Address] = None
    address_text: Optional[str] = None
    opening_hours: Optional[List[str]] = None
    distance_mi: Optional[float] = None
    # True when the source response carried the full tag set, so a missing
    # opening_hours tag means the place has none. Never serialized.
    hours_checked: bool = Field(False, exclude=True)


class PlaceHours(BaseModel):
    place_id: str
    opening_hours: List[str]
