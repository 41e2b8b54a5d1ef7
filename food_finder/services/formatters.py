from __future__ import annotations

from typing import Dict, List, Tuple

from food_finder.models import Place

# OSM tag classes queried for food resources. Add a (key, value) pair to widen the search.
FOOD_TAGS: List[Tuple[str, str]] = [
    ("amenity", "food_bank"),
    ("amenity", "soup_kitchen"),
    ("amenity", "social_facility"),
    ("amenity", "marketplace"),
    ("shop", "supermarket"),
    ("shop", "greengrocer"),
    ("shop", "convenience"),
    ("shop", "bakery"),
    ("shop", "deli"),
]

CATEGORY_LABELS: Dict[str, str] = {
    "food_bank": "Food Bank",
    "soup_kitchen": "Soup Kitchen",
    "community_centre": "Community Center",
    "place_of_worship": "Place of Worship",
    "charity": "Charity",
    "social_facility": "Social Facility",
    "supermarket": "Supermarket",
    "greengrocer": "Greengrocer",
    "convenience": "Convenience Store",
    "bakery": "Bakery",
    "market": "Market",
    "marketplace": "Market",
    "deli": "Deli",
}


def format_address(place: Place) -> str:
    address = place.address
    text = (place.address_text or "").strip()

    if address is not None:
        if address.has_street():
            street = " ".join(p.strip() for p in (address.house_number, address.road) if p and p.strip())
            line = street
            if address.city:
                line += f", {address.city}"
            if address.state:
                line += f", {address.state}"
            if address.postcode:
                line += f" {address.postcode}"
            return line.strip()

        if text:
            return text
        city_state = ", ".join(p for p in (address.city, address.state) if p)
        return " ".join(p for p in (city_state, address.postcode) if p).strip()

    return text


def categorize_place(place: Place) -> str:
    return CATEGORY_LABELS.get(place.category) or place.category or "Other"


def list_categories() -> dict[str, list[dict[str, str]]]:
    return {
        CATEGORY_LABELS.get(value, value): [{"key": key, "value": value}]
        for key, value in FOOD_TAGS
    }
