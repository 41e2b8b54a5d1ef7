from __future__ import annotations

import asyncio

import aiohttp
import pytest
from fakes import FakeClock, FakeResponse, FakeSession

from food_finder.services.overpass import (
    OverpassClient,
    bounding_box,
    build_query,
    element_to_place,
    parse_place_id,
)
from food_finder.services.rate_limit import RateLimiter

ELEMENTS = [
    {
        "type": "node",
        "id": 101,
        "lat": 33.77,
        "lon": -84.39,
        "tags": {
            "amenity": "food_bank",
            "name": "Downtown Food Bank",
            "addr:housenumber": "12",
            "addr:street": "Peachtree St",
            "addr:town": "Atlanta",
            "opening_hours": "Mo-Fr 09:00-17:00; Sa 10:00-12:00",
        },
    },
    {"type": "way", "id": 202, "center": {"lat": 33.78, "lon": -84.38}, "tags": {"shop": "supermarket", "brand": "Kroger"}},
    {"type": "way", "id": 303, "tags": {"shop": "bakery"}},
    {"type": "node", "id": 404, "lat": "nan", "lon": -84.38, "tags": {"shop": "deli"}},
]


def make_client(responses, retry_limit=3, min_interval=2.0):
    clock = FakeClock()
    session = FakeSession(responses, clock=clock)
    client = OverpassClient(
        session,
        base_url="https://overpass.test/api/interpreter",
        rate_limiter=RateLimiter(min_interval, clock=clock, sleep=clock.sleep),
        retry_limit=retry_limit,
        rate_limit_backoff_s=2.0,
        retry_backoff_s=1.0,
        sleep=clock.sleep,
    )
    return client, session, clock


def test_bounding_box_from_radius():
    bbox = bounding_box(33.0, -84.0, 11_100)
    assert bbox.south == pytest.approx(32.9)
    assert bbox.north == pytest.approx(33.1)
    assert bbox.west == pytest.approx(-84.1)
    assert bbox.east == pytest.approx(-83.9)


def test_query_covers_all_food_classes_in_one_request():
    query = build_query(bounding_box(33.0, -84.0, 1000))
    for key, value in [("shop", "supermarket"), ("shop", "greengrocer"), ("amenity", "food_bank"),
                       ("amenity", "soup_kitchen"), ("shop", "bakery"), ("shop", "convenience")]:
        assert f'node["{key}"="{value}"]' in query
        assert f'way["{key}"="{value}"]' in query
    assert query.startswith("[out:json]")
    assert "out center tags;" in query


def test_element_to_place_node_with_hours_and_address():
    place = element_to_place(ELEMENTS[0])
    assert place.id == "overpass_node_101"
    assert place.display_name == "Downtown Food Bank"
    assert place.category == "food_bank"
    assert place.address.city == "Atlanta"
    assert place.address.road == "Peachtree St"
    assert place.opening_hours == ["Mon-Fri 09:00-17:00", "Sat 10:00-12:00"]


def test_element_to_place_way_uses_center_and_brand():
    place = element_to_place(ELEMENTS[1])
    assert (place.lat, place.lon) == (33.78, -84.38)
    assert place.display_name == "Kroger"
    assert place.address is None
    assert place.opening_hours is None


def test_element_to_place_synthesizes_name():
    place = element_to_place({"type": "node", "id": 7, "lat": 1.0, "lon": 2.0, "tags": {"amenity": "soup_kitchen"}})
    assert place.display_name == "soup_kitchen (node/7)"


def test_element_without_usable_coordinates_is_dropped():
    assert element_to_place(ELEMENTS[2]) is None
    assert element_to_place(ELEMENTS[3]) is None
    assert element_to_place({"type": "node", "lat": 1.0, "lon": 1.0}) is None


def test_parse_place_id():
    assert parse_place_id("overpass_way_42") == ("way", 42)
    assert parse_place_id("sb_thing") is None


def test_fetch_places_maps_elements():
    client, session, _ = make_client([FakeResponse(200, {"elements": ELEMENTS})])

    places = asyncio.run(client.fetch_places(33.77, -84.39, 5000))

    assert [p.id for p in places] == ["overpass_node_101", "overpass_way_202"]
    assert len(session.calls) == 1
    assert "data" in session.calls[0]["data"]
    assert session.calls[0]["headers"]["User-Agent"]


def test_repeated_fetch_yields_stable_ids():
    client, _, _ = make_client([FakeResponse(200, {"elements": ELEMENTS})], min_interval=0.0)

    async def run():
        return await client.fetch_places(33.77, -84.39, 5000), await client.fetch_places(33.77, -84.39, 5000)

    first, second = asyncio.run(run())
    assert [p.id for p in first] == [p.id for p in second]


def test_always_429_retries_then_returns_empty():
    client, session, clock = make_client([FakeResponse(429)], retry_limit=3)
    start = clock()

    places = asyncio.run(client.fetch_places(33.77, -84.39, 5000))

    assert places == []
    assert len(session.calls) == 1 + 3
    assert client.last_attempts == 4
    backoffs = [s for s in clock.sleeps if s >= 2.0]
    assert backoffs == [2.0, 4.0, 6.0]
    assert clock() - start == pytest.approx(sum(2.0 * i for i in range(1, 4)))


def test_server_errors_and_network_errors_are_retried():
    client, session, clock = make_client(
        [
            FakeResponse(503),
            aiohttp.ClientConnectionError("boom"),
            asyncio.TimeoutError(),
            FakeResponse(200, {"elements": ELEMENTS[:1]}),
        ],
        retry_limit=3,
        min_interval=0.0,
    )

    places = asyncio.run(client.fetch_places(33.77, -84.39, 5000))

    assert [p.id for p in places] == ["overpass_node_101"]
    assert len(session.calls) == 4
    assert clock.sleeps == [1.0, 2.0, 3.0]


def test_invalid_json_is_retried_then_empty():
    client, session, _ = make_client([FakeResponse(200, json_error=ValueError("bad json"))], retry_limit=1)

    assert asyncio.run(client.fetch_places(33.77, -84.39, 5000)) == []
    assert len(session.calls) == 2


def test_empty_response_is_success_without_retry():
    client, session, _ = make_client([FakeResponse(200, {"elements": []})])

    assert asyncio.run(client.fetch_places(33.77, -84.39, 5000)) == []
    assert len(session.calls) == 1


def test_sequential_calls_respect_min_interval():
    client, session, _ = make_client([FakeResponse(200, {"elements": []})], min_interval=2.0)

    async def run():
        await client.fetch_places(33.77, -84.39, 5000)
        await client.fetch_places(40.0, -80.0, 5000)

    asyncio.run(run())

    first, second = (call["at"] for call in session.calls)
    assert second - first >= 2.0


def test_fetch_opening_hours():
    client, session, _ = make_client(
        [FakeResponse(200, {"elements": [{"type": "node", "id": 5, "tags": {"opening_hours": "24/7"}}]})]
    )

    assert asyncio.run(client.fetch_opening_hours("overpass_node_5")) == "24/7"
    assert "node(id:5)" in session.calls[0]["data"]["data"]


def test_fetch_opening_hours_without_tag_is_empty_string():
    client, session, _ = make_client([FakeResponse(200, {"elements": [{"type": "node", "id": 5, "tags": {}}]})])

    assert asyncio.run(client.fetch_opening_hours("overpass_node_5")) == ""
    assert asyncio.run(client.fetch_opening_hours("not-an-id")) is None
    assert len(session.calls) == 1


def test_fetch_opening_hours_failure_is_none():
    client, session, _ = make_client([FakeResponse(503)], retry_limit=1)

    assert asyncio.run(client.fetch_opening_hours("overpass_way_5")) is None
    assert len(session.calls) == 2


def test_hours_lookups_do_not_wait_on_search_limiter():
    hours = FakeResponse(200, {"elements": [{"type": "node", "id": 5, "tags": {}}]})
    client, session, clock = make_client([FakeResponse(200, {"elements": []}), hours], min_interval=2.0)

    async def run():
        await client.fetch_places(33.77, -84.39, 5000)
        await client.fetch_opening_hours("overpass_node_5")
        await client.fetch_opening_hours("overpass_node_6")
        await client.fetch_places(33.77, -84.39, 5000)

    asyncio.run(run())

    assert [call["at"] for call in session.calls] == [1000.0, 1000.0, 1000.0, 1002.0]
    assert clock.sleeps == [2.0]


def test_hours_lookups_use_their_own_limiter():
    clock = FakeClock()
    session = FakeSession([FakeResponse(200, {"elements": []})], clock=clock)
    client = OverpassClient(
        session,
        rate_limiter=RateLimiter(2.0, clock=clock, sleep=clock.sleep),
        hours_rate_limiter=RateLimiter(0.5, clock=clock, sleep=clock.sleep),
        sleep=clock.sleep,
    )

    async def run():
        await client.fetch_opening_hours("overpass_node_1")
        await client.fetch_opening_hours("overpass_node_2")

    asyncio.run(run())

    assert clock.sleeps == [0.5]


def test_searched_places_have_complete_tags():
    assert element_to_place(ELEMENTS[1]).hours_checked is True
    assert "hours_checked" not in element_to_place(ELEMENTS[1]).model_dump()


def test_malformed_center_or_tags_do_not_raise():
    assert element_to_place({"type": "way", "id": 1, "center": [33.7, -84.3], "tags": {}}) is None
    assert element_to_place({"type": "way", "id": 2, "center": "33.7,-84.3"}) is None
    place = element_to_place({"type": "node", "id": 3, "lat": 33.7, "lon": -84.3, "tags": ["shop", "deli"]})
    assert place.display_name == "food_resource (node/3)"
    assert place.address is None


def test_fetch_places_keeps_good_elements_next_to_malformed_ones():
    batch = [{"type": "way", "id": 9, "center": [1, 2]}, {"type": "node", "id": 8, "lat": 1.0, "lon": 2.0, "tags": 7}]
    client, _, _ = make_client([FakeResponse(200, {"elements": batch + ELEMENTS[:2]})])

    places = asyncio.run(client.fetch_places(33.77, -84.39, 5000))

    assert [p.id for p in places] == ["overpass_node_8", "overpass_node_101", "overpass_way_202"]
