from __future__ import annotations

from food_finder.services.distance import distance_miles


def test_identical_points_are_zero():
    assert distance_miles(33.7676, -84.3908, 33.7676, -84.3908) == 0.0


def test_distance_is_symmetric():
    a = (33.7676, -84.3908)
    b = (33.7490, -84.3880)
    assert distance_miles(*a, *b) == distance_miles(*b, *a)


def test_known_distance_atlanta_to_athens():
    # Atlanta -> Athens, GA is roughly 60 miles as the crow flies
    miles = distance_miles(33.7490, -84.3880, 33.9519, -83.3576)
    assert 58.0 < miles < 62.0


def test_rounds_to_one_decimal():
    miles = distance_miles(33.7676, -84.3908, 33.7776, -84.3908)
    assert miles == round(miles, 1)
    assert miles == 0.7
