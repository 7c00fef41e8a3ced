"""Distance and zone membership."""
import math

import pytest

from core.models import Coordinate, DynamicZone, StaticZone
from geo_utils import (
    bounding_box,
    distance_meters,
    haversine_distance,
    is_within_dynamic_zone,
    is_within_zone,
    validate_coordinates,
)
from fakes import FakeHistory, ZONE_CENTER

POINTS = [
    Coordinate(25.01845, 121.54274),
    Coordinate(25.0330, 121.5654),
    Coordinate(-33.8688, 151.2093),
    Coordinate(51.5074, -0.1278),
    Coordinate(0.0, 0.0),
]


@pytest.mark.parametrize("point", POINTS)
def test_distance_to_self_is_zero(point):
    assert distance_meters(point, point) == 0


@pytest.mark.parametrize("a", POINTS)
@pytest.mark.parametrize("b", POINTS)
def test_distance_is_symmetric_and_non_negative(a, b):
    assert distance_meters(a, b) == pytest.approx(distance_meters(b, a))
    assert distance_meters(a, b) >= 0


def test_known_distance_taipei_landmarks():
    # NTU campus point to Taipei 101 is roughly 2.8 km
    d = haversine_distance(25.01845, 121.54274, 25.0330, 121.5654)
    assert d == pytest.approx(2800, abs=100)


def test_one_degree_of_latitude():
    d = haversine_distance(0, 0, 1, 0)
    assert d == pytest.approx(6371000 * math.pi / 180, rel=1e-9)


def test_static_zone_boundary_is_inclusive():
    zone = StaticZone(ZONE_CENTER, 100.0)
    # pick the exact distance of a nearby point as the radius
    probe = Coordinate(ZONE_CENTER.lat + 0.0005, ZONE_CENTER.lng)
    exact = distance_meters(probe, ZONE_CENTER)
    assert is_within_zone(probe, StaticZone(ZONE_CENTER, exact))
    assert not is_within_zone(probe, StaticZone(ZONE_CENTER, exact - 0.01))
    assert is_within_zone(ZONE_CENTER, zone)


def test_bounding_box_contains_radius():
    box = bounding_box(25.0, 121.5, 1000)
    assert box.min_lat < 25.0 < box.max_lat
    assert box.min_lng < 121.5 < box.max_lng
    north = Coordinate(25.0 + 0.0089, 121.5)  # ~990 m
    assert box.contains(north)


def test_dynamic_zone_confirms_candidates_exactly():
    # in the bounding-box corner but farther than the radius
    corner = Coordinate(25.0 + 0.0085, 121.5 + 0.0093)
    history = FakeHistory([corner])
    zone = DynamicZone(1000.0, history)
    assert not is_within_dynamic_zone(Coordinate(25.0, 121.5), zone)

    history.points.append(Coordinate(25.0 + 0.001, 121.5))
    assert is_within_dynamic_zone(Coordinate(25.0, 121.5), zone)


def test_dynamic_zone_lookup_errors_propagate():
    zone = DynamicZone(50.0, FakeHistory(fail=True))
    with pytest.raises(RuntimeError):
        is_within_dynamic_zone(ZONE_CENTER, zone)


@pytest.mark.parametrize("lat,lon,ok", [
    (25.0, 121.5, True),
    ("25.0", "121.5", True),
    (None, 121.5, False),
    (91, 0, False),
    (0, -181, False),
    ("abc", 0, False),
    (float("nan"), 0, False),
])
def test_validate_coordinates(lat, lon, ok):
    assert validate_coordinates(lat, lon) is ok
