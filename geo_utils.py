"""geo_utils.py

Geographic utilities without PostGIS dependency.
Haversine distance, bounding boxes, coordinate validation and zone membership.
"""

import math
import logging
from typing import Optional

from core.models import BoundingBox, Coordinate, DynamicZone, StaticZone

logger = logging.getLogger("geo_utils")

# Mean Earth radius in meters
EARTH_RADIUS_M = 6371000.0

# Meters per degree of latitude (spherical model)
METERS_PER_DEGREE = 111320.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate great-circle distance between two points in meters.

    Args:
        lat1, lon1: First point coordinates
        lat2, lon2: Second point coordinates

    Returns:
        Distance in meters (never negative)
    """
    lat1_rad = math.radians(lat1)
    lon1_rad = math.radians(lon1)
    lat2_rad = math.radians(lat2)
    lon2_rad = math.radians(lon2)

    dlat = lat2_rad - lat1_rad
    dlon = lon2_rad - lon1_rad

    a = math.sin(dlat/2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon/2)**2
    # float noise can push `a` a hair outside [0, 1]
    a = min(1.0, max(0.0, a))
    c = 2 * math.asin(math.sqrt(a))

    return EARTH_RADIUS_M * c


def distance_meters(a: Coordinate, b: Coordinate) -> float:
    return haversine_distance(a.lat, a.lng, b.lat, b.lng)


def bounding_box(lat: float, lon: float, radius_m: float) -> BoundingBox:
    """
    Calculate bounding box for proximity search.

    Returns a square around the point for fast database filtering
    before calculating exact distances. Longitude wrap-around is not
    handled; zones are small and far from the antimeridian.
    """
    lat_m = METERS_PER_DEGREE
    lon_m = METERS_PER_DEGREE * math.cos(math.radians(lat))

    lat_delta = radius_m / lat_m
    lon_delta = radius_m / lon_m if lon_m > 0 else 180.0

    return BoundingBox(
        min_lat=lat - lat_delta,
        max_lat=lat + lat_delta,
        min_lng=lon - lon_delta,
        max_lng=lon + lon_delta,
    )


def validate_coordinates(lat: Optional[float], lon: Optional[float]) -> bool:
    """
    Validate that coordinates are within valid ranges.

    Args:
        lat: Latitude (-90 to 90)
        lon: Longitude (-180 to 180)

    Returns:
        True if valid, False otherwise
    """
    if lat is None or lon is None:
        return False

    try:
        lat = float(lat)
        lon = float(lon)
    except (ValueError, TypeError):
        return False

    if math.isnan(lat) or math.isnan(lon):
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180


def is_within_zone(point: Coordinate, zone: StaticZone) -> bool:
    """Boundary inclusive: a point exactly `radius_m` away is inside."""
    return distance_meters(point, zone.center) <= zone.radius_m


def is_within_dynamic_zone(point: Coordinate, zone: DynamicZone) -> bool:
    """
    Two-phase check against historical reports: bounding box prefilter via
    the lookup, then exact haversine confirmation. Returns on first match.

    Lookup errors propagate; the caller decides how to degrade.
    """
    box = bounding_box(point.lat, point.lng, zone.radius_m)
    for candidate in zone.lookup.candidates_near(box):
        if distance_meters(point, candidate) <= zone.radius_m:
            return True
    return False
