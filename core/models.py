# core/models.py — value types for positions, zones and reports
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


@dataclass(frozen=True)
class Coordinate:
    """WGS84 latitude/longitude in degrees."""
    lat: float
    lng: float

    def as_text(self) -> str:
        return f"{self.lat},{self.lng}"


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, point: Coordinate) -> bool:
        return (self.min_lat <= point.lat <= self.max_lat
                and self.min_lng <= point.lng <= self.max_lng)


@dataclass(frozen=True)
class StaticZone:
    """Fixed circle; radius always in meters."""
    center: Coordinate
    radius_m: float
    name: str = "static"


@dataclass(frozen=True)
class DynamicZone:
    """Zone derived from historical reports.

    `lookup` is any object exposing ``candidates_near(bbox) -> list[Coordinate]``
    (see zone_history.ReportHistoryStore). A point is in the zone when any
    historical report lies within `radius_m` of it.
    """
    radius_m: float
    lookup: Any
    name: str = "report-history"


class ReportCategory(str, Enum):
    HAZARD = "hazard"
    SIGHTING = "sighting"


class ArtifactKind(str, Enum):
    PHOTO = "photo"
    LOCATION = "location"
    NOTES = "notes"


@dataclass(frozen=True)
class DownloadReference:
    filename: str
    path: str
    url: str = ""

    @property
    def link(self) -> str:
        """URL when one is published, otherwise the local path."""
        return self.url or self.path


@dataclass
class ZoneCheck:
    in_zone: bool
    distance_m: Optional[float]
    source: str
