from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

EARTH_RADIUS_M = 6_371_008.8
DEFAULT_RADIUS_M = 100.0


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"Latitude {self.latitude} is outside [-90, 90]")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"Longitude {self.longitude} is outside [-180, 180]")


@dataclass(frozen=True)
class ProximityReport:
    distance: Optional[float]
    in_range: Optional[bool]
    radius: float


def great_circle_distance(a: Coordinate, b: Coordinate) -> float:
    """Haversine distance in meters between two points."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    # clamp rounding noise for antipodal points
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(h))


def distance_to(current: Optional[Coordinate], target: Coordinate) -> Optional[float]:
    if current is None:
        return None
    return great_circle_distance(current, target)


def is_within_radius(
    current: Optional[Coordinate],
    target: Coordinate,
    radius: float = DEFAULT_RADIUS_M,
) -> Optional[bool]:
    distance = distance_to(current, target)
    if distance is None:
        return None
    return distance <= radius


def evaluate(current: Optional[Coordinate], target: Coordinate, radius: float = DEFAULT_RADIUS_M) -> ProximityReport:
    distance = distance_to(current, target)
    in_range = None if distance is None else distance <= radius
    return ProximityReport(distance=distance, in_range=in_range, radius=radius)
