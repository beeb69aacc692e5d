"""Great-circle distance, suppression circles and the travel heuristic."""

import math
from dataclasses import dataclass
from typing import Optional

from . import config

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class GeofenceCircle:
    """A circular region; used to hold back repeat suggestions after a dismissal."""
    center: Coordinate
    radius_km: float

    def contains(self, point: Coordinate) -> bool:
        return haversine_km(point, self.center) <= self.radius_km


def haversine_km(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in kilometres between two coordinates."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_phi = math.radians(b.latitude - a.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)

    h = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1.0 - h))


def should_suggest_travel(
    current: Coordinate,
    known: Coordinate,
    last_suggested: Optional[Coordinate] = None,
    threshold_km: float = config.TRAVEL_THRESHOLD_KM,
    buffer_km: float = config.SUGGESTION_BUFFER_KM,
) -> bool:
    """Decide whether to offer a "you may have traveled" suggestion.

    True iff the device is at least ``threshold_km`` from the known location
    and no earlier suggestion was made within ``buffer_km`` of this point.
    """
    if haversine_km(current, known) < threshold_km:
        return False
    return last_suggested is None or haversine_km(current, last_suggested) > buffer_km


def obfuscate(point: Coordinate, step: float) -> Coordinate:
    """Snap a coordinate to a grid of ``step`` degrees."""
    return Coordinate(
        latitude=round(round(point.latitude / step) * step, 6),
        longitude=round(round(point.longitude / step) * step, 6),
    )
