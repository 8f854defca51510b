"""
Zone containment tests for driver dispatch.

Points are ``(lat, lng)`` tuples. Polygon rings use GeoJSON ordering,
``[lng, lat]`` per vertex, matching how zones are stored on the party row.
"""

import math
from dataclasses import dataclass
from typing import Optional, Sequence

EARTH_RADIUS_KM = 6371.0

LatLng = tuple[float, float]


def point_in_polygon(point: LatLng, ring: Sequence[Sequence[float]]) -> bool:
    """
    Ray-casting containment test.

    Casts a ray from the point and counts edge crossings; an odd count
    means the point is inside. The ring may be open or closed.
    """
    if len(ring) < 3:
        return False

    lat, lng = point
    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = ring[i][0], ring[i][1]
        xj, yj = ring[j][0], ring[j][1]
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lng < x_cross:
                inside = not inside
        j = i
    return inside


def haversine_km(a: LatLng, b: LatLng) -> float:
    """Great-circle distance between two points in kilometres."""
    lat1, lng1 = map(math.radians, a)
    lat2, lng2 = map(math.radians, b)
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


@dataclass(frozen=True)
class DriverZone:
    """A service area: explicit polygon, or center point plus radius."""

    polygon: Optional[tuple[tuple[float, float], ...]] = None
    center: Optional[LatLng] = None
    radius_km: Optional[float] = None

    @classmethod
    def from_party(cls, party, default_radius_km: float) -> Optional["DriverZone"]:
        """Build the zone declared on a driver row, or None if it has none."""
        if party.zone_polygon:
            ring = party.zone_polygon
            # Accept a GeoJSON coordinates array ([[ring]]) as well as a bare ring.
            if ring and isinstance(ring[0], (list, tuple)) and ring[0] and isinstance(
                ring[0][0], (list, tuple)
            ):
                ring = ring[0]
            return cls(polygon=tuple((float(p[0]), float(p[1])) for p in ring))
        if party.zone_center_lat is not None and party.zone_center_lng is not None:
            radius = (
                float(party.zone_radius_km)
                if party.zone_radius_km is not None
                else default_radius_km
            )
            return cls(
                center=(party.zone_center_lat, party.zone_center_lng),
                radius_km=radius,
            )
        return None

    def contains(self, point: LatLng) -> bool:
        if self.polygon:
            return point_in_polygon(point, self.polygon)
        if self.center is not None and self.radius_km is not None:
            return haversine_km(self.center, point) <= self.radius_km
        return False
