"""
Unit tests for zone containment.
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from cylinderhub.services.dispatch.geofence import (
    DriverZone,
    haversine_km,
    point_in_polygon,
)

# GeoJSON-ordered ([lng, lat]) square around central Karachi.
SQUARE = [[66.95, 24.80], [67.05, 24.80], [67.05, 24.90], [66.95, 24.90]]


def driver_row(**fields):
    defaults = dict(
        zone_polygon=None,
        zone_center_lat=None,
        zone_center_lng=None,
        zone_radius_km=None,
    )
    defaults.update(fields)
    return SimpleNamespace(**defaults)


class TestPointInPolygon:
    def test_point_inside_square(self):
        assert point_in_polygon((24.86, 67.00), SQUARE)

    def test_point_outside_square(self):
        assert not point_in_polygon((31.52, 74.35), SQUARE)

    def test_point_just_outside_edge(self):
        assert not point_in_polygon((24.86, 67.051), SQUARE)

    def test_closed_ring_behaves_like_open_ring(self):
        closed = SQUARE + [SQUARE[0]]
        assert point_in_polygon((24.86, 67.00), closed)
        assert not point_in_polygon((24.95, 67.00), closed)

    def test_concave_polygon_notch_is_outside(self):
        # U shape opening north; the notch between the arms is outside.
        ring = [
            [0.0, 0.0],
            [3.0, 0.0],
            [3.0, 3.0],
            [2.0, 3.0],
            [2.0, 1.0],
            [1.0, 1.0],
            [1.0, 3.0],
            [0.0, 3.0],
        ]
        assert point_in_polygon((2.0, 0.5), ring)
        assert not point_in_polygon((2.0, 1.5), ring)
        assert point_in_polygon((2.0, 2.5), ring)

    @pytest.mark.parametrize("ring", [[], [[0, 0]], [[0, 0], [1, 1]]])
    def test_degenerate_rings_contain_nothing(self, ring):
        assert not point_in_polygon((0.0, 0.0), ring)


class TestHaversine:
    def test_zero_distance(self):
        assert haversine_km((24.86, 67.00), (24.86, 67.00)) == 0

    def test_karachi_to_lahore(self):
        distance = haversine_km((24.8607, 67.0011), (31.5204, 74.3587))
        assert 1000 < distance < 1060

    def test_symmetry(self):
        a, b = (24.86, 67.00), (24.90, 67.10)
        assert haversine_km(a, b) == pytest.approx(haversine_km(b, a))


class TestDriverZone:
    def test_polygon_zone_from_party(self):
        zone = DriverZone.from_party(driver_row(zone_polygon=SQUARE), default_radius_km=10)

        assert zone.polygon is not None
        assert zone.contains((24.86, 67.00))
        assert not zone.contains((31.52, 74.35))

    def test_geojson_coordinates_array_is_unwrapped(self):
        zone = DriverZone.from_party(driver_row(zone_polygon=[SQUARE]), default_radius_km=10)

        assert zone.contains((24.86, 67.00))

    def test_radius_zone_uses_declared_radius(self):
        zone = DriverZone.from_party(
            driver_row(
                zone_center_lat=24.86,
                zone_center_lng=67.00,
                zone_radius_km=Decimal("2"),
            ),
            default_radius_km=50,
        )

        assert zone.radius_km == 2
        assert zone.contains((24.87, 67.00))
        assert not zone.contains((24.90, 67.00))

    def test_radius_zone_falls_back_to_default(self):
        zone = DriverZone.from_party(
            driver_row(zone_center_lat=24.86, zone_center_lng=67.00),
            default_radius_km=10,
        )

        assert zone.radius_km == 10
        assert zone.contains((24.90, 67.00))

    def test_polygon_wins_over_center(self):
        zone = DriverZone.from_party(
            driver_row(zone_polygon=SQUARE, zone_center_lat=0.0, zone_center_lng=0.0),
            default_radius_km=10,
        )

        assert zone.polygon is not None
        assert zone.center is None

    def test_party_without_zone(self):
        assert DriverZone.from_party(driver_row(), default_radius_km=10) is None
