"""Unit tests for the haversine distance and route fallback."""

import pytest

from src.domain.distance import estimate_route, haversine_m


class TestHaversine:
    def test_same_point_is_zero(self):
        assert haversine_m(14.5849, 121.0563, 14.5849, 121.0563) == 0.0

    def test_one_degree_of_latitude(self):
        # ~111.2 km everywhere along a meridian
        assert haversine_m(0, 0, 1, 0) == pytest.approx(111_195, rel=1e-3)

    def test_symmetric(self):
        a = haversine_m(14.5849, 121.0563, 14.5509, 121.0503)
        b = haversine_m(14.5509, 121.0503, 14.5849, 121.0563)
        assert a == pytest.approx(b)

    def test_megamall_to_bgc(self):
        assert haversine_m(14.5849, 121.0563, 14.5509, 121.0503) == pytest.approx(
            3_830, rel=0.02
        )


class TestEstimateRoute:
    def test_applies_road_factor_and_speed(self):
        straight = haversine_m(0, 0, 0.1, 0)
        distance, duration = estimate_route(0, 0, 0.1, 0, road_factor=1.5, average_speed_kmh=36)
        assert distance == pytest.approx(straight * 1.5, abs=0.1)
        # 36 km/h is 10 m/s
        assert duration == pytest.approx(distance / 10, abs=0.1)

    def test_zero_length_route(self):
        assert estimate_route(1, 1, 1, 1) == (0.0, 0.0)
