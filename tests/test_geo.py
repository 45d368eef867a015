"""Tests for the geometry helpers."""

from __future__ import annotations

import pytest

from safety_engine.geo import (
    angle_between,
    bearing_deg,
    destination,
    haversine_m,
    nearest_polyline_distance_m,
    point_segment_distance_m,
    polyline_distance_m,
    speed_kmh,
)


class TestHaversine:
    def test_zero_distance(self):
        assert haversine_m(30.0, 78.0, 30.0, 78.0) == 0.0

    def test_one_degree_of_latitude(self):
        assert haversine_m(30.0, 78.0, 31.0, 78.0) == pytest.approx(111_195, rel=1e-3)

    def test_symmetric(self):
        a = haversine_m(30.1089, 78.2932, 30.7346, 79.0669)
        b = haversine_m(30.7346, 79.0669, 30.1089, 78.2932)
        assert a == pytest.approx(b)


class TestBearings:
    def test_due_north_and_east(self):
        assert bearing_deg(30.0, 78.0, 30.1, 78.0) == pytest.approx(0.0, abs=1e-6)
        assert bearing_deg(0.0, 0.0, 0.0, 1.0) == pytest.approx(90.0, abs=1e-6)

    def test_angle_between_wraps(self):
        assert angle_between(350.0, 10.0) == pytest.approx(20.0)
        assert angle_between(0.0, 180.0) == pytest.approx(180.0)
        assert angle_between(90.0, 90.0) == 0.0

    def test_destination_round_trips_distance(self):
        lat, lng = destination(30.0, 78.0, 500.0, 45.0)
        assert haversine_m(30.0, 78.0, lat, lng) == pytest.approx(500.0, abs=0.5)


class TestPolylineDistance:
    def test_perpendicular_distance_to_segment(self):
        a, b = (30.0, 78.0), (30.01, 78.0)
        lat, lng = destination(30.005, 78.0, 250.0, 90.0)
        assert point_segment_distance_m((lat, lng), a, b) == pytest.approx(250.0, abs=1.0)

    def test_beyond_segment_end_uses_endpoint(self):
        a, b = (30.0, 78.0), (30.01, 78.0)
        lat, lng = destination(30.01, 78.0, 300.0, 0.0)
        assert point_segment_distance_m((lat, lng), a, b) == pytest.approx(300.0, abs=1.0)

    def test_degenerate_segment(self):
        p = destination(30.0, 78.0, 120.0, 180.0)
        assert point_segment_distance_m(p, (30.0, 78.0), (30.0, 78.0)) == pytest.approx(120.0, abs=0.5)

    def test_single_vertex_polyline(self):
        p = destination(30.0, 78.0, 80.0, 270.0)
        assert polyline_distance_m(p, [(30.0, 78.0)]) == pytest.approx(80.0, abs=0.5)

    def test_empty_polyline_rejected(self):
        with pytest.raises(ValueError):
            polyline_distance_m((30.0, 78.0), [])

    def test_nearest_of_several(self):
        near = [(30.0, 78.0), (30.01, 78.0)]
        far = [(31.0, 79.0), (31.01, 79.0)]
        p = destination(30.005, 78.0, 150.0, 90.0)
        assert nearest_polyline_distance_m(p, [far, near]) == pytest.approx(150.0, abs=1.0)

    def test_no_polylines(self):
        assert nearest_polyline_distance_m((30.0, 78.0), []) is None


class TestSpeed:
    def test_walking_pace(self):
        lat, lng = destination(30.0, 78.0, 100.0, 0.0)
        # 100 m in 72 s is 5 km/h
        assert speed_kmh(30.0, 78.0, 0.0, lat, lng, 72.0) == pytest.approx(5.0, rel=1e-3)

    def test_non_positive_interval(self):
        assert speed_kmh(30.0, 78.0, 10.0, 30.1, 78.0, 10.0) is None
        assert speed_kmh(30.0, 78.0, 10.0, 30.1, 78.0, 5.0) is None
