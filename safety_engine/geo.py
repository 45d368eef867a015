"""Great-circle and local planar geometry helpers.

Distances are in metres, speeds in km/h, bearings in degrees clockwise
from north. Point-to-segment distances use an equirectangular projection
centred on the query point, which is accurate to well under a metre at the
few-kilometre scales route corridors live at.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence

EARTH_RADIUS_M = 6_371_000.0

LatLng = tuple[float, float]


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def bearing_deg(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Initial bearing from point 1 to point 2, in [0, 360)."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dlmb = math.radians(lng2 - lng1)
    y = math.sin(dlmb) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlmb)
    return math.degrees(math.atan2(y, x)) % 360.0


def angle_between(a: float, b: float) -> float:
    """Smallest absolute difference between two headings, in [0, 180]."""
    diff = abs(a - b) % 360.0
    return 360.0 - diff if diff > 180.0 else diff


def destination(lat: float, lng: float, distance_m: float, bearing: float) -> LatLng:
    """Point reached travelling ``distance_m`` from (lat, lng) on ``bearing``."""
    delta = distance_m / EARTH_RADIUS_M
    theta = math.radians(bearing)
    phi1 = math.radians(lat)
    lmb1 = math.radians(lng)
    phi2 = math.asin(
        math.sin(phi1) * math.cos(delta) + math.cos(phi1) * math.sin(delta) * math.cos(theta)
    )
    lmb2 = lmb1 + math.atan2(
        math.sin(theta) * math.sin(delta) * math.cos(phi1),
        math.cos(delta) - math.sin(phi1) * math.sin(phi2),
    )
    return math.degrees(phi2), (math.degrees(lmb2) + 540.0) % 360.0 - 180.0


def _project(origin: LatLng, point: LatLng) -> tuple[float, float]:
    x = math.radians(point[1] - origin[1]) * math.cos(math.radians(origin[0])) * EARTH_RADIUS_M
    y = math.radians(point[0] - origin[0]) * EARTH_RADIUS_M
    return x, y


def point_segment_distance_m(point: LatLng, a: LatLng, b: LatLng) -> float:
    """Perpendicular (or end-point) distance from ``point`` to segment a-b."""
    ax, ay = _project(point, a)
    bx, by = _project(point, b)
    dx, dy = bx - ax, by - ay
    seg_len_sq = dx * dx + dy * dy
    if seg_len_sq == 0.0:
        return math.hypot(ax, ay)
    # Query point is the projection origin, so it sits at (0, 0)
    t = max(0.0, min(1.0, -(ax * dx + ay * dy) / seg_len_sq))
    return math.hypot(ax + t * dx, ay + t * dy)


def polyline_distance_m(point: LatLng, polyline: Sequence[LatLng]) -> float:
    if not polyline:
        raise ValueError("polyline must have at least one vertex")
    if len(polyline) == 1:
        return haversine_m(point[0], point[1], polyline[0][0], polyline[0][1])
    return min(
        point_segment_distance_m(point, a, b)
        for a, b in zip(polyline, polyline[1:])
    )


def nearest_polyline_distance_m(point: LatLng, polylines: Iterable[Sequence[LatLng]]) -> float | None:
    """Distance to the closest of several polylines, or None when there are none."""
    distances = [polyline_distance_m(point, line) for line in polylines if line]
    return min(distances) if distances else None


def speed_kmh(lat1: float, lng1: float, t1: float, lat2: float, lng2: float, t2: float) -> float | None:
    """Average ground speed between two fixes given as epoch seconds."""
    dt = t2 - t1
    if dt <= 0:
        return None
    return haversine_m(lat1, lng1, lat2, lng2) / dt * 3.6
