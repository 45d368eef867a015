"""Geofence registry: named circular zones with a safety classification.

Zones are written by the authority console and read by the detection
engine. Membership is a haversine distance test against the zone radius;
zones may overlap and every match is returned, nearest centre first.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from pathlib import Path

from safety_engine.config import ZONE_WEIGHTS
from safety_engine.errors import UnknownZoneError
from safety_engine.geo import destination, haversine_m
from safety_engine.models import (
    SAFETY_RESTRICTIVENESS,
    GeofenceZone,
    HeatMapPoint,
    SafetyLevel,
)

log = logging.getLogger(__name__)

HEAT_RING_FRACTION = 0.8


def distance_to_center_m(zone: GeofenceZone, lat: float, lng: float) -> float:
    return haversine_m(zone.center.lat, zone.center.lng, lat, lng)


def most_restrictive(zones: Iterable[GeofenceZone]) -> GeofenceZone | None:
    """dangerous > moderate > safe; ties keep the earlier (nearer) zone."""
    best: GeofenceZone | None = None
    for zone in zones:
        if best is None or (
            SAFETY_RESTRICTIVENESS[zone.safety_level] > SAFETY_RESTRICTIVENESS[best.safety_level]
        ):
            best = zone
    return best


class GeofenceRegistry:
    def __init__(self, zones: Iterable[GeofenceZone] = ()) -> None:
        self._zones: dict[str, GeofenceZone] = {}
        self._lock = threading.Lock()
        for zone in zones:
            self.upsert_zone(zone)

    # -- CRUD -------------------------------------------------------------

    def upsert_zone(self, zone: GeofenceZone) -> GeofenceZone:
        with self._lock:
            existed = zone.id in self._zones
            self._zones[zone.id] = zone
        log.info(
            "%s zone %s '%s' (%s, r=%.0fm)",
            "Updated" if existed else "Added",
            zone.id, zone.name, zone.safety_level.value, zone.radius_m,
        )
        return zone

    def remove_zone(self, zone_id: str) -> GeofenceZone:
        with self._lock:
            zone = self._zones.pop(zone_id, None)
        if zone is None:
            raise UnknownZoneError(zone_id)
        log.info("Removed zone %s '%s'", zone.id, zone.name)
        return zone

    def get_zone(self, zone_id: str) -> GeofenceZone:
        with self._lock:
            zone = self._zones.get(zone_id)
        if zone is None:
            raise UnknownZoneError(zone_id)
        return zone

    def list_zones(self, safety_level: SafetyLevel | None = None) -> list[GeofenceZone]:
        with self._lock:
            zones = list(self._zones.values())
        if safety_level is not None:
            zones = [z for z in zones if z.safety_level == safety_level]
        return sorted(zones, key=lambda z: z.id)

    def __len__(self) -> int:
        return len(self._zones)

    # -- membership -------------------------------------------------------

    def zones_containing(self, lat: float, lng: float) -> list[GeofenceZone]:
        """Every zone whose radius covers the point, ascending distance to centre."""
        with self._lock:
            zones = list(self._zones.values())
        matches: list[tuple[float, str, GeofenceZone]] = []
        for zone in zones:
            dist = distance_to_center_m(zone, lat, lng)
            if dist <= zone.radius_m:
                matches.append((dist, zone.id, zone))
        matches.sort(key=lambda m: (m[0], m[1]))
        return [zone for _, _, zone in matches]

    def most_restrictive_at(self, lat: float, lng: float) -> GeofenceZone | None:
        return most_restrictive(self.zones_containing(lat, lng))

    # -- heat map ---------------------------------------------------------

    def heat_map(
        self,
        points_per_zone: int = 10,
        safety_level: SafetyLevel | None = None,
    ) -> list[HeatMapPoint]:
        """Weighted points spread evenly on a ring inside each zone."""
        points: list[HeatMapPoint] = []
        for zone in self.list_zones(safety_level):
            weight = ZONE_WEIGHTS[zone.safety_level.value]
            ring = zone.radius_m * HEAT_RING_FRACTION
            for i in range(points_per_zone):
                lat, lng = destination(zone.center.lat, zone.center.lng, ring, 360.0 * i / points_per_zone)
                points.append(HeatMapPoint(lat=lat, lng=lng, weight=weight, zone_id=zone.id))
        return points


def load_zones(path: str | Path) -> list[GeofenceZone]:
    """Read a JSON list of zones (the format ``GeofenceZone`` dumps to)."""
    with open(path, encoding="utf-8") as f:
        raw = json.load(f)
    return [GeofenceZone.model_validate(item) for item in raw]
