"""Anomaly detection engine.

Evaluates a tourist snapshot against their behavioral profile, the route
registry and the geofence registry. Six independent evaluators each emit at
most one ``AnomalyCandidate`` per cycle:

- route deviation    distance from the nearest preferred-route polyline
- inactivity         time since the last recorded activity
- speed anomaly      current speed against the smoothed baseline
- zone breach        membership in a dangerous geofence
- communication loss no pings while the device is otherwise active
- panic pattern      direction reversals / speed oscillation in a short window

Evaluators never merge: two signals for the same tourist in the same cycle
produce two candidates, and deduplication is left to the alert manager.

Speed anomaly and panic pattern describe a single motion event, so they
only run for a sample that has not been evaluated before. The other four
describe a persisting condition and run on every cycle.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

from safety_engine.config import (
    COMMUNICATION_LOSS_CONFIDENCE,
    COMMUNICATION_WINDOW,
    INACTIVITY_CONFIDENCE,
    ROUTE_CONFIDENCE_CEILING,
    ROUTE_CONFIDENCE_FLOOR,
    SPEED_CONFIDENCE,
    ZONE_BREACH_CONFIDENCE,
    DetectionConfig,
)
from safety_engine.geo import angle_between, bearing_deg, nearest_polyline_distance_m
from safety_engine.geofence import GeofenceRegistry, most_restrictive
from safety_engine.models import (
    ActivityPattern,
    AnomalyCandidate,
    AnomalyType,
    GeofenceZone,
    LocationPoint,
    SafetyLevel,
    Severity,
)
from safety_engine.profiles import TouristSnapshot, observed_speed
from safety_engine.routes import RouteRegistry

Evaluator = Callable[[TouristSnapshot, datetime], "AnomalyCandidate | None"]


# ── Pure classification rules ────────────────────────────────────────────────

def classify_route_deviation(
    distance_m: float, config: DetectionConfig,
) -> tuple[Severity, float] | None:
    """Severity and confidence for a corridor distance, or None if within it."""
    threshold = config.route_deviation_threshold_m
    if distance_m <= threshold:
        return None
    if distance_m > config.route_high_m:
        severity = Severity.HIGH
    elif distance_m > config.route_medium_m:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW
    # 0.7 at the threshold, rising linearly to 1.0 at twice the threshold
    span = ROUTE_CONFIDENCE_CEILING - ROUTE_CONFIDENCE_FLOOR
    confidence = ROUTE_CONFIDENCE_FLOOR + span * (distance_m / threshold - 1.0)
    confidence = max(ROUTE_CONFIDENCE_FLOOR, min(ROUTE_CONFIDENCE_CEILING, confidence))
    return severity, round(confidence, 3)


def classify_inactivity(idle: timedelta, config: DetectionConfig) -> Severity | None:
    if idle <= config.inactivity_threshold:
        return None
    if idle > config.inactivity_high_threshold:
        return Severity.HIGH
    return Severity.MEDIUM


def classify_speed(current_kmh: float, baseline_kmh: float, config: DetectionConfig) -> Severity | None:
    if baseline_kmh <= 0:
        return None
    diff = abs(current_kmh - baseline_kmh)
    if diff <= config.speed_anomaly_ratio * baseline_kmh:
        return None
    if diff > config.speed_high_ratio * baseline_kmh:
        return Severity.HIGH
    return Severity.MEDIUM


def classify_zone(zone: GeofenceZone, config: DetectionConfig) -> Severity | None:
    if zone.safety_level != SafetyLevel.DANGEROUS:
        return None
    if len(zone.risk_factors) >= config.zone_critical_risk_factors:
        return Severity.CRITICAL
    return Severity.HIGH


def _window(points: Sequence[LocationPoint], span: timedelta) -> int:
    """Index of the first point inside the trailing ``span`` of the series."""
    start = points[-1].timestamp - span
    for i, p in enumerate(points):
        if p.timestamp >= start:
            return i
    return len(points)


def count_direction_reversals(points: Sequence[LocationPoint], config: DetectionConfig) -> int:
    """Sharp heading changes between consecutive legs inside the panic window."""
    if len(points) < 2:
        return 0
    first = max(1, _window(points, config.panic_window))
    headings: list[float] = []
    for i in range(first, len(points)):
        prev, cur = points[i - 1], points[i]
        if cur.heading_deg is not None:
            headings.append(cur.heading_deg)
        elif (prev.lat, prev.lng) != (cur.lat, cur.lng):
            headings.append(bearing_deg(prev.lat, prev.lng, cur.lat, cur.lng))
    return sum(
        1 for a, b in zip(headings, headings[1:])
        if angle_between(a, b) >= config.panic_reversal_angle_deg
    )


def count_speed_oscillations(points: Sequence[LocationPoint], config: DetectionConfig) -> int:
    """Sign flips between consecutive significant speed changes in the window."""
    if len(points) < 3:
        return 0
    first = _window(points, config.panic_window)
    speeds: list[float] = []
    for i in range(first, len(points)):
        speed = observed_speed(points[i - 1] if i > 0 else None, points[i])
        if speed is not None:
            speeds.append(speed)
    swings = [
        b - a for a, b in zip(speeds, speeds[1:])
        if abs(b - a) >= config.panic_speed_swing_kmh
    ]
    return sum(1 for a, b in zip(swings, swings[1:]) if (a > 0) != (b > 0))


# ── Engine ───────────────────────────────────────────────────────────────────

class AnomalyDetector:
    """Runs every evaluator over one tourist snapshot."""

    def __init__(
        self,
        zones: GeofenceRegistry,
        routes: RouteRegistry,
        config: DetectionConfig | None = None,
    ) -> None:
        self._zones = zones
        self._routes = routes
        self._config = config or DetectionConfig()
        # (evaluator, per_sample): per-sample evaluators judge one motion
        # event and only run when a sample arrived since the last evaluation
        self._evaluators: list[tuple[Evaluator, bool]] = [
            (self.route_deviation, False),
            (self.inactivity, False),
            (self.speed_anomaly, True),
            (self.zone_breach, False),
            (self.communication_loss, False),
            (self.panic_pattern, True),
        ]
        self._consumed: dict[str, LocationPoint] = {}
        self._consumed_lock = threading.Lock()

    def evaluate(self, snapshot: TouristSnapshot, now: datetime) -> list[AnomalyCandidate]:
        if len(snapshot.points) < 2:
            return []
        fresh = self._consume(snapshot)
        candidates: list[AnomalyCandidate] = []
        for evaluator, per_sample in self._evaluators:
            if per_sample and not fresh:
                continue
            candidate = evaluator(snapshot, now)
            if candidate is not None:
                candidates.append(candidate)
        return candidates

    def forget(self, tourist_id: str) -> None:
        """Drop per-tourist bookkeeping (tourist left monitoring)."""
        with self._consumed_lock:
            self._consumed.pop(tourist_id, None)

    def _consume(self, snapshot: TouristSnapshot) -> bool:
        """Mark the latest sample as evaluated; False if it already was."""
        latest = snapshot.latest
        with self._consumed_lock:
            if self._consumed.get(snapshot.tourist_id) is latest:
                return False
            self._consumed[snapshot.tourist_id] = latest
            return True

    def _candidate(
        self,
        snapshot: TouristSnapshot,
        now: datetime,
        anomaly_type: AnomalyType,
        severity: Severity,
        confidence: float,
        description: str,
    ) -> AnomalyCandidate:
        return AnomalyCandidate(
            type=anomaly_type,
            tourist_id=snapshot.tourist_id,
            location=snapshot.latest,
            description=description,
            confidence=confidence,
            severity=severity,
            detected_at=now,
        )

    # -- evaluators -------------------------------------------------------

    def route_deviation(self, snapshot: TouristSnapshot, now: datetime) -> AnomalyCandidate | None:
        polylines = self._routes.polylines(snapshot.profile.preferred_route_ids)
        latest = snapshot.latest
        distance = nearest_polyline_distance_m((latest.lat, latest.lng), polylines)
        if distance is None:
            return None
        result = classify_route_deviation(distance, self._config)
        if result is None:
            return None
        severity, confidence = result
        return self._candidate(
            snapshot, now, AnomalyType.ROUTE_DEVIATION, severity, confidence,
            f"Tourist deviated {distance:.0f}m from planned route",
        )

    def inactivity(self, snapshot: TouristSnapshot, now: datetime) -> AnomalyCandidate | None:
        last = snapshot.profile.last_activity_timestamp
        if last is None:
            return None
        idle = now - last
        severity = classify_inactivity(idle, self._config)
        if severity is None:
            return None
        return self._candidate(
            snapshot, now, AnomalyType.INACTIVITY, severity, INACTIVITY_CONFIDENCE,
            f"No activity detected for {idle.total_seconds() / 3600:.1f} hours",
        )

    def speed_anomaly(self, snapshot: TouristSnapshot, now: datetime) -> AnomalyCandidate | None:
        baseline = snapshot.reference_speed_kmh
        current = observed_speed(snapshot.previous, snapshot.latest)
        if baseline is None or current is None:
            return None
        severity = classify_speed(current, baseline, self._config)
        if severity is None:
            return None
        return self._candidate(
            snapshot, now, AnomalyType.SPEED_ANOMALY, severity, SPEED_CONFIDENCE,
            f"Unusual speed detected: {current:.0f}km/h (normal: {baseline:.0f}km/h)",
        )

    def zone_breach(self, snapshot: TouristSnapshot, now: datetime) -> AnomalyCandidate | None:
        latest = snapshot.latest
        zone = most_restrictive(self._zones.zones_containing(latest.lat, latest.lng))
        if zone is None:
            return None
        severity = classify_zone(zone, self._config)
        if severity is None:
            return None
        factors = ", ".join(zone.risk_factors) or "none listed"
        return self._candidate(
            snapshot, now, AnomalyType.ZONE_BREACH, severity, ZONE_BREACH_CONFIDENCE,
            f"Entered dangerous zone '{zone.name}' (risk factors: {factors})",
        )

    def communication_loss(self, snapshot: TouristSnapshot, now: datetime) -> AnomalyCandidate | None:
        profile = snapshot.profile
        if profile.last_communication_at is None:
            return None
        if profile.activity_pattern != ActivityPattern.ACTIVE:
            return None
        if profile.communication_frequency_per_hour > 0:
            return None
        silence = now - profile.last_communication_at
        if silence <= COMMUNICATION_WINDOW + self._config.communication_loss_grace:
            return None
        return self._candidate(
            snapshot, now, AnomalyType.COMMUNICATION_LOSS, Severity.HIGH,
            COMMUNICATION_LOSS_CONFIDENCE,
            f"No communication for {silence.total_seconds() / 60:.0f} minutes "
            f"while location updates continue",
        )

    def panic_pattern(self, snapshot: TouristSnapshot, now: datetime) -> AnomalyCandidate | None:
        cfg = self._config
        reversals = count_direction_reversals(snapshot.points, cfg)
        oscillations = count_speed_oscillations(snapshot.points, cfg)
        signals: list[str] = []
        if reversals >= cfg.panic_min_reversals:
            signals.append(f"{reversals} direction reversals")
        if oscillations >= cfg.panic_min_oscillations:
            signals.append(f"{oscillations} speed oscillations")
        if not signals:
            return None
        confidence = min(1.0, 0.6 + 0.1 * (reversals + oscillations))
        window_s = int(cfg.panic_window.total_seconds())
        return self._candidate(
            snapshot, now, AnomalyType.PANIC_PATTERN, Severity.CRITICAL, round(confidence, 3),
            f"Erratic movement: {' and '.join(signals)} within {window_s}s",
        )
