"""Safety monitor: the boundary of the engine.

Wires the profile store, route and geofence registries, detection engine,
alert manager and emergency controller together, and exposes the inbound
calls the service layer (or any other transport) uses. Outbound events go
to whatever ``Notifier`` sinks are attached.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

from safety_engine.alerting import AlertManager
from safety_engine.config import SEVERITY_WEIGHTS, ZONE_WEIGHTS, DetectionConfig
from safety_engine.detection import AnomalyDetector
from safety_engine.errors import StaleLocationError, UnknownTouristError
from safety_engine.escalation import EmergencyController
from safety_engine.geofence import GeofenceRegistry
from safety_engine.models import (
    Alert,
    BehavioralProfile,
    DispatchRecord,
    EmergencyEscalation,
    EngineStats,
    EscalationState,
    GeofenceZone,
    IngestResult,
    LocationPoint,
    Route,
    SafetyLevel,
    Severity,
    TouristOverview,
    TouristStatus,
    as_utc,
    utc_now,
)
from safety_engine.notifications import LoggingNotifier, Notifier, NotifierGroup
from safety_engine.profiles import ProfileStore
from safety_engine.routes import RouteRegistry

log = logging.getLogger(__name__)


class SafetyMonitor:
    """Facade over the whole anomaly-detection and alerting engine."""

    def __init__(
        self,
        config: DetectionConfig | None = None,
        notifiers: Iterable[Notifier] | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        zones: Iterable[GeofenceZone] = (),
        routes: Iterable[Route] = (),
        max_workers: int | None = None,
    ) -> None:
        self.config = config or DetectionConfig()
        self._clock = clock
        self._max_workers = max_workers

        sinks = list(notifiers) if notifiers is not None else [LoggingNotifier()]
        self.notifier = NotifierGroup(sinks)

        self.profiles = ProfileStore(self.config)
        self.zones = GeofenceRegistry(zones)
        self.routes = RouteRegistry(routes)
        self.detector = AnomalyDetector(self.zones, self.routes, self.config)
        self.alerts = AlertManager(self.config, self.notifier, clock)
        self.emergencies = EmergencyController(
            notifier=self.notifier,
            location_lookup=self.profiles.last_location,
            countdown_seconds=self.config.sos_countdown_seconds,
            clock=monotonic,
            wall_clock=clock,
        )

        self._monitoring = True
        self._stats_lock = threading.Lock()
        self._anomalies_detected = 0
        self._stale_dropped = 0

    # -- ingest -----------------------------------------------------------

    def ingest_location(self, tourist_id: str, point: LocationPoint) -> IngestResult:
        """Record a sample (creating the profile if needed) and evaluate it.

        Out-of-order samples are dropped and reported as not accepted.
        """
        try:
            self.profiles.record_location(tourist_id, point)
        except StaleLocationError as exc:
            with self._stats_lock:
                self._stale_dropped += 1
            log.warning("Dropped stale sample: %s", exc)
            return IngestResult(tourist_id=tourist_id, accepted=False, reason=str(exc))

        alerts = self.run_cycle(tourist_id)
        return IngestResult(tourist_id=tourist_id, accepted=True, alerts=alerts)

    def ingest_communication_ping(
        self, tourist_id: str, timestamp: datetime | None = None,
    ) -> BehavioralProfile:
        return self.profiles.record_communication(
            tourist_id, as_utc(timestamp) if timestamp else self._clock(),
        )

    # -- detection cycles -------------------------------------------------

    def run_cycle(self, tourist_id: str, now: datetime | None = None) -> list[Alert]:
        """One evaluation cycle for one tourist; returns the alerts it created."""
        now = now or self._clock()
        if not self._monitoring:
            return []

        snapshot = self.profiles.snapshot(tourist_id, now)
        candidates = self.detector.evaluate(snapshot, now)
        with self._stats_lock:
            self._anomalies_detected += len(candidates)

        created: list[Alert] = []
        for candidate in candidates:
            alert = self.alerts.submit(candidate)
            if alert is not None:
                created.append(alert)

        if snapshot.latest is not None:
            self._refresh_risk(tourist_id, snapshot.latest)
        return created

    def run_all_cycles(self, now: datetime | None = None) -> dict[str, list[Alert]]:
        """Evaluate every monitored tourist in parallel."""
        now = now or self._clock()
        tourist_ids = self.profiles.tourist_ids()
        if not tourist_ids or not self._monitoring:
            return {}
        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            results = list(pool.map(lambda tid: self._cycle_or_skip(tid, now), tourist_ids))
        return dict(zip(tourist_ids, results))

    def _cycle_or_skip(self, tourist_id: str, now: datetime) -> list[Alert]:
        try:
            return self.run_cycle(tourist_id, now)
        except UnknownTouristError:
            # Archived between listing and evaluation
            return []

    def _refresh_risk(self, tourist_id: str, latest: LocationPoint) -> None:
        zone = self.zones.most_restrictive_at(latest.lat, latest.lng)
        zone_weight = ZONE_WEIGHTS[zone.safety_level.value] if zone else 0.0
        alert_weight = max(
            (SEVERITY_WEIGHTS[a.severity.value] for a in self.alerts.open_alerts(tourist_id)),
            default=0.0,
        )
        try:
            self.profiles.update_risk_level(tourist_id, max(zone_weight, alert_weight))
        except UnknownTouristError:
            pass

    def pause(self) -> None:
        self._monitoring = False
        log.info("Monitoring paused")

    def resume(self) -> None:
        self._monitoring = True
        log.info("Monitoring resumed")

    @property
    def monitoring(self) -> bool:
        return self._monitoring

    def now(self) -> datetime:
        return self._clock()

    # -- emergency --------------------------------------------------------

    def trigger_sos(self, tourist_id: str) -> EmergencyEscalation:
        return self.emergencies.trigger_sos(tourist_id)

    def cancel_sos(self, tourist_id: str) -> bool:
        return self.emergencies.cancel_sos(tourist_id)

    def tick_emergencies(self) -> list[DispatchRecord]:
        return self.emergencies.tick()

    def sos_state(self, tourist_id: str) -> EscalationState:
        return self.emergencies.state(tourist_id)

    # -- operator alert actions -------------------------------------------

    def acknowledge_alert(self, alert_id: str) -> Alert:
        return self.alerts.acknowledge(alert_id)

    def investigate_alert(self, alert_id: str) -> Alert:
        return self.alerts.investigate(alert_id)

    def resolve_alert(self, alert_id: str) -> Alert:
        return self.alerts.resolve(alert_id)

    # -- authority console: zones & routes --------------------------------

    def upsert_zone(self, zone: GeofenceZone) -> GeofenceZone:
        return self.zones.upsert_zone(zone)

    def remove_zone(self, zone_id: str) -> GeofenceZone:
        return self.zones.remove_zone(zone_id)

    def get_zone(self, zone_id: str) -> GeofenceZone:
        return self.zones.get_zone(zone_id)

    def list_zones(self, safety_level: SafetyLevel | None = None) -> list[GeofenceZone]:
        return self.zones.list_zones(safety_level)

    def register_route(self, route: Route) -> Route:
        return self.routes.register(route)

    def remove_route(self, route_id: str) -> Route:
        return self.routes.remove(route_id)

    def set_preferred_routes(self, tourist_id: str, route_ids: Iterable[str]) -> BehavioralProfile:
        return self.profiles.set_preferred_routes(tourist_id, list(route_ids))

    # -- tourists ---------------------------------------------------------

    def get_profile(self, tourist_id: str) -> BehavioralProfile:
        return self.profiles.get_profile(tourist_id)

    def exit_monitoring(self, tourist_id: str) -> BehavioralProfile:
        profile = self.profiles.archive(tourist_id, self._clock())
        self.detector.forget(tourist_id)
        return profile

    def tourist_overview(self, tourist_id: str, now: datetime | None = None) -> TouristOverview:
        now = now or self._clock()
        profile = self.profiles.get_profile(tourist_id)
        position = self.profiles.last_location(tourist_id)
        open_alerts = self.alerts.open_alerts(tourist_id)

        zone = self.zones.most_restrictive_at(position.lat, position.lng) if position else None
        worst = max((a.severity.rank for a in open_alerts), default=-1)

        if worst >= Severity.HIGH.rank or (zone and zone.safety_level == SafetyLevel.DANGEROUS):
            status = TouristStatus.DANGER
        elif (
            profile.last_activity_timestamp is None
            or now - profile.last_activity_timestamp > self.config.inactivity_threshold
        ):
            status = TouristStatus.OFFLINE
        elif worst >= 0 or (zone and zone.safety_level == SafetyLevel.MODERATE):
            status = TouristStatus.WARNING
        else:
            status = TouristStatus.SAFE

        return TouristOverview(
            tourist_id=tourist_id,
            status=status,
            position=position,
            current_zone=zone.name if zone else None,
            risk_level=profile.risk_level,
            activity_pattern=profile.activity_pattern,
            open_alerts=len(open_alerts),
            last_seen=profile.last_activity_timestamp,
        )

    def stats(self, now: datetime | None = None) -> EngineStats:
        now = now or self._clock()
        active = 0
        for tourist_id in self.profiles.tourist_ids():
            try:
                last = self.profiles.get_profile(tourist_id).last_activity_timestamp
            except UnknownTouristError:
                continue
            if last is not None and now - last < self.config.inactivity_high_threshold:
                active += 1
        with self._stats_lock:
            anomalies, stale = self._anomalies_detected, self._stale_dropped
        return EngineStats(
            total_tourists=len(self.profiles),
            active_monitoring=active,
            archived_tourists=len(self.profiles.archived_ids()),
            anomalies_detected=anomalies,
            alerts_created=self.alerts.created_count,
            alerts_suppressed=self.alerts.suppressed_count,
            open_alerts=len(self.alerts.open_alerts()),
            stale_samples_dropped=stale,
            emergencies_active=len(self.emergencies.active()),
            emergencies_dispatched=self.emergencies.dispatched_count,
            monitoring=self._monitoring,
        )
