"""Behavioral profile store and per-tourist location window.

Owns one ``BehavioralProfile`` per monitored tourist plus the bounded
window of recent ``LocationPoint``s it was derived from. Every mutation for
a tourist happens under that tourist's lock; different tourists never
contend with each other.
"""

from __future__ import annotations

import bisect
import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime

from safety_engine.config import COMMUNICATION_WINDOW, DetectionConfig
from safety_engine.errors import StaleLocationError, UnknownTouristError
from safety_engine.geo import speed_kmh
from safety_engine.models import ActivityPattern, BehavioralProfile, LocationPoint

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TouristSnapshot:
    """Consistent view of one tourist, taken under the tourist's lock."""

    profile: BehavioralProfile
    points: tuple[LocationPoint, ...]
    reference_speed_kmh: float | None   # baseline before the latest sample was folded in
    taken_at: datetime

    @property
    def tourist_id(self) -> str:
        return self.profile.tourist_id

    @property
    def latest(self) -> LocationPoint | None:
        return self.points[-1] if self.points else None

    @property
    def previous(self) -> LocationPoint | None:
        return self.points[-2] if len(self.points) >= 2 else None


def observed_speed(previous: LocationPoint | None, current: LocationPoint) -> float | None:
    """Reported speed when the device gives one, otherwise derived from the last fix."""
    if current.speed_kmh is not None:
        return current.speed_kmh
    if previous is None:
        return None
    return speed_kmh(
        previous.lat, previous.lng, previous.timestamp.timestamp(),
        current.lat, current.lng, current.timestamp.timestamp(),
    )


class ProfileStore:
    """In-memory store of behavioral profiles keyed by tourist id."""

    def __init__(self, config: DetectionConfig | None = None) -> None:
        self._config = config or DetectionConfig()
        self._profiles: dict[str, BehavioralProfile] = {}
        self._archived: dict[str, BehavioralProfile] = {}
        self._points: dict[str, deque[LocationPoint]] = {}
        self._activity: dict[str, deque[datetime]] = {}
        self._comms: dict[str, list[datetime]] = {}
        self._reference_speed: dict[str, float | None] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    # -- locking ----------------------------------------------------------

    def lock(self, tourist_id: str) -> threading.RLock:
        """Per-tourist exclusivity guard (re-entrant)."""
        with self._registry_lock:
            lock = self._locks.get(tourist_id)
            if lock is None:
                lock = self._locks[tourist_id] = threading.RLock()
            return lock

    def _known_lock(self, tourist_id: str) -> threading.RLock:
        """Lock of a tourist seen before; unknown ids never get one."""
        with self._registry_lock:
            lock = self._locks.get(tourist_id)
        if lock is None:
            raise UnknownTouristError(tourist_id)
        return lock

    # -- ingest -----------------------------------------------------------

    def record_location(self, tourist_id: str, point: LocationPoint) -> BehavioralProfile:
        """Append a sample and update the derived profile fields.

        Creates the profile on the first sample. Raises ``StaleLocationError``
        (without touching any state) when the sample is older than the last
        recorded one; equal timestamps are accepted.
        """
        with self.lock(tourist_id):
            points = self._points.get(tourist_id)
            if points and point.timestamp < points[-1].timestamp:
                raise StaleLocationError(tourist_id, point.timestamp, points[-1].timestamp)

            profile = self._profiles.get(tourist_id)
            if profile is None:
                profile = self._create(tourist_id, point.timestamp)
                points = self._points[tourist_id]

            speed = observed_speed(points[-1] if points else None, point)
            self._reference_speed[tourist_id] = (
                profile.baseline_speed_kmh if profile.speed_samples else None
            )
            if speed is not None:
                if profile.speed_samples == 0:
                    profile.baseline_speed_kmh = speed
                else:
                    alpha = self._config.speed_smoothing_factor
                    profile.baseline_speed_kmh = alpha * speed + (1 - alpha) * profile.baseline_speed_kmh
                profile.speed_samples += 1

            points.append(point)
            self._activity[tourist_id].append(point.timestamp)
            profile.last_activity_timestamp = point.timestamp
            profile.activity_pattern = self._derive_pattern(tourist_id, point.timestamp)
            return profile.model_copy(deep=True)

    def record_communication(self, tourist_id: str, timestamp: datetime) -> BehavioralProfile:
        with self._known_lock(tourist_id):
            profile = self._require(tourist_id)
            bisect.insort(self._comms[tourist_id], timestamp)
            if profile.last_communication_at is None or timestamp > profile.last_communication_at:
                profile.last_communication_at = timestamp
            if profile.last_activity_timestamp is None or timestamp > profile.last_activity_timestamp:
                profile.last_activity_timestamp = timestamp
            profile.communication_frequency_per_hour = self._comm_frequency(tourist_id, timestamp)
            return profile.model_copy(deep=True)

    # -- reads ------------------------------------------------------------

    def get_profile(self, tourist_id: str) -> BehavioralProfile:
        with self._known_lock(tourist_id):
            return self._require(tourist_id).model_copy(deep=True)

    def get_archived(self, tourist_id: str) -> BehavioralProfile:
        with self._known_lock(tourist_id):
            profile = self._archived.get(tourist_id)
            if profile is None:
                raise UnknownTouristError(tourist_id)
            return profile.model_copy(deep=True)

    def snapshot(self, tourist_id: str, now: datetime) -> TouristSnapshot:
        """Refresh time-dependent fields against ``now`` and freeze a copy."""
        with self._known_lock(tourist_id):
            profile = self._require(tourist_id)
            points = self._points[tourist_id]
            reference = max(now, points[-1].timestamp) if points else now
            profile.communication_frequency_per_hour = self._comm_frequency(tourist_id, now)
            profile.activity_pattern = self._derive_pattern(tourist_id, reference)
            return TouristSnapshot(
                profile=profile.model_copy(deep=True),
                points=tuple(points),
                reference_speed_kmh=self._reference_speed.get(tourist_id),
                taken_at=now,
            )

    def recent_locations(self, tourist_id: str) -> list[LocationPoint]:
        with self._known_lock(tourist_id):
            self._require(tourist_id)
            return list(self._points[tourist_id])

    def last_location(self, tourist_id: str) -> LocationPoint | None:
        """Last known position, or None for unknown tourists. Never raises."""
        try:
            lock = self._known_lock(tourist_id)
        except UnknownTouristError:
            return None
        with lock:
            points = self._points.get(tourist_id)
            return points[-1] if points else None

    def tourist_ids(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._profiles)

    def archived_ids(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._archived)

    def __contains__(self, tourist_id: object) -> bool:
        return tourist_id in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)

    # -- profile administration -------------------------------------------

    def set_preferred_routes(self, tourist_id: str, route_ids: set[str] | list[str]) -> BehavioralProfile:
        with self._known_lock(tourist_id):
            profile = self._require(tourist_id)
            profile.preferred_route_ids = set(route_ids)
            return profile.model_copy(deep=True)

    def update_risk_level(self, tourist_id: str, level: float) -> None:
        with self._known_lock(tourist_id):
            profile = self._require(tourist_id)
            profile.risk_level = max(0.0, min(100.0, level))

    def archive(self, tourist_id: str, at: datetime) -> BehavioralProfile:
        """Move a tourist out of active monitoring; the profile stays readable."""
        with self._known_lock(tourist_id):
            profile = self._require(tourist_id)
            profile.archived_at = at
            with self._registry_lock:
                self._archived[tourist_id] = self._profiles.pop(tourist_id)
            self._points.pop(tourist_id, None)
            self._activity.pop(tourist_id, None)
            self._comms.pop(tourist_id, None)
            self._reference_speed.pop(tourist_id, None)
            log.info("Archived profile for tourist %s", tourist_id)
            return profile.model_copy(deep=True)

    # -- internals --------------------------------------------------------

    def _require(self, tourist_id: str) -> BehavioralProfile:
        profile = self._profiles.get(tourist_id)
        if profile is None:
            raise UnknownTouristError(tourist_id)
        return profile

    def _create(self, tourist_id: str, first_seen: datetime) -> BehavioralProfile:
        archived = self._archived.get(tourist_id)
        if archived is not None:
            # Returning tourist: keep learned baseline and routes, restart the window
            profile = archived.model_copy(update={"archived_at": None, "first_seen_at": first_seen})
            log.info("Restored archived profile for tourist %s", tourist_id)
        else:
            profile = BehavioralProfile(tourist_id=tourist_id, first_seen_at=first_seen)
            log.info("Created behavioral profile for tourist %s", tourist_id)

        with self._registry_lock:
            self._archived.pop(tourist_id, None)
            self._profiles[tourist_id] = profile
        self._points[tourist_id] = deque(maxlen=self._config.location_window_size)
        self._activity[tourist_id] = deque()
        self._comms[tourist_id] = []
        self._reference_speed[tourist_id] = None
        return profile

    def _derive_pattern(self, tourist_id: str, reference: datetime) -> ActivityPattern:
        cfg = self._config
        samples = self._activity[tourist_id]
        window_start = reference - cfg.activity_window
        while samples and samples[0] < window_start:
            samples.popleft()

        observed_for = reference - self._profiles[tourist_id].first_seen_at
        span = max(min(cfg.activity_window, observed_for), cfg.active_interval)
        count = len(samples)
        if count * cfg.active_interval >= span:
            return ActivityPattern.ACTIVE
        if count * cfg.moderate_interval >= span:
            return ActivityPattern.MODERATE
        return ActivityPattern.INACTIVE

    def _comm_frequency(self, tourist_id: str, now: datetime) -> float:
        pings = self._comms[tourist_id]
        cutoff = now - COMMUNICATION_WINDOW
        # Drop pings that can never count again
        del pings[:bisect.bisect_right(pings, cutoff)]
        in_window = bisect.bisect_right(pings, now)
        return in_window / (COMMUNICATION_WINDOW.total_seconds() / 3600.0)
