"""Data models for the tourist safety engine.

All input/output contracts are defined here using Pydantic for validation
and easy JSON serialization. Timestamps are normalised to timezone-aware
UTC on the way in so comparisons across sources are always safe.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────────────────

class ActivityPattern(str, Enum):
    ACTIVE = "active"
    MODERATE = "moderate"
    INACTIVE = "inactive"


class SafetyLevel(str, Enum):
    SAFE = "safe"
    MODERATE = "moderate"
    DANGEROUS = "dangerous"


class ZoneType(str, Enum):
    TOURIST = "tourist"
    RESIDENTIAL = "residential"
    COMMERCIAL = "commercial"
    CONSTRUCTION = "construction"
    TRAFFIC = "traffic"
    INDUSTRIAL = "industrial"
    MEDICAL = "medical"
    POLICE = "police"


class AnomalyType(str, Enum):
    ROUTE_DEVIATION = "route_deviation"
    INACTIVITY = "inactivity"
    SPEED_ANOMALY = "speed_anomaly"
    ZONE_BREACH = "zone_breach"
    COMMUNICATION_LOSS = "communication_loss"
    PANIC_PATTERN = "panic_pattern"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]

# Most restrictive first
SAFETY_RESTRICTIVENESS: dict[SafetyLevel, int] = {
    SafetyLevel.DANGEROUS: 2,
    SafetyLevel.MODERATE: 1,
    SafetyLevel.SAFE: 0,
}


class AlertStatus(str, Enum):
    NEW = "new"
    ACKNOWLEDGED = "acknowledged"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"


class EscalationState(str, Enum):
    IDLE = "idle"
    COUNTING_DOWN = "countingDown"
    DISPATCHED = "dispatched"


class TouristStatus(str, Enum):
    SAFE = "safe"
    WARNING = "warning"
    DANGER = "danger"
    OFFLINE = "offline"


# ── Location ingest ──────────────────────────────────────────────────────────

class LocationPoint(BaseModel):
    """One position sample. Immutable once recorded."""

    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)
    timestamp: datetime
    accuracy_m: float = Field(0.0, ge=0.0)
    speed_kmh: float | None = Field(None, ge=0.0)
    heading_deg: float | None = Field(None, ge=0.0, lt=360.0)

    model_config = {"frozen": True}

    normalise_timestamp = field_validator("timestamp")(as_utc)


class BehavioralProfile(BaseModel):
    """Per-tourist baseline statistics that anomalies are measured against."""

    tourist_id: str
    baseline_speed_kmh: float = 0.0
    speed_samples: int = 0
    preferred_route_ids: set[str] = Field(default_factory=set)
    activity_pattern: ActivityPattern = ActivityPattern.INACTIVE
    risk_level: float = Field(0.0, ge=0.0, le=100.0)
    last_activity_timestamp: datetime | None = None
    communication_frequency_per_hour: float = 0.0
    last_communication_at: datetime | None = None
    first_seen_at: datetime
    archived_at: datetime | None = None


# ── Geofencing ───────────────────────────────────────────────────────────────

class GeoPoint(BaseModel):
    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)

    model_config = {"frozen": True}


class GeofenceZone(BaseModel):
    id: str
    name: str
    center: GeoPoint
    radius_m: float = Field(gt=0.0)
    safety_level: SafetyLevel
    zone_type: ZoneType = ZoneType.TOURIST
    description: str = ""
    risk_factors: list[str] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utc_now)

    model_config = {"frozen": True}

    normalise_timestamp = field_validator("last_updated")(as_utc)


class Route(BaseModel):
    """A named polyline that backs one of the opaque preferred route ids."""

    id: str
    name: str = ""
    points: list[GeoPoint] = Field(min_length=1)

    model_config = {"frozen": True}


class HeatMapPoint(BaseModel):
    lat: float
    lng: float
    weight: float
    zone_id: str


# ── Anomalies & alerts ───────────────────────────────────────────────────────

class AnomalyCandidate(BaseModel):
    """Ephemeral detection result pending deduplication."""

    type: AnomalyType
    tourist_id: str
    location: LocationPoint
    description: str
    confidence: float = Field(ge=0.0, le=1.0)
    severity: Severity
    detected_at: datetime

    model_config = {"frozen": True}

    normalise_timestamp = field_validator("detected_at")(as_utc)


class Alert(BaseModel):
    """Persisted record of an accepted anomaly.

    Only ``severity`` and ``status`` ever change after creation, and only
    the alert manager mutates them.
    """

    id: str
    type: AnomalyType
    tourist_id: str
    severity: Severity
    location: LocationPoint
    description: str
    confidence: float = Field(ge=0.0, le=1.0)
    detected_at: datetime
    status: AlertStatus = AlertStatus.NEW
    updated_at: datetime | None = None


# ── Emergency escalation ─────────────────────────────────────────────────────

class EmergencyEscalation(BaseModel):
    tourist_id: str
    triggered_at: datetime
    countdown_seconds: float
    cancelled: bool = False


class DispatchRecord(BaseModel):
    tourist_id: str
    location: LocationPoint | None = None
    dispatched_at: datetime
    triggered_at: datetime


# ── Boundary results ─────────────────────────────────────────────────────────

class IngestResult(BaseModel):
    tourist_id: str
    accepted: bool
    alerts: list[Alert] = Field(default_factory=list)
    reason: str | None = None


class TouristOverview(BaseModel):
    tourist_id: str
    status: TouristStatus
    position: LocationPoint | None = None
    current_zone: str | None = None
    risk_level: float = 0.0
    activity_pattern: ActivityPattern = ActivityPattern.INACTIVE
    open_alerts: int = 0
    last_seen: datetime | None = None


class EngineStats(BaseModel):
    total_tourists: int = 0
    active_monitoring: int = 0
    archived_tourists: int = 0
    anomalies_detected: int = 0
    alerts_created: int = 0
    alerts_suppressed: int = 0
    open_alerts: int = 0
    stale_samples_dropped: int = 0
    emergencies_active: int = 0
    emergencies_dispatched: int = 0
    monitoring: bool = True
