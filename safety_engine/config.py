"""Configuration for the safety engine.

All thresholds and defaults live here so they're easy to tweak without
touching logic code. The constants are the documented defaults; pass a
custom ``DetectionConfig`` to the monitor (or set the matching environment
variables for the service) to override them at runtime.
"""

from __future__ import annotations

from datetime import timedelta

from pydantic import BaseModel, Field, model_validator

# ── Route deviation ──────────────────────────────────────────────────────────
ROUTE_DEVIATION_THRESHOLD_M = 200.0   # flagged strictly above this distance
ROUTE_MEDIUM_M = 300.0
ROUTE_HIGH_M = 500.0
ROUTE_CONFIDENCE_FLOOR = 0.7
ROUTE_CONFIDENCE_CEILING = 1.0

# ── Inactivity ───────────────────────────────────────────────────────────────
INACTIVITY_THRESHOLD = timedelta(hours=2)
INACTIVITY_HIGH_THRESHOLD = timedelta(hours=4)
INACTIVITY_CONFIDENCE = 0.9

# ── Speed ────────────────────────────────────────────────────────────────────
SPEED_ANOMALY_RATIO = 0.5
SPEED_HIGH_RATIO = 0.8
SPEED_CONFIDENCE = 0.85
SPEED_SMOOTHING_FACTOR = 0.2          # EWMA alpha for the baseline speed

# ── Zones ────────────────────────────────────────────────────────────────────
ZONE_BREACH_CONFIDENCE = 1.0
ZONE_CRITICAL_RISK_FACTORS = 4        # dangerous zone with this many factors → critical

# Heat-map / risk weights per safety level (0-100)
ZONE_WEIGHTS: dict[str, float] = {
    "dangerous": 100.0,
    "moderate": 50.0,
    "safe": 20.0,
}

# ── Communication loss ───────────────────────────────────────────────────────
COMMUNICATION_LOSS_GRACE = timedelta(minutes=30)
COMMUNICATION_LOSS_CONFIDENCE = 0.8
COMMUNICATION_WINDOW = timedelta(hours=1)

# ── Panic pattern ────────────────────────────────────────────────────────────
PANIC_WINDOW = timedelta(seconds=60)
PANIC_REVERSAL_ANGLE_DEG = 150.0
PANIC_MIN_REVERSALS = 3
PANIC_SPEED_SWING_KMH = 5.0
PANIC_MIN_OSCILLATIONS = 4

# ── Profiles ─────────────────────────────────────────────────────────────────
LOCATION_WINDOW_SIZE = 50
ACTIVITY_WINDOW = timedelta(hours=6)
ACTIVE_INTERVAL = timedelta(minutes=30)     # ≥1 sample per 30 min → active
MODERATE_INTERVAL = timedelta(hours=2)      # ≥1 sample per 2 h → moderate

# ── Alerts ───────────────────────────────────────────────────────────────────
SUPPRESSION_WINDOW = timedelta(minutes=5)
RECENT_ALERT_LIMIT = 20

# Open-alert severity → risk level contribution
SEVERITY_WEIGHTS: dict[str, float] = {
    "low": 25.0,
    "medium": 50.0,
    "high": 75.0,
    "critical": 100.0,
}

# ── Emergency escalation ─────────────────────────────────────────────────────
SOS_COUNTDOWN_SECONDS = 5.0
SOS_COUNTDOWN_MIN = 3.0
SOS_COUNTDOWN_MAX = 10.0
DISPATCH_HISTORY_LIMIT = 100


class DetectionConfig(BaseModel):
    """Validated, overridable thresholds for one engine instance."""

    route_deviation_threshold_m: float = Field(ROUTE_DEVIATION_THRESHOLD_M, gt=0)
    route_medium_m: float = Field(ROUTE_MEDIUM_M, gt=0)
    route_high_m: float = Field(ROUTE_HIGH_M, gt=0)

    inactivity_threshold: timedelta = INACTIVITY_THRESHOLD
    inactivity_high_threshold: timedelta = INACTIVITY_HIGH_THRESHOLD

    speed_anomaly_ratio: float = Field(SPEED_ANOMALY_RATIO, gt=0)
    speed_high_ratio: float = Field(SPEED_HIGH_RATIO, gt=0)
    speed_smoothing_factor: float = Field(SPEED_SMOOTHING_FACTOR, gt=0, le=1)

    zone_critical_risk_factors: int = Field(ZONE_CRITICAL_RISK_FACTORS, ge=1)

    communication_loss_grace: timedelta = COMMUNICATION_LOSS_GRACE

    panic_window: timedelta = PANIC_WINDOW
    panic_reversal_angle_deg: float = Field(PANIC_REVERSAL_ANGLE_DEG, gt=0, le=180)
    panic_min_reversals: int = Field(PANIC_MIN_REVERSALS, ge=1)
    panic_speed_swing_kmh: float = Field(PANIC_SPEED_SWING_KMH, gt=0)
    panic_min_oscillations: int = Field(PANIC_MIN_OSCILLATIONS, ge=1)

    location_window_size: int = Field(LOCATION_WINDOW_SIZE, ge=2)
    activity_window: timedelta = ACTIVITY_WINDOW
    active_interval: timedelta = ACTIVE_INTERVAL
    moderate_interval: timedelta = MODERATE_INTERVAL

    suppression_window: timedelta = SUPPRESSION_WINDOW
    recent_alert_limit: int = Field(RECENT_ALERT_LIMIT, ge=1)

    sos_countdown_seconds: float = Field(
        SOS_COUNTDOWN_SECONDS, ge=SOS_COUNTDOWN_MIN, le=SOS_COUNTDOWN_MAX,
    )

    @model_validator(mode="after")
    def _check_ordering(self) -> DetectionConfig:
        if not (self.route_deviation_threshold_m <= self.route_medium_m <= self.route_high_m):
            raise ValueError("route bands must satisfy threshold <= medium <= high")
        if self.inactivity_high_threshold <= self.inactivity_threshold:
            raise ValueError("inactivity_high_threshold must exceed inactivity_threshold")
        if self.speed_high_ratio < self.speed_anomaly_ratio:
            raise ValueError("speed_high_ratio must be >= speed_anomaly_ratio")
        if self.moderate_interval < self.active_interval:
            raise ValueError("moderate_interval must be >= active_interval")
        return self
