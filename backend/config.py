from __future__ import annotations

from datetime import timedelta
from pathlib import Path

from pydantic_settings import BaseSettings

from safety_engine import config as defaults
from safety_engine.config import DetectionConfig

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_ZONES_FILE = PROJECT_ROOT / "safety_engine" / "examples" / "uttarakhand_zones.json"


class Settings(BaseSettings):
    detection_interval: float = 5.0
    sos_tick_interval: float = 0.25
    zones_file: str | None = str(DEFAULT_ZONES_FILE)
    log_level: str = "INFO"
    max_workers: int | None = None

    # Threshold overrides; paired bands must be overridden together
    route_deviation_threshold_m: float = defaults.ROUTE_DEVIATION_THRESHOLD_M
    route_medium_m: float = defaults.ROUTE_MEDIUM_M
    route_high_m: float = defaults.ROUTE_HIGH_M
    inactivity_threshold_hours: float = defaults.INACTIVITY_THRESHOLD.total_seconds() / 3600
    inactivity_high_threshold_hours: float = defaults.INACTIVITY_HIGH_THRESHOLD.total_seconds() / 3600
    speed_anomaly_ratio: float = defaults.SPEED_ANOMALY_RATIO
    speed_high_ratio: float = defaults.SPEED_HIGH_RATIO
    speed_smoothing_factor: float = defaults.SPEED_SMOOTHING_FACTOR
    communication_loss_grace_minutes: float = defaults.COMMUNICATION_LOSS_GRACE.total_seconds() / 60
    zone_critical_risk_factors: int = defaults.ZONE_CRITICAL_RISK_FACTORS
    suppression_window_minutes: float = defaults.SUPPRESSION_WINDOW.total_seconds() / 60
    sos_countdown_seconds: float = defaults.SOS_COUNTDOWN_SECONDS

    model_config = {
        "env_file": str(PROJECT_ROOT / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def detection_config(self) -> DetectionConfig:
        return DetectionConfig(
            route_deviation_threshold_m=self.route_deviation_threshold_m,
            route_medium_m=self.route_medium_m,
            route_high_m=self.route_high_m,
            inactivity_threshold=timedelta(hours=self.inactivity_threshold_hours),
            inactivity_high_threshold=timedelta(hours=self.inactivity_high_threshold_hours),
            speed_anomaly_ratio=self.speed_anomaly_ratio,
            speed_high_ratio=self.speed_high_ratio,
            speed_smoothing_factor=self.speed_smoothing_factor,
            communication_loss_grace=timedelta(minutes=self.communication_loss_grace_minutes),
            zone_critical_risk_factors=self.zone_critical_risk_factors,
            suppression_window=timedelta(minutes=self.suppression_window_minutes),
            sos_countdown_seconds=self.sos_countdown_seconds,
        )


settings = Settings()
