"""Error taxonomy for the safety engine.

Every error here is a recoverable per-call failure; none of them should
ever take the process down.
"""

from __future__ import annotations

from datetime import datetime


class SafetyEngineError(Exception):
    """Base class for all engine errors."""


class StaleLocationError(SafetyEngineError):
    """A location sample is older than the last one recorded for the tourist."""

    def __init__(self, tourist_id: str, timestamp: datetime, last_timestamp: datetime):
        self.tourist_id = tourist_id
        self.timestamp = timestamp
        self.last_timestamp = last_timestamp
        super().__init__(
            f"stale sample for tourist {tourist_id}: "
            f"{timestamp.isoformat()} < {last_timestamp.isoformat()}"
        )


class InvalidTransitionError(SafetyEngineError):
    def __init__(self, alert_id: str, current: str, target: str):
        self.alert_id = alert_id
        self.current = current
        self.target = target
        super().__init__(f"alert {alert_id}: cannot move from '{current}' to '{target}'")


class UnknownTouristError(SafetyEngineError):
    def __init__(self, tourist_id: str):
        self.tourist_id = tourist_id
        super().__init__(f"unknown tourist: {tourist_id}")


class UnknownZoneError(SafetyEngineError):
    def __init__(self, zone_id: str):
        self.zone_id = zone_id
        super().__init__(f"unknown zone: {zone_id}")


class UnknownAlertError(SafetyEngineError):
    def __init__(self, alert_id: str):
        self.alert_id = alert_id
        super().__init__(f"unknown alert: {alert_id}")


class UnknownRouteError(SafetyEngineError):
    def __init__(self, route_id: str):
        self.route_id = route_id
        super().__init__(f"unknown route: {route_id}")
