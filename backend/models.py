from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from safety_engine.models import LocationPoint


# -- Request bodies -------------------------------------------------------

class LocationUpdate(BaseModel):
    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)
    timestamp: datetime | None = None
    accuracy_m: float = Field(0.0, ge=0.0)
    speed_kmh: float | None = Field(None, ge=0.0)
    heading_deg: float | None = Field(None, ge=0.0, lt=360.0)

    def to_point(self, default_timestamp: datetime) -> LocationPoint:
        return LocationPoint(
            lat=self.lat,
            lng=self.lng,
            timestamp=self.timestamp or default_timestamp,
            accuracy_m=self.accuracy_m,
            speed_kmh=self.speed_kmh,
            heading_deg=self.heading_deg,
        )


class CommunicationPing(BaseModel):
    timestamp: datetime | None = None


class PreferredRoutes(BaseModel):
    route_ids: list[str] = Field(default_factory=list)


class SOSState(BaseModel):
    tourist_id: str
    state: str
    remaining_seconds: float | None = None


# -- WebSocket message models --------------------------------------------

class WSMessageType(str, Enum):
    ALERT_CREATED = "alert_created"
    ALERT_STATUS_CHANGED = "alert_status_changed"
    ALERT_ESCALATED = "alert_escalated"
    EMERGENCY_DISPATCHED = "emergency_dispatched"
    STATUS = "status"
    ERROR = "error"


class WSOutgoing(BaseModel):
    type: WSMessageType
    payload: dict = Field(default_factory=dict)
