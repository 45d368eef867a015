"""HTTP / WebSocket service for the tourist safety engine.

Run with:
    uvicorn backend.main:app --port 8000

Location samples, communication pings and SOS presses come in over REST;
alerts and emergency dispatches go out to every ``/ws`` client.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from backend.config import Settings, settings
from backend.models import (
    CommunicationPing,
    LocationUpdate,
    PreferredRoutes,
    SOSState,
    WSMessageType,
    WSOutgoing,
)
from backend.monitoring import BroadcastNotifier, MonitoringLoop, build_monitor
from safety_engine.errors import (
    InvalidTransitionError,
    SafetyEngineError,
    UnknownAlertError,
    UnknownRouteError,
    UnknownTouristError,
    UnknownZoneError,
)
from safety_engine.models import (
    Alert,
    AlertStatus,
    AnomalyType,
    BehavioralProfile,
    EmergencyEscalation,
    EngineStats,
    GeofenceZone,
    HeatMapPoint,
    IngestResult,
    Route,
    SafetyLevel,
    TouristOverview,
)
from safety_engine.monitor import SafetyMonitor

logging.basicConfig(level=settings.log_level, format="%(asctime)s  %(name)-20s  %(message)s")
log = logging.getLogger(__name__)

router = APIRouter()


def get_monitor(request: Request) -> SafetyMonitor:
    return request.app.state.monitor


# -- Health / stats -------------------------------------------------------

@router.get("/health")
async def health(request: Request):
    loop: MonitoringLoop = request.app.state.loop
    return {
        "status": "ok",
        "monitoring": request.app.state.monitor.monitoring,
        "last_cycle": loop.last_cycle.isoformat() if loop.last_cycle else None,
        "clients": loop.client_count,
    }


@router.get("/stats", response_model=EngineStats)
def stats(monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.stats()


@router.post("/monitoring/pause")
def pause(monitor: SafetyMonitor = Depends(get_monitor)):
    monitor.pause()
    return {"monitoring": monitor.monitoring}


@router.post("/monitoring/resume")
def resume(monitor: SafetyMonitor = Depends(get_monitor)):
    monitor.resume()
    return {"monitoring": monitor.monitoring}


# -- Tourists -------------------------------------------------------------

@router.post("/tourists/{tourist_id}/locations", response_model=IngestResult)
def ingest_location(tourist_id: str, body: LocationUpdate, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.ingest_location(tourist_id, body.to_point(monitor.now()))


@router.post("/tourists/{tourist_id}/pings", response_model=BehavioralProfile)
def ingest_ping(tourist_id: str, body: CommunicationPing, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.ingest_communication_ping(tourist_id, body.timestamp)


@router.get("/tourists", response_model=list[TouristOverview])
def list_tourists(monitor: SafetyMonitor = Depends(get_monitor)):
    overviews = []
    for tourist_id in monitor.profiles.tourist_ids():
        try:
            overviews.append(monitor.tourist_overview(tourist_id))
        except UnknownTouristError:
            continue
    return overviews


@router.get("/tourists/{tourist_id}", response_model=TouristOverview)
def tourist_overview(tourist_id: str, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.tourist_overview(tourist_id)


@router.get("/tourists/{tourist_id}/profile", response_model=BehavioralProfile)
def tourist_profile(tourist_id: str, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.get_profile(tourist_id)


@router.put("/tourists/{tourist_id}/routes", response_model=BehavioralProfile)
def set_routes(tourist_id: str, body: PreferredRoutes, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.set_preferred_routes(tourist_id, body.route_ids)


@router.delete("/tourists/{tourist_id}", response_model=BehavioralProfile)
def exit_monitoring(tourist_id: str, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.exit_monitoring(tourist_id)


# -- SOS ------------------------------------------------------------------

@router.post("/tourists/{tourist_id}/sos", response_model=EmergencyEscalation)
def trigger_sos(tourist_id: str, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.trigger_sos(tourist_id)


@router.delete("/tourists/{tourist_id}/sos")
def cancel_sos(tourist_id: str, monitor: SafetyMonitor = Depends(get_monitor)):
    return {"tourist_id": tourist_id, "cancelled": monitor.cancel_sos(tourist_id)}


@router.get("/tourists/{tourist_id}/sos", response_model=SOSState)
def sos_state(tourist_id: str, monitor: SafetyMonitor = Depends(get_monitor)):
    return SOSState(
        tourist_id=tourist_id,
        state=monitor.sos_state(tourist_id).value,
        remaining_seconds=monitor.emergencies.remaining_seconds(tourist_id),
    )


# -- Alerts ---------------------------------------------------------------

@router.get("/alerts", response_model=list[Alert])
def list_alerts(
    status: AlertStatus | None = None,
    tourist_id: str | None = None,
    alert_type: AnomalyType | None = Query(None, alias="type"),
    monitor: SafetyMonitor = Depends(get_monitor),
):
    alerts = monitor.alerts.list_alerts(status=status, tourist_id=tourist_id, alert_type=alert_type)
    return sorted(alerts, key=lambda a: a.detected_at, reverse=True)


@router.get("/alerts/recent", response_model=list[Alert])
def recent_alerts(limit: int | None = None, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.alerts.recent(limit)


@router.get("/alerts/{alert_id}", response_model=Alert)
def get_alert(alert_id: str, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.alerts.get(alert_id)


@router.post("/alerts/{alert_id}/acknowledge", response_model=Alert)
def acknowledge_alert(alert_id: str, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.acknowledge_alert(alert_id)


@router.post("/alerts/{alert_id}/investigate", response_model=Alert)
def investigate_alert(alert_id: str, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.investigate_alert(alert_id)


@router.post("/alerts/{alert_id}/resolve", response_model=Alert)
def resolve_alert(alert_id: str, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.resolve_alert(alert_id)


# -- Zones & routes -------------------------------------------------------

@router.get("/zones", response_model=list[GeofenceZone])
def list_zones(safety_level: SafetyLevel | None = None, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.list_zones(safety_level)


@router.get("/zones/{zone_id}", response_model=GeofenceZone)
def get_zone(zone_id: str, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.get_zone(zone_id)


@router.put("/zones/{zone_id}", response_model=GeofenceZone)
def upsert_zone(zone_id: str, zone: GeofenceZone, monitor: SafetyMonitor = Depends(get_monitor)):
    if zone.id != zone_id:
        zone = zone.model_copy(update={"id": zone_id})
    return monitor.upsert_zone(zone)


@router.delete("/zones/{zone_id}", response_model=GeofenceZone)
def remove_zone(zone_id: str, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.remove_zone(zone_id)


@router.get("/heatmap", response_model=list[HeatMapPoint])
def heat_map(
    points_per_zone: int = 10,
    safety_level: SafetyLevel | None = None,
    monitor: SafetyMonitor = Depends(get_monitor),
):
    return monitor.zones.heat_map(points_per_zone, safety_level)


@router.get("/routes", response_model=list[Route])
def list_routes(monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.routes.list()


@router.post("/routes", response_model=Route)
def register_route(route: Route, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.register_route(route)


@router.delete("/routes/{route_id}", response_model=Route)
def remove_route(route_id: str, monitor: SafetyMonitor = Depends(get_monitor)):
    return monitor.remove_route(route_id)


# -- WebSocket ------------------------------------------------------------

def _status_message(monitor: SafetyMonitor) -> WSOutgoing:
    return WSOutgoing(
        type=WSMessageType.STATUS,
        payload={
            "connected": True,
            "stats": monitor.stats().model_dump(mode="json"),
            "recent_alerts": [a.model_dump(mode="json") for a in monitor.alerts.recent()],
        },
    )


@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    monitor: SafetyMonitor = ws.app.state.monitor
    loop: MonitoringLoop = ws.app.state.loop

    await ws.accept()
    loop.register(ws)
    log.info("WebSocket client connected")

    await ws.send_text(_status_message(monitor).model_dump_json())

    try:
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await ws.send_text(
                    WSOutgoing(type=WSMessageType.ERROR, payload={"detail": "invalid JSON"}).model_dump_json()
                )
                continue

            if data.get("type") == WSMessageType.STATUS:
                await ws.send_text(_status_message(monitor).model_dump_json())
    except WebSocketDisconnect:
        pass
    finally:
        loop.unregister(ws)
        log.info("WebSocket client disconnected")


# -- Error mapping --------------------------------------------------------

_NOT_FOUND = (UnknownTouristError, UnknownAlertError, UnknownZoneError, UnknownRouteError)


async def _engine_error(request: Request, exc: SafetyEngineError) -> JSONResponse:
    if isinstance(exc, _NOT_FOUND):
        status_code = 404
    elif isinstance(exc, InvalidTransitionError):
        status_code = 409
    else:
        status_code = 400
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# -- App factory ----------------------------------------------------------

def create_app(
    app_settings: Settings | None = None,
    monitor: SafetyMonitor | None = None,
) -> FastAPI:
    app_settings = app_settings or settings
    broadcaster = BroadcastNotifier()
    if monitor is None:
        monitor = build_monitor(app_settings, broadcaster)
    else:
        monitor.notifier.add(broadcaster)
    monitoring_loop = MonitoringLoop(monitor, broadcaster, app_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        monitoring_loop.start()
        log.info("Monitoring loop started")
        yield
        await monitoring_loop.stop()
        log.info("Shutdown complete")

    app = FastAPI(
        title="Tourist Safety Monitor",
        version="0.1.0",
        description="Behavioral anomaly detection, geofencing, alert lifecycle and SOS escalation.",
        lifespan=lifespan,
    )
    app.state.monitor = monitor
    app.state.loop = monitoring_loop
    app.add_exception_handler(SafetyEngineError, _engine_error)
    app.include_router(router)
    return app


app = create_app()
