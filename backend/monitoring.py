from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from fastapi import WebSocket

from backend.config import Settings
from backend.models import WSMessageType, WSOutgoing
from safety_engine.geofence import load_zones
from safety_engine.models import Alert, LocationPoint
from safety_engine.monitor import SafetyMonitor
from safety_engine.notifications import LoggingNotifier, Notifier

log = logging.getLogger(__name__)


class BroadcastNotifier(Notifier):
    """Turns engine notifications into WebSocket messages.

    The engine calls this from worker threads as well as from the event
    loop, so messages are handed over with ``call_soon_threadsafe``.
    """

    def __init__(self) -> None:
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[WSOutgoing] | None = None

    def bind(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[WSOutgoing]) -> None:
        self._loop = loop
        self._queue = queue

    def unbind(self) -> None:
        self._loop = None
        self._queue = None

    def _publish(self, msg: WSOutgoing) -> None:
        loop, queue = self._loop, self._queue
        if loop is None or queue is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(queue.put_nowait, msg)

    def on_alert_created(self, alert: Alert) -> None:
        self._publish(WSOutgoing(type=WSMessageType.ALERT_CREATED, payload=alert.model_dump(mode="json")))

    def on_alert_status_changed(self, alert: Alert) -> None:
        self._publish(
            WSOutgoing(type=WSMessageType.ALERT_STATUS_CHANGED, payload=alert.model_dump(mode="json"))
        )

    def on_alert_escalated(self, alert: Alert) -> None:
        self._publish(WSOutgoing(type=WSMessageType.ALERT_ESCALATED, payload=alert.model_dump(mode="json")))

    def on_emergency_dispatched(
        self, tourist_id: str, location: LocationPoint | None, timestamp: datetime,
    ) -> None:
        self._publish(
            WSOutgoing(
                type=WSMessageType.EMERGENCY_DISPATCHED,
                payload={
                    "tourist_id": tourist_id,
                    "location": location.model_dump(mode="json") if location else None,
                    "timestamp": timestamp.isoformat(),
                },
            )
        )


def build_monitor(settings: Settings, broadcaster: Notifier | None = None) -> SafetyMonitor:
    zones = load_zones(settings.zones_file) if settings.zones_file else []
    notifiers: list[Notifier] = [LoggingNotifier()]
    if broadcaster is not None:
        notifiers.append(broadcaster)
    monitor = SafetyMonitor(
        config=settings.detection_config(),
        notifiers=notifiers,
        zones=zones,
        max_workers=settings.max_workers,
    )
    log.info("Safety monitor ready with %d zones", len(zones))
    return monitor


class MonitoringLoop:
    """Background loops: periodic detection cycles, the SOS clock, and
    fan-out of engine notifications to connected WebSocket clients."""

    def __init__(self, monitor: SafetyMonitor, broadcaster: BroadcastNotifier, settings: Settings) -> None:
        self._monitor = monitor
        self._broadcaster = broadcaster
        self._settings = settings
        self._clients: set[WebSocket] = set()
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self._last_cycle: datetime | None = None

    # -- WebSocket client management --------------------------------------

    def register(self, ws: WebSocket) -> None:
        self._clients.add(ws)

    def unregister(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def last_cycle(self) -> datetime | None:
        return self._last_cycle

    @property
    def running(self) -> bool:
        return self._running

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        queue: asyncio.Queue[WSOutgoing] = asyncio.Queue()
        self._broadcaster.bind(asyncio.get_running_loop(), queue)
        self._tasks = [
            asyncio.ensure_future(self._detection_loop()),
            asyncio.ensure_future(self._sos_loop()),
            asyncio.ensure_future(self._broadcast_loop(queue)),
        ]

    async def stop(self) -> None:
        self._running = False
        self._broadcaster.unbind()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -- loops ------------------------------------------------------------

    async def _detection_loop(self) -> None:
        log.info("Detection loop started (interval=%.1fs)", self._settings.detection_interval)
        loop = asyncio.get_running_loop()

        while self._running:
            await asyncio.sleep(self._settings.detection_interval)
            if not self._monitor.monitoring:
                continue
            # Cycles run in worker threads so the event loop stays responsive
            try:
                results = await loop.run_in_executor(None, self._monitor.run_all_cycles)
            except Exception:
                log.exception("Detection cycle failed")
                continue
            self._last_cycle = self._monitor.now()
            created = sum(len(alerts) for alerts in results.values())
            if created:
                log.info("Detection cycle over %d tourists created %d alerts", len(results), created)

    async def _sos_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._settings.sos_tick_interval)
            try:
                self._monitor.tick_emergencies()
            except Exception:
                log.exception("SOS tick failed")

    async def _broadcast_loop(self, queue: asyncio.Queue[WSOutgoing]) -> None:
        while True:
            msg = await queue.get()
            await self.broadcast(msg)

    async def broadcast(self, msg: WSOutgoing) -> None:
        raw = msg.model_dump_json()

        stale: list[WebSocket] = []
        for ws in list(self._clients):
            try:
                await ws.send_text(raw)
            except Exception:
                stale.append(ws)

        for ws in stale:
            self._clients.discard(ws)
