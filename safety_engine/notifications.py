"""Outbound notification contract.

The engine only announces what happened; delivery is the collaborator's
problem. Sinks are invoked fire-and-forget: an exception in one sink is
logged and never reaches the engine or the other sinks.
"""

from __future__ import annotations

import logging
from datetime import datetime

from safety_engine.models import Alert, LocationPoint

log = logging.getLogger(__name__)


class Notifier:
    """Base sink. Override the callbacks you care about."""

    def on_alert_created(self, alert: Alert) -> None:
        pass

    def on_alert_status_changed(self, alert: Alert) -> None:
        pass

    def on_alert_escalated(self, alert: Alert) -> None:
        pass

    def on_emergency_dispatched(
        self, tourist_id: str, location: LocationPoint | None, timestamp: datetime,
    ) -> None:
        pass


class LoggingNotifier(Notifier):
    """Writes every notification to the log; the default sink."""

    def on_alert_created(self, alert: Alert) -> None:
        log.info(
            "ALERT [%s] %s tourist=%s id=%s: %s",
            alert.severity.value.upper(), alert.type.value,
            alert.tourist_id, alert.id, alert.description,
        )

    def on_alert_status_changed(self, alert: Alert) -> None:
        log.info("Alert %s is now %s", alert.id, alert.status.value)

    def on_alert_escalated(self, alert: Alert) -> None:
        log.info("Alert %s escalated to %s", alert.id, alert.severity.value)

    def on_emergency_dispatched(
        self, tourist_id: str, location: LocationPoint | None, timestamp: datetime,
    ) -> None:
        where = f"({location.lat:.5f}, {location.lng:.5f})" if location else "unknown location"
        log.warning("EMERGENCY dispatched for tourist %s at %s, %s", tourist_id, where, timestamp.isoformat())


class NotifierGroup(Notifier):
    """Fans every notification out to a list of sinks."""

    def __init__(self, sinks: list[Notifier] | None = None) -> None:
        self._sinks: list[Notifier] = list(sinks or [])

    def add(self, sink: Notifier) -> None:
        self._sinks.append(sink)

    def remove(self, sink: Notifier) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    def _emit(self, method: str, *args) -> None:
        for sink in list(self._sinks):
            try:
                getattr(sink, method)(*args)
            except Exception:
                log.exception("Notifier %s failed in %s", type(sink).__name__, method)

    def on_alert_created(self, alert: Alert) -> None:
        self._emit("on_alert_created", alert)

    def on_alert_status_changed(self, alert: Alert) -> None:
        self._emit("on_alert_status_changed", alert)

    def on_alert_escalated(self, alert: Alert) -> None:
        self._emit("on_alert_escalated", alert)

    def on_emergency_dispatched(
        self, tourist_id: str, location: LocationPoint | None, timestamp: datetime,
    ) -> None:
        self._emit("on_emergency_dispatched", tourist_id, location, timestamp)


class RecordingNotifier(Notifier):
    """Keeps every notification in memory for later inspection."""

    def __init__(self) -> None:
        self.created: list[Alert] = []
        self.status_changes: list[Alert] = []
        self.escalations: list[Alert] = []
        self.dispatches: list[tuple[str, LocationPoint | None, datetime]] = []

    def on_alert_created(self, alert: Alert) -> None:
        self.created.append(alert)

    def on_alert_status_changed(self, alert: Alert) -> None:
        self.status_changes.append(alert)

    def on_alert_escalated(self, alert: Alert) -> None:
        self.escalations.append(alert)

    def on_emergency_dispatched(
        self, tourist_id: str, location: LocationPoint | None, timestamp: datetime,
    ) -> None:
        self.dispatches.append((tourist_id, location, timestamp))
