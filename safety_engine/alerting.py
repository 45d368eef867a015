"""Alert lifecycle manager.

Turns anomaly candidates into persistent alerts, collapsing repeats of the
same (tourist, type) inside the suppression window, and drives each alert
through ``new → acknowledged → investigating → resolved``. Transitions only
move one step forward; ``resolved`` is terminal.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter
from collections.abc import Callable
from datetime import datetime

from safety_engine.config import DetectionConfig
from safety_engine.errors import InvalidTransitionError, UnknownAlertError
from safety_engine.models import (
    Alert,
    AlertStatus,
    AnomalyCandidate,
    AnomalyType,
    utc_now,
)
from safety_engine.notifications import LoggingNotifier, Notifier

log = logging.getLogger(__name__)

AlertKey = tuple[str, AnomalyType]

_NEXT_STATUS: dict[AlertStatus, AlertStatus] = {
    AlertStatus.NEW: AlertStatus.ACKNOWLEDGED,
    AlertStatus.ACKNOWLEDGED: AlertStatus.INVESTIGATING,
    AlertStatus.INVESTIGATING: AlertStatus.RESOLVED,
}


def _new_alert_id() -> str:
    return f"alert-{uuid.uuid4().hex}"


class AlertManager:
    """Owns every Alert record; the only component allowed to mutate them."""

    def __init__(
        self,
        config: DetectionConfig | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = _new_alert_id,
    ) -> None:
        self._config = config or DetectionConfig()
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock
        self._id_factory = id_factory

        self._alerts: dict[str, Alert] = {}
        self._latest_open: dict[AlertKey, str] = {}
        self._lock = threading.Lock()
        self._key_locks: dict[AlertKey, threading.Lock] = {}

        self.created_count = 0
        self.suppressed_count = 0

    # -- intake -----------------------------------------------------------

    def submit(self, candidate: AnomalyCandidate) -> Alert | None:
        """Accept a candidate as a new Alert, or drop it as a duplicate.

        Returns the created alert, or None when the candidate collapsed into
        an open alert of the same type for the same tourist.
        """
        key: AlertKey = (candidate.tourist_id, candidate.type)
        escalated: Alert | None = None
        created: Alert | None = None

        with self._key_lock(key):
            with self._lock:
                existing = self._open_alert(key)
                if existing is not None and (
                    candidate.detected_at - existing.detected_at <= self._config.suppression_window
                ):
                    self.suppressed_count += 1
                    if candidate.severity.rank > existing.severity.rank:
                        existing.severity = candidate.severity
                        existing.updated_at = self._clock()
                        escalated = existing.model_copy(deep=True)
                    log.debug(
                        "Suppressed %s candidate for tourist %s (open alert %s)",
                        candidate.type.value, candidate.tourist_id, existing.id,
                    )
                else:
                    alert = Alert(
                        id=self._id_factory(),
                        type=candidate.type,
                        tourist_id=candidate.tourist_id,
                        severity=candidate.severity,
                        location=candidate.location,
                        description=candidate.description,
                        confidence=candidate.confidence,
                        detected_at=candidate.detected_at,
                    )
                    self._alerts[alert.id] = alert
                    self._latest_open[key] = alert.id
                    self.created_count += 1
                    created = alert.model_copy(deep=True)

        if escalated is not None:
            log.info("Alert %s escalated to %s", escalated.id, escalated.severity.value)
            self._notifier.on_alert_escalated(escalated)
        if created is not None:
            log.info(
                "Created alert %s (%s, %s) for tourist %s",
                created.id, created.type.value, created.severity.value, created.tourist_id,
            )
            self._notifier.on_alert_created(created)
        return created

    # -- operator actions -------------------------------------------------

    def acknowledge(self, alert_id: str) -> Alert:
        return self._transition(alert_id, AlertStatus.ACKNOWLEDGED)

    def investigate(self, alert_id: str) -> Alert:
        return self._transition(alert_id, AlertStatus.INVESTIGATING)

    def resolve(self, alert_id: str) -> Alert:
        return self._transition(alert_id, AlertStatus.RESOLVED)

    def _transition(self, alert_id: str, target: AlertStatus) -> Alert:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise UnknownAlertError(alert_id)
            if _NEXT_STATUS.get(alert.status) != target:
                raise InvalidTransitionError(alert_id, alert.status.value, target.value)
            alert.status = target
            alert.updated_at = self._clock()
            if target == AlertStatus.RESOLVED:
                key: AlertKey = (alert.tourist_id, alert.type)
                if self._latest_open.get(key) == alert_id:
                    del self._latest_open[key]
            changed = alert.model_copy(deep=True)

        log.info("Alert %s moved to %s", alert_id, target.value)
        self._notifier.on_alert_status_changed(changed)
        return changed

    # -- queries ----------------------------------------------------------

    def get(self, alert_id: str) -> Alert:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise UnknownAlertError(alert_id)
            return alert.model_copy(deep=True)

    def list_alerts(
        self,
        status: AlertStatus | None = None,
        tourist_id: str | None = None,
        alert_type: AnomalyType | None = None,
    ) -> list[Alert]:
        with self._lock:
            alerts = [
                a.model_copy(deep=True) for a in self._alerts.values()
                if (status is None or a.status == status)
                and (tourist_id is None or a.tourist_id == tourist_id)
                and (alert_type is None or a.type == alert_type)
            ]
        return alerts

    def open_alerts(self, tourist_id: str | None = None) -> list[Alert]:
        return [
            a for a in self.list_alerts(tourist_id=tourist_id)
            if a.status != AlertStatus.RESOLVED
        ]

    def recent(self, limit: int | None = None) -> list[Alert]:
        """Newest first, capped at the dashboard feed length by default."""
        limit = limit if limit is not None else self._config.recent_alert_limit
        alerts = sorted(self.list_alerts(), key=lambda a: a.detected_at, reverse=True)
        return alerts[:limit]

    def counts_by_status(self) -> dict[str, int]:
        with self._lock:
            counts = Counter(a.status.value for a in self._alerts.values())
        return {s.value: counts.get(s.value, 0) for s in AlertStatus}

    def __len__(self) -> int:
        return len(self._alerts)

    # -- internals --------------------------------------------------------

    def _key_lock(self, key: AlertKey) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def _open_alert(self, key: AlertKey) -> Alert | None:
        # Caller holds self._lock
        alert_id = self._latest_open.get(key)
        alert = self._alerts.get(alert_id) if alert_id is not None else None
        if alert is None or alert.status == AlertStatus.RESOLVED:
            return None
        return alert
