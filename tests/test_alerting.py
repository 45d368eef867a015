"""Tests for the alert lifecycle manager."""

from __future__ import annotations

import itertools
import threading
from datetime import datetime, timedelta, timezone

import pytest

from safety_engine.alerting import AlertManager
from safety_engine.errors import InvalidTransitionError, UnknownAlertError
from safety_engine.models import (
    AlertStatus,
    AnomalyCandidate,
    AnomalyType,
    LocationPoint,
    Severity,
)
from safety_engine.notifications import Notifier, NotifierGroup, RecordingNotifier

T0 = datetime(2026, 5, 1, 6, 0, tzinfo=timezone.utc)


def _make_candidate(minutes: float = 0.0, **overrides) -> AnomalyCandidate:
    at = T0 + timedelta(minutes=minutes)
    defaults = dict(
        type=AnomalyType.ROUTE_DEVIATION,
        tourist_id="anna",
        location=LocationPoint(lat=30.1130, lng=78.2972, timestamp=at),
        description="Tourist deviated 385m from planned route",
        confidence=0.9,
        severity=Severity.MEDIUM,
        detected_at=at,
    )
    defaults.update(overrides)
    return AnomalyCandidate(**defaults)


def _make_manager(notifier: Notifier | None = None) -> AlertManager:
    counter = itertools.count(1)
    return AlertManager(
        notifier=notifier or RecordingNotifier(),
        clock=lambda: T0,
        id_factory=lambda: f"alert-{next(counter)}",
    )


class TestSuppression:
    def test_first_candidate_creates_alert(self):
        sink = RecordingNotifier()
        manager = _make_manager(sink)
        alert = manager.submit(_make_candidate())
        assert alert.id == "alert-1"
        assert alert.status == AlertStatus.NEW
        assert [a.id for a in sink.created] == ["alert-1"]

    def test_duplicate_within_window_is_suppressed(self):
        sink = RecordingNotifier()
        manager = _make_manager(sink)
        manager.submit(_make_candidate(0))
        assert manager.submit(_make_candidate(3)) is None
        assert manager.submit(_make_candidate(5)) is None
        assert len(manager) == 1
        assert manager.suppressed_count == 2
        assert len(sink.created) == 1

    def test_duplicate_after_window_creates_new_alert(self):
        manager = _make_manager()
        manager.submit(_make_candidate(0))
        second = manager.submit(_make_candidate(5.5))
        assert second is not None
        assert len(manager) == 2

    def test_different_type_or_tourist_is_not_a_duplicate(self):
        manager = _make_manager()
        manager.submit(_make_candidate(0))
        assert manager.submit(_make_candidate(1, type=AnomalyType.SPEED_ANOMALY)) is not None
        assert manager.submit(_make_candidate(1, tourist_id="raj")) is not None
        assert len(manager) == 3

    def test_resolved_alert_does_not_suppress(self):
        manager = _make_manager()
        first = manager.submit(_make_candidate(0))
        manager.acknowledge(first.id)
        manager.investigate(first.id)
        manager.resolve(first.id)
        assert manager.submit(_make_candidate(1)) is not None

    def test_acknowledged_alert_still_suppresses(self):
        manager = _make_manager()
        first = manager.submit(_make_candidate(0))
        manager.acknowledge(first.id)
        assert manager.submit(_make_candidate(2)) is None

    def test_higher_severity_duplicate_escalates(self):
        sink = RecordingNotifier()
        manager = _make_manager(sink)
        first = manager.submit(_make_candidate(0))
        assert manager.submit(_make_candidate(2, severity=Severity.HIGH)) is None
        assert manager.get(first.id).severity == Severity.HIGH
        assert [a.severity for a in sink.escalations] == [Severity.HIGH]

    def test_lower_severity_duplicate_does_not_downgrade(self):
        sink = RecordingNotifier()
        manager = _make_manager(sink)
        first = manager.submit(_make_candidate(0, severity=Severity.HIGH))
        manager.submit(_make_candidate(2, severity=Severity.LOW))
        assert manager.get(first.id).severity == Severity.HIGH
        assert sink.escalations == []

    def test_concurrent_duplicates_create_one_alert(self):
        manager = _make_manager()
        barrier = threading.Barrier(8)

        def submit():
            barrier.wait()
            manager.submit(_make_candidate(0))

        threads = [threading.Thread(target=submit) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(manager) == 1
        assert manager.suppressed_count == 7


class TestTransitions:
    def test_full_lifecycle(self):
        sink = RecordingNotifier()
        manager = _make_manager(sink)
        alert = manager.submit(_make_candidate())
        assert manager.acknowledge(alert.id).status == AlertStatus.ACKNOWLEDGED
        assert manager.investigate(alert.id).status == AlertStatus.INVESTIGATING
        resolved = manager.resolve(alert.id)
        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.updated_at == T0
        assert [a.status for a in sink.status_changes] == [
            AlertStatus.ACKNOWLEDGED, AlertStatus.INVESTIGATING, AlertStatus.RESOLVED,
        ]

    def test_cannot_skip_a_step(self):
        manager = _make_manager()
        alert = manager.submit(_make_candidate())
        with pytest.raises(InvalidTransitionError):
            manager.resolve(alert.id)
        with pytest.raises(InvalidTransitionError):
            manager.investigate(alert.id)
        assert manager.get(alert.id).status == AlertStatus.NEW

    def test_cannot_repeat_a_step(self):
        manager = _make_manager()
        alert = manager.submit(_make_candidate())
        manager.acknowledge(alert.id)
        with pytest.raises(InvalidTransitionError):
            manager.acknowledge(alert.id)

    def test_resolved_is_terminal(self):
        manager = _make_manager()
        alert = manager.submit(_make_candidate())
        manager.acknowledge(alert.id)
        manager.investigate(alert.id)
        manager.resolve(alert.id)
        for action in (manager.acknowledge, manager.investigate, manager.resolve):
            with pytest.raises(InvalidTransitionError):
                action(alert.id)

    def test_unknown_alert(self):
        manager = _make_manager()
        with pytest.raises(UnknownAlertError):
            manager.acknowledge("alert-404")
        with pytest.raises(UnknownAlertError):
            manager.get("alert-404")

    def test_returned_alert_is_a_copy(self):
        manager = _make_manager()
        alert = manager.submit(_make_candidate())
        alert.status = AlertStatus.RESOLVED
        assert manager.get(alert.id).status == AlertStatus.NEW


class TestQueries:
    def test_filters_and_counts(self):
        manager = _make_manager()
        a = manager.submit(_make_candidate(0))
        manager.submit(_make_candidate(0, type=AnomalyType.INACTIVITY, tourist_id="yuki"))
        manager.acknowledge(a.id)

        assert [x.id for x in manager.list_alerts(status=AlertStatus.ACKNOWLEDGED)] == [a.id]
        assert len(manager.list_alerts(tourist_id="yuki")) == 1
        assert len(manager.list_alerts(alert_type=AnomalyType.INACTIVITY)) == 1
        assert manager.counts_by_status() == {
            "new": 1, "acknowledged": 1, "investigating": 0, "resolved": 0,
        }
        assert len(manager.open_alerts()) == 2

    def test_recent_is_newest_first_and_capped(self):
        manager = _make_manager()
        for i in range(25):
            manager.submit(_make_candidate(i * 10))
        recent = manager.recent()
        assert len(recent) == 20
        assert recent[0].detected_at == T0 + timedelta(minutes=240)
        assert manager.recent(3)[-1].detected_at == T0 + timedelta(minutes=220)


class TestNotifierIsolation:
    def test_failing_sink_does_not_break_intake(self):
        class Broken(Notifier):
            def on_alert_created(self, alert):
                raise RuntimeError("sink down")

        sink = RecordingNotifier()
        manager = _make_manager(NotifierGroup([Broken(), sink]))
        assert manager.submit(_make_candidate()) is not None
        assert len(sink.created) == 1
