"""Tests for the SOS escalation controller."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from safety_engine.escalation import EmergencyController
from safety_engine.models import EscalationState, LocationPoint
from safety_engine.notifications import Notifier, RecordingNotifier

T0 = datetime(2026, 5, 1, 6, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _make_controller(sink: Notifier | None = None, lookup=None, countdown: float = 5.0):
    clock = FakeClock()
    location = LocationPoint(lat=30.7346, lng=79.0669, timestamp=T0)
    controller = EmergencyController(
        notifier=sink or RecordingNotifier(),
        location_lookup=lookup or (lambda tourist_id: location),
        countdown_seconds=countdown,
        clock=clock,
        wall_clock=lambda: T0,
    )
    return controller, clock


class TestCountdown:
    def test_dispatches_after_countdown(self):
        sink = RecordingNotifier()
        controller, clock = _make_controller(sink)
        controller.trigger_sos("michael")
        assert controller.state("michael") == EscalationState.COUNTING_DOWN

        clock.advance(4.9)
        assert controller.tick() == []

        clock.advance(0.1)
        records = controller.tick()
        assert [r.tourist_id for r in records] == ["michael"]
        assert records[0].location.lat == 30.7346
        assert sink.dispatches == [("michael", records[0].location, T0)]
        assert controller.state("michael") == EscalationState.IDLE

    def test_repeat_press_is_idempotent(self):
        sink = RecordingNotifier()
        controller, clock = _make_controller(sink)
        controller.trigger_sos("michael")
        clock.advance(3.0)
        controller.trigger_sos("michael")
        clock.advance(2.0)
        controller.tick()
        clock.advance(10.0)
        controller.tick()
        assert len(sink.dispatches) == 1
        assert controller.dispatched_count == 1

    def test_cancel_before_expiry_prevents_dispatch(self):
        sink = RecordingNotifier()
        controller, clock = _make_controller(sink)
        controller.trigger_sos("lisa")
        clock.advance(3.0)
        assert controller.cancel_sos("lisa") is True
        clock.advance(10.0)
        assert controller.tick() == []
        assert sink.dispatches == []
        assert controller.state("lisa") == EscalationState.IDLE

    def test_cancel_after_dispatch_is_noop(self):
        sink = RecordingNotifier()
        controller, clock = _make_controller(sink)
        controller.trigger_sos("michael")
        clock.advance(5.0)
        controller.tick()
        assert controller.cancel_sos("michael") is False
        assert len(sink.dispatches) == 1

    def test_cancel_when_idle_is_noop(self):
        controller, _ = _make_controller()
        assert controller.cancel_sos("nobody") is False
        assert controller._locks == {}

    def test_new_countdown_after_dispatch(self):
        sink = RecordingNotifier()
        controller, clock = _make_controller(sink)
        controller.trigger_sos("michael")
        clock.advance(5.0)
        controller.tick()
        controller.trigger_sos("michael")
        clock.advance(5.0)
        controller.tick()
        assert len(sink.dispatches) == 2
        assert len(controller.history()) == 2

    def test_remaining_seconds(self):
        controller, clock = _make_controller()
        assert controller.remaining_seconds("michael") is None
        controller.trigger_sos("michael")
        clock.advance(2.0)
        assert controller.remaining_seconds("michael") == pytest.approx(3.0)

    def test_independent_tourists(self):
        sink = RecordingNotifier()
        controller, clock = _make_controller(sink)
        controller.trigger_sos("michael")
        clock.advance(2.0)
        controller.trigger_sos("lisa")
        clock.advance(3.0)
        assert [r.tourist_id for r in controller.tick()] == ["michael"]
        assert [e.tourist_id for e in controller.active()] == ["lisa"]


class TestRobustness:
    @pytest.mark.parametrize("countdown", [2.9, 10.1])
    def test_countdown_bounds(self, countdown):
        with pytest.raises(ValueError):
            _make_controller(countdown=countdown)

    def test_dispatch_without_known_location(self):
        sink = RecordingNotifier()
        controller, clock = _make_controller(sink, lookup=lambda tourist_id: None)
        controller.trigger_sos("ghost")
        clock.advance(5.0)
        records = controller.tick()
        assert records[0].location is None
        assert sink.dispatches[0][1] is None

    def test_failing_lookup_still_dispatches(self):
        def lookup(tourist_id):
            raise RuntimeError("store down")

        sink = RecordingNotifier()
        controller, clock = _make_controller(sink, lookup=lookup)
        controller.trigger_sos("michael")
        clock.advance(5.0)
        assert len(controller.tick()) == 1
        assert len(sink.dispatches) == 1

    def test_failing_notifier_does_not_raise(self):
        class Broken(Notifier):
            def on_emergency_dispatched(self, tourist_id, location, timestamp):
                raise RuntimeError("pager down")

        controller, clock = _make_controller(Broken())
        controller.trigger_sos("michael")
        clock.advance(5.0)
        assert len(controller.tick()) == 1
        assert controller.dispatched_count == 1
