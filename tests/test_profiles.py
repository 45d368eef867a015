"""Tests for the behavioral profile store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from safety_engine.config import DetectionConfig
from safety_engine.errors import StaleLocationError, UnknownTouristError
from safety_engine.geo import destination
from safety_engine.models import ActivityPattern, LocationPoint
from safety_engine.profiles import ProfileStore

T0 = datetime(2026, 5, 1, 6, 0, tzinfo=timezone.utc)


def _make_point(minutes: float = 0.0, **overrides) -> LocationPoint:
    defaults = dict(
        lat=30.1089,
        lng=78.2932,
        timestamp=T0 + timedelta(minutes=minutes),
        accuracy_m=10.0,
    )
    defaults.update(overrides)
    return LocationPoint(**defaults)


class TestRecordLocation:
    def test_first_sample_creates_profile(self):
        store = ProfileStore()
        profile = store.record_location("anna", _make_point(speed_kmh=4.0))
        assert "anna" in store
        assert profile.first_seen_at == T0
        assert profile.last_activity_timestamp == T0
        assert profile.baseline_speed_kmh == pytest.approx(4.0)
        assert profile.speed_samples == 1

    def test_baseline_is_exponentially_smoothed(self):
        store = ProfileStore()
        store.record_location("anna", _make_point(0, speed_kmh=10.0))
        profile = store.record_location("anna", _make_point(1, speed_kmh=20.0))
        assert profile.baseline_speed_kmh == pytest.approx(12.0)

    def test_speed_derived_from_positions_when_not_reported(self):
        store = ProfileStore()
        store.record_location("anna", _make_point(0))
        lat, lng = destination(30.1089, 78.2932, 100.0, 0.0)
        profile = store.record_location("anna", _make_point(1.2, lat=lat, lng=lng))
        # 100 m in 72 s
        assert profile.baseline_speed_kmh == pytest.approx(5.0, rel=1e-3)

    def test_stale_sample_rejected_without_side_effects(self):
        store = ProfileStore()
        store.record_location("anna", _make_point(0, speed_kmh=4.0))
        before = store.record_location("anna", _make_point(10, speed_kmh=4.0))

        with pytest.raises(StaleLocationError):
            store.record_location("anna", _make_point(5, speed_kmh=40.0))

        after = store.get_profile("anna")
        assert after.last_activity_timestamp == before.last_activity_timestamp
        assert after.baseline_speed_kmh == before.baseline_speed_kmh
        assert len(store.recent_locations("anna")) == 2

    def test_equal_timestamp_accepted(self):
        store = ProfileStore()
        store.record_location("anna", _make_point(0))
        store.record_location("anna", _make_point(0, lat=30.1090))
        assert len(store.recent_locations("anna")) == 2

    def test_window_is_bounded(self):
        store = ProfileStore(DetectionConfig(location_window_size=5))
        for i in range(8):
            store.record_location("anna", _make_point(i))
        points = store.recent_locations("anna")
        assert len(points) == 5
        assert points[0].timestamp == T0 + timedelta(minutes=3)

    def test_snapshot_reference_speed_excludes_latest_sample(self):
        store = ProfileStore()
        store.record_location("anna", _make_point(0, speed_kmh=10.0))
        store.record_location("anna", _make_point(1, speed_kmh=30.0))
        snap = store.snapshot("anna", T0 + timedelta(minutes=1))
        assert snap.reference_speed_kmh == pytest.approx(10.0)
        assert snap.profile.baseline_speed_kmh == pytest.approx(14.0)
        assert snap.latest.speed_kmh == 30.0
        assert snap.previous.speed_kmh == 10.0


class TestActivityPattern:
    def test_single_fresh_sample_is_active(self):
        store = ProfileStore()
        profile = store.record_location("anna", _make_point(0))
        assert profile.activity_pattern == ActivityPattern.ACTIVE

    def test_hourly_samples_are_moderate(self):
        store = ProfileStore()
        for hour in range(5):
            profile = store.record_location("anna", _make_point(hour * 60))
        assert profile.activity_pattern == ActivityPattern.MODERATE

    def test_sparse_samples_are_inactive(self):
        store = ProfileStore()
        store.record_location("anna", _make_point(0))
        profile = store.record_location("anna", _make_point(5 * 60))
        assert profile.activity_pattern == ActivityPattern.INACTIVE

    def test_snapshot_decays_pattern_over_time(self):
        store = ProfileStore()
        for minute in range(0, 60, 10):
            store.record_location("anna", _make_point(minute))
        assert store.get_profile("anna").activity_pattern == ActivityPattern.ACTIVE
        snap = store.snapshot("anna", T0 + timedelta(hours=8))
        assert snap.profile.activity_pattern == ActivityPattern.INACTIVE


class TestCommunication:
    def test_frequency_counts_last_hour(self):
        store = ProfileStore()
        store.record_location("anna", _make_point(0))
        store.record_communication("anna", T0 + timedelta(minutes=10))
        store.record_communication("anna", T0 + timedelta(minutes=50))
        profile = store.record_communication("anna", T0 + timedelta(minutes=80))
        # the 10-minute ping has aged out of the hour ending at minute 80
        assert profile.communication_frequency_per_hour == pytest.approx(2.0)
        assert profile.last_communication_at == T0 + timedelta(minutes=80)

    def test_ping_counts_as_activity(self):
        store = ProfileStore()
        store.record_location("anna", _make_point(0))
        profile = store.record_communication("anna", T0 + timedelta(minutes=30))
        assert profile.last_activity_timestamp == T0 + timedelta(minutes=30)

    def test_snapshot_recomputes_frequency(self):
        store = ProfileStore()
        store.record_location("anna", _make_point(0))
        store.record_communication("anna", T0 + timedelta(minutes=5))
        snap = store.snapshot("anna", T0 + timedelta(hours=3))
        assert snap.profile.communication_frequency_per_hour == 0.0

    def test_unknown_tourist(self):
        store = ProfileStore()
        with pytest.raises(UnknownTouristError):
            store.record_communication("ghost", T0)


class TestAdministration:
    def test_archive_and_restore(self):
        store = ProfileStore()
        store.record_location("anna", _make_point(0, speed_kmh=4.0))
        store.set_preferred_routes("anna", ["ghat-walk"])
        archived = store.archive("anna", T0 + timedelta(hours=1))

        assert archived.archived_at == T0 + timedelta(hours=1)
        assert "anna" not in store
        assert store.archived_ids() == ["anna"]
        with pytest.raises(UnknownTouristError):
            store.get_profile("anna")
        assert store.last_location("anna") is None

        restored = store.record_location("anna", _make_point(24 * 60))
        assert restored.archived_at is None
        assert restored.preferred_route_ids == {"ghat-walk"}
        assert restored.baseline_speed_kmh == pytest.approx(4.0)
        assert store.archived_ids() == []

    def test_risk_level_is_clamped(self):
        store = ProfileStore()
        store.record_location("anna", _make_point(0))
        store.update_risk_level("anna", 250.0)
        assert store.get_profile("anna").risk_level == 100.0
        store.update_risk_level("anna", -5.0)
        assert store.get_profile("anna").risk_level == 0.0

    def test_last_location_unknown_tourist(self):
        assert ProfileStore().last_location("ghost") is None

    def test_naive_timestamps_treated_as_utc(self):
        store = ProfileStore()
        store.record_location("anna", _make_point(0, timestamp=datetime(2026, 5, 1, 6, 0)))
        assert store.get_profile("anna").last_activity_timestamp == T0

    def test_lookups_for_unknown_ids_leave_no_state(self):
        store = ProfileStore()
        for tourist_id in ("ghost-1", "ghost-2", "ghost-3"):
            with pytest.raises(UnknownTouristError):
                store.get_profile(tourist_id)
            with pytest.raises(UnknownTouristError):
                store.snapshot(tourist_id, T0)
            assert store.last_location(tourist_id) is None
        assert store._locks == {}
