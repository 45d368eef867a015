"""Main CLI entry point for the safety engine.

Replays a JSON scenario (zones, routes, location samples, communication
pings and SOS presses) through a ``SafetyMonitor`` on a simulated clock and
prints a formatted situation report.

Usage:
    python -m safety_engine.main --input safety_engine/examples/sample_scenario.json

    # Extra zones from a catalogue file, raw JSON output:
    python -m safety_engine.main \\
        --input scenario.json \\
        --zones safety_engine/examples/uttarakhand_zones.json \\
        --json-output
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from safety_engine.config import DetectionConfig
from safety_engine.errors import SafetyEngineError
from safety_engine.geofence import load_zones
from safety_engine.models import (
    Alert,
    DispatchRecord,
    EngineStats,
    GeofenceZone,
    LocationPoint,
    Route,
    TouristOverview,
    as_utc,
    utc_now,
)
from safety_engine.monitor import SafetyMonitor
from safety_engine.notifications import LoggingNotifier

log = logging.getLogger(__name__)


# ── Scenario models ──────────────────────────────────────────────────────────

class EventKind(str, Enum):
    LOCATION = "location"
    PING = "ping"
    SOS = "sos"
    CANCEL_SOS = "cancel_sos"
    CYCLE = "cycle"
    EXIT = "exit"


class ScenarioEvent(BaseModel):
    at: datetime
    kind: EventKind
    tourist_id: str | None = None
    lat: float | None = None
    lng: float | None = None
    accuracy_m: float = 10.0
    speed_kmh: float | None = None
    heading_deg: float | None = None

    normalise_at = field_validator("at")(as_utc)

    @model_validator(mode="after")
    def _check_fields(self) -> ScenarioEvent:
        if self.kind != EventKind.CYCLE and not self.tourist_id:
            raise ValueError(f"{self.kind.value} event needs a tourist_id")
        if self.kind == EventKind.LOCATION and (self.lat is None or self.lng is None):
            raise ValueError("location event needs lat and lng")
        return self


class TouristSetup(BaseModel):
    tourist_id: str
    preferred_routes: list[str] = Field(default_factory=list)


class Scenario(BaseModel):
    """Top-level replay payload."""
    name: str = "scenario"
    config: DetectionConfig = Field(default_factory=DetectionConfig)
    zones: list[GeofenceZone] = Field(default_factory=list)
    routes: list[Route] = Field(default_factory=list)
    tourists: list[TouristSetup] = Field(default_factory=list)
    events: list[ScenarioEvent] = Field(default_factory=list)


class ReplayResult(BaseModel):
    scenario: str
    stats: EngineStats
    alerts: list[Alert]
    dispatches: list[DispatchRecord]
    tourists: list[TouristOverview]
    rejected_samples: int = 0


# ── Simulated clock ──────────────────────────────────────────────────────────

class SimulatedClock:
    """Wall and monotonic clock that only moves when the replay advances it."""

    def __init__(self, start: datetime) -> None:
        self._start = start
        self._now = start

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return (self._now - self._start).total_seconds()

    def advance_to(self, when: datetime) -> None:
        if when > self._now:
            self._now = when


# ── Replay ───────────────────────────────────────────────────────────────────

def run_scenario(scenario: Scenario, extra_zones: list[GeofenceZone] | None = None) -> ReplayResult:
    """Run every event in time order and collect the final engine state."""
    events = sorted(scenario.events, key=lambda e: e.at)
    start = events[0].at if events else utc_now()
    clock = SimulatedClock(start)

    monitor = SafetyMonitor(
        config=scenario.config,
        notifiers=[LoggingNotifier()],
        clock=clock.now,
        monotonic=clock.monotonic,
        zones=[*scenario.zones, *(extra_zones or [])],
        routes=scenario.routes,
    )
    routes_for = {t.tourist_id: t.preferred_routes for t in scenario.tourists}
    rejected = 0

    for event in events:
        # Let any countdown that expires before this event fire first
        clock.advance_to(event.at)
        monitor.tick_emergencies()

        tid = event.tourist_id
        try:
            if event.kind == EventKind.LOCATION:
                point = LocationPoint(
                    lat=event.lat, lng=event.lng, timestamp=event.at,
                    accuracy_m=event.accuracy_m, speed_kmh=event.speed_kmh,
                    heading_deg=event.heading_deg,
                )
                is_new = tid not in monitor.profiles
                result = monitor.ingest_location(tid, point)
                if not result.accepted:
                    rejected += 1
                if is_new and routes_for.get(tid):
                    monitor.set_preferred_routes(tid, routes_for[tid])
            elif event.kind == EventKind.PING:
                monitor.ingest_communication_ping(tid, event.at)
            elif event.kind == EventKind.SOS:
                monitor.trigger_sos(tid)
            elif event.kind == EventKind.CANCEL_SOS:
                monitor.cancel_sos(tid)
            elif event.kind == EventKind.CYCLE:
                monitor.run_all_cycles()
            elif event.kind == EventKind.EXIT:
                monitor.exit_monitoring(tid)
        except SafetyEngineError as exc:
            log.warning("Event %s at %s rejected: %s", event.kind.value, event.at.isoformat(), exc)

    # Drain countdowns still running when the scenario ends
    if monitor.emergencies.active():
        clock.advance_to(clock.now() + timedelta(seconds=monitor.emergencies.countdown_seconds))
        monitor.tick_emergencies()

    return ReplayResult(
        scenario=scenario.name,
        stats=monitor.stats(),
        alerts=sorted(monitor.alerts.list_alerts(), key=lambda a: a.detected_at),
        dispatches=monitor.emergencies.history(),
        tourists=[monitor.tourist_overview(tid) for tid in monitor.profiles.tourist_ids()],
        rejected_samples=rejected,
    )


# ── Text report formatter ────────────────────────────────────────────────────

SEPARATOR = "=" * 72


def format_report(result: ReplayResult) -> str:
    lines: list[str] = []

    lines.append(SEPARATOR)
    lines.append(f"  TOURIST SAFETY MONITOR — SITUATION REPORT ({result.scenario})")
    lines.append(SEPARATOR)
    lines.append("")

    s = result.stats
    lines.append(">> SUMMARY")
    lines.append("-" * 40)
    lines.append(f"  Tourists monitored:   {s.total_tourists} ({s.active_monitoring} active)")
    lines.append(f"  Anomalies detected:   {s.anomalies_detected}")
    lines.append(f"  Alerts created:       {s.alerts_created} ({s.alerts_suppressed} suppressed)")
    lines.append(f"  Open alerts:          {s.open_alerts}")
    lines.append(f"  Emergencies sent:     {s.emergencies_dispatched}")
    if result.rejected_samples:
        lines.append(f"  Stale samples:        {result.rejected_samples} dropped")
    lines.append("")

    lines.append(">> ALERTS")
    lines.append("-" * 40)
    if result.alerts:
        for al in result.alerts:
            lines.append(
                f"  [{al.severity.value.upper()}] {al.type.value}  tourist={al.tourist_id}  "
                f"status={al.status.value}"
            )
            lines.append(f"        {al.description}")
            lines.append(
                f"        At {al.detected_at:%Y-%m-%d %H:%M:%S} "
                f"({al.location.lat:.4f}, {al.location.lng:.4f}), confidence {al.confidence:.0%}"
            )
            lines.append("")
    else:
        lines.append("  No alerts.")
        lines.append("")

    lines.append(">> EMERGENCY DISPATCHES")
    lines.append("-" * 40)
    if result.dispatches:
        for d in result.dispatches:
            where = f"({d.location.lat:.4f}, {d.location.lng:.4f})" if d.location else "location unknown"
            lines.append(f"  {d.dispatched_at:%H:%M:%S}  tourist={d.tourist_id}  {where}")
    else:
        lines.append("  None.")
    lines.append("")

    lines.append(">> TOURISTS")
    lines.append("-" * 40)
    if result.tourists:
        for t in result.tourists:
            zone = f" in '{t.current_zone}'" if t.current_zone else ""
            lines.append(
                f"  • {t.tourist_id}: {t.status.value.upper()}{zone}, risk {t.risk_level:.0f}, "
                f"{t.activity_pattern.value}, {t.open_alerts} open alert(s)"
            )
    else:
        lines.append("  None.")
    lines.append("")
    lines.append(SEPARATOR)

    return "\n".join(lines)


# ── CLI ──────────────────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description="Tourist Safety Monitor — scenario replay",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
examples:
  python -m safety_engine.main --input safety_engine/examples/sample_scenario.json
  python -m safety_engine.main --input scenario.json --zones zones.json --json-output
        """,
    )
    parser.add_argument(
        "--input", "-i", required=True,
        help="Path to JSON scenario file",
    )
    parser.add_argument(
        "--zones",
        help="Optional JSON zone catalogue merged into the scenario's zones",
    )
    parser.add_argument(
        "--json-output",
        action="store_true",
        help="Print raw JSON output instead of formatted report",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log engine events to stderr",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s  %(name)-20s  %(message)s",
    )

    input_path = Path(args.input)
    if not input_path.exists():
        print(f"Error: input file not found: {input_path}", file=sys.stderr)
        sys.exit(1)

    try:
        with open(input_path, encoding="utf-8") as f:
            scenario = Scenario.model_validate(json.load(f))
        extra_zones = load_zones(args.zones) if args.zones else []
    except (json.JSONDecodeError, ValidationError) as exc:
        print(f"Error: invalid scenario: {exc}", file=sys.stderr)
        sys.exit(1)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    result = run_scenario(scenario, extra_zones)

    if args.json_output:
        print(result.model_dump_json(indent=2))
    else:
        print(format_report(result))


if __name__ == "__main__":
    main()
