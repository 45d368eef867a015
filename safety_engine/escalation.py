"""Emergency (SOS) escalation controller.

Per tourist: ``idle → countingDown → dispatched → idle``, with a cancel exit
from ``countingDown`` back to ``idle``. A single monotonic clock is the
only time source: ``tick()`` dispatches every countdown whose deadline has
passed, and ``cancel_sos()`` competes with it for the same per-tourist lock.
Whichever gets the lock first wins, and the loser is a no-op.

Nothing on this path raises. Repeated presses are idempotent, late cancels
are ignored, and collaborator failures are logged and swallowed so a
dispatch can never be lost to an exception.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from safety_engine.config import (
    DISPATCH_HISTORY_LIMIT,
    SOS_COUNTDOWN_MAX,
    SOS_COUNTDOWN_MIN,
    SOS_COUNTDOWN_SECONDS,
)
from safety_engine.models import (
    DispatchRecord,
    EmergencyEscalation,
    EscalationState,
    LocationPoint,
    utc_now,
)
from safety_engine.notifications import LoggingNotifier, Notifier

log = logging.getLogger(__name__)

LocationLookup = Callable[[str], "LocationPoint | None"]


@dataclass
class _Countdown:
    escalation: EmergencyEscalation
    deadline: float


class EmergencyController:
    def __init__(
        self,
        notifier: Notifier | None = None,
        location_lookup: LocationLookup | None = None,
        countdown_seconds: float = SOS_COUNTDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = utc_now,
        history_limit: int = DISPATCH_HISTORY_LIMIT,
    ) -> None:
        if not SOS_COUNTDOWN_MIN <= countdown_seconds <= SOS_COUNTDOWN_MAX:
            raise ValueError(
                f"countdown_seconds must be within [{SOS_COUNTDOWN_MIN}, {SOS_COUNTDOWN_MAX}]"
            )
        self._notifier = notifier or LoggingNotifier()
        self._lookup = location_lookup or (lambda _tourist_id: None)
        self._countdown = countdown_seconds
        self._clock = clock
        self._wall_clock = wall_clock

        self._active: dict[str, _Countdown] = {}
        self._history: deque[DispatchRecord] = deque(maxlen=history_limit)
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self.dispatched_count = 0

    @property
    def countdown_seconds(self) -> float:
        return self._countdown

    # -- user actions -----------------------------------------------------

    def trigger_sos(self, tourist_id: str) -> EmergencyEscalation:
        """Start the countdown; a no-op returning the live escalation if one is running."""
        with self._lock_for(tourist_id):
            with self._registry_lock:
                current = self._active.get(tourist_id)
                if current is None:
                    escalation = EmergencyEscalation(
                        tourist_id=tourist_id,
                        triggered_at=self._wall_clock(),
                        countdown_seconds=self._countdown,
                    )
                    current = self._active[tourist_id] = _Countdown(
                        escalation=escalation,
                        deadline=self._clock() + self._countdown,
                    )
                    started = True
                else:
                    started = False
            if started:
                log.warning(
                    "SOS triggered for tourist %s, dispatch in %.0fs",
                    tourist_id, self._countdown,
                )
            else:
                log.info("SOS already counting down for tourist %s", tourist_id)
            return current.escalation.model_copy()

    def cancel_sos(self, tourist_id: str) -> bool:
        """Cancel a running countdown. Returns False (and does nothing) otherwise."""
        with self._registry_lock:
            lock = self._locks.get(tourist_id)
        if lock is None:
            log.info("Ignored SOS cancel for tourist %s (never triggered)", tourist_id)
            return False
        with lock:
            with self._registry_lock:
                current = self._active.pop(tourist_id, None)
            if current is None:
                log.info("Ignored SOS cancel for tourist %s (not counting down)", tourist_id)
                return False
            current.escalation.cancelled = True
            log.info("SOS cancelled for tourist %s", tourist_id)
            return True

    # -- clock ------------------------------------------------------------

    def tick(self) -> list[DispatchRecord]:
        """Dispatch every countdown that has expired. Call this periodically."""
        now = self._clock()
        with self._registry_lock:
            due = [tid for tid, c in self._active.items() if c.deadline <= now]
        records: list[DispatchRecord] = []
        for tourist_id in due:
            record = self._dispatch_if_due(tourist_id, now)
            if record is not None:
                records.append(record)
        return records

    def _dispatch_if_due(self, tourist_id: str, now: float) -> DispatchRecord | None:
        with self._lock_for(tourist_id):
            with self._registry_lock:
                current = self._active.get(tourist_id)
                if current is None or current.deadline > now:
                    # Cancelled (or re-armed) since the tick looked
                    return None
                del self._active[tourist_id]
            record = DispatchRecord(
                tourist_id=tourist_id,
                location=self._last_location(tourist_id),
                dispatched_at=self._wall_clock(),
                triggered_at=current.escalation.triggered_at,
            )
            self._history.append(record)
            self.dispatched_count += 1

        log.warning("Emergency dispatched for tourist %s", tourist_id)
        try:
            self._notifier.on_emergency_dispatched(tourist_id, record.location, record.dispatched_at)
        except Exception:
            log.exception("Emergency notifier failed for tourist %s", tourist_id)
        return record

    # -- queries ----------------------------------------------------------

    def state(self, tourist_id: str) -> EscalationState:
        # Dispatch resets straight back to idle, so it is never observed at rest
        with self._registry_lock:
            active = tourist_id in self._active
        return EscalationState.COUNTING_DOWN if active else EscalationState.IDLE

    def remaining_seconds(self, tourist_id: str) -> float | None:
        with self._registry_lock:
            current = self._active.get(tourist_id)
        if current is None:
            return None
        return max(0.0, current.deadline - self._clock())

    def active(self) -> list[EmergencyEscalation]:
        with self._registry_lock:
            return [c.escalation.model_copy() for c in self._active.values()]

    def history(self) -> list[DispatchRecord]:
        return list(self._history)

    # -- internals --------------------------------------------------------

    def _lock_for(self, tourist_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(tourist_id)
            if lock is None:
                lock = self._locks[tourist_id] = threading.Lock()
            return lock

    def _last_location(self, tourist_id: str) -> LocationPoint | None:
        try:
            return self._lookup(tourist_id)
        except Exception:
            log.exception("Location lookup failed for tourist %s; dispatching without it", tourist_id)
            return None
