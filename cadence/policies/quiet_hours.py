"""
QuietHoursGate — moves candidate instants out of a do-not-disturb window.

The window is half-open, [window_start, window_end), evaluated on the
candidate's own weekday. Windows with end < start span midnight:

    22:00-08:00, candidate Mon 23:30 → Tue 08:00
    22:00-08:00, candidate Tue 01:00 → Tue 08:00
    12:00-13:00, candidate Mon 12:30 → Mon 13:00

The gate knows nothing about request priority or bypass flags; the
Governor decides whether to call it at all.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from cadence.core.clock import Clock, SystemClock
from cadence.core.types import QuietHoursPolicy, Weekday


@dataclass(frozen=True, slots=True)
class QuietHoursStatus:
    """Quiet-hours state at a given moment."""

    is_active: bool
    until_end: timedelta | None  # set while active
    next_start: datetime | None  # set while inactive


class QuietHoursGate:
    """
    Pure quiet-hours arithmetic.

    Usage:
        gate = QuietHoursGate(clock=SystemClock())
        at = gate.apply(QuietHoursPolicy.night_time(), candidate)
        if gate.status(policy).is_active:
            ...
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()

    def is_quiet(self, policy: QuietHoursPolicy, at: datetime) -> bool:
        """Whether `at` falls inside the window on an active weekday."""
        if Weekday(at.weekday()) not in policy.active_weekdays:
            return False
        current = at.time().replace(tzinfo=None)
        start = policy.window_start.as_time()
        end = policy.window_end.as_time()
        if policy.wraps_midnight:
            return current >= start or current < end
        return start <= current < end

    def apply(self, policy: QuietHoursPolicy, candidate: datetime) -> datetime:
        """Return the candidate, or the window's end if it falls inside the window."""
        if not self.is_quiet(policy, candidate):
            return candidate
        end_today = policy.window_end.on(candidate)
        if end_today <= candidate:
            # Entered before midnight, so the window ends tomorrow
            return end_today + timedelta(days=1)
        return end_today

    def status(self, policy: QuietHoursPolicy, now: datetime | None = None) -> QuietHoursStatus:
        t = now if now is not None else self._clock.now()
        if self.is_quiet(policy, t):
            return QuietHoursStatus(
                is_active=True,
                until_end=self.apply(policy, t) - t,
                next_start=None,
            )
        return QuietHoursStatus(
            is_active=False,
            until_end=None,
            next_start=self.next_start(policy, t),
        )

    def next_start(self, policy: QuietHoursPolicy, after: datetime) -> datetime | None:
        """First window start strictly after `after` on an active weekday."""
        if not policy.active_weekdays:
            return None
        start_today = policy.window_start.on(after)
        for offset in range(8):
            candidate = start_today + timedelta(days=offset)
            if candidate > after and Weekday(candidate.weekday()) in policy.active_weekdays:
                return candidate
        return None
