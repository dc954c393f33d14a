"""
Clock abstraction — the only source of "now" inside Cadence.

Components never read the wall clock directly. Production code injects a
SystemClock; tests inject a FixedClock and move it explicitly.

Usage:
    clock = FixedClock(datetime(2024, 1, 15, 10, 0))
    expander = RecurrenceExpander(clock=clock)
    clock.advance(timedelta(hours=1))
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, tzinfo


class Clock(ABC):
    """Returns the current instant."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    """
    Wall clock.

    With tz=None instants are naive local time, matching how callers
    usually express recurrence rules. Pass a tzinfo for aware instants.
    """

    def __init__(self, tz: tzinfo | None = None) -> None:
        self._tz = tz

    def now(self) -> datetime:
        return datetime.now(self._tz)


class FixedClock(Clock):
    """Deterministic clock for tests and previews."""

    def __init__(self, at: datetime) -> None:
        self._at = at

    def now(self) -> datetime:
        return self._at

    def set(self, at: datetime) -> None:
        self._at = at

    def advance(self, delta: timedelta) -> datetime:
        self._at = self._at + delta
        return self._at
