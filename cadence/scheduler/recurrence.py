"""
RecurrenceExpander — turns a RecurrenceRule into concrete future instants.

Occurrence k is always computed from the rule's anchor (first date at
time_of_day), never by chaining from occurrence k-1, so month and year
steps land on valid dates without drifting:

    anchor 2024-01-31 09:00, monthly → 01-31, 02-29, 03-31, 04-30 ...

Usage:
    expander = RecurrenceExpander(clock=SystemClock())
    instants = expander.expand(rule)            # bounded, strictly increasing
    for k, at in expander.iter_occurrences(rule, now):
        ...                                     # unbounded by the cap
"""

from __future__ import annotations

from datetime import datetime, timedelta
from itertools import islice
from typing import Iterator

from dateutil.relativedelta import relativedelta

from cadence.core.clock import Clock, SystemClock
from cadence.core.types import SYSTEM_CAP, RecurrenceRule, TimeUnit


_FIXED_STEPS = {
    TimeUnit.MINUTE: timedelta(minutes=1),
    TimeUnit.HOUR: timedelta(hours=1),
    TimeUnit.DAY: timedelta(days=1),
    TimeUnit.WEEK: timedelta(weeks=1),
}


def add_units(anchor: datetime, unit: TimeUnit, count: int) -> datetime:
    """
    Calendar-correct `anchor + count * unit`.

    Month and year steps clamp the day to the target month's length.
    """
    step = _FIXED_STEPS.get(unit)
    if step is not None:
        return anchor + step * count
    if unit == TimeUnit.MONTH:
        return anchor + relativedelta(months=count)
    return anchor + relativedelta(years=count)


def rule_anchor(rule: RecurrenceRule) -> datetime:
    """First candidate of a rule: start date at time_of_day (weekday-aligned)."""
    anchor = rule.time_of_day.on(rule.start)
    if rule.weekday is not None:
        anchor += timedelta(days=(rule.weekday - anchor.weekday()) % 7)
    return anchor


class RecurrenceExpander:
    """
    Pure expansion of recurrence rules.

    The injected clock only supplies the default `now`; passing `now`
    explicitly makes every call a deterministic function of its inputs.
    """

    def __init__(self, clock: Clock | None = None, system_cap: int = SYSTEM_CAP) -> None:
        self._clock = clock or SystemClock()
        self._system_cap = system_cap

    @property
    def system_cap(self) -> int:
        return self._system_cap

    def limit_for(self, rule: RecurrenceRule) -> int:
        """Number of occurrences expand() will return at most."""
        if rule.max_occurrences is not None:
            return min(rule.max_occurrences, self._system_cap)
        return self._system_cap

    def expand(self, rule: RecurrenceRule, now: datetime | None = None) -> list[datetime]:
        """
        Return the next occurrences strictly after `now`.

        Stops at min(max_occurrences, system_cap), or when the next
        candidate would pass rule.end.

        Raises:
            InvalidRuleError: start >= end, or max_occurrences out of range.
        """
        rule.validate(self._system_cap)
        t = now if now is not None else self._clock.now()
        return [at for _, at in islice(self.iter_occurrences(rule, t), self.limit_for(rule))]

    def iter_occurrences(
        self, rule: RecurrenceRule, now: datetime
    ) -> Iterator[tuple[int, datetime]]:
        """
        Yield (step_index, instant) for every occurrence after `now`.

        step_index counts from the anchor, so it is stable when the same
        rule is recomputed later. Bounded by max_occurrences and end only;
        callers slice to the system cap.
        """
        rule.validate(self._system_cap)
        anchor = rule_anchor(rule)
        k = self._first_step(rule.unit, anchor, max(now, rule.start))
        emitted = 0
        while rule.max_occurrences is None or emitted < rule.max_occurrences:
            candidate = add_units(anchor, rule.unit, k)
            k += 1
            if candidate <= now or candidate < rule.start:
                continue
            if rule.end is not None and candidate > rule.end:
                return
            emitted += 1
            yield k - 1, candidate

    @staticmethod
    def _first_step(unit: TimeUnit, anchor: datetime, floor: datetime) -> int:
        """A step index at or just before the first candidate past `floor`."""
        if floor <= anchor:
            return 0
        step = _FIXED_STEPS.get(unit)
        if step is not None:
            return (floor - anchor) // step
        if unit == TimeUnit.MONTH:
            months = (floor.year - anchor.year) * 12 + floor.month - anchor.month
            return max(0, months - 1)
        return max(0, floor.year - anchor.year - 1)
