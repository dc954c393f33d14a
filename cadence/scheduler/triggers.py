"""
Trigger implementations — produce the candidate instants of a request.

The set is closed: immediate, interval, specific instant, recurrence rule,
and optimize-within-window. Each yields (sequence_index, instant) pairs in
strictly increasing order; the Governor slices them to the system cap.

Usage:
    trigger = make_trigger({"type": "recurrence", "unit": "day",
                            "start": "2024-01-15T00:00", "at": "09:00"})
    for index, at in trigger.occurrences(now, ctx):
        ...
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING, Any, Iterator

from cadence.core.errors import ValidationError
from cadence.core.types import (
    EngagementHeatmap,
    RecurrenceRule,
    TimeOfDay,
    TimeUnit,
    TimeWindow,
    Weekday,
)
from cadence.scheduler.recurrence import RecurrenceExpander

if TYPE_CHECKING:
    from cadence.policies.optimizer import DeliveryOptimizer


@dataclass(frozen=True)
class ExpansionContext:
    """The pure collaborators a trigger may need to produce candidates."""

    expander: RecurrenceExpander
    optimizer: "DeliveryOptimizer"
    heatmap: EngagementHeatmap = field(default_factory=EngagementHeatmap)


class Trigger(ABC):
    """Produces the candidate instants of one request."""

    @abstractmethod
    def occurrences(
        self, now: datetime, ctx: ExpansionContext
    ) -> Iterator[tuple[int, datetime]]:
        """
        Yield (sequence_index, instant) pairs, strictly increasing.

        May be unbounded for repeating triggers; never yields an instant
        earlier than `now`.
        """
        ...

    def validate(self, now: datetime, system_cap: int) -> None:
        """Raise ValidationError if the trigger cannot produce a valid schedule."""

    @property
    def expires_at(self) -> datetime | None:
        """Occurrences pushed past this instant are dropped."""
        return None

    @property
    def indefinite(self) -> bool:
        """True when truncation at the cap is the expected rolling horizon."""
        return False

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description, e.g. 'every day at 09:00'."""
        ...


class ImmediateTrigger(Trigger):
    """Fires once, as soon as admission allows."""

    def occurrences(self, now: datetime, ctx: ExpansionContext) -> Iterator[tuple[int, datetime]]:
        yield 0, now

    @property
    def description(self) -> str:
        return "immediately"


class IntervalTrigger(Trigger):
    """
    Fires `seconds` after now, once or repeatedly.

    Repeating intervals are anchored at the time of the call, so their
    sequence indexes are only stable within one schedule() call.
    """

    def __init__(self, seconds: int, repeats: bool = False) -> None:
        if seconds < 1:
            raise ValidationError("Interval must be at least 1 second", field="seconds")
        self._seconds = seconds
        self._repeats = repeats

    def occurrences(self, now: datetime, ctx: ExpansionContext) -> Iterator[tuple[int, datetime]]:
        step = timedelta(seconds=self._seconds)
        k = 0
        while True:
            yield k, now + step * (k + 1)
            if not self._repeats:
                return
            k += 1

    @property
    def indefinite(self) -> bool:
        return self._repeats

    @property
    def description(self) -> str:
        s = self._seconds
        if s % 3600 == 0:
            text = f"{s // 3600}h"
        elif s % 60 == 0:
            text = f"{s // 60}m"
        else:
            text = f"{s}s"
        return f"every {text}" if self._repeats else f"in {text}"


class InstantTrigger(Trigger):
    """Fires once at a specific instant."""

    def __init__(self, at: datetime) -> None:
        self._at = at

    def validate(self, now: datetime, system_cap: int) -> None:
        if self._at < now:
            raise ValidationError(
                f"Instant {self._at.isoformat()} is in the past", field="at"
            )

    def occurrences(self, now: datetime, ctx: ExpansionContext) -> Iterator[tuple[int, datetime]]:
        yield 0, self._at

    @property
    def description(self) -> str:
        return f"once at {self._at.strftime('%Y-%m-%d %H:%M')}"


class RecurrenceTrigger(Trigger):
    """Fires on every occurrence of a RecurrenceRule."""

    def __init__(self, rule: RecurrenceRule) -> None:
        self._rule = rule

    @property
    def rule(self) -> RecurrenceRule:
        return self._rule

    def validate(self, now: datetime, system_cap: int) -> None:
        self._rule.validate(system_cap)

    def occurrences(self, now: datetime, ctx: ExpansionContext) -> Iterator[tuple[int, datetime]]:
        return ctx.expander.iter_occurrences(self._rule, now)

    @property
    def expires_at(self) -> datetime | None:
        return self._rule.end

    @property
    def indefinite(self) -> bool:
        return self._rule.repeats_indefinitely

    @property
    def description(self) -> str:
        rule = self._rule
        text = f"every {rule.unit.value} at {rule.time_of_day}"
        if rule.weekday is not None:
            text += f" on {rule.weekday.name.title()}"
        if rule.max_occurrences is not None:
            text += f" x{rule.max_occurrences}"
        return text


class WindowTrigger(Trigger):
    """Fires once at the most engaging hour inside a window."""

    def __init__(self, window: TimeWindow) -> None:
        self._window = window

    @property
    def window(self) -> TimeWindow:
        return self._window

    def validate(self, now: datetime, system_cap: int) -> None:
        if self._window.latest < now:
            raise ValidationError("Delivery window has already closed", field="window")

    def occurrences(self, now: datetime, ctx: ExpansionContext) -> Iterator[tuple[int, datetime]]:
        open_window = TimeWindow(max(now, self._window.earliest), self._window.latest)
        yield 0, ctx.optimizer.pick_best(open_window, ctx.heatmap)

    @property
    def expires_at(self) -> datetime | None:
        return self._window.latest

    @property
    def description(self) -> str:
        fmt = "%Y-%m-%d %H:%M"
        return (
            f"best hour between {self._window.earliest.strftime(fmt)} "
            f"and {self._window.latest.strftime(fmt)}"
        )


def make_trigger(trigger_dict: dict[str, Any]) -> Trigger:
    """
    Build a Trigger from a plain dict (config files, CLI input).

    Shapes:
        {"type": "immediate"}
        {"type": "interval",   "seconds": 1800, "repeats": true}
        {"type": "instant",    "at": "2024-01-15T09:00"}
        {"type": "recurrence", "unit": "week", "start": "2024-01-15",
         "at": "10:30", "weekday": "monday", "max_occurrences": 3}
        {"type": "window",     "earliest": "...", "latest": "..."}

    Raises ValidationError for unknown types or malformed fields.
    """
    t = trigger_dict.get("type", "")
    try:
        if t == "immediate":
            return ImmediateTrigger()
        elif t == "interval":
            return IntervalTrigger(
                int(trigger_dict["seconds"]), bool(trigger_dict.get("repeats", False))
            )
        elif t == "instant":
            return InstantTrigger(_parse_instant(trigger_dict["at"]))
        elif t == "recurrence":
            return RecurrenceTrigger(_parse_rule(trigger_dict))
        elif t == "window":
            return WindowTrigger(
                TimeWindow(
                    _parse_instant(trigger_dict["earliest"]),
                    _parse_instant(trigger_dict["latest"]),
                )
            )
    except KeyError as e:
        raise ValidationError(f"Trigger {t!r} is missing field {e}", field=str(e)) from e
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Malformed {t!r} trigger: {e}") from e
    raise ValidationError(f"Unknown trigger type: {t!r}", field="type")


def _parse_rule(d: dict[str, Any]) -> RecurrenceRule:
    weekday = d.get("weekday")
    if isinstance(weekday, str):
        weekday = Weekday[weekday.upper()]
    elif weekday is not None:
        weekday = Weekday(int(weekday))
    at = d.get("at", "00:00")
    return RecurrenceRule(
        unit=TimeUnit(d["unit"]),
        start=_parse_instant(d["start"]),
        time_of_day=at if isinstance(at, TimeOfDay) else TimeOfDay.parse(str(at)),
        end=_parse_instant(d["end"]) if d.get("end") is not None else None,
        max_occurrences=int(d["max_occurrences"]) if d.get("max_occurrences") is not None else None,
        repeats_indefinitely=bool(d.get("repeats_indefinitely", False)),
        weekday=weekday,
    )


def _parse_instant(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):  # TOML bare dates
        return datetime.combine(value, time())
    return datetime.fromisoformat(str(value))
