"""
Cadence shared types — every value object that crosses a component seam.

All types are dataclasses, frozen so that the pure components (expander,
gate, optimizer) can run concurrently without sharing mutable state.
Instants are datetime values whose wall-clock fields are local time.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta
from enum import Enum, IntEnum
from typing import Mapping, Union

from cadence.core.errors import InvalidRuleError, ValidationError

SYSTEM_CAP = 64  # max occurrences per request, mirrors the OS pending limit


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Enums
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Priority(str, Enum):
    """How urgently a request wants to be delivered."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.CRITICAL: 3,
}


class OccurrenceState(str, Enum):
    """Where an occurrence sits in the admission state machine."""

    CANDIDATE = "candidate"
    GATED = "gated"
    ADMITTED = "admitted"
    DEFERRED = "deferred"
    DROPPED = "dropped"

    @property
    def terminal(self) -> bool:
        return self in (OccurrenceState.ADMITTED, OccurrenceState.DROPPED)


class TimeUnit(str, Enum):
    """Recurrence step size."""

    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class Weekday(IntEnum):
    """Python weekday numbering (datetime.weekday())."""

    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


ALL_WEEKDAYS = frozenset(Weekday)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Time Values
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass(frozen=True, slots=True)
class TimeOfDay:
    """A wall-clock time without a date."""

    hour: int
    minute: int = 0
    second: int = 0

    def __post_init__(self) -> None:
        if not (0 <= self.hour < 24 and 0 <= self.minute < 60 and 0 <= self.second < 60):
            raise ValidationError(
                f"Invalid time of day: {self.hour:02d}:{self.minute:02d}:{self.second:02d}",
                field="time_of_day",
            )

    @staticmethod
    def parse(text: str) -> TimeOfDay:
        """Parse 'HH:MM' or 'HH:MM:SS'."""
        parts = text.strip().split(":")
        if len(parts) not in (2, 3):
            raise ValidationError(f"Expected HH:MM, got {text!r}", field="time_of_day")
        try:
            values = [int(p) for p in parts]
        except ValueError as e:
            raise ValidationError(f"Expected HH:MM, got {text!r}", field="time_of_day") from e
        return TimeOfDay(*values)

    @staticmethod
    def of(value: datetime) -> TimeOfDay:
        return TimeOfDay(value.hour, value.minute, value.second)

    def as_time(self) -> time:
        return time(self.hour, self.minute, self.second)

    def on(self, day: datetime) -> datetime:
        """This time of day on the calendar date of `day` (keeps tzinfo)."""
        return day.replace(
            hour=self.hour, minute=self.minute, second=self.second, microsecond=0
        )

    def __str__(self) -> str:
        if self.second:
            return f"{self.hour:02d}:{self.minute:02d}:{self.second:02d}"
        return f"{self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True, slots=True)
class TimeWindow:
    """A closed interval [earliest, latest]."""

    earliest: datetime
    latest: datetime

    def __post_init__(self) -> None:
        if self.latest < self.earliest:
            raise ValidationError("Window ends before it starts", field="window")

    def contains(self, instant: datetime) -> bool:
        return self.earliest <= instant <= self.latest

    @staticmethod
    def next(now: datetime, hours: int) -> TimeWindow:
        """A window from now to `hours` later."""
        return TimeWindow(now, now + timedelta(hours=hours))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Rules & Policies
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass(frozen=True, slots=True)
class RecurrenceRule:
    """
    A repeating schedule.

    The first occurrence is `start`'s calendar date at `time_of_day`
    (moved forward to `weekday` for weekly rules when given). Preconditions
    are checked by validate(), not at construction, because the cap they
    depend on is configurable.
    """

    unit: TimeUnit
    start: datetime
    time_of_day: TimeOfDay = field(default_factory=lambda: TimeOfDay(0))
    end: datetime | None = None
    max_occurrences: int | None = None
    repeats_indefinitely: bool = False
    weekday: Weekday | None = None

    def validate(self, system_cap: int = SYSTEM_CAP) -> None:
        if self.end is not None and self.start >= self.end:
            raise InvalidRuleError(
                "Rule start must be before its end",
                field="end",
                details={"start": self.start.isoformat(), "end": self.end.isoformat()},
            )
        if self.max_occurrences is not None:
            if self.max_occurrences <= 0:
                raise InvalidRuleError(
                    f"max_occurrences must be positive, got {self.max_occurrences}",
                    field="max_occurrences",
                )
            if self.max_occurrences > system_cap:
                raise InvalidRuleError(
                    f"max_occurrences {self.max_occurrences} exceeds system cap {system_cap}",
                    field="max_occurrences",
                    details={"cap": system_cap},
                )
        if self.weekday is not None and self.unit != TimeUnit.WEEK:
            raise InvalidRuleError("weekday only applies to weekly rules", field="weekday")


@dataclass(frozen=True, slots=True)
class QuietHoursPolicy:
    """A do-not-disturb window, possibly wrapping midnight."""

    window_start: TimeOfDay
    window_end: TimeOfDay
    active_weekdays: frozenset[Weekday] = ALL_WEEKDAYS
    allow_critical: bool = False  # critical requests skip the gate

    def __post_init__(self) -> None:
        if self.window_start == self.window_end:
            raise ValidationError("Quiet hours window must have a length", field="window_end")
        object.__setattr__(
            self, "active_weekdays", frozenset(Weekday(d) for d in self.active_weekdays)
        )

    @property
    def wraps_midnight(self) -> bool:
        return self.window_end.as_time() < self.window_start.as_time()

    @staticmethod
    def hours(start_hour: int, end_hour: int, days: frozenset[Weekday] | None = None) -> QuietHoursPolicy:
        return QuietHoursPolicy(
            window_start=TimeOfDay(start_hour),
            window_end=TimeOfDay(end_hour),
            active_weekdays=days if days is not None else ALL_WEEKDAYS,
        )

    @staticmethod
    def night_time() -> QuietHoursPolicy:
        """10 PM - 8 AM."""
        return QuietHoursPolicy.hours(22, 8)

    @staticmethod
    def sleep_time() -> QuietHoursPolicy:
        """11 PM - 7 AM."""
        return QuietHoursPolicy.hours(23, 7)

    @staticmethod
    def work_hours_only() -> QuietHoursPolicy:
        """Quiet outside 9 AM - 6 PM."""
        return QuietHoursPolicy.hours(18, 9)


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    """
    Admission caps. None means unlimited.

    burst_limit / burst_window bound short spikes on top of the hourly
    and daily caps.
    """

    max_per_hour: int | None = None
    max_per_day: int | None = None
    min_spacing: timedelta = timedelta(0)
    burst_limit: int | None = None
    burst_window: timedelta = timedelta(seconds=60)
    bypass_for_critical: bool = False

    def __post_init__(self) -> None:
        for name in ("max_per_hour", "max_per_day", "burst_limit"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValidationError(f"{name} must be >= 0, got {value}", field=name)
        if self.min_spacing < timedelta(0):
            raise ValidationError("min_spacing must be >= 0", field="min_spacing")
        if self.burst_window <= timedelta(0):
            raise ValidationError("burst_window must be positive", field="burst_window")

    @property
    def blocks_everything(self) -> bool:
        return 0 in (self.max_per_hour, self.max_per_day, self.burst_limit)

    @staticmethod
    def conservative() -> RateLimitPolicy:
        return RateLimitPolicy(max_per_hour=2, max_per_day=10)

    @staticmethod
    def moderate() -> RateLimitPolicy:
        return RateLimitPolicy(max_per_hour=5, max_per_day=20)

    @staticmethod
    def relaxed() -> RateLimitPolicy:
        return RateLimitPolicy(max_per_hour=10, max_per_day=50)


@dataclass(frozen=True, slots=True)
class EngagementHeatmap:
    """Per-hour-of-day responsiveness scores in [0, 1]. Missing hours are 0."""

    scores: tuple[float, ...] = (0.0,) * 24

    def __post_init__(self) -> None:
        if len(self.scores) != 24:
            raise ValidationError("Heatmap needs exactly 24 hourly scores", field="scores")
        for hour, score in enumerate(self.scores):
            if not 0.0 <= score <= 1.0:
                raise ValidationError(
                    f"Score for hour {hour} out of range: {score}", field="scores"
                )

    @staticmethod
    def from_mapping(data: Mapping[int, float]) -> EngagementHeatmap:
        scores = [0.0] * 24
        for hour, score in data.items():
            hour = int(hour)
            if not 0 <= hour < 24:
                raise ValidationError(f"Hour out of range: {hour}", field="scores")
            scores[hour] = float(score)
        return EngagementHeatmap(tuple(scores))

    def __getitem__(self, hour: int) -> float:
        return self.scores[hour]

    @property
    def has_data(self) -> bool:
        return any(s > 0 for s in self.scores)

    def to_dict(self) -> dict[int, float]:
        return {h: s for h, s in enumerate(self.scores) if s > 0}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Occurrences & Decisions
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass(frozen=True, slots=True)
class ScheduledInstant:
    """One occurrence of a request and its admission state."""

    request_id: str
    sequence_index: int
    instant: datetime
    state: OccurrenceState = OccurrenceState.CANDIDATE
    reason: str = ""
    expires_at: datetime | None = None

    @property
    def identifier(self) -> str:
        """OS-facing identifier, stable across recomputation."""
        return f"{self.request_id}-{self.sequence_index}"

    def moved(self, instant: datetime, state: OccurrenceState) -> ScheduledInstant:
        return replace(self, instant=instant, state=state)

    def with_state(self, state: OccurrenceState, reason: str = "") -> ScheduledInstant:
        return replace(self, state=state, reason=reason)


@dataclass(frozen=True, slots=True)
class Admitted:
    instant: datetime


@dataclass(frozen=True, slots=True)
class Deferred:
    next_eligible: datetime


@dataclass(frozen=True, slots=True)
class Dropped:
    reason: str


Decision = Union[Admitted, Deferred, Dropped]
