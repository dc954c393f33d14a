"""
DeliveryOptimizer — picks delivery instants from an engagement heatmap.

The heatmap is a read-only snapshot built by an analytics collaborator
outside this package. Everything here is a pure function of its inputs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from cadence.core.types import EngagementHeatmap, TimeWindow

HOUR = timedelta(hours=1)

DEFAULT_OPTIMAL_HOUR = 10  # used when the heatmap has no data
AVOID_THRESHOLD = 0.3


@dataclass(frozen=True, slots=True)
class Recommendation:
    """A delivery hint derived from the heatmap."""

    kind: str  # "optimal_time" | "avoid_times"
    hours: tuple[int, ...]

    @property
    def description(self) -> str:
        if self.kind == "optimal_time":
            return f"Best delivery time is around {self.hours[0]}:00"
        formatted = ", ".join(f"{h}:00" for h in self.hours)
        return f"Avoid sending at: {formatted}"


def hour_boundaries(window: TimeWindow) -> list[datetime]:
    """Every on-the-hour instant inside [earliest, latest]."""
    first = window.earliest.replace(minute=0, second=0, microsecond=0)
    if first < window.earliest:
        first += HOUR
    boundaries: list[datetime] = []
    current = first
    while current <= window.latest:
        boundaries.append(current)
        current += HOUR
    return boundaries


class DeliveryOptimizer:
    """
    Chooses engaging delivery times.

    Usage:
        optimizer = DeliveryOptimizer()
        at = optimizer.pick_best(TimeWindow(earliest, latest), heatmap)
    """

    def pick_best(self, window: TimeWindow, heatmap: EngagementHeatmap) -> datetime:
        """
        The hour boundary in the window with the highest score, earliest on
        ties. A zero score is a valid maximum. Falls back to window.earliest
        when the heatmap has no data or the window holds no boundary.
        """
        boundaries = hour_boundaries(window)
        if not heatmap.has_data or not boundaries:
            return window.earliest
        best = boundaries[0]
        for boundary in boundaries[1:]:
            if heatmap[boundary.hour] > heatmap[best.hour]:
                best = boundary
        return best

    def optimal_hour(self, heatmap: EngagementHeatmap) -> int:
        """Highest-scoring hour of the day, earliest on ties."""
        if not heatmap.has_data:
            return DEFAULT_OPTIMAL_HOUR
        return max(range(24), key=lambda h: (heatmap[h], -h))

    def next_optimal(self, now: datetime, heatmap: EngagementHeatmap) -> datetime:
        """The next instant after `now` at the optimal hour."""
        at = now.replace(hour=self.optimal_hour(heatmap), minute=0, second=0, microsecond=0)
        if at <= now:
            at += timedelta(days=1)
        return at

    def retry_within(self, window: TimeWindow, heatmap: EngagementHeatmap):
        """
        A retry preference for the RateLimiter: given the earliest eligible
        instant, the best hour between it and the window's end.
        """

        def prefer(next_eligible: datetime) -> datetime:
            if next_eligible >= window.latest:
                return next_eligible
            return self.pick_best(TimeWindow(next_eligible, window.latest), heatmap)

        return prefer

    def recommendations(self, heatmap: EngagementHeatmap) -> list[Recommendation]:
        recs = [Recommendation("optimal_time", (self.optimal_hour(heatmap),))]
        if heatmap.has_data:
            avoid = tuple(h for h in range(24) if heatmap[h] < AVOID_THRESHOLD)
            if avoid:
                recs.append(Recommendation("avoid_times", avoid))
        return recs
