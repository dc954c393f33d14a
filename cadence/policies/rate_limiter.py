"""
RateLimiter — sliding-window admission control with a deferred queue.

Admitted instants are recorded at the time they will fire, not at the
time they were admitted, so a cap holds for every rolling window that
contains the instant, whichever order requests arrive in:

    max_per_hour=2, admitted 10:00 and 10:10
    candidate 10:20 → Deferred(next_eligible=11:00)

Constraints (each optional): max_per_hour over 60 minutes, max_per_day
over 24 hours, burst_limit over burst_window, and min_spacing between any
two admitted instants.

All counter and queue access happens under one asyncio.Lock. Waiting for
that lock is the only place admission suspends.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from cadence.core.clock import Clock, SystemClock
from cadence.core.types import (
    Admitted,
    Decision,
    Deferred,
    Dropped,
    OccurrenceState,
    Priority,
    RateLimitPolicy,
    ScheduledInstant,
)
from cadence.policies.deferred import DeferredEntry, DeferredQueue

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)
DAY = timedelta(hours=24)

EvictionHandler = Callable[[DeferredEntry, str], Awaitable[None]]
RetryPreference = Callable[[datetime], datetime]

REASON_QUEUE_FULL = "deferred queue full"
REASON_EXPIRED = "next eligible slot is past the request's end"
REASON_NO_CAPACITY = "rate limit admits nothing"


@dataclass(frozen=True, slots=True)
class RateLimitStatus:
    """Snapshot of the limiter as seen from one instant."""

    remaining_this_hour: int | None  # None when uncapped
    remaining_today: int | None
    next_allowed: datetime | None  # None when a slot is open now
    deferred_count: int
    bypass_count: int

    @property
    def can_admit(self) -> bool:
        return self.next_allowed is None


class RateLimiter:
    """
    Owns the sliding-window counters and the DeferredQueue.

    Usage:
        limiter = RateLimiter(RateLimitPolicy(max_per_hour=2), clock=clock)
        decision = await limiter.admit(occurrence, Priority.NORMAL)
        match decision:
            case Admitted(instant): ...
            case Deferred(next_eligible): ...
            case Dropped(reason): ...
    """

    def __init__(
        self,
        policy: RateLimitPolicy | None = None,
        queue_capacity: int = 64,
        clock: Clock | None = None,
    ) -> None:
        self._policy = policy or RateLimitPolicy()
        self._clock = clock or SystemClock()
        self._queue = DeferredQueue(queue_capacity)
        self._lock = asyncio.Lock()
        self._admitted: list[datetime] = []  # sorted, non-bypass only
        self._bypassed: list[datetime] = []  # observability only
        self._on_evicted: EvictionHandler | None = None

    @property
    def policy(self) -> RateLimitPolicy:
        return self._policy

    def set_eviction_handler(self, handler: EvictionHandler) -> None:
        """Inject the owner-notification callback. Called by the Governor."""
        self._on_evicted = handler

    # ── Admission ─────────────────────────────────────────────────────────────

    async def admit(
        self,
        occurrence: ScheduledInstant,
        priority: Priority,
        bypass: bool = False,
        retry: RetryPreference | None = None,
        now: datetime | None = None,
    ) -> Decision:
        """
        Admit, defer or drop one occurrence at occurrence.instant.

        bypass admits unconditionally without consuming capacity.
        retry maps the computed next-eligible instant to a preferred
        (later or equal) retry instant. now, when given, replaces the
        clock for ageing out old admissions.
        """
        t = now if now is not None else self._clock.now()
        evicted: list[DeferredEntry] = []
        async with self._lock:
            decision = self._admit_locked(occurrence, priority, bypass, retry, evicted, t)
        for entry in evicted:
            await self._report_eviction(entry, REASON_QUEUE_FULL)
        return decision

    async def defer(
        self,
        occurrence: ScheduledInstant,
        priority: Priority,
        not_before: datetime,
    ) -> Decision:
        """Queue an occurrence without an admission attempt (FIFO behind a sibling)."""
        evicted: list[DeferredEntry] = []
        async with self._lock:
            decision = self._enqueue_locked(occurrence, priority, not_before, evicted)
        for entry in evicted:
            await self._report_eviction(entry, REASON_QUEUE_FULL)
        return decision

    def _admit_locked(
        self,
        occurrence: ScheduledInstant,
        priority: Priority,
        bypass: bool,
        retry: RetryPreference | None,
        evicted: list[DeferredEntry],
        now: datetime,
    ) -> Decision:
        self._prune(now)
        instant = occurrence.instant

        if bypass or (self._policy.bypass_for_critical and priority == Priority.CRITICAL):
            self._bypassed.append(instant)
            logger.debug(f"Bypass admission for {occurrence.identifier} at {instant}")
            return Admitted(instant)

        if self._policy.blocks_everything:
            return Dropped(REASON_NO_CAPACITY)

        if self._blocked_until(instant) is None:
            bisect.insort(self._admitted, instant)
            logger.debug(f"Admitted {occurrence.identifier} at {instant}")
            return Admitted(instant)

        next_eligible = self._next_eligible(instant)
        if retry is not None:
            next_eligible = max(next_eligible, retry(next_eligible))
        return self._enqueue_locked(occurrence, priority, next_eligible, evicted)

    def _enqueue_locked(
        self,
        occurrence: ScheduledInstant,
        priority: Priority,
        retry_at: datetime,
        evicted: list[DeferredEntry],
    ) -> Decision:
        if occurrence.expires_at is not None and retry_at > occurrence.expires_at:
            logger.info(f"Dropping {occurrence.identifier}: {REASON_EXPIRED}")
            return Dropped(REASON_EXPIRED)

        entry = DeferredEntry(
            occurrence=occurrence.with_state(OccurrenceState.DEFERRED),
            priority=priority,
            retry_at=retry_at,
        )
        victim = self._queue.push(entry)
        if victim is entry:
            logger.warning(f"Dropping {occurrence.identifier}: {REASON_QUEUE_FULL}")
            return Dropped(REASON_QUEUE_FULL)
        if victim is not None:
            evicted.append(victim)
        logger.debug(f"Deferred {occurrence.identifier} until {retry_at}")
        return Deferred(retry_at)

    async def _report_eviction(self, entry: DeferredEntry, reason: str) -> None:
        logger.warning(f"Evicted {entry.occurrence.identifier} from deferred queue: {reason}")
        if self._on_evicted is not None:
            await self._on_evicted(entry, reason)

    # ── Window arithmetic ─────────────────────────────────────────────────────

    def _windows(self) -> list[tuple[int, timedelta]]:
        p = self._policy
        caps = [(p.max_per_hour, HOUR), (p.max_per_day, DAY), (p.burst_limit, p.burst_window)]
        return [(limit, span) for limit, span in caps if limit is not None]

    def _blocked_until(self, t: datetime) -> datetime | None:
        """
        None if `t` can be admitted now, else the earliest instant at which
        every currently violated constraint could clear.
        """
        clearances: list[datetime] = []
        for limit, span in self._windows():
            clear = self._window_clearance(t, limit, span)
            if clear is not None:
                clearances.append(clear)

        spacing = self._policy.min_spacing
        if spacing > timedelta(0):
            lo = bisect.bisect_right(self._admitted, t - spacing)
            hi = bisect.bisect_left(self._admitted, t + spacing)
            if lo < hi:
                clearances.append(self._admitted[hi - 1] + spacing)

        return max(clearances) if clearances else None

    def _next_eligible(self, t: datetime) -> datetime:
        # Each step moves past at least one recorded instant, so this ends.
        blocked = self._blocked_until(t)
        while blocked is not None:
            t = blocked
            blocked = self._blocked_until(t)
        return t

    def _window_starts(self, t: datetime, span: timedelta) -> list[datetime]:
        """Starts of the rolling windows containing `t` worth checking."""
        lo = bisect.bisect_right(self._admitted, t - span)
        hi = bisect.bisect_right(self._admitted, t)
        return self._admitted[lo:hi] + [t]

    def _window_count(self, start: datetime, span: timedelta) -> tuple[int, int]:
        lo = bisect.bisect_left(self._admitted, start)
        hi = bisect.bisect_left(self._admitted, start + span)
        return hi - lo, lo

    def _window_clearance(self, t: datetime, limit: int, span: timedelta) -> datetime | None:
        clear: datetime | None = None
        for start in self._window_starts(t, span):
            count, first = self._window_count(start, span)
            if count >= limit:
                aged_out = self._admitted[first] + span
                clear = aged_out if clear is None else max(clear, aged_out)
        return clear

    def _window_load(self, t: datetime, span: timedelta) -> int:
        return max(self._window_count(s, span)[0] for s in self._window_starts(t, span))

    def _prune(self, now: datetime) -> None:
        horizon = max([DAY, self._policy.burst_window, self._policy.min_spacing])
        cutoff = now - horizon
        self._admitted = self._admitted[bisect.bisect_left(self._admitted, cutoff):]
        self._bypassed = [b for b in self._bypassed if b >= cutoff]

    # ── Queue management ──────────────────────────────────────────────────────

    async def pop_due(self, now: datetime | None = None) -> list[DeferredEntry]:
        """Remove and return deferred entries whose retry time has come."""
        t = now if now is not None else self._clock.now()
        async with self._lock:
            return self._queue.pop_due(t)

    async def cancel(self, request_id: str) -> list[DeferredEntry]:
        """Remove all deferred entries of a request."""
        async with self._lock:
            removed = self._queue.remove(request_id)
        if removed:
            logger.debug(f"Removed {len(removed)} deferred entries for {request_id}")
        return removed

    async def purge_expired(self, now: datetime | None = None) -> list[DeferredEntry]:
        t = now if now is not None else self._clock.now()
        async with self._lock:
            return self._queue.purge_expired(t)

    async def find_deferred(self, identifier: str) -> DeferredEntry | None:
        async with self._lock:
            return self._queue.find(identifier)

    async def find_ahead(self, occurrence: ScheduledInstant) -> DeferredEntry | None:
        """The queued entry of the same request that `occurrence` must follow."""
        async with self._lock:
            return self._queue.ahead_of(occurrence)

    async def pending_requests(self) -> set[str]:
        """Ids of requests that still have deferred entries."""
        async with self._lock:
            return self._queue.request_ids()

    async def next_retry(self) -> datetime | None:
        async with self._lock:
            return self._queue.next_retry()

    # ── Status ────────────────────────────────────────────────────────────────

    async def status(self, now: datetime | None = None) -> RateLimitStatus:
        t = now if now is not None else self._clock.now()
        async with self._lock:
            self._prune(t)
            p = self._policy
            blocked = None if p.blocks_everything else self._blocked_until(t)
            return RateLimitStatus(
                remaining_this_hour=(
                    None if p.max_per_hour is None
                    else max(0, p.max_per_hour - self._window_load(t, HOUR))
                ),
                remaining_today=(
                    None if p.max_per_day is None
                    else max(0, p.max_per_day - self._window_load(t, DAY))
                ),
                next_allowed=self._next_eligible(t) if blocked is not None else None,
                deferred_count=len(self._queue),
                bypass_count=len(self._bypassed),
            )

    async def reset(self) -> None:
        """Clear the sliding-window counters. Deferred entries are kept."""
        async with self._lock:
            self._admitted.clear()
            self._bypassed.clear()
