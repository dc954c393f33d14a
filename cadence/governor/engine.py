"""
SchedulingGovernor — the admission pipeline and its background task.

Design:
- schedule() validates a request before touching any state, expands its
  trigger into candidates, then walks each candidate through
  QuietHoursGate → RateLimiter in strictly increasing order
- Admitted occurrences are returned to the caller for submission;
  deferred ones are retried by the background loop, which hands the
  ones it admits to the SubmissionSink
- Everything decided after schedule() returns (retries, evictions,
  expiries, cancellations) is reported on the EventBus
- Recomputing a request is safe: occurrences already admitted or queued
  under the same identifier are returned as they are, never re-admitted
- Once an occurrence is deferred, later ones of the same request queue
  behind it and keep their spacing, so no two share an instant
- Requests with nothing deferred or still ahead are forgotten after each
  re-evaluation pass
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta
from itertools import islice
from typing import Iterable

from cadence.core.bus import EventBus
from cadence.core.clock import Clock, SystemClock
from cadence.core.config import CadenceConfig
from cadence.core.errors import (
    CapacityExceededError,
    DroppedOccurrenceError,
    SubmissionError,
)
from cadence.core.events import Event, EventType
from cadence.core.types import (
    Admitted,
    Decision,
    Deferred,
    Dropped,
    EngagementHeatmap,
    OccurrenceState,
    Priority,
    QuietHoursPolicy,
    ScheduledInstant,
)
from cadence.notifications.base import Submission, SubmissionSink
from cadence.policies.deferred import DeferredEntry
from cadence.policies.optimizer import DeliveryOptimizer
from cadence.policies.quiet_hours import QuietHoursGate
from cadence.policies.rate_limiter import REASON_EXPIRED, RateLimiter, RetryPreference
from cadence.scheduler.recurrence import RecurrenceExpander
from cadence.scheduler.request import NotificationRequest
from cadence.scheduler.triggers import ExpansionContext, WindowTrigger

logger = logging.getLogger(__name__)

POLL_INTERVAL = 30.0  # seconds between deferred-queue checks

REASON_QUIET_PAST_END = "quiet hours extend past request end"
REASON_DUPLICATE = "duplicate of previous occurrence"

# Smallest distance kept between two deferred occurrences of one request
SIBLING_GAP = timedelta(seconds=1)

SOURCE = "governor"


class SchedulingGovernor:
    """
    Orchestrates expansion, quiet hours and rate limiting for requests.

    Usage:
        governor = SchedulingGovernor(limiter, bus=bus, clock=clock,
                                      quiet_hours=QuietHoursPolicy.night_time(),
                                      sink=sink)
        instants = await governor.schedule(request)
        await governor.start()      # background retries of deferred occurrences
        ...
        await governor.cancel("standup")
        await governor.stop()
    """

    def __init__(
        self,
        limiter: RateLimiter,
        bus: EventBus | None = None,
        clock: Clock | None = None,
        quiet_hours: QuietHoursPolicy | None = None,
        heatmap: EngagementHeatmap | None = None,
        sink: SubmissionSink | None = None,
        expander: RecurrenceExpander | None = None,
        gate: QuietHoursGate | None = None,
        optimizer: DeliveryOptimizer | None = None,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self._clock = clock or SystemClock()
        self._limiter = limiter
        self._bus = bus or EventBus()
        self._quiet_hours = quiet_hours
        self._heatmap = heatmap or EngagementHeatmap()
        self._sink = sink
        self._expander = expander or RecurrenceExpander(clock=self._clock)
        self._gate = gate or QuietHoursGate(clock=self._clock)
        self._optimizer = optimizer or DeliveryOptimizer()
        self._poll_interval = poll_interval

        self._requests: dict[str, NotificationRequest] = {}
        self._admitted: dict[str, dict[int, ScheduledInstant]] = {}
        self._in_flight: set[str] = set()  # identifiers being decided right now
        self._scheduling: Counter[str] = Counter()  # request ids inside schedule()
        self._task: asyncio.Task | None = None
        self._running = False

        self._limiter.set_eviction_handler(self._on_evicted)

    @classmethod
    def from_config(
        cls,
        config: CadenceConfig,
        bus: EventBus | None = None,
        clock: Clock | None = None,
        sink: SubmissionSink | None = None,
    ) -> SchedulingGovernor:
        """Wire a governor and its RateLimiter from configuration."""
        clock = clock or SystemClock()
        limiter = RateLimiter(
            config.rate_limit.to_policy(),
            queue_capacity=config.governor.queue_capacity,
            clock=clock,
        )
        return cls(
            limiter,
            bus=bus,
            clock=clock,
            quiet_hours=config.quiet_hours.to_policy(),
            heatmap=config.optimizer.to_heatmap(),
            sink=sink,
            expander=RecurrenceExpander(clock=clock, system_cap=config.governor.system_cap),
            poll_interval=config.governor.poll_interval,
        )

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def running(self) -> bool:
        return self._running

    def set_heatmap(self, heatmap: EngagementHeatmap) -> None:
        """Swap in a fresh engagement snapshot from the analytics side."""
        self._heatmap = heatmap

    def set_quiet_hours(self, policy: QuietHoursPolicy | None) -> None:
        self._quiet_hours = policy

    # ── Public API ────────────────────────────────────────────────────────────

    async def schedule(self, request: NotificationRequest) -> list[ScheduledInstant]:
        """
        Decide every occurrence of a request.

        Returns one ScheduledInstant per candidate, in increasing order.
        Deferred occurrences carry their next eligible instant.

        Raises:
            ValidationError: the request or its trigger is malformed.
                Nothing has been recorded when this is raised.
        """
        now = self._clock.now()
        self._validate(request, now)

        ctx = ExpansionContext(self._expander, self._optimizer, self._heatmap)
        cap = self._expander.system_cap
        candidates = list(islice(request.trigger.occurrences(now, ctx), cap + 1))
        truncated = len(candidates) > cap
        candidates = candidates[:cap]

        self._requests[request.id] = request
        self._scheduling[request.id] += 1
        logger.info(
            f"Scheduling {request.id!r} ({request.trigger.description}, "
            f"{len(candidates)} candidates)"
        )

        # Claim identifiers before the first await so a concurrent call for
        # the same request skips them.
        expires_at = request.trigger.expires_at
        claimed: list[ScheduledInstant] = []
        for index, at in candidates:
            occurrence = ScheduledInstant(request.id, index, at, expires_at=expires_at)
            if occurrence.identifier in self._in_flight:
                logger.debug(f"{occurrence.identifier} already being decided, skipping")
                continue
            self._in_flight.add(occurrence.identifier)
            claimed.append(occurrence)

        try:
            results = await self._decide_all(request, claimed, now)
        finally:
            for occurrence in claimed:
                self._in_flight.discard(occurrence.identifier)
            self._scheduling[request.id] -= 1
            if not self._scheduling[request.id]:
                del self._scheduling[request.id]

        if truncated and not request.trigger.indefinite:
            await self._report_capacity(request, cap)
        return results

    async def schedule_batch(
        self, requests: Iterable[NotificationRequest]
    ) -> dict[str, list[ScheduledInstant]]:
        """
        Schedule several requests, highest priority first.

        Every request is validated before any of them is scheduled.
        """
        batch = list(requests)
        now = self._clock.now()
        for request in batch:
            self._validate(request, now)
        ordered = sorted(batch, key=lambda r: -r.priority.rank)
        return {request.id: await self.schedule(request) for request in ordered}

    async def cancel(self, request_id: str) -> int:
        """
        Forget a request and drop its deferred occurrences.

        Already admitted occurrences belong to the submission side.
        Returns the number of deferred occurrences removed.
        """
        self._requests.pop(request_id, None)
        self._admitted.pop(request_id, None)
        removed = await self._limiter.cancel(request_id)
        logger.info(f"Cancelled {request_id!r} ({len(removed)} deferred removed)")
        await self._emit(EventType.REQUEST_CANCELLED, {
            "request_id": request_id,
            "removed": [e.occurrence.identifier for e in removed],
        })
        return len(removed)

    async def reevaluate(self, now: datetime | None = None) -> list[ScheduledInstant]:
        """
        Retry deferred occurrences whose next eligible instant has arrived.

        Called by the background loop; safe to call directly. Returns the
        decisions made in this pass. Occurrences of one request are decided
        in sequence order and each lands strictly after the one before it,
        even when the pass runs late.
        """
        t = now if now is not None else self._clock.now()

        for entry in await self._limiter.purge_expired(t):
            await self._report_drop(entry.occurrence, REASON_EXPIRED)

        results: list[ScheduledInstant] = []
        # request id → (latest admitted or deferred result, its instant before this pass)
        last: dict[str, tuple[ScheduledInstant, datetime]] = {}
        for entry in _in_sequence(await self._limiter.pop_due(t)):
            request = self._requests.get(entry.request_id)
            if request is None:
                logger.debug(f"Discarding {entry.occurrence.identifier}: request cancelled")
                continue
            origin = entry.occurrence.instant
            candidate = entry.occurrence.moved(max(entry.retry_at, t), OccurrenceState.CANDIDATE)
            gated = self._apply_quiet_hours(request, candidate)

            not_before: datetime | None = None
            previous = last.get(request.id)
            if previous is None:
                ahead = await self._limiter.find_ahead(entry.occurrence)
                if ahead is not None:
                    not_before = _spaced(ahead.retry_at, ahead.occurrence.instant, origin)
            elif previous[0].state == OccurrenceState.DEFERRED:
                not_before = _spaced(previous[0].instant, previous[1], origin)
            elif gated.instant <= previous[0].instant:
                later = _spaced(previous[0].instant, previous[1], origin)
                gated = self._apply_quiet_hours(request, candidate.moved(later, OccurrenceState.CANDIDATE))

            result = await self._decide(request, gated, not_before, t)
            if result.state in (OccurrenceState.ADMITTED, OccurrenceState.DEFERRED):
                last[request.id] = (result, origin)
            if result.state == OccurrenceState.ADMITTED:
                await self._submit(request, result)
            results.append(result)

        await self._forget_finished(t)
        return results

    # ── Background loop ───────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the background re-evaluation loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="cadence-governor")
        logger.info("SchedulingGovernor started")
        await self._emit(EventType.GOVERNOR_START, {"poll_interval": self._poll_interval})

    async def stop(self) -> None:
        """Gracefully stop the background loop."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("SchedulingGovernor stopped")
        await self._emit(EventType.GOVERNOR_STOP, {})

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.reevaluate()
            except Exception as e:
                logger.warning(f"Governor tick error (non-fatal): {e}")
                await self._emit(EventType.GOVERNOR_ERROR, {"error": str(e)})
            await asyncio.sleep(self._poll_interval)

    # ── Decision pipeline ─────────────────────────────────────────────────────

    def _validate(self, request: NotificationRequest, now: datetime) -> None:
        request.validate()
        request.trigger.validate(now, self._expander.system_cap)

    async def _decide_all(
        self, request: NotificationRequest, occurrences: list[ScheduledInstant], now: datetime
    ) -> list[ScheduledInstant]:
        admitted = self._admitted.setdefault(request.id, {})
        _prune_fired(admitted, now)
        results: list[ScheduledInstant] = []
        behind: tuple[datetime, datetime] | None = None  # (retry instant, origin) of the last deferral
        previous: datetime | None = None

        for occurrence in occurrences:
            known = admitted.get(occurrence.sequence_index)
            if known is not None:
                results.append(known)
                previous = known.instant
                continue
            queued = await self._limiter.find_deferred(occurrence.identifier)
            if queued is not None:
                results.append(queued.occurrence.moved(queued.retry_at, OccurrenceState.DEFERRED))
                behind = (queued.retry_at, queued.occurrence.instant)
                continue

            gated = self._apply_quiet_hours(request, occurrence)
            if previous is not None and gated.instant <= previous:
                results.append(await self._drop(gated, REASON_DUPLICATE))
                continue
            previous = gated.instant
            not_before = _spaced(*behind, gated.instant) if behind is not None else None
            result = await self._decide(request, gated, not_before, now)
            if result.state == OccurrenceState.DEFERRED:
                behind = (result.instant, gated.instant)
            results.append(result)
        return results

    async def _decide(
        self,
        request: NotificationRequest,
        gated: ScheduledInstant,
        not_before: datetime | None,
        now: datetime,
    ) -> ScheduledInstant:
        """
        Gated → Admitted | Deferred | Dropped for one occurrence.

        not_before is set when a sibling is still deferred; the occurrence
        then queues behind it without an admission attempt.
        """
        if gated.expires_at is not None and gated.instant > gated.expires_at:
            return await self._drop(gated, REASON_QUIET_PAST_END)

        decision: Decision
        if not_before is not None:
            decision = await self._limiter.defer(
                gated, request.priority, not_before=max(not_before, gated.instant)
            )
        else:
            decision = await self._limiter.admit(
                gated,
                request.priority,
                bypass=request.bypass_rate_limit,
                retry=self._retry_preference(request),
                now=now,
            )
        return await self._record(request, gated, decision)

    def _apply_quiet_hours(
        self, request: NotificationRequest, occurrence: ScheduledInstant
    ) -> ScheduledInstant:
        policy = self._quiet_hours
        skip = (
            policy is None
            or request.bypass_quiet_hours
            or (policy.allow_critical and request.priority == Priority.CRITICAL)
        )
        if skip:
            return occurrence.with_state(OccurrenceState.GATED)
        at = self._gate.apply(policy, occurrence.instant)
        if at != occurrence.instant:
            logger.debug(f"Quiet hours moved {occurrence.identifier} to {at}")
        return occurrence.moved(at, OccurrenceState.GATED)

    def _retry_preference(self, request: NotificationRequest) -> RetryPreference | None:
        trigger = request.trigger
        if isinstance(trigger, WindowTrigger):
            return self._optimizer.retry_within(trigger.window, self._heatmap)
        return None

    async def _record(
        self, request: NotificationRequest, gated: ScheduledInstant, decision: Decision
    ) -> ScheduledInstant:
        match decision:
            case Admitted(instant):
                result = gated.moved(instant, OccurrenceState.ADMITTED)
                self._admitted.setdefault(request.id, {})[result.sequence_index] = result
                await self._emit(EventType.OCCURRENCE_ADMITTED, _describe(result))
                return result
            case Deferred(next_eligible):
                result = gated.moved(next_eligible, OccurrenceState.DEFERRED)
                await self._emit(EventType.OCCURRENCE_DEFERRED, _describe(result))
                return result
            case Dropped(reason):
                return await self._drop(gated, reason)
        raise TypeError(f"Unknown decision: {decision!r}")

    async def _drop(self, occurrence: ScheduledInstant, reason: str) -> ScheduledInstant:
        result = occurrence.with_state(OccurrenceState.DROPPED, reason)
        logger.info(f"Dropped {result.identifier}: {reason}")
        await self._report_drop(result, reason)
        return result

    # ── Reporting ─────────────────────────────────────────────────────────────

    async def _on_evicted(self, entry: DeferredEntry, reason: str) -> None:
        await self._report_drop(entry.occurrence, reason)

    async def _report_drop(self, occurrence: ScheduledInstant, reason: str) -> None:
        error = DroppedOccurrenceError(
            f"Occurrence {occurrence.identifier} dropped: {reason}",
            request_id=occurrence.request_id,
            identifier=occurrence.identifier,
            reason=reason,
        )
        data = _describe(occurrence.with_state(OccurrenceState.DROPPED, reason))
        data["error"] = error
        await self._emit(EventType.OCCURRENCE_DROPPED, data)

    async def _report_capacity(self, request: NotificationRequest, cap: int) -> None:
        error = CapacityExceededError(
            f"Request {request.id!r} exceeds the system cap of {cap} occurrences",
            request_id=request.id,
            cap=cap,
        )
        logger.warning(error.message)
        await self._emit(EventType.SCHEDULE_CAPACITY_EXCEEDED, {
            "request_id": request.id,
            "cap": cap,
            "error": error,
        })

    async def _submit(self, request: NotificationRequest, occurrence: ScheduledInstant) -> None:
        if self._sink is None:
            return
        submission = Submission(
            identifier=occurrence.identifier,
            instant=occurrence.instant,
            request_id=request.id,
            payload=request.payload,
        )
        try:
            accepted = await self._sink.submit(submission)
            detail = "rejected"
        except Exception as e:
            accepted = False
            detail = str(e)
        if accepted:
            await self._emit(EventType.OCCURRENCE_SUBMITTED, _describe(occurrence))
            return
        error = SubmissionError(
            f"Sink {self._sink.name!r} did not accept {occurrence.identifier}: {detail}",
            sink=self._sink.name,
            identifier=occurrence.identifier,
        )
        logger.warning(error.message)
        await self._emit(EventType.GOVERNOR_ERROR, {"error": error, **_describe(occurrence)})

    async def _emit(self, event_type: str, data: dict) -> None:
        await self._bus.emit(Event(type=event_type, source=SOURCE, data=data))

    async def _forget_finished(self, now: datetime) -> None:
        """
        Drop bookkeeping for requests with nothing left in flight: no
        deferred entry, no admitted instant still ahead, no schedule() call
        running. A later schedule() registers them again.
        """
        pending = await self._limiter.pending_requests()
        for request_id in list(self._requests):
            admitted = self._admitted.get(request_id, {})
            _prune_fired(admitted, now)
            if admitted or request_id in pending or request_id in self._scheduling:
                continue
            del self._requests[request_id]
            self._admitted.pop(request_id, None)
            logger.debug(f"Forgot finished request {request_id!r}")


def _prune_fired(admitted: dict[int, ScheduledInstant], now: datetime) -> None:
    for index in [i for i, s in admitted.items() if s.instant < now]:
        del admitted[index]


def _describe(occurrence: ScheduledInstant) -> dict:
    return {
        "request_id": occurrence.request_id,
        "identifier": occurrence.identifier,
        "instant": occurrence.instant.isoformat(),
        "state": occurrence.state.value,
        "reason": occurrence.reason,
    }


def _spaced(ahead_at: datetime, ahead_origin: datetime, origin: datetime) -> datetime:
    """Where an occurrence goes behind a sibling moved from ahead_origin to ahead_at."""
    return ahead_at + max(origin - ahead_origin, SIBLING_GAP)


def _in_sequence(entries: list[DeferredEntry]) -> list[DeferredEntry]:
    """Each request's entries in sequence order, keeping the interleaving of requests."""
    by_request: dict[str, list[DeferredEntry]] = {}
    for entry in entries:
        by_request.setdefault(entry.request_id, []).append(entry)
    for group in by_request.values():
        group.sort(key=lambda e: e.occurrence.sequence_index, reverse=True)
    return [by_request[entry.request_id].pop() for entry in entries]
