"""Tests for cadence/policies/rate_limiter.py"""
from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta

import pytest

from cadence.core.types import (
    Admitted,
    Deferred,
    Dropped,
    Priority,
    RateLimitPolicy,
    ScheduledInstant,
)
from cadence.policies.rate_limiter import (
    REASON_EXPIRED,
    REASON_NO_CAPACITY,
    REASON_QUEUE_FULL,
    RateLimiter,
)

T0 = datetime(2024, 1, 15, 10, 0)  # matches the clock fixture


def at(minutes: float) -> datetime:
    return T0 + timedelta(minutes=minutes)


def occ(minutes: float, request_id: str = "r", index: int = 0, expires_at=None) -> ScheduledInstant:
    return ScheduledInstant(request_id, index, at(minutes), expires_at=expires_at)


def limiter_for(clock, **policy) -> RateLimiter:
    return RateLimiter(RateLimitPolicy(**policy), clock=clock)


# ── Sliding windows ──────────────────────────────────────────────────────────

class TestWindows:
    @pytest.mark.asyncio
    async def test_hourly_cap_defers_to_window_end(self, clock):
        limiter = limiter_for(clock, max_per_hour=2)
        assert await limiter.admit(occ(0, index=0), Priority.NORMAL) == Admitted(at(0))
        assert await limiter.admit(occ(10, index=1), Priority.NORMAL) == Admitted(at(10))
        assert await limiter.admit(occ(20, index=2), Priority.NORMAL) == Deferred(at(60))

    @pytest.mark.asyncio
    async def test_daily_cap(self, clock):
        limiter = limiter_for(clock, max_per_day=3)
        for i, minutes in enumerate([0, 120, 240]):
            assert isinstance(await limiter.admit(occ(minutes, index=i), Priority.NORMAL), Admitted)
        decision = await limiter.admit(occ(300, index=3), Priority.NORMAL)
        assert decision == Deferred(datetime(2024, 1, 16, 10, 0))

    @pytest.mark.asyncio
    async def test_burst_limit(self, clock):
        limiter = limiter_for(clock, burst_limit=2, burst_window=timedelta(seconds=60))
        await limiter.admit(occ(0, index=0), Priority.NORMAL)
        await limiter.admit(occ(10 / 60, index=1), Priority.NORMAL)
        decision = await limiter.admit(occ(20 / 60, index=2), Priority.NORMAL)
        assert decision == Deferred(at(1))

    @pytest.mark.asyncio
    async def test_min_spacing_after(self, clock):
        limiter = limiter_for(clock, min_spacing=timedelta(minutes=10))
        await limiter.admit(occ(0, index=0), Priority.NORMAL)
        assert await limiter.admit(occ(5, index=1), Priority.NORMAL) == Deferred(at(10))
        assert await limiter.admit(occ(10, index=2), Priority.NORMAL) == Admitted(at(10))

    @pytest.mark.asyncio
    async def test_min_spacing_before(self, clock):
        limiter = limiter_for(clock, min_spacing=timedelta(minutes=10))
        await limiter.admit(occ(10, index=0), Priority.NORMAL)
        assert await limiter.admit(occ(5, index=1), Priority.NORMAL) == Deferred(at(20))

    @pytest.mark.asyncio
    async def test_earlier_arrival_counts_later_admissions(self, clock):
        limiter = limiter_for(clock, max_per_hour=2)
        await limiter.admit(occ(30, index=0), Priority.NORMAL)
        await limiter.admit(occ(50, index=1), Priority.NORMAL)
        # [10:00, 11:00) already holds two; 11:00 would make three in [10:30, 11:30)
        assert await limiter.admit(occ(0, index=2), Priority.NORMAL) == Deferred(at(90))

    @pytest.mark.asyncio
    async def test_deferred_entries_do_not_consume_capacity(self, clock):
        limiter = limiter_for(clock, max_per_hour=1)
        await limiter.admit(occ(0, "a"), Priority.NORMAL)
        assert await limiter.admit(occ(10, "b"), Priority.NORMAL) == Deferred(at(60))
        assert await limiter.admit(occ(20, "c"), Priority.NORMAL) == Deferred(at(60))

    @pytest.mark.asyncio
    async def test_unlimited_policy_admits_everything(self, clock):
        limiter = RateLimiter(clock=clock)
        for i in range(100):
            assert isinstance(await limiter.admit(occ(0, index=i), Priority.LOW), Admitted)


class TestRateBound:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [1, 7, 42])
    async def test_caps_hold_for_any_arrival_order(self, clock, seed):
        limiter = RateLimiter(
            RateLimitPolicy(max_per_hour=2, max_per_day=8, min_spacing=timedelta(minutes=5)),
            queue_capacity=256,
            clock=clock,
        )
        offsets = [i * 20 for i in range(72)]
        random.Random(seed).shuffle(offsets)

        admitted: list[datetime] = []
        for i, minutes in enumerate(offsets):
            candidate = occ(minutes, index=i)
            decision = await limiter.admit(candidate, Priority.NORMAL)
            if isinstance(decision, Deferred):
                assert decision.next_eligible > candidate.instant
                # The slot it names is open right now
                retried = await limiter.admit(
                    ScheduledInstant("retry", i, decision.next_eligible), Priority.NORMAL
                )
                assert retried == Admitted(decision.next_eligible)
                admitted.append(decision.next_eligible)
            else:
                assert decision == Admitted(candidate.instant)
                admitted.append(candidate.instant)

        admitted.sort()
        for a in admitted:
            assert sum(1 for b in admitted if a <= b < a + timedelta(hours=1)) <= 2
            assert sum(1 for b in admitted if a <= b < a + timedelta(hours=24)) <= 8
        for a, b in zip(admitted, admitted[1:]):
            assert b - a >= timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_concurrent_admissions_respect_cap(self, clock):
        limiter = limiter_for(clock, max_per_hour=3)
        decisions = await asyncio.gather(
            *(limiter.admit(occ(i, index=i), Priority.NORMAL) for i in range(10))
        )
        assert sum(isinstance(d, Admitted) for d in decisions) == 3
        assert sum(isinstance(d, Deferred) for d in decisions) == 7


# ── Bypass ───────────────────────────────────────────────────────────────────

class TestBypass:
    @pytest.mark.asyncio
    async def test_bypass_admits_without_consuming(self, clock):
        limiter = limiter_for(clock, max_per_hour=1)
        assert await limiter.admit(occ(0, "alarm"), Priority.NORMAL, bypass=True) == Admitted(at(0))
        assert await limiter.admit(occ(5, "normal"), Priority.NORMAL) == Admitted(at(5))
        assert await limiter.admit(occ(6, "alarm2"), Priority.NORMAL, bypass=True) == Admitted(at(6))
        assert await limiter.admit(occ(10, "late"), Priority.NORMAL) == Deferred(at(65))

        status = await limiter.status()
        assert status.bypass_count == 2
        assert status.remaining_this_hour == 0

    @pytest.mark.asyncio
    async def test_critical_bypass_policy(self, clock):
        limiter = limiter_for(clock, max_per_hour=1, bypass_for_critical=True)
        await limiter.admit(occ(0, "a"), Priority.NORMAL)
        assert await limiter.admit(occ(5, "b"), Priority.CRITICAL) == Admitted(at(5))
        assert isinstance(await limiter.admit(occ(6, "c"), Priority.HIGH), Deferred)

    @pytest.mark.asyncio
    async def test_critical_is_capped_without_policy_flag(self, clock):
        limiter = limiter_for(clock, max_per_hour=1)
        await limiter.admit(occ(0, "a"), Priority.NORMAL)
        assert isinstance(await limiter.admit(occ(5, "b"), Priority.CRITICAL), Deferred)


# ── Drops ────────────────────────────────────────────────────────────────────

class TestDrops:
    @pytest.mark.asyncio
    async def test_zero_cap_drops(self, clock):
        limiter = limiter_for(clock, max_per_hour=0)
        assert await limiter.admit(occ(0), Priority.HIGH) == Dropped(REASON_NO_CAPACITY)
        assert (await limiter.status()).deferred_count == 0

    @pytest.mark.asyncio
    async def test_slot_past_expiry_drops(self, clock):
        limiter = limiter_for(clock, max_per_hour=1)
        await limiter.admit(occ(0, "a"), Priority.NORMAL)
        decision = await limiter.admit(occ(20, "b", expires_at=at(30)), Priority.NORMAL)
        assert decision == Dropped(REASON_EXPIRED)

    @pytest.mark.asyncio
    async def test_queue_overflow_evicts_and_notifies(self, clock):
        limiter = RateLimiter(RateLimitPolicy(max_per_hour=1), queue_capacity=2, clock=clock)
        evicted = []

        async def on_evicted(entry, reason):
            evicted.append((entry.occurrence.identifier, reason))

        limiter.set_eviction_handler(on_evicted)
        await limiter.admit(occ(0, "a"), Priority.NORMAL)
        assert isinstance(await limiter.admit(occ(10, "b"), Priority.LOW), Deferred)
        assert isinstance(await limiter.admit(occ(20, "c"), Priority.NORMAL), Deferred)
        assert isinstance(await limiter.admit(occ(30, "d"), Priority.HIGH), Deferred)
        assert evicted == [("b-0", REASON_QUEUE_FULL)]

        # An incoming entry that ranks lowest loses without a callback
        assert await limiter.admit(occ(40, "e"), Priority.LOW) == Dropped(REASON_QUEUE_FULL)
        assert len(evicted) == 1


# ── Retry preference ─────────────────────────────────────────────────────────

class TestRetryPreference:
    @pytest.mark.asyncio
    async def test_later_preference_is_used(self, clock):
        limiter = limiter_for(clock, max_per_hour=1)
        await limiter.admit(occ(0, "a"), Priority.NORMAL)
        decision = await limiter.admit(
            occ(20, "b"), Priority.NORMAL, retry=lambda t: t + timedelta(hours=2)
        )
        assert decision == Deferred(at(180))

    @pytest.mark.asyncio
    async def test_earlier_preference_is_ignored(self, clock):
        limiter = limiter_for(clock, max_per_hour=1)
        await limiter.admit(occ(0, "a"), Priority.NORMAL)
        decision = await limiter.admit(
            occ(20, "b"), Priority.NORMAL, retry=lambda t: t - timedelta(hours=1)
        )
        assert decision == Deferred(at(60))


# ── Queue management ─────────────────────────────────────────────────────────

class TestQueue:
    @pytest.mark.asyncio
    async def test_defer_queues_without_admission(self, clock):
        limiter = RateLimiter(clock=clock)
        assert await limiter.defer(occ(0, "a", 1), Priority.NORMAL, at(30)) == Deferred(at(30))
        entry = await limiter.find_deferred("a-1")
        assert entry.retry_at == at(30)
        assert entry.occurrence.state.value == "deferred"

    @pytest.mark.asyncio
    async def test_defer_past_expiry_drops(self, clock):
        limiter = RateLimiter(clock=clock)
        decision = await limiter.defer(occ(0, "a", expires_at=at(10)), Priority.NORMAL, at(30))
        assert decision == Dropped(REASON_EXPIRED)

    @pytest.mark.asyncio
    async def test_pop_due_priority_order(self, clock):
        limiter = limiter_for(clock, max_per_hour=1)
        await limiter.admit(occ(0, "first"), Priority.NORMAL)
        await limiter.admit(occ(5, "low"), Priority.LOW)
        await limiter.admit(occ(6, "normal"), Priority.NORMAL)
        await limiter.admit(occ(7, "high"), Priority.HIGH)

        assert await limiter.next_retry() == at(60)
        assert await limiter.pop_due(at(59)) == []
        due = await limiter.pop_due(at(60))
        assert [e.request_id for e in due] == ["high", "normal", "low"]
        assert await limiter.next_retry() is None

    @pytest.mark.asyncio
    async def test_cancel(self, clock):
        limiter = limiter_for(clock, max_per_hour=1)
        await limiter.admit(occ(0, "a", 0), Priority.NORMAL)
        await limiter.admit(occ(10, "a", 1), Priority.NORMAL)
        await limiter.admit(occ(20, "b", 0), Priority.NORMAL)

        removed = await limiter.cancel("a")
        assert [e.occurrence.identifier for e in removed] == ["a-1"]
        assert await limiter.find_deferred("a-1") is None
        assert await limiter.find_deferred("b-0") is not None

    @pytest.mark.asyncio
    async def test_purge_expired(self, clock):
        limiter = limiter_for(clock, max_per_hour=1)
        await limiter.admit(occ(0, "a"), Priority.NORMAL)
        await limiter.admit(occ(10, "b", expires_at=at(90)), Priority.NORMAL)
        await limiter.admit(occ(20, "c"), Priority.NORMAL)

        assert await limiter.purge_expired(at(60)) == []
        purged = await limiter.purge_expired(at(120))
        assert [e.request_id for e in purged] == ["b"]
        assert (await limiter.status()).deferred_count == 1

    @pytest.mark.asyncio
    async def test_siblings_ahead_and_pending_requests(self, clock):
        limiter = limiter_for(clock, max_per_hour=1)
        await limiter.admit(occ(0, "a", 0), Priority.NORMAL)
        await limiter.admit(occ(10, "a", 1), Priority.NORMAL)
        await limiter.defer(occ(20, "a", 2), Priority.NORMAL, not_before=at(61))
        await limiter.admit(occ(30, "b", 0), Priority.NORMAL)

        ahead = await limiter.find_ahead(occ(30, "a", 3))
        assert ahead.occurrence.identifier == "a-2"
        assert await limiter.find_ahead(occ(10, "a", 1)) is None
        assert await limiter.pending_requests() == {"a", "b"}


# ── Status ───────────────────────────────────────────────────────────────────

class TestStatus:
    @pytest.mark.asyncio
    async def test_remaining_and_next_allowed(self, clock):
        limiter = limiter_for(clock, max_per_hour=2, max_per_day=5)
        status = await limiter.status()
        assert status.remaining_this_hour == 2
        assert status.remaining_today == 5
        assert status.can_admit

        await limiter.admit(occ(0, index=0), Priority.NORMAL)
        await limiter.admit(occ(10, index=1), Priority.NORMAL)
        status = await limiter.status()
        assert status.remaining_this_hour == 0
        assert status.remaining_today == 3
        assert status.next_allowed == at(60)
        assert not status.can_admit

    @pytest.mark.asyncio
    async def test_uncapped_status(self, clock):
        status = await RateLimiter(clock=clock).status()
        assert status.remaining_this_hour is None
        assert status.remaining_today is None
        assert status.deferred_count == 0

    @pytest.mark.asyncio
    async def test_reset_clears_counters(self, clock):
        limiter = limiter_for(clock, max_per_hour=1)
        await limiter.admit(occ(0, "a"), Priority.NORMAL)
        await limiter.admit(occ(10, "b"), Priority.NORMAL)
        await limiter.reset()
        assert await limiter.admit(occ(20, "c"), Priority.NORMAL) == Admitted(at(20))
        assert (await limiter.status()).deferred_count == 1

    @pytest.mark.asyncio
    async def test_old_admissions_age_out(self, clock):
        limiter = limiter_for(clock, max_per_day=1)
        await limiter.admit(occ(0), Priority.NORMAL)
        clock.advance(timedelta(days=2))
        assert await limiter.admit(occ(60 * 48, index=1), Priority.NORMAL) == Admitted(at(60 * 48))

    @pytest.mark.asyncio
    async def test_explicit_now_governs_age_out(self, clock):
        limiter = limiter_for(clock, max_per_day=1)
        await limiter.admit(occ(0), Priority.NORMAL)
        clock.advance(timedelta(days=2))

        decision = await limiter.admit(occ(60, index=1), Priority.NORMAL, now=at(60))
        assert decision == Deferred(at(24 * 60))
