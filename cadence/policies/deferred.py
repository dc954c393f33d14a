"""
DeferredQueue — occurrences waiting for a rate-limit slot.

Ordering: critical, then high, normal, low; FIFO within a priority.
Overflow: pushing into a full queue evicts the lowest-priority entry that
was enqueued first, which may be the entry being pushed.

Not synchronized. The RateLimiter that owns the queue is its only user
and touches it under its lock.
"""

from __future__ import annotations

import bisect
import itertools
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator

from cadence.core.errors import ValidationError
from cadence.core.types import Priority, ScheduledInstant


@dataclass(slots=True, eq=False)
class DeferredEntry:
    """One deferred occurrence."""

    occurrence: ScheduledInstant
    priority: Priority
    retry_at: datetime
    seq: int = 0

    @property
    def request_id(self) -> str:
        return self.occurrence.request_id

    @property
    def expires_at(self) -> datetime | None:
        return self.occurrence.expires_at


def _order(entry: DeferredEntry) -> tuple[int, int]:
    return (-entry.priority.rank, entry.seq)


class DeferredQueue:
    """
    Bounded priority queue of DeferredEntry.

    Usage:
        queue = DeferredQueue(capacity=64)
        evicted = queue.push(entry)
        for entry in queue.pop_due(now):
            ...
    """

    def __init__(self, capacity: int = 64) -> None:
        if capacity < 1:
            raise ValidationError("Deferred queue capacity must be at least 1", field="capacity")
        self._capacity = capacity
        self._entries: list[DeferredEntry] = []
        self._counter = itertools.count()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[DeferredEntry]:
        return iter(list(self._entries))

    def push(self, entry: DeferredEntry) -> DeferredEntry | None:
        """
        Enqueue an entry. Returns the evicted entry when the queue was full.

        The returned entry is `entry` itself when it is the one that loses.
        """
        entry.seq = next(self._counter)
        bisect.insort(self._entries, entry, key=_order)
        if len(self._entries) <= self._capacity:
            return None
        victim = min(self._entries, key=lambda e: (e.priority.rank, e.seq))
        self._entries.remove(victim)
        return victim

    def pop_due(self, now: datetime) -> list[DeferredEntry]:
        """Remove and return entries whose retry time has come, in queue order."""
        due = [e for e in self._entries if e.retry_at <= now]
        if due:
            self._entries = [e for e in self._entries if e.retry_at > now]
        return due

    def remove(self, request_id: str) -> list[DeferredEntry]:
        """Remove every entry owned by a request."""
        removed = [e for e in self._entries if e.request_id == request_id]
        if removed:
            self._entries = [e for e in self._entries if e.request_id != request_id]
        return removed

    def purge_expired(self, now: datetime) -> list[DeferredEntry]:
        """Remove entries whose owning request has ended."""
        expired: list[DeferredEntry] = []
        kept: list[DeferredEntry] = []
        for e in self._entries:
            ended = e.expires_at is not None and e.expires_at < now
            (expired if ended else kept).append(e)
        self._entries = kept
        return expired

    def find(self, identifier: str) -> DeferredEntry | None:
        return next((e for e in self._entries if e.occurrence.identifier == identifier), None)

    def next_retry(self) -> datetime | None:
        """Earliest retry instant across all entries."""
        return min((e.retry_at for e in self._entries), default=None)

    def ahead_of(self, occurrence: ScheduledInstant) -> DeferredEntry | None:
        """The queued sibling immediately preceding `occurrence` in its request."""
        siblings = [
            e for e in self._entries
            if e.request_id == occurrence.request_id
            and e.occurrence.sequence_index < occurrence.sequence_index
        ]
        return max(siblings, key=lambda e: e.occurrence.sequence_index, default=None)

    def request_ids(self) -> set[str]:
        return {e.request_id for e in self._entries}
