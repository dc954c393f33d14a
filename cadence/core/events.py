"""
Cadence Event System — types and constants.

Admission outcomes that happen after schedule() has returned (deferred
retries, queue evictions, cancellations) are reported as events.
Subscribers match these names exactly or with fnmatch globs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
import time
import uuid


class EventType:
    """
    Event type constants.

    Hierarchical naming: "category:action"
    Supports wildcard matching: "occurrence:*" matches "occurrence:dropped"
    """

    # Governor lifecycle
    GOVERNOR_START = "governor:start"
    GOVERNOR_STOP = "governor:stop"
    GOVERNOR_ERROR = "governor:error"

    # Occurrence state transitions
    OCCURRENCE_ADMITTED = "occurrence:admitted"
    OCCURRENCE_DEFERRED = "occurrence:deferred"
    OCCURRENCE_DROPPED = "occurrence:dropped"
    OCCURRENCE_SUBMITTED = "occurrence:submitted"

    # Request level
    SCHEDULE_CAPACITY_EXCEEDED = "schedule:capacity_exceeded"
    REQUEST_CANCELLED = "request:cancelled"

    # Wildcard
    ALL = "*"


@dataclass(slots=True)
class Event:
    """
    One report from the engine.

    data carries the occurrence description (identifier, request_id,
    instant, reason). metadata is free for middleware annotations.
    parent_id lets a host chain its own follow-up events to the one that
    caused them.
    """

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    source: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    timestamp: float = field(default_factory=time.time)
    parent_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
