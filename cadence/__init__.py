"""
Cadence — decides when a notification is allowed to fire.

Public API:
    from cadence import SchedulingGovernor, NotificationRequest, RateLimiter
"""

__version__ = "0.1.0"

# Core
from cadence.core.bus import EventBus
from cadence.core.clock import Clock, FixedClock, SystemClock
from cadence.core.config import CadenceConfig
from cadence.core.events import Event, EventType
from cadence.core.types import (
    EngagementHeatmap,
    Priority,
    QuietHoursPolicy,
    RateLimitPolicy,
    RecurrenceRule,
    ScheduledInstant,
    TimeOfDay,
    TimeUnit,
    TimeWindow,
    Weekday,
)

# Pipeline
from cadence.scheduler.recurrence import RecurrenceExpander
from cadence.scheduler.request import NotificationRequest
from cadence.scheduler.triggers import make_trigger
from cadence.policies.quiet_hours import QuietHoursGate
from cadence.policies.rate_limiter import RateLimiter
from cadence.policies.optimizer import DeliveryOptimizer
from cadence.governor.engine import SchedulingGovernor

# Submission
from cadence.notifications.base import MemorySink, Submission, SubmissionSink

__all__ = [
    # Core
    "EventBus",
    "Clock",
    "FixedClock",
    "SystemClock",
    "CadenceConfig",
    "Event",
    "EventType",
    "EngagementHeatmap",
    "Priority",
    "QuietHoursPolicy",
    "RateLimitPolicy",
    "RecurrenceRule",
    "ScheduledInstant",
    "TimeOfDay",
    "TimeUnit",
    "TimeWindow",
    "Weekday",
    # Pipeline
    "RecurrenceExpander",
    "NotificationRequest",
    "make_trigger",
    "QuietHoursGate",
    "RateLimiter",
    "DeliveryOptimizer",
    "SchedulingGovernor",
    # Submission
    "MemorySink",
    "Submission",
    "SubmissionSink",
]
