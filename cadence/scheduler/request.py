"""
NotificationRequest — a caller's intent to deliver a notification.

A request names a logical notification family (`id`), says when it wants
to fire (`trigger`) and how it should be governed. The payload is opaque
to the engine and handed through to the submission sink.

Dict shape (config files, CLI simulation input):
    {"id": "standup", "priority": "high",
     "bypass_quiet_hours": false, "bypass_rate_limit": false,
     "trigger": {"type": "recurrence", "unit": "day",
                 "start": "2024-01-15T00:00", "at": "09:00"},
     "payload": {"title": "Standup"}}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from cadence.core.errors import ValidationError
from cadence.core.types import Priority
from cadence.scheduler.triggers import ImmediateTrigger, Trigger, make_trigger


@dataclass(frozen=True)
class NotificationRequest:
    """One schedule() call's worth of intent."""

    id: str                      # unique per logical notification family
    trigger: Trigger = field(default_factory=ImmediateTrigger, compare=False)
    priority: Priority = Priority.NORMAL
    bypass_quiet_hours: bool = False
    bypass_rate_limit: bool = False
    payload: dict[str, Any] = field(default_factory=dict, compare=False)

    def validate(self) -> None:
        if not self.id or not self.id.strip():
            raise ValidationError("Request id must not be empty", field="id")

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "NotificationRequest":
        try:
            priority = Priority(d.get("priority", Priority.NORMAL.value))
        except ValueError as e:
            raise ValidationError(f"Unknown priority: {d.get('priority')!r}", field="priority") from e
        return cls(
            id=str(d.get("id", "")),
            trigger=make_trigger(d.get("trigger", {"type": "immediate"})),
            priority=priority,
            bypass_quiet_hours=bool(d.get("bypass_quiet_hours", False)),
            bypass_rate_limit=bool(d.get("bypass_rate_limit", False)),
            payload=dict(d.get("payload", {})),
        )
