"""
Submission primitives — the hand-off to the OS notification service.

Cadence decides when an occurrence may fire; a SubmissionSink is whatever
actually registers (identifier, instant, payload) with the platform.
Sinks for real platforms live in the host application.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class Submission:
    """One admitted occurrence ready for the platform."""

    identifier: str
    instant: datetime
    request_id: str
    payload: dict[str, Any] = field(default_factory=dict, compare=False)


class SubmissionSink(ABC):
    """
    Abstract hand-off target.

    submit() returns True if the platform accepted the occurrence.
    Raising is treated like returning False: logged and reported.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier, e.g. 'memory', 'file', 'apns'."""
        ...

    @abstractmethod
    async def submit(self, submission: Submission) -> bool:
        ...


class MemorySink(SubmissionSink):
    """Keeps submissions in a list. Useful for previews and tests."""

    def __init__(self) -> None:
        self.submitted: list[Submission] = []

    @property
    def name(self) -> str:
        return "memory"

    async def submit(self, submission: Submission) -> bool:
        self.submitted.append(submission)
        return True
