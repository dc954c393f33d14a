"""
SinkRouter — hands each submission to the right sinks.

Routing:

    1. Try the platform sinks in registration order; the first one that
       accepts wins.
    2. ALWAYS write to every audit sink (file log), accepted or not.

The router is itself a SubmissionSink, so the Governor sees one sink.
"""

from __future__ import annotations

import logging

from cadence.notifications.base import Submission, SubmissionSink

logger = logging.getLogger(__name__)

AUDIT_SINKS = frozenset({"file"})


class SinkRouter(SubmissionSink):
    """
    Routes submissions to platform and audit sinks.

    Usage:
        router = SinkRouter()
        router.register(apns_sink)
        router.register(FileSink())
        governor = SchedulingGovernor(limiter, sink=router)
    """

    def __init__(self) -> None:
        self._sinks: list[SubmissionSink] = []

    @property
    def name(self) -> str:
        return "router"

    def register(self, sink: SubmissionSink) -> None:
        self._sinks.append(sink)
        logger.debug(f"Submission sink registered: {sink.name}")

    def unregister(self, name: str) -> None:
        """Remove a sink by name."""
        self._sinks = [s for s in self._sinks if s.name != name]

    @property
    def sink_names(self) -> list[str]:
        return [s.name for s in self._sinks]

    async def submit(self, submission: Submission) -> bool:
        """
        True when a platform sink accepted the submission, or when only
        audit sinks are registered and one of them recorded it.
        """
        platform = [s for s in self._sinks if s.name not in AUDIT_SINKS]
        audit = [s for s in self._sinks if s.name in AUDIT_SINKS]

        # ── Platform: first acceptance wins ───────────────────────────────────
        accepted = False
        for sink in platform:
            try:
                if await sink.submit(submission):
                    accepted = True
                    logger.debug(f"{submission.identifier} accepted by {sink.name}")
                    break
            except Exception as e:
                logger.warning(f"Sink {sink.name} failed for {submission.identifier}: {e}")

        # ── Audit: always ─────────────────────────────────────────────────────
        recorded = False
        for sink in audit:
            try:
                recorded = await sink.submit(submission) or recorded
            except Exception as e:
                logger.warning(f"Audit sink {sink.name} failed: {e}")

        return accepted if platform else recorded
