"""
FileSink — appends admitted occurrences to ~/.cadence/submissions.log.

A permanent record of every hand-off, for hosts that want an audit trail
next to their platform sink, and for the CLI simulator.
"""

from __future__ import annotations

import logging
from pathlib import Path

from cadence.notifications.base import Submission, SubmissionSink

logger = logging.getLogger(__name__)


class FileSink(SubmissionSink):
    """Appends one line per submission to a plain-text log file."""

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path or (Path.home() / ".cadence" / "submissions.log")

    @property
    def name(self) -> str:
        return "file"

    @property
    def path(self) -> Path:
        return self._log_path

    async def submit(self, submission: Submission) -> bool:
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            ts = submission.instant.strftime("%Y-%m-%d %H:%M:%S")
            title = submission.payload.get("title", "")
            entry = f"[{ts}] [{submission.identifier}] {title}".rstrip() + "\n"
            with open(self._log_path, "a", encoding="utf-8") as f:
                f.write(entry)
            return True
        except OSError as e:
            logger.warning(f"FileSink write failed: {e}")
            return False
