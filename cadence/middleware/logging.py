"""
Logging Middleware — wires the [logging] config section to stdlib logging
and journals governor decisions.

Usage:
    config = CadenceConfig.load()
    setup_logging(config.logging)
    bus.use(EventLogger.from_config(config.logging).middleware)

Daily files under the log directory:
    cadence_YYYYMMDD.log     module loggers (cadence.*)
    events_YYYYMMDD.jsonl    one JSON record per bus event
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from cadence.core.bus import MiddlewareNext
from cadence.core.config import LoggingConfig
from cadence.core.errors import CadenceError
from cadence.core.events import Event, EventType

CONSOLE_FORMAT = "[%(levelname)s] %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Decisions the host usually wants to see without turning on debug output
NOTABLE_EVENTS = {
    EventType.OCCURRENCE_DROPPED: logging.WARNING,
    EventType.SCHEDULE_CAPACITY_EXCEEDED: logging.WARNING,
    EventType.GOVERNOR_ERROR: logging.ERROR,
}


def _daily(log_dir: Path, prefix: str, suffix: str) -> Path:
    return log_dir / f"{prefix}_{datetime.now().strftime('%Y%m%d')}.{suffix}"


def _level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {value!r}")
    return level


def setup_logging(
    settings: LoggingConfig | None = None,
    console_level: int | str | None = None,
) -> logging.Logger:
    """
    Attach console and file handlers to the "cadence" logger.

    Calling it again replaces the handlers rather than stacking them.
    console_level, when given, overrides settings.console_level.
    """
    settings = settings or LoggingConfig()
    log_dir = Path(settings.dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger("cadence")
    root.setLevel(logging.DEBUG)
    for old in root.handlers:
        old.close()
    root.handlers = []

    console = logging.StreamHandler()
    console.setLevel(_level(console_level if console_level is not None else settings.console_level))
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root.addHandler(console)

    log_file = _daily(log_dir, "cadence", "log")
    to_file = logging.FileHandler(log_file, encoding="utf-8")
    to_file.setLevel(logging.DEBUG)
    to_file.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(to_file)

    root.debug(f"Logging to {log_file}")
    return root


class EventLogger:
    """
    Bus middleware that logs each event and appends it to the day's
    events journal.

    Drops and capacity reports log at WARNING, governor errors at ERROR,
    everything else at DEBUG.
    """

    def __init__(self, log_dir: Path, journal: bool = True) -> None:
        self._log_dir = log_dir.expanduser()
        self._journal = journal
        self._logger = logging.getLogger("cadence.events")
        if journal:
            self._log_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_config(cls, settings: LoggingConfig) -> EventLogger:
        return cls(Path(settings.dir), journal=settings.log_events)

    @property
    def events_file(self) -> Path:
        return _daily(self._log_dir, "events", "jsonl")

    async def middleware(self, event: Event, next_handler: MiddlewareNext) -> Event:
        level = NOTABLE_EVENTS.get(event.type, logging.DEBUG)
        identifier = event.data.get("identifier", "-")
        reason = event.data.get("reason")
        self._logger.log(
            level,
            f"{event.type} {identifier}" + (f": {reason}" if reason else ""),
        )
        if self._journal:
            self._append(event)
        return await next_handler(event)

    def _append(self, event: Event) -> None:
        record = {
            "logged_at": datetime.now().isoformat(),
            "id": event.id,
            "type": event.type,
            "source": event.source,
            "parent_id": event.parent_id,
            "data": {key: _jsonable(value) for key, value in event.data.items()},
        }
        try:
            with open(self.events_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
        except OSError as e:
            self._logger.warning(f"Could not append to {self.events_file}: {e}")


def _jsonable(value: Any) -> Any:
    """Errors keep their class and message; datetimes become ISO strings."""
    if isinstance(value, CadenceError):
        return {"error": type(value).__name__, "message": value.message}
    if isinstance(value, datetime):
        return value.isoformat()
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value
