"""Tests for cadence/middleware/logging.py"""
from __future__ import annotations

import json
import logging
from datetime import datetime

import pytest

from cadence.core.config import LoggingConfig
from cadence.core.errors import DroppedOccurrenceError
from cadence.core.events import Event, EventType
from cadence.middleware.logging import EventLogger, setup_logging


@pytest.fixture
def reset_cadence_logger():
    yield
    logger = logging.getLogger("cadence")
    for handler in logger.handlers:
        handler.close()
    logger.handlers = []


class TestSetupLogging:
    def test_writes_module_loggers_to_daily_file(self, tmp_path, reset_cadence_logger):
        logger = setup_logging(LoggingConfig(dir=str(tmp_path / "logs")))
        logging.getLogger("cadence.governor.engine").debug("hello from the governor")
        for handler in logger.handlers:
            handler.flush()

        log_file = tmp_path / "logs" / f"cadence_{datetime.now().strftime('%Y%m%d')}.log"
        assert "hello from the governor" in log_file.read_text(encoding="utf-8")

    def test_console_level_from_config(self, tmp_path, reset_cadence_logger):
        logger = setup_logging(LoggingConfig(dir=str(tmp_path), console_level="info"))
        assert logger.handlers[0].level == logging.INFO

    def test_explicit_level_wins_and_handlers_are_replaced(self, tmp_path, reset_cadence_logger):
        settings = LoggingConfig(dir=str(tmp_path))
        setup_logging(settings)
        logger = setup_logging(settings, console_level=logging.DEBUG)
        assert len(logger.handlers) == 2
        assert logger.handlers[0].level == logging.DEBUG

    def test_unknown_level(self, tmp_path, reset_cadence_logger):
        with pytest.raises(ValueError):
            setup_logging(LoggingConfig(dir=str(tmp_path), console_level="LOUD"))


@pytest.mark.asyncio
class TestEventLogger:
    async def test_journals_drop_with_error(self, tmp_path, bus):
        event_logger = EventLogger(tmp_path)
        bus.use(event_logger.middleware)
        error = DroppedOccurrenceError("Occurrence a-1 dropped", identifier="a-1")

        await bus.emit(Event(
            type=EventType.OCCURRENCE_DROPPED,
            source="governor",
            data={"identifier": "a-1", "error": error, "at": datetime(2024, 1, 15, 10)},
        ))

        [line] = event_logger.events_file.read_text(encoding="utf-8").splitlines()
        record = json.loads(line)
        assert record["type"] == EventType.OCCURRENCE_DROPPED
        assert record["source"] == "governor"
        assert record["data"] == {
            "identifier": "a-1",
            "error": {"error": "DroppedOccurrenceError", "message": "Occurrence a-1 dropped"},
            "at": "2024-01-15T10:00:00",
        }

    async def test_severity_follows_event_type(self, tmp_path, bus, caplog):
        bus.use(EventLogger(tmp_path, journal=False).middleware)

        with caplog.at_level(logging.DEBUG, logger="cadence.events"):
            await bus.emit(Event(
                type=EventType.OCCURRENCE_DROPPED,
                data={"identifier": "a-2", "reason": "quiet hours"},
            ))
            await bus.emit(Event(type=EventType.OCCURRENCE_ADMITTED, data={"identifier": "a-3"}))

        levels = {r.getMessage(): r.levelno for r in caplog.records}
        assert levels["occurrence:dropped a-2: quiet hours"] == logging.WARNING
        assert levels["occurrence:admitted a-3"] == logging.DEBUG

    async def test_passes_event_through(self, tmp_path, bus):
        received = []

        async def handler(event):
            received.append(event)

        bus.use(EventLogger(tmp_path).middleware)
        bus.on(EventType.GOVERNOR_START, handler)
        await bus.emit(Event(type=EventType.GOVERNOR_START))
        assert len(received) == 1

    async def test_from_config_without_journal(self, tmp_path, bus):
        event_logger = EventLogger.from_config(
            LoggingConfig(dir=str(tmp_path / "journal"), log_events=False)
        )
        bus.use(event_logger.middleware)
        await bus.emit(Event(type=EventType.GOVERNOR_START))
        assert not event_logger.events_file.exists()
