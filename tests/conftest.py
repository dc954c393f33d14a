"""Shared test fixtures for Cadence."""

from datetime import datetime

import pytest

from cadence.core.bus import EventBus
from cadence.core.clock import FixedClock
from cadence.core.config import CadenceConfig
from cadence.core.events import Event

# Monday
MONDAY_10AM = datetime(2024, 1, 15, 10, 0)


@pytest.fixture
def config():
    """Create a default config without loading from disk."""
    return CadenceConfig()


@pytest.fixture
def bus():
    """Create a fresh event bus."""
    return EventBus()


@pytest.fixture
def clock():
    """A clock frozen at Monday 2024-01-15 10:00."""
    return FixedClock(MONDAY_10AM)


@pytest.fixture
def recorded(bus):
    """Every event emitted on the bus, in order."""
    events: list[Event] = []

    async def record(event: Event) -> None:
        events.append(event)

    bus.on("*", record)
    return events
