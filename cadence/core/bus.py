"""
Cadence Event Bus — the asynchronous reporting channel.

schedule() answers for what it can decide at call time. Everything decided
later (deferred retries, evictions, expiries, cancellations) reaches the
host through this bus.

Events pass through the middleware list in registration order, then go to
every subscriber whose pattern matches the event type. Patterns are
fnmatch globs over "category:action" names: "occurrence:dropped",
"occurrence:*", "*".
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections import defaultdict
from functools import partial
from typing import Awaitable, Callable

from cadence.core.events import Event

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], Awaitable[None]]
MiddlewareNext = Callable[[Event], Awaitable[Event]]
MiddlewareFunc = Callable[[Event, MiddlewareNext], Awaitable[Event]]


class EventBus:
    """
    Publish/subscribe with a middleware pipeline.

    Usage:
        bus = EventBus()
        bus.on("occurrence:dropped", on_dropped)
        bus.on("occurrence:*", audit)
        bus.use(event_logger.middleware)

        await bus.emit(Event(type="occurrence:dropped", data={...}))

    Middleware may annotate the event, replace it, or stop delivery by
    returning without calling next:
        async def only_drops(event: Event, next: MiddlewareNext) -> Event:
            if event.type != "occurrence:dropped":
                return event
            return await next(event)
    """

    def __init__(self) -> None:
        self._subscribers: defaultdict[str, list[EventHandler]] = defaultdict(list)
        self._middleware: list[MiddlewareFunc] = []

    def on(self, pattern: str, handler: EventHandler) -> None:
        self._subscribers[pattern].append(handler)

    def off(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(pattern)
        if not handlers:
            return
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            del self._subscribers[pattern]

    def use(self, middleware: MiddlewareFunc) -> None:
        self._middleware.append(middleware)

    @property
    def subscriber_count(self) -> int:
        return sum(len(handlers) for handlers in self._subscribers.values())

    async def emit(self, event: Event) -> Event:
        """
        Run the event through middleware, then deliver it.

        Subscribers run concurrently. A failing subscriber is logged and
        never affects other subscribers or the emitter.
        """
        return await self._step(event, position=0)

    async def _step(self, event: Event, position: int) -> Event:
        if position < len(self._middleware):
            next_step = partial(self._step, position=position + 1)
            return await self._middleware[position](event, next_step)
        await self._deliver(event)
        return event

    async def _deliver(self, event: Event) -> None:
        handlers = [
            handler
            for pattern, subscribed in self._subscribers.items()
            if fnmatch.fnmatchcase(event.type, pattern)
            for handler in subscribed
        ]
        if not handlers:
            return
        outcomes = await asyncio.gather(*(h(event) for h in handlers), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                logger.error(f"Subscriber failed on {event.type}: {outcome}", exc_info=outcome)
