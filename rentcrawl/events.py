"""Typed lifecycle notifications and a small subscription bus."""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

LOGGER = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")


@dataclass(frozen=True)
class Event:
    """Base class for all notifications."""


@dataclass(frozen=True)
class Started(Event):
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DiscoveryCompleted(Event):
    sources: int = 0
    duration: float = 0.0


@dataclass(frozen=True)
class UpdateCompleted(Event):
    processed: int = 0
    new: int = 0
    updated: int = 0
    duration: float = 0.0


@dataclass(frozen=True)
class HealthWarning(Event):
    type: str = ""
    stats: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Stopped(Event):
    stats: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionCreated(Event):
    source: str = ""
    id: str = ""


@dataclass(frozen=True)
class SessionClosed(Event):
    source: str = ""
    id: str = ""


Handler = Callable[[Event], Any]


class Subscription:
    """Handle returned by ``EventBus.subscribe``."""

    def __init__(self, bus: EventBus, event_type: Type[Event], handler: Handler) -> None:
        self._bus = bus
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False


class EventBus:
    """Synchronous publish/subscribe keyed by event class.

    Handlers subscribed to ``Event`` receive everything. A handler that raises
    is logged and skipped so monitoring code can never break a crawl cycle.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[Type[Event], List[Subscription]] = defaultdict(list)
        self._waiters: Dict[Type[Event], List[asyncio.Future]] = defaultdict(list)

    def subscribe(self, event_type: Type[E], handler: Callable[[E], Any]) -> Subscription:
        subscription = Subscription(self, event_type, handler)
        self._subscriptions[event_type].append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.event_type, [])
        if subscription in subs:
            subs.remove(subscription)

    def publish(self, event: Event) -> None:
        for event_type, subs in list(self._subscriptions.items()):
            if not isinstance(event, event_type):
                continue
            for subscription in list(subs):
                try:
                    subscription.handler(event)
                except Exception as exc:
                    LOGGER.error(
                        "Event handler %r failed for %s: %s",
                        subscription.handler,
                        type(event).__name__,
                        exc,
                        exc_info=True,
                    )

        waiters = self._waiters.pop(type(event), [])
        for future in waiters:
            if not future.done():
                future.set_result(event)

    async def wait_for(self, event_type: Type[E], timeout: Optional[float] = None) -> E:
        """Wait for the next event of exactly ``event_type``."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters[event_type].append(future)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            waiters = self._waiters.get(event_type)
            if waiters and future in waiters:
                waiters.remove(future)
