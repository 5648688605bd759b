"""Subscriber registry bridging the event stream to consumers.

Events are delivered synchronously, in publish order, to callbacks
registered per ``event_type``. Every registration returns a handle that
unsubscribes on ``close()``. Consumers that prefer message passing take an
``EventChannel``, an async iterator backed by a queue.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import Any

from opencode_bridge.adapters.events import EVENT_TYPES, BridgeEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[BridgeEvent], Any]

ALL_EVENTS = "*"


class Subscription:
    """Handle for one registered callback."""

    def __init__(self, bus: EventBus, event_type: str, callback: EventCallback) -> None:
        self._bus = bus
        self.event_type = event_type
        self.callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def close(self) -> None:
        if not self._active:
            return
        self._active = False
        self._bus._remove(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class EventChannel:
    """Async iterator over published events of the selected types.

    Iteration ends after ``close()``. When the consumer falls behind by
    ``maxsize`` events the oldest queued event is dropped.
    """

    _CLOSED = object()

    def __init__(self, bus: EventBus, event_types: Iterable[str], maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._subscriptions = [bus.subscribe(t, self._put) for t in event_types]

    def _put(self, event: BridgeEvent) -> None:
        if self._closed:
            return
        if self._queue.full():
            dropped = self._queue.get_nowait()
            logger.warning(
                "EventChannel full (%d), dropping oldest: %s",
                self._queue.maxsize,
                getattr(dropped, "event_type", dropped),
            )
        self._queue.put_nowait(event)

    async def get(self) -> BridgeEvent:
        item = await self._queue.get()
        if item is self._CLOSED:
            # Keep the marker for any other waiter.
            self._queue.put_nowait(item)
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> EventChannel:
        return self

    async def __anext__(self) -> BridgeEvent:
        return await self.get()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for sub in self._subscriptions:
            sub.close()
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(self._CLOSED)

    async def __aenter__(self) -> EventChannel:
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.close()


class EventBus:
    """Typed publish/subscribe registry keyed by event type."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscription]] = {}

    def subscribe(self, event_type: str, callback: EventCallback) -> Subscription:
        """Register ``callback`` for ``event_type`` (or ``"*"`` for all)."""
        if event_type != ALL_EVENTS and event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        sub = Subscription(self, event_type, callback)
        self._subscribers.setdefault(event_type, []).append(sub)
        return sub

    def subscribe_all(self, callback: EventCallback) -> Subscription:
        return self.subscribe(ALL_EVENTS, callback)

    def unsubscribe(self, event_type: str, callback: EventCallback) -> None:
        """Remove every registration of ``callback`` for ``event_type``."""
        for sub in list(self._subscribers.get(event_type, [])):
            if sub.callback == callback:
                sub.close()

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.event_type)
        if not subs:
            return
        try:
            subs.remove(sub)
        except ValueError:
            return
        if not subs:
            del self._subscribers[sub.event_type]

    def channel(self, *event_types: str, maxsize: int = 5000) -> EventChannel:
        """Open a queue-backed channel; no types means every event."""
        return EventChannel(self, event_types or (ALL_EVENTS,), maxsize=maxsize)

    def publish(self, event: BridgeEvent) -> None:
        # Snapshot so callbacks may subscribe or unsubscribe while we iterate.
        targets = list(self._subscribers.get(event.event_type, ()))
        targets += self._subscribers.get(ALL_EVENTS, ())
        for sub in targets:
            if not sub.active:
                continue
            try:
                sub.callback(event)
            except Exception:
                logger.exception(
                    "EventBus subscriber failed for %s", event.event_type,
                )

    def subscriber_count(self, event_type: str | None = None) -> int:
        if event_type is not None:
            return len(self._subscribers.get(event_type, ()))
        return sum(len(subs) for subs in self._subscribers.values())

    def clear(self) -> None:
        """Drop every subscriber."""
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub._active = False
        self._subscribers.clear()
