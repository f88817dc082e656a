"""Publish/subscribe dispatch table for decoupled communication between modules."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, DefaultDict, Dict, Iterable, List, Optional, Set, Union

from ..constants import EventTopic


@dataclass(frozen=True)
class Event:
    topic: EventTopic
    payload: Dict[str, Any]
    timestamp: float = field(default_factory=time.time)


Subscriber = Callable[[Event], Union[None, Awaitable[None]]]


class EventBus:
    """Event-kind to handler mapping, invoked within the publishing loop tick.

    Plain callables run synchronously. Coroutine handlers are scheduled on the
    running loop; the bus keeps a reference until they finish.
    """

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._subscribers: DefaultDict[EventTopic, List[Subscriber]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()
        self.logger = logger or logging.getLogger("events")

    def subscribe(self, topic: EventTopic, callback: Subscriber) -> None:
        listeners = self._subscribers[topic]
        if callback not in listeners:
            listeners.append(callback)

    def unsubscribe(self, topic: EventTopic, callback: Subscriber) -> None:
        listeners = self._subscribers.get(topic, [])
        if callback in listeners:
            listeners.remove(callback)

    def publish(self, event: Event) -> None:
        for listener in list(self._subscribers.get(event.topic, [])):
            try:
                outcome = listener(event)
            except Exception:
                # One listener must not break the others.
                self.logger.exception("Listener failed for %s", event.topic.value)
                continue
            if inspect.isawaitable(outcome):
                self._track(outcome, event.topic)

    def emit(self, topic: EventTopic, payload: Dict[str, Any]) -> None:
        self.publish(Event(topic, payload))

    def topics(self) -> Iterable[EventTopic]:
        return list(self._subscribers.keys())

    async def drain(self) -> None:
        """Wait for coroutine listeners scheduled so far."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _track(self, awaitable: Awaitable[None], topic: EventTopic) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                self.logger.error("Async listener failed for %s: %s", topic.value, exc)

        task.add_done_callback(_done)


__all__ = ["Event", "EventBus", "Subscriber"]
