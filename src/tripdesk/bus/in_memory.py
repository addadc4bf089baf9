from __future__ import annotations

import logging
from collections import defaultdict, deque
from typing import Callable, Iterable

from tripdesk.bus.routing import EVENT_TOPIC_MAP
from tripdesk.models.events import DomainEvent, EventType

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]


class InMemoryBus:
    """In-process bus. ``topics`` keeps the last ``max_history`` events per topic, or all when None."""

    def __init__(self, max_history: int | None = None) -> None:
        self.max_history = max_history
        self.topics: dict[str, deque[DomainEvent]] = defaultdict(lambda: deque(maxlen=self.max_history))
        self._subscribers: dict[EventType, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def publish(self, event: DomainEvent) -> None:
        topic = EVENT_TOPIC_MAP[event.event_type]
        self.topics[topic].append(event)
        for handler in list(self._subscribers[event.event_type]):
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Subscriber %s failed for %s on %s",
                    getattr(handler, "__qualname__", repr(handler)),
                    event.event_type.value,
                    event.aggregate_id,
                )

    def publish_many(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            self.publish(event)

    def reset(self) -> None:
        self.topics.clear()
