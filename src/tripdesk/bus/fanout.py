from __future__ import annotations

from typing import Iterable

from tripdesk.models.events import DomainEvent


class FanoutBus:
    """Publishes every event to each wrapped bus in order."""

    def __init__(self, buses: Iterable[object]) -> None:
        self._buses = list(buses)

    def publish(self, event: DomainEvent) -> None:
        for bus in self._buses:
            bus.publish(event)

    def publish_many(self, events: list[DomainEvent]) -> None:
        for event in events:
            self.publish(event)

    def close(self) -> None:
        for bus in self._buses:
            close = getattr(bus, "close", None)
            if callable(close):
                close()
