from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from tripdesk.config import QuoteSettings
from tripdesk.models.events import DomainEvent, EventType
from tripdesk.models.quotes import Quote
from tripdesk.quotes.lifecycle import QuoteLifecycle

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expiring_soon: int = 0
    expired: int = 0
    notification_failures: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class QuoteExpirationSweep:
    def __init__(self, lifecycle: QuoteLifecycle, bus: Any, settings: QuoteSettings | None = None) -> None:
        self.lifecycle = lifecycle
        self.bus = bus
        self.settings = settings or lifecycle.settings

    def run(self, now: datetime | None = None) -> SweepResult:
        now = now or self.lifecycle.clock()
        warned = self.warn_expiring(now)
        expired = self.expire_overdue(now)
        result = SweepResult(
            expiring_soon=warned.expiring_soon,
            expired=expired.expired,
            notification_failures=warned.notification_failures + expired.notification_failures,
        )
        logger.info(
            "Quote sweep finished: %d expiring soon, %d expired, %d notification failures",
            result.expiring_soon,
            result.expired,
            result.notification_failures,
        )
        return result

    def warn_expiring(self, now: datetime | None = None) -> SweepResult:
        now = now or self.lifecycle.clock()
        lookahead = timedelta(days=self.settings.warning_days)
        quotes = self.lifecycle.expiring_soon(lookahead, now)
        failures = self._notify_all(EventType.QUOTE_EXPIRING, quotes)
        return SweepResult(expiring_soon=len(quotes), notification_failures=failures)

    def expire_overdue(self, now: datetime | None = None) -> SweepResult:
        now = now or self.lifecycle.clock()
        quotes = self.lifecycle.expire_overdue(now)
        failures = self._notify_all(EventType.QUOTE_EXPIRED, quotes)
        return SweepResult(expired=len(quotes), notification_failures=failures)

    def _notify_all(self, event_type: EventType, quotes: list[Quote]) -> int:
        failures = 0
        for quote in quotes:
            try:
                self._notify(event_type, quote)
            except Exception:
                failures += 1
                logger.warning("Notification %s for quote %s failed", event_type.value, quote.id, exc_info=True)
        return failures

    def _notify(self, event_type: EventType, quote: Quote) -> None:
        inquiry = self.lifecycle.inquiry_for(quote)
        self.bus.publish(
            DomainEvent(
                event_type=event_type,
                aggregate_id=quote.id,
                payload={
                    "inquiry_id": quote.inquiry_id,
                    "customer_email": inquiry.customer_email if inquiry else None,
                    "customer_name": inquiry.customer_name if inquiry else None,
                    "title": quote.title,
                    "amount": str(quote.amount),
                    "currency": quote.currency,
                    "expires_at": quote.expires_at,
                },
            )
        )
