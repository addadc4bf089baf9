from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable

from tripdesk.audit.lineage import AuditStore
from tripdesk.config import QuoteSettings
from tripdesk.db.repositories import InquiryRepository, QuoteRepository, StoreWriteError, to_datetime
from tripdesk.errors import QuoteExpiredError, QuoteTransitionError
from tripdesk.models.events import DomainEvent, EventType
from tripdesk.models.quotes import (
    OPEN_QUOTE_STATUSES,
    CallerIdentity,
    Inquiry,
    InquiryStatus,
    Quote,
    QuoteStatus,
)

logger = logging.getLogger(__name__)

_OPEN = [status.value for status in OPEN_QUOTE_STATUSES]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuoteLifecycle:
    """State machine for quotes: draft -> sent (-> viewed) -> accepted | expired.

    Every transition is a conditional write on the expected current status, so
    a quote that moved on concurrently is reported as an invalid transition
    instead of being overwritten.
    """

    def __init__(
        self,
        quotes: QuoteRepository | None = None,
        inquiries: InquiryRepository | None = None,
        bus: Any | None = None,
        audit_store: AuditStore | None = None,
        settings: QuoteSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.quotes = quotes or QuoteRepository()
        self.inquiries = inquiries or InquiryRepository()
        self.bus = bus
        self.audit_store = audit_store
        self.settings = settings or QuoteSettings()
        self.clock = clock

    def create(
        self,
        inquiry_id: str,
        amount: Decimal | str | float,
        currency: str = "USD",
        validity_days: int | None = None,
        title: str | None = None,
        admin_id: str | None = None,
    ) -> Quote:
        if self.inquiries.get(inquiry_id) is None:
            raise KeyError("Inquiry not found")
        days = validity_days if validity_days is not None else self.settings.default_validity_days
        if days <= 0:
            raise ValueError("validity_days must be positive")
        now = self.clock().isoformat()
        row = self.quotes.insert(
            {
                "inquiry_id": inquiry_id,
                "title": title,
                "amount": str(Decimal(str(amount))),
                "currency": currency,
                "status": QuoteStatus.DRAFT.value,
                "validity_days": days,
                "sent_at": None,
                "expires_at": None,
                "accepted_at": None,
                "admin_id": admin_id,
                "created_at": now,
                "updated_at": now,
            }
        )
        quote = self._to_quote(row)
        self._log_transition(quote, "quote_created")
        return quote

    def get(self, quote_id: str) -> Quote:
        return self._require(quote_id)

    def send(self, quote_id: str) -> Quote:
        quote = self._require(quote_id)
        if quote.status != QuoteStatus.DRAFT:
            raise QuoteTransitionError(f"Invalid transition: {quote.status.value} -> sent")
        now = self.clock()
        values = {
            "status": QuoteStatus.SENT.value,
            "sent_at": now.isoformat(),
            "expires_at": (now + timedelta(days=quote.validity_days)).isoformat(),
        }
        quote = self._transition(quote, values, [QuoteStatus.DRAFT.value], "sent")
        self._publish(EventType.QUOTE_SENT, quote)
        self._log_transition(quote, "quote_sent")
        return quote

    def mark_viewed(self, quote_id: str) -> Quote:
        quote = self._require(quote_id)
        if quote.status == QuoteStatus.VIEWED:
            return quote
        if quote.status != QuoteStatus.SENT:
            raise QuoteTransitionError(f"Invalid transition: {quote.status.value} -> viewed")
        quote = self._transition(quote, {"status": QuoteStatus.VIEWED.value}, [QuoteStatus.SENT.value], "viewed")
        self._publish(EventType.QUOTE_VIEWED, quote)
        self._log_transition(quote, "quote_viewed")
        return quote

    def accept(self, quote_id: str, caller: CallerIdentity | None = None) -> Quote:
        quote = self._require(quote_id)
        if caller is not None and not caller.is_admin:
            inquiry = self._inquiry(quote.inquiry_id)
            if inquiry is None or not caller.owns(inquiry):
                raise PermissionError("Caller does not own this quote's inquiry")

        if quote.status == QuoteStatus.EXPIRED:
            raise QuoteExpiredError("Quote has expired")
        if quote.status not in OPEN_QUOTE_STATUSES:
            raise QuoteTransitionError(f"Invalid transition: {quote.status.value} -> accepted")
        now = self.clock()
        if quote.expires_at is None or now >= to_datetime(quote.expires_at):
            raise QuoteExpiredError("Quote has expired")
        if any(
            row["id"] != quote.id and row.get("status") == QuoteStatus.ACCEPTED.value
            for row in self.quotes.list_for_inquiry(quote.inquiry_id)
        ):
            raise QuoteTransitionError("Another quote for this inquiry is already accepted")

        values = {"status": QuoteStatus.ACCEPTED.value, "accepted_at": now.isoformat()}
        quote = self._transition(quote, values, _OPEN, "accepted")
        self._publish(EventType.QUOTE_ACCEPTED, quote)
        self._log_transition(quote, "quote_accepted", {"accepted_by": caller.user_id if caller else None})
        return quote

    def expire(self, quote_id: str) -> Quote:
        quote = self._require(quote_id)
        if quote.status == QuoteStatus.EXPIRED:
            return quote
        if quote.status not in OPEN_QUOTE_STATUSES:
            raise QuoteTransitionError(f"Invalid transition: {quote.status.value} -> expired")
        if quote.expires_at is None or self.clock() < to_datetime(quote.expires_at):
            raise QuoteTransitionError("Quote is not yet due to expire")
        quote = self._transition(quote, {"status": QuoteStatus.EXPIRED.value}, _OPEN, "expired")
        self._publish(EventType.QUOTE_EXPIRED, quote)
        self._log_transition(quote, "quote_expired")
        return quote

    def expiring_soon(self, lookahead: timedelta, now: datetime | None = None) -> list[Quote]:
        now = now or self.clock()
        rows = self.quotes.list_by_status(
            [QuoteStatus.SENT.value], expires_after=now, expires_until=now + lookahead
        )
        return [self._to_quote(row) for row in rows]

    def expire_overdue(self, now: datetime | None = None) -> list[Quote]:
        """Bulk-expires open quotes whose expiry has passed; rows that moved on are left alone."""
        now = now or self.clock()
        due = self.quotes.list_by_status(_OPEN, expires_until=now)
        rows = self.quotes.update_many_if_status(
            [row["id"] for row in due], {"status": QuoteStatus.EXPIRED.value}, _OPEN
        )
        expired = [self._to_quote(row) for row in rows]
        for quote in expired:
            self._log_transition(quote, "quote_expired")
        if expired:
            logger.info("Expired %d overdue quotes", len(expired))
        return expired

    def inquiry_for(self, quote: Quote) -> Inquiry | None:
        return self._inquiry(quote.inquiry_id)

    def _transition(
        self, quote: Quote, values: dict[str, Any], expected: list[str], target: str
    ) -> Quote:
        row = self.quotes.update_if_status(quote.id, values, expected)
        if row is None:
            current = self._require(quote.id)
            raise QuoteTransitionError(f"Invalid transition: {current.status.value} -> {target}")
        logger.info("Quote %s %s -> %s", quote.id, quote.status.value, target)
        return self._to_quote(row)

    def _require(self, quote_id: str) -> Quote:
        row = self.quotes.get(quote_id)
        if not row:
            raise KeyError("Quote not found")
        return self._to_quote(row)

    def _inquiry(self, inquiry_id: str) -> Inquiry | None:
        row = self.inquiries.get(inquiry_id)
        return Inquiry.model_validate(row) if row else None

    def _publish(self, event_type: EventType, quote: Quote) -> None:
        if self.bus is None:
            return
        try:
            self.bus.publish(
                DomainEvent(
                    event_type=event_type,
                    aggregate_id=quote.id,
                    payload={"inquiry_id": quote.inquiry_id, "status": quote.status.value},
                )
            )
        except Exception:
            logger.exception("Publishing %s for quote %s failed", event_type.value, quote.id)

    def _log_transition(self, quote: Quote, action: str, detail: dict[str, Any] | None = None) -> None:
        if not self.audit_store:
            return
        try:
            self.audit_store.log(
                action=action,
                component="quote_lifecycle",
                subject_reference=quote.id,
                detail={"inquiry_id": quote.inquiry_id, "status": quote.status.value, **(detail or {})},
            )
        except Exception:
            logger.exception("Audit entry %s for quote %s was not written", action, quote.id)

    @staticmethod
    def _to_quote(row: dict[str, Any]) -> Quote:
        return Quote.model_validate(row)


class InquiryStatusProjector:
    """Keeps inquiry status in step with quote events."""

    def __init__(self, inquiries: InquiryRepository | None = None) -> None:
        self.inquiries = inquiries or InquiryRepository()

    def register(self, bus: Any) -> None:
        bus.subscribe(EventType.QUOTE_SENT, self.on_quote_sent)
        bus.subscribe(EventType.QUOTE_ACCEPTED, self.on_quote_accepted)

    def on_quote_sent(self, event: DomainEvent) -> None:
        self._project(event, InquiryStatus.QUOTED)

    def on_quote_accepted(self, event: DomainEvent) -> None:
        self._project(event, InquiryStatus.BOOKED)

    def _project(self, event: DomainEvent, status: InquiryStatus) -> None:
        inquiry_id = event.payload.get("inquiry_id")
        if not inquiry_id:
            return
        try:
            self.inquiries.update_status(inquiry_id, status.value)
        except (KeyError, StoreWriteError) as exc:
            logger.warning("Inquiry %s not moved to %s: %s", inquiry_id, status.value, exc)
