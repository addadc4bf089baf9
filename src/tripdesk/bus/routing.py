from __future__ import annotations

from tripdesk.models.events import EventType


EVENT_TOPIC_MAP = {
    EventType.QUOTE_SENT: "quote.lifecycle",
    EventType.QUOTE_VIEWED: "quote.lifecycle",
    EventType.QUOTE_ACCEPTED: "quote.lifecycle",
    EventType.QUOTE_EXPIRING: "quote.notifications",
    EventType.QUOTE_EXPIRED: "quote.notifications",
    EventType.BOOKING_CONFIRMED: "booking.lifecycle",
    EventType.BOOKING_CANCELLED: "booking.lifecycle",
}
