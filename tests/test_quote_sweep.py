from __future__ import annotations

from tripdesk.bus.in_memory import InMemoryBus
from tripdesk.db.repositories import InquiryRepository, QuoteRepository
from tripdesk.models.events import DomainEvent
from tripdesk.models.quotes import CallerIdentity, QuoteStatus
from tripdesk.quotes.lifecycle import QuoteLifecycle
from tripdesk.quotes.sweep import QuoteExpirationSweep

ADMIN = CallerIdentity(user_id="ops-1", role="admin")


class FailingBus:
    def __init__(self) -> None:
        self.attempts = 0

    def publish(self, event: DomainEvent) -> None:
        self.attempts += 1
        raise RuntimeError("mail relay down")


def _seed(lifecycle: QuoteLifecycle, clock) -> dict[str, str]:
    inquiry_id = InquiryRepository().insert(
        {"customer_email": "grace@example.com", "customer_name": "Grace Hopper", "status": "pending"}
    )["id"]

    overdue_sent = lifecycle.create(inquiry_id, "300.00", validity_days=1)
    overdue_viewed = lifecycle.create(inquiry_id, "310.00", validity_days=1)
    accepted = lifecycle.create(inquiry_id, "320.00", validity_days=1)
    for quote in (overdue_sent, overdue_viewed, accepted):
        lifecycle.send(quote.id)
    lifecycle.mark_viewed(overdue_viewed.id)
    lifecycle.accept(accepted.id, ADMIN)

    clock.advance(days=2)
    expiring = lifecycle.create(inquiry_id, "330.00", validity_days=2, title="Lisbon week")
    later = lifecycle.create(inquiry_id, "340.00", validity_days=10)
    draft = lifecycle.create(inquiry_id, "350.00")
    lifecycle.send(expiring.id)
    lifecycle.send(later.id)
    return {
        "overdue_sent": overdue_sent.id,
        "overdue_viewed": overdue_viewed.id,
        "accepted": accepted.id,
        "expiring": expiring.id,
        "later": later.id,
        "draft": draft.id,
    }


def test_sweep_warns_and_expires(clock, quote_settings) -> None:
    lifecycle = QuoteLifecycle(settings=quote_settings, clock=clock)
    ids = _seed(lifecycle, clock)
    bus = InMemoryBus()

    result = QuoteExpirationSweep(lifecycle, bus).run()

    assert result.to_dict() == {"expiring_soon": 1, "expired": 2, "notification_failures": 0}
    statuses = {name: lifecycle.get(quote_id).status for name, quote_id in ids.items()}
    assert statuses == {
        "overdue_sent": QuoteStatus.EXPIRED,
        "overdue_viewed": QuoteStatus.EXPIRED,
        "accepted": QuoteStatus.ACCEPTED,
        "expiring": QuoteStatus.SENT,
        "later": QuoteStatus.SENT,
        "draft": QuoteStatus.DRAFT,
    }

    events = bus.topics["quote.notifications"]
    assert sorted(event.event_type.value for event in events) == ["quote_expired", "quote_expired", "quote_expiring"]
    warning = next(event for event in events if event.event_type.value == "quote_expiring")
    assert warning.aggregate_id == ids["expiring"]
    assert warning.payload["customer_email"] == "grace@example.com"
    assert warning.payload["customer_name"] == "Grace Hopper"
    assert warning.payload["title"] == "Lisbon week"


def test_second_sweep_expires_nothing_new(clock, quote_settings) -> None:
    lifecycle = QuoteLifecycle(settings=quote_settings, clock=clock)
    _seed(lifecycle, clock)
    sweep = QuoteExpirationSweep(lifecycle, InMemoryBus())

    sweep.run()
    second = sweep.run()

    assert second.expired == 0
    assert second.expiring_soon == 1


def test_notification_failures_are_counted_not_raised(clock, quote_settings) -> None:
    lifecycle = QuoteLifecycle(settings=quote_settings, clock=clock)
    ids = _seed(lifecycle, clock)
    bus = FailingBus()

    result = QuoteExpirationSweep(lifecycle, bus).run()

    assert result.notification_failures == 3
    assert bus.attempts == 3
    assert result.expired == 2
    assert lifecycle.get(ids["overdue_sent"]).status == QuoteStatus.EXPIRED


def test_bulk_expiry_only_touches_open_quotes(clock, quote_settings) -> None:
    lifecycle = QuoteLifecycle(settings=quote_settings, clock=clock)
    ids = _seed(lifecycle, clock)

    rows = QuoteRepository().update_many_if_status(
        [ids["overdue_sent"], ids["accepted"], ids["draft"]],
        {"status": QuoteStatus.EXPIRED.value},
        [QuoteStatus.SENT.value, QuoteStatus.VIEWED.value],
    )

    assert [row["id"] for row in rows] == [ids["overdue_sent"]]
    assert lifecycle.get(ids["accepted"]).status == QuoteStatus.ACCEPTED
    assert lifecycle.get(ids["draft"]).status == QuoteStatus.DRAFT
