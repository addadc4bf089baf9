from __future__ import annotations

import random
import re

import httpx
import pytest
from pydantic import ValidationError

from tripdesk.audit.lineage import AuditStore
from tripdesk.booking.orchestrator import (
    BookingOrchestrator,
    choose_mode,
    synthetic_booking_reference,
    synthetic_order_id,
    synthetic_pnr,
)
from tripdesk.booking.persistence import BookingPersistence
from tripdesk.booking.pricing import OfferPricer
from tripdesk.bus.in_memory import InMemoryBus
from tripdesk.models.booking import BookingMode, PaymentStatus, SubmissionOutcome
from tripdesk.payments.gateway import PaymentGateway
from tripdesk.provider.amadeus import AmadeusClient
from tripdesk.provider.credentials import CredentialCache

LIVE_ORDER_ID = "eJzTd9f3NjIJdzUGAAp2fAiY"
LIVE_PNR = "QWERTY"

PNR_PATTERN = re.compile(r"^[A-Z]{3}[0-9]{3}$")
ORDER_PATTERN = re.compile(r"^ORDER-\d+-\d{1,3}$")
REFERENCE_PATTERN = re.compile(r"^BOOK-[0-9A-Z]+[0-9A-F]{4}$")


def _orchestrator(provider_settings, amadeus, gateway: PaymentGateway | None = None) -> BookingOrchestrator:
    http = amadeus.client()
    provider = AmadeusClient(provider_settings, CredentialCache(provider_settings, http_client=http), http_client=http)
    return BookingOrchestrator(
        provider=provider,
        pricer=OfferPricer(provider),
        persistence=BookingPersistence(),
        gateway=gateway,
        bus=InMemoryBus(),
        audit_store=AuditStore(),
    )


@pytest.mark.parametrize("outcome", list(SubmissionOutcome))
def test_only_confirmed_submission_is_live(outcome: SubmissionOutcome) -> None:
    expected = BookingMode.LIVE if outcome == SubmissionOutcome.CONFIRMED else BookingMode.SYNTHETIC
    assert choose_mode(outcome) == expected


def test_synthetic_identifiers_have_stable_format() -> None:
    rng = random.Random(7)
    for epoch_ms in range(1_760_000_000_000, 1_760_000_000_200):
        assert PNR_PATTERN.match(synthetic_pnr(rng))
        assert ORDER_PATTERN.match(synthetic_order_id(epoch_ms, rng))
        assert REFERENCE_PATTERN.match(synthetic_booking_reference(epoch_ms, rng))


def test_live_booking_uses_provider_confirmation(provider_settings, amadeus, provider_offer, travelers) -> None:
    orchestrator = _orchestrator(provider_settings, amadeus)

    result = orchestrator.create_booking(
        {"flightOffer": provider_offer, "travelers": travelers, "transactionId": "TXN-1"}, owner_id=None
    )

    assert result.mode == BookingMode.LIVE
    assert result.order_id == LIVE_ORDER_ID
    assert result.confirmation_code == LIVE_PNR
    assert result.booking_reference == LIVE_ORDER_ID
    assert result.status == "CONFIRMED"
    assert result.total_price.amount == "612.40"
    assert result.payment_status == PaymentStatus.PAID

    payload = amadeus.order_payloads[0]["data"]
    assert payload["flightOffers"][0]["repriced"] is True
    assert payload["ticketingAgreement"] == {"option": "DELAY_TO_CANCEL", "delay": "6D"}
    assert payload["travelers"][0]["gender"] == "FEMALE"
    assert payload["travelers"][0]["name"] == {"firstName": "Ada", "lastName": "Lovelace"}
    assert payload["contacts"][0]["purpose"] == "STANDARD"
    assert payload["contacts"][0]["emailAddress"] == "ada@example.com"

    record = orchestrator.persistence.find_by_reference(LIVE_ORDER_ID)
    assert record is not None
    assert record.origin == "JFK"
    assert record.destination == "LHR"
    assert record.departure_date == "2026-05-10"
    assert record.flight_number == "BA178"
    assert record.details["mode"] == "live"

    events = orchestrator.bus.topics["booking.lifecycle"]
    assert [event.event_type.value for event in events] == ["booking_confirmed"]
    history = orchestrator.audit_store.get_history(LIVE_ORDER_ID)
    assert history[0].action == "booking_created"


def test_demo_offer_never_reaches_provider(provider_settings, amadeus, provider_offer, travelers) -> None:
    orchestrator = _orchestrator(provider_settings, amadeus)

    result = orchestrator.create_booking(
        {"flightOffer": {**provider_offer, "id": "test-flight"}, "travelers": travelers}, owner_id=None
    )

    assert result.mode == BookingMode.SYNTHETIC
    assert PNR_PATTERN.match(result.confirmation_code)
    assert amadeus.requests == []


def test_ui_shaped_offer_is_booked_synthetically(provider_settings, amadeus, ui_offer, travelers) -> None:
    orchestrator = _orchestrator(provider_settings, amadeus)

    result = orchestrator.create_booking({"flightOffer": ui_offer, "travelers": travelers}, owner_id=None)

    assert result.mode == BookingMode.SYNTHETIC
    assert result.total_price.amount == "189.99"
    record = orchestrator.persistence.find_by_reference(result.booking_reference)
    assert record.origin == "LAX"
    assert record.destination == "SFO"
    assert record.airline == "UA"
    assert record.details["cabin_class"] == "ECONOMY"


@pytest.mark.parametrize(
    "scenario",
    [
        "malformed",
        "no_named_traveler",
        "provider_error",
        "provider_timeout",
        "rejected_reply",
        "list_reply",
        "list_data",
        "records_not_a_list",
    ],
)
def test_every_failure_converges_on_synthetic_booking(
    scenario: str, provider_settings, amadeus, provider_offer, ui_offer, travelers
) -> None:
    offer = provider_offer
    people = travelers
    if scenario == "malformed":
        offer = ui_offer
    elif scenario == "no_named_traveler":
        people = [{"email": "nobody@example.com"}]
    elif scenario == "provider_error":
        amadeus.order_status = 400
    elif scenario == "provider_timeout":
        amadeus.order_error = httpx.ReadTimeout("timed out")
    elif scenario == "rejected_reply":
        amadeus.order_body = {"data": {"id": "ORDER-WITHOUT-PNR"}}
    elif scenario == "list_reply":
        amadeus.order_body = [{"unexpected": True}]
    elif scenario == "list_data":
        amadeus.order_body = {"data": [{"id": "ORDER-1"}]}
    elif scenario == "records_not_a_list":
        amadeus.order_body = {"data": {"id": "ORDER-1", "associatedRecords": "QWERTY"}}

    orchestrator = _orchestrator(provider_settings, amadeus)
    result = orchestrator.create_booking({"flightOffer": offer, "travelers": people}, owner_id=None)

    assert result.mode == BookingMode.SYNTHETIC
    assert result.status == "CONFIRMED"
    assert result.saved_to_store is True
    assert PNR_PATTERN.match(result.confirmation_code)
    assert ORDER_PATTERN.match(result.order_id)
    assert REFERENCE_PATTERN.match(result.booking_reference)
    record = orchestrator.persistence.find_by_reference(result.booking_reference)
    assert record.details["mode"] == "synthetic"
    assert record.details["pnr"] == result.confirmation_code


def test_pricing_failure_submits_original_offer(provider_settings, amadeus, provider_offer, travelers) -> None:
    amadeus.pricing_status = 400
    orchestrator = _orchestrator(provider_settings, amadeus)

    result = orchestrator.create_booking({"flightOffer": provider_offer, "travelers": travelers}, owner_id=None)

    assert result.mode == BookingMode.LIVE
    assert amadeus.order_payloads[0]["data"]["flightOffers"][0] == provider_offer


def test_request_total_takes_precedence(provider_settings, amadeus, provider_offer, travelers) -> None:
    orchestrator = _orchestrator(provider_settings, amadeus)

    result = orchestrator.create_booking(
        {"flightOffer": provider_offer, "travelers": travelers, "totalAmount": "700.10", "currency": "EUR"},
        owner_id=None,
    )

    assert result.total_price.amount == "700.10"
    assert result.total_price.currency == "EUR"


def test_idempotency_key_replays_existing_booking(provider_settings, amadeus, provider_offer, travelers) -> None:
    orchestrator = _orchestrator(provider_settings, amadeus)
    request = {"flightOffer": provider_offer, "travelers": travelers, "idempotencyKey": "checkout-91"}

    first = orchestrator.create_booking(request, owner_id=None)
    second = orchestrator.create_booking(request, owner_id=None)

    assert first.replayed is False
    assert second.replayed is True
    assert second.booking_reference == first.booking_reference
    assert second.database_id == first.database_id
    assert len(amadeus.order_payloads) == 1


@pytest.mark.parametrize("gateway_result,expected", [("SUCCESS", PaymentStatus.PAID), ("FAILURE", PaymentStatus.PENDING)])
def test_gateway_order_decides_payment_status(
    gateway_result: str,
    expected: PaymentStatus,
    provider_settings,
    gateway_settings,
    amadeus,
    fake_gateway,
    provider_offer,
    travelers,
) -> None:
    fake_gateway.order_result = gateway_result
    gateway = PaymentGateway(gateway_settings, http_client=fake_gateway.client())
    orchestrator = _orchestrator(provider_settings, amadeus, gateway=gateway)

    result = orchestrator.create_booking(
        {"flightOffer": provider_offer, "travelers": travelers, "paymentOrderId": "PAY-77"}, owner_id=None
    )

    assert result.payment_status == expected
    assert fake_gateway.requests[0][0] == "GET"
    assert fake_gateway.requests[0][1].endswith("/merchant/TESTARC05511704/order/PAY-77")


def test_unreachable_gateway_leaves_payment_pending(
    provider_settings, gateway_settings, amadeus, fake_gateway, provider_offer, travelers
) -> None:
    fake_gateway.unreachable = True
    gateway = PaymentGateway(gateway_settings, http_client=fake_gateway.client())
    orchestrator = _orchestrator(provider_settings, amadeus, gateway=gateway)

    result = orchestrator.create_booking(
        {"flightOffer": provider_offer, "travelers": travelers, "paymentOrderId": "PAY-78"}, owner_id=None
    )

    assert result.payment_status == PaymentStatus.PENDING
    assert result.mode == BookingMode.LIVE


def test_malformed_request_body_is_rejected(provider_settings, amadeus) -> None:
    orchestrator = _orchestrator(provider_settings, amadeus)

    with pytest.raises(ValidationError):
        orchestrator.create_booking({"travelers": []}, owner_id=None)


@pytest.mark.parametrize("body", [[{"flightOffers": []}], {"data": [{"id": "1"}]}, {"data": {"flightOffers": "none"}}])
def test_unexpected_pricing_reply_submits_original_offer(
    body, provider_settings, amadeus, provider_offer, travelers
) -> None:
    amadeus.pricing_body = body
    orchestrator = _orchestrator(provider_settings, amadeus)

    result = orchestrator.create_booking({"flightOffer": provider_offer, "travelers": travelers}, owner_id=None)

    assert result.mode == BookingMode.LIVE
    assert amadeus.order_payloads[0]["data"]["flightOffers"][0] == provider_offer


def test_booking_is_returned_when_audit_store_is_down(
    monkeypatch, provider_settings, amadeus, provider_offer, travelers
) -> None:
    def broken_insert(self, row):
        raise RuntimeError("audit_log unavailable")

    monkeypatch.setattr("tripdesk.db.repositories.AuditRepository.insert", broken_insert)
    orchestrator = _orchestrator(provider_settings, amadeus)
    request = {"flightOffer": provider_offer, "travelers": travelers, "idempotencyKey": "checkout-92"}

    result = orchestrator.create_booking(request, owner_id=None)

    assert result.booking_reference == LIVE_ORDER_ID
    assert orchestrator.persistence.find_by_reference(LIVE_ORDER_ID) is not None
    events = orchestrator.bus.topics["booking.lifecycle"]
    assert [event.event_type.value for event in events] == ["booking_confirmed"]

    retry = orchestrator.create_booking(request, owner_id=None)
    assert retry.replayed is True
    assert len(amadeus.order_payloads) == 1


def test_generated_transaction_id_is_flagged(provider_settings, amadeus, provider_offer, travelers) -> None:
    orchestrator = _orchestrator(provider_settings, amadeus)

    generated = orchestrator.create_booking({"flightOffer": provider_offer, "travelers": travelers}, owner_id=None)
    record = orchestrator.persistence.find_by_reference(generated.booking_reference)

    assert record.transaction_id.startswith("TXN-")
    assert record.details["transaction_id_generated"] is True
    assert record.gateway_transaction_id is None


def test_supplied_transaction_id_is_kept_for_the_gateway(provider_settings, amadeus, ui_offer, travelers) -> None:
    orchestrator = _orchestrator(provider_settings, amadeus)

    supplied = orchestrator.create_booking(
        {"flightOffer": ui_offer, "travelers": travelers, "transactionId": "8123456"}, owner_id=None
    )
    record = orchestrator.persistence.find_by_reference(supplied.booking_reference)

    assert record.transaction_id == "8123456"
    assert record.gateway_transaction_id == "8123456"
