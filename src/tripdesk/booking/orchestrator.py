from __future__ import annotations

import logging
import random
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

from tripdesk.audit.lineage import AuditStore
from tripdesk.booking.persistence import BookingPersistence
from tripdesk.booking.pricing import OfferPricer
from tripdesk.errors import OfferInvalidError, PaymentGatewayError, ProviderError
from tripdesk.models.booking import (
    BookingFields,
    BookingMode,
    BookingRecord,
    BookingRequest,
    BookingResult,
    ContactInput,
    LiveConfirmation,
    PaymentStatus,
    SubmissionOutcome,
    SyntheticConfirmation,
    TotalPrice,
    TravelerInput,
)
from tripdesk.models.events import DomainEvent, EventType
from tripdesk.payments.gateway import PaymentGateway
from tripdesk.provider.amadeus import AmadeusClient

logger = logging.getLogger(__name__)

DEMO_OFFER_ID = "test-flight"
DEFAULT_CURRENCY = "USD"
DEFAULT_DATE_OF_BIRTH = "1990-01-01"
DEFAULT_EMAIL = "guest@jetsetters.com"
_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_LETTERS = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def choose_mode(outcome: SubmissionOutcome) -> BookingMode:
    if outcome == SubmissionOutcome.CONFIRMED:
        return BookingMode.LIVE
    return BookingMode.SYNTHETIC


def validate_offer_shape(offer: dict[str, Any]) -> None:
    if offer.get("id") == DEMO_OFFER_ID:
        raise OfferInvalidError("Demo offer cannot be submitted to the provider")
    if not isinstance(offer.get("itineraries"), list) or not offer["itineraries"]:
        raise OfferInvalidError("Offer has no itineraries")
    if not offer.get("source"):
        raise OfferInvalidError("Offer has no source")
    if not offer.get("travelerPricings"):
        raise OfferInvalidError("Offer has no travelerPricings")
    if not (offer.get("price") or {}).get("total"):
        raise OfferInvalidError("Offer has no price total")


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def synthetic_pnr(rng: random.Random) -> str:
    letters = "".join(rng.choice(_LETTERS) for _ in range(3))
    return f"{letters}{rng.randrange(1000):03d}"


def synthetic_order_id(epoch_ms: int, rng: random.Random) -> str:
    return f"ORDER-{epoch_ms}-{rng.randrange(1000)}"


def synthetic_booking_reference(epoch_ms: int, rng: random.Random) -> str:
    return f"BOOK-{to_base36(epoch_ms)}{rng.randrange(16 ** 4):04X}"


def map_travelers(travelers: list[TravelerInput], contact: ContactInput | None) -> list[dict[str, Any]]:
    mapped = []
    for index, traveler in enumerate(travelers):
        entry: dict[str, Any] = {
            "id": traveler.id or str(index + 1),
            "dateOfBirth": traveler.date_of_birth or DEFAULT_DATE_OF_BIRTH,
            "gender": "MALE" if (traveler.gender or "MALE").upper() == "MALE" else "FEMALE",
            "name": {
                "firstName": traveler.first_name or "Guest",
                "lastName": traveler.last_name or "User",
            },
        }
        if contact is not None:
            entry["contact"] = {
                "emailAddress": contact.email or travelers[0].email,
                "phones": [
                    {
                        "deviceType": "MOBILE",
                        "countryCallingCode": contact.country_code or "1",
                        "number": contact.phone_number or "1234567890",
                    }
                ],
            }
        document_number = traveler.passport_number or traveler.document_number
        if document_number:
            entry["documents"] = [
                {
                    "documentType": traveler.document_type or "PASSPORT",
                    "number": document_number,
                    "expiryDate": traveler.passport_expiry or "",
                    "issuanceCountry": traveler.issuance_country or traveler.nationality or "",
                    "validityCountry": traveler.issuance_country or traveler.nationality or "",
                    "nationality": traveler.nationality or "",
                    "holder": True,
                }
            ]
        mapped.append(entry)
    return mapped


def build_order_payload(
    offer: dict[str, Any],
    provider_travelers: list[dict[str, Any]],
    request: BookingRequest,
) -> dict[str, Any]:
    lead = provider_travelers[0] if provider_travelers else {}
    lead_name = lead.get("name") or {}
    phones = (lead.get("contact") or {}).get("phones") or [
        {"deviceType": "MOBILE", "countryCallingCode": "1", "number": "1234567890"}
    ]
    email = (
        (request.contact_info.email if request.contact_info else None)
        or (request.travelers[0].email if request.travelers else None)
        or DEFAULT_EMAIL
    )
    return {
        "data": {
            "type": "flight-order",
            "flightOffers": [offer],
            "travelers": provider_travelers,
            "ticketingAgreement": {"option": "DELAY_TO_CANCEL", "delay": "6D"},
            "contacts": [
                {
                    "addresseeName": {
                        "firstName": lead_name.get("firstName") or "Guest",
                        "lastName": lead_name.get("lastName") or "User",
                    },
                    "purpose": "STANDARD",
                    "phones": phones,
                    "emailAddress": email,
                }
            ],
        }
    }


def _split_timestamp(value: str | None) -> tuple[str | None, str | None]:
    if not value:
        return None, None
    date_part, _, time_part = value.partition("T")
    return date_part or None, time_part[:5] or None


def extract_flight_details(offer: dict[str, Any]) -> dict[str, Any]:
    """Reads segment data from provider-shaped offers first, UI-shaped offers second."""
    itineraries = offer.get("itineraries")
    if isinstance(itineraries, list) and itineraries and (itineraries[0] or {}).get("segments"):
        segments = itineraries[0]["segments"]
        first, last = segments[0], segments[-1]
        departure_date, departure_time = _split_timestamp((first.get("departure") or {}).get("at"))
        _, arrival_time = _split_timestamp((last.get("arrival") or {}).get("at"))
        carrier = first.get("carrierCode")
        fare_details = ((offer.get("travelerPricings") or [{}])[0] or {}).get("fareDetailsBySegment") or [{}]
        return {
            "origin": (first.get("departure") or {}).get("iataCode"),
            "destination": (last.get("arrival") or {}).get("iataCode"),
            "departure_date": departure_date,
            "departure_time": departure_time,
            "arrival_time": arrival_time,
            "airline": carrier,
            "airline_name": (offer.get("validatingAirlineCodes") or [carrier])[0],
            "flight_number": f"{carrier}{first['number']}" if first.get("number") else None,
            "duration": itineraries[0].get("duration"),
            "cabin_class": fare_details[0].get("cabin") or "ECONOMY",
        }

    segments = offer.get("segments") or [{}]
    first, last = segments[0] or {}, segments[-1] or {}
    departure = first.get("departure") or {}
    arrival = last.get("arrival") or {}
    airline = first.get("airline") or offer.get("airline") or {}
    return {
        "origin": departure.get("airport") or offer.get("origin") or (offer.get("departure") or {}).get("airport"),
        "destination": arrival.get("airport")
        or offer.get("destination")
        or (offer.get("arrival") or {}).get("airport"),
        "departure_date": departure.get("date") or offer.get("departureDate"),
        "departure_time": departure.get("time") or offer.get("departureTime"),
        "arrival_time": arrival.get("time") or offer.get("arrivalTime"),
        "airline": airline.get("code"),
        "airline_name": airline.get("name"),
        "flight_number": offer.get("flightNumber"),
        "duration": offer.get("duration"),
        "cabin_class": offer.get("cabinClass") or offer.get("travelClass") or "ECONOMY",
    }


def _as_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def resolve_amount(request: BookingRequest, offer: dict[str, Any]) -> tuple[Decimal, str]:
    price = offer.get("price") or {}
    total_price = offer.get("totalPrice") or {}
    candidates = [request.total_amount, price.get("total"), price.get("amount"), total_price.get("amount")]
    amount = next((value for value in map(_as_decimal, candidates) if value is not None), Decimal("0"))
    currency = request.currency or price.get("currency") or total_price.get("currency") or DEFAULT_CURRENCY
    return amount, currency


def passenger_details(travelers: list[TravelerInput]) -> list[dict[str, Any]]:
    return [
        {
            "id": traveler.id or str(index + 1),
            "firstName": traveler.first_name or "Guest",
            "lastName": traveler.last_name or "User",
            "dateOfBirth": traveler.date_of_birth,
            "gender": traveler.gender,
        }
        for index, traveler in enumerate(travelers)
    ]


class BookingOrchestrator:
    def __init__(
        self,
        provider: AmadeusClient,
        pricer: OfferPricer,
        persistence: BookingPersistence,
        gateway: PaymentGateway | None = None,
        bus: Any | None = None,
        audit_store: AuditStore | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.provider = provider
        self.pricer = pricer
        self.persistence = persistence
        self.gateway = gateway
        self.bus = bus
        self.audit_store = audit_store
        self._rng = rng or random.Random()
        self._clock = clock

    def create_booking(self, request: BookingRequest | dict[str, Any], owner_id: str | None) -> BookingResult:
        if not isinstance(request, BookingRequest):
            request = BookingRequest.model_validate(request)

        if request.idempotency_key:
            existing = self.persistence.find_by_idempotency_key(request.idempotency_key)
            if existing is not None:
                logger.info(
                    "Replaying booking %s for idempotency key %s",
                    existing.booking_reference,
                    request.idempotency_key,
                )
                return self._to_result(existing, replayed=True)

        payment_status = self._payment_status(request)
        outcome, submitted_offer, confirmation = self._submit(request)
        mode = choose_mode(outcome)
        epoch_ms = int(self._clock().timestamp() * 1000)
        if mode == BookingMode.SYNTHETIC:
            confirmation = SyntheticConfirmation(
                order_id=synthetic_order_id(epoch_ms, self._rng),
                pnr=synthetic_pnr(self._rng),
            )
            reference = synthetic_booking_reference(epoch_ms, self._rng)
            logger.warning(
                "Booking falls back to synthetic confirmation (%s): order=%s pnr=%s",
                outcome.value,
                confirmation.order_id,
                confirmation.pnr,
            )
        else:
            reference = confirmation.order_id
            logger.info("Provider confirmed order %s pnr=%s", confirmation.order_id, confirmation.pnr)

        amount, currency = resolve_amount(request, submitted_offer)
        fields = BookingFields(
            booking_reference=reference,
            confirmation=confirmation,
            payment_status=payment_status,
            total_amount=amount,
            currency=currency,
            travelers=passenger_details(request.travelers),
            transaction_id=request.transaction_id or f"TXN-{epoch_ms}",
            transaction_id_generated=not request.transaction_id,
            payment_order_id=request.payment_order_id,
            idempotency_key=request.idempotency_key,
            flight_offer=submitted_offer,
            fare_breakdown=request.fare_breakdown,
            **extract_flight_details(submitted_offer),
        )
        record = self.persistence.save(fields, owner_id)
        self._announce(record, outcome)
        return self._to_result(record)

    def _submit(
        self, request: BookingRequest
    ) -> tuple[SubmissionOutcome, dict[str, Any], LiveConfirmation | None]:
        offer = request.flight_offer
        try:
            validate_offer_shape(offer)
        except OfferInvalidError as exc:
            logger.warning("Offer is not submittable: %s", exc)
            return SubmissionOutcome.MALFORMED_OFFER, offer, None

        priced = self.pricer.price(offer).offer
        if not any(traveler.has_name for traveler in request.travelers):
            logger.warning("Booking request has no named traveler")
            return SubmissionOutcome.PRECONDITIONS_UNMET, priced, None
        if not (priced.get("price") or {}).get("total"):
            logger.warning("Priced offer has no price total")
            return SubmissionOutcome.PRECONDITIONS_UNMET, priced, None

        payload = build_order_payload(priced, map_travelers(request.travelers, request.contact_info), request)
        try:
            response = self.provider.create_order(payload)
        except ProviderError as exc:
            logger.warning("Provider order submission failed (status=%s): %s", exc.status_code, exc)
            return SubmissionOutcome.SUBMISSION_FAILED, priced, None

        data = response.get("data") if isinstance(response, dict) else None
        if not isinstance(data, dict):
            data = {}
        records = data.get("associatedRecords")
        first = records[0] if isinstance(records, list) and records else None
        order_id = data.get("id")
        pnr = first.get("reference") if isinstance(first, dict) else None
        if not isinstance(order_id, str) or not isinstance(pnr, str) or not order_id or not pnr:
            logger.warning("Provider replied without order id and confirmation reference")
            logger.debug("Provider order reply: %s", response)
            return SubmissionOutcome.SUBMISSION_REJECTED, priced, None
        return SubmissionOutcome.CONFIRMED, priced, LiveConfirmation(order_id=order_id, pnr=pnr)

    def _payment_status(self, request: BookingRequest) -> PaymentStatus:
        if not request.payment_order_id:
            return PaymentStatus.PAID
        if self.gateway is None:
            logger.warning("No payment gateway configured to verify order %s", request.payment_order_id)
            return PaymentStatus.PENDING
        try:
            result = self.gateway.verify_order(request.payment_order_id)
        except PaymentGatewayError as exc:
            logger.warning("Payment verification for %s failed: %s", request.payment_order_id, exc)
            return PaymentStatus.PENDING
        return PaymentStatus.PAID if result.success else PaymentStatus.PENDING

    def _announce(self, record: BookingRecord, outcome: SubmissionOutcome) -> None:
        detail = {
            "mode": record.mode.value,
            "outcome": outcome.value,
            "order_id": record.confirmation.order_id,
            "payment_status": record.payment_status.value,
            "owner_link": record.details.get("owner_link", "user_id"),
        }
        if self.bus is not None:
            try:
                self.bus.publish(
                    DomainEvent(
                        event_type=EventType.BOOKING_CONFIRMED,
                        aggregate_id=record.booking_reference,
                        payload=detail,
                    )
                )
            except Exception:
                logger.exception("Publishing booking_confirmed for %s failed", record.booking_reference)
        if not self.audit_store:
            return
        try:
            self.audit_store.log(
                action="booking_created",
                component="booking_orchestrator",
                subject_reference=record.booking_reference,
                detail=detail,
            )
        except Exception:
            logger.exception("Audit entry booking_created for %s was not written", record.booking_reference)

    @staticmethod
    def _to_result(record: BookingRecord, replayed: bool = False) -> BookingResult:
        return BookingResult(
            order_id=record.confirmation.order_id,
            confirmation_code=record.confirmation.pnr,
            booking_reference=record.booking_reference,
            mode=record.mode,
            saved_to_store=True,
            payment_status=record.payment_status,
            total_price=TotalPrice(amount=f"{record.total_amount:.2f}", currency=record.currency),
            travelers=record.travelers,
            database_id=record.id,
            created_at=record.created_at,
            replayed=replayed,
        )
