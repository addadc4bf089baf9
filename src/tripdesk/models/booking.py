from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class BookingMode(str, Enum):
    LIVE = "live"
    SYNTHETIC = "synthetic"


class SubmissionOutcome(str, Enum):
    MALFORMED_OFFER = "malformed_offer"
    PRECONDITIONS_UNMET = "preconditions_unmet"
    SUBMISSION_FAILED = "submission_failed"
    SUBMISSION_REJECTED = "submission_rejected"
    CONFIRMED = "confirmed"


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PAID = "paid"
    PENDING = "pending"
    AUTHORIZED = "authorized"
    REFUNDED = "refunded"
    VOIDED = "voided"
    REFUND_PENDING = "refund_pending"


class LiveConfirmation(BaseModel):
    mode: Literal["live"] = "live"
    order_id: str
    pnr: str


class SyntheticConfirmation(BaseModel):
    mode: Literal["synthetic"] = "synthetic"
    order_id: str
    pnr: str


Confirmation = Annotated[Union[LiveConfirmation, SyntheticConfirmation], Field(discriminator="mode")]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TravelerInput(_CamelModel):
    id: str | None = None
    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    date_of_birth: str | None = Field(default=None, alias="dateOfBirth")
    gender: str | None = None
    email: str | None = None
    document_type: str | None = Field(default=None, alias="documentType")
    passport_number: str | None = Field(default=None, alias="passportNumber")
    document_number: str | None = Field(default=None, alias="documentNumber")
    passport_expiry: str | None = Field(default=None, alias="passportExpiry")
    issuance_country: str | None = Field(default=None, alias="issuanceCountry")
    nationality: str | None = None

    @property
    def has_name(self) -> bool:
        return bool((self.first_name or "").strip() or (self.last_name or "").strip())


class ContactInput(_CamelModel):
    email: str | None = None
    country_code: str | None = Field(default=None, alias="countryCode")
    phone_number: str | None = Field(default=None, alias="phoneNumber")


class BookingRequest(_CamelModel):
    flight_offer: dict[str, Any] = Field(alias="flightOffer")
    travelers: list[TravelerInput] = Field(default_factory=list)
    contact_info: ContactInput | None = Field(default=None, alias="contactInfo")
    total_amount: Decimal | None = Field(default=None, alias="totalAmount")
    currency: str | None = None
    transaction_id: str | None = Field(default=None, alias="transactionId")
    payment_order_id: str | None = Field(default=None, alias="paymentOrderId")
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey")
    fare_breakdown: dict[str, Any] | None = Field(default=None, alias="fareBreakdown")


class PricedOffer(BaseModel):
    offer: dict[str, Any]
    repriced: bool = False


class BookingFields(BaseModel):
    """Normalized booking data handed to persistence by both booking modes."""

    booking_reference: str
    confirmation: Confirmation
    payment_status: PaymentStatus
    total_amount: Decimal
    currency: str = "USD"
    travelers: list[dict[str, Any]] = Field(default_factory=list)
    origin: str | None = None
    destination: str | None = None
    departure_date: str | None = None
    departure_time: str | None = None
    arrival_time: str | None = None
    airline: str | None = None
    airline_name: str | None = None
    flight_number: str | None = None
    duration: str | None = None
    cabin_class: str | None = None
    transaction_id: str | None = None
    transaction_id_generated: bool = False
    payment_order_id: str | None = None
    idempotency_key: str | None = None
    flight_offer: dict[str, Any] = Field(default_factory=dict)
    fare_breakdown: dict[str, Any] | None = None

    @property
    def mode(self) -> BookingMode:
        return BookingMode(self.confirmation.mode)


class BookingRecord(BaseModel):
    id: str
    booking_reference: str
    confirmation: Confirmation
    status: BookingStatus
    payment_status: PaymentStatus
    total_amount: Decimal
    currency: str
    travelers: list[dict[str, Any]] = Field(default_factory=list)
    origin: str | None = None
    destination: str | None = None
    departure_date: str | None = None
    departure_time: str | None = None
    arrival_time: str | None = None
    airline: str | None = None
    flight_number: str | None = None
    transaction_id: str | None = None
    transaction_id_generated: bool = False
    payment_order_id: str | None = None
    owner_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def mode(self) -> BookingMode:
        return BookingMode(self.confirmation.mode)

    @property
    def gateway_transaction_id(self) -> str | None:
        """The payment transaction id as the gateway knows it, if the caller supplied one."""
        if self.transaction_id_generated:
            return None
        return self.transaction_id or None


class TotalPrice(BaseModel):
    amount: str
    currency: str


class BookingResult(_CamelModel):
    order_id: str = Field(serialization_alias="orderId")
    confirmation_code: str = Field(serialization_alias="confirmationCode")
    status: Literal["CONFIRMED"] = "CONFIRMED"
    booking_reference: str = Field(serialization_alias="bookingReference")
    mode: BookingMode
    saved_to_store: bool = Field(serialization_alias="savedToStore")
    payment_status: PaymentStatus = Field(serialization_alias="paymentStatus")
    total_price: TotalPrice = Field(serialization_alias="totalPrice")
    travelers: list[dict[str, Any]] = Field(default_factory=list)
    database_id: str = Field(serialization_alias="databaseId")
    created_at: str | None = Field(default=None, serialization_alias="createdAt")
    replayed: bool = False


class CancellationMode(str, Enum):
    ORCHESTRATED = "orchestrated"
    FALLBACK = "fallback"
    ALREADY_CANCELLED = "already_cancelled"


class CancellationResult(BaseModel):
    success: bool
    mode: CancellationMode
    cancellation: dict[str, Any] = Field(default_factory=dict)
    refund: dict[str, Any] | None = None
    booking: BookingRecord
    message: str
    refund_pending_manual: bool = False
