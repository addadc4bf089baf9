from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from tripdesk.db.repositories import BookingRepository, StoreErrorKind, StoreWriteError, classify_store_error
from tripdesk.errors import PersistenceError
from tripdesk.models.booking import (
    BookingFields,
    BookingRecord,
    BookingStatus,
    LiveConfirmation,
    PaymentStatus,
    SyntheticConfirmation,
)

logger = logging.getLogger(__name__)


class InsertWithOwner:
    name = "with_owner"

    def apply(self, row: dict[str, Any], owner_id: str | None) -> dict[str, Any]:
        return {**row, "user_id": owner_id}


class InsertWithoutOwner:
    """Keeps the owner only inside the details blob."""

    name = "without_owner"

    def apply(self, row: dict[str, Any], owner_id: str | None) -> dict[str, Any]:
        details = {**row["booking_details"], "original_user_id": owner_id, "owner_link": "details_only"}
        return {**row, "user_id": None, "booking_details": details}


class BookingPersistence:
    def __init__(self, repository: BookingRepository | None = None) -> None:
        self.repository = repository or BookingRepository()

    def save(self, fields: BookingFields, owner_id: str | None) -> BookingRecord:
        row = self._to_row(fields, owner_id)
        try:
            stored = self.repository.insert(InsertWithOwner().apply(row, owner_id))
        except StoreWriteError as exc:
            if owner_id is None or classify_store_error(exc) != StoreErrorKind.OWNER_REFERENCE:
                raise PersistenceError(f"Booking {fields.booking_reference} could not be saved: {exc}") from exc
            logger.warning(
                "Owner reference rejected for booking %s (code=%s), saving without owner link",
                fields.booking_reference,
                exc.code,
            )
            try:
                stored = self.repository.insert(InsertWithoutOwner().apply(row, owner_id))
            except StoreWriteError as retry_exc:
                raise PersistenceError(
                    f"Booking {fields.booking_reference} could not be saved without owner: {retry_exc}"
                ) from retry_exc
        logger.info("Saved booking %s (%s)", fields.booking_reference, fields.mode.value)
        return self._to_record(stored)

    def find_by_reference(self, reference: str) -> BookingRecord | None:
        row = self.repository.find_by_reference(reference)
        return self._to_record(row) if row else None

    def find_by_idempotency_key(self, key: str) -> BookingRecord | None:
        row = self.repository.find_by_idempotency_key(key)
        return self._to_record(row) if row else None

    def list_for_owner(self, owner_id: str, active_only: bool = False) -> list[BookingRecord]:
        return [self._to_record(row) for row in self.repository.list_for_owner(owner_id, active_only)]

    def mark_cancelled(
        self,
        record: BookingRecord,
        payment_status: PaymentStatus,
        cancellation: dict[str, Any],
    ) -> BookingRecord:
        details = {**record.details, "cancellation": cancellation}
        try:
            row = self.repository.update(
                record.id,
                {
                    "status": BookingStatus.CANCELLED.value,
                    "payment_status": payment_status.value,
                    "booking_details": details,
                },
            )
        except StoreWriteError as exc:
            raise PersistenceError(f"Booking {record.booking_reference} could not be cancelled: {exc}") from exc
        return self._to_record(row)

    @staticmethod
    def _to_row(fields: BookingFields, owner_id: str | None) -> dict[str, Any]:
        now = datetime.now(timezone.utc).isoformat()
        details: dict[str, Any] = {
            "mode": fields.mode.value,
            "pnr": fields.confirmation.pnr,
            "order_id": fields.confirmation.order_id,
            "transaction_id": fields.transaction_id,
            "transaction_id_generated": fields.transaction_id_generated,
            "payment_order_id": fields.payment_order_id,
            "amount": str(fields.total_amount),
            "currency": fields.currency,
            "origin": fields.origin,
            "destination": fields.destination,
            "departure_date": fields.departure_date,
            "departure_time": fields.departure_time,
            "arrival_time": fields.arrival_time,
            "airline": fields.airline,
            "airline_name": fields.airline_name,
            "flight_number": fields.flight_number,
            "duration": fields.duration,
            "cabin_class": fields.cabin_class,
            "flight_offer": fields.flight_offer,
            "fare_breakdown": fields.fare_breakdown,
            "original_user_id": owner_id,
        }
        if fields.idempotency_key:
            details["idempotency_key"] = fields.idempotency_key
        return {
            "booking_reference": fields.booking_reference,
            "travel_type": "flight",
            "status": BookingStatus.CONFIRMED.value,
            "total_amount": float(fields.total_amount),
            "payment_status": fields.payment_status.value,
            "passenger_details": fields.travelers,
            "booking_details": details,
            "created_at": now,
            "updated_at": now,
        }

    @staticmethod
    def _to_record(row: dict[str, Any]) -> BookingRecord:
        details = row.get("booking_details") or {}
        order_id = details.get("order_id") or row["booking_reference"]
        mode = details.get("mode") or ("synthetic" if str(order_id).startswith("ORDER-") else "live")
        confirmation_cls = LiveConfirmation if mode == "live" else SyntheticConfirmation
        return BookingRecord(
            id=str(row["id"]),
            booking_reference=row["booking_reference"],
            confirmation=confirmation_cls(order_id=order_id, pnr=details.get("pnr") or ""),
            status=BookingStatus(row.get("status") or BookingStatus.CONFIRMED.value),
            payment_status=PaymentStatus(row.get("payment_status") or PaymentStatus.PENDING.value),
            total_amount=Decimal(str(details.get("amount") or row.get("total_amount") or "0")),
            currency=details.get("currency") or "USD",
            travelers=row.get("passenger_details") or [],
            origin=details.get("origin"),
            destination=details.get("destination"),
            departure_date=details.get("departure_date"),
            departure_time=details.get("departure_time"),
            arrival_time=details.get("arrival_time"),
            airline=details.get("airline"),
            flight_number=details.get("flight_number"),
            transaction_id=details.get("transaction_id"),
            transaction_id_generated=bool(details.get("transaction_id_generated")),
            payment_order_id=details.get("payment_order_id"),
            owner_id=row.get("user_id"),
            details=details,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )
