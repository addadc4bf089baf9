from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from tripdesk.audit.lineage import AuditStore
from tripdesk.booking.persistence import BookingPersistence
from tripdesk.errors import CancellationUnreachableError, PaymentGatewayError, ProviderError
from tripdesk.models.booking import (
    BookingMode,
    BookingRecord,
    BookingStatus,
    CancellationMode,
    CancellationResult,
    PaymentStatus,
)
from tripdesk.models.events import DomainEvent, EventType
from tripdesk.payments.gateway import PaymentGateway
from tripdesk.provider.amadeus import AmadeusClient

logger = logging.getLogger(__name__)

VOIDABLE_STATUSES = {PaymentStatus.AUTHORIZED, PaymentStatus.PENDING}


def cancel_at_provider(provider: AmadeusClient | None, record: BookingRecord) -> str:
    if record.mode == BookingMode.SYNTHETIC:
        return "skipped"
    if provider is None:
        return "not_configured"
    try:
        provider.cancel_order(record.confirmation.order_id)
    except ProviderError as exc:
        logger.warning("Provider cancel for order %s failed: %s", record.confirmation.order_id, exc)
        return "failed"
    return "cancelled"


def _cancellation_block(reason: str | None, cancelled_by: str, payment_action: str, refund_status: str) -> dict:
    return {
        "cancelled_at": datetime.now(timezone.utc).isoformat(),
        "reason": reason,
        "cancelled_by": cancelled_by,
        "payment_action": payment_action,
        "refund_status": refund_status,
    }


class CancellationFlow(Protocol):
    def run(self, record: BookingRecord, reason: str | None, cancelled_by: str) -> CancellationResult:
        ...


class OrchestratedCancellation:
    """Provider cancel, then refund or void, then the store update, in process."""

    def __init__(
        self,
        persistence: BookingPersistence,
        provider: AmadeusClient | None = None,
        gateway: PaymentGateway | None = None,
    ) -> None:
        self.persistence = persistence
        self.provider = provider
        self.gateway = gateway

    def run(self, record: BookingRecord, reason: str | None, cancelled_by: str) -> CancellationResult:
        provider_status = cancel_at_provider(self.provider, record)
        operation = "VOID" if record.payment_status in VOIDABLE_STATUSES else "REFUND"

        refund: dict[str, Any] | None = None
        payment_action = operation.lower()
        target = record.gateway_transaction_id
        if self.gateway is None or not record.payment_order_id:
            payment_status = PaymentStatus.REFUND_PENDING
            payment_outcome = "no_gateway_order"
            payment_action = "none"
        elif operation == "VOID" and target is None:
            logger.warning("Booking %s has no gateway transaction to void", record.booking_reference)
            payment_status = PaymentStatus.REFUND_PENDING
            payment_outcome = "no_gateway_transaction"
            payment_action = "none"
        else:
            # Stable per booking and operation.
            transaction_id = f"{payment_action}-{record.id}"
            try:
                if operation == "VOID":
                    result = self.gateway.void(record.payment_order_id, target, transaction_id=transaction_id)
                else:
                    result = self.gateway.refund(
                        record.payment_order_id,
                        record.total_amount,
                        record.currency,
                        transaction_id=transaction_id,
                    )
            except PaymentGatewayError as exc:
                raise CancellationUnreachableError(
                    f"Payment gateway unreachable while cancelling {record.booking_reference}"
                ) from exc
            refund = {
                "operation": result.operation,
                "result": result.result,
                "transaction_id": result.transaction_id,
                "amount": f"{record.total_amount:.2f}",
                "currency": record.currency,
            }
            if result.success:
                payment_status = PaymentStatus.VOIDED if operation == "VOID" else PaymentStatus.REFUNDED
                payment_outcome = payment_status.value
            else:
                payment_status = PaymentStatus.REFUND_PENDING
                payment_outcome = "declined"

        block = _cancellation_block(reason, cancelled_by, payment_action, payment_status.value)
        updated = self.persistence.mark_cancelled(record, payment_status, block)
        manual = payment_status == PaymentStatus.REFUND_PENDING
        message = "Booking cancelled and payment reversed"
        if manual:
            message = "Booking cancelled; refund requires manual processing"
        return CancellationResult(
            success=True,
            mode=CancellationMode.ORCHESTRATED,
            cancellation={"provider": provider_status, "payment": payment_outcome},
            refund=refund,
            booking=updated,
            message=message,
            refund_pending_manual=manual,
        )


class RemoteCancellation:
    """Delegates the whole cancellation to an external orchestration endpoint."""

    def __init__(
        self,
        url: str,
        persistence: BookingPersistence,
        http_client: httpx.Client | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.url = url
        self.persistence = persistence
        self.timeout = timeout
        self._client = http_client or httpx.Client()

    def run(self, record: BookingRecord, reason: str | None, cancelled_by: str) -> CancellationResult:
        body = {"bookingReference": record.booking_reference, "reason": reason, "cancelledBy": cancelled_by}
        try:
            response = self._client.post(self.url, json=body, timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise CancellationUnreachableError(f"Cancellation endpoint unreachable: {exc}") from exc
        if not response.is_success:
            raise CancellationUnreachableError(f"Cancellation endpoint returned HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise CancellationUnreachableError("Cancellation endpoint returned a non-JSON body") from exc
        if not isinstance(payload, dict) or payload.get("success") is False:
            raise CancellationUnreachableError("Cancellation endpoint reported failure")

        updated = self.persistence.find_by_reference(record.booking_reference) or record
        return CancellationResult(
            success=True,
            mode=CancellationMode.ORCHESTRATED,
            cancellation=payload.get("cancellation") or {},
            refund=payload.get("refund"),
            booking=updated,
            message=payload.get("message") or "Booking cancelled",
            refund_pending_manual=updated.payment_status == PaymentStatus.REFUND_PENDING,
        )


class CancellationOrchestrator:
    def __init__(
        self,
        persistence: BookingPersistence,
        flow: CancellationFlow,
        provider: AmadeusClient | None = None,
        bus: Any | None = None,
        audit_store: AuditStore | None = None,
    ) -> None:
        self.persistence = persistence
        self.flow = flow
        self.provider = provider
        self.bus = bus
        self.audit_store = audit_store

    def cancel_booking(
        self,
        booking_reference: str,
        reason: str | None = None,
        cancelled_by: str = "customer",
    ) -> CancellationResult:
        record = self.persistence.find_by_reference(booking_reference)
        if record is None:
            raise KeyError(f"Booking {booking_reference} not found")
        if record.status == BookingStatus.CANCELLED:
            return CancellationResult(
                success=True,
                mode=CancellationMode.ALREADY_CANCELLED,
                cancellation=record.details.get("cancellation") or {},
                booking=record,
                message="Booking was already cancelled",
                refund_pending_manual=record.payment_status == PaymentStatus.REFUND_PENDING,
            )

        try:
            result = self.flow.run(record, reason, cancelled_by)
        except CancellationUnreachableError as exc:
            logger.warning("Orchestrated cancellation of %s unavailable, using fallback: %s", booking_reference, exc)
            result = self._fallback(record, reason, cancelled_by)
        else:
            logger.info("Cancelled booking %s (%s)", record.booking_reference, result.booking.payment_status.value)

        self._announce(result)
        return result

    def _fallback(self, record: BookingRecord, reason: str | None, cancelled_by: str) -> CancellationResult:
        provider_status = cancel_at_provider(self.provider, record)
        block = _cancellation_block(reason, cancelled_by, "none", "pending_manual")
        updated = self.persistence.mark_cancelled(record, record.payment_status, block)
        return CancellationResult(
            success=True,
            mode=CancellationMode.FALLBACK,
            cancellation={"provider": provider_status, "payment": "not_attempted"},
            booking=updated,
            message="Booking cancelled; refund will be processed manually",
            refund_pending_manual=True,
        )

    def _announce(self, result: CancellationResult) -> None:
        reference = result.booking.booking_reference
        detail = {
            "mode": result.mode.value,
            "cancellation": result.cancellation,
            "payment_status": result.booking.payment_status.value,
            "refund_pending_manual": result.refund_pending_manual,
        }
        if self.bus is not None:
            try:
                self.bus.publish(
                    DomainEvent(event_type=EventType.BOOKING_CANCELLED, aggregate_id=reference, payload=detail)
                )
            except Exception:
                logger.exception("Publishing booking_cancelled for %s failed", reference)
        if not self.audit_store:
            return
        try:
            self.audit_store.log(
                action="booking_cancelled",
                component="cancellation_orchestrator",
                subject_reference=reference,
                detail=detail,
            )
        except Exception:
            logger.exception("Audit entry booking_cancelled for %s was not written", reference)
