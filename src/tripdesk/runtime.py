from __future__ import annotations

from dataclasses import asdict
from decimal import Decimal
from typing import Any

import httpx

from tripdesk.audit.lineage import AuditStore
from tripdesk.booking.cancellation import (
    CancellationFlow,
    CancellationOrchestrator,
    OrchestratedCancellation,
    RemoteCancellation,
)
from tripdesk.booking.orchestrator import BookingOrchestrator
from tripdesk.booking.persistence import BookingPersistence
from tripdesk.booking.pricing import OfferPricer
from tripdesk.bus import FanoutBus, InMemoryBus, build_transport_bus_from_env
from tripdesk.config import (
    GatewaySettings,
    ProviderSettings,
    QuoteSettings,
    bus_history_limit,
    cancel_orchestrator_url,
)
from tripdesk.jobs.quote_expiration import build_quote_expiration_job
from tripdesk.jobs.runner import JobRunner
from tripdesk.models.booking import BookingRecord, BookingRequest
from tripdesk.models.quotes import CallerIdentity
from tripdesk.payments.gateway import PaymentGateway
from tripdesk.provider.amadeus import AmadeusClient
from tripdesk.provider.credentials import CredentialCache
from tripdesk.quotes.lifecycle import InquiryStatusProjector, QuoteLifecycle
from tripdesk.quotes.sweep import QuoteExpirationSweep


def _booking_payload(record: BookingRecord) -> dict[str, Any]:
    return record.model_dump(mode="json")


class TripDeskRuntime:
    """Wires the orchestration components for the API and the job CLI."""

    def __init__(
        self,
        provider_settings: ProviderSettings | None = None,
        gateway_settings: GatewaySettings | None = None,
        quote_settings: QuoteSettings | None = None,
        provider_http: httpx.Client | None = None,
        gateway_http: httpx.Client | None = None,
        cancel_http: httpx.Client | None = None,
    ) -> None:
        self.provider_settings = provider_settings or ProviderSettings.from_env()
        self.gateway_settings = gateway_settings or GatewaySettings.from_env()
        self.quote_settings = quote_settings or QuoteSettings.from_env()

        self.audit = AuditStore()
        self.bus = InMemoryBus(max_history=bus_history_limit())
        self._transport = build_transport_bus_from_env()
        self.publisher = FanoutBus([self.bus, self._transport]) if self._transport else self.bus

        self.credentials = CredentialCache(self.provider_settings, http_client=provider_http)
        self.provider = AmadeusClient(self.provider_settings, self.credentials, http_client=provider_http)
        self.gateway = (
            PaymentGateway(self.gateway_settings, http_client=gateway_http)
            if self.gateway_settings.configured
            else None
        )

        self.persistence = BookingPersistence()
        self.bookings = BookingOrchestrator(
            provider=self.provider,
            pricer=OfferPricer(self.provider),
            persistence=self.persistence,
            gateway=self.gateway,
            bus=self.publisher,
            audit_store=self.audit,
        )
        self.cancellations = CancellationOrchestrator(
            persistence=self.persistence,
            flow=self._cancellation_flow(cancel_http),
            provider=self.provider,
            bus=self.publisher,
            audit_store=self.audit,
        )

        self.quotes = QuoteLifecycle(bus=self.publisher, audit_store=self.audit, settings=self.quote_settings)
        self.projector = InquiryStatusProjector(self.quotes.inquiries)
        self.projector.register(self.bus)
        self.sweep = QuoteExpirationSweep(self.quotes, self.publisher, self.quote_settings)

        quote_job = build_quote_expiration_job(self.sweep)
        self._jobs = {quote_job.name: JobRunner(quote_job, audit_store=self.audit)}

    def _cancellation_flow(self, cancel_http: httpx.Client | None) -> CancellationFlow:
        url = cancel_orchestrator_url()
        if url:
            return RemoteCancellation(
                url, self.persistence, http_client=cancel_http, timeout=self.gateway_settings.timeout
            )
        return OrchestratedCancellation(self.persistence, provider=self.provider, gateway=self.gateway)

    def create_booking(self, payload: BookingRequest | dict[str, Any], caller: CallerIdentity) -> dict[str, Any]:
        result = self.bookings.create_booking(payload, caller.user_id)
        return result.model_dump(mode="json", by_alias=True)

    def cancel_booking(self, reference: str, reason: str | None, caller: CallerIdentity) -> dict[str, Any]:
        self._authorize_booking(self._require_booking(reference), caller)
        cancelled_by = "admin" if caller.is_admin else "customer"
        result = self.cancellations.cancel_booking(reference, reason=reason, cancelled_by=cancelled_by)
        return result.model_dump(mode="json")

    def list_bookings(self, caller: CallerIdentity, active_only: bool = False) -> list[dict[str, Any]]:
        if not caller.user_id:
            raise PermissionError("Caller identity is required")
        return [_booking_payload(record) for record in self.persistence.list_for_owner(caller.user_id, active_only)]

    def booking_detail(self, reference: str, caller: CallerIdentity) -> dict[str, Any]:
        record = self._require_booking(reference)
        self._authorize_booking(record, caller)
        return _booking_payload(record)

    def create_quote(
        self,
        inquiry_id: str,
        amount: Decimal,
        currency: str,
        validity_days: int | None,
        title: str | None,
        caller: CallerIdentity,
    ) -> dict[str, Any]:
        if not caller.is_admin:
            raise PermissionError("Only staff can create quotes")
        quote = self.quotes.create(
            inquiry_id, amount, currency=currency, validity_days=validity_days, title=title, admin_id=caller.user_id
        )
        return quote.model_dump(mode="json")

    def send_quote(self, quote_id: str, caller: CallerIdentity) -> dict[str, Any]:
        if not caller.is_admin:
            raise PermissionError("Only staff can send quotes")
        return self.quotes.send(quote_id).model_dump(mode="json")

    def view_quote(self, quote_id: str) -> dict[str, Any]:
        return self.quotes.mark_viewed(quote_id).model_dump(mode="json")

    def accept_quote(self, quote_id: str, caller: CallerIdentity) -> dict[str, Any]:
        return self.quotes.accept(quote_id, caller=caller).model_dump(mode="json")

    def get_quote(self, quote_id: str) -> dict[str, Any]:
        return self.quotes.get(quote_id).model_dump(mode="json")

    def audit_history(self, reference: str) -> list[dict[str, Any]]:
        return [asdict(record) for record in self.audit.get_history(reference)]

    def get_jobs(self) -> list[dict[str, Any]]:
        return [
            {
                "name": runner.job.name,
                "tasks": [{"name": task.name, "depends_on": task.depends_on} for task in runner.job.tasks],
            }
            for runner in self._jobs.values()
        ]

    def run_job(self, job_name: str) -> dict[str, Any]:
        runner = self._jobs.get(job_name)
        if not runner:
            raise KeyError("Unknown job")
        result = runner.run()
        return {
            "run_id": result.run_id,
            "job_name": result.job_name,
            "status": result.status,
            "task_results": [asdict(task) for task in result.task_results],
        }

    def get_job_run(self, run_id: str) -> dict[str, Any] | None:
        runner = next(iter(self._jobs.values()))
        return runner.get_run(run_id)

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()

    def _require_booking(self, reference: str) -> BookingRecord:
        record = self.persistence.find_by_reference(reference)
        if record is None:
            raise KeyError(f"Booking {reference} not found")
        return record

    @staticmethod
    def _authorize_booking(record: BookingRecord, caller: CallerIdentity) -> None:
        if caller.is_admin:
            return
        owners = {record.owner_id, record.details.get("original_user_id")} - {None}
        if not caller.user_id or caller.user_id not in owners:
            raise PermissionError("Caller does not own this booking")
