from __future__ import annotations

import os
from decimal import Decimal
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from tripdesk.config import configure_logging, debug_errors
from tripdesk.errors import PersistenceError, ProviderError, QuoteExpiredError, QuoteTransitionError
from tripdesk.models.booking import BookingRequest
from tripdesk.models.quotes import CallerIdentity
from tripdesk.runtime import TripDeskRuntime

configure_logging()

app = FastAPI(title="TripDesk API", version="0.1.0")


def _cors_origins() -> list[str]:
    raw = os.getenv("TRIPDESK_CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173")
    parsed = [origin.strip() for origin in raw.split(",") if origin.strip()]
    if "*" in parsed:
        return ["*"]
    return parsed


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

runtime = TripDeskRuntime()


def _error(status_code: int, message: str, detail: Any = None) -> JSONResponse:
    body: dict[str, Any] = {"success": False, "detail": message}
    if detail is not None and debug_errors():
        body["debug"] = detail
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(PersistenceError)
async def _persistence_error(request: Request, exc: PersistenceError) -> JSONResponse:
    return _error(500, "Booking could not be saved", str(exc.__cause__ or exc))


@app.exception_handler(ProviderError)
async def _provider_error(request: Request, exc: ProviderError) -> JSONResponse:
    return _error(502, "Inventory provider request failed", {"message": str(exc), "payload": exc.payload})


@app.exception_handler(QuoteExpiredError)
async def _quote_expired(request: Request, exc: QuoteExpiredError) -> JSONResponse:
    return _error(400, str(exc))


@app.exception_handler(QuoteTransitionError)
async def _quote_transition(request: Request, exc: QuoteTransitionError) -> JSONResponse:
    return _error(409, str(exc))


@app.exception_handler(PermissionError)
async def _forbidden(request: Request, exc: PermissionError) -> JSONResponse:
    return _error(403, str(exc))


@app.exception_handler(KeyError)
async def _not_found(request: Request, exc: KeyError) -> JSONResponse:
    return _error(404, str(exc.args[0]) if exc.args else "Not found")


def caller_identity(
    x_user_id: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> CallerIdentity:
    return CallerIdentity(user_id=x_user_id, email=x_user_email, role=x_user_role)


class CancelBookingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    booking_reference: str = Field(alias="bookingReference")
    reason: str | None = None


class CreateQuoteRequest(BaseModel):
    inquiry_id: str
    amount: Decimal
    currency: str = "USD"
    validity_days: int | None = None
    title: str | None = None


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "tripdesk-api", "status": "ok"}


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/create-booking")
def create_booking(payload: BookingRequest, caller: CallerIdentity = Depends(caller_identity)) -> dict[str, Any]:
    return {"success": True, **runtime.create_booking(payload, caller)}


@app.post("/api/cancel-booking")
def cancel_booking(
    payload: CancelBookingRequest, caller: CallerIdentity = Depends(caller_identity)
) -> dict[str, Any]:
    return runtime.cancel_booking(payload.booking_reference, payload.reason, caller)


@app.get("/api/bookings")
def list_bookings(active_only: bool = False, caller: CallerIdentity = Depends(caller_identity)) -> list[dict[str, Any]]:
    return runtime.list_bookings(caller, active_only=active_only)


@app.get("/api/bookings/{reference}")
def get_booking(reference: str, caller: CallerIdentity = Depends(caller_identity)) -> dict[str, Any]:
    return runtime.booking_detail(reference, caller)


@app.post("/api/quotes")
def create_quote(payload: CreateQuoteRequest, caller: CallerIdentity = Depends(caller_identity)) -> dict[str, Any]:
    return runtime.create_quote(
        payload.inquiry_id,
        payload.amount,
        payload.currency,
        payload.validity_days,
        payload.title,
        caller,
    )


@app.get("/api/quotes/{quote_id}")
def get_quote(quote_id: str) -> dict[str, Any]:
    return runtime.get_quote(quote_id)


@app.post("/api/quotes/{quote_id}/send")
def send_quote(quote_id: str, caller: CallerIdentity = Depends(caller_identity)) -> dict[str, Any]:
    return runtime.send_quote(quote_id, caller)


@app.post("/api/quotes/{quote_id}/view")
def view_quote(quote_id: str) -> dict[str, Any]:
    return runtime.view_quote(quote_id)


@app.post("/api/quotes/{quote_id}/accept")
def accept_quote(quote_id: str, caller: CallerIdentity = Depends(caller_identity)) -> dict[str, Any]:
    return runtime.accept_quote(quote_id, caller)


@app.get("/api/audit/{reference}")
def get_audit_history(reference: str) -> list[dict[str, Any]]:
    return runtime.audit_history(reference)


@app.get("/api/jobs")
def get_jobs() -> list[dict[str, Any]]:
    return runtime.get_jobs()


@app.post("/api/jobs/run/{job_name}")
def run_job(job_name: str) -> dict[str, Any]:
    return runtime.run_job(job_name)


@app.get("/api/jobs/runs/{run_id}")
def get_job_run(run_id: str) -> dict[str, Any]:
    run = runtime.get_job_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="run not found")
    return run
