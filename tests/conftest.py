from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator

import httpx
import pytest

from tripdesk.config import GatewaySettings, ProviderSettings, QuoteSettings
from tripdesk.db.repositories import reset_memory_backend

PROVIDER_URL = "https://provider.test"
GATEWAY_URL = "https://gateway.test/api/rest/version/77"
LIVE_ORDER_ID = "eJzTd9f3NjIJdzUGAAp2fAiY"
LIVE_PNR = "QWERTY"


@pytest.fixture(autouse=True)
def memory_backend(monkeypatch) -> Iterator[None]:
    monkeypatch.setenv("TRIPDESK_STORAGE_BACKEND", "memory")
    monkeypatch.setenv("TRIPDESK_BUS_BACKEND", "memory")
    monkeypatch.delenv("TRIPDESK_CANCEL_ORCHESTRATOR_URL", raising=False)
    monkeypatch.delenv("TRIPDESK_DEBUG_ERRORS", raising=False)
    reset_memory_backend()
    yield
    reset_memory_backend()


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeAmadeus:
    """Stands in for the provider's token, pricing and flight-order endpoints."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, str]] = []
        self.order_payloads: list[dict[str, Any]] = []
        self.token_count = 0
        self.token_status = 200
        self.token_delay = 0.0
        self.rejected_tokens: set[str] = set()
        self.pricing_status = 200
        self.pricing_body: dict[str, Any] | None = None
        self.order_status = 201
        self.order_body: dict[str, Any] | None = None
        self.order_error: Exception | None = None
        self.cancel_status = 204
        self._lock = threading.Lock()

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        with self._lock:
            self.requests.append((request.method, path))
        if path == "/v1/security/oauth2/token":
            if self.token_delay:
                time.sleep(self.token_delay)
            with self._lock:
                self.token_count += 1
                count = self.token_count
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            return httpx.Response(200, json={"access_token": f"token-{count}", "expires_in": 1799})

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token in self.rejected_tokens:
            return httpx.Response(401, json={"errors": [{"title": "Invalid access token"}]})

        if path == "/v1/shopping/flight-offers/pricing":
            if self.pricing_status != 200:
                return httpx.Response(self.pricing_status, json={"errors": [{"detail": "Offer no longer available"}]})
            if self.pricing_body is not None:
                return httpx.Response(200, json=self.pricing_body)
            offer = json.loads(request.content)["data"]["flightOffers"][0]
            return httpx.Response(200, json={"data": {"flightOffers": [{**offer, "repriced": True}]}})

        if path == "/v1/booking/flight-orders" and request.method == "POST":
            self.order_payloads.append(json.loads(request.content))
            if self.order_error is not None:
                raise self.order_error
            if self.order_status >= 400:
                return httpx.Response(
                    self.order_status, json={"errors": [{"detail": "SEGMENT SELL FAILURE"}]}
                )
            body = self.order_body
            if body is None:
                body = {"data": {"id": LIVE_ORDER_ID, "associatedRecords": [{"reference": LIVE_PNR}]}}
            return httpx.Response(self.order_status, json=body)

        if path.startswith("/v1/booking/flight-orders/") and request.method == "DELETE":
            return httpx.Response(self.cancel_status)

        return httpx.Response(404, json={"errors": [{"detail": "not found"}]})

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler), base_url=PROVIDER_URL)

    def count(self, method: str, path_prefix: str) -> int:
        return len([1 for m, p in self.requests if m == method and p.startswith(path_prefix)])


class FakeGateway:
    """Stands in for the ARC Pay order and transaction endpoints."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, str, dict[str, Any] | None]] = []
        self.order_result = "SUCCESS"
        self.transaction_result = "SUCCESS"
        self.unreachable = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        if request.method == "GET":
            return httpx.Response(
                200,
                json={
                    "status": "CAPTURED",
                    "transaction": [{"result": self.order_result, "response": {"gatewayCode": "APPROVED"}}],
                },
            )
        return httpx.Response(200, json={"result": self.transaction_result, "response": {"gatewayCode": "APPROVED"}})

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler), base_url=GATEWAY_URL)

    @property
    def operations(self) -> list[str]:
        return [body["apiOperation"] for method, _, body in self.requests if method == "PUT" and body]


@pytest.fixture
def provider_settings() -> ProviderSettings:
    return ProviderSettings(base_url=PROVIDER_URL, api_key="key", api_secret="secret")


@pytest.fixture
def gateway_settings() -> GatewaySettings:
    return GatewaySettings(base_url=GATEWAY_URL, merchant_id="TESTARC05511704", api_password="secret")


@pytest.fixture
def amadeus() -> FakeAmadeus:
    return FakeAmadeus()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def quote_settings() -> QuoteSettings:
    return QuoteSettings(warning_days=3, default_validity_days=30)


@pytest.fixture
def provider_offer() -> dict[str, Any]:
    return {
        "type": "flight-offer",
        "id": "1",
        "source": "GDS",
        "validatingAirlineCodes": ["BA"],
        "itineraries": [
            {
                "duration": "PT7H10M",
                "segments": [
                    {
                        "departure": {"iataCode": "JFK", "at": "2026-05-10T18:30:00"},
                        "arrival": {"iataCode": "LHR", "at": "2026-05-11T06:40:00"},
                        "carrierCode": "BA",
                        "number": "178",
                    }
                ],
            }
        ],
        "price": {"currency": "USD", "total": "612.40", "base": "480.00"},
        "travelerPricings": [
            {
                "travelerId": "1",
                "fareDetailsBySegment": [{"segmentId": "1", "cabin": "ECONOMY"}],
            }
        ],
    }


@pytest.fixture
def ui_offer() -> dict[str, Any]:
    return {
        "id": "ui-42",
        "segments": [
            {
                "departure": {"airport": "LAX", "date": "2026-06-01", "time": "09:15"},
                "arrival": {"airport": "SFO", "time": "10:45"},
                "airline": {"code": "UA", "name": "United Airlines"},
            }
        ],
        "price": {"amount": "189.99", "currency": "USD"},
        "flightNumber": "UA 1234",
        "duration": "1h 30m",
        "cabinClass": "ECONOMY",
    }


@pytest.fixture
def travelers() -> list[dict[str, Any]]:
    return [
        {
            "firstName": "Ada",
            "lastName": "Lovelace",
            "dateOfBirth": "1985-12-10",
            "gender": "female",
            "email": "ada@example.com",
        }
    ]
