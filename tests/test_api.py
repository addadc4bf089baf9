from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from tripdesk import api
from tripdesk.config import QuoteSettings
from tripdesk.db.repositories import InquiryRepository
from tripdesk.runtime import TripDeskRuntime

OWNER = {"X-User-Id": "user-1", "X-User-Email": "ada@example.com"}
STRANGER = {"X-User-Id": "user-2", "X-User-Email": "eve@example.com"}
ADMIN = {"X-User-Id": "ops-1", "X-User-Role": "admin"}


@pytest.fixture
def runtime(monkeypatch, provider_settings, gateway_settings, amadeus, fake_gateway) -> TripDeskRuntime:
    instance = TripDeskRuntime(
        provider_settings=provider_settings,
        gateway_settings=gateway_settings,
        quote_settings=QuoteSettings(),
        provider_http=amadeus.client(),
        gateway_http=fake_gateway.client(),
    )
    monkeypatch.setattr(api, "runtime", instance)
    return instance


@pytest.fixture
def client(runtime: TripDeskRuntime) -> TestClient:
    return TestClient(api.app)


def _book(client: TestClient, provider_offer, travelers, **extra) -> dict:
    response = client.post(
        "/api/create-booking",
        json={"flightOffer": provider_offer, "travelers": travelers, "paymentOrderId": "PAY-1", **extra},
        headers=OWNER,
    )
    assert response.status_code == 200
    return response.json()


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_create_booking_returns_camel_case_confirmation(client: TestClient, provider_offer, travelers) -> None:
    body = _book(client, provider_offer, travelers)

    assert body["success"] is True
    assert body["orderId"] == "eJzTd9f3NjIJdzUGAAp2fAiY"
    assert body["confirmationCode"] == "QWERTY"
    assert body["status"] == "CONFIRMED"
    assert body["mode"] == "live"
    assert body["savedToStore"] is True
    assert body["paymentStatus"] == "paid"
    assert body["totalPrice"] == {"amount": "612.40", "currency": "USD"}


def test_create_booking_without_offer_is_rejected(client: TestClient, travelers) -> None:
    response = client.post("/api/create-booking", json={"travelers": travelers}, headers=OWNER)

    assert response.status_code == 422


def test_booking_visibility_follows_ownership(client: TestClient, provider_offer, travelers) -> None:
    reference = _book(client, provider_offer, travelers)["bookingReference"]

    listed = client.get("/api/bookings", headers=OWNER)
    assert [row["booking_reference"] for row in listed.json()] == [reference]
    assert client.get("/api/bookings", headers=STRANGER).json() == []
    assert client.get("/api/bookings").status_code == 403

    assert client.get(f"/api/bookings/{reference}", headers=OWNER).status_code == 200
    assert client.get(f"/api/bookings/{reference}", headers=ADMIN).status_code == 200
    forbidden = client.get(f"/api/bookings/{reference}", headers=STRANGER)
    assert forbidden.status_code == 403
    assert forbidden.json()["success"] is False


def test_cancel_booking_then_repeat(client: TestClient, fake_gateway, provider_offer, travelers) -> None:
    reference = _book(client, provider_offer, travelers)["bookingReference"]

    assert client.post("/api/cancel-booking", json={"bookingReference": reference}, headers=STRANGER).status_code == 403

    first = client.post(
        "/api/cancel-booking", json={"bookingReference": reference, "reason": "plans changed"}, headers=OWNER
    )
    assert first.status_code == 200
    assert first.json()["mode"] == "orchestrated"
    assert first.json()["booking"]["payment_status"] == "refunded"
    assert first.json()["booking"]["details"]["cancellation"]["cancelled_by"] == "customer"

    second = client.post("/api/cancel-booking", json={"bookingReference": reference}, headers=ADMIN)
    assert second.status_code == 200
    assert second.json()["mode"] == "already_cancelled"
    assert fake_gateway.operations == ["REFUND"]

    active = client.get("/api/bookings", params={"active_only": True}, headers=OWNER)
    assert active.json() == []

    actions = [entry["action"] for entry in client.get(f"/api/audit/{reference}").json()]
    assert actions == ["booking_created", "booking_cancelled"]


def test_cancel_unknown_booking_is_not_found(client: TestClient) -> None:
    response = client.post("/api/cancel-booking", json={"bookingReference": "BOOK-NOPE"}, headers=ADMIN)

    assert response.status_code == 404
    assert response.json() == {"success": False, "detail": "Booking BOOK-NOPE not found"}


def test_quote_flow_over_http(client: TestClient, runtime: TripDeskRuntime) -> None:
    inquiry_id = InquiryRepository().insert({"customer_email": "ada@example.com", "status": "pending"})["id"]
    payload = {"inquiry_id": inquiry_id, "amount": "1999.00", "validity_days": 5, "title": "Kyoto"}

    assert client.post("/api/quotes", json=payload, headers=OWNER).status_code == 403
    created = client.post("/api/quotes", json=payload, headers=ADMIN)
    assert created.status_code == 200
    quote_id = created.json()["id"]
    assert created.json()["status"] == "draft"

    assert client.post(f"/api/quotes/{quote_id}/send", headers=OWNER).status_code == 403
    sent = client.post(f"/api/quotes/{quote_id}/send", headers=ADMIN)
    assert sent.json()["status"] == "sent"
    assert InquiryRepository().get(inquiry_id)["status"] == "quoted"
    assert client.post(f"/api/quotes/{quote_id}/send", headers=ADMIN).status_code == 409

    assert client.post(f"/api/quotes/{quote_id}/view").json()["status"] == "viewed"
    assert client.post(f"/api/quotes/{quote_id}/accept", headers=STRANGER).status_code == 403

    accepted = client.post(f"/api/quotes/{quote_id}/accept", headers={"X-User-Email": "ADA@example.com"})
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "accepted"
    assert InquiryRepository().get(inquiry_id)["status"] == "booked"

    again = client.post(f"/api/quotes/{quote_id}/accept", headers=OWNER)
    assert again.status_code == 409
    assert again.json()["success"] is False


def test_accepting_expired_quote_is_bad_request(client: TestClient, runtime: TripDeskRuntime) -> None:
    inquiry_id = InquiryRepository().insert({"customer_email": "ada@example.com"})["id"]
    created = client.post("/api/quotes", json={"inquiry_id": inquiry_id, "amount": 10, "validity_days": 1}, headers=ADMIN)
    quote_id = created.json()["id"]
    client.post(f"/api/quotes/{quote_id}/send", headers=ADMIN)
    runtime.quotes.clock = lambda: datetime.now(timezone.utc) + timedelta(days=2)

    response = client.post(f"/api/quotes/{quote_id}/accept", headers=OWNER)

    assert response.status_code == 400
    assert response.json()["detail"] == "Quote has expired"


def test_unknown_quote_is_not_found(client: TestClient) -> None:
    assert client.get("/api/quotes/does-not-exist").status_code == 404


def test_jobs_endpoints(client: TestClient) -> None:
    jobs = client.get("/api/jobs").json()
    assert [job["name"] for job in jobs] == ["quote_expiration"]

    run = client.post("/api/jobs/run/quote_expiration")
    assert run.status_code == 200
    assert run.json()["status"] == "succeeded"

    stored = client.get(f"/api/jobs/runs/{run.json()['run_id']}")
    assert stored.status_code == 200
    assert {task["task_name"] for task in stored.json()["tasks"]} == {"warn_expiring_quotes", "expire_overdue_quotes"}

    assert client.post("/api/jobs/run/nightly_reports").status_code == 404
    assert client.get("/api/jobs/runs/missing").status_code == 404
