from __future__ import annotations

import logging
from typing import Any

import httpx

from tripdesk.config import ProviderSettings
from tripdesk.errors import ProviderBookingError, ProviderError
from tripdesk.provider.credentials import CredentialCache

logger = logging.getLogger(__name__)

PRICING_PATH = "/v1/shopping/flight-offers/pricing"
ORDERS_PATH = "/v1/booking/flight-orders"
AMADEUS_JSON = "application/vnd.amadeus+json"


def _error_detail(response: httpx.Response) -> tuple[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}", response.text
    errors = payload.get("errors") if isinstance(payload, dict) else None
    if errors:
        first = errors[0]
        return first.get("detail") or first.get("title") or f"HTTP {response.status_code}", payload
    return f"HTTP {response.status_code}", payload


class AmadeusClient:
    """Inventory provider calls: offer pricing and flight-order create/get/delete."""

    def __init__(
        self,
        settings: ProviderSettings,
        credentials: CredentialCache,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self._client = http_client or httpx.Client(base_url=settings.base_url)

    def price_offer(self, offer: dict[str, Any]) -> dict[str, Any]:
        body = {"data": {"type": "flight-offers-pricing", "flightOffers": [offer]}}
        return self._request("POST", PRICING_PATH, self.settings.pricing_timeout, json=body)

    def create_order(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request(
            "POST", ORDERS_PATH, self.settings.order_timeout, json=payload, error_cls=ProviderBookingError
        )

    def get_order(self, order_id: str) -> dict[str, Any]:
        return self._request("GET", f"{ORDERS_PATH}/{order_id}", self.settings.order_timeout)

    def cancel_order(self, order_id: str) -> None:
        self._request("DELETE", f"{ORDERS_PATH}/{order_id}", self.settings.order_timeout)

    def _request(
        self,
        method: str,
        path: str,
        timeout: float,
        json: dict[str, Any] | None = None,
        error_cls: type[ProviderError] = ProviderError,
    ) -> dict[str, Any]:
        response = self._send(method, path, timeout, json, error_cls)
        if response.status_code == 401:
            response = self._send(method, path, timeout, json, error_cls)
        if not response.is_success:
            message, payload = _error_detail(response)
            logger.debug("Provider %s %s failed: %s", method, path, payload)
            raise error_cls(message, status_code=response.status_code, payload=payload)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise error_cls(f"Provider returned a non-JSON body for {method} {path}") from exc

    def _send(
        self,
        method: str,
        path: str,
        timeout: float,
        json: dict[str, Any] | None,
        error_cls: type[ProviderError],
    ) -> httpx.Response:
        token = self.credentials.get_token()
        headers = {"Authorization": f"Bearer {token.value}", "Accept": AMADEUS_JSON}
        if json is not None:
            headers["Content-Type"] = AMADEUS_JSON
        try:
            response = self._client.request(method, path, json=json, headers=headers, timeout=timeout)
        except httpx.HTTPError as exc:
            raise error_cls(f"Provider {method} {path} failed: {exc}") from exc
        if response.status_code == 401:
            self.credentials.invalidate(token)
        return response
