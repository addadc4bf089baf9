from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import httpx

from tripdesk.config import GatewaySettings
from tripdesk.errors import PaymentGatewayError

logger = logging.getLogger(__name__)


@dataclass
class GatewayResult:
    success: bool
    result: str | None
    operation: str
    transaction_id: str | None = None
    gateway_code: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


def _basic_auth(settings: GatewaySettings) -> str:
    raw = f"merchant.{settings.merchant_id}:{settings.api_password}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


def _latest_outcome(payload: dict[str, Any]) -> tuple[str | None, str | None]:
    transactions = payload.get("transaction")
    latest = transactions[-1] if isinstance(transactions, list) and transactions else {}
    result = latest.get("result") or payload.get("result")
    gateway_code = (latest.get("response") or {}).get("gatewayCode") or (payload.get("response") or {}).get(
        "gatewayCode"
    )
    return result, gateway_code


def _fresh_transaction_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}"


class PaymentGateway:
    """ARC Pay (Mastercard Gateway REST) order lookup, refund and void.

    Transport failures, timeouts and 5xx replies raise ``PaymentGatewayError``.
    A reply from the gateway, including a decline, is returned as a
    ``GatewayResult``.
    """

    def __init__(self, settings: GatewaySettings, http_client: httpx.Client | None = None) -> None:
        self.settings = settings
        self._client = http_client or httpx.Client(base_url=settings.base_url)

    def verify_order(self, order_id: str) -> GatewayResult:
        payload = self._call("GET", self._order_path(order_id))
        result, gateway_code = _latest_outcome(payload)
        success = result == "SUCCESS" and gateway_code in (None, "APPROVED")
        return GatewayResult(
            success=success,
            result=result,
            operation="VERIFY",
            gateway_code=gateway_code,
            payload=payload,
        )

    def refund(
        self, order_id: str, amount: Decimal, currency: str, transaction_id: str | None = None
    ) -> GatewayResult:
        body = {
            "apiOperation": "REFUND",
            "transaction": {"amount": f"{Decimal(amount):.2f}", "currency": currency},
        }
        return self._transaction(order_id, transaction_id or _fresh_transaction_id("refund"), body)

    def void(self, order_id: str, target_transaction_id: str, transaction_id: str | None = None) -> GatewayResult:
        body = {"apiOperation": "VOID", "transaction": {"targetTransactionId": target_transaction_id}}
        return self._transaction(order_id, transaction_id or _fresh_transaction_id("void"), body)

    def _transaction(self, order_id: str, transaction_id: str, body: dict[str, Any]) -> GatewayResult:
        payload = self._call("PUT", f"{self._order_path(order_id)}/transaction/{transaction_id}", body)
        result, gateway_code = _latest_outcome(payload)
        success = result == "SUCCESS"
        if not success:
            logger.warning(
                "Gateway %s for order %s declined: result=%s gatewayCode=%s",
                body["apiOperation"],
                order_id,
                result,
                gateway_code,
            )
        return GatewayResult(
            success=success,
            result=result,
            operation=body["apiOperation"],
            transaction_id=transaction_id,
            gateway_code=gateway_code,
            payload=payload,
        )

    def _order_path(self, order_id: str) -> str:
        return f"/merchant/{self.settings.merchant_id}/order/{order_id}"

    def _call(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.settings.configured:
            raise PaymentGatewayError("Payment gateway credentials are not configured")
        headers = {"Authorization": _basic_auth(self.settings), "Accept": "application/json"}
        try:
            response = self._client.request(method, path, json=body, headers=headers, timeout=self.settings.timeout)
        except httpx.HTTPError as exc:
            raise PaymentGatewayError(f"Gateway {method} {path} failed: {exc}") from exc
        if response.status_code >= 500:
            raise PaymentGatewayError(
                f"Gateway {method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
                payload=response.text,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise PaymentGatewayError(
                f"Gateway {method} {path} returned a non-JSON body", status_code=response.status_code
            ) from exc
        if not isinstance(payload, dict):
            payload = {"body": payload}
        if not response.is_success:
            payload = {**payload, "result": payload.get("result") or "ERROR"}
        return payload
