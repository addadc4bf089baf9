from __future__ import annotations

import logging
import os
from dataclasses import dataclass

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
DEFAULT_BUS_HISTORY_LIMIT = 500


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


@dataclass(frozen=True)
class ProviderSettings:
    base_url: str
    api_key: str | None
    api_secret: str | None
    token_timeout: float = 10.0
    pricing_timeout: float = 15.0
    order_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "ProviderSettings":
        return cls(
            base_url=os.getenv("TRIPDESK_AMADEUS_BASE_URL", "https://test.api.amadeus.com").rstrip("/"),
            api_key=os.getenv("AMADEUS_API_KEY") or None,
            api_secret=os.getenv("AMADEUS_API_SECRET") or None,
            token_timeout=_float_env("TRIPDESK_AMADEUS_TOKEN_TIMEOUT", 10.0),
            pricing_timeout=_float_env("TRIPDESK_AMADEUS_PRICING_TIMEOUT", 15.0),
            order_timeout=_float_env("TRIPDESK_AMADEUS_ORDER_TIMEOUT", 30.0),
        )


@dataclass(frozen=True)
class GatewaySettings:
    base_url: str
    merchant_id: str | None
    api_password: str | None
    timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        return cls(
            base_url=os.getenv("ARC_PAY_BASE_URL", "https://api.arcpay.travel/api/rest/version/77").rstrip("/"),
            merchant_id=os.getenv("ARC_PAY_MERCHANT_ID") or None,
            api_password=os.getenv("ARC_PAY_API_PASSWORD") or None,
            timeout=_float_env("TRIPDESK_GATEWAY_TIMEOUT", 30.0),
        )

    @property
    def configured(self) -> bool:
        return bool(self.merchant_id and self.api_password)


@dataclass(frozen=True)
class QuoteSettings:
    warning_days: int = 3
    default_validity_days: int = 30

    @classmethod
    def from_env(cls) -> "QuoteSettings":
        raw = os.getenv("TRIPDESK_QUOTE_WARNING_DAYS", "").strip()
        return cls(warning_days=int(raw) if raw else 3)


def cancel_orchestrator_url() -> str | None:
    raw = os.getenv("TRIPDESK_CANCEL_ORCHESTRATOR_URL", "").strip()
    return raw or None


def bus_history_limit() -> int:
    raw = os.getenv("TRIPDESK_BUS_HISTORY_LIMIT", "").strip()
    return int(raw) if raw else DEFAULT_BUS_HISTORY_LIMIT


def debug_errors() -> bool:
    return os.getenv("TRIPDESK_DEBUG_ERRORS", "").strip().lower() in {"1", "true", "yes"}


def configure_logging() -> None:
    root = logging.getLogger("tripdesk")
    if root.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(os.getenv("TRIPDESK_LOG_LEVEL", "INFO").strip().upper() or "INFO")
