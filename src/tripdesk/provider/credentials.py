from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import httpx

from tripdesk.config import ProviderSettings
from tripdesk.errors import ProviderAuthError

logger = logging.getLogger(__name__)

TOKEN_PATH = "/v1/security/oauth2/token"
DEFAULT_EXPIRES_IN = 1799
LIFETIME_FRACTION = 0.97


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


class CredentialCache:
    """Caches the inventory provider's OAuth2 client-credentials token.

    Refresh is single-flight: the lock is held across the exchange, so callers
    that arrive while a refresh is running wait for it and reuse its token.
    """

    def __init__(
        self,
        settings: ProviderSettings,
        http_client: httpx.Client | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self._client = http_client or httpx.Client(base_url=settings.base_url)
        self._clock = clock
        self._lock = threading.Lock()
        self._token: AccessToken | None = None

    def get_token(self) -> AccessToken:
        with self._lock:
            token = self._token
            if token is not None and token.is_valid(self._clock()):
                return token
            self._token = self._exchange()
            return self._token

    def invalidate(self, token: AccessToken) -> None:
        with self._lock:
            if self._token is not None and self._token.value == token.value:
                logger.info("Discarding rejected provider token")
                self._token = None

    def _exchange(self) -> AccessToken:
        if not self.settings.api_key or not self.settings.api_secret:
            raise ProviderAuthError("Inventory provider credentials are not configured")
        try:
            response = self._client.post(
                TOKEN_PATH,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.settings.api_key,
                    "client_secret": self.settings.api_secret,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.settings.token_timeout,
            )
        except httpx.HTTPError as exc:
            raise ProviderAuthError(f"Token exchange failed: {exc}") from exc
        if not response.is_success:
            raise ProviderAuthError(
                f"Token exchange rejected with HTTP {response.status_code}",
                status_code=response.status_code,
                payload=response.text,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderAuthError("Token exchange returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise ProviderAuthError("Token exchange returned an unexpected body", payload=body)
        value = body.get("access_token")
        if not value:
            raise ProviderAuthError("Token exchange returned no access_token", payload=body)
        expires_in = body.get("expires_in") or DEFAULT_EXPIRES_IN
        expires_at = self._clock() + timedelta(seconds=float(expires_in) * LIFETIME_FRACTION)
        logger.info("Obtained provider token valid until %s", expires_at.isoformat())
        return AccessToken(value=value, expires_at=expires_at)
