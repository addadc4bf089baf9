from __future__ import annotations

from typing import Any


class TripDeskError(Exception):
    """Base class for failures raised by the orchestration core."""


class ProviderError(TripDeskError):
    def __init__(self, message: str, status_code: int | None = None, payload: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class ProviderAuthError(ProviderError):
    """The credential exchange with the inventory provider failed."""


class ProviderBookingError(ProviderError):
    """Order submission to the inventory provider failed."""


class OfferInvalidError(TripDeskError, ValueError):
    """The offer is not a well-formed provider offer."""


class PaymentGatewayError(TripDeskError):
    def __init__(self, message: str, status_code: int | None = None, payload: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class PersistenceError(TripDeskError):
    """A booking write failed for a reason other than the owner reference."""


class QuoteTransitionError(TripDeskError, ValueError):
    pass


class QuoteExpiredError(QuoteTransitionError):
    pass


class CancellationUnreachableError(TripDeskError):
    """The orchestrated cancel + refund path could not be completed."""
