from __future__ import annotations

import logging
from typing import Any

from tripdesk.errors import ProviderError
from tripdesk.models.booking import PricedOffer
from tripdesk.provider.amadeus import AmadeusClient

logger = logging.getLogger(__name__)


class OfferPricer:
    """Re-prices an offer before submission; any failure keeps the original offer."""

    def __init__(self, provider: AmadeusClient) -> None:
        self.provider = provider

    def price(self, offer: dict[str, Any]) -> PricedOffer:
        try:
            response = self.provider.price_offer(offer)
        except ProviderError as exc:
            logger.warning("Offer pricing failed, submitting original offer: %s", exc)
            return PricedOffer(offer=offer, repriced=False)
        data = response.get("data") if isinstance(response, dict) else None
        offers = data.get("flightOffers") if isinstance(data, dict) else None
        if not isinstance(offers, list) or not offers or not isinstance(offers[0], dict):
            logger.warning("Offer pricing returned no offers, submitting original offer")
            return PricedOffer(offer=offer, repriced=False)
        return PricedOffer(offer=offers[0], repriced=True)
