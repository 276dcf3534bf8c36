"""Concrete price-source adapters.

``FallbackPriceSource`` walks a priority-ordered list of PriceSource
implementations, so adding a provider means appending to the list.
"""

from __future__ import annotations

from typing import Optional, Sequence

from interfaces import PriceSource
from utils.logger import get_logger

logger = get_logger("price_sources")


class FallbackPriceSource:
    """First non-null quote wins; provider failures count as no quote."""

    name = "fallback"

    def __init__(self, providers: Sequence[PriceSource]):
        if not providers:
            raise ValueError("FallbackPriceSource needs at least one provider")
        self.providers = list(providers)

    async def get_price(self, pair: str) -> Optional[float]:
        for provider in self.providers:
            try:
                price = await provider.get_price(pair)
            except Exception as e:
                logger.warning(
                    "Price provider failed",
                    provider=getattr(provider, "name", type(provider).__name__),
                    pair=pair,
                    error=str(e),
                )
                continue
            if price is not None:
                return price
            logger.debug(
                "Price provider returned no quote",
                provider=getattr(provider, "name", type(provider).__name__),
                pair=pair,
            )
        return None
