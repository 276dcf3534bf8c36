"""Market data interface contracts.

These protocols define the minimum async API the ingestor and price monitor
need, decoupling them from concrete exchange clients. ``None`` always means
"temporarily unavailable" and is distinct from an empty result.
"""

from __future__ import annotations

from typing import Optional, Protocol

from models.positions import Fill, RawPosition


class PositionProvider(Protocol):
    """Wallet position and fill history source."""

    async def get_open_positions(self, wallet: str) -> Optional[list[RawPosition]]:
        """Fetch the wallet's current open positions."""

    async def get_recent_fills(self, wallet: str) -> Optional[list[Fill]]:
        """Fetch the wallet's recent fills, any order."""

    async def get_funding_rate(self, pair: str) -> float:
        """Latest funding rate for the instrument (0.0 when unknown)."""


class PriceSource(Protocol):
    """Anything that can quote a current price for an instrument."""

    name: str

    async def get_price(self, pair: str) -> Optional[float]:
        """Current price, or None when unavailable."""
