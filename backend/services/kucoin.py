import time
import httpx
from typing import Callable, Optional

from config import settings
from services.upstream_guard import UpstreamGuard
from utils.http import json_body, raise_for_upstream_status
from utils.logger import get_logger
from utils.validation import is_valid_price, parse_float

logger = get_logger("kucoin")

UPSTREAM = "kucoin"


class KuCoinClient:
    """Spot price source: ``<PAIR>-USDT`` level-1 order book, briefly cached."""

    name = "kucoin"

    def __init__(
        self,
        guard: UpstreamGuard,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        cache_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.guard = guard
        self.base_url = base_url or settings.KUCOIN_API_URL
        self.cache_seconds = (
            settings.KUCOIN_PRICE_CACHE_SECONDS if cache_seconds is None else cache_seconds
        )
        self._client: Optional[httpx.AsyncClient] = client
        self._clock = clock
        self._price_cache: dict[str, tuple[float, float]] = {}  # symbol -> (price, fetched_at)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=settings.API_TIMEOUT_SECONDS)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _fetch_level1(self, symbol: str):
        client = await self._get_client()
        response = await client.get(
            f"{self.base_url}/api/v1/market/orderbook/level1", params={"symbol": symbol}
        )
        raise_for_upstream_status(response, UPSTREAM)
        return json_body(response, UPSTREAM)

    async def get_price(self, pair: str) -> Optional[float]:
        symbol = f"{pair}-USDT"
        now = self._clock()

        # Evict expired entries on every lookup
        for key in [k for k, (_, at) in self._price_cache.items() if now - at >= self.cache_seconds]:
            del self._price_cache[key]

        cached = self._price_cache.get(symbol)
        if cached is not None:
            return cached[0]

        data = await self.guard.call(self._fetch_level1, symbol)
        payload = data.get("data") if isinstance(data, dict) else None
        price = parse_float(payload.get("price")) if isinstance(payload, dict) else None
        if not is_valid_price(price):
            logger.warning("Price not found", symbol=symbol)
            return None

        self._price_cache[symbol] = (price, now)
        logger.debug("Fetched KuCoin price", symbol=symbol, price=price)
        return price
