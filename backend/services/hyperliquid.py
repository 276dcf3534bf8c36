import httpx
from datetime import timedelta
from typing import Any, Optional

from config import settings
from models.positions import Fill, RawPosition
from services.upstream_guard import UpstreamGuard
from utils.errors import NonRetryableUpstreamError, PayloadValidationError
from utils.http import json_body, raise_for_upstream_status
from utils.logger import get_logger
from utils.utcnow import to_epoch_ms, utcnow
from utils.validation import is_valid_price, parse_float

logger = get_logger("hyperliquid")

UPSTREAM = "hyperliquid"


class HyperliquidClient:
    """Client for the Hyperliquid info endpoint (positions, fills, prices, funding)"""

    name = "hyperliquid"

    def __init__(
        self,
        guard: UpstreamGuard,
        info_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.guard = guard
        self.info_url = info_url or settings.HYPERLIQUID_INFO_URL
        self._client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=settings.API_TIMEOUT_SECONDS)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _post_info(self, body: dict) -> Any:
        client = await self._get_client()
        response = await client.post(self.info_url, json=body)
        raise_for_upstream_status(response, UPSTREAM)
        return json_body(response, UPSTREAM)

    async def _info(self, body: dict) -> Any:
        return await self.guard.call(self._post_info, body)

    # ==================== WALLET DATA ====================

    async def get_open_positions(self, wallet: str) -> Optional[list[RawPosition]]:
        """Current open positions. None when the upstream refused the request."""
        try:
            data = await self._info({"type": "clearinghouseState", "user": wallet})
        except NonRetryableUpstreamError as e:
            logger.warning("Position snapshot unavailable", wallet=wallet, error=str(e))
            return None

        if not isinstance(data, dict):
            logger.warning("Unexpected clearinghouse payload", wallet=wallet)
            return None

        positions: list[RawPosition] = []
        for entry in data.get("assetPositions") or []:
            try:
                parsed = RawPosition.from_clearinghouse_entry(entry)
            except PayloadValidationError as e:
                logger.warning("Dropped invalid position entry", wallet=wallet, error=str(e))
                continue
            if parsed is not None:
                positions.append(parsed)

        logger.debug("Fetched clearinghouse state", wallet=wallet, position_count=len(positions))
        return positions

    async def get_recent_fills(self, wallet: str) -> Optional[list[Fill]]:
        try:
            data = await self._info({"type": "userFills", "user": wallet})
        except NonRetryableUpstreamError as e:
            logger.warning("Fill history unavailable", wallet=wallet, error=str(e))
            return None

        raw_fills = data.get("fills") if isinstance(data, dict) else data
        if not isinstance(raw_fills, list):
            logger.warning("Unexpected fills payload", wallet=wallet)
            return None

        fills: list[Fill] = []
        for entry in raw_fills:
            try:
                fills.append(Fill.from_hyperliquid_fill(entry))
            except PayloadValidationError as e:
                logger.debug("Dropped invalid fill", wallet=wallet, error=str(e))

        logger.debug("Fetched user fills", wallet=wallet, fill_count=len(fills))
        return fills

    # ==================== MARKET DATA ====================

    @staticmethod
    def _extract_mark_price(data: Any, pair: str) -> Optional[float]:
        # Native shape: [meta, assetCtxs] aligned by universe index
        if isinstance(data, list) and len(data) >= 2:
            meta, ctxs = data[0], data[1]
            universe = meta.get("universe", []) if isinstance(meta, dict) else []
            if isinstance(ctxs, list):
                for asset, ctx in zip(universe, ctxs):
                    if isinstance(asset, dict) and isinstance(ctx, dict) and asset.get("name") == pair:
                        return parse_float(ctx.get("markPx"))
            return None
        # Flattened shape: {"assetCtxs": [{"coin": ..., "markPx": ...}]}
        if isinstance(data, dict):
            for ctx in data.get("assetCtxs") or []:
                if isinstance(ctx, dict) and ctx.get("coin") == pair:
                    return parse_float(ctx.get("markPx"))
        return None

    async def get_mark_price(self, pair: str) -> Optional[float]:
        data = await self._info({"type": "metaAndAssetCtxs"})
        price = self._extract_mark_price(data, pair)
        if not is_valid_price(price):
            logger.warning("Mark price not found", pair=pair)
            return None
        return price

    async def get_price(self, pair: str) -> Optional[float]:
        return await self.get_mark_price(pair)

    async def get_funding_rate(self, pair: str) -> float:
        """Most recent funding rate in the last day; 0.0 when there is none."""
        start_ms = to_epoch_ms(utcnow() - timedelta(days=1))
        data = await self._info({"type": "fundingHistory", "coin": pair, "startTime": start_ms})
        if isinstance(data, list) and data:
            latest = data[-1]
            if isinstance(latest, dict):
                rate = parse_float(latest.get("fundingRate"))
                if rate is not None:
                    return rate
        return 0.0
