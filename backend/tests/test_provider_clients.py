"""Hyperliquid / KuCoin clients and boundary validation of their payloads."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import json
from datetime import datetime
from unittest.mock import AsyncMock

import httpx
import pytest

from models.positions import Fill, RawPosition
from models.types import Direction
from services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from services.hyperliquid import HyperliquidClient
from services.kucoin import KuCoinClient
from services.providers.price_sources import FallbackPriceSource
from services.upstream_guard import UpstreamGuard
from utils.errors import PayloadValidationError, TransientUpstreamError
from utils.rate_limiter import SlidingWindowRateLimiter
from utils.retry import RetryConfig


def _guard(name: str, attempts: int = 1) -> UpstreamGuard:
    return UpstreamGuard(
        name,
        name,
        rate_limiter=SlidingWindowRateLimiter(),
        breaker=CircuitBreaker(name, CircuitBreakerConfig(failure_threshold=10)),
        retry_config=RetryConfig(max_attempts=attempts, base_delay=0, jitter=False),
    )


def _hyperliquid(handler) -> HyperliquidClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HyperliquidClient(_guard("hyperliquid"), info_url="https://hl.test/info", client=client)


def _entry(coin="ETH", szi="1.5", entry_px="2450.5", leverage=None):
    position = {"coin": coin, "szi": szi, "entryPx": entry_px}
    if leverage is not None:
        position["leverage"] = leverage
    return {"type": "oneWay", "position": position}


# ============================================================================
# BOUNDARY PARSING
# ============================================================================


class TestRawPositionParsing:
    def test_long_position_with_leverage_object(self):
        pos = RawPosition.from_clearinghouse_entry(_entry(leverage={"type": "cross", "value": 10}))
        assert pos.pair == "ETH"
        assert pos.direction == Direction.LONG
        assert pos.size == 1.5
        assert pos.leverage == 10
        assert pos.notional == pytest.approx(1.5 * 2450.5)

    def test_negative_size_is_short(self):
        pos = RawPosition.from_clearinghouse_entry(_entry(szi="-3", leverage=5))
        assert pos.direction == Direction.SHORT
        assert pos.size == 3

    def test_flat_position_is_none(self):
        assert RawPosition.from_clearinghouse_entry(_entry(szi="0")) is None

    def test_missing_leverage_defaults_to_one(self):
        assert RawPosition.from_clearinghouse_entry(_entry()).leverage == 1

    @pytest.mark.parametrize(
        "entry",
        [
            _entry(coin="eth-usd"),
            _entry(szi="nan"),
            _entry(entry_px="0"),
            _entry(entry_px="-5"),
            _entry(leverage=2.5),
            _entry(leverage=101),
            {"position": None},
            "not-a-dict",
        ],
    )
    def test_invalid_entries_are_rejected(self, entry):
        with pytest.raises(PayloadValidationError):
            RawPosition.from_clearinghouse_entry(entry)


class TestFillParsing:
    def test_buy_fill(self):
        fill = Fill.from_hyperliquid_fill(
            {"coin": "BTC", "side": "B", "px": "42100", "sz": "0.5", "time": 1_700_000_000_000}
        )
        assert fill.direction == Direction.LONG
        assert fill.price == 42100
        assert fill.time == datetime(2023, 11, 14, 22, 13, 20)

    def test_sell_fill_is_short(self):
        fill = Fill.from_hyperliquid_fill({"coin": "BTC", "side": "A", "px": "1", "sz": "1", "time": 1})
        assert fill.direction == Direction.SHORT

    @pytest.mark.parametrize(
        "data",
        [
            {"coin": "BTC", "side": "X", "px": "1", "sz": "1", "time": 1},
            {"coin": "BTC", "side": "B", "px": "inf", "sz": "1", "time": 1},
            {"coin": "BTC", "side": "B", "px": "1", "sz": "1"},
        ],
    )
    def test_invalid_fills_are_rejected(self, data):
        with pytest.raises(PayloadValidationError):
            Fill.from_hyperliquid_fill(data)


# ============================================================================
# HYPERLIQUID CLIENT
# ============================================================================


@pytest.mark.asyncio
async def test_open_positions_drop_invalid_entries():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "assetPositions": [
                    _entry(coin="ETH", szi="2", leverage={"value": 5}),
                    _entry(coin="BTC", szi="0"),
                    _entry(coin="SOL", entry_px="NaN"),
                ]
            },
        )

    client = _hyperliquid(handler)
    positions = await client.get_open_positions("0xabc")
    assert [p.pair for p in positions] == ["ETH"]
    assert requests == [{"type": "clearinghouseState", "user": "0xabc"}]


@pytest.mark.asyncio
async def test_client_error_marks_wallet_unavailable():
    client = _hyperliquid(lambda request: httpx.Response(422, json={"error": "bad user"}))
    assert await client.get_open_positions("0xabc") is None
    assert await client.get_recent_fills("0xabc") is None


@pytest.mark.asyncio
async def test_server_error_is_transient():
    client = _hyperliquid(lambda request: httpx.Response(503))
    with pytest.raises(TransientUpstreamError):
        await client.get_open_positions("0xabc")


@pytest.mark.asyncio
async def test_recent_fills_skip_malformed_rows():
    fills = [
        {"coin": "ETH", "side": "B", "px": "2400", "sz": "1", "time": 1_700_000_000_000},
        {"coin": "ETH", "side": "?", "px": "2400", "sz": "1", "time": 1_700_000_000_000},
    ]
    client = _hyperliquid(lambda request: httpx.Response(200, json=fills))
    result = await client.get_recent_fills("0xabc")
    assert len(result) == 1
    assert result[0].pair == "ETH"


@pytest.mark.asyncio
async def test_mark_price_from_native_meta_shape():
    payload = [
        {"universe": [{"name": "BTC"}, {"name": "ETH"}]},
        [{"markPx": "42000.5"}, {"markPx": "2450.25"}],
    ]
    client = _hyperliquid(lambda request: httpx.Response(200, json=payload))
    assert await client.get_mark_price("ETH") == 2450.25
    assert await client.get_mark_price("DOGE") is None


@pytest.mark.asyncio
async def test_funding_rate_uses_latest_entry():
    payload = [
        {"coin": "ETH", "fundingRate": "0.0001", "time": 1},
        {"coin": "ETH", "fundingRate": "0.0003", "time": 2},
    ]
    client = _hyperliquid(lambda request: httpx.Response(200, json=payload))
    assert await client.get_funding_rate("ETH") == pytest.approx(0.0003)


@pytest.mark.asyncio
async def test_funding_rate_defaults_to_zero():
    client = _hyperliquid(lambda request: httpx.Response(200, json=[]))
    assert await client.get_funding_rate("ETH") == 0.0


# ============================================================================
# KUCOIN CLIENT
# ============================================================================


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_kucoin_price_is_cached_briefly():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.params["symbol"])
        return httpx.Response(200, json={"code": "200000", "data": {"price": "2451.1"}})

    clock = FakeClock()
    client = KuCoinClient(
        _guard("kucoin"),
        base_url="https://kc.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        cache_seconds=10,
        clock=clock,
    )
    assert await client.get_price("ETH") == 2451.1
    assert await client.get_price("ETH") == 2451.1
    assert calls == ["ETH-USDT"]

    clock.now = 10.0
    await client.get_price("ETH")
    assert calls == ["ETH-USDT", "ETH-USDT"]


@pytest.mark.asyncio
async def test_kucoin_missing_price_is_none():
    client = KuCoinClient(
        _guard("kucoin"),
        base_url="https://kc.test",
        client=httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"data": None}))
        ),
    )
    assert await client.get_price("XYZ") is None


# ============================================================================
# FALLBACK PRICE SOURCE
# ============================================================================


@pytest.mark.asyncio
async def test_fallback_uses_next_provider_on_gap_or_error():
    broken = AsyncMock()
    broken.name = "broken"
    broken.get_price = AsyncMock(side_effect=TransientUpstreamError("down"))
    empty = AsyncMock()
    empty.name = "empty"
    empty.get_price = AsyncMock(return_value=None)
    good = AsyncMock()
    good.name = "good"
    good.get_price = AsyncMock(return_value=101.5)

    source = FallbackPriceSource([broken, empty, good])
    assert await source.get_price("ETH") == 101.5
    good.get_price.assert_awaited_once_with("ETH")


@pytest.mark.asyncio
async def test_fallback_returns_none_when_every_provider_misses():
    empty = AsyncMock()
    empty.get_price = AsyncMock(return_value=None)
    source = FallbackPriceSource([empty])
    assert await source.get_price("ETH") is None


def test_fallback_requires_a_provider():
    with pytest.raises(ValueError):
        FallbackPriceSource([])
