"""Shared fixtures for consensus engine tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from datetime import datetime
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from models.database import Base, seed_engine_config
from models.positions import Fill, RawPosition
from services import (
    consensus_detector,
    message_queue,
    notifier,
    position_ingestor,
    price_monitor,
    runtime,
)

# Modules that open their own sessions through a module-level AsyncSessionLocal.
SESSION_MODULES = (
    consensus_detector,
    message_queue,
    notifier,
    position_ingestor,
    price_monitor,
    runtime,
)

WALLETS = [f"0x{str(i) * 40}" for i in range(1, 10)]


@pytest_asyncio.fixture
async def session_factory(tmp_path, monkeypatch):
    """Temporary SQLite database wired into every pipeline module."""
    db_path = tmp_path / "consensus_test.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with factory() as session:
        await seed_engine_config(session)

    for module in SESSION_MODULES:
        monkeypatch.setattr(module, "AsyncSessionLocal", factory)
    monkeypatch.setattr("config.settings.WALLET_POLL_DELAY_SECONDS", 0.0)
    monkeypatch.setattr("config.settings.PAIR_SWEEP_DELAY_SECONDS", 0.0)
    try:
        yield factory
    finally:
        await engine.dispose()


class FakePositionProvider:
    """In-memory PositionProvider keyed by wallet."""

    def __init__(self):
        self.positions: dict[str, Optional[list[RawPosition]]] = {}
        self.fills: dict[str, list[Fill]] = {}
        self.funding: dict[str, float] = {}
        self.calls: list[str] = []

    def set_position(
        self,
        wallet: str,
        pair: str,
        signed_size: float,
        entry_price: float,
        *,
        leverage: int = 5,
        fill_time: Optional[datetime] = None,
        fill_price: Optional[float] = None,
    ):
        self.positions.setdefault(wallet, []).append(
            RawPosition(pair=pair, signed_size=signed_size, entry_price=entry_price, leverage=leverage)
        )
        if fill_time is not None:
            self.fills.setdefault(wallet, []).append(
                Fill(
                    pair=pair,
                    side="B" if signed_size > 0 else "A",
                    price=fill_price or entry_price,
                    size=abs(signed_size),
                    time=fill_time,
                )
            )

    async def get_open_positions(self, wallet: str):
        self.calls.append(wallet)
        return self.positions.get(wallet, [])

    async def get_recent_fills(self, wallet: str):
        return self.fills.get(wallet, [])

    async def get_funding_rate(self, pair: str) -> float:
        return self.funding.get(pair, 0.0)


class FakePriceSource:
    name = "fake"

    def __init__(self, prices: Optional[dict[str, Optional[float]]] = None):
        self.prices = dict(prices or {})
        self.requests: list[str] = []

    async def get_price(self, pair: str) -> Optional[float]:
        self.requests.append(pair)
        return self.prices.get(pair)


@pytest.fixture
def position_provider():
    return FakePositionProvider()


@pytest.fixture
def price_source():
    return FakePriceSource()


@pytest.fixture
def base_time():
    return datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
def wallets():
    return list(WALLETS)
