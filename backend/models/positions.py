import math

from pydantic import BaseModel, Field, field_validator
from typing import Any, Optional
from datetime import datetime

from models.types import Direction
from utils.errors import PayloadValidationError
from utils.utcnow import utcfromtimestamp_ms
from utils.validation import (
    is_valid_leverage,
    is_valid_pair,
    is_valid_price,
    is_valid_trade_size,
    parse_float,
)


class RawPosition(BaseModel):
    """An open perpetual position as reported by a clearinghouse snapshot"""

    pair: str
    signed_size: float  # positive long, negative short
    entry_price: float
    leverage: int = 1

    @property
    def direction(self) -> Direction:
        return Direction.from_signed_size(self.signed_size)

    @property
    def size(self) -> float:
        return abs(self.signed_size)

    @property
    def notional(self) -> float:
        return self.entry_price * self.size

    @classmethod
    def from_clearinghouse_entry(cls, data: Any) -> Optional["RawPosition"]:
        """Parse one ``assetPositions`` entry.

        Returns None for a flat (zero size) entry. Raises PayloadValidationError
        for anything that is not a well-formed open position.
        """
        if not isinstance(data, dict):
            raise PayloadValidationError("asset position entry is not an object")
        position = data.get("position")
        if not isinstance(position, dict):
            raise PayloadValidationError("asset position entry has no position")

        pair = str(position.get("coin") or data.get("coin") or "").strip().upper()
        if not is_valid_pair(pair):
            raise PayloadValidationError(f"invalid pair symbol: {pair!r}")

        signed_size = parse_float(position.get("szi"))
        if signed_size is None:
            raise PayloadValidationError(f"{pair}: size is not a finite number")
        if signed_size == 0:
            return None
        if not is_valid_trade_size(abs(signed_size)):
            raise PayloadValidationError(f"{pair}: size out of range")

        entry_price = parse_float(position.get("entryPx"))
        if not is_valid_price(entry_price):
            raise PayloadValidationError(f"{pair}: entry price out of range")

        raw_leverage = position.get("leverage")
        if isinstance(raw_leverage, dict):
            raw_leverage = raw_leverage.get("value")
        leverage_value = parse_float(raw_leverage) if raw_leverage is not None else 1.0
        if leverage_value is None or not leverage_value.is_integer():
            raise PayloadValidationError(f"{pair}: leverage is not an integer")
        leverage = int(leverage_value)
        if not is_valid_leverage(leverage):
            raise PayloadValidationError(f"{pair}: leverage out of range")

        return cls(pair=pair, signed_size=signed_size, entry_price=entry_price, leverage=leverage)


class Fill(BaseModel):
    """A single trade execution from a wallet's fill history"""

    pair: str
    side: str  # "B" buy, "A" sell
    price: float
    size: float
    time: datetime

    @property
    def direction(self) -> Direction:
        return Direction.LONG if self.side == "B" else Direction.SHORT

    @classmethod
    def from_hyperliquid_fill(cls, data: Any) -> "Fill":
        if not isinstance(data, dict):
            raise PayloadValidationError("fill entry is not an object")
        pair = str(data.get("coin") or "").strip().upper()
        if not is_valid_pair(pair):
            raise PayloadValidationError(f"invalid fill pair: {pair!r}")
        side = str(data.get("side") or "").strip().upper()
        if side not in ("A", "B"):
            raise PayloadValidationError(f"{pair}: unknown fill side {side!r}")
        price = parse_float(data.get("px"))
        if not is_valid_price(price):
            raise PayloadValidationError(f"{pair}: fill price out of range")
        size = parse_float(data.get("sz"))
        if size is None or size < 0:
            size = 0.0
        time_ms = parse_float(data.get("time"))
        if time_ms is None or time_ms <= 0:
            raise PayloadValidationError(f"{pair}: fill time missing")
        return cls(pair=pair, side=side, price=price, size=size, time=utcfromtimestamp_ms(time_ms))


class PositionOpenEvent(BaseModel):
    """Queue payload announcing a newly-ingested wallet position"""

    event_id: str
    wallet_address: str
    pair: str
    direction: Direction
    entry_timestamp: datetime
    entry_price: float
    trade_size: float
    leverage: int = 1
    funding_rate: float = 0.0

    @field_validator("pair")
    @classmethod
    def validate_pair(cls, v: str) -> str:
        if not is_valid_pair(v):
            raise ValueError(f"invalid pair symbol: {v!r}")
        return v

    @field_validator("entry_price", "trade_size")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if not (math.isfinite(v) and v > 0):
            raise ValueError("must be a finite positive number")
        return v


class NotificationEvent(BaseModel):
    """Queue payload for the notification channel"""

    type: str  # new_signal | PARTIAL_TP | TP_HIT | SL_HIT
    signal_id: str
    pair: str
    direction: Direction
    price: float
    participant_count: Optional[int] = None
    stop_loss_price: Optional[float] = None
    target_prices: list[float] = Field(default_factory=list)
    hit_targets: list[int] = Field(default_factory=list)
    avg_leverage: Optional[float] = None
    pnl: Optional[float] = None
