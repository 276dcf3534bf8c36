import math
import re
from typing import Any, Optional
from pydantic import BaseModel, field_validator, Field


# Ethereum address regex
ETH_ADDRESS_REGEX = re.compile(r"^0x[a-fA-F0-9]{40}$")
PAIR_REGEX = re.compile(r"^[A-Z0-9]{2,10}$")

MAX_REASONABLE_PRICE = 10_000_000.0
MAX_REASONABLE_SIZE = 1_000_000.0


def validate_eth_address(address: str) -> str:
    """Validate Ethereum address format and return it lower-cased"""
    if not address:
        raise ValueError("Address cannot be empty")

    address = address.strip()

    if not ETH_ADDRESS_REGEX.match(address):
        raise ValueError(f"Invalid Ethereum address format: {address}")

    return address.lower()


def is_valid_wallet_address(address: Any) -> bool:
    return isinstance(address, str) and bool(ETH_ADDRESS_REGEX.match(address.strip()))


def is_valid_pair(pair: Any) -> bool:
    return isinstance(pair, str) and bool(PAIR_REGEX.match(pair))


def is_finite_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def is_valid_price(price: Any) -> bool:
    return is_finite_number(price) and 0 < price < MAX_REASONABLE_PRICE


def is_valid_trade_size(size: Any) -> bool:
    return is_finite_number(size) and 0 < size < MAX_REASONABLE_SIZE


def is_valid_leverage(leverage: Any) -> bool:
    return isinstance(leverage, int) and not isinstance(leverage, bool) and 1 <= leverage <= 100


def parse_float(value: Any) -> Optional[float]:
    """Parse exchange numeric strings; None for anything non-finite."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


class WalletAddressParam(BaseModel):
    """Validated wallet address parameter"""

    address: str

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        return validate_eth_address(v)


class WalletCreateParams(WalletAddressParam):
    label: Optional[str] = Field(default=None, max_length=64)
