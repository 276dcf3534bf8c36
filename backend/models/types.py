"""Shared SQLAlchemy column types and domain enums used across ORM models."""

from __future__ import annotations

import enum
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import Numeric, TypeDecorator


class PreciseFloat(TypeDecorator):
    """Persist float-like values through Decimal-backed NUMERIC storage.

    Prices and sizes stay Python ``float`` in services while the database
    keeps exact decimal text, so a stored target price reads back unchanged.
    """

    impl = Numeric(24, 12, asdecimal=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        if isinstance(value, Decimal):
            return value
        try:
            return Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid numeric value for PreciseFloat: {value!r}") from exc

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return float(value)


class Direction(str, enum.Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def multiplier(self) -> int:
        return 1 if self is Direction.LONG else -1

    @classmethod
    def from_signed_size(cls, size: float) -> "Direction":
        return cls.LONG if size > 0 else cls.SHORT


class SignalStatus(str, enum.Enum):
    OPEN = "OPEN"
    PARTIAL_TP = "PARTIAL_TP"
    TP_HIT = "TP_HIT"
    SL_HIT = "SL_HIT"
    CLOSED_MANUAL = "CLOSED_MANUAL"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_SIGNAL_STATUSES


TERMINAL_SIGNAL_STATUSES = frozenset(
    {SignalStatus.TP_HIT, SignalStatus.SL_HIT, SignalStatus.CLOSED_MANUAL}
)
ACTIVE_SIGNAL_STATUSES = frozenset({SignalStatus.OPEN, SignalStatus.PARTIAL_TP})


class Outcome(str, enum.Enum):
    WIN = "WIN"
    LOSS = "LOSS"
    PARTIAL = "PARTIAL"


class PositionStatus(str, enum.Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
