"""Multi-wallet consensus detection.

Each position-open event re-evaluates every OPEN position inside the
trailing window for its (pair, direction), collapsed to one entry per
wallet. When enough distinct wallets agree and the (pair, direction) is
out of cooldown, a Signal is created together with its participants,
take-profit ladder, status history row and "new signal" notification,
all in one transaction.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import (
    AsyncSessionLocal,
    Signal,
    SignalCooldown,
    SignalParticipant,
    SignalStatusHistory,
    SignalTarget,
    WalletPosition,
)
from models.positions import NotificationEvent, PositionOpenEvent
from models.types import Direction, PositionStatus, SignalStatus
from services import message_queue
from services.engine_config import EngineConfig, load_engine_config
from utils.logger import detector_logger as logger
from utils.utcnow import utcnow


@dataclass
class ConsensusEntry:
    """One wallet's contribution to a consensus window."""

    wallet_address: str
    entry_price: float
    trade_size: float
    leverage: int
    entry_timestamp: datetime
    funding_rate: float = 0.0
    seq: int = 0  # insertion order, last tie-breaker

    @classmethod
    def from_position(cls, row: WalletPosition) -> "ConsensusEntry":
        return cls(
            wallet_address=row.wallet_address,
            entry_price=float(row.entry_price),
            trade_size=float(row.trade_size),
            leverage=int(row.leverage or 1),
            entry_timestamp=row.entry_timestamp,
            funding_rate=float(row.funding_rate or 0.0),
            seq=int(row.id or 0),
        )


@dataclass
class DetectionResult:
    outcome: str  # created | below_quorum | cooldown | filtered
    pair: str
    direction: str
    wallet_count: int = 0
    signal_id: Optional[str] = None
    participants: list[str] = field(default_factory=list)

    @property
    def created(self) -> bool:
        return self.outcome == "created"


# ==================== PURE HELPERS ====================


def latest_entry_per_wallet(entries: Iterable[ConsensusEntry]) -> list[ConsensusEntry]:
    """Keep each wallet's most recent entry (by entry time, then insertion order)."""
    latest: dict[str, ConsensusEntry] = {}
    for entry in entries:
        current = latest.get(entry.wallet_address)
        if current is None or (entry.entry_timestamp, entry.seq) > (current.entry_timestamp, current.seq):
            latest[entry.wallet_address] = entry
    return sorted(latest.values(), key=lambda e: (e.entry_timestamp, e.seq))


def weighted_entry_price(entries: Sequence[ConsensusEntry]) -> float:
    """Size-weighted average entry price; plain mean if every size is zero."""
    total_size = sum(e.trade_size for e in entries)
    if total_size <= 0:
        return sum(e.entry_price for e in entries) / len(entries)
    return sum(e.entry_price * e.trade_size for e in entries) / total_size


def stop_loss_price(entry_price: float, stop_loss_pct: float, direction: Direction | str) -> float:
    """Absolute stop price: below entry for LONG, above entry for SHORT."""
    magnitude = abs(stop_loss_pct) / 100.0
    if Direction(direction) == Direction.LONG:
        return entry_price * (1 - magnitude)
    return entry_price * (1 + magnitude)


def target_prices(entry_price: float, targets_pct: Sequence[float], direction: Direction | str) -> list[float]:
    """Absolute take-profit prices: above entry for LONG, below entry for SHORT."""
    sign = Direction(direction).multiplier
    return [entry_price * (1 + sign * pct / 100.0) for pct in targets_pct]


# ==================== DETECTOR ====================


class ConsensusDetector:
    """Promotes a trailing (pair, direction) window to a Signal once quorum is met."""

    def __init__(self, cooldown_seconds: Optional[int] = None, rule_version: Optional[int] = None):
        self.cooldown_seconds = (
            settings.SIGNAL_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        )
        self.rule_version = settings.SIGNAL_RULE_VERSION if rule_version is None else rule_version
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _get_lock(self, pair: str, direction: str) -> asyncio.Lock:
        key = (pair, direction)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def handle_payload(self, payload: dict[str, Any]) -> DetectionResult:
        """Queue handler: validates the payload then evaluates its window."""
        event = PositionOpenEvent.model_validate(payload)
        return await self.evaluate(event.pair, event.direction)

    async def evaluate(
        self,
        pair: str,
        direction: Direction | str,
        *,
        config: Optional[EngineConfig] = None,
        now: Optional[datetime] = None,
        stop_loss_pct: Optional[float] = None,
        targets_pct: Optional[list[float]] = None,
    ) -> DetectionResult:
        """Re-evaluate the trailing window. SL/TP default to the engine config."""
        direction = Direction(direction)
        # Serializes evaluators in this process; the cooldown row covers other processes.
        async with self._get_lock(pair, direction.value):
            async with AsyncSessionLocal() as session:
                return await self._evaluate(
                    session,
                    pair,
                    direction,
                    config=config,
                    now=now,
                    stop_loss_pct=stop_loss_pct,
                    targets_pct=targets_pct,
                )

    async def _load_window(
        self, session: AsyncSession, pair: str, direction: Direction, since: datetime
    ) -> list[ConsensusEntry]:
        result = await session.execute(
            select(WalletPosition)
            .where(
                WalletPosition.pair == pair,
                WalletPosition.direction == direction.value,
                WalletPosition.status == PositionStatus.OPEN.value,
                WalletPosition.entry_timestamp >= since,
            )
            .order_by(WalletPosition.entry_timestamp.asc(), WalletPosition.id.asc())
        )
        return [ConsensusEntry.from_position(row) for row in result.scalars().all()]

    async def _evaluate(
        self,
        session: AsyncSession,
        pair: str,
        direction: Direction,
        *,
        config: Optional[EngineConfig],
        now: Optional[datetime],
        stop_loss_pct: Optional[float] = None,
        targets_pct: Optional[list[float]] = None,
    ) -> DetectionResult:
        config = config or await load_engine_config(session)
        now = now or utcnow()

        if not config.is_pair_allowed(pair):
            return DetectionResult("filtered", pair, direction.value)

        window_start = now - timedelta(seconds=config.time_window_seconds)
        entries = latest_entry_per_wallet(await self._load_window(session, pair, direction, window_start))
        wallets = [e.wallet_address for e in entries]

        if len(entries) < config.wallet_count:
            logger.debug(
                "Quorum not reached",
                pair=pair,
                direction=direction.value,
                wallets=len(entries),
                required=config.wallet_count,
            )
            return DetectionResult("below_quorum", pair, direction.value, len(entries), participants=wallets)

        signal_id = str(uuid.uuid4())
        if not await self._claim_cooldown(session, pair, direction, signal_id, now):
            await session.rollback()
            logger.info("Signal suppressed by cooldown", pair=pair, direction=direction.value, wallets=len(entries))
            return DetectionResult("cooldown", pair, direction.value, len(entries), participants=wallets)

        signal = self._build_signal(
            signal_id,
            pair,
            direction,
            entries,
            config.default_sl_percent if stop_loss_pct is None else stop_loss_pct,
            list(config.tps_percent if targets_pct is None else targets_pct),
            now,
        )
        session.add(signal)
        session.add(
            SignalStatusHistory(
                signal_id=signal_id,
                status=SignalStatus.OPEN.value,
                reason=f"Consensus of {len(entries)} wallets",
                price=signal.entry_price,
                created_at=now,
            )
        )
        notification = NotificationEvent(
            type="new_signal",
            signal_id=signal_id,
            pair=pair,
            direction=direction,
            price=signal.entry_price,
            participant_count=len(entries),
            stop_loss_price=stop_loss_price(signal.entry_price, signal.stop_loss_pct, direction),
            target_prices=[t.target_price for t in signal.targets],
            avg_leverage=sum(e.leverage for e in entries) / len(entries),
        )
        await message_queue.publish(
            session,
            message_queue.TOPIC_NOTIFICATION,
            notification.model_dump(mode="json"),
            dedupe_key=f"{signal_id}:new_signal",
            commit=False,
        )

        try:
            await session.commit()
        except IntegrityError:
            # Another process created the cooldown row first.
            await session.rollback()
            return DetectionResult("cooldown", pair, direction.value, len(entries), participants=wallets)

        logger.info(
            "Consensus signal created",
            signal_id=signal_id,
            pair=pair,
            direction=direction.value,
            entry_price=signal.entry_price,
            wallets=len(entries),
        )
        return DetectionResult("created", pair, direction.value, len(entries), signal_id, wallets)

    async def _claim_cooldown(
        self, session: AsyncSession, pair: str, direction: Direction, signal_id: str, now: datetime
    ) -> bool:
        """Conditionally take the (pair, direction) cooldown slot inside the current transaction."""
        cutoff = now - timedelta(seconds=self.cooldown_seconds)
        result = await session.execute(
            update(SignalCooldown)
            .where(
                SignalCooldown.pair == pair,
                SignalCooldown.direction == direction.value,
                SignalCooldown.last_signal_at <= cutoff,
            )
            .values(signal_id=signal_id, last_signal_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return True

        existing = await session.execute(
            select(SignalCooldown.signal_id).where(
                SignalCooldown.pair == pair, SignalCooldown.direction == direction.value
            )
        )
        if existing.first() is not None:
            return False

        session.add(SignalCooldown(pair=pair, direction=direction.value, signal_id=signal_id, last_signal_at=now))
        try:
            await session.flush()
        except IntegrityError:
            return False
        return True

    def _build_signal(
        self,
        signal_id: str,
        pair: str,
        direction: Direction,
        entries: list[ConsensusEntry],
        stop_loss_pct: float,
        targets_pct: list[float],
        now: datetime,
    ) -> Signal:
        entry_price = weighted_entry_price(entries)
        signal = Signal(
            signal_id=signal_id,
            pair=pair,
            direction=direction.value,
            entry_timestamp=min(e.entry_timestamp for e in entries),
            entry_price=entry_price,
            avg_trade_size=sum(e.trade_size for e in entries) / len(entries),
            stop_loss_pct=stop_loss_pct,
            targets_json=targets_pct,
            funding_rate=sum(e.funding_rate for e in entries) / len(entries),
            participant_count=len(entries),
            status=SignalStatus.OPEN.value,
            notes=None,
            max_adverse_pct=0.0,
            rule_version=self.rule_version,
            created_at=now,
            last_updated=now,
        )
        signal.participants = [
            SignalParticipant(
                signal_id=signal_id,
                wallet_address=e.wallet_address,
                entry_price=e.entry_price,
                trade_size=e.trade_size,
                leverage=e.leverage,
                entry_timestamp=e.entry_timestamp,
            )
            for e in entries
        ]
        signal.targets = [
            SignalTarget(
                signal_id=signal_id,
                target_index=index,
                target_percent=pct,
                target_price=price,
                is_hit=False,
            )
            for index, (pct, price) in enumerate(
                zip(targets_pct, target_prices(entry_price, targets_pct, direction))
            )
        ]
        return signal
