"""Wallet snapshot ingestion.

Turns each wallet's clearinghouse snapshot plus recent fills into at most
one position-open event per (wallet, pair, direction) transition. The
position row, its idempotency key and the queued event commit together.
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from interfaces import PositionProvider
from models.database import AsyncSessionLocal, IngestedEvent, WalletPosition
from models.positions import Fill, PositionOpenEvent, RawPosition
from models.types import Direction, PositionStatus
from services import message_queue
from services.engine_config import EngineConfig, load_engine_config
from services.wallet_tracker import list_active_wallets
from services.worker_state import CycleReport
from utils.errors import UpstreamError
from utils.logger import ingestion_logger as logger
from utils.utcnow import minute_bucket, utcnow


def make_event_id(wallet: str, pair: str, direction: Direction | str, entry_timestamp: datetime) -> str:
    """Deterministic idempotency key; entries in the same minute share a key."""
    packed = f"{wallet.lower()}-{pair}-{Direction(direction).value}-{minute_bucket(entry_timestamp)}"
    return hashlib.sha256(packed.encode("utf-8")).hexdigest()[:32]


def find_relevant_fill(fills: Optional[Iterable[Fill]], pair: str, direction: Direction) -> Optional[Fill]:
    """Most recent fill on ``pair`` whose side implies ``direction``."""
    best: Optional[Fill] = None
    for fill in fills or []:
        if fill.pair != pair or fill.direction != direction:
            continue
        if best is None or fill.time > best.time:
            best = fill
    return best


def filter_reason(position: RawPosition, config: EngineConfig) -> Optional[str]:
    """Why a snapshot position is ignored, or None when it passes every filter."""
    if position.pair in config.ignored_pairs:
        return "ignored_pair"
    if config.monitored_pairs and position.pair not in config.monitored_pairs:
        return "not_monitored"
    if position.notional < config.min_trade_size:
        return "below_min_size"
    if position.leverage < config.required_leverage_min:
        return "below_min_leverage"
    return None


@dataclass
class WalletIngestResult:
    wallet: str
    available: bool = True
    ingested: list[str] = field(default_factory=list)  # event ids
    duplicates: int = 0
    unchanged: int = 0
    filtered: int = 0
    superseded: int = 0


class PositionIngestor:
    """Polls wallets through a PositionProvider and records position-open events."""

    def __init__(self, provider: PositionProvider):
        self.provider = provider
        self._funding_cache: dict[str, float] = {}

    async def _funding_rate(self, pair: str) -> float:
        if pair in self._funding_cache:
            return self._funding_cache[pair]
        try:
            rate = float(await self.provider.get_funding_rate(pair) or 0.0)
        except UpstreamError as e:
            logger.warning("Funding rate unavailable, using 0", pair=pair, error=str(e))
            return 0.0
        self._funding_cache[pair] = rate
        return rate

    async def run_cycle(self, config: Optional[EngineConfig] = None) -> CycleReport:
        """Ingest every active wallet; one wallet's failure never stops the others."""
        report = CycleReport(name="ingestion")
        self._funding_cache = {}

        async with AsyncSessionLocal() as session:
            config = config or await load_engine_config(session)
            wallets = await list_active_wallets(session)

        if not wallets:
            logger.warning("No active wallets to monitor")

        for wallet in wallets:
            try:
                result = await self.ingest_wallet(wallet, config)
            except UpstreamError as e:
                logger.warning("Wallet skipped, upstream unavailable", wallet=wallet, error=str(e))
                report.record_skip("upstream")
            except Exception as e:
                logger.error("Wallet ingestion failed", wallet=wallet, error=str(e), exc_info=True)
                report.record_failure(wallet, e)
            else:
                if not result.available:
                    report.record_skip("unavailable")
                else:
                    report.record_success()
                    report.bump("events", len(result.ingested))
                    report.bump("duplicates", result.duplicates)
                    report.bump("filtered", result.filtered)
                    report.bump("superseded", result.superseded)
            if settings.WALLET_POLL_DELAY_SECONDS > 0:
                await asyncio.sleep(settings.WALLET_POLL_DELAY_SECONDS)

        report.finish()
        logger.info("Polling completed", **report.as_dict())
        return report

    async def ingest_wallet(
        self,
        wallet: str,
        config: EngineConfig,
        *,
        now: Optional[datetime] = None,
    ) -> WalletIngestResult:
        wallet = wallet.lower()
        result = WalletIngestResult(wallet=wallet)

        positions = await self.provider.get_open_positions(wallet)
        if positions is None:
            result.available = False
            return result
        fills = await self.provider.get_recent_fills(wallet) or []

        async with AsyncSessionLocal() as session:
            result.superseded = await self._supersede_closed(session, wallet, positions, now or utcnow())

            for position in positions:
                reason = filter_reason(position, config)
                if reason is not None:
                    logger.debug("Position filtered", wallet=wallet, pair=position.pair, reason=reason)
                    result.filtered += 1
                    continue
                outcome, event_id = await self._ingest_position(
                    session, wallet, position, fills, now=now or utcnow()
                )
                if outcome == "ingested":
                    result.ingested.append(event_id)
                elif outcome == "duplicate":
                    result.duplicates += 1
                else:
                    result.unchanged += 1

        return result

    async def _supersede_closed(
        self, session: AsyncSession, wallet: str, positions: list[RawPosition], now: datetime
    ) -> int:
        """Close stored positions the snapshot shows as flat or reversed."""
        live = {p.pair: p.direction.value for p in positions}
        result = await session.execute(
            select(WalletPosition).where(
                WalletPosition.wallet_address == wallet,
                WalletPosition.status == PositionStatus.OPEN.value,
            )
        )
        closed = 0
        for row in result.scalars().all():
            if live.get(row.pair) == row.direction:
                continue
            row.status = PositionStatus.CLOSED.value
            row.closed_at = now
            row.last_updated = now
            closed += 1
        if closed:
            await session.commit()
            logger.info("Superseded closed positions", wallet=wallet, count=closed)
        return closed

    async def _ingest_position(
        self,
        session: AsyncSession,
        wallet: str,
        position: RawPosition,
        fills: list[Fill],
        *,
        now: datetime,
    ) -> tuple[str, Optional[str]]:
        direction = position.direction
        fill = find_relevant_fill(fills, position.pair, direction)

        open_rows = list(
            (
                await session.execute(
                    select(WalletPosition)
                    .where(
                        WalletPosition.wallet_address == wallet,
                        WalletPosition.pair == position.pair,
                        WalletPosition.direction == direction.value,
                        WalletPosition.status == PositionStatus.OPEN.value,
                    )
                    .order_by(WalletPosition.entry_timestamp.desc(), WalletPosition.id.desc())
                )
            ).scalars().all()
        )
        latest = open_rows[0] if open_rows else None

        # Without a fill there is no new entry anchor: an existing position is
        # just refreshed, otherwise the snapshot itself is the anchor.
        if fill is None and latest is not None:
            latest.trade_size = position.size
            latest.leverage = position.leverage
            latest.last_updated = now
            await session.commit()
            return "unchanged", None
        if fill is not None and latest is not None and fill.time <= latest.entry_timestamp:
            return "unchanged", None

        entry_timestamp = fill.time if fill is not None else now
        entry_price = fill.price if fill is not None else position.entry_price
        event_id = make_event_id(wallet, position.pair, direction, entry_timestamp)

        if await session.get(IngestedEvent, event_id) is not None:
            logger.debug("Event already processed", event_id=event_id)
            return "duplicate", event_id

        funding_rate = await self._funding_rate(position.pair)

        # A newer open event for the same wallet/pair/direction replaces the old one.
        for row in open_rows:
            row.status = PositionStatus.CLOSED.value
            row.closed_at = now
            row.last_updated = now

        session.add(
            WalletPosition(
                wallet_address=wallet,
                pair=position.pair,
                direction=direction.value,
                entry_timestamp=entry_timestamp,
                entry_price=entry_price,
                trade_size=position.size,
                notional=entry_price * position.size,
                leverage=position.leverage,
                funding_rate=funding_rate,
                open_event_id=event_id,
                status=PositionStatus.OPEN.value,
                last_updated=now,
            )
        )
        session.add(IngestedEvent(event_id=event_id, created_at=now))
        event = PositionOpenEvent(
            event_id=event_id,
            wallet_address=wallet,
            pair=position.pair,
            direction=direction,
            entry_timestamp=entry_timestamp,
            entry_price=entry_price,
            trade_size=position.size,
            leverage=position.leverage,
            funding_rate=funding_rate,
        )
        await message_queue.publish(
            session,
            message_queue.TOPIC_POSITION_OPEN,
            event.model_dump(mode="json"),
            dedupe_key=event_id,
            commit=False,
        )

        try:
            await session.commit()
        except IntegrityError:
            # A concurrent ingestion recorded the same key first.
            await session.rollback()
            logger.debug("Event recorded concurrently", event_id=event_id)
            return "duplicate", event_id

        logger.info(
            "New position detected",
            wallet=wallet,
            pair=position.pair,
            direction=direction.value,
            entry_price=entry_price,
            event_id=event_id,
        )
        return "ingested", event_id
