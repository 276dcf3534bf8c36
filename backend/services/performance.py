"""Outcome, PnL and aggregate performance for closed signals.

The pure functions at the top carry every formula; the async helpers
below only read and write rows around them.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import (
    IngestedEvent,
    PerformanceRecord,
    Signal,
    SignalParticipant,
    SystemPerformance,
    WalletPerformance,
)
from models.types import Direction, Outcome, SignalStatus
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("performance")

FUNDING_INTERVAL_HOURS = 8
ALL_TIME = "all_time"
TIMEFRAME_DELTAS = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


# ==================== PURE FORMULAS ====================


def funding_periods(duration_seconds: float) -> int:
    """Number of 8-hour funding intervals touched, rounded up."""
    if duration_seconds <= 0:
        return 0
    return math.ceil((duration_seconds / 3600.0) / FUNDING_INTERVAL_HOURS)


def calculate_funding_cost(
    funding_rate: float, size: float, entry_price: float, duration_seconds: float
) -> float:
    """Approximate funding paid while the position was open.

    Always returned as a non-negative cost: a negative funding rate is not
    treated as income.
    """
    return abs(funding_rate * size * entry_price * funding_periods(duration_seconds))


def calculate_pnl(
    entry_price: float,
    exit_price: float,
    size: float,
    direction: Direction | str,
    funding_rate: float = 0.0,
    duration_seconds: float = 0.0,
) -> float:
    direction = Direction(direction)
    trade_pnl = direction.multiplier * (exit_price - entry_price) * size
    return trade_pnl - calculate_funding_cost(funding_rate, size, entry_price, duration_seconds)


def determine_outcome(status: SignalStatus | str, pnl: float) -> Outcome:
    status = SignalStatus(status)
    if status == SignalStatus.TP_HIT:
        return Outcome.WIN
    if status == SignalStatus.SL_HIT:
        return Outcome.LOSS
    if status == SignalStatus.PARTIAL_TP:
        return Outcome.PARTIAL
    return Outcome.WIN if pnl > 0 else Outcome.LOSS


def excursion_pct(entry_price: float, price: float, direction: Direction | str) -> float:
    """Signed percent move in the signal's favour (negative is adverse)."""
    return Direction(direction).multiplier * (price - entry_price) / entry_price * 100.0


def calculate_max_drawdown(
    entry_price: float, prices: Iterable[float], direction: Direction | str
) -> float:
    """Largest adverse excursion over the observed prices, as a positive percent."""
    worst = 0.0
    for price in prices:
        worst = min(worst, excursion_pct(entry_price, price, direction))
    return abs(worst)


def timeframe_start(timeframe: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Lower bound on signal creation time for a timeframe; None for all_time."""
    if timeframe == ALL_TIME:
        return None
    delta = TIMEFRAME_DELTAS.get(timeframe)
    if delta is None:
        raise ValueError(f"Unknown timeframe: {timeframe}")
    return (now or utcnow()) - delta


def timeframes_for(created_at: datetime, now: Optional[datetime] = None) -> list[str]:
    """Retained timeframes whose window contains a signal created at ``created_at``."""
    now = now or utcnow()
    out = []
    for timeframe in settings.PERFORMANCE_TIMEFRAMES:
        start = timeframe_start(timeframe, now)
        if start is None or created_at >= start:
            out.append(timeframe)
    return out


def _ratio(wins: int, losses: int) -> float:
    return wins / losses if losses > 0 else float(wins)


# ==================== PER-SIGNAL RECORDS ====================


async def record_signal_close(
    session: AsyncSession,
    signal: Signal,
    *,
    exit_price: float,
    outcome_status: SignalStatus | str,
    closed_at: Optional[datetime] = None,
    commit: bool = False,
) -> list[PerformanceRecord]:
    """Write one performance row per retained timeframe for a closing signal.

    ``outcome_status`` is the status that decides the outcome (the terminal
    status, or the pre-close status for a manual close).
    """
    closed_at = closed_at or utcnow()
    opened_at = signal.created_at or closed_at
    duration_seconds = max(0.0, (closed_at - opened_at).total_seconds())

    pnl = calculate_pnl(
        signal.entry_price,
        exit_price,
        signal.avg_trade_size,
        signal.direction,
        funding_rate=signal.funding_rate or 0.0,
        duration_seconds=duration_seconds,
    )
    outcome = determine_outcome(outcome_status, pnl)
    # Worst sweep observation, including the closing price itself
    drawdown = max(
        float(signal.max_adverse_pct or 0.0),
        calculate_max_drawdown(signal.entry_price, [exit_price], signal.direction),
    )

    records: list[PerformanceRecord] = []
    for timeframe in timeframes_for(opened_at, closed_at):
        row = await session.get(PerformanceRecord, (signal.signal_id, timeframe))
        if row is None:
            row = PerformanceRecord(signal_id=signal.signal_id, timeframe=timeframe)
            session.add(row)
        row.outcome = outcome.value
        row.pnl = pnl
        row.duration_sec = int(duration_seconds)
        row.max_drawdown_pct = drawdown
        row.updated_at = closed_at
        records.append(row)

    logger.info(
        "Signal performance recorded",
        signal_id=signal.signal_id,
        outcome=outcome.value,
        pnl=round(pnl, 6),
        timeframes=[r.timeframe for r in records],
    )
    if commit:
        await session.commit()
    return records


# ==================== AGGREGATES ====================


async def calculate_wallet_performance(
    session: AsyncSession,
    wallet_address: str,
    timeframe: str = ALL_TIME,
    *,
    now: Optional[datetime] = None,
    persist: bool = True,
) -> dict:
    now = now or utcnow()
    start = timeframe_start(timeframe, now)

    query = (
        select(Signal.signal_id, PerformanceRecord.outcome, PerformanceRecord.pnl)
        .join(SignalParticipant, SignalParticipant.signal_id == Signal.signal_id)
        .outerjoin(
            PerformanceRecord,
            (PerformanceRecord.signal_id == Signal.signal_id) & (PerformanceRecord.timeframe == timeframe),
        )
        .where(SignalParticipant.wallet_address == wallet_address)
    )
    count_query = select(func.count(Signal.signal_id))
    if start is not None:
        query = query.where(Signal.created_at >= start)
        count_query = count_query.where(Signal.created_at >= start)

    rows = (await session.execute(query)).all()
    total = len(rows)
    wins = sum(1 for r in rows if r.outcome == Outcome.WIN.value)
    losses = sum(1 for r in rows if r.outcome == Outcome.LOSS.value)
    total_pnl = sum(float(r.pnl or 0.0) for r in rows)
    system_count = int((await session.execute(count_query)).scalar() or 0) or 1

    stats = {
        "wallet_address": wallet_address,
        "timeframe": timeframe,
        "success_rate": (wins / total) * 100 if total else 0.0,
        "win_loss_ratio": _ratio(wins, losses) if total else 0.0,
        "total_pnl": total_pnl,
        "avg_pnl_per_trade": total_pnl / total if total else 0.0,
        "participation_rate": (total / system_count) * 100 if total else 0.0,
        "total_signals": total,
        "wins": wins,
        "losses": losses,
    }

    if persist:
        existing = (
            await session.execute(
                select(WalletPerformance).where(
                    WalletPerformance.wallet_address == wallet_address,
                    WalletPerformance.timeframe == timeframe,
                )
            )
        ).scalar_one_or_none()
        if existing is None:
            existing = WalletPerformance(wallet_address=wallet_address, timeframe=timeframe)
            session.add(existing)
        for key, value in stats.items():
            setattr(existing, key, value)
        existing.updated_at = now
    return stats


async def calculate_system_performance(
    session: AsyncSession,
    timeframe: str = ALL_TIME,
    *,
    now: Optional[datetime] = None,
    persist: bool = True,
) -> Optional[dict]:
    """System-wide summary over performance rows of ``timeframe``. None when empty."""
    now = now or utcnow()
    result = await session.execute(
        select(
            func.count(PerformanceRecord.signal_id),
            func.sum(case((PerformanceRecord.outcome == Outcome.WIN.value, 1), else_=0)),
            func.sum(case((PerformanceRecord.outcome == Outcome.LOSS.value, 1), else_=0)),
            func.avg(PerformanceRecord.pnl),
            func.sum(PerformanceRecord.pnl),
            func.avg(PerformanceRecord.duration_sec),
            func.avg(PerformanceRecord.max_drawdown_pct),
        ).where(PerformanceRecord.timeframe == timeframe)
    )
    total, wins, losses, avg_pnl, total_pnl, avg_duration, avg_drawdown = result.one()
    total = int(total or 0)
    if total == 0:
        return None
    wins = int(wins or 0)
    losses = int(losses or 0)

    stats = {
        "timeframe": timeframe,
        "total_signals": total,
        "total_wins": wins,
        "total_losses": losses,
        "success_rate": (wins / total) * 100,
        "win_loss_ratio": _ratio(wins, losses),
        "avg_pnl": float(avg_pnl or 0.0),
        "total_pnl": float(total_pnl or 0.0),
        "avg_duration_sec": float(avg_duration or 0.0),
        "avg_max_drawdown": float(avg_drawdown or 0.0),
    }

    if persist:
        row = await session.get(SystemPerformance, timeframe)
        if row is None:
            row = SystemPerformance(timeframe=timeframe)
            session.add(row)
        for key, value in stats.items():
            setattr(row, key, value)
        row.updated_at = now
    return stats


async def cleanup_performance(
    session: AsyncSession, retention_days: Optional[int] = None, *, now: Optional[datetime] = None
) -> int:
    """Delete rolling-window performance rows older than the retention period."""
    days = settings.PERFORMANCE_RETENTION_DAYS if retention_days is None else retention_days
    cutoff = (now or utcnow()) - timedelta(days=days)
    result = await session.execute(
        delete(PerformanceRecord).where(
            PerformanceRecord.timeframe != ALL_TIME, PerformanceRecord.updated_at < cutoff
        )
    )
    return int(result.rowcount or 0)


async def cleanup_ingested_events(
    session: AsyncSession, retention_days: Optional[int] = None, *, now: Optional[datetime] = None
) -> int:
    days = settings.INGESTED_EVENT_RETENTION_DAYS if retention_days is None else retention_days
    cutoff = (now or utcnow()) - timedelta(days=days)
    result = await session.execute(delete(IngestedEvent).where(IngestedEvent.created_at < cutoff))
    return int(result.rowcount or 0)
