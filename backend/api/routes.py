from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import (
    Signal,
    SignalStatusHistory,
    SystemPerformance,
    WalletPerformance,
    get_db_session,
)
from models.types import SignalStatus
from services import wallet_tracker
from services.engine_config import load_engine_config, update_engine_config
from services.message_queue import get_queue_depths
from services.price_monitor import close_signal_manually
from services.runtime import get_runtime
from services.worker_state import list_worker_snapshots
from utils.errors import ConfigValidationError, UpstreamError
from utils.logger import api_logger as logger
from utils.validation import WalletCreateParams

router = APIRouter()


class WalletActiveUpdate(BaseModel):
    is_active: bool


class ManualCloseRequest(BaseModel):
    price: float
    reason: Optional[str] = None


def _iso(value) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


def _signal_to_dict(signal: Signal, *, detail: bool = False) -> dict:
    data = {
        "signal_id": signal.signal_id,
        "pair": signal.pair,
        "direction": signal.direction,
        "status": signal.status,
        "entry_price": signal.entry_price,
        "entry_timestamp": _iso(signal.entry_timestamp),
        "avg_trade_size": signal.avg_trade_size,
        "stop_loss_pct": signal.stop_loss_pct,
        "targets_pct": signal.targets_json or [],
        "participant_count": signal.participant_count,
        "last_price": signal.last_price,
        "max_adverse_pct": signal.max_adverse_pct,
        "notes": signal.notes,
        "rule_version": signal.rule_version,
        "created_at": _iso(signal.created_at),
        "closed_at": _iso(signal.closed_at),
    }
    if detail:
        data["participants"] = [
            {
                "wallet_address": p.wallet_address,
                "entry_price": p.entry_price,
                "trade_size": p.trade_size,
                "leverage": p.leverage,
                "entry_timestamp": _iso(p.entry_timestamp),
            }
            for p in signal.participants
        ]
        data["targets"] = [
            {
                "index": t.target_index,
                "percent": t.target_percent,
                "price": t.target_price,
                "is_hit": bool(t.is_hit),
                "hit_timestamp": _iso(t.hit_timestamp),
                "hit_price": t.hit_price,
            }
            for t in signal.targets
        ]
    return data


# ==================== HEALTH ====================


@router.get("/health")
async def health(session: AsyncSession = Depends(get_db_session)):
    active = (
        await session.execute(
            select(func.count(Signal.signal_id)).where(
                Signal.status.in_([SignalStatus.OPEN.value, SignalStatus.PARTIAL_TP.value])
            )
        )
    ).scalar()
    return {"status": "ok", "active_signals": int(active or 0)}


# ==================== ENGINE CONFIG ====================


@router.get("/config")
async def get_config(session: AsyncSession = Depends(get_db_session)):
    config = await load_engine_config(session)
    return config.model_dump()


@router.put("/config")
async def put_config(
    updates: dict[str, Any] = Body(...),
    session: AsyncSession = Depends(get_db_session),
):
    try:
        config = await update_engine_config(session, updates, updated_by="admin")
    except ConfigValidationError as e:
        raise HTTPException(status_code=422, detail={"errors": e.errors})
    logger.info("Engine config updated", keys=sorted(updates))
    return config.model_dump()


# ==================== WALLETS ====================


@router.get("/wallets")
async def get_wallets(
    active_only: bool = Query(default=False),
    session: AsyncSession = Depends(get_db_session),
):
    wallets = await wallet_tracker.list_wallets(session, active_only=active_only)
    return [wallet_tracker.wallet_to_dict(w) for w in wallets]


@router.post("/wallets")
async def create_wallet(
    params: WalletCreateParams,
    session: AsyncSession = Depends(get_db_session),
):
    wallet = await wallet_tracker.add_wallet(session, params.address, params.label)
    return wallet_tracker.wallet_to_dict(wallet)


@router.patch("/wallets/{address}")
async def toggle_wallet(
    address: str,
    update: WalletActiveUpdate,
    session: AsyncSession = Depends(get_db_session),
):
    if not await wallet_tracker.set_wallet_active(session, address, update.is_active):
        raise HTTPException(status_code=404, detail="Wallet not found")
    return {"address": address.strip().lower(), "is_active": update.is_active}


@router.delete("/wallets/{address}")
async def delete_wallet(address: str, session: AsyncSession = Depends(get_db_session)):
    if not await wallet_tracker.remove_wallet(session, address):
        raise HTTPException(status_code=404, detail="Wallet not found")
    return {"status": "success", "address": address.strip().lower()}


# ==================== SIGNALS ====================


@router.get("/signals")
async def get_signals(
    status: Optional[str] = Query(default=None),
    pair: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_db_session),
):
    query = select(Signal)
    total_query = select(func.count(Signal.signal_id))
    if status:
        query = query.where(Signal.status == status)
        total_query = total_query.where(Signal.status == status)
    if pair:
        query = query.where(Signal.pair == pair.upper())
        total_query = total_query.where(Signal.pair == pair.upper())

    rows = (
        await session.execute(query.order_by(Signal.created_at.desc()).offset(offset).limit(limit))
    ).scalars().all()
    total = int((await session.execute(total_query)).scalar() or 0)
    return {
        "total": total,
        "offset": offset,
        "limit": limit,
        "signals": [_signal_to_dict(row) for row in rows],
    }


@router.get("/signals/{signal_id}")
async def get_signal(signal_id: str, session: AsyncSession = Depends(get_db_session)):
    signal = await session.get(Signal, signal_id)
    if signal is None:
        raise HTTPException(status_code=404, detail="Signal not found")
    history = (
        await session.execute(
            select(SignalStatusHistory)
            .where(SignalStatusHistory.signal_id == signal_id)
            .order_by(SignalStatusHistory.created_at.asc(), SignalStatusHistory.id.asc())
        )
    ).scalars().all()
    data = _signal_to_dict(signal, detail=True)
    data["history"] = [
        {"status": h.status, "reason": h.reason, "price": h.price, "created_at": _iso(h.created_at)}
        for h in history
    ]
    return data


@router.post("/signals/{signal_id}/close")
async def close_signal(
    signal_id: str,
    request: ManualCloseRequest,
    session: AsyncSession = Depends(get_db_session),
):
    if request.price <= 0:
        raise HTTPException(status_code=422, detail="price must be positive")
    closed = await close_signal_manually(
        session, signal_id, request.price, reason=request.reason or "Closed manually"
    )
    if not closed:
        raise HTTPException(status_code=409, detail="Signal is not active")
    return {"status": "success", "signal_id": signal_id}


# ==================== PERFORMANCE ====================


@router.get("/performance/system")
async def get_system_performance(session: AsyncSession = Depends(get_db_session)):
    rows = (
        await session.execute(select(SystemPerformance).order_by(SystemPerformance.timeframe.asc()))
    ).scalars().all()
    return [
        {
            "timeframe": r.timeframe,
            "total_signals": r.total_signals,
            "total_wins": r.total_wins,
            "total_losses": r.total_losses,
            "success_rate": r.success_rate,
            "win_loss_ratio": r.win_loss_ratio,
            "avg_pnl": r.avg_pnl,
            "total_pnl": r.total_pnl,
            "avg_duration_sec": r.avg_duration_sec,
            "avg_max_drawdown": r.avg_max_drawdown,
            "updated_at": _iso(r.updated_at),
        }
        for r in rows
    ]


@router.get("/performance/wallets")
async def get_wallet_performance(
    timeframe: str = Query(default="all_time"),
    limit: int = Query(default=50, ge=1, le=1000),
    session: AsyncSession = Depends(get_db_session),
):
    if timeframe not in settings.PERFORMANCE_TIMEFRAMES:
        raise HTTPException(status_code=422, detail=f"Unknown timeframe: {timeframe}")
    rows = (
        await session.execute(
            select(WalletPerformance)
            .where(WalletPerformance.timeframe == timeframe)
            .order_by(WalletPerformance.success_rate.desc(), WalletPerformance.total_pnl.desc())
            .limit(limit)
        )
    ).scalars().all()
    return [
        {
            "wallet_address": r.wallet_address,
            "timeframe": r.timeframe,
            "success_rate": r.success_rate,
            "win_loss_ratio": r.win_loss_ratio,
            "total_pnl": r.total_pnl,
            "avg_pnl_per_trade": r.avg_pnl_per_trade,
            "participation_rate": r.participation_rate,
            "total_signals": r.total_signals,
            "wins": r.wins,
            "losses": r.losses,
            "updated_at": _iso(r.updated_at),
        }
        for r in rows
    ]


# ==================== OPERATIONS ====================


@router.get("/workers")
async def get_workers(session: AsyncSession = Depends(get_db_session)):
    return {"workers": await list_worker_snapshots(session)}


@router.get("/status")
async def get_status(session: AsyncSession = Depends(get_db_session)):
    return {
        **get_runtime().get_status(),
        "queues": await get_queue_depths(session),
    }


@router.post("/notifications/test")
async def send_test_notification():
    notifier = get_runtime().notifier
    if not notifier.configured:
        raise HTTPException(status_code=400, detail="Telegram is not configured")
    try:
        sent = await notifier.send_test_message()
    except UpstreamError as e:
        logger.warning("Test notification failed", error=str(e))
        raise HTTPException(status_code=502, detail=str(e))
    return {"status": "success" if sent else "failed"}
