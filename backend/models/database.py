from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    DateTime,
    Text,
    JSON,
    ForeignKey,
    Index,
    UniqueConstraint,
    event,
    select,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from utils.utcnow import utcnow
import logging

from config import settings
from models.types import PreciseFloat as Float

logger = logging.getLogger(__name__)

Base = declarative_base()


# ==================== WALLETS ====================


class Wallet(Base):
    """Wallet whose perpetual positions are polled for consensus detection"""

    __tablename__ = "wallets"

    address = Column(String, primary_key=True)  # lower-case 0x address
    label = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class WalletPosition(Base):
    """One wallet's open directional exposure, recorded per open event"""

    __tablename__ = "wallet_positions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String, nullable=False)
    pair = Column(String, nullable=False)
    direction = Column(String, nullable=False)  # LONG | SHORT
    entry_timestamp = Column(DateTime, nullable=False)
    entry_price = Column(Float, nullable=False)
    trade_size = Column(Float, nullable=False)  # absolute contracts
    notional = Column(Float, nullable=False)  # entry_price * trade_size
    leverage = Column(Integer, nullable=False, default=1)
    funding_rate = Column(Float, nullable=False, default=0.0)
    open_event_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default="OPEN")  # OPEN | CLOSED
    last_updated = Column(DateTime, default=utcnow, nullable=False)
    closed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "wallet_address", "pair", "open_event_id", name="uq_wallet_positions_open_event"
        ),
        Index("idx_wp_pair_direction_ts", "pair", "direction", "entry_timestamp"),
        Index("idx_wp_wallet_pair", "wallet_address", "pair"),
    )


class IngestedEvent(Base):
    """Idempotency keys of position-open events that were already ingested"""

    __tablename__ = "ingested_events"

    event_id = Column(String, primary_key=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("idx_ingested_events_created", "created_at"),)


# ==================== SIGNALS ====================


class Signal(Base):
    """Consensus signal for one (pair, direction)"""

    __tablename__ = "signals"

    signal_id = Column(String, primary_key=True)
    pair = Column(String, nullable=False)
    direction = Column(String, nullable=False)  # LONG | SHORT
    entry_timestamp = Column(DateTime, nullable=False)  # earliest participant entry
    entry_price = Column(Float, nullable=False)  # size-weighted (VWAP) reference price
    avg_trade_size = Column(Float, nullable=False)
    stop_loss_pct = Column(Float, nullable=False)  # negative percent
    targets_json = Column(JSON, nullable=False, default=list)  # TP percents, ascending
    funding_rate = Column(Float, nullable=False, default=0.0)
    participant_count = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="OPEN")
    notes = Column(Text, nullable=True)
    last_price = Column(Float, nullable=True)
    max_adverse_pct = Column(Float, nullable=False, default=0.0)  # worst observed excursion
    rule_version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_updated = Column(DateTime, default=utcnow, nullable=False)
    closed_at = Column(DateTime, nullable=True)

    participants = relationship("SignalParticipant", back_populates="signal", lazy="selectin")
    targets = relationship(
        "SignalTarget",
        back_populates="signal",
        lazy="selectin",
        order_by="SignalTarget.target_index",
    )

    __table_args__ = (
        Index("idx_signals_status", "status"),
        Index("idx_signals_pair_created", "pair", "created_at"),
    )


class SignalCooldown(Base):
    """Last signal per (pair, direction); claimed with a conditional write"""

    __tablename__ = "signal_cooldowns"

    pair = Column(String, primary_key=True)
    direction = Column(String, primary_key=True)
    signal_id = Column(String, nullable=False)
    last_signal_at = Column(DateTime, nullable=False)


class SignalParticipant(Base):
    """Wallet that contributed to a signal"""

    __tablename__ = "signal_participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    signal_id = Column(String, ForeignKey("signals.signal_id"), nullable=False)
    wallet_address = Column(String, nullable=False)
    entry_price = Column(Float, nullable=False)
    trade_size = Column(Float, nullable=False)
    leverage = Column(Integer, nullable=False, default=1)
    entry_timestamp = Column(DateTime, nullable=True)

    signal = relationship("Signal", back_populates="participants")

    __table_args__ = (
        UniqueConstraint("signal_id", "wallet_address", name="uq_signal_participant"),
        Index("idx_sp_wallet", "wallet_address"),
    )


class SignalTarget(Base):
    """One take-profit rung of a signal"""

    __tablename__ = "signal_targets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    signal_id = Column(String, ForeignKey("signals.signal_id"), nullable=False)
    target_index = Column(Integer, nullable=False)
    target_percent = Column(Float, nullable=False)
    target_price = Column(Float, nullable=False)
    is_hit = Column(Boolean, nullable=False, default=False)
    hit_timestamp = Column(DateTime, nullable=True)
    hit_price = Column(Float, nullable=True)

    signal = relationship("Signal", back_populates="targets")

    __table_args__ = (
        UniqueConstraint("signal_id", "target_index", name="uq_signal_target_index"),
    )


class SignalStatusHistory(Base):
    """Append-only audit trail of signal status transitions"""

    __tablename__ = "signal_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    signal_id = Column(String, nullable=False)
    status = Column(String, nullable=False)
    reason = Column(Text, nullable=True)
    price = Column(Float, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("idx_ssh_signal", "signal_id"),)


# ==================== PERFORMANCE ====================


class PerformanceRecord(Base):
    """Outcome snapshot for a (signal, timeframe) pair"""

    __tablename__ = "performance"

    signal_id = Column(String, primary_key=True)
    timeframe = Column(String, primary_key=True)  # 24h | 7d | 30d | all_time
    outcome = Column(String, nullable=False)  # WIN | LOSS | PARTIAL
    pnl = Column(Float, nullable=False, default=0.0)
    duration_sec = Column(Integer, nullable=False, default=0)
    max_drawdown_pct = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("idx_performance_timeframe", "timeframe"),)


class WalletPerformance(Base):
    """Per-wallet aggregate statistics for one timeframe"""

    __tablename__ = "wallet_performance"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String, nullable=False)
    timeframe = Column(String, nullable=False)
    success_rate = Column(Float, nullable=False, default=0.0)
    win_loss_ratio = Column(Float, nullable=False, default=0.0)
    total_pnl = Column(Float, nullable=False, default=0.0)
    avg_pnl_per_trade = Column(Float, nullable=False, default=0.0)
    participation_rate = Column(Float, nullable=False, default=0.0)
    total_signals = Column(Integer, nullable=False, default=0)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("wallet_address", "timeframe", name="uq_wallet_performance"),
        Index("idx_wallet_performance_timeframe", "timeframe"),
    )


class SystemPerformance(Base):
    """System-wide aggregate statistics for one timeframe"""

    __tablename__ = "system_performance"

    timeframe = Column(String, primary_key=True)
    total_signals = Column(Integer, nullable=False, default=0)
    total_wins = Column(Integer, nullable=False, default=0)
    total_losses = Column(Integer, nullable=False, default=0)
    success_rate = Column(Float, nullable=False, default=0.0)
    win_loss_ratio = Column(Float, nullable=False, default=0.0)
    avg_pnl = Column(Float, nullable=False, default=0.0)
    total_pnl = Column(Float, nullable=False, default=0.0)
    avg_duration_sec = Column(Float, nullable=False, default=0.0)
    avg_max_drawdown = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


# ==================== CONFIG / QUEUE / NOTIFICATIONS ====================


class EngineConfigEntry(Base):
    """Tunable engine setting, one JSON value per key"""

    __tablename__ = "engine_config"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    updated_by = Column(String, nullable=True)


class QueueMessage(Base):
    """Durable at-least-once queue message"""

    __tablename__ = "queue_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    topic = Column(String, nullable=False)
    dedupe_key = Column(String, nullable=False)
    payload_json = Column(JSON, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending | done | dead
    attempts = Column(Integer, nullable=False, default=0)
    available_at = Column(DateTime, default=utcnow, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("topic", "dedupe_key", name="uq_queue_topic_dedupe"),
        Index("idx_queue_topic_status_available", "topic", "status", "available_at"),
    )


class NotificationLog(Base):
    """Audit trail of delivered notifications"""

    __tablename__ = "notification_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String, nullable=False)
    signal_id = Column(String, nullable=True)
    message = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="sent")
    sent_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_notification_log_type", "type"),
        Index("idx_notification_log_sent_at", "sent_at"),
    )


# ==================== WORKER RUNTIME STATE ====================


class WorkerSnapshot(Base):
    """Latest cycle report per worker for the admin surface."""

    __tablename__ = "worker_snapshot"

    worker_name = Column(String, primary_key=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_run_at = Column(DateTime, nullable=True)
    running = Column(Boolean, default=False)
    current_activity = Column(String, nullable=True)
    interval_seconds = Column(Integer, default=60)
    duration_ms = Column(Integer, nullable=True)
    runs_total = Column(Integer, default=0)
    failed_runs_total = Column(Integer, default=0)
    last_error = Column(Text, nullable=True)
    stats_json = Column(JSON, default=dict)


# ==================== DATABASE SETUP ====================

# SQLite-specific: improve concurrency (WAL + busy_timeout applied in _set_sqlite_pragma)
_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for better concurrent access (WAL mode, busy timeout)."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")  # Allow concurrent reads during writes
    cursor.execute("PRAGMA busy_timeout=30000")  # Wait up to 30s when locked (ms)
    cursor.close()


# Apply pragmas on each new SQLite connection
event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


async def seed_engine_config(session: AsyncSession) -> int:
    """Insert default engine-config rows that are missing. Returns rows added."""
    from services.engine_config import DEFAULT_ENGINE_CONFIG

    existing = set((await session.execute(select(EngineConfigEntry.key))).scalars().all())
    added = 0
    for key, value in DEFAULT_ENGINE_CONFIG.model_dump().items():
        if key in existing:
            continue
        session.add(
            EngineConfigEntry(key=key, value=value, updated_at=utcnow(), updated_by="system")
        )
        added += 1
    if added:
        await session.commit()
    return added


async def init_database():
    """Create tables and seed default engine configuration."""
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSessionLocal() as session:
        added = await seed_engine_config(session)
    if added:
        logger.info("Seeded default engine config entries", count=added)


async def get_db_session() -> AsyncSession:
    """Get database session"""
    async with AsyncSessionLocal() as session:
        yield session
