"""End-to-end: snapshots -> position events -> signal -> sweep -> notifications -> aggregates."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from models.database import NotificationLog, Signal, SystemPerformance, WalletPerformance
from services import message_queue
from services.consensus_detector import ConsensusDetector
from services.engine_config import update_engine_config
from services.notifier import TelegramNotifier
from services.position_ingestor import PositionIngestor
from services.price_monitor import PriceMonitor
from services.runtime import EngineRuntime, build_guard
from services.wallet_tracker import add_wallet
from utils.rate_limiter import SlidingWindowRateLimiter
from utils.utcnow import utcnow
from workers.loop import consume_queue_cycle


@pytest.mark.asyncio
async def test_consensus_pipeline(session_factory, position_provider, price_source, wallets):
    async with session_factory() as session:
        await update_engine_config(session, {"wallet_count": 3, "tps_percent": [2.0, 4.0]})
        for wallet in wallets[:4]:
            await add_wallet(session, wallet)

    opened = utcnow() - timedelta(minutes=2)
    for i, wallet in enumerate(wallets[:3]):
        position_provider.set_position(wallet, "ETH", 1.0, 100.0 + i, fill_time=opened + timedelta(seconds=i))
    position_provider.set_position(wallets[3], "ETH", -1.0, 100.0, fill_time=opened)

    ingest = await PositionIngestor(position_provider).run_cycle()
    assert ingest.counters["events"] == 4

    detector = ConsensusDetector(cooldown_seconds=3600)
    detect = await consume_queue_cycle("signal", message_queue.TOPIC_POSITION_OPEN, detector.handle_payload)
    assert detect.succeeded == 4
    assert detect.failed == 0

    async with session_factory() as session:
        signal = (await session.execute(select(Signal))).scalar_one()
    assert signal.direction == "LONG"
    assert signal.participant_count == 3
    assert signal.entry_price == pytest.approx(101.0)

    monitor = PriceMonitor(price_source)
    price_source.prices["ETH"] = 103.5
    await monitor.run_sweep()
    price_source.prices["ETH"] = 105.5
    await monitor.run_sweep()

    async with session_factory() as session:
        signal = await session.get(Signal, signal.signal_id)
    assert signal.status == "TP_HIT"

    sent = []

    def telegram(request: httpx.Request) -> httpx.Response:
        sent.append(request)
        return httpx.Response(200, json={"ok": True})

    notifier = TelegramNotifier(
        build_guard("telegram", "telegram_send", SlidingWindowRateLimiter()),
        bot_token="123:abc",
        chat_id="42",
        client=httpx.AsyncClient(transport=httpx.MockTransport(telegram)),
        base_url="https://tg.test",
    )
    notify = await consume_queue_cycle("notifier", message_queue.TOPIC_NOTIFICATION, notifier.handle_payload)
    assert notify.succeeded == 3
    assert len(sent) == 3

    async with session_factory() as session:
        logs = (await session.execute(select(NotificationLog.type).order_by(NotificationLog.id))).scalars().all()
    assert logs == ["new_signal", "PARTIAL_TP", "TP_HIT"]

    runtime = EngineRuntime()
    try:
        refresh = await runtime.refresh_performance()
    finally:
        await runtime.close()
    assert refresh.failed == 0

    async with session_factory() as session:
        system = await session.get(SystemPerformance, "all_time")
        short_wallet = (
            await session.execute(
                select(WalletPerformance).where(
                    WalletPerformance.wallet_address == wallets[3],
                    WalletPerformance.timeframe == "all_time",
                )
            )
        ).scalar_one()
    assert system.total_signals == 1
    assert system.total_wins == 1
    assert short_wallet.total_signals == 0


@pytest.mark.asyncio
async def test_failed_notification_is_retried(session_factory, monkeypatch):
    monkeypatch.setattr("config.settings.QUEUE_RETRY_DELAY_SECONDS", 0)
    async with session_factory() as session:
        await message_queue.publish(
            session,
            message_queue.TOPIC_NOTIFICATION,
            {"type": "SL_HIT", "signal_id": "s1", "pair": "ETH", "direction": "LONG", "price": 97.0},
            dedupe_key="s1:SL_HIT:",
        )

    attempts = []

    def flaky(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"ok": True})

    guard = build_guard("telegram", "telegram_send", SlidingWindowRateLimiter())
    guard.retry_config.max_attempts = 1
    notifier = TelegramNotifier(
        guard,
        bot_token="123:abc",
        chat_id="42",
        client=httpx.AsyncClient(transport=httpx.MockTransport(flaky)),
        base_url="https://tg.test",
    )

    first = await consume_queue_cycle("notifier", message_queue.TOPIC_NOTIFICATION, notifier.handle_payload)
    second = await consume_queue_cycle("notifier", message_queue.TOPIC_NOTIFICATION, notifier.handle_payload)

    assert (first.succeeded, first.failed) == (0, 1)
    assert (second.succeeded, second.failed) == (1, 0)
    assert len(attempts) == 2
