"""Wires upstream guards, clients and the pipeline services together.

Workers and the admin API share one ``EngineRuntime`` per process, so
rate-limit windows and breaker state are shared by every caller of an
upstream inside that process.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from sqlalchemy import select

from config import settings
from models.database import AsyncSessionLocal, Wallet
from services import performance
from services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from services.consensus_detector import ConsensusDetector
from services.hyperliquid import HyperliquidClient
from services.kucoin import KuCoinClient
from services.message_queue import purge_done_messages
from services.notifier import TelegramNotifier
from services.position_ingestor import PositionIngestor
from services.price_monitor import PriceMonitor
from services.providers.price_sources import FallbackPriceSource
from services.upstream_guard import UpstreamGuard
from services.worker_state import CycleReport
from utils.logger import get_logger
from utils.rate_limiter import SlidingWindowRateLimiter
from utils.retry import RetryConfig
from utils.utcnow import utcnow

logger = get_logger("runtime")


def build_guard(name: str, endpoint: str, rate_limiter: SlidingWindowRateLimiter) -> UpstreamGuard:
    return UpstreamGuard(
        name,
        endpoint,
        rate_limiter=rate_limiter,
        breaker=CircuitBreaker(
            name,
            CircuitBreakerConfig(
                failure_threshold=settings.CB_FAILURE_THRESHOLD,
                reset_timeout_seconds=settings.CB_RESET_TIMEOUT_SECONDS,
            ),
        ),
        retry_config=RetryConfig(
            max_attempts=settings.MAX_RETRY_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
        ),
        timeout_seconds=settings.API_TIMEOUT_SECONDS,
    )


class EngineRuntime:
    def __init__(self):
        self.rate_limiter = SlidingWindowRateLimiter(max_waits=settings.RATE_LIMIT_MAX_WAITS)
        self.hyperliquid_guard = build_guard("hyperliquid", "hyperliquid_info", self.rate_limiter)
        self.kucoin_guard = build_guard("kucoin", "kucoin_public", self.rate_limiter)
        self.telegram_guard = build_guard("telegram", "telegram_send", self.rate_limiter)

        self.hyperliquid = HyperliquidClient(self.hyperliquid_guard)
        self.kucoin = KuCoinClient(self.kucoin_guard)
        self.price_source = FallbackPriceSource([self.hyperliquid, self.kucoin])

        self.ingestor = PositionIngestor(self.hyperliquid)
        self.detector = ConsensusDetector()
        self.price_monitor = PriceMonitor(self.price_source)
        self.notifier = TelegramNotifier(self.telegram_guard)

    @property
    def guards(self) -> list[UpstreamGuard]:
        return [self.hyperliquid_guard, self.kucoin_guard, self.telegram_guard]

    def get_status(self) -> dict:
        return {
            "guards": [guard.get_status() for guard in self.guards],
            "rate_limits": self.rate_limiter.get_status(),
            "telegram_configured": self.notifier.configured,
        }

    async def refresh_performance(self) -> CycleReport:
        """Recompute wallet and system aggregates, then apply retention."""
        report = CycleReport(name="performance")
        now = utcnow()
        async with AsyncSessionLocal() as session:
            wallets = list((await session.execute(select(Wallet.address))).scalars().all())
            for timeframe in settings.PERFORMANCE_TIMEFRAMES:
                for wallet in wallets:
                    await performance.calculate_wallet_performance(session, wallet, timeframe, now=now)
                    report.bump("wallet_rows")
                stats = await performance.calculate_system_performance(session, timeframe, now=now)
                if stats is None:
                    report.record_skip("empty")
                else:
                    report.record_success("system_rows")
            report.bump("performance_purged", await performance.cleanup_performance(session, now=now))
            report.bump("events_purged", await performance.cleanup_ingested_events(session, now=now))
            await session.commit()

            purged = await purge_done_messages(
                session, now - timedelta(days=settings.INGESTED_EVENT_RETENTION_DAYS)
            )
            report.bump("queue_purged", purged)

        report.finish()
        logger.info("Performance refresh completed", **report.as_dict())
        return report

    async def close(self):
        await self.hyperliquid.close()
        await self.kucoin.close()
        await self.notifier.close()


_runtime: Optional[EngineRuntime] = None


def get_runtime() -> EngineRuntime:
    global _runtime
    if _runtime is None:
        _runtime = EngineRuntime()
    return _runtime
