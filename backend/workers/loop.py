"""Shared periodic loop for the pipeline workers.

Each worker supplies one cycle coroutine returning a CycleReport and an
interval coroutine; the loop writes a DB worker snapshot before and after
every cycle so the admin API can show progress without talking to the
worker process.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from config import settings
from models.database import AsyncSessionLocal, init_database
from services.message_queue import consume_batch
from services.runtime import get_runtime
from services.worker_state import CycleReport, write_worker_snapshot
from utils.logger import setup_logging, worker_logger

CycleFn = Callable[[], Awaitable[CycleReport]]
IntervalFn = Callable[[], Awaitable[float]]

MIN_SLEEP_SECONDS = 0.5


async def _snapshot(worker_name: str, **kwargs) -> None:
    try:
        async with AsyncSessionLocal() as session:
            await write_worker_snapshot(session, worker_name, **kwargs)
    except Exception as exc:
        # Status reporting must never stop the worker itself.
        worker_logger.with_context(worker=worker_name).warning("Worker snapshot write failed", error=str(exc))


async def run_worker_loop(worker_name: str, cycle: CycleFn, interval: IntervalFn) -> None:
    logger = worker_logger.with_context(worker=worker_name)
    logger.info("Worker started")

    await _snapshot(
        worker_name,
        running=False,
        current_activity="Worker started; first cycle pending.",
        interval_seconds=int(await interval()),
    )

    while True:
        interval_seconds = await interval()
        try:
            await _snapshot(
                worker_name,
                running=True,
                current_activity="Running cycle...",
                interval_seconds=int(interval_seconds),
            )
            report = await cycle()
            await _snapshot(
                worker_name,
                running=False,
                current_activity="Idle - waiting for next cycle.",
                interval_seconds=int(interval_seconds),
                report=report,
            )
            logger.info(
                "Cycle complete",
                succeeded=report.succeeded,
                skipped=report.skipped,
                failed=report.failed,
                duration_ms=report.duration_ms,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Cycle failed", error=str(exc), exc_info=True)
            await _snapshot(
                worker_name,
                running=False,
                current_activity=f"Last cycle error: {exc}",
                interval_seconds=int(interval_seconds),
                last_error=str(exc),
            )

        await asyncio.sleep(max(MIN_SLEEP_SECONDS, float(interval_seconds)))


async def run_worker(worker_name: str, cycle: CycleFn, interval: IntervalFn) -> None:
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
    await init_database()
    logger = worker_logger.with_context(worker=worker_name)
    logger.info("Database initialized")
    try:
        await run_worker_loop(worker_name, cycle, interval)
    except asyncio.CancelledError:
        logger.info("Worker shutting down")
    finally:
        await get_runtime().close()


async def consume_queue_cycle(worker_name: str, topic: str, handler) -> CycleReport:
    """One queue-drain cycle expressed as a CycleReport."""
    report = CycleReport(name=worker_name)
    batch = await consume_batch(
        topic,
        handler,
        limit=settings.QUEUE_BATCH_SIZE,
        max_attempts=settings.QUEUE_MAX_ATTEMPTS,
        retry_delay_seconds=settings.QUEUE_RETRY_DELAY_SECONDS,
    )
    report.succeeded = batch.acked
    report.failed = batch.nacked + batch.dead
    report.bump("claimed", batch.claimed)
    report.bump("dead", batch.dead)
    return report.finish()
