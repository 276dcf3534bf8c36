"""Ingestion worker: polls tracked wallets and records position-open events.

Run from backend dir:
  python -m workers.ingestion_worker
"""

from __future__ import annotations

import asyncio
import os
import sys

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from models.database import AsyncSessionLocal
from services.engine_config import load_engine_config
from services.runtime import get_runtime
from services.worker_state import CycleReport
from workers.loop import run_worker

WORKER_NAME = "ingestion"


async def _interval() -> float:
    async with AsyncSessionLocal() as session:
        config = await load_engine_config(session)
    return float(config.poll_interval_sec)


async def _cycle() -> CycleReport:
    return await get_runtime().ingestor.run_cycle()


if __name__ == "__main__":
    asyncio.run(run_worker(WORKER_NAME, _cycle, _interval))
