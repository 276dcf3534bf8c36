"""Performance worker: refreshes wallet/system aggregates and applies retention.

Run from backend dir:
  python -m workers.performance_worker
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

from config import settings
from services.runtime import get_runtime
from services.worker_state import CycleReport
from workers.loop import run_worker

WORKER_NAME = "performance"


async def _interval() -> float:
    return float(settings.PERFORMANCE_REFRESH_INTERVAL_SECONDS)


async def _cycle() -> CycleReport:
    return await get_runtime().refresh_performance()


if __name__ == "__main__":
    asyncio.run(run_worker(WORKER_NAME, _cycle, _interval))
