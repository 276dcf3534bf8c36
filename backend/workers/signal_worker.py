"""Signal worker: drains position-open events into the consensus detector.

Run from backend dir:
  python -m workers.signal_worker
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
from services.message_queue import TOPIC_POSITION_OPEN
from services.runtime import get_runtime
from services.worker_state import CycleReport
from workers.loop import consume_queue_cycle, run_worker

WORKER_NAME = "signal"


async def _interval() -> float:
    return settings.QUEUE_POLL_INTERVAL_SECONDS


async def _cycle() -> CycleReport:
    return await consume_queue_cycle(WORKER_NAME, TOPIC_POSITION_OPEN, get_runtime().detector.handle_payload)


if __name__ == "__main__":
    asyncio.run(run_worker(WORKER_NAME, _cycle, _interval))
