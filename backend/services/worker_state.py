"""Per-cycle outcome reports and the DB-backed worker snapshots built from them."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import WorkerSnapshot
from utils.utcnow import utcnow


DEFAULT_WORKER_INTERVALS: dict[str, int] = {
    "ingestion": 60,
    "signal": 2,
    "price_monitor": 30,
    "notifier": 2,
    "performance": 3600,
}

MAX_REPORTED_ERRORS = 20


def _now() -> datetime:
    return utcnow()


def _to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.replace(tzinfo=None).isoformat() + "Z"


def _default_interval(worker_name: str) -> int:
    return int(DEFAULT_WORKER_INTERVALS.get(worker_name, 60))


@dataclass
class CycleReport:
    """Aggregate outcome of one unit-of-work loop (one wallet, one pair, one message)."""

    name: str
    started_at: datetime = field(default_factory=_now)
    finished_at: Optional[datetime] = None
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    counters: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def record_success(self, counter: Optional[str] = None, amount: int = 1):
        self.succeeded += 1
        if counter:
            self.bump(counter, amount)

    def record_skip(self, reason: Optional[str] = None):
        self.skipped += 1
        if reason:
            self.bump(f"skipped_{reason}")

    def record_failure(self, unit: str, error: BaseException | str):
        self.failed += 1
        if len(self.errors) < MAX_REPORTED_ERRORS:
            self.errors.append(f"{unit}: {error}")

    def bump(self, counter: str, amount: int = 1):
        self.counters[counter] = self.counters.get(counter, 0) + amount

    def finish(self) -> "CycleReport":
        self.finished_at = _now()
        return self

    @property
    def duration_ms(self) -> Optional[int]:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "started_at": _to_iso(self.started_at),
            "finished_at": _to_iso(self.finished_at),
            "duration_ms": self.duration_ms,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "counters": dict(self.counters),
            "errors": list(self.errors),
        }


async def write_worker_snapshot(
    session: AsyncSession,
    worker_name: str,
    *,
    running: bool,
    current_activity: Optional[str],
    interval_seconds: Optional[int],
    report: Optional[CycleReport] = None,
    last_error: Optional[str] = None,
) -> None:
    result = await session.execute(
        select(WorkerSnapshot).where(WorkerSnapshot.worker_name == worker_name)
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = WorkerSnapshot(worker_name=worker_name, runs_total=0, failed_runs_total=0)
        session.add(row)

    row.updated_at = _now()
    row.running = bool(running)
    row.current_activity = current_activity
    if interval_seconds is not None:
        row.interval_seconds = max(1, int(interval_seconds))
    if report is not None:
        row.last_run_at = report.finished_at or report.started_at
        row.duration_ms = report.duration_ms
        row.runs_total = int(row.runs_total or 0) + 1
        if not report.ok:
            row.failed_runs_total = int(row.failed_runs_total or 0) + 1
        row.stats_json = report.as_dict()
        row.last_error = report.errors[-1] if report.errors else None
    if last_error is not None:
        row.last_error = last_error
    await session.commit()


def _snapshot_to_dict(row: WorkerSnapshot) -> dict[str, Any]:
    return {
        "worker_name": row.worker_name,
        "running": bool(row.running),
        "current_activity": row.current_activity,
        "interval_seconds": int(row.interval_seconds or _default_interval(row.worker_name)),
        "last_run_at": _to_iso(row.last_run_at),
        "duration_ms": row.duration_ms,
        "runs_total": int(row.runs_total or 0),
        "failed_runs_total": int(row.failed_runs_total or 0),
        "last_error": row.last_error,
        "stats": row.stats_json or {},
        "updated_at": _to_iso(row.updated_at),
    }


async def read_worker_snapshot(
    session: AsyncSession,
    worker_name: str,
) -> dict[str, Any]:
    result = await session.execute(
        select(WorkerSnapshot).where(WorkerSnapshot.worker_name == worker_name)
    )
    row = result.scalar_one_or_none()
    if row is None:
        return {
            "worker_name": worker_name,
            "running": False,
            "current_activity": "Waiting for worker startup.",
            "interval_seconds": _default_interval(worker_name),
            "last_run_at": None,
            "duration_ms": None,
            "runs_total": 0,
            "failed_runs_total": 0,
            "last_error": None,
            "stats": {},
            "updated_at": None,
        }
    return _snapshot_to_dict(row)


async def list_worker_snapshots(session: AsyncSession) -> list[dict[str, Any]]:
    result = await session.execute(
        select(WorkerSnapshot).order_by(WorkerSnapshot.worker_name.asc())
    )
    out = [_snapshot_to_dict(row) for row in result.scalars().all()]
    seen = {row["worker_name"] for row in out}

    for worker_name in DEFAULT_WORKER_INTERVALS:
        if worker_name in seen:
            continue
        out.append(await read_worker_snapshot(session, worker_name))

    out.sort(key=lambda r: r.get("worker_name") or "")
    return out
