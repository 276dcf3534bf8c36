"""Stop-loss / take-profit state machine over active signals.

``evaluate_transition`` is the pure transition function. ``PriceMonitor``
applies it to every OPEN or PARTIAL_TP signal once per sweep, writing
targets and status through conditional updates so a re-run, or a second
evaluator racing this one, can never un-hit a rung or leave a terminal
state.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from interfaces import PriceSource
from models.database import AsyncSessionLocal, Signal, SignalStatusHistory, SignalTarget
from models.positions import NotificationEvent
from models.types import ACTIVE_SIGNAL_STATUSES, Direction, SignalStatus
from services import message_queue, performance
from services.consensus_detector import stop_loss_price
from services.worker_state import CycleReport
from utils.errors import DataIntegrityError
from utils.logger import monitor_logger as logger
from utils.utcnow import utcnow

_ACTIVE_VALUES = tuple(s.value for s in ACTIVE_SIGNAL_STATUSES)


@dataclass(frozen=True)
class TargetState:
    index: int
    price: float
    is_hit: bool


@dataclass
class Transition:
    new_status: Optional[SignalStatus] = None
    stop_loss_hit: bool = False
    newly_hit: list[int] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.new_status is not None or bool(self.newly_hit)


def is_stop_loss_hit(price: float, stop_price: float, direction: Direction | str) -> bool:
    if Direction(direction) == Direction.LONG:
        return price <= stop_price
    return price >= stop_price


def is_target_hit(price: float, target_price: float, direction: Direction | str) -> bool:
    if Direction(direction) == Direction.LONG:
        return price >= target_price
    return price <= target_price


def evaluate_transition(
    status: SignalStatus | str,
    direction: Direction | str,
    stop_price: float,
    targets: Sequence[TargetState],
    price: float,
) -> Transition:
    """One cycle of the state machine for a single signal at ``price``."""
    status = SignalStatus(status)
    if status.is_terminal:
        return Transition()

    if is_stop_loss_hit(price, stop_price, direction):
        return Transition(new_status=SignalStatus.SL_HIT, stop_loss_hit=True)

    ordered = sorted(targets, key=lambda t: t.index)
    newly_hit = [t.index for t in ordered if not t.is_hit and is_target_hit(price, t.price, direction)]
    if not newly_hit:
        return Transition()

    hit = {t.index for t in ordered if t.is_hit} | set(newly_hit)
    if len(hit) == len(ordered):
        return Transition(new_status=SignalStatus.TP_HIT, newly_hit=newly_hit)
    return Transition(new_status=SignalStatus.PARTIAL_TP, newly_hit=newly_hit)


class PriceMonitor:
    """Sweeps active signals against the current price of their pair."""

    def __init__(self, price_source: PriceSource):
        self.price_source = price_source
        self._sweep_lock = asyncio.Lock()

    async def run_sweep(self) -> CycleReport:
        """Evaluate every active signal once. Overlapping calls are skipped, not queued."""
        report = CycleReport(name="price_monitor")
        if self._sweep_lock.locked():
            logger.warning("Previous sweep still running, skipping")
            report.record_skip("overlap")
            return report.finish()

        async with self._sweep_lock:
            async with AsyncSessionLocal() as session:
                result = await session.execute(
                    select(Signal.signal_id, Signal.pair)
                    .where(Signal.status.in_(_ACTIVE_VALUES))
                    .order_by(Signal.created_at.asc())
                )
                by_pair: dict[str, list[str]] = defaultdict(list)
                for signal_id, pair in result.all():
                    by_pair[pair].append(signal_id)

            for pair, signal_ids in by_pair.items():
                price = await self.price_source.get_price(pair)
                if price is None:
                    # Fail open: a price gap leaves the signals untouched this cycle.
                    logger.warning("No price available, skipping pair", pair=pair, signals=len(signal_ids))
                    for _ in signal_ids:
                        report.record_skip("no_price")
                    continue

                for signal_id in signal_ids:
                    try:
                        transition = await self.apply_price(signal_id, price)
                    except DataIntegrityError as e:
                        logger.error("Signal evaluation failed", signal_id=signal_id, error=str(e))
                        report.record_failure(signal_id, e)
                        continue
                    except Exception as e:
                        logger.error(
                            "Signal evaluation failed", signal_id=signal_id, error=str(e), exc_info=True
                        )
                        report.record_failure(signal_id, e)
                        continue
                    report.record_success()
                    if transition.new_status is not None:
                        report.bump(transition.new_status.value)

                if settings.PAIR_SWEEP_DELAY_SECONDS > 0:
                    await asyncio.sleep(settings.PAIR_SWEEP_DELAY_SECONDS)

        report.finish()
        logger.info("Price sweep completed", **report.as_dict())
        return report

    async def apply_price(
        self, signal_id: str, price: float, *, now: Optional[datetime] = None
    ) -> Transition:
        now = now or utcnow()
        async with AsyncSessionLocal() as session:
            signal = await session.get(Signal, signal_id)
            if signal is None:
                raise DataIntegrityError(f"signal {signal_id} disappeared during sweep")

            targets = [
                TargetState(index=t.target_index, price=float(t.target_price), is_hit=bool(t.is_hit))
                for t in signal.targets
            ]
            indices = sorted(t.index for t in targets)
            if indices != list(range(len(indices))):
                raise DataIntegrityError(f"signal {signal_id} has a gapped target ladder: {indices}")

            stop_price = stop_loss_price(signal.entry_price, signal.stop_loss_pct, signal.direction)
            previous_status = SignalStatus(signal.status)
            transition = evaluate_transition(previous_status, signal.direction, stop_price, targets, price)

            adverse = performance.calculate_max_drawdown(signal.entry_price, [price], signal.direction)
            values = {
                "last_price": price,
                "max_adverse_pct": max(float(signal.max_adverse_pct or 0.0), adverse),
            }
            if transition.changed:
                values["status"] = transition.new_status.value
                values["last_updated"] = now
                values["notes"] = self._describe(transition, price)
                if transition.new_status.is_terminal:
                    values["closed_at"] = now

            status_result = await session.execute(
                update(Signal)
                .where(Signal.signal_id == signal_id, Signal.status.in_(_ACTIVE_VALUES))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if status_result.rowcount != 1:
                # Another evaluator already moved this signal to a terminal state.
                await session.rollback()
                return Transition()

            if not transition.changed:
                await session.commit()
                return transition

            hit_now: list[int] = []
            for index in transition.newly_hit:
                target_result = await session.execute(
                    update(SignalTarget)
                    .where(
                        SignalTarget.signal_id == signal_id,
                        SignalTarget.target_index == index,
                        SignalTarget.is_hit.is_(False),
                    )
                    .values(is_hit=True, hit_timestamp=now, hit_price=price)
                    .execution_options(synchronize_session=False)
                )
                if target_result.rowcount == 1:
                    hit_now.append(index)
            if transition.newly_hit and not hit_now:
                await session.rollback()
                return Transition()
            transition.newly_hit = hit_now

            session.add(
                SignalStatusHistory(
                    signal_id=signal_id,
                    status=transition.new_status.value,
                    reason=values["notes"],
                    price=price,
                    created_at=now,
                )
            )

            pnl = None
            if transition.new_status.is_terminal:
                signal.max_adverse_pct = values["max_adverse_pct"]
                records = await performance.record_signal_close(
                    session,
                    signal,
                    exit_price=price,
                    outcome_status=transition.new_status,
                    closed_at=now,
                )
                pnl = records[0].pnl if records else None

            await self._publish_transition(session, signal, transition, price, stop_price, pnl)
            await session.commit()

        logger.info(
            "Signal transition",
            signal_id=signal_id,
            from_status=previous_status.value,
            to_status=transition.new_status.value,
            price=price,
            targets_hit=transition.newly_hit,
        )
        return transition

    @staticmethod
    def _describe(transition: Transition, price: float) -> str:
        if transition.stop_loss_hit:
            return f"Stop loss hit at {price}"
        rungs = ", ".join(str(i) for i in transition.newly_hit)
        if transition.new_status == SignalStatus.TP_HIT:
            return f"All targets hit (rung {rungs}) at {price}"
        return f"Target rung {rungs} hit at {price}"

    async def _publish_transition(
        self,
        session: AsyncSession,
        signal: Signal,
        transition: Transition,
        price: float,
        stop_price: float,
        pnl: Optional[float],
    ):
        event = NotificationEvent(
            type=transition.new_status.value,
            signal_id=signal.signal_id,
            pair=signal.pair,
            direction=Direction(signal.direction),
            price=price,
            participant_count=signal.participant_count,
            stop_loss_price=stop_price,
            target_prices=[float(t.target_price) for t in signal.targets],
            hit_targets=list(transition.newly_hit),
            pnl=pnl,
        )
        rungs = "-".join(str(i) for i in transition.newly_hit)
        await message_queue.publish(
            session,
            message_queue.TOPIC_NOTIFICATION,
            event.model_dump(mode="json"),
            dedupe_key=f"{signal.signal_id}:{transition.new_status.value}:{rungs}",
            commit=False,
        )


async def close_signal_manually(
    session: AsyncSession,
    signal_id: str,
    price: float,
    *,
    reason: str = "Closed manually",
    now: Optional[datetime] = None,
) -> bool:
    """Close an active signal at ``price``. False when it was not active."""
    now = now or utcnow()
    signal = await session.get(Signal, signal_id)
    if signal is None:
        return False
    previous_status = SignalStatus(signal.status)
    if previous_status.is_terminal:
        return False

    result = await session.execute(
        update(Signal)
        .where(Signal.signal_id == signal_id, Signal.status.in_(_ACTIVE_VALUES))
        .values(
            status=SignalStatus.CLOSED_MANUAL.value,
            notes=reason,
            last_price=price,
            last_updated=now,
            closed_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        return False

    session.add(
        SignalStatusHistory(
            signal_id=signal_id,
            status=SignalStatus.CLOSED_MANUAL.value,
            reason=reason,
            price=price,
            created_at=now,
        )
    )
    # A signal closed after partial take-profits keeps the PARTIAL outcome.
    await performance.record_signal_close(
        session,
        signal,
        exit_price=price,
        outcome_status=previous_status,
        closed_at=now,
    )
    await session.commit()
    logger.info("Signal closed manually", signal_id=signal_id, price=price, previous_status=previous_status.value)
    return True
