"""Stop-loss / take-profit state machine and the sweep that drives it."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from models.database import (
    PerformanceRecord,
    QueueMessage,
    Signal,
    SignalParticipant,
    SignalStatusHistory,
    SignalTarget,
)
from models.types import SignalStatus
from services.consensus_detector import stop_loss_price, target_prices
from services.price_monitor import (
    PriceMonitor,
    TargetState,
    close_signal_manually,
    evaluate_transition,
)


def _ladder(entry, tps, direction, hit=()):
    return [
        TargetState(index=i, price=p, is_hit=i in hit)
        for i, p in enumerate(target_prices(entry, tps, direction))
    ]


async def _signal(
    factory,
    created_at,
    *,
    pair="ETH",
    direction="LONG",
    entry=100.0,
    sl=-2.5,
    tps=(2.0, 3.5, 5.0),
    status="OPEN",
    hit=(),
    indices=None,
    size=1.0,
    funding=0.0,
):
    signal_id = str(uuid.uuid4())
    async with factory() as session:
        session.add(
            Signal(
                signal_id=signal_id,
                pair=pair,
                direction=direction,
                entry_timestamp=created_at,
                entry_price=entry,
                avg_trade_size=size,
                stop_loss_pct=sl,
                targets_json=list(tps),
                funding_rate=funding,
                participant_count=3,
                status=status,
                max_adverse_pct=0.0,
                rule_version=1,
                created_at=created_at,
                last_updated=created_at,
            )
        )
        for i, (pct, price) in enumerate(zip(tps, target_prices(entry, tps, direction))):
            session.add(
                SignalTarget(
                    signal_id=signal_id,
                    target_index=indices[i] if indices else i,
                    target_percent=pct,
                    target_price=price,
                    is_hit=i in hit,
                )
            )
        for n in range(3):
            session.add(
                SignalParticipant(
                    signal_id=signal_id,
                    wallet_address=f"0x{str(n + 1) * 40}",
                    entry_price=entry,
                    trade_size=size,
                    leverage=5,
                    entry_timestamp=created_at,
                )
            )
        await session.commit()
    return signal_id


async def _load(factory, signal_id):
    async with factory() as session:
        signal = await session.get(Signal, signal_id)
        targets = [(t.target_index, t.is_hit) for t in signal.targets]
        return signal, targets


# ============================================================================
# TRANSITION FUNCTION
# ============================================================================


class TestEvaluateTransition:
    def test_long_stop_loss_example(self):
        stop = stop_loss_price(2450.50, -2.5, "LONG")
        targets = _ladder(2450.50, [2.0, 3.5, 5.0], "LONG")

        hit = evaluate_transition("OPEN", "LONG", stop, targets, 2388.00)
        assert hit.new_status == SignalStatus.SL_HIT
        assert hit.stop_loss_hit is True
        assert hit.newly_hit == []

        assert not evaluate_transition("OPEN", "LONG", stop, targets, 2400.00).changed

    def test_short_stop_loss_is_above_entry(self):
        stop = stop_loss_price(100.0, -2.5, "SHORT")
        targets = _ladder(100.0, [2.0], "SHORT")
        assert evaluate_transition("OPEN", "SHORT", stop, targets, 102.5).new_status == SignalStatus.SL_HIT
        assert not evaluate_transition("OPEN", "SHORT", stop, targets, 102.4).changed

    def test_short_targets_are_below_entry(self):
        targets = _ladder(100.0, [2.0, 3.5], "SHORT")
        result = evaluate_transition("OPEN", "SHORT", 102.5, targets, 97.0)
        assert result.new_status == SignalStatus.PARTIAL_TP
        assert result.newly_hit == [0]

    def test_partial_then_full_ladder(self):
        targets = _ladder(100.0, [2.0, 3.5, 5.0], "LONG", hit=(0,))
        result = evaluate_transition("PARTIAL_TP", "LONG", 97.5, targets, 103.6)
        assert result.new_status == SignalStatus.PARTIAL_TP
        assert result.newly_hit == [1]

        targets = _ladder(100.0, [2.0, 3.5, 5.0], "LONG", hit=(0, 1))
        assert evaluate_transition("PARTIAL_TP", "LONG", 97.5, targets, 105.0).new_status == SignalStatus.TP_HIT

    def test_gap_through_several_rungs_hits_them_in_order(self):
        targets = list(reversed(_ladder(100.0, [2.0, 3.5, 5.0], "LONG")))
        result = evaluate_transition("OPEN", "LONG", 97.5, targets, 106.0)
        assert result.new_status == SignalStatus.TP_HIT
        assert result.newly_hit == [0, 1, 2]

    def test_single_rung_goes_straight_to_tp_hit(self):
        targets = _ladder(100.0, [2.0], "LONG")
        assert evaluate_transition("OPEN", "LONG", 97.5, targets, 102.0).new_status == SignalStatus.TP_HIT

    def test_hit_rungs_are_never_reported_again(self):
        targets = _ladder(100.0, [2.0, 3.5, 5.0], "LONG", hit=(0,))
        assert not evaluate_transition("PARTIAL_TP", "LONG", 97.5, targets, 102.5).changed

    @pytest.mark.parametrize("status", ["TP_HIT", "SL_HIT", "CLOSED_MANUAL"])
    def test_terminal_states_never_change(self, status):
        targets = _ladder(100.0, [2.0], "LONG")
        assert not evaluate_transition(status, "LONG", 97.5, targets, 50.0).changed
        assert not evaluate_transition(status, "LONG", 97.5, targets, 150.0).changed


# ============================================================================
# APPLYING PRICES
# ============================================================================


@pytest.mark.asyncio
async def test_ladder_sweep_is_monotone(session_factory, price_source, base_time):
    signal_id = await _signal(session_factory, base_time)
    monitor = PriceMonitor(price_source)

    statuses = []
    ladders = []
    for minute, price in enumerate([101.0, 103.0, 104.0, 106.0], start=1):
        await monitor.apply_price(signal_id, price, now=base_time + timedelta(minutes=minute))
        signal, targets = await _load(session_factory, signal_id)
        statuses.append(signal.status)
        ladders.append([is_hit for _, is_hit in targets])

    assert statuses == ["OPEN", "PARTIAL_TP", "PARTIAL_TP", "TP_HIT"]
    assert ladders == [
        [False, False, False],
        [True, False, False],
        [True, True, False],
        [True, True, True],
    ]

    async with session_factory() as session:
        history = (
            await session.execute(select(SignalStatusHistory).order_by(SignalStatusHistory.id))
        ).scalars().all()
        messages = (await session.execute(select(QueueMessage).order_by(QueueMessage.id))).scalars().all()
        target = (
            await session.execute(select(SignalTarget).where(SignalTarget.target_index == 0))
        ).scalar_one()

    assert [h.status for h in history] == ["PARTIAL_TP", "PARTIAL_TP", "TP_HIT"]
    assert [m.payload_json["type"] for m in messages] == ["PARTIAL_TP", "PARTIAL_TP", "TP_HIT"]
    assert [m.payload_json["hit_targets"] for m in messages] == [[0], [1], [2]]
    assert target.hit_price == 103.0
    assert target.hit_timestamp == base_time + timedelta(minutes=2)


@pytest.mark.asyncio
async def test_stop_loss_closes_and_records_performance(session_factory, price_source, base_time):
    signal_id = await _signal(session_factory, base_time, entry=2450.50)
    monitor = PriceMonitor(price_source)

    unchanged = await monitor.apply_price(signal_id, 2400.0, now=base_time + timedelta(minutes=30))
    assert not unchanged.changed
    transition = await monitor.apply_price(signal_id, 2388.0, now=base_time + timedelta(hours=1))
    assert transition.new_status == SignalStatus.SL_HIT

    signal, targets = await _load(session_factory, signal_id)
    assert signal.status == "SL_HIT"
    assert signal.closed_at == base_time + timedelta(hours=1)
    assert signal.last_price == 2388.0
    assert not any(is_hit for _, is_hit in targets)

    async with session_factory() as session:
        records = (await session.execute(select(PerformanceRecord))).scalars().all()
        message = (await session.execute(select(QueueMessage))).scalar_one()

    assert sorted(r.timeframe for r in records) == ["24h", "30d", "7d", "all_time"]
    assert all(r.outcome == "LOSS" for r in records)
    assert records[0].pnl == pytest.approx(2388.0 - 2450.50)
    assert records[0].duration_sec == 3600
    assert records[0].max_drawdown_pct == pytest.approx((2450.50 - 2388.0) / 2450.50 * 100)
    assert message.payload_json["type"] == "SL_HIT"
    assert message.payload_json["pnl"] == pytest.approx(-62.5)


@pytest.mark.asyncio
async def test_terminal_signal_is_left_alone(session_factory, price_source, base_time):
    signal_id = await _signal(session_factory, base_time)
    monitor = PriceMonitor(price_source)
    await monitor.apply_price(signal_id, 90.0, now=base_time + timedelta(minutes=1))

    again = await monitor.apply_price(signal_id, 110.0, now=base_time + timedelta(minutes=2))
    assert not again.changed

    signal, targets = await _load(session_factory, signal_id)
    assert signal.status == "SL_HIT"
    assert signal.last_price == 90.0
    assert not any(is_hit for _, is_hit in targets)
    async with session_factory() as session:
        assert len((await session.execute(select(QueueMessage))).scalars().all()) == 1


@pytest.mark.asyncio
async def test_short_signal_tracks_adverse_excursion(session_factory, price_source, base_time):
    signal_id = await _signal(session_factory, base_time, direction="SHORT", entry=200.0, tps=(2.0,))
    monitor = PriceMonitor(price_source)

    await monitor.apply_price(signal_id, 203.0, now=base_time + timedelta(minutes=1))
    signal, _ = await _load(session_factory, signal_id)
    assert signal.status == "OPEN"
    assert signal.max_adverse_pct == pytest.approx(1.5)

    await monitor.apply_price(signal_id, 196.0, now=base_time + timedelta(minutes=2))
    signal, targets = await _load(session_factory, signal_id)
    assert signal.status == "TP_HIT"
    assert signal.max_adverse_pct == pytest.approx(1.5)
    assert targets == [(0, True)]

    async with session_factory() as session:
        record = await session.get(PerformanceRecord, (signal_id, "all_time"))
    assert record.outcome == "WIN"
    assert record.pnl == pytest.approx(4.0)
    assert record.max_drawdown_pct == pytest.approx(1.5)


# ============================================================================
# SWEEPS
# ============================================================================


@pytest.mark.asyncio
async def test_sweep_fails_open_when_price_missing(session_factory, price_source, base_time):
    eth = await _signal(session_factory, base_time, pair="ETH")
    btc = await _signal(session_factory, base_time, pair="BTC", entry=42000.0)
    price_source.prices.update({"ETH": None, "BTC": 43000.0})

    report = await PriceMonitor(price_source).run_sweep()

    assert sorted(price_source.requests) == ["BTC", "ETH"]
    assert report.skipped == 1
    assert report.counters["skipped_no_price"] == 1
    assert report.succeeded == 1
    assert report.counters["PARTIAL_TP"] == 1

    eth_signal, _ = await _load(session_factory, eth)
    btc_signal, _ = await _load(session_factory, btc)
    assert eth_signal.status == "OPEN"
    assert eth_signal.last_price is None
    assert btc_signal.status == "PARTIAL_TP"


@pytest.mark.asyncio
async def test_sweep_fetches_one_price_per_pair(session_factory, price_source, base_time):
    for _ in range(3):
        await _signal(session_factory, base_time, pair="SOL", entry=150.0)
    await _signal(session_factory, base_time, pair="SOL", entry=150.0, status="TP_HIT")
    price_source.prices.update({"SOL": 150.5})

    report = await PriceMonitor(price_source).run_sweep()
    assert price_source.requests == ["SOL"]
    assert report.succeeded == 3


@pytest.mark.asyncio
async def test_overlapping_sweep_is_skipped(session_factory, price_source, base_time):
    await _signal(session_factory, base_time)
    price_source.prices.update({"ETH": 100.0})
    monitor = PriceMonitor(price_source)

    async with monitor._sweep_lock:
        report = await monitor.run_sweep()

    assert report.skipped == 1
    assert report.counters == {"skipped_overlap": 1}
    assert price_source.requests == []


@pytest.mark.asyncio
async def test_gapped_ladder_is_reported_as_failure(session_factory, price_source, base_time):
    broken = await _signal(session_factory, base_time, indices=[0, 2, 3])
    healthy = await _signal(session_factory, base_time)

    price_source.prices["ETH"] = 103.0
    report = await PriceMonitor(price_source).run_sweep()

    assert report.failed == 1
    assert broken in report.errors[0]
    assert report.succeeded == 1
    signal, _ = await _load(session_factory, healthy)
    assert signal.status == "PARTIAL_TP"


@pytest.mark.asyncio
async def test_database_error_on_one_signal_does_not_stop_the_sweep(session_factory, price_source, base_time):
    locked = await _signal(session_factory, base_time, pair="BTC")
    sibling = await _signal(session_factory, base_time + timedelta(seconds=1))

    monitor = PriceMonitor(price_source)
    apply_price = monitor.apply_price

    async def flaky_apply(signal_id, price, **kwargs):
        if signal_id == locked:
            raise OperationalError("UPDATE signals", {}, Exception("database is locked"))
        return await apply_price(signal_id, price, **kwargs)

    monitor.apply_price = flaky_apply
    price_source.prices.update({"BTC": 90.0, "ETH": 90.0})
    report = await monitor.run_sweep()

    assert report.failed == 1
    assert locked in report.errors[0]
    assert report.succeeded == 1
    signal, _ = await _load(session_factory, sibling)
    assert signal.status == "SL_HIT"


# ============================================================================
# MANUAL CLOSE
# ============================================================================


@pytest.mark.asyncio
async def test_manual_close_of_open_signal_uses_pnl_sign(session_factory, base_time):
    winner = await _signal(session_factory, base_time)
    loser = await _signal(session_factory, base_time, direction="SHORT")

    async with session_factory() as session:
        assert await close_signal_manually(session, winner, 101.0, now=base_time + timedelta(hours=2))
        assert await close_signal_manually(session, loser, 101.0, now=base_time + timedelta(hours=2))

    async with session_factory() as session:
        win = await session.get(PerformanceRecord, (winner, "all_time"))
        loss = await session.get(PerformanceRecord, (loser, "all_time"))
        signal = await session.get(Signal, winner)
    assert signal.status == "CLOSED_MANUAL"
    assert win.outcome == "WIN"
    assert loss.outcome == "LOSS"
    assert loss.pnl == pytest.approx(-1.0)


@pytest.mark.asyncio
async def test_manual_close_after_partial_keeps_partial_outcome(session_factory, base_time):
    signal_id = await _signal(session_factory, base_time, status="PARTIAL_TP", hit=(0,))

    async with session_factory() as session:
        assert await close_signal_manually(session, signal_id, 99.0, now=base_time + timedelta(hours=1))

    async with session_factory() as session:
        record = await session.get(PerformanceRecord, (signal_id, "all_time"))
        history = (await session.execute(select(SignalStatusHistory))).scalars().all()
    assert record.outcome == "PARTIAL"
    assert record.pnl == pytest.approx(-1.0)
    assert [h.status for h in history] == ["CLOSED_MANUAL"]


@pytest.mark.asyncio
async def test_manual_close_rejects_inactive_signal(session_factory, base_time):
    closed = await _signal(session_factory, base_time, status="SL_HIT")
    async with session_factory() as session:
        assert await close_signal_manually(session, closed, 100.0) is False
        assert await close_signal_manually(session, "missing", 100.0) is False
