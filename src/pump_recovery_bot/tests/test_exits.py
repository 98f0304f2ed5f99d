from __future__ import annotations

import pytest

from pump_recovery_bot.config.settings import ExitStrategiesConfig, TrailingStopConfig
from pump_recovery_bot.execution.position import Position
from pump_recovery_bot.strategy import ExitContext, ExitEngine, ExitReason
from pump_recovery_bot.strategy.exits import bucket_volumes
from pump_recovery_bot.tests.factories import apply_trade, make_token

ENTRY = 0.1


def _position(*prices: float, entry_time: int = 0) -> Position:
    position = Position("MintA", size=0.5, entry_price=ENTRY, entry_time=entry_time)
    position.open()
    for step, price in enumerate(prices, start=1):
        position.update_price(price, timestamp=entry_time + step * 1_000)
    return position


def _engine(**overrides) -> ExitEngine:
    return ExitEngine(ExitStrategiesConfig(**overrides))


def test_stop_loss_triggers_exactly_at_threshold() -> None:
    engine = _engine()

    decision = engine.evaluate(_position(0.09), ExitContext(now=5_000))
    assert decision is not None
    assert decision.reason is ExitReason.STOP_LOSS
    assert decision.is_full

    assert engine.evaluate(_position(0.0900001), ExitContext(now=5_000)) is None


def test_stop_loss_outranks_trailing_stop() -> None:
    position = _position(0.15, 0.085)

    decision = _engine().evaluate(position, ExitContext(now=5_000))

    assert decision.reason is ExitReason.STOP_LOSS


def test_trailing_stop_outranks_take_profit() -> None:
    position = _position(0.4, 0.3)

    decision = _engine().evaluate(position, ExitContext(now=5_000))

    assert decision.reason is ExitReason.TRAILING_STOP
    assert decision.label == "TRAILING_STOP"


def test_trailing_stop_needs_activation() -> None:
    engine = _engine()

    assert engine.evaluate(_position(0.115, 0.1), ExitContext(now=5_000)) is None
    armed = engine.evaluate(_position(0.125, 0.11), ExitContext(now=5_000))
    assert armed.reason is ExitReason.TRAILING_STOP


def test_trail_distance_scales_with_volatility_and_is_clamped() -> None:
    engine = _engine()
    assert engine.trail_distance_pct(0.0) == pytest.approx(10.0)
    assert engine.trail_distance_pct(0.1) == pytest.approx(15.0)
    assert engine.trail_distance_pct(0.5) == pytest.approx(25.0)

    tight = _engine(trailing_stop=TrailingStopConfig(base_pct=2.0))
    assert tight.trail_distance_pct(0.0) == pytest.approx(5.0)


def test_take_profit_tiers_fire_once_in_order() -> None:
    engine = _engine()
    position = _position(0.22)

    first = engine.evaluate(position, ExitContext(now=5_000))
    assert (first.label, first.portion, first.is_full) == ("TAKE_PROFIT_1", 0.3, False)
    position.apply_exit(first.portion, execution_price=0.22, reason=first.label, timestamp=5_000, tier=first.tier)

    second = engine.evaluate(position, ExitContext(now=6_000))
    assert second.label == "TAKE_PROFIT_2"
    position.apply_exit(second.portion, execution_price=0.22, reason=second.label, timestamp=6_000, tier=second.tier)

    assert engine.evaluate(position, ExitContext(now=7_000)) is None
    assert position.consumed_tiers == {1, 2}
    assert position.remaining_size == pytest.approx(0.4)


def test_volume_collapse_compares_latest_bucket_with_peak() -> None:
    engine = _engine()
    position = _position(0.11)

    collapsed = engine.evaluate(position, ExitContext(now=5_000, bucket_volumes=(1_500.0, 1_200.0, 800.0)))
    assert collapsed.reason is ExitReason.VOLUME_EXIT

    assert engine.evaluate(position, ExitContext(now=5_000, bucket_volumes=(1_500.0, 1_200.0, 950.0))) is None
    assert engine.evaluate(position, ExitContext(now=5_000, bucket_volumes=(8.0, 6.0, 1.0))) is None


def test_time_exit_after_max_hold() -> None:
    engine = _engine()
    position = _position(0.105)

    assert engine.evaluate(position, ExitContext(now=1_700_000)) is None
    decision = engine.evaluate(position, ExitContext(now=7_200_000))
    assert decision.reason is ExitReason.TIME_EXIT


def test_strong_roi_extends_hold_time() -> None:
    engine = _engine()
    position = _position(0.16)
    position.consumed_tiers.add(1)

    assert engine.evaluate(position, ExitContext(now=3_000_000)) is None
    assert engine.evaluate(position, ExitContext(now=3_700_000)).reason is ExitReason.TIME_EXIT


def test_disabled_rules_are_skipped() -> None:
    engine = _engine(stop_loss={"enabled": False}, time_based={"enabled": False})

    assert engine.evaluate(_position(0.05), ExitContext(now=9_000_000)) is None


def test_bucket_volumes_split_the_measurement_period() -> None:
    token = make_token()
    for timestamp, sol_amount in ((300_000, 5.0), (300_001, 3.0), (900_000, 2.0)):
        apply_trade(token, timestamp=timestamp, v_sol=30.0, sol_amount=sol_amount)

    volumes = bucket_volumes(token, ExitStrategiesConfig(), 900_000)

    assert volumes == pytest.approx([5.0, 3.0, 2.0])
