from __future__ import annotations

from typing import Optional

import pytest

from pump_recovery_bot.analysis.recovery import RecoveryPhase
from pump_recovery_bot.config.settings import PositionConfig, SafetyConfig
from pump_recovery_bot.monitoring.metrics import MetricsRegistry
from pump_recovery_bot.strategy import SafetyChecker, SafetyPhase, calculate_position_size
from pump_recovery_bot.tests.factories import CREATOR, SOL_USD, apply_trade, populated_token


def _checker(metrics: Optional[MetricsRegistry] = None) -> SafetyChecker:
    return SafetyChecker(SafetyConfig(), metrics=metrics)


def test_token_meeting_every_check_is_approved() -> None:
    token = populated_token(25)
    result = _checker().evaluate(token, now=token.last_trade_at, sol_price_usd=SOL_USD)

    assert result.approved
    assert result.failed_checks == ()
    assert result.price == token.current_price


def test_holder_minimum_is_inclusive() -> None:
    metrics = MetricsRegistry()
    token = populated_token(24)
    result = _checker(metrics).evaluate(token, now=token.last_trade_at, sol_price_usd=SOL_USD)

    assert not result.approved
    assert result.phase is SafetyPhase.MINIMUM_REQUIREMENTS
    check = result.failed_checks[0]
    assert check.name == "MIN_HOLDERS"
    assert (check.actual_value, check.threshold) == (24.0, 25.0)
    assert check.threshold_path == "SAFETY.MIN_HOLDERS"
    assert result.reason == "Insufficient holders"
    assert metrics.get("safety.rejected.MIN_HOLDERS") == 1


def test_token_exactly_at_minimum_age_passes() -> None:
    token = populated_token(25, start=1_000)

    assert _checker().evaluate(token, now=30_000, sol_price_usd=SOL_USD).approved

    too_young = _checker().evaluate(token, now=29_999, sol_price_usd=SOL_USD)
    assert too_young.failed_checks[0].name == "MIN_TOKEN_AGE"
    assert too_young.reason == "Token too young"


def test_market_cap_above_entry_limit_is_rejected() -> None:
    token = populated_token(25, v_sol=500.0, v_sol_step=1.0)
    result = _checker().evaluate(token, now=token.last_trade_at, sol_price_usd=SOL_USD)

    assert result.phase is SafetyPhase.MINIMUM_REQUIREMENTS
    assert result.failed_checks[0].name == "MAX_ENTRY_MARKET_CAP"
    assert result.failed_checks[0].actual_value == pytest.approx(52_400.0)


def test_creator_selling_is_a_rug_signal() -> None:
    token = populated_token(25, initial_buy=100.0)
    apply_trade(
        token,
        timestamp=token.last_trade_at + 1_000,
        v_sol=42.0,
        side="sell",
        trader=CREATOR,
        token_amount=10.0,
        new_balance=90.0,
        sol_amount=5.0,
    )
    result = _checker().evaluate(token, now=token.last_trade_at, sol_price_usd=SOL_USD)

    assert result.phase is SafetyPhase.RUG_SIGNALS
    assert result.failed_checks[0].name == "CREATOR_SELLING"
    assert result.reason == "Suspicious creator selling"
    assert result.failed_checks[0].actual_value == pytest.approx(5.0 / 42.0 * 100.0)


def test_whale_concentration_is_a_rug_signal() -> None:
    token = populated_token(25)
    apply_trade(token, timestamp=token.last_trade_at + 1_000, v_sol=43.0, trader="whale", token_amount=400.0)
    result = _checker().evaluate(token, now=token.last_trade_at, sol_price_usd=SOL_USD)

    assert result.phase is SafetyPhase.RUG_SIGNALS
    assert result.failed_checks[0].name == "MAX_TOP_HOLDER_CONCENTRATION"
    assert result.failed_checks[0].actual_value == pytest.approx(40.2)


def test_dump_right_after_a_pump_is_rejected() -> None:
    token = populated_token(25)
    now = token.last_trade_at
    token.metrics.pump_count = 1
    token.metrics.last_pump_time = now - 60_000
    token.metrics.last_pump_price = token.current_price / 0.6
    result = _checker().evaluate(token, now=now, sol_price_usd=SOL_USD)

    assert result.failed_checks[0].name == "POST_PUMP_DUMP"
    assert result.failed_checks[0].actual_value == pytest.approx(-40.0)


def test_flat_token_fails_pump_dynamics_until_pumps_repeat() -> None:
    token = populated_token(25, v_sol_step=0.0)
    now = token.last_trade_at
    result = _checker().evaluate(token, now=now, sol_price_usd=SOL_USD)

    assert result.phase is SafetyPhase.PUMP_DYNAMICS
    assert result.reason == "No qualifying pump pattern"

    token.metrics.pump_times.extend([now - 200_000, now - 100_000])
    checker = _checker()
    assert checker.pump_branches(token, now=now, sol_price_usd=SOL_USD) == [False, False, False, True]
    assert checker.evaluate(token, now=now, sol_price_usd=SOL_USD).approved


def test_recent_failure_suppresses_retries() -> None:
    checker = _checker()
    token = populated_token(24)
    now = token.last_trade_at
    first = checker.evaluate(token, now=now, sol_price_usd=SOL_USD)
    assert first.should_track_miss

    retry = checker.evaluate(token, now=now + 1_000, sol_price_usd=SOL_USD)
    assert retry.suppressed
    assert not retry.should_track_miss
    assert retry.failed_checks == first.failed_checks

    after_cooldown = checker.evaluate(token, now=now + 6_000, sol_price_usd=SOL_USD)
    assert not after_cooldown.suppressed

    apply_trade(token, timestamp=now + 7_000, v_sol=52.0, trader="wallet-0")
    ran_away = checker.evaluate(token, now=now + 13_000, sol_price_usd=SOL_USD)
    assert ran_away.suppressed


def test_internal_error_rejects_with_internal_phase(monkeypatch: pytest.MonkeyPatch) -> None:
    metrics = MetricsRegistry()
    checker = _checker(metrics)
    token = populated_token(25)

    def boom(*args):
        raise ZeroDivisionError("bad metric")

    monkeypatch.setattr(checker, "_rug_signals", boom)
    result = checker.evaluate(token, now=token.last_trade_at, sol_price_usd=SOL_USD)

    assert not result.approved
    assert result.phase is SafetyPhase.INTERNAL
    assert result.reason == "internal"
    assert metrics.get("errors.safety_check_error") == 1


def test_wash_traders_are_a_rug_signal() -> None:
    token = populated_token(25)
    for index in range(12):
        at = 56_000 + index * 2_000
        apply_trade(token, timestamp=at, v_sol=42.0, trader=f"washer-{index}")
        apply_trade(token, timestamp=at + 1_000, v_sol=42.0, side="sell", trader=f"washer-{index}", new_balance=0.0)
    result = _checker().evaluate(token, now=token.last_trade_at, sol_price_usd=SOL_USD)

    assert result.phase is SafetyPhase.RUG_SIGNALS
    check = result.failed_checks[0]
    assert check.name == "SUSPICIOUS_TRADERS"
    assert check.actual_value == pytest.approx(12 / 37 * 100.0)
    assert check.threshold_path == "SAFETY.MAX_SUSPICIOUS_TRADER_PCT"


def test_coordinated_selling_is_a_rug_signal() -> None:
    token = populated_token(25)
    for index in range(6):
        apply_trade(
            token,
            timestamp=400_000 + index * 1_000,
            v_sol=42.0,
            side="sell",
            trader=f"wallet-{index}",
            token_amount=0.5,
            new_balance=0.5,
        )
    result = _checker().evaluate(token, now=token.last_trade_at, sol_price_usd=SOL_USD)

    assert result.failed_checks[0].name == "COORDINATED_SELLING"
    assert result.failed_checks[0].actual_value == 0.0
    assert result.failed_checks[0].threshold == pytest.approx(20.0)

    lenient = SafetyChecker(SafetyConfig(reject_coordinated_selling=False))
    assert lenient.evaluate(token, now=token.last_trade_at, sol_price_usd=SOL_USD).phase is not SafetyPhase.RUG_SIGNALS


def test_spike_then_steady_decline_reads_as_distribution() -> None:
    token = populated_token(25)
    for offset, v_sol in ((1_000, 70.0), (2_000, 69.0), (3_000, 68.0), (4_000, 67.0)):
        apply_trade(token, timestamp=55_000 + offset, v_sol=v_sol, trader=f"late-{offset}")
    assert token.recovery_metrics.phase is RecoveryPhase.DISTRIBUTION
    result = _checker().evaluate(token, now=token.last_trade_at, sol_price_usd=SOL_USD)

    assert result.phase is SafetyPhase.RUG_SIGNALS
    assert result.failed_checks[0].name == "RECOVERY_DISTRIBUTION"
    assert result.failed_checks[0].actual_value == pytest.approx(25.0)

    lenient = SafetyChecker(SafetyConfig(reject_distribution_phase=False))
    assert lenient.evaluate(token, now=token.last_trade_at, sol_price_usd=SOL_USD).phase is not SafetyPhase.RUG_SIGNALS

def test_position_size_is_clamped() -> None:
    config = PositionConfig()

    assert calculate_position_size(5.0, config) == pytest.approx(0.1)
    assert calculate_position_size(40.0, config) == pytest.approx(0.4)
    assert calculate_position_size(500.0, config) == pytest.approx(1.0)

    dynamic = PositionConfig(use_dynamic_sizing=True, volatility_scaling_factor=2.0)
    assert calculate_position_size(40.0, dynamic, volatility=0.25) == pytest.approx(0.2)
