from __future__ import annotations

import pytest

from pump_recovery_bot.analysis.recovery import (
    MarketStructure,
    RecoveryPhase,
    accumulation_score,
    buy_pressure,
    market_structure,
    next_phase,
)
from pump_recovery_bot.tests.factories import apply_trade, make_token


def test_market_structure_compares_the_last_two_swings() -> None:
    assert market_structure([1, 3, 2, 4, 3, 5, 4, 6, 5, 7]) is MarketStructure.BULLISH
    assert market_structure([7, 5, 6, 4, 5, 3, 4, 2, 3, 1]) is MarketStructure.BEARISH
    assert market_structure([5, 6, 4, 7, 3, 8, 2, 9, 1, 10]) is MarketStructure.NEUTRAL
    assert market_structure(list(range(1, 11))) is MarketStructure.UNKNOWN
    assert market_structure([1, 3, 2, 4]) is MarketStructure.UNKNOWN


def test_buy_pressure_counts_rising_steps() -> None:
    assert buy_pressure([1.0, 2.0, 3.0, 2.0, 3.0]) == pytest.approx(0.75)
    assert buy_pressure([9.0, 1.0, 2.0, 3.0, 2.0, 3.0]) == pytest.approx(0.75)
    assert buy_pressure([1.0]) == 0.0


def test_accumulation_score_rewards_steady_rising_volume() -> None:
    assert accumulation_score([1.0, 1.0, 1.0, 1.0]) == pytest.approx(0.5)
    assert accumulation_score([1.0, 1.0, 2.0, 2.0]) == pytest.approx(0.6)
    assert accumulation_score([0.0, 0.0]) == 0.0
    assert accumulation_score([1.0]) == 0.0


def test_phase_transitions() -> None:
    def phase(previous=RecoveryPhase.NONE, **reading):
        values = {"strength": 0.0, "pressure": 0.0, "accumulation": 0.0, "structure": MarketStructure.UNKNOWN}
        values.update(reading)
        return next_phase(previous, **values)

    assert phase(strength=0.05) is RecoveryPhase.NONE
    assert phase(strength=0.2, pressure=0.75, accumulation=0.8) is RecoveryPhase.ACCUMULATION
    assert phase(strength=0.4, structure=MarketStructure.BULLISH) is RecoveryPhase.EXPANSION
    assert phase(strength=0.6, pressure=0.25, structure=MarketStructure.BULLISH) is RecoveryPhase.DISTRIBUTION
    assert phase(RecoveryPhase.EXPANSION, strength=0.2, pressure=0.5) is RecoveryPhase.EXPANSION


def test_token_tracks_recovery_quality_from_its_trades() -> None:
    token = make_token()
    for offset, v_sol in ((1_000, 100.0), (2_000, 60.0), (3_000, 50.0)):
        apply_trade(token, timestamp=offset, v_sol=v_sol)
    assert token.recovery_metrics.updated_at is None

    apply_trade(token, timestamp=4_000, v_sol=55.0)
    apply_trade(token, timestamp=5_000, v_sol=66.0)

    metrics = token.recovery_metrics
    assert metrics.updated_at == 5_000
    assert metrics.drawdown_depth == pytest.approx(0.5)
    assert metrics.recovery_strength == pytest.approx(0.32)
    assert metrics.buy_pressure == pytest.approx(0.5)
    assert metrics.recovery_volume == pytest.approx(0.1 + 0.06 + 0.05 + 0.055 + 0.066)
    assert metrics.market_structure is MarketStructure.UNKNOWN
    assert metrics.phase is RecoveryPhase.NONE
