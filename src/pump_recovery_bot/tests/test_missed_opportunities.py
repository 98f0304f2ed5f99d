from __future__ import annotations

from typing import List, Optional

import pytest

from pump_recovery_bot.analysis.lifecycle import TokenState
from pump_recovery_bot.config.settings import MissedOpportunityConfig, PositionConfig, SafetyConfig
from pump_recovery_bot.monitoring.event_bus import Event, EventBus, EventType
from pump_recovery_bot.strategy import FailedCheck, MissedOpportunityTracker, SafetyChecker, SafetyResult
from pump_recovery_bot.strategy.missed_opportunities import MetricsSample, suggest_thresholds
from pump_recovery_bot.tests.factories import SOL_USD, apply_trade, drive_to_recovery, make_registry, populated_token


def _tracker(bus: Optional[EventBus] = None, **overrides) -> MissedOpportunityTracker:
    return MissedOpportunityTracker(
        MissedOpportunityConfig(**overrides), position_config=PositionConfig(), bus=bus
    )


def _rejected(holders: int = 24, mint: str = "MintA"):
    token = populated_token(holders, mint=mint)
    result = SafetyChecker(SafetyConfig()).evaluate(token, now=token.last_trade_at, sol_price_usd=SOL_USD)
    assert not result.approved
    return token, result


def test_rejected_token_that_runs_is_reported_once() -> None:
    bus = EventBus()
    published: List[Event] = []
    bus.subscribe(EventType.MISSED_OPPORTUNITY, published.append)
    tracker = _tracker(bus)
    token, result = _rejected()
    rejected_at = token.last_trade_at
    assert tracker.enroll(token, result, now=rejected_at)

    opportunity = None
    for offset, v_sol, wallet in ((30_000, 50.0, "late-1"), (60_000, 58.0, "late-2"), (90_000, 70.0, "late-3")):
        apply_trade(token, timestamp=rejected_at + offset, v_sol=v_sol, trader=wallet)
        opportunity = tracker.update(token, now=token.last_trade_at)

    assert opportunity is not None
    assert opportunity.gain_pct == pytest.approx((70.0 / 41.5 - 1.0) * 100.0)
    assert opportunity.time_to_peak_ms == 90_000
    assert opportunity.potential_profit_sol == pytest.approx((70.0 / 41.5 - 1.0) * 0.415)
    assert opportunity.peak.holders == 27
    assert opportunity.initial.holders == 24
    suggestion = opportunity.suggestions[0]
    assert (suggestion.check, suggestion.suggested_threshold, suggestion.confidence) == ("MIN_HOLDERS", 22.0, 0.8)
    assert suggestion.threshold_path == "SAFETY.MIN_HOLDERS"
    assert opportunity.confidence_score == pytest.approx(0.8)
    assert opportunity.risk_level == "MEDIUM"

    apply_trade(token, timestamp=rejected_at + 100_000, v_sol=80.0, trader="late-4")
    assert tracker.update(token, now=token.last_trade_at) is None
    assert not tracker.tracking(token.mint)
    assert len(tracker.emitted) == 1

    assert bus.flush()
    bus.close()
    assert len(published) == 1
    assert published[0].payload.suggestions == {"MIN_HOLDERS": 22.0}
    assert published[0].correlation_id == token.mint


def test_slow_or_small_runs_are_not_reported() -> None:
    tracker = _tracker()
    token, result = _rejected()
    rejected_at = token.last_trade_at
    tracker.enroll(token, result, now=rejected_at)

    apply_trade(token, timestamp=rejected_at + 60_000, v_sol=54.0, trader="late-1")
    assert tracker.update(token, now=token.last_trade_at) is None

    apply_trade(token, timestamp=rejected_at + 400_000, v_sol=90.0, trader="late-2")
    assert tracker.update(token, now=token.last_trade_at) is None
    assert tracker.tracking(token.mint)

    tracker.handle_removed(token)
    assert not tracker.tracking(token.mint)
    assert tracker.emitted == []


def test_tiny_positions_do_not_count_as_missed_profit() -> None:
    tracker = _tracker(min_profit_sol=0.5)
    token, result = _rejected()
    rejected_at = token.last_trade_at
    tracker.enroll(token, result, now=rejected_at)

    apply_trade(token, timestamp=rejected_at + 30_000, v_sol=70.0, trader="late-1")

    assert tracker.update(token, now=token.last_trade_at) is None


def test_suppressed_rejections_are_not_enrolled() -> None:
    tracker = _tracker()
    token, result = _rejected()
    suppressed = SafetyResult(approved=False, failed_checks=result.failed_checks, suppressed=True)

    assert not tracker.enroll(token, suppressed, now=token.last_trade_at)
    assert not _tracker(enabled=False).enroll(token, result, now=token.last_trade_at)
    assert tracker.enroll(token, result, now=token.last_trade_at)
    assert not tracker.enroll(token, result, now=token.last_trade_at)


def test_oldest_trace_is_evicted_at_capacity() -> None:
    tracker = _tracker(max_tracked=2)
    for mint in ("MintA", "MintB", "MintC"):
        token, result = _rejected(mint=mint)
        tracker.enroll(token, result, now=token.last_trade_at)

    assert len(tracker) == 2
    assert not tracker.tracking("MintA")
    assert tracker.tracking("MintC")


def test_concentration_suggestion_loosens_threshold() -> None:
    failed = FailedCheck("MAX_TOP_HOLDER_CONCENTRATION", "Top holder concentration too high", 42.0, 30.0)
    holders = FailedCheck("MIN_HOLDERS", "Insufficient holders", 20.0, 25.0)
    peak = MetricsSample(price=0.1, market_cap_sol=100.0, holders=22, top_holder_concentration=18.0, volume_5m=4.0)

    suggestions, confidence, risk = suggest_thresholds([failed, holders], peak)

    assert [item.suggested_threshold for item in suggestions] == [47.0]
    assert confidence == pytest.approx(0.35)
    assert risk == "LOW"


def test_trace_ends_once_the_token_is_bought() -> None:
    tracker = _tracker()
    token = drive_to_recovery(make_registry())
    result = SafetyChecker(SafetyConfig()).evaluate(token, now=token.last_trade_at, sol_price_usd=SOL_USD)
    assert not result.approved
    assert tracker.enroll(token, result, now=token.last_trade_at)

    token.lifecycle.transition(TokenState.IN_POSITION, timestamp=token.last_trade_at, reason="position opened")
    apply_trade(token, timestamp=token.last_trade_at + 1_000, v_sol=170.0, trader="chaser")

    assert tracker.update(token, now=token.last_trade_at) is None
    assert not tracker.tracking(token.mint)
    assert tracker.emitted == []
