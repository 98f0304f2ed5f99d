"""Post-rejection tracing of tokens the safety checker turned away."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from ..analysis.lifecycle import TokenState
from ..analysis.token import Token
from ..config.settings import MissedOpportunityConfig, PositionConfig, get_app_config
from ..monitoring.event_bus import EventBus, MissedOpportunityDetected
from ..monitoring.logger import get_logger
from ..monitoring.metrics import MetricsRegistry
from ..utils.constants import MS_PER_MINUTE, MS_PER_SECOND
from .safety import FailedCheck, SafetyResult
from .sizing import calculate_position_size

VOLUME_WINDOW_MS = 5 * MS_PER_MINUTE


@dataclass(frozen=True, slots=True)
class MetricsSample:
    """Token metrics captured at rejection time or at a new price peak."""

    price: float
    market_cap_sol: float
    holders: int
    top_holder_concentration: float
    volume_5m: float
    creator_sell_pct: float = 0.0
    volatility: float = 0.0

    @classmethod
    def capture(cls, token: Token, now: int) -> "MetricsSample":
        return cls(
            price=token.current_price,
            market_cap_sol=token.market_cap_sol,
            holders=token.holder_count(),
            top_holder_concentration=token.top_holder_concentration(3) * 100.0,
            volume_5m=token.recent_volume(VOLUME_WINDOW_MS, now),
            creator_sell_pct=token.creator_sell_percentage(),
            volatility=token.volatility(),
        )


@dataclass(frozen=True, slots=True)
class ThresholdSuggestion:
    check: str
    threshold_path: Optional[str]
    current_threshold: Optional[float]
    actual_value: Optional[float]
    suggested_threshold: float
    confidence: float
    reasoning: str


@dataclass(frozen=True, slots=True)
class MissedOpportunity:
    mint: str
    symbol: str
    rejected_at: int
    rejected_price: float
    peak_price: float
    gain_pct: float
    time_to_peak_ms: int
    potential_profit_sol: float
    failed_checks: Tuple[FailedCheck, ...]
    suggestions: Tuple[ThresholdSuggestion, ...]
    confidence_score: float
    risk_level: str
    initial: MetricsSample
    peak: MetricsSample


@dataclass(slots=True)
class _Trace:
    mint: str
    symbol: str
    rejected_at: int
    failed_checks: Tuple[FailedCheck, ...]
    initial: MetricsSample
    peak: MetricsSample
    peak_at: int


def suggest_thresholds(
    failed_checks: Iterable[FailedCheck], peak: MetricsSample
) -> Tuple[List[ThresholdSuggestion], float, str]:
    """Derive looser thresholds from how the token behaved after rejection.

    Returns the suggestions, the confidence score averaged over every failed
    check, and the resulting risk level.
    """

    checks = list(failed_checks)
    suggestions: List[ThresholdSuggestion] = []
    for check in checks:
        if check.actual_value is None or check.threshold is None:
            continue
        if check.name == "MIN_HOLDERS" and peak.holders > check.threshold:
            suggestions.append(
                ThresholdSuggestion(
                    check=check.name,
                    threshold_path=check.threshold_path,
                    current_threshold=check.threshold,
                    actual_value=check.actual_value,
                    suggested_threshold=float(math.floor(check.actual_value * 0.9 + 0.5)),
                    confidence=0.8,
                    reasoning="Token gained holders quickly after rejection",
                )
            )
        elif check.name == "MAX_TOP_HOLDER_CONCENTRATION" and peak.top_holder_concentration < check.threshold:
            suggestions.append(
                ThresholdSuggestion(
                    check=check.name,
                    threshold_path=check.threshold_path,
                    current_threshold=check.threshold,
                    actual_value=check.actual_value,
                    suggested_threshold=float(math.ceil(check.actual_value * 1.1)),
                    confidence=0.7,
                    reasoning="Holder concentration normalised as the token grew",
                )
            )
    confidence = sum(item.confidence for item in suggestions) / len(checks) if checks else 0.0
    risk_level = "MEDIUM" if confidence > 0.7 else "LOW"
    return suggestions, confidence, risk_level


class MissedOpportunityTracker:
    """Follows rejected tokens and reports the ones that ran without us.

    A trace is emitted at most once, at the first price update where gain, time
    to peak and hypothetical profit all qualify. Tracking ends there, at a
    terminal lifecycle state, once the token is bought, or when the registry
    drops the token.
    """

    def __init__(
        self,
        config: Optional[MissedOpportunityConfig] = None,
        *,
        position_config: Optional[PositionConfig] = None,
        bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        app_config = get_app_config() if config is None or position_config is None else None
        self._config = config or app_config.safety.missed_opportunity
        self._position_config = position_config or app_config.position
        self._bus = bus
        self._metrics = metrics
        self._traces: Dict[str, _Trace] = {}
        self._emitted: List[MissedOpportunity] = []
        self._logger = get_logger(__name__)

    def reconfigure(self, config: MissedOpportunityConfig, position_config: PositionConfig) -> None:
        self._config = config
        self._position_config = position_config

    def __len__(self) -> int:
        return len(self._traces)

    def tracking(self, mint: str) -> bool:
        return mint in self._traces

    @property
    def emitted(self) -> List[MissedOpportunity]:
        return list(self._emitted)

    def enroll(self, token: Token, result: SafetyResult, *, now: int) -> bool:
        """Start tracing ``token`` after a (non-suppressed) rejection."""

        if not self._config.enabled or not result.should_track_miss:
            return False
        if token.mint in self._traces:
            return False
        while len(self._traces) >= self._config.max_tracked:
            oldest = next(iter(self._traces))
            self._traces.pop(oldest)
            self._logger.debug("Evicted missed-opportunity trace for %s", oldest)
        sample = MetricsSample.capture(token, now)
        self._traces[token.mint] = _Trace(
            mint=token.mint,
            symbol=token.symbol,
            rejected_at=now,
            failed_checks=result.failed_checks,
            initial=sample,
            peak=sample,
            peak_at=now,
        )
        if self._metrics:
            self._metrics.increment("missed.enrolled")
        return True

    def update(self, token: Token, *, now: int) -> Optional[MissedOpportunity]:
        trace = self._traces.get(token.mint)
        if trace is None:
            return None
        if token.state is TokenState.IN_POSITION:
            self.finalize(token.mint)
            return None
        if token.current_price > trace.peak.price:
            trace.peak = MetricsSample.capture(token, now)
            trace.peak_at = now
        opportunity = self._evaluate(trace)
        if opportunity is not None:
            self._traces.pop(token.mint, None)
            self._publish(opportunity)
            return opportunity
        if token.state.is_terminal:
            self.finalize(token.mint)
        return None

    def finalize(self, mint: str) -> None:
        trace = self._traces.pop(mint, None)
        if trace is not None:
            self._logger.debug("Stopped tracing %s without a significant miss", mint, extra={"mint": mint})

    def handle_removed(self, token: Token) -> None:
        self.finalize(token.mint)

    def potential_profit(self, trace: _Trace) -> float:
        if trace.initial.price <= 0:
            return 0.0
        gain = (trace.peak.price - trace.initial.price) / trace.initial.price
        return gain * calculate_position_size(trace.initial.market_cap_sol, self._position_config)

    def _evaluate(self, trace: _Trace) -> Optional[MissedOpportunity]:
        if trace.initial.price <= 0:
            return None
        gain_pct = (trace.peak.price - trace.initial.price) / trace.initial.price * 100.0
        time_to_peak = trace.peak_at - trace.rejected_at
        profit = self.potential_profit(trace)
        significant = (
            gain_pct >= self._config.min_gain_pct
            and time_to_peak < self._config.max_time_to_peak_seconds * MS_PER_SECOND
            and profit >= self._config.min_profit_sol
        )
        if not significant:
            return None
        suggestions, confidence, risk_level = suggest_thresholds(trace.failed_checks, trace.peak)
        return MissedOpportunity(
            mint=trace.mint,
            symbol=trace.symbol,
            rejected_at=trace.rejected_at,
            rejected_price=trace.initial.price,
            peak_price=trace.peak.price,
            gain_pct=gain_pct,
            time_to_peak_ms=time_to_peak,
            potential_profit_sol=profit,
            failed_checks=trace.failed_checks,
            suggestions=tuple(suggestions),
            confidence_score=confidence,
            risk_level=risk_level,
            initial=trace.initial,
            peak=trace.peak,
        )

    def _publish(self, opportunity: MissedOpportunity) -> None:
        self._emitted.append(opportunity)
        if self._metrics:
            self._metrics.increment("missed.detected")
        self._logger.info(
            "Missed opportunity on %s: +%.1f%% in %.0fs (%.3f SOL)",
            opportunity.mint,
            opportunity.gain_pct,
            opportunity.time_to_peak_ms / MS_PER_SECOND,
            opportunity.potential_profit_sol,
            extra={"mint": opportunity.mint, "risk_level": opportunity.risk_level},
        )
        if self._bus:
            self._bus.publish(
                MissedOpportunityDetected(
                    mint=opportunity.mint,
                    gain_pct=opportunity.gain_pct,
                    potential_profit_sol=opportunity.potential_profit_sol,
                    time_to_peak_ms=opportunity.time_to_peak_ms,
                    failed_checks=tuple(check.name for check in opportunity.failed_checks),
                    suggestions={item.check: item.suggested_threshold for item in opportunity.suggestions},
                    risk_level=opportunity.risk_level,
                ),
                correlation_id=opportunity.mint,
            )


__all__ = [
    "MetricsSample",
    "MissedOpportunity",
    "MissedOpportunityTracker",
    "ThresholdSuggestion",
    "suggest_thresholds",
]
