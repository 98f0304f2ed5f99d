"""Exit engine: prioritised stop-loss, trailing, take-profit, volume and time rules."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Sequence

from ..config.settings import ExitStrategiesConfig, get_app_config
from ..utils.constants import BOUNDARY_EPSILON, MS_PER_SECOND

if TYPE_CHECKING:
    from ..analysis.token import Token
    from ..execution.position import Position


class ExitReason(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    TRAILING_STOP = "TRAILING_STOP"
    TAKE_PROFIT = "TAKE_PROFIT"
    VOLUME_EXIT = "VOLUME_EXIT"
    TIME_EXIT = "TIME_EXIT"
    TOKEN_DEAD = "TOKEN_DEAD"
    MANUAL = "MANUAL"


@dataclass(frozen=True, slots=True)
class ExitDecision:
    """An exit of ``portion`` of the original position size."""

    reason: ExitReason
    portion: float = 1.0
    tier: Optional[int] = None
    detail: str = ""

    @property
    def label(self) -> str:
        if self.reason is ExitReason.TAKE_PROFIT and self.tier is not None:
            return f"TAKE_PROFIT_{self.tier}"
        return self.reason.value

    @property
    def is_full(self) -> bool:
        return self.reason is not ExitReason.TAKE_PROFIT


@dataclass(frozen=True, slots=True)
class ExitContext:
    """Market inputs the rules need besides the position itself."""

    now: int
    volatility: float = 0.0
    bucket_volumes: Sequence[float] = field(default_factory=tuple)

    @property
    def current_bucket_volume(self) -> float:
        return self.bucket_volumes[-1] if self.bucket_volumes else 0.0

    @property
    def peak_bucket_volume(self) -> float:
        return max(self.bucket_volumes) if self.bucket_volumes else 0.0


def roi_pct(entry_price: float, price: float) -> float:
    if entry_price <= 0:
        return 0.0
    return (price - entry_price) / entry_price * 100.0


def bucket_volumes(token: "Token", config: ExitStrategiesConfig, now: int) -> List[float]:
    """Trailing volume buckets covering the measurement period, oldest first."""

    volume_cfg = config.volume_based
    bucket_ms = int(volume_cfg.bucket_seconds * MS_PER_SECOND)
    count = max(1, math.ceil(volume_cfg.measurement_period_seconds / volume_cfg.bucket_seconds))
    volumes: List[float] = []
    for index in range(count - 1, -1, -1):
        end = now - index * bucket_ms
        volumes.append(token.volume.volume_between(end - bucket_ms + 1, end))
    return volumes


class ExitEngine:
    """Pure rule evaluation; the first matching rule in priority order wins.

    Disabled rules are skipped without changing the order of the rest.
    """

    def __init__(self, config: Optional[ExitStrategiesConfig] = None) -> None:
        self._config = config or get_app_config().exit_strategies

    @property
    def config(self) -> ExitStrategiesConfig:
        return self._config

    def reconfigure(self, config: ExitStrategiesConfig) -> None:
        self._config = config

    def trail_distance_pct(self, volatility: float) -> float:
        cfg = self._config.trailing_stop
        raw = cfg.base_pct + volatility * cfg.volatility_multiplier
        return min(max(raw, cfg.min_pct), cfg.max_pct)

    def evaluate(self, position: "Position", context: ExitContext) -> Optional[ExitDecision]:
        if not position.is_open or position.remaining_size <= 0:
            return None
        roi = roi_pct(position.entry_price, position.current_price)
        for rule in (
            self._stop_loss,
            self._trailing_stop,
            self._take_profit,
            self._volume_collapse,
            self._time_exit,
        ):
            decision = rule(position, context, roi)
            if decision is not None:
                return decision
        return None

    def _stop_loss(self, position: "Position", context: ExitContext, roi: float) -> Optional[ExitDecision]:
        cfg = self._config.stop_loss
        if cfg.enabled and roi <= -cfg.threshold_pct + BOUNDARY_EPSILON:
            return ExitDecision(ExitReason.STOP_LOSS, detail=f"roi {roi:.2f}%")
        return None

    def _trailing_stop(self, position: "Position", context: ExitContext, roi: float) -> Optional[ExitDecision]:
        cfg = self._config.trailing_stop
        if not cfg.enabled or position.highest_price <= 0:
            return None
        peak_roi = roi_pct(position.entry_price, position.highest_price)
        if peak_roi < cfg.activation_pct - BOUNDARY_EPSILON:
            return None
        distance = self.trail_distance_pct(context.volatility)
        drop = (position.highest_price - position.current_price) / position.highest_price * 100.0
        if drop >= distance - BOUNDARY_EPSILON:
            return ExitDecision(ExitReason.TRAILING_STOP, detail=f"drop {drop:.2f}% >= {distance:.2f}%")
        return None

    def _take_profit(self, position: "Position", context: ExitContext, roi: float) -> Optional[ExitDecision]:
        cfg = self._config.take_profit
        if not cfg.enabled:
            return None
        for index, tier in enumerate(cfg.tiers, start=1):
            if index in position.consumed_tiers:
                continue
            if roi >= tier.threshold_pct - BOUNDARY_EPSILON:
                return ExitDecision(
                    ExitReason.TAKE_PROFIT,
                    portion=tier.portion,
                    tier=index,
                    detail=f"roi {roi:.2f}% >= {tier.threshold_pct}%",
                )
            break
        return None

    def _volume_collapse(self, position: "Position", context: ExitContext, roi: float) -> Optional[ExitDecision]:
        cfg = self._config.volume_based
        if not cfg.enabled or not context.bucket_volumes:
            return None
        peak = context.peak_bucket_volume
        if peak < cfg.min_peak_volume_sol - BOUNDARY_EPSILON:
            return None
        current = context.current_bucket_volume
        if current < peak * cfg.volume_drop_threshold_pct / 100.0:
            return ExitDecision(ExitReason.VOLUME_EXIT, detail=f"bucket {current:.2f} vs peak {peak:.2f} SOL")
        return None

    def _time_exit(self, position: "Position", context: ExitContext, roi: float) -> Optional[ExitDecision]:
        cfg = self._config.time_based
        if not cfg.enabled:
            return None
        held = (context.now - position.entry_time) / MS_PER_SECOND
        limit = cfg.max_hold_time_seconds
        if roi > cfg.extension_threshold_pct:
            limit += cfg.extension_time_seconds
        if held > limit:
            return ExitDecision(ExitReason.TIME_EXIT, detail=f"held {held:.0f}s > {limit:.0f}s")
        return None


__all__ = ["ExitContext", "ExitDecision", "ExitEngine", "ExitReason", "bucket_volumes", "roi_pct"]
