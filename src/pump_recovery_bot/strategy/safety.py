"""Three-phase admission checks gating position entry."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from cachetools import TTLCache

from ..analysis.recovery import DISTRIBUTION_BUY_PRESSURE, RecoveryPhase
from ..analysis.token import Token
from ..analysis.traders import FlowSide
from ..config.settings import SafetyConfig, get_app_config
from ..monitoring.logger import get_logger
from ..monitoring.metrics import MetricsRegistry
from ..utils.constants import BOUNDARY_EPSILON, MS_PER_SECOND
from ..utils.errors import SafetyCheckError


class SafetyPhase(str, Enum):
    MINIMUM_REQUIREMENTS = "MINIMUM_REQUIREMENTS"
    RUG_SIGNALS = "RUG_SIGNALS"
    PUMP_DYNAMICS = "PUMP_DYNAMICS"
    INTERNAL = "INTERNAL"


@dataclass(frozen=True, slots=True)
class FailedCheck:
    """One failed admission check, with the config path of its threshold."""

    name: str
    reason: str
    actual_value: Optional[float] = None
    threshold: Optional[float] = None
    threshold_path: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SafetyResult:
    approved: bool
    phase: Optional[SafetyPhase] = None
    failed_checks: Tuple[FailedCheck, ...] = field(default_factory=tuple)
    suppressed: bool = False
    price: float = 0.0
    timestamp: int = 0

    @property
    def reason(self) -> Optional[str]:
        return self.failed_checks[0].reason if self.failed_checks else None

    @property
    def should_track_miss(self) -> bool:
        return not self.approved and not self.suppressed


@dataclass(frozen=True, slots=True)
class _LastFailure:
    timestamp: int
    price: float
    result: SafetyResult


class SafetyChecker:
    """Evaluates a token in three phases; the first failing check wins.

    A token that failed recently is not re-evaluated until the retry cooldown
    has passed, and never while its price has already run away from the
    failed evaluation.
    """

    def __init__(
        self,
        config: Optional[SafetyConfig] = None,
        *,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._config = config or get_app_config().safety
        self._metrics = metrics
        self._failures: TTLCache[str, _LastFailure] = TTLCache(
            maxsize=4_096, ttl=self._config.retry_memory_seconds
        )
        self._logger = get_logger(__name__)

    @property
    def config(self) -> SafetyConfig:
        return self._config

    def reconfigure(self, config: SafetyConfig) -> None:
        self._config = config

    def last_failure(self, mint: str) -> Optional[SafetyResult]:
        entry = self._failures.get(mint)
        return entry.result if entry else None

    def forget(self, mint: str) -> None:
        self._failures.pop(mint, None)

    def evaluate(self, token: Token, *, now: int, sol_price_usd: float) -> SafetyResult:
        previous = self._failures.get(token.mint)
        if previous is not None and self._suppress_retry(previous, token.current_price, now):
            self._count("safety.suppressed")
            return SafetyResult(
                approved=False,
                phase=previous.result.phase,
                failed_checks=previous.result.failed_checks,
                suppressed=True,
                price=token.current_price,
                timestamp=now,
            )
        try:
            phase, failure = self._run_phases(token, now=now, sol_price_usd=sol_price_usd)
        except Exception:  # noqa: BLE001 - any checker bug rejects the token
            self._logger.exception("Safety check crashed for %s", token.mint, extra={"mint": token.mint})
            phase = SafetyPhase.INTERNAL
            failure = FailedCheck(name="INTERNAL", reason="internal")
            self._count(f"errors.{SafetyCheckError.kind}")
        if failure is None:
            self._failures.pop(token.mint, None)
            self._count("safety.approved")
            return SafetyResult(approved=True, price=token.current_price, timestamp=now)
        result = SafetyResult(
            approved=False,
            phase=phase,
            failed_checks=(failure,),
            price=token.current_price,
            timestamp=now,
        )
        self._failures[token.mint] = _LastFailure(timestamp=now, price=token.current_price, result=result)
        self._count(f"safety.rejected.{failure.name}")
        self._logger.info(
            "Safety rejected %s in %s: %s",
            token.mint,
            phase.value,
            failure.reason,
            extra={"mint": token.mint, "check": failure.name},
        )
        return result

    def _suppress_retry(self, previous: _LastFailure, price: float, now: int) -> bool:
        elapsed = (now - previous.timestamp) / MS_PER_SECOND
        if elapsed < self._config.retry_cooldown_seconds:
            return True
        if previous.price <= 0:
            return False
        gain_pct = (price / previous.price - 1.0) * 100.0
        return gain_pct > self._config.retry_max_price_gain_pct + BOUNDARY_EPSILON

    def _run_phases(
        self, token: Token, *, now: int, sol_price_usd: float
    ) -> Tuple[Optional[SafetyPhase], Optional[FailedCheck]]:
        for phase, check in (
            (SafetyPhase.MINIMUM_REQUIREMENTS, self._minimum_requirements),
            (SafetyPhase.RUG_SIGNALS, self._rug_signals),
            (SafetyPhase.PUMP_DYNAMICS, self._pump_dynamics),
        ):
            failure = check(token, now, sol_price_usd)
            if failure is not None:
                return phase, failure
        return None, None

    def _minimum_requirements(self, token: Token, now: int, sol_price_usd: float) -> Optional[FailedCheck]:
        cfg = self._config
        age = token.age_seconds(now)
        if age < cfg.min_token_age_seconds - BOUNDARY_EPSILON:
            return FailedCheck(
                "MIN_TOKEN_AGE", "Token too young", age, cfg.min_token_age_seconds, "SAFETY.MIN_TOKEN_AGE_SECONDS"
            )
        liquidity = token.v_sol_in_bonding_curve
        if liquidity < cfg.min_liquidity_sol - BOUNDARY_EPSILON:
            return FailedCheck(
                "MIN_LIQUIDITY", "Insufficient liquidity", liquidity, cfg.min_liquidity_sol, "SAFETY.MIN_LIQUIDITY_SOL"
            )
        holders = token.holder_count()
        if holders < cfg.min_holders:
            return FailedCheck(
                "MIN_HOLDERS", "Insufficient holders", float(holders), float(cfg.min_holders), "SAFETY.MIN_HOLDERS"
            )
        market_cap_usd = token.market_cap_usd(sol_price_usd)
        if market_cap_usd > cfg.max_entry_market_cap_usd + BOUNDARY_EPSILON:
            return FailedCheck(
                "MAX_ENTRY_MARKET_CAP",
                "Market cap too high for entry",
                market_cap_usd,
                cfg.max_entry_market_cap_usd,
                "SAFETY.MAX_ENTRY_MARKET_CAP_USD",
            )
        return None

    def _rug_signals(self, token: Token, now: int, sol_price_usd: float) -> Optional[FailedCheck]:
        cfg = self._config
        metrics = token.metrics
        if metrics.pump_count > 0 and metrics.last_pump_time is not None and metrics.last_pump_price:
            since_pump = (now - metrics.last_pump_time) / MS_PER_SECOND
            if since_pump < cfg.post_pump_window_seconds:
                change_pct = (token.current_price / metrics.last_pump_price - 1.0) * 100.0
                if change_pct <= -cfg.post_pump_dump_pct + BOUNDARY_EPSILON:
                    return FailedCheck(
                        "POST_PUMP_DUMP",
                        "Price dumped after pump",
                        change_pct,
                        -cfg.post_pump_dump_pct,
                        "SAFETY.POST_PUMP_DUMP_PCT",
                    )
        creator_sells = token.creator_sell_volume(int(cfg.creator_sell_window_seconds * MS_PER_SECOND), now)
        if token.v_sol_in_bonding_curve > 0:
            sell_pct = creator_sells / token.v_sol_in_bonding_curve * 100.0
            if sell_pct > cfg.max_creator_sell_volume_pct + BOUNDARY_EPSILON:
                return FailedCheck(
                    "CREATOR_SELLING",
                    "Suspicious creator selling",
                    sell_pct,
                    cfg.max_creator_sell_volume_pct,
                    "SAFETY.MAX_CREATOR_SELL_VOLUME_PCT",
                )
        concentration_pct = token.top_holder_concentration(cfg.top_holder_count) * 100.0
        if concentration_pct > cfg.max_top_holder_concentration + BOUNDARY_EPSILON:
            return FailedCheck(
                "MAX_TOP_HOLDER_CONCENTRATION",
                "Top holder concentration too high",
                concentration_pct,
                cfg.max_top_holder_concentration,
                "SAFETY.MAX_TOP_HOLDER_CONCENTRATION",
            )
        return self._trader_signals(token, now)

    def _trader_signals(self, token: Token, now: int) -> Optional[FailedCheck]:
        cfg = self._config
        assessment = token.trader_assessment(now)
        share_pct = assessment.suspicious_share_pct
        if share_pct > cfg.max_suspicious_trader_pct + BOUNDARY_EPSILON:
            return FailedCheck(
                "SUSPICIOUS_TRADERS",
                "Too many wash or coordinated traders",
                share_pct,
                cfg.max_suspicious_trader_pct,
                "SAFETY.MAX_SUSPICIOUS_TRADER_PCT",
            )
        flow = assessment.coordinated
        if cfg.reject_coordinated_selling and flow is not None and flow.side is FlowSide.SELL:
            return FailedCheck(
                "COORDINATED_SELLING",
                "Coordinated selling",
                flow.buy_ratio * 100.0,
                (1.0 - cfg.trader_analysis.one_sided_ratio) * 100.0,
                "SAFETY.TRADER_ANALYSIS.ONE_SIDED_RATIO",
            )
        recovery = token.recovery_metrics
        if cfg.reject_distribution_phase and recovery.phase is RecoveryPhase.DISTRIBUTION:
            return FailedCheck(
                "RECOVERY_DISTRIBUTION",
                "Recovery looks like distribution",
                recovery.buy_pressure * 100.0,
                DISTRIBUTION_BUY_PRESSURE * 100.0,
                "SAFETY.REJECT_DISTRIBUTION_PHASE",
            )
        return None

    def _pump_dynamics(self, token: Token, now: int, sol_price_usd: float) -> Optional[FailedCheck]:
        cfg = self._config.pump_detection
        metrics = token.metrics
        for branch in self.pump_branches(token, now=now, sol_price_usd=sol_price_usd):
            if branch:
                return None
        return FailedCheck(
            "PUMP_DYNAMICS",
            "No qualifying pump pattern",
            metrics.highest_gain_rate,
            cfg.min_gain_rate,
            "SAFETY.PUMP_DETECTION",
        )

    def pump_branches(self, token: Token, *, now: int, sol_price_usd: float) -> List[bool]:
        """Outcome of each pump-pattern branch, in evaluation order."""

        cfg = self._config.pump_detection
        metrics = token.metrics
        spike = metrics.latest_spike()
        accelerating = (
            metrics.price_acceleration > cfg.min_price_acceleration
            and spike is not None
            and spike.volume_increase > cfg.min_volume_spike
            and spike.price_change / spike.volume_increase > cfg.min_price_volume_correlation
        )
        steady_gain = (
            metrics.highest_gain_rate > cfg.min_gain_rate and metrics.volatility < cfg.max_price_volatility
        )
        large_token = (
            token.market_cap_usd(sol_price_usd) > cfg.large_token_mc_usd
            and metrics.market_cap_gain_rate > cfg.min_mc_gain_rate
        )
        repeated = metrics.pumps_within(cfg.pump_window_ms, now) >= cfg.min_pump_count
        return [accelerating, steady_gain, large_token, repeated]

    def _count(self, name: str) -> None:
        if self._metrics:
            self._metrics.increment(name)


__all__ = ["FailedCheck", "SafetyChecker", "SafetyPhase", "SafetyResult"]
