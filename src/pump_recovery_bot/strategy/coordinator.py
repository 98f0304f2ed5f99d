"""Per-trade orchestration: metrics, lifecycle events, safety, entries and exits."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Callable, Optional

from ..analysis.lifecycle import StateTransition, TokenState
from ..analysis.token import Token, TradeOutcome
from ..analytics.performance import FEED_END_TO_END, PUMP_DETECTION, TradingAnalytics
from ..config.settings import AppConfig
from ..ingestion.events import CreateEvent, TradeEvent
from ..ingestion.sol_price import SolPriceOracle
from ..ingestion.token_registry import TokenRegistry
from ..monitoring.event_bus import EventBus, PumpDetected, TokenStateChanged
from ..monitoring.logger import get_logger
from ..monitoring.metrics import MetricsRegistry
from ..utils.constants import MS_PER_SECOND
from .exits import ExitReason
from .missed_opportunities import MissedOpportunityTracker
from .safety import SafetyChecker, SafetyResult

if TYPE_CHECKING:
    from ..execution.position_manager import PositionManager


class TradingCoordinator:
    """Handles every routed trade for one mint at a time.

    The router guarantees per-mint ordering; everything here runs inside that
    mint's worker, so lifecycle events are published before the mint's next
    trade is applied.
    """

    def __init__(
        self,
        *,
        registry: TokenRegistry,
        positions: "PositionManager",
        safety: SafetyChecker,
        missed: MissedOpportunityTracker,
        sol_price: SolPriceOracle,
        analytics: Optional[TradingAnalytics] = None,
        bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._positions = positions
        self._safety = safety
        self._missed = missed
        self._sol_price = sol_price
        self._analytics = analytics
        self._bus = bus
        self._metrics = metrics
        self._clock = clock
        self._logger = get_logger(__name__)
        registry.add_removal_listener(missed.handle_removed)

    def apply_config(self, previous: AppConfig, config: AppConfig) -> None:
        """Config-store listener: swap every strategy component's config group."""

        self._registry.reconfigure(
            config=config.registry,
            thresholds=config.thresholds,
            pump_config=config.safety.pump_detection,
            trader_config=config.safety.trader_analysis,
        )
        self._safety.reconfigure(config.safety)
        self._missed.reconfigure(config.safety.missed_opportunity, config.position)
        self._positions.reconfigure(config.position, config.position_manager)
        self._positions.exit_engine.reconfigure(config.exit_strategies)
        self._logger.info("Applied new configuration to the trading pipeline")

    def on_create(self, event: CreateEvent) -> None:
        if self._analytics:
            self._analytics.record_token_tracked()

    async def on_trade(self, event: TradeEvent, received_at: float) -> None:
        token = self._resolve(event)
        self._registry.touch(token.mint)
        sol_price = self._sol_price.price
        outcome = token.apply_trade(event, sol_price_usd=sol_price, thresholds=self._registry.thresholds)
        if not outcome.applied:
            self._count("events.duplicate")
            return
        now = token.last_trade_at
        for transition in outcome.transitions:
            self._announce_transition(transition)
        if outcome.pump_detected:
            self._announce_pump(token, outcome, received_at)
        opportunity = self._missed.update(token, now=now)
        if opportunity is not None and self._analytics:
            self._analytics.record_missed_opportunity()

        if self._positions.owns(token.mint):
            if token.state is TokenState.DEAD:
                self._logger.warning("Token %s died while in position", token.mint, extra={"mint": token.mint})
                await self._positions.force_exit(token.mint, ExitReason.TOKEN_DEAD, now=now)
            else:
                await self._positions.on_price_update(token.mint, now=now)
        elif token.state is TokenState.RECOVERY and not self._positions.is_busy:
            await self._consider_entry(token, now=now, sol_price_usd=sol_price)

        if self._analytics:
            self._analytics.record_latency(FEED_END_TO_END, (self._clock() - received_at) * MS_PER_SECOND)

    def _resolve(self, event: TradeEvent) -> Token:
        token = self._registry.get(event.mint)
        if token is None and self._registry.is_pending_restore(event.mint):
            token = self._registry.materialize(event)
        if token is None:
            token = self._registry.require(event.mint)
        return token

    async def _consider_entry(self, token: Token, *, now: int, sol_price_usd: float) -> None:
        result = self._safety.evaluate(token, now=now, sol_price_usd=sol_price_usd)
        if result.approved:
            if await self._positions.open_position(token.mint, now=now) is not None:
                self._missed.finalize(token.mint)
            return
        self._on_rejection(token, result, now)

    def _on_rejection(self, token: Token, result: SafetyResult, now: int) -> None:
        if not result.should_track_miss:
            return
        if self._analytics:
            self._analytics.record_safety_rejection()
        self._missed.enroll(token, result, now=now)

    def _announce_transition(self, transition: StateTransition) -> None:
        self._logger.info(
            "%s: %s -> %s (%s)",
            transition.mint,
            transition.from_state.value,
            transition.to_state.value,
            transition.reason,
            extra={"mint": transition.mint},
        )
        if self._bus:
            self._bus.publish(
                TokenStateChanged(
                    mint=transition.mint,
                    from_state=transition.from_state.value,
                    to_state=transition.to_state.value,
                    timestamp=transition.timestamp,
                    reason=transition.reason,
                ),
                correlation_id=transition.mint,
            )

    def _announce_pump(self, token: Token, outcome: TradeOutcome, received_at: float) -> None:
        spike = outcome.spike
        if spike is None:
            return
        if self._analytics:
            self._analytics.record_latency(PUMP_DETECTION, (self._clock() - received_at) * MS_PER_SECOND)
        if self._bus:
            self._bus.publish(
                PumpDetected(
                    mint=token.mint,
                    timestamp=spike.timestamp,
                    volume_increase=spike.volume_increase,
                    price_change=spike.price_change,
                    pump_count=token.metrics.pump_count,
                ),
                correlation_id=token.mint,
            )

    def _count(self, name: str) -> None:
        if self._metrics:
            self._metrics.increment(name)


__all__ = ["TradingCoordinator"]
