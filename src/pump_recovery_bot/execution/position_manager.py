"""Position manager: opens, marks, exits and persists the single active position."""

from __future__ import annotations

import time
from typing import Callable, List, Optional

from ..analysis.lifecycle import StateTransition, TokenState
from ..analysis.token import Token
from ..analytics.performance import TRADE_EXECUTION, TradingAnalytics
from ..config.settings import PositionConfig, PositionManagerConfig, get_app_config
from ..datalake.schemas import PositionsSnapshot
from ..datalake.storage import SnapshotWriter
from ..ingestion.sol_price import SolPriceOracle
from ..ingestion.token_registry import TokenRegistry
from ..monitoring.event_bus import (
    EventBus,
    PartialExit,
    PositionClosed,
    PositionOpened,
    TokenStateChanged,
)
from ..monitoring.logger import get_logger
from ..monitoring.metrics import MetricsRegistry
from ..strategy.exits import ExitContext, ExitDecision, ExitEngine, ExitReason, bucket_volumes
from ..strategy.sizing import calculate_position_size
from ..utils.constants import MS_PER_SECOND
from ..utils.errors import IllegalPositionState
from .position import ExitFill, Position, PositionState
from .simulator import TradeDirection, TransactionSimulator
from .wallet import Wallet


class PositionManager:
    """Sole owner of the active :class:`Position`.

    Tokens are referenced by mint only and resolved through the registry. The
    wallet is touched exclusively here, under its lock.
    """

    def __init__(
        self,
        *,
        wallet: Wallet,
        simulator: TransactionSimulator,
        registry: TokenRegistry,
        sol_price: SolPriceOracle,
        exit_engine: Optional[ExitEngine] = None,
        config: Optional[PositionConfig] = None,
        manager_config: Optional[PositionManagerConfig] = None,
        analytics: Optional[TradingAnalytics] = None,
        snapshots: Optional[SnapshotWriter] = None,
        bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        app_config = get_app_config() if config is None or manager_config is None else None
        self._config = config or app_config.position
        self._manager_config = manager_config or app_config.position_manager
        self._wallet = wallet
        self._simulator = simulator
        self._registry = registry
        self._sol_price = sol_price
        self._exit_engine = exit_engine or ExitEngine()
        self._analytics = analytics
        self._snapshots = snapshots
        self._bus = bus
        self._metrics = metrics
        self._clock = clock
        self._active: Optional[Position] = None
        self._last_closed: Optional[Position] = None
        self._pending_mint: Optional[str] = None
        self._logger = get_logger(__name__)

    @property
    def active(self) -> Optional[Position]:
        return self._active

    @property
    def last_closed(self) -> Optional[Position]:
        return self._last_closed

    @property
    def pending_mint(self) -> Optional[str]:
        return self._pending_mint

    @property
    def wallet(self) -> Wallet:
        return self._wallet

    @property
    def exit_engine(self) -> ExitEngine:
        return self._exit_engine

    @property
    def is_busy(self) -> bool:
        return self._pending_mint is not None or self._active is not None

    def owns(self, mint: str) -> bool:
        return self._pending_mint == mint or (self._active is not None and self._active.mint == mint)

    def reconfigure(self, config: PositionConfig, manager_config: PositionManagerConfig) -> None:
        self._config = config
        self._manager_config = manager_config

    def position_size(self, token: Token) -> float:
        return calculate_position_size(token.market_cap_sol, self._config, token.volatility())

    def _reference_volume(self, token: Token, now: int) -> float:
        window_ms = int(self._config.reference_volume_window_seconds * MS_PER_SECOND)
        return token.recent_volume(window_ms, now)

    async def open_position(self, mint: str, *, now: int) -> Optional[Position]:
        """Open the single position on ``mint`` after a simulated confirmation.

        Returns None when another position is active or pending. Raises
        :class:`InsufficientBalance` when the wallet cannot fund the size; a
        cancelled confirmation leaves the wallet and the token untouched.
        """

        if self.is_busy:
            self._logger.debug("Skipping entry on %s: a position is already active", mint)
            return None
        token = self._registry.require(mint)
        if token.state is not TokenState.RECOVERY:
            raise IllegalPositionState(
                f"cannot open a position on a {token.state.value} token",
                context={"mint": mint, "state": token.state.value},
            )
        self._pending_mint = mint
        started = self._clock()
        try:
            size = self.position_size(token)
            delay_ms = await self._simulator.simulate_delay()
            impact = self._simulator.apply_impact(
                size,
                token.current_price,
                self._reference_volume(token, now),
                direction=TradeDirection.BUY,
                volatility=token.volatility(),
            )
            async with self._wallet.lock:
                self._wallet.debit(size, reason=f"open {mint}")
                position = Position(
                    mint,
                    size=size,
                    entry_price=impact.execution_price,
                    entry_time=now,
                    slippage=impact.slippage,
                )
                position.open()
                self._active = position
        finally:
            self._pending_mint = None
        self._registry.protect(mint)
        transition = token.lifecycle.transition(
            TokenState.IN_POSITION, timestamp=now, reason="position opened", price=token.current_price
        )
        self._announce_transition(transition)
        if self._analytics:
            self._analytics.record_latency(TRADE_EXECUTION, (self._clock() - started) * MS_PER_SECOND)
        if self._metrics:
            self._metrics.increment("positions.opened")
        self._logger.info(
            "Opened %.4f SOL on %s at %.10f (slippage %.2f%%)",
            size,
            mint,
            impact.execution_price,
            impact.slippage * 100,
            extra={"mint": mint},
        )
        if self._bus:
            self._bus.publish(
                PositionOpened(
                    mint=mint,
                    entry_price=impact.execution_price,
                    size_sol=size,
                    entry_time=now,
                    slippage=impact.slippage,
                    execution_delay_ms=delay_ms,
                ),
                correlation_id=mint,
            )
        self.submit_snapshot()
        return position

    async def on_price_update(self, mint: str, *, now: int) -> Optional[ExitFill]:
        """Mark the active position to the token price and run the exit rules."""

        position = self._active
        if position is None or position.mint != mint or not position.is_open:
            return None
        token = self._registry.require(mint)
        position.update_price(token.current_price, timestamp=now)
        context = ExitContext(
            now=now,
            volatility=token.volatility(),
            bucket_volumes=tuple(bucket_volumes(token, self._exit_engine.config, now)),
        )
        decision = self._exit_engine.evaluate(position, context)
        if decision is None:
            return None
        return await self.execute_exit(decision, now=now)

    async def force_exit(self, mint: str, reason: ExitReason, *, now: int) -> Optional[ExitFill]:
        position = self._active
        if position is None or position.mint != mint or not position.is_open:
            return None
        return await self.execute_exit(ExitDecision(reason), now=now)

    async def close_position(self, *, now: int, reason: ExitReason = ExitReason.MANUAL) -> Optional[ExitFill]:
        if self._active is None:
            return None
        return await self.force_exit(self._active.mint, reason, now=now)

    async def execute_exit(self, decision: ExitDecision, *, now: int) -> ExitFill:
        position = self._active
        if position is None or not position.is_open:
            raise IllegalPositionState("no open position to exit", context={"reason": decision.label})
        token = self._registry.get(position.mint)
        price = token.current_price if token is not None else position.current_price
        portion = position.remaining_size if decision.is_full else min(decision.portion, position.remaining_size)
        reference = self._reference_volume(token, now) if token is not None else 0.0
        impact = self._simulator.apply_impact(
            portion * position.size,
            price,
            reference,
            direction=TradeDirection.SELL,
            volatility=token.volatility() if token is not None else 0.0,
        )
        sol_price = self._sol_price.price
        async with self._wallet.lock:
            fill = position.apply_exit(
                decision.portion,
                execution_price=impact.execution_price,
                reason=decision.label,
                timestamp=now,
                full=decision.is_full,
                tier=decision.tier,
                sol_price_usd=sol_price,
                slippage=impact.slippage,
            )
            self._wallet.credit(fill.proceeds_sol, reason=f"{decision.label} {position.mint}")
            if fill.closed:
                self._wallet.record_trade(position.realized_pnl_sol)
        if self._metrics:
            self._metrics.increment(f"positions.exits.{decision.label}")
        if self._analytics:
            self._analytics.record_exit(fill, hold_time_ms=position.hold_time_ms(now))
        if fill.closed:
            self._finish(position, token, decision, now)
        else:
            self._logger.info(
                "Partial exit %s on %s: %.0f%% at %.10f (%.4f SOL)",
                decision.label,
                position.mint,
                fill.portion * 100,
                fill.execution_price,
                fill.pnl_sol,
                extra={"mint": position.mint},
            )
            if self._bus:
                self._bus.publish(
                    PartialExit(
                        mint=position.mint,
                        reason=decision.label,
                        portion=fill.portion,
                        execution_price=fill.execution_price,
                        pnl_sol=fill.pnl_sol,
                        remaining_size=fill.remaining_size,
                        timestamp=now,
                    ),
                    correlation_id=position.mint,
                )
        self.submit_snapshot()
        return fill

    def _finish(self, position: Position, token: Optional[Token], decision: ExitDecision, now: int) -> None:
        self._active = None
        self._last_closed = position
        self._registry.unprotect(position.mint)
        if token is not None and token.state is TokenState.IN_POSITION:
            self._announce_transition(
                token.lifecycle.transition(
                    TokenState.CLOSED, timestamp=now, reason=f"position closed: {decision.label}"
                )
            )
        if self._analytics:
            self._analytics.record_close(position)
        if self._bus:
            self._bus.publish(
                PositionClosed(
                    mint=position.mint,
                    reason=decision.label,
                    exit_price=position.trades[-1].price,
                    realized_pnl_sol=position.realized_pnl_sol,
                    realized_pnl_usd=position.realized_pnl_usd,
                    hold_time_ms=position.hold_time_ms(),
                    timestamp=now,
                ),
                correlation_id=position.mint,
            )

    def validate_positions(self, now: int) -> List[str]:
        """Mints of open positions that have not been marked for ``stale_after_seconds``."""

        position = self._active
        if position is None or not position.is_open:
            return []
        idle_seconds = (now - position.last_update) / MS_PER_SECOND
        if idle_seconds < self._manager_config.stale_after_seconds:
            return []
        self._logger.warning(
            "Position on %s has had no price update for %.0fs",
            position.mint,
            idle_seconds,
            extra={"mint": position.mint},
        )
        if self._metrics:
            self._metrics.increment("positions.stale")
        return [position.mint]

    def snapshot(self) -> PositionsSnapshot:
        return PositionsSnapshot(
            active=self._active.to_record() if self._active else None,
            last_closed=self._last_closed.to_record() if self._last_closed else None,
            wallet=self._wallet.to_record(),
        )

    def submit_snapshot(self) -> None:
        if self._snapshots is not None:
            self._snapshots.submit(self.snapshot())

    def restore(self, snapshot: PositionsSnapshot) -> Optional[Position]:
        """Reinstate persisted state; an open position waits for its mint's next trade."""

        if snapshot.wallet is not None:
            self._wallet.restore(snapshot.wallet)
        if snapshot.last_closed is not None:
            self._last_closed = Position.from_record(snapshot.last_closed)
        if snapshot.active is None:
            return None
        position = Position.from_record(snapshot.active)
        if position.state is not PositionState.OPEN:
            self._logger.warning(
                "Ignoring persisted %s position on %s", position.state.value, position.mint
            )
            return None
        self._active = position
        self._registry.expect_restore(position.mint)
        self._logger.info(
            "Restored open position on %s (%.0f%% remaining)",
            position.mint,
            position.remaining_size * 100,
            extra={"mint": position.mint},
        )
        return position

    def _announce_transition(self, transition: StateTransition) -> None:
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


__all__ = ["PositionManager"]
