"""Registry that owns every live token, keyed by mint."""

from __future__ import annotations

import time
from typing import Callable, Dict, Iterator, List, Optional, Set

from ..analysis.lifecycle import PROTECTED_STATES, TokenState
from ..analysis.token import Token
from ..analysis.traders import TraderBook
from ..config.settings import (
    PumpDetectionConfig,
    RegistryConfig,
    ThresholdsConfig,
    TraderAnalysisConfig,
    get_app_config,
)
from ..monitoring.event_bus import EventBus, TokenAdded
from ..monitoring.logger import get_logger
from ..monitoring.metrics import MetricsRegistry
from ..utils.errors import UnknownMint
from .events import CreateEvent, TradeEvent
from .feed import SubscriptionSet
from .sol_price import SolPriceOracle

RemovalListener = Callable[[Token], None]


class TokenRegistry:
    """Admits tokens from create events and reaps them once they go quiet.

    Admission is synchronous so a mint's trades can never be routed before the
    token exists. Sweeps use the wall clock; everything else runs on event time.
    """

    def __init__(
        self,
        *,
        subscriptions: SubscriptionSet,
        sol_price: SolPriceOracle,
        config: Optional[RegistryConfig] = None,
        thresholds: Optional[ThresholdsConfig] = None,
        pump_config: Optional[PumpDetectionConfig] = None,
        traders: Optional[TraderBook] = None,
        bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        app_config = None
        if config is None or thresholds is None or pump_config is None:
            app_config = get_app_config()
        self._config = config or app_config.registry
        self._thresholds = thresholds or app_config.thresholds
        self._pump_config = pump_config or app_config.safety.pump_detection
        self._subscriptions = subscriptions
        self._sol_price = sol_price
        self._bus = bus
        self._metrics = metrics
        self._traders = traders if traders is not None else TraderBook(TraderAnalysisConfig(), metrics=metrics)
        self._clock = clock
        self._tokens: Dict[str, Token] = {}
        self._last_activity: Dict[str, float] = {}
        self._pending_restore: Set[str] = set()
        self._protected: Set[str] = set()
        self._removal_listeners: List[RemovalListener] = []
        self._logger = get_logger(__name__)

    def reconfigure(
        self,
        *,
        config: RegistryConfig,
        thresholds: ThresholdsConfig,
        pump_config: PumpDetectionConfig,
        trader_config: Optional[TraderAnalysisConfig] = None,
    ) -> None:
        """Swap config groups; applies to tokens admitted from now on.

        Trader thresholds apply at once since the trader book is shared.
        """

        self._config = config
        self._thresholds = thresholds
        self._pump_config = pump_config
        if trader_config is not None:
            self._traders.reconfigure(trader_config)

    @property
    def thresholds(self) -> ThresholdsConfig:
        return self._thresholds

    @property
    def traders(self) -> TraderBook:
        return self._traders

    def __contains__(self, mint: object) -> bool:
        return mint in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)

    def __iter__(self) -> Iterator[Token]:
        return iter(list(self._tokens.values()))

    def add_removal_listener(self, listener: RemovalListener) -> None:
        self._removal_listeners.append(listener)

    def get(self, mint: str) -> Optional[Token]:
        return self._tokens.get(mint)

    def require(self, mint: str) -> Token:
        token = self._tokens.get(mint)
        if token is None:
            raise UnknownMint(f"mint {mint} is not tracked", context={"mint": mint})
        return token

    def is_known(self, mint: str) -> bool:
        return mint in self._tokens or mint in self._pending_restore

    def admit(self, event: CreateEvent) -> Optional[Token]:
        """Create a token for ``event`` if it is new and small enough to track."""

        if event.mint in self._tokens:
            return None
        market_cap_usd = self._sol_price.sol_to_usd(event.market_cap_sol)
        if market_cap_usd > self._thresholds.heating_up_usd:
            if self._metrics:
                self._metrics.increment("tokens.skipped_admission")
            return None
        token = Token(
            event,
            pump_config=self._pump_config,
            duplicate_window=self._config.duplicate_window,
            traders=self._traders,
        )
        self._register(token)
        self._logger.info(
            "Tracking %s (%s) at %.2f SOL market cap",
            event.symbol,
            event.mint,
            event.market_cap_sol,
            extra={"mint": event.mint},
        )
        if self._bus:
            self._bus.publish(
                TokenAdded(
                    mint=event.mint,
                    symbol=event.symbol,
                    name=event.name,
                    market_cap_sol=event.market_cap_sol,
                    created_at=event.timestamp,
                ),
                correlation_id=event.mint,
            )
        return token

    def expect_restore(self, mint: str) -> None:
        """Subscribe to ``mint`` so the first trade can rebuild its token."""

        self._pending_restore.add(mint)
        self._protected.add(mint)
        self._subscriptions.subscribe_token_trades(mint)

    def is_pending_restore(self, mint: str) -> bool:
        return mint in self._pending_restore

    def materialize(self, event: TradeEvent, state: TokenState = TokenState.IN_POSITION) -> Token:
        """Build the token for a restored position from its first observed trade."""

        if event.mint not in self._pending_restore:
            raise UnknownMint(f"mint {event.mint} has no pending restore", context={"mint": event.mint})
        seed = CreateEvent(
            mint=event.mint,
            symbol="",
            name="",
            trader="",
            initial_buy=0.0,
            market_cap_sol=event.market_cap_sol,
            v_tokens=event.v_tokens,
            v_sol=event.v_sol,
            timestamp=event.timestamp,
        )
        token = Token(
            seed,
            pump_config=self._pump_config,
            duplicate_window=self._config.duplicate_window,
            traders=self._traders,
        )
        token.lifecycle.restore(state, timestamp=event.timestamp, price=token.current_price)
        self._pending_restore.discard(event.mint)
        self._register(token)
        self._logger.info("Restored %s directly into %s", event.mint, state.value, extra={"mint": event.mint})
        return token

    def _register(self, token: Token) -> None:
        self._tokens[token.mint] = token
        self._last_activity[token.mint] = self._clock()
        self._subscriptions.subscribe_token_trades(token.mint)
        if self._metrics:
            self._metrics.increment("tokens.admitted")
            self._metrics.gauge("tokens_tracked", float(len(self._tokens)))

    def touch(self, mint: str) -> None:
        if mint in self._tokens:
            self._last_activity[mint] = self._clock()

    def protect(self, mint: str) -> None:
        self._protected.add(mint)

    def unprotect(self, mint: str) -> None:
        self._protected.discard(mint)

    def is_protected(self, mint: str) -> bool:
        """True for mints whose trades must survive backpressure."""

        if mint in self._protected:
            return True
        token = self._tokens.get(mint)
        return token is not None and token.state in PROTECTED_STATES

    def remove(self, mint: str) -> Optional[Token]:
        token = self._tokens.pop(mint, None)
        self._last_activity.pop(mint, None)
        if token is None:
            return None
        self._protected.discard(mint)
        self._subscriptions.unsubscribe_token_trades(mint)
        for listener in list(self._removal_listeners):
            listener(token)
        if self._metrics:
            self._metrics.increment("tokens.removed")
            self._metrics.gauge("tokens_tracked", float(len(self._tokens)))
        return token

    def sweep(self, now: Optional[float] = None) -> List[str]:
        """Remove quiescent terminal tokens and long-inactive live ones."""

        current = self._clock() if now is None else now
        removed: List[str] = []
        for mint, token in list(self._tokens.items()):
            idle = current - self._last_activity.get(mint, current)
            if token.state.is_terminal:
                expired = idle >= self._config.sweep_interval_seconds
            elif token.state is TokenState.IN_POSITION or mint in self._protected:
                expired = False
            else:
                expired = idle >= self._config.inactivity_timeout_seconds
            if expired:
                self.remove(mint)
                removed.append(mint)
        if removed:
            self._logger.info("Swept %d tokens", len(removed))
        return removed


__all__ = ["TokenRegistry"]
