"""Per-token metrics aggregator."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Set

from ..config.settings import PumpDetectionConfig, ThresholdsConfig, TraderAnalysisConfig
from ..ingestion.events import CreateEvent, TradeEvent
from ..utils.constants import MS_PER_SECOND
from .holders import HolderBook
from .lifecycle import StateTransition, TokenLifecycle, TokenState
from .pump import PricePoint, PumpMetrics, PumpTracker, VolumeSpike, price_velocity, window_samples
from .recovery import RecoveryMetrics, RecoveryTracker
from .traders import TraderAssessment, TraderBook
from .volume import VolumeBucket, VolumeWindow


@dataclass(slots=True)
class TradeOutcome:
    """What a single :meth:`Token.apply_trade` call changed."""

    applied: bool
    duplicate: bool = False
    price: float = 0.0
    previous_price: float = 0.0
    volume_sol: float = 0.0
    spike: Optional[VolumeSpike] = None
    transitions: List[StateTransition] = field(default_factory=list)

    @property
    def pump_detected(self) -> bool:
        return self.spike is not None and self.spike.price_change > 0

    @property
    def drawdown_detected(self) -> bool:
        return any(item.to_state is TokenState.DRAWDOWN for item in self.transitions)


class Token:
    """Rolling state for one bonding-curve token.

    ``total_supply`` is derived from the create event's reserves and market cap
    and stays fixed; market cap is always recomputed from the current reserves.
    """

    def __init__(
        self,
        event: CreateEvent,
        *,
        pump_config: PumpDetectionConfig,
        duplicate_window: int = 256,
        traders: Optional[TraderBook] = None,
    ) -> None:
        self.mint = event.mint
        self.symbol = event.symbol
        self.name = event.name
        self.created_at = event.timestamp
        self.creator_wallet = event.trader
        self.total_supply = event.market_cap_sol * event.v_tokens / event.v_sol
        self.v_tokens_in_bonding_curve = event.v_tokens
        self.v_sol_in_bonding_curve = event.v_sol
        self.current_price = event.price
        self.market_cap_sol = self._market_cap()
        self.last_trade_at = event.timestamp
        self.trade_count = 0
        self.price_history: Deque[PricePoint] = deque(maxlen=pump_config.price_history_size)
        self.price_history.append((event.timestamp, self.current_price))
        self.highest_price = self.current_price
        self.holders = HolderBook(self.total_supply, creator_wallet=event.trader)
        self.volume = VolumeWindow()
        self._pump = PumpTracker(pump_config)
        self.lifecycle = TokenLifecycle(event.mint, timestamp=event.timestamp, price=self.current_price)
        self.traders = traders if traders is not None else TraderBook(TraderAnalysisConfig())
        self.recovery = RecoveryTracker()
        self._rug_recorded = False
        self._recent_keys: Deque[tuple] = deque()
        self._recent_key_set: Set[tuple] = set()
        self._duplicate_window = duplicate_window
        initial_volume = event.sol_amount if event.sol_amount is not None else event.initial_buy * event.price
        self.holders.seed_creator(event.initial_buy, event.timestamp, initial_volume)
        if initial_volume > 0:
            self.volume.record(event.timestamp, initial_volume, is_buy=True)
        if event.initial_buy > 0:
            self.traders.record(
                self.mint,
                event.trader,
                timestamp=event.timestamp,
                is_buy=True,
                token_amount=event.initial_buy,
                sol_amount=initial_volume,
            )

    @property
    def state(self) -> TokenState:
        return self.lifecycle.state

    @property
    def metrics(self) -> PumpMetrics:
        return self._pump.metrics

    @property
    def pump_config(self) -> PumpDetectionConfig:
        return self._pump.config

    def _market_cap(self) -> float:
        return self.v_sol_in_bonding_curve * (self.total_supply / self.v_tokens_in_bonding_curve)

    def is_duplicate(self, event: TradeEvent) -> bool:
        return event.dedupe_key() in self._recent_key_set

    def _remember(self, key: tuple) -> None:
        self._recent_keys.append(key)
        self._recent_key_set.add(key)
        while len(self._recent_keys) > self._duplicate_window:
            self._recent_key_set.discard(self._recent_keys.popleft())

    def apply_trade(
        self,
        event: TradeEvent,
        *,
        sol_price_usd: float,
        thresholds: ThresholdsConfig,
    ) -> TradeOutcome:
        """Fold one trade into the aggregates and evaluate lifecycle transitions."""

        if event.mint != self.mint:
            raise ValueError(f"trade for {event.mint} applied to {self.mint}")
        key = event.dedupe_key()
        if key in self._recent_key_set:
            price = self.current_price
            return TradeOutcome(applied=False, duplicate=True, price=price, previous_price=price)
        self._remember(key)

        now = max(event.timestamp, self.last_trade_at)
        previous_price = self.current_price
        self.v_tokens_in_bonding_curve = event.v_tokens
        self.v_sol_in_bonding_curve = event.v_sol
        self.current_price = event.price
        self.market_cap_sol = self._market_cap()
        self.highest_price = max(self.highest_price, self.current_price)
        self.last_trade_at = now
        self.trade_count += 1

        volume_sol = event.sol_amount if event.sol_amount is not None else event.token_amount * self.current_price
        self.holders.apply(
            event.trader,
            timestamp=now,
            signed_amount=event.signed_amount,
            new_balance=event.new_balance,
            volume_sol=volume_sol,
        )
        self.traders.record(
            self.mint,
            event.trader,
            timestamp=now,
            is_buy=event.is_buy,
            token_amount=event.token_amount,
            sol_amount=volume_sol,
        )
        self.price_history.append((now, self.current_price))
        self.volume.record(now, volume_sol, is_buy=event.is_buy)
        spike = self._pump.update(
            self.price_history,
            now=now,
            created_at=self.created_at,
            volume_1m=self.volume.volume("1m", now),
            volume_30m=self.volume.volume("30m", now),
        )
        self.recovery.update(self.price_history, volume_sol, self.highest_price, now)
        transitions = self.lifecycle.evaluate(
            price=self.current_price,
            market_cap_usd=self.market_cap_sol * sol_price_usd,
            timestamp=now,
            thresholds=thresholds,
        )
        if any(item.to_state is TokenState.DEAD for item in transitions):
            self._charge_rug(now)
        return TradeOutcome(
            applied=True,
            price=self.current_price,
            previous_price=previous_price,
            volume_sol=volume_sol,
            spike=spike,
            transitions=transitions,
        )

    def market_cap_usd(self, sol_price_usd: float) -> float:
        return self.market_cap_sol * sol_price_usd

    def age_seconds(self, now: int) -> float:
        return max(now - self.created_at, 0) / MS_PER_SECOND

    def holder_count(self) -> int:
        return self.holders.holder_count()

    def top_holder_concentration(self, count: int = 3) -> float:
        return self.holders.top_holder_concentration(count)

    def creator_sell_percentage(self) -> float:
        return self.holders.creator_sell_percentage()

    def creator_sell_volume(self, window_ms: int, now: int) -> float:
        return self.holders.creator_sell_volume(now - window_ms)

    def recent_volume(self, window_ms: int, now: Optional[int] = None) -> float:
        return self.volume.recent_volume(window_ms, self.last_trade_at if now is None else now)

    def volume_buckets(self, now: Optional[int] = None) -> Dict[str, VolumeBucket]:
        return self.volume.buckets(self.last_trade_at if now is None else now)

    def price_velocity(self) -> float:
        window = self.pump_config.acceleration_window_ms
        return price_velocity(window_samples(self.price_history, window, self.last_trade_at))

    def volatility(self) -> float:
        return self.metrics.volatility

    def drawdown_percentage(self) -> float:
        """Percent below the highest price since entering the current state."""

        return self.lifecycle.drawdown_fraction(self.current_price) * 100.0

    @property
    def recovery_metrics(self) -> RecoveryMetrics:
        return self.recovery.metrics

    def trader_assessment(self, now: Optional[int] = None) -> TraderAssessment:
        return self.traders.assess(self.mint, self.last_trade_at if now is None else now)

    def _charge_rug(self, now: int) -> None:
        """A creator who sold into a pump that then died takes a reputation hit once."""

        if self._rug_recorded or self.metrics.pump_count == 0 or not self.creator_wallet:
            return
        if self.creator_sell_percentage() <= 0:
            return
        self._rug_recorded = True
        self.traders.record_rug(self.mint, self.creator_wallet, timestamp=now)


__all__ = ["Token", "TradeOutcome"]
