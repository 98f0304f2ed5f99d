"""Token lifecycle automaton with an explicit transition table."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from ..config.settings import ThresholdsConfig
from ..utils.constants import BOUNDARY_EPSILON
from ..utils.errors import IllegalStateTransition


class TokenState(str, Enum):
    NEW = "NEW"
    HEATING_UP = "HEATING_UP"
    FIRST_PUMP = "FIRST_PUMP"
    DRAWDOWN = "DRAWDOWN"
    RECOVERY = "RECOVERY"
    IN_POSITION = "IN_POSITION"
    CLOSED = "CLOSED"
    DEAD = "DEAD"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[TokenState] = frozenset({TokenState.DEAD, TokenState.CLOSED})

TRANSITIONS: Dict[TokenState, FrozenSet[TokenState]] = {
    TokenState.NEW: frozenset({TokenState.HEATING_UP, TokenState.DEAD}),
    TokenState.HEATING_UP: frozenset({TokenState.FIRST_PUMP, TokenState.DEAD}),
    TokenState.FIRST_PUMP: frozenset({TokenState.DRAWDOWN, TokenState.DEAD}),
    TokenState.DRAWDOWN: frozenset({TokenState.RECOVERY, TokenState.DEAD}),
    TokenState.RECOVERY: frozenset({TokenState.IN_POSITION, TokenState.DRAWDOWN, TokenState.DEAD}),
    TokenState.IN_POSITION: frozenset({TokenState.CLOSED, TokenState.DEAD}),
    TokenState.CLOSED: frozenset(),
    TokenState.DEAD: frozenset(),
}

# States whose trades must survive feed backpressure.
PROTECTED_STATES: FrozenSet[TokenState] = frozenset({TokenState.RECOVERY, TokenState.IN_POSITION})


def is_allowed(source: TokenState, target: TokenState) -> bool:
    return target in TRANSITIONS[source]


@dataclass(frozen=True, slots=True)
class StateTransition:
    mint: str
    from_state: TokenState
    to_state: TokenState
    timestamp: int
    reason: str


class TokenLifecycle:
    """Current state plus the price extremes observed since entering it."""

    def __init__(self, mint: str, *, timestamp: int, price: float) -> None:
        self._mint = mint
        self._state = TokenState.NEW
        self._entered_at = timestamp
        self._peak_price = price
        self._trough_price = price
        self._peak_market_cap_usd = 0.0
        self._dead_samples = 0
        self._history: List[StateTransition] = []

    @property
    def mint(self) -> str:
        return self._mint

    @property
    def state(self) -> TokenState:
        return self._state

    @property
    def entered_at(self) -> int:
        return self._entered_at

    @property
    def peak_price(self) -> float:
        return self._peak_price

    @property
    def trough_price(self) -> float:
        return self._trough_price

    @property
    def dead_samples(self) -> int:
        return self._dead_samples

    @property
    def history(self) -> List[StateTransition]:
        return list(self._history)

    def observe_price(self, price: float) -> None:
        if price > self._peak_price:
            self._peak_price = price
        if price < self._trough_price:
            self._trough_price = price

    def drawdown_fraction(self, price: float) -> float:
        if self._peak_price <= 0:
            return 0.0
        return max(1.0 - price / self._peak_price, 0.0)

    def recovery_fraction(self, price: float) -> float:
        if self._trough_price <= 0:
            return 0.0
        return max(price / self._trough_price - 1.0, 0.0)

    def transition(
        self, target: TokenState, *, timestamp: int, reason: str, price: Optional[float] = None
    ) -> StateTransition:
        """Move to ``target`` if the table allows it."""

        if not is_allowed(self._state, target):
            raise IllegalStateTransition(
                f"{self._state.value} -> {target.value} is not a valid transition",
                context={"mint": self._mint, "from": self._state.value, "to": target.value},
            )
        return self._enter(target, timestamp=timestamp, reason=reason, price=price)

    def restore(self, target: TokenState, *, timestamp: int, price: float) -> StateTransition:
        """Place a freshly created lifecycle directly into ``target`` (snapshot restore)."""

        if self._state is not TokenState.NEW or self._history:
            raise IllegalStateTransition(
                "only a fresh lifecycle can be restored",
                context={"mint": self._mint, "state": self._state.value},
            )
        return self._enter(target, timestamp=timestamp, reason="restored", price=price)

    def _enter(
        self, target: TokenState, *, timestamp: int, reason: str, price: Optional[float]
    ) -> StateTransition:
        record = StateTransition(self._mint, self._state, target, timestamp, reason)
        self._state = target
        self._entered_at = timestamp
        if price is not None:
            self._peak_price = price
            self._trough_price = price
        self._history.append(record)
        return record

    def evaluate(
        self,
        *,
        price: float,
        market_cap_usd: float,
        timestamp: int,
        thresholds: ThresholdsConfig,
    ) -> List[StateTransition]:
        """Apply the metric-driven transitions for one sample, cascading as needed.

        RECOVERY -> IN_POSITION and IN_POSITION -> CLOSED are driven by the
        position manager through :meth:`transition`.
        """

        transitions: List[StateTransition] = []
        if self._state.is_terminal:
            return transitions
        self.observe_price(price)
        self._peak_market_cap_usd = max(self._peak_market_cap_usd, market_cap_usd)
        if self._peak_market_cap_usd > thresholds.dead_usd and market_cap_usd <= thresholds.dead_usd + BOUNDARY_EPSILON:
            self._dead_samples += 1
        else:
            self._dead_samples = 0
        if self._dead_samples >= thresholds.dead_sample_count:
            transitions.append(
                self._enter(
                    TokenState.DEAD,
                    timestamp=timestamp,
                    reason=f"market cap <= {thresholds.dead_usd:.0f} USD for {self._dead_samples} samples",
                    price=price,
                )
            )
            return transitions

        while True:
            step = self._next_step(price, market_cap_usd, thresholds)
            if step is None:
                break
            target, reason = step
            transitions.append(self._enter(target, timestamp=timestamp, reason=reason, price=price))
        return transitions

    def _next_step(
        self, price: float, market_cap_usd: float, thresholds: ThresholdsConfig
    ) -> Optional[Tuple[TokenState, str]]:
        state = self._state
        if state is TokenState.NEW and market_cap_usd >= thresholds.heating_up_usd - BOUNDARY_EPSILON:
            return TokenState.HEATING_UP, f"market cap {market_cap_usd:.0f} USD >= {thresholds.heating_up_usd:.0f}"
        if state is TokenState.HEATING_UP and market_cap_usd >= thresholds.first_pump_usd - BOUNDARY_EPSILON:
            return TokenState.FIRST_PUMP, f"market cap {market_cap_usd:.0f} USD >= {thresholds.first_pump_usd:.0f}"
        drawdown_limit = thresholds.pump_drawdown_pct / 100.0
        if state in (TokenState.FIRST_PUMP, TokenState.RECOVERY):
            drawdown = self.drawdown_fraction(price)
            if drawdown >= drawdown_limit - BOUNDARY_EPSILON:
                return TokenState.DRAWDOWN, f"drawdown {drawdown * 100:.1f}% from peak"
        if state is TokenState.DRAWDOWN:
            recovery = self.recovery_fraction(price)
            if recovery >= thresholds.recovery_pct / 100.0 - BOUNDARY_EPSILON:
                return TokenState.RECOVERY, f"recovery {recovery * 100:.1f}% from trough"
        return None


__all__ = [
    "PROTECTED_STATES",
    "StateTransition",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "TokenLifecycle",
    "TokenState",
    "is_allowed",
]
