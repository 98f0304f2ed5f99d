"""Single simulated position with partial-exit accounting."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Set

from ..datalake.schemas import PartialExitRecord, PositionRecord, TradeRecord
from ..utils.errors import IllegalPositionState

REMAINING_PRECISION = 8


class PositionState(str, Enum):
    PENDING = "PENDING"
    OPEN = "OPEN"
    CLOSED = "CLOSED"


POSITION_TRANSITIONS: Dict[PositionState, FrozenSet[PositionState]] = {
    PositionState.PENDING: frozenset({PositionState.OPEN}),
    PositionState.OPEN: frozenset({PositionState.CLOSED}),
    PositionState.CLOSED: frozenset(),
}


@dataclass(frozen=True, slots=True)
class ExitFill:
    """Outcome of one (partial or full) exit."""

    mint: str
    reason: str
    portion: float
    execution_price: float
    proceeds_sol: float
    pnl_sol: float
    pnl_usd: float
    remaining_size: float
    timestamp: int
    closed: bool


class Position:
    """``size`` is the SOL notional at entry; ``remaining_size`` is the fraction still held."""

    def __init__(
        self,
        mint: str,
        *,
        size: float,
        entry_price: float,
        entry_time: int,
        slippage: float = 0.0,
    ) -> None:
        if size <= 0 or entry_price <= 0:
            raise ValueError("position size and entry price must be positive")
        self.mint = mint
        self.size = size
        self.entry_price = entry_price
        self.entry_time = entry_time
        self.entry_slippage = slippage
        self.remaining_size = 1.0
        self.current_price = entry_price
        self.highest_price = entry_price
        self.lowest_price = entry_price
        self.realized_pnl_sol = 0.0
        self.realized_pnl_usd = 0.0
        self.unrealized_pnl_sol = 0.0
        self.last_update = entry_time
        self.consumed_tiers: Set[int] = set()
        self.trades: List[TradeRecord] = []
        self.partial_exits: List[PartialExitRecord] = []
        self.close_reason: Optional[str] = None
        self.closed_at: Optional[int] = None
        self._state = PositionState.PENDING

    @property
    def state(self) -> PositionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is PositionState.OPEN

    @property
    def is_closed(self) -> bool:
        return self._state is PositionState.CLOSED

    @property
    def roi_pct(self) -> float:
        return (self.current_price - self.entry_price) / self.entry_price * 100.0

    def hold_time_ms(self, now: Optional[int] = None) -> int:
        if now is None:
            now = self.closed_at if self.closed_at is not None else self.last_update
        return max(now - self.entry_time, 0)

    def _move(self, target: PositionState, action: str) -> None:
        if target not in POSITION_TRANSITIONS[self._state]:
            raise IllegalPositionState(
                f"cannot {action} a {self._state.value} position",
                context={"mint": self.mint, "state": self._state.value, "action": action},
            )
        self._state = target

    def open(self) -> None:
        self._move(PositionState.OPEN, "open")
        self.trades.append(
            TradeRecord(
                side="buy",
                timestamp=self.entry_time,
                price=self.entry_price,
                size_sol=self.size,
                slippage=self.entry_slippage,
            )
        )

    def close(self, reason: str, *, timestamp: int) -> None:
        if self._state is PositionState.OPEN and self.remaining_size > 0:
            raise IllegalPositionState(
                "cannot close a position that still holds size",
                context={"mint": self.mint, "remaining_size": self.remaining_size},
            )
        self._move(PositionState.CLOSED, "close")
        self.close_reason = reason
        self.closed_at = timestamp
        self.unrealized_pnl_sol = 0.0

    def update_price(self, price: float, *, timestamp: int) -> None:
        if not self.is_open:
            raise IllegalPositionState(
                f"cannot update a {self._state.value} position",
                context={"mint": self.mint, "state": self._state.value},
            )
        self.current_price = price
        self.highest_price = max(self.highest_price, price)
        self.lowest_price = min(self.lowest_price, price)
        self.last_update = max(self.last_update, timestamp)
        self.unrealized_pnl_sol = self.remaining_size * self.size * (price / self.entry_price - 1.0)

    def apply_exit(
        self,
        portion: float,
        *,
        execution_price: float,
        reason: str,
        timestamp: int,
        full: bool = False,
        tier: Optional[int] = None,
        sol_price_usd: float = 0.0,
        slippage: float = 0.0,
    ) -> ExitFill:
        """Sell ``portion`` of the original size (or everything left when ``full``)."""

        if not self.is_open:
            raise IllegalPositionState(
                f"cannot exit a {self._state.value} position",
                context={"mint": self.mint, "state": self._state.value},
            )
        if not full and not 0.0 < portion <= 1.0:
            raise ValueError(f"exit portion must be in (0, 1], got {portion}")
        effective = self.remaining_size if full else min(portion, self.remaining_size)
        ratio = execution_price / self.entry_price
        proceeds = effective * self.size * ratio
        pnl = effective * self.size * (ratio - 1.0)
        pnl_usd = pnl * sol_price_usd
        self.realized_pnl_sol += pnl
        self.realized_pnl_usd += pnl_usd
        self.remaining_size = max(round(self.remaining_size - effective, REMAINING_PRECISION), 0.0)
        if tier is not None:
            self.consumed_tiers.add(tier)
        self.trades.append(
            TradeRecord(
                side="sell",
                timestamp=timestamp,
                price=execution_price,
                size_sol=effective * self.size,
                slippage=slippage,
                reason=reason,
            )
        )
        self.last_update = max(self.last_update, timestamp)
        closed = self.remaining_size <= 0
        if closed:
            self.close(reason, timestamp=timestamp)
        else:
            self.partial_exits.append(
                PartialExitRecord(
                    timestamp=timestamp,
                    portion=effective,
                    reason=reason,
                    execution_price=execution_price,
                    pnl_sol=pnl,
                )
            )
            self.unrealized_pnl_sol = self.remaining_size * self.size * (self.current_price / self.entry_price - 1.0)
        return ExitFill(
            mint=self.mint,
            reason=reason,
            portion=effective,
            execution_price=execution_price,
            proceeds_sol=proceeds,
            pnl_sol=pnl,
            pnl_usd=pnl_usd,
            remaining_size=self.remaining_size,
            timestamp=timestamp,
            closed=closed,
        )

    def to_record(self) -> PositionRecord:
        return PositionRecord(
            mint=self.mint,
            state=self._state.value,
            entry_price=self.entry_price,
            entry_time=self.entry_time,
            size=self.size,
            remaining_size=self.remaining_size,
            current_price=self.current_price,
            highest_price=self.highest_price,
            lowest_price=self.lowest_price,
            realized_pnl_sol=self.realized_pnl_sol,
            realized_pnl_usd=self.realized_pnl_usd,
            unrealized_pnl_sol=self.unrealized_pnl_sol,
            last_update=self.last_update,
            consumed_tiers=sorted(self.consumed_tiers),
            trades=list(self.trades),
            partial_exits=list(self.partial_exits),
            close_reason=self.close_reason,
            closed_at=self.closed_at,
        )

    @classmethod
    def from_record(cls, record: PositionRecord) -> "Position":
        position = cls(
            record.mint,
            size=record.size,
            entry_price=record.entry_price,
            entry_time=record.entry_time,
        )
        position._state = PositionState(record.state)
        position.remaining_size = record.remaining_size
        position.current_price = record.current_price
        position.highest_price = record.highest_price
        position.lowest_price = record.lowest_price
        position.realized_pnl_sol = record.realized_pnl_sol
        position.realized_pnl_usd = record.realized_pnl_usd
        position.unrealized_pnl_sol = record.unrealized_pnl_sol
        position.last_update = record.last_update
        position.consumed_tiers = set(record.consumed_tiers)
        position.trades = list(record.trades)
        position.partial_exits = list(record.partial_exits)
        position.close_reason = record.close_reason
        position.closed_at = record.closed_at
        if position.trades and position.trades[0].side == "buy":
            position.entry_slippage = position.trades[0].slippage
        return position


__all__ = ["ExitFill", "POSITION_TRANSITIONS", "Position", "PositionState", "REMAINING_PRECISION"]
