"""Simulated SOL wallet shared by every position."""

from __future__ import annotations

import asyncio
from typing import Dict, Optional

from ..config.settings import WalletConfig, get_app_config
from ..datalake.schemas import WalletRecord
from ..monitoring.event_bus import BalanceUpdated, EventBus
from ..monitoring.logger import get_logger
from ..utils.constants import BOUNDARY_EPSILON
from ..utils.errors import InsufficientBalance


class Wallet:
    """Balance and trade statistics.

    The balance is the only state shared across tokens; callers mutate it while
    holding :attr:`lock`.
    """

    def __init__(
        self,
        config: Optional[WalletConfig] = None,
        *,
        bus: Optional[EventBus] = None,
    ) -> None:
        self._config = config or get_app_config().wallet
        self._bus = bus
        self._balance = self._config.initial_balance_sol
        self._lock = asyncio.Lock()
        self._total_trades = 0
        self._winning_trades = 0
        self._losing_trades = 0
        self._breakeven_trades = 0
        self._total_pnl = 0.0
        self._biggest_win = 0.0
        self._biggest_loss = 0.0
        self._fees_paid = 0.0
        self._logger = get_logger(__name__)

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    @property
    def balance(self) -> float:
        return self._balance

    @property
    def fee(self) -> float:
        return self._config.transaction_fee_sol

    def can_afford(self, amount_sol: float) -> bool:
        return self._balance + BOUNDARY_EPSILON >= amount_sol + self.fee

    def debit(self, amount_sol: float, *, reason: str) -> float:
        if amount_sol < 0:
            raise ValueError("debit amount must be non-negative")
        total = amount_sol + self.fee
        if not self.can_afford(amount_sol):
            raise InsufficientBalance(
                f"balance {self._balance:.4f} SOL < required {total:.4f} SOL",
                context={"balance_sol": self._balance, "required_sol": total, "reason": reason},
            )
        self._balance = max(self._balance - total, 0.0)
        self._fees_paid += self.fee
        self._announce(-total, reason)
        return self._balance

    def credit(self, amount_sol: float, *, reason: str) -> float:
        if amount_sol < 0:
            raise ValueError("credit amount must be non-negative")
        fee = min(self.fee, amount_sol)
        net = amount_sol - fee
        self._balance += net
        self._fees_paid += fee
        self._announce(net, reason)
        return self._balance

    def record_trade(self, pnl_sol: float) -> None:
        """Fold a closed position's realised P&L into the statistics."""

        self._total_trades += 1
        self._total_pnl += pnl_sol
        if pnl_sol > 0:
            self._winning_trades += 1
            self._biggest_win = max(self._biggest_win, pnl_sol)
        elif pnl_sol < 0:
            self._losing_trades += 1
            self._biggest_loss = min(self._biggest_loss, pnl_sol)
        else:
            self._breakeven_trades += 1

    def stats(self) -> Dict[str, float]:
        trades = self._total_trades
        return {
            "balance_sol": self._balance,
            "total_trades": trades,
            "winning_trades": self._winning_trades,
            "losing_trades": self._losing_trades,
            "breakeven_trades": self._breakeven_trades,
            "win_rate_pct": self._winning_trades / trades * 100.0 if trades else 0.0,
            "total_pnl_sol": self._total_pnl,
            "average_pnl_sol": self._total_pnl / trades if trades else 0.0,
            "biggest_win_sol": self._biggest_win,
            "biggest_loss_sol": self._biggest_loss,
            "fees_paid_sol": self._fees_paid,
        }

    def to_record(self) -> WalletRecord:
        return WalletRecord(
            balance_sol=self._balance,
            total_trades=self._total_trades,
            winning_trades=self._winning_trades,
            losing_trades=self._losing_trades,
            breakeven_trades=self._breakeven_trades,
            total_pnl_sol=self._total_pnl,
            biggest_win_sol=self._biggest_win,
            biggest_loss_sol=self._biggest_loss,
            fees_paid_sol=self._fees_paid,
        )

    def restore(self, record: WalletRecord) -> None:
        self._balance = record.balance_sol
        self._total_trades = record.total_trades
        self._winning_trades = record.winning_trades
        self._losing_trades = record.losing_trades
        self._breakeven_trades = record.breakeven_trades
        self._total_pnl = record.total_pnl_sol
        self._biggest_win = record.biggest_win_sol
        self._biggest_loss = record.biggest_loss_sol
        self._fees_paid = record.fees_paid_sol
        self._logger.info("Restored wallet balance %.4f SOL", self._balance)

    def _announce(self, change: float, reason: str) -> None:
        self._logger.debug("Wallet %+.6f SOL (%s) -> %.6f", change, reason, self._balance)
        if self._bus:
            self._bus.publish(BalanceUpdated(balance_sol=self._balance, change_sol=change, reason=reason))


__all__ = ["Wallet"]
