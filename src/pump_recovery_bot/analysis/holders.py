"""Per-token holder ledger including the bonding-curve reserve."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterator, List, Optional

from ..utils.constants import BONDING_CURVE_ACCOUNT

MAX_TRADES_PER_HOLDER = 200


@dataclass(slots=True)
class HolderTrade:
    timestamp: int
    signed_amount: float
    volume_sol: float


@dataclass(slots=True)
class HolderRecord:
    """Token balance and recent trades of one wallet."""

    address: str
    balance: float = 0.0
    is_creator: bool = False
    trades: Deque[HolderTrade] = field(default_factory=lambda: deque(maxlen=MAX_TRADES_PER_HOLDER))

    def record_trade(self, timestamp: int, signed_amount: float, volume_sol: float) -> None:
        self.trades.append(HolderTrade(timestamp, signed_amount, volume_sol))

    def sell_volume_since(self, since_ms: int) -> float:
        return sum(
            trade.volume_sol
            for trade in self.trades
            if trade.signed_amount < 0 and trade.timestamp >= since_ms
        )


class HolderBook:
    """Wallet balances for one token.

    The bonding curve is tracked as a pseudo-holder whose balance is whatever
    part of ``total_supply`` traders do not hold, so all balances always sum to
    the total supply.
    """

    def __init__(
        self,
        total_supply: float,
        *,
        creator_wallet: Optional[str] = None,
    ) -> None:
        if total_supply < 0:
            raise ValueError("total_supply must be non-negative")
        self._total_supply = float(total_supply)
        self._creator_wallet = creator_wallet
        self._creator_initial_buy = 0.0
        self._holders: Dict[str, HolderRecord] = {}
        self._circulating = 0.0

    @property
    def total_supply(self) -> float:
        return self._total_supply

    @property
    def creator_wallet(self) -> Optional[str]:
        return self._creator_wallet

    @property
    def creator_initial_buy(self) -> float:
        return self._creator_initial_buy

    @property
    def curve_balance(self) -> float:
        return self._total_supply - self._circulating

    def seed_creator(self, initial_buy: float, timestamp: int, volume_sol: float) -> None:
        """Record the creator's initial buy from the create event."""

        if not self._creator_wallet:
            return
        self._creator_initial_buy = max(float(initial_buy), 0.0)
        if self._creator_initial_buy > 0:
            self.apply(
                self._creator_wallet,
                timestamp=timestamp,
                signed_amount=self._creator_initial_buy,
                new_balance=self._creator_initial_buy,
                volume_sol=volume_sol,
            )

    def apply(
        self,
        address: str,
        *,
        timestamp: int,
        signed_amount: float,
        new_balance: Optional[float],
        volume_sol: float,
    ) -> HolderRecord:
        """Apply one trade to ``address`` and return its updated record."""

        record = self._holders.get(address)
        if record is None:
            record = HolderRecord(address=address, is_creator=address == self._creator_wallet)
            self._holders[address] = record
        previous = record.balance
        if new_balance is None:
            balance = previous + signed_amount
        else:
            balance = float(new_balance)
        balance = max(balance, 0.0)
        record.balance = balance
        self._circulating += balance - previous
        record.record_trade(timestamp, signed_amount, volume_sol)
        return record

    def get(self, address: str) -> Optional[HolderRecord]:
        return self._holders.get(address)

    def __iter__(self) -> Iterator[HolderRecord]:
        return iter(self._holders.values())

    def __len__(self) -> int:
        return len(self._holders)

    def balances(self) -> Dict[str, float]:
        """All balances, with the curve reserve under ``BONDING_CURVE_ACCOUNT``."""

        result = {address: record.balance for address, record in self._holders.items()}
        result[BONDING_CURVE_ACCOUNT] = self.curve_balance
        return result

    def holder_count(self) -> int:
        return sum(1 for record in self._holders.values() if record.balance > 0)

    def top_balances(self, count: int) -> List[float]:
        balances = sorted(
            (record.balance for record in self._holders.values() if record.balance > 0),
            reverse=True,
        )
        return balances[: max(count, 0)]

    def top_holder_concentration(self, count: int) -> float:
        """Fraction of total supply held by the ``count`` largest trader wallets."""

        if self._total_supply <= 0:
            return 0.0
        return sum(self.top_balances(count)) / self._total_supply

    def creator_balance(self) -> float:
        if not self._creator_wallet:
            return 0.0
        record = self._holders.get(self._creator_wallet)
        return record.balance if record else 0.0

    def creator_sell_percentage(self) -> float:
        if self._creator_initial_buy <= 0:
            return 0.0
        sold = 1.0 - self.creator_balance() / self._creator_initial_buy
        return min(max(sold, 0.0), 1.0)

    def creator_sell_volume(self, since_ms: int) -> float:
        if not self._creator_wallet:
            return 0.0
        record = self._holders.get(self._creator_wallet)
        return record.sell_volume_since(since_ms) if record else 0.0


__all__ = ["HolderBook", "HolderRecord", "HolderTrade"]
