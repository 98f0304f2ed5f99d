"""Persisted record types for positions, wallet and analytics snapshots."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

SNAPSHOT_VERSION = 1
POSITIONS_KIND = "positions"
ANALYTICS_KIND = "analytics"


@dataclass(slots=True)
class TradeRecord:
    """A simulated fill against the bonding curve."""

    side: str
    timestamp: int
    price: float
    size_sol: float
    slippage: float = 0.0
    reason: Optional[str] = None


@dataclass(slots=True)
class PartialExitRecord:
    timestamp: int
    portion: float
    reason: str
    execution_price: float
    pnl_sol: float


@dataclass(slots=True)
class PositionRecord:
    """Flat representation of a position suitable for snapshotting."""

    mint: str
    state: str
    entry_price: float
    entry_time: int
    size: float
    remaining_size: float
    current_price: float
    highest_price: float
    lowest_price: float
    realized_pnl_sol: float = 0.0
    realized_pnl_usd: float = 0.0
    unrealized_pnl_sol: float = 0.0
    last_update: int = 0
    consumed_tiers: List[int] = field(default_factory=list)
    trades: List[TradeRecord] = field(default_factory=list)
    partial_exits: List[PartialExitRecord] = field(default_factory=list)
    close_reason: Optional[str] = None
    closed_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PositionRecord":
        values = dict(data)
        values["trades"] = [TradeRecord(**item) for item in values.get("trades", [])]
        values["partial_exits"] = [PartialExitRecord(**item) for item in values.get("partial_exits", [])]
        values["consumed_tiers"] = [int(item) for item in values.get("consumed_tiers", [])]
        return cls(**values)


@dataclass(slots=True)
class WalletRecord:
    balance_sol: float
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    breakeven_trades: int = 0
    total_pnl_sol: float = 0.0
    biggest_win_sol: float = 0.0
    biggest_loss_sol: float = 0.0
    fees_paid_sol: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WalletRecord":
        return cls(**data)


@dataclass(slots=True)
class PositionsSnapshot:
    """Contents of ``positions.snapshot``: the active position and the last closed one."""

    active: Optional[PositionRecord] = None
    last_closed: Optional[PositionRecord] = None
    wallet: Optional[WalletRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active.to_dict() if self.active else None,
            "last_closed": self.last_closed.to_dict() if self.last_closed else None,
            "wallet": self.wallet.to_dict() if self.wallet else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PositionsSnapshot":
        active = data.get("active")
        last_closed = data.get("last_closed")
        wallet = data.get("wallet")
        return cls(
            active=PositionRecord.from_dict(active) if active else None,
            last_closed=PositionRecord.from_dict(last_closed) if last_closed else None,
            wallet=WalletRecord.from_dict(wallet) if wallet else None,
        )


@dataclass(slots=True)
class ExitReasonStats:
    count: int = 0
    total_pnl_sol: float = 0.0
    total_hold_time_ms: int = 0
    wins: int = 0

    @property
    def average_hold_time_ms(self) -> float:
        return self.total_hold_time_ms / self.count if self.count else 0.0


@dataclass(slots=True)
class AnalyticsSnapshot:
    """Contents of ``analytics.snapshot``."""

    total_trades: int = 0
    profitable_trades: int = 0
    unprofitable_trades: int = 0
    cumulative_pnl_sol: float = 0.0
    cumulative_pnl_usd: float = 0.0
    largest_win_sol: float = 0.0
    largest_loss_sol: float = 0.0
    total_time_in_position_ms: int = 0
    gross_profit_sol: float = 0.0
    gross_loss_sol: float = 0.0
    total_win_hold_ms: int = 0
    total_loss_hold_ms: int = 0
    tokens_tracked: int = 0
    safety_rejections: int = 0
    missed_opportunities: int = 0
    exit_stats: Dict[str, ExitReasonStats] = field(default_factory=dict)
    latencies: Dict[str, List[float]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalyticsSnapshot":
        values = dict(data)
        values["exit_stats"] = {
            reason: ExitReasonStats(**stats) for reason, stats in values.get("exit_stats", {}).items()
        }
        values["latencies"] = {
            name: [float(sample) for sample in samples]
            for name, samples in values.get("latencies", {}).items()
        }
        return cls(**values)


__all__ = [
    "ANALYTICS_KIND",
    "AnalyticsSnapshot",
    "ExitReasonStats",
    "POSITIONS_KIND",
    "PartialExitRecord",
    "PositionRecord",
    "PositionsSnapshot",
    "SNAPSHOT_VERSION",
    "TradeRecord",
    "WalletRecord",
]
