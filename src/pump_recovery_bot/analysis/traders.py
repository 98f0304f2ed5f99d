"""Cross-token wallet reputation, wash-trade detection and co-trading groups."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, List, Optional, Set, Tuple

from cachetools import LRUCache

from ..config.settings import TraderAnalysisConfig, get_app_config
from ..monitoring.logger import get_logger
from ..monitoring.metrics import MetricsRegistry
from ..utils.constants import BOUNDARY_EPSILON, MS_PER_MINUTE

# (timestamp, wallet, is_buy)
MintTrade = Tuple[int, str, bool]


class RiskLevel(str, Enum):
    LOW = "LOW_RISK"
    MEDIUM = "MEDIUM_RISK"
    HIGH = "HIGH_RISK"


class FlowSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass(slots=True)
class TraderTrade:
    mint: str
    timestamp: int
    is_buy: bool
    token_amount: float
    sol_amount: float
    matched: bool = False


@dataclass(slots=True)
class TraderReputation:
    """Running reputation of one wallet. Scores start at 100 and only go down."""

    wallet: str
    score: float = 100.0
    total_trades: int = 0
    wash_trading_incidents: int = 0
    rug_pull_involvements: int = 0
    first_seen: int = 0
    last_seen: int = 0
    trades: Deque[TraderTrade] = field(default_factory=deque)

    def penalize(self, points: float) -> None:
        self.score = max(self.score - points, 0.0)


@dataclass(frozen=True, slots=True)
class TradingPattern:
    timestamp: int
    mint: str
    side: FlowSide


@dataclass(slots=True)
class TraderGroup:
    """Wallets seen trading the same tokens on the same side within seconds of each other."""

    group_id: int
    members: Set[str]
    created_at: int
    last_active: int
    patterns: Deque[TradingPattern] = field(default_factory=deque)


@dataclass(frozen=True, slots=True)
class CoordinatedFlow:
    """One-sided order flow from many wallets inside the coordination window."""

    mint: str
    side: FlowSide
    buy_ratio: float
    traders: int


@dataclass(frozen=True, slots=True)
class TraderAssessment:
    recent_traders: int = 0
    suspicious_traders: int = 0
    wash_trades: int = 0
    coordinated: Optional[CoordinatedFlow] = None

    @property
    def suspicious_share_pct(self) -> float:
        if self.recent_traders == 0:
            return 0.0
        return self.suspicious_traders / self.recent_traders * 100.0


@dataclass(slots=True)
class _MintActivity:
    trades: Deque[MintTrade]
    wash_wallets: Set[str] = field(default_factory=set)
    wash_trades: int = 0
    flow_side: Optional[FlowSide] = None


class TraderBook:
    """Wallet-level view of the feed, shared by every tracked token.

    Feed trades carry no counterparty, so a wash trade is a wallet buying and
    selling about the same amount of one token within ``wash_window_ms``. Two
    wallets that trade the same side of a token within ``co_trade_window_ms``
    of each other on ``relationship_threshold`` distinct tokens end up in one
    group; groups merge when their members link up.
    """

    def __init__(
        self,
        config: Optional[TraderAnalysisConfig] = None,
        *,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._config = config or get_app_config().safety.trader_analysis
        self._metrics = metrics
        self._traders: LRUCache = LRUCache(maxsize=self._config.max_tracked_traders)
        self._mints: LRUCache = LRUCache(maxsize=self._config.max_tracked_mints)
        self._pairs: LRUCache = LRUCache(maxsize=self._config.max_tracked_traders)
        self._groups: Dict[int, TraderGroup] = {}
        self._group_of: Dict[str, int] = {}
        self._next_group_id = 1
        self._last_prune: Optional[int] = None
        self._logger = get_logger(__name__)

    @property
    def config(self) -> TraderAnalysisConfig:
        return self._config

    def reconfigure(self, config: TraderAnalysisConfig) -> None:
        """Swap thresholds; cache sizes keep their original limits."""

        self._config = config

    def reputation(self, wallet: str) -> Optional[TraderReputation]:
        return self._traders.get(wallet)

    def group_of(self, wallet: str) -> Optional[TraderGroup]:
        group_id = self._group_of.get(wallet)
        return self._groups.get(group_id) if group_id is not None else None

    def groups(self) -> List[TraderGroup]:
        return list(self._groups.values())

    def risk_level(self, wallet: str) -> RiskLevel:
        reputation = self._traders.get(wallet)
        if reputation is None:
            return RiskLevel.LOW
        if reputation.score < self._config.high_risk_score:
            return RiskLevel.HIGH
        if reputation.score < self._config.medium_risk_score:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def record(
        self,
        mint: str,
        wallet: str,
        *,
        timestamp: int,
        is_buy: bool,
        token_amount: float,
        sol_amount: float,
    ) -> None:
        """Fold one trade into the wallet's reputation and the mint's activity."""

        if not self._config.enabled or not wallet:
            return
        reputation = self._reputation(wallet, timestamp)
        reputation.total_trades += 1
        reputation.last_seen = max(reputation.last_seen, timestamp)
        trade = TraderTrade(mint, timestamp, is_buy, token_amount, sol_amount)
        activity = self._activity(mint)
        if self._closes_wash_trade(reputation, trade):
            reputation.wash_trading_incidents += 1
            reputation.penalize(self._config.wash_penalty)
            activity.wash_trades += 1
            activity.wash_wallets.add(wallet)
            if self._metrics:
                self._metrics.increment("traders.wash_trades")
            self._logger.debug(
                "Wash round trip by %s on %s (score %.0f)",
                wallet,
                mint,
                reputation.score,
                extra={"mint": mint},
            )
        reputation.trades.append(trade)
        self._link_co_traders(activity, wallet, trade)
        activity.trades.append((timestamp, wallet, is_buy))
        self._update_flow(mint, activity, timestamp)
        self._prune_groups(timestamp)

    def record_rug(self, mint: str, wallet: str, *, timestamp: int) -> None:
        """Charge ``wallet`` for a token that died after it sold into a pump."""

        if not self._config.enabled or not wallet:
            return
        reputation = self._reputation(wallet, timestamp)
        reputation.rug_pull_involvements += 1
        reputation.penalize(self._config.rug_penalty)
        if self._metrics:
            self._metrics.increment("traders.rug_involvements")
        self._logger.info("Wallet %s involved in dead token %s", wallet, mint, extra={"mint": mint})

    def coordinated_flow(self, mint: str, now: int) -> Optional[CoordinatedFlow]:
        activity = self._mints.get(mint)
        if activity is None:
            return None
        buys, total, wallets = self._window(activity, now)
        return self._flow(mint, buys, total, wallets)

    def group_risk_score(self, group: TraderGroup) -> float:
        """0-100; rises as member reputations fall and with wash or rug history."""

        known = [self._traders[wallet] for wallet in group.members if wallet in self._traders]
        if not known:
            return 0.0
        average = sum(item.score for item in known) / len(known)
        wash = sum(item.wash_trading_incidents for item in known)
        rugs = sum(item.rug_pull_involvements for item in known)
        return min(max(100.0 - average + wash * 10.0 + rugs * 20.0, 0.0), 100.0)

    def is_suspicious_group(self, group: TraderGroup, now: int) -> bool:
        cfg = self._config
        cutoff = now - cfg.pattern_window_ms
        patterns = sum(1 for item in group.patterns if item.timestamp >= cutoff)
        if patterns >= cfg.suspicious_pattern_threshold:
            return True
        return self.group_risk_score(group) >= cfg.group_risk_threshold - BOUNDARY_EPSILON

    def is_suspicious(self, wallet: str, now: int, *, mint: Optional[str] = None) -> bool:
        if self.risk_level(wallet) is RiskLevel.HIGH:
            return True
        if mint is not None:
            activity = self._mints.get(mint)
            if activity is not None and wallet in activity.wash_wallets:
                return True
        group = self.group_of(wallet)
        return group is not None and self.is_suspicious_group(group, now)

    def assess(self, mint: str, now: int) -> TraderAssessment:
        """Who traded ``mint`` inside the coordination window, and how many of them look bad."""

        activity = self._mints.get(mint)
        if activity is None:
            return TraderAssessment()
        buys, total, wallets = self._window(activity, now)
        suspicious = sum(1 for wallet in wallets if self.is_suspicious(wallet, now, mint=mint))
        return TraderAssessment(
            recent_traders=len(wallets),
            suspicious_traders=suspicious,
            wash_trades=activity.wash_trades,
            coordinated=self._flow(mint, buys, total, wallets),
        )

    def _reputation(self, wallet: str, timestamp: int) -> TraderReputation:
        reputation = self._traders.get(wallet)
        if reputation is None:
            reputation = TraderReputation(
                wallet,
                first_seen=timestamp,
                last_seen=timestamp,
                trades=deque(maxlen=self._config.trades_per_trader),
            )
            self._traders[wallet] = reputation
        return reputation

    def _activity(self, mint: str) -> _MintActivity:
        activity = self._mints.get(mint)
        if activity is None:
            activity = _MintActivity(trades=deque(maxlen=self._config.trades_per_mint))
            self._mints[mint] = activity
        return activity

    def _closes_wash_trade(self, reputation: TraderReputation, trade: TraderTrade) -> bool:
        cutoff = trade.timestamp - self._config.wash_window_ms
        tolerance = self._config.wash_size_tolerance_pct / 100.0
        for previous in reversed(reputation.trades):
            if previous.timestamp < cutoff:
                break
            if previous.matched or previous.mint != trade.mint or previous.is_buy == trade.is_buy:
                continue
            largest = max(previous.token_amount, trade.token_amount)
            if largest <= 0:
                continue
            if abs(previous.token_amount - trade.token_amount) / largest <= tolerance + BOUNDARY_EPSILON:
                previous.matched = True
                trade.matched = True
                return True
        return False

    def _link_co_traders(self, activity: _MintActivity, wallet: str, trade: TraderTrade) -> None:
        cutoff = trade.timestamp - self._config.co_trade_window_ms
        for timestamp, other, is_buy in reversed(activity.trades):
            if timestamp < cutoff:
                break
            if other == wallet or is_buy != trade.is_buy:
                continue
            pair = (other, wallet) if other < wallet else (wallet, other)
            mints = self._pairs.get(pair)
            if mints is None:
                mints = set()
                self._pairs[pair] = mints
            if trade.mint in mints:
                continue
            mints.add(trade.mint)
            if len(mints) >= self._config.relationship_threshold:
                self._join(pair, trade.timestamp)

    def _join(self, pair: Tuple[str, str], timestamp: int) -> None:
        first_id = self._group_of.get(pair[0])
        second_id = self._group_of.get(pair[1])
        if first_id is None and second_id is None:
            group = TraderGroup(self._next_group_id, set(pair), created_at=timestamp, last_active=timestamp)
            self._next_group_id += 1
            self._groups[group.group_id] = group
            if self._metrics:
                self._metrics.increment("traders.groups_formed")
            self._logger.info("Trader group %s formed by %s and %s", group.group_id, pair[0], pair[1])
        elif first_id is None or second_id is None or first_id == second_id:
            group = self._groups[first_id if first_id is not None else second_id]
            group.members.update(pair)
        else:
            group, absorbed = self._groups[first_id], self._groups[second_id]
            if len(absorbed.members) > len(group.members):
                group, absorbed = absorbed, group
            group.members.update(absorbed.members)
            group.patterns = deque(sorted([*group.patterns, *absorbed.patterns], key=lambda item: item.timestamp))
            del self._groups[absorbed.group_id]
            self._logger.info("Trader group %s merged into %s", absorbed.group_id, group.group_id)
        group.last_active = max(group.last_active, timestamp)
        for member in group.members:
            self._group_of[member] = group.group_id

    def _window(self, activity: _MintActivity, now: int) -> Tuple[int, int, Set[str]]:
        cutoff = now - self._config.coordination_window_ms
        buys = total = 0
        wallets: Set[str] = set()
        for timestamp, wallet, is_buy in activity.trades:
            if cutoff <= timestamp <= now:
                total += 1
                buys += int(is_buy)
                wallets.add(wallet)
        return buys, total, wallets

    def _flow(self, mint: str, buys: int, total: int, wallets: Set[str]) -> Optional[CoordinatedFlow]:
        cfg = self._config
        if total == 0 or len(wallets) < cfg.coordination_threshold:
            return None
        ratio = buys / total
        if ratio > cfg.one_sided_ratio:
            return CoordinatedFlow(mint, FlowSide.BUY, ratio, len(wallets))
        if ratio < 1.0 - cfg.one_sided_ratio:
            return CoordinatedFlow(mint, FlowSide.SELL, ratio, len(wallets))
        return None

    def _update_flow(self, mint: str, activity: _MintActivity, now: int) -> None:
        buys, total, wallets = self._window(activity, now)
        flow = self._flow(mint, buys, total, wallets)
        side = flow.side if flow is not None else None
        if side is None or side is activity.flow_side:
            activity.flow_side = side
            return
        activity.flow_side = side
        if self._metrics:
            self._metrics.increment(f"traders.coordinated_{side.value}")
        group_ids = {self._group_of[wallet] for wallet in wallets if wallet in self._group_of}
        for group_id in group_ids:
            group = self._groups[group_id]
            group.patterns.append(TradingPattern(now, mint, side))
            group.last_active = max(group.last_active, now)
        self._logger.info(
            "Coordinated %s flow on %s from %s wallets (%s known groups)",
            side.value,
            mint,
            len(wallets),
            len(group_ids),
            extra={"mint": mint},
        )

    def _prune_groups(self, now: int) -> None:
        if self._last_prune is not None and now - self._last_prune < MS_PER_MINUTE:
            return
        self._last_prune = now
        cfg = self._config
        for group in list(self._groups.values()):
            while group.patterns and group.patterns[0].timestamp < now - cfg.pattern_window_ms:
                group.patterns.popleft()
            if now - group.last_active > cfg.group_inactivity_ms:
                del self._groups[group.group_id]
                for member in group.members:
                    if self._group_of.get(member) == group.group_id:
                        del self._group_of[member]
        if self._metrics:
            self._metrics.gauge("traders.groups", float(len(self._groups)))


__all__ = [
    "CoordinatedFlow",
    "FlowSide",
    "RiskLevel",
    "TraderAssessment",
    "TraderBook",
    "TraderGroup",
    "TraderReputation",
    "TraderTrade",
    "TradingPattern",
]
