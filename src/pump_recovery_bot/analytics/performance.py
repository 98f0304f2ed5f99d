"""Trading analytics: trade counters, exit statistics and latency histograms."""

from __future__ import annotations

from collections import deque
from typing import Deque, Dict, Optional

from ..config.settings import PersistenceConfig, get_app_config
from ..datalake.schemas import AnalyticsSnapshot, ExitReasonStats
from ..execution.position import ExitFill, Position
from ..monitoring.logger import get_logger
from ..monitoring.metrics import MetricsRegistry, histogram_stats

PUMP_DETECTION = "pump_detection"
TRADE_EXECUTION = "trade_execution"
FEED_END_TO_END = "feed_end_to_end"
LATENCY_KINDS = (PUMP_DETECTION, TRADE_EXECUTION, FEED_END_TO_END)


class TradingAnalytics:
    """Aggregates closed-trade outcomes and processing latencies.

    Latency arrays keep the newest ``latency_sample_cap`` samples per kind.
    """

    def __init__(
        self,
        config: Optional[PersistenceConfig] = None,
        *,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._config = config or get_app_config().persistence
        self._metrics = metrics
        self._state = AnalyticsSnapshot()
        self._latencies: Dict[str, Deque[float]] = {
            kind: deque(maxlen=self._config.latency_sample_cap) for kind in LATENCY_KINDS
        }
        self._logger = get_logger(__name__)

    @property
    def total_trades(self) -> int:
        return self._state.total_trades

    def record_token_tracked(self) -> None:
        self._state.tokens_tracked += 1

    def record_safety_rejection(self) -> None:
        self._state.safety_rejections += 1

    def record_missed_opportunity(self) -> None:
        self._state.missed_opportunities += 1

    def record_latency(self, kind: str, latency_ms: float) -> None:
        samples = self._latencies.get(kind)
        if samples is None:
            samples = deque(maxlen=self._config.latency_sample_cap)
            self._latencies[kind] = samples
        samples.append(float(latency_ms))
        if self._metrics:
            self._metrics.observe(f"latency.{kind}_ms", latency_ms)

    def latencies(self, kind: str) -> list:
        return list(self._latencies.get(kind, ()))

    def record_exit(self, fill: ExitFill, *, hold_time_ms: int) -> None:
        stats = self._state.exit_stats.setdefault(fill.reason, ExitReasonStats())
        stats.count += 1
        stats.total_pnl_sol += fill.pnl_sol
        stats.total_hold_time_ms += hold_time_ms
        if fill.pnl_sol > 0:
            stats.wins += 1

    def record_close(self, position: Position) -> None:
        state = self._state
        pnl = position.realized_pnl_sol
        hold_ms = position.hold_time_ms()
        state.total_trades += 1
        state.cumulative_pnl_sol += pnl
        state.cumulative_pnl_usd += position.realized_pnl_usd
        state.total_time_in_position_ms += hold_ms
        if pnl > 0:
            state.profitable_trades += 1
            state.gross_profit_sol += pnl
            state.total_win_hold_ms += hold_ms
            state.largest_win_sol = max(state.largest_win_sol, pnl)
        elif pnl < 0:
            state.unprofitable_trades += 1
            state.gross_loss_sol += -pnl
            state.total_loss_hold_ms += hold_ms
            state.largest_loss_sol = min(state.largest_loss_sol, pnl)
        self._logger.info(
            "Closed %s: %.4f SOL over %.0fs (%s)",
            position.mint,
            pnl,
            hold_ms / 1_000,
            position.close_reason,
            extra={"mint": position.mint},
        )

    def summary(self) -> Dict[str, object]:
        state = self._state
        trades = state.total_trades
        wins = state.profitable_trades
        losses = state.unprofitable_trades
        average_win = state.gross_profit_sol / wins if wins else 0.0
        average_loss = state.gross_loss_sol / losses if losses else 0.0
        if state.gross_loss_sol > 0:
            profit_factor = state.gross_profit_sol / state.gross_loss_sol
        else:
            profit_factor = float("inf") if state.gross_profit_sol > 0 else 0.0
        report: Dict[str, object] = {
            "total_trades": trades,
            "profitable_trades": wins,
            "unprofitable_trades": losses,
            "win_rate_pct": wins / trades * 100.0 if trades else 0.0,
            "cumulative_pnl_sol": state.cumulative_pnl_sol,
            "cumulative_pnl_usd": state.cumulative_pnl_usd,
            "largest_win_sol": state.largest_win_sol,
            "largest_loss_sol": state.largest_loss_sol,
            "average_time_in_position_ms": state.total_time_in_position_ms / trades if trades else 0.0,
            "average_win_hold_ms": state.total_win_hold_ms / wins if wins else 0.0,
            "average_loss_hold_ms": state.total_loss_hold_ms / losses if losses else 0.0,
            "profit_factor": profit_factor,
            "risk_reward_ratio": average_win / average_loss if average_loss else 0.0,
            "tokens_tracked": state.tokens_tracked,
            "safety_rejections": state.safety_rejections,
            "missed_opportunities": state.missed_opportunities,
            "exit_stats": {
                reason: {
                    "count": stats.count,
                    "total_pnl_sol": stats.total_pnl_sol,
                    "average_hold_time_ms": stats.average_hold_time_ms,
                    "win_rate_pct": stats.wins / stats.count * 100.0 if stats.count else 0.0,
                }
                for reason, stats in sorted(state.exit_stats.items())
            },
            "latency_ms": {kind: histogram_stats(samples) for kind, samples in self._latencies.items()},
        }
        if self._metrics:
            report["rejections_by_check"] = self._metrics.counters("safety.rejected.")
        return report

    def to_snapshot(self) -> AnalyticsSnapshot:
        snapshot = AnalyticsSnapshot.from_dict(self._state.to_dict())
        snapshot.latencies = {kind: list(samples) for kind, samples in sorted(self._latencies.items())}
        return snapshot

    def restore(self, snapshot: AnalyticsSnapshot) -> None:
        self._state = AnalyticsSnapshot.from_dict(snapshot.to_dict())
        self._state.latencies = {}
        for kind, samples in snapshot.latencies.items():
            self._latencies[kind] = deque(samples, maxlen=self._config.latency_sample_cap)
        self._logger.info("Restored analytics covering %d trades", self._state.total_trades)


__all__ = [
    "FEED_END_TO_END",
    "LATENCY_KINDS",
    "PUMP_DETECTION",
    "TRADE_EXECUTION",
    "TradingAnalytics",
]
