"""Transaction simulator: network/confirmation latency and price impact."""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Set

from ..config.settings import SimulationModeConfig, get_app_config
from ..monitoring.logger import get_logger
from ..monitoring.metrics import MetricsRegistry
from ..utils.constants import MS_PER_SECOND
from ..utils.errors import SimulatorCancelled

Sleeper = Callable[[float], Awaitable[None]]


class TradeDirection(str, Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True, slots=True)
class ImpactResult:
    execution_price: float
    slippage: float


class TransactionSimulator:
    """Models the latency and slippage of a bonding-curve fill.

    Randomness and sleeping are injectable so tests can pin both.
    """

    def __init__(
        self,
        config: Optional[SimulationModeConfig] = None,
        *,
        rng: Optional[random.Random] = None,
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._config = config or get_app_config().transaction.simulation_mode
        self._rng = rng or random.Random(self._config.random_seed)
        self._sleep = sleep
        self._clock = clock
        self._metrics = metrics
        self._last_tx_time: Optional[float] = None
        self._waiters: Set["asyncio.Future[None]"] = set()
        self._logger = get_logger(__name__)

    @property
    def config(self) -> SimulationModeConfig:
        return self._config

    def reconfigure(self, config: SimulationModeConfig) -> None:
        self._config = config

    @property
    def pending(self) -> int:
        return len(self._waiters)

    def cooldown_ms(self) -> float:
        if self._last_tx_time is None:
            return 0.0
        since_ms = (self._clock() - self._last_tx_time) * MS_PER_SECOND
        return max(0.0, self._config.min_time_between_tx_ms - since_ms)

    def compute_delay_ms(self) -> float:
        """Network delay (possibly congested) + block confirmation + cooldown."""

        network = self._config.network_delay
        delay = self._rng.uniform(network.min_ms, network.max_ms)
        if self._rng.random() < network.congestion_probability:
            delay *= network.congestion_multiplier
        confirmation = self._config.avg_block_time * MS_PER_SECOND
        return delay + confirmation + self.cooldown_ms()

    async def simulate_delay(self) -> float:
        """Suspend for a simulated confirmation delay; returns it in ms.

        :meth:`cancel_pending` aborts the wait with :class:`SimulatorCancelled`.
        Cancelling the calling task propagates ``CancelledError`` unchanged.
        """

        delay_ms = self.compute_delay_ms()
        if not self._config.enabled:
            delay_ms = 0.0
        waiter = asyncio.ensure_future(self._sleep(delay_ms / MS_PER_SECOND))
        self._waiters.add(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            raise SimulatorCancelled("simulated transaction was cancelled", context={"delay_ms": delay_ms})
        finally:
            self._waiters.discard(waiter)
        self._last_tx_time = self._clock()
        if self._metrics:
            self._metrics.observe("simulator.delay_ms", delay_ms)
        return delay_ms

    def cancel_pending(self) -> int:
        """Abort every in-flight delay; returns how many were cancelled."""

        cancelled = 0
        for waiter in list(self._waiters):
            if not waiter.done():
                waiter.cancel()
                cancelled += 1
        if cancelled:
            self._logger.info("Cancelled %d pending simulated transactions", cancelled)
        return cancelled

    def apply_impact(
        self,
        size_sol: float,
        current_price: float,
        reference_volume_sol: float,
        *,
        direction: TradeDirection = TradeDirection.BUY,
        volatility: float = 0.0,
    ) -> ImpactResult:
        """Execution price after slippage; buys pay up, sells receive less."""

        impact = self._config.price_impact
        if not impact.enabled or current_price <= 0:
            return ImpactResult(execution_price=max(current_price, 0.0), slippage=0.0)
        base = impact.slippage_base / 100.0
        volume_impact = 0.0
        if size_sol > 0:
            volume_impact = size_sol / max(reference_volume_sol, size_sol) * impact.volume_multiplier / 100.0
        slippage = (base + volume_impact) * (1.0 + volatility * impact.volatility_factor)
        if direction is TradeDirection.SELL:
            price = max(current_price * (1.0 - slippage), 0.0)
        else:
            price = current_price * (1.0 + slippage)
        return ImpactResult(execution_price=price, slippage=slippage)


__all__ = ["ImpactResult", "TradeDirection", "TransactionSimulator"]
