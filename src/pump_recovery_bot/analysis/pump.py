"""Pump signal metrics derived from price history and volume windows."""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field
from statistics import pstdev
from typing import Deque, Iterable, List, Optional, Sequence, Tuple

from ..config.settings import PumpDetectionConfig
from ..utils.constants import MS_PER_MINUTE, MS_PER_SECOND

PricePoint = Tuple[int, float]


@dataclass(frozen=True, slots=True)
class VolumeSpike:
    """A one-minute volume burst relative to the recent per-minute average."""

    timestamp: int
    volume: float
    volume_increase: float
    price_change: float


@dataclass(slots=True)
class PumpMetrics:
    price_acceleration: float = 0.0
    highest_gain_rate: float = 0.0
    pump_count: int = 0
    last_pump_time: Optional[int] = None
    last_pump_price: Optional[float] = None
    market_cap_gain_rate: float = 0.0
    volatility: float = 0.0
    volume_spikes: Deque[VolumeSpike] = field(default_factory=deque)
    pump_times: Deque[int] = field(default_factory=deque)

    def latest_spike(self) -> Optional[VolumeSpike]:
        return self.volume_spikes[-1] if self.volume_spikes else None

    def pumps_within(self, window_ms: int, now: int) -> int:
        cutoff = now - window_ms
        return sum(1 for timestamp in self.pump_times if timestamp >= cutoff)


def window_samples(history: Iterable[PricePoint], window_ms: int, now: int) -> List[PricePoint]:
    cutoff = now - window_ms
    return [point for point in history if cutoff <= point[0] <= now]


def price_velocity(samples: Sequence[PricePoint]) -> float:
    """SOL per second between the first and last sample."""

    if len(samples) < 2:
        return 0.0
    (start_ts, start_price), (end_ts, end_price) = samples[0], samples[-1]
    elapsed = (end_ts - start_ts) / MS_PER_SECOND
    if elapsed <= 0:
        return 0.0
    return (end_price - start_price) / elapsed


def price_acceleration(history: Iterable[PricePoint], window_ms: int, now: int) -> float:
    """Velocity over the newer half of the window minus velocity over the older half."""

    samples = window_samples(history, window_ms, now)
    if len(samples) < 3:
        return 0.0
    middle = len(samples) // 2
    head = samples[: middle + 1]
    tail = samples[middle:]
    return price_velocity(tail) - price_velocity(head)


def gain_rate(samples: Sequence[PricePoint]) -> float:
    """Percent gain per second from the first to the last sample."""

    if len(samples) < 2:
        return 0.0
    (start_ts, start_price), (end_ts, end_price) = samples[0], samples[-1]
    elapsed = (end_ts - start_ts) / MS_PER_SECOND
    if elapsed <= 0 or start_price <= 0:
        return 0.0
    return (end_price / start_price - 1.0) * 100.0 / elapsed


def highest_gain_rate(history: Iterable[PricePoint], window_ms: int, now: int) -> float:
    """Largest %/s gain between consecutive samples inside the window."""

    samples = window_samples(history, window_ms, now)
    best = 0.0
    for previous, current in zip(samples, samples[1:]):
        rate = gain_rate((previous, current))
        if rate > best:
            best = rate
    return best


def volatility(prices: Sequence[float], lookback: int) -> float:
    """Population standard deviation of log-returns over the last ``lookback`` returns."""

    recent = [price for price in prices[-(lookback + 1) :] if price > 0]
    if len(recent) < 3:
        return 0.0
    returns = [math.log(current / previous) for previous, current in zip(recent, recent[1:])]
    return pstdev(returns)


def price_change_pct(samples: Sequence[PricePoint]) -> float:
    if len(samples) < 2 or samples[0][1] <= 0:
        return 0.0
    return (samples[-1][1] / samples[0][1] - 1.0) * 100.0


def volume_increase(volume_1m: float, volume_30m: float, elapsed_ms: int) -> float:
    """Ratio of the last minute's volume to the average per-minute volume."""

    minutes = min(30.0, max(elapsed_ms / MS_PER_MINUTE, 1.0))
    average = volume_30m / minutes
    if average <= 0:
        return 0.0
    return volume_1m / average


class PumpTracker:
    """Recomputes :class:`PumpMetrics` for one token after every trade."""

    def __init__(self, config: PumpDetectionConfig) -> None:
        self._config = config
        self.metrics = PumpMetrics(volume_spikes=deque(maxlen=config.max_volume_spikes))

    @property
    def config(self) -> PumpDetectionConfig:
        return self._config

    def update(
        self,
        history: Sequence[PricePoint],
        *,
        now: int,
        created_at: int,
        volume_1m: float,
        volume_30m: float,
    ) -> Optional[VolumeSpike]:
        """Refresh the metrics and return a new pump spike, if one was detected."""

        cfg = self._config
        metrics = self.metrics
        window = window_samples(history, cfg.acceleration_window_ms, now)
        metrics.price_acceleration = price_acceleration(window, cfg.acceleration_window_ms, now)
        metrics.highest_gain_rate = highest_gain_rate(window, cfg.acceleration_window_ms, now)
        metrics.market_cap_gain_rate = gain_rate(window)
        metrics.volatility = volatility([price for _, price in history], cfg.volatility_lookback)
        self._prune_pumps(now)

        increase = volume_increase(volume_1m, volume_30m, now - created_at)
        if increase < cfg.min_volume_spike:
            return None
        last_spike = metrics.latest_spike()
        if last_spike is not None and now - last_spike.timestamp < cfg.spike_cooldown_ms:
            return None
        change = price_change_pct(window_samples(history, MS_PER_MINUTE, now))
        spike = VolumeSpike(timestamp=now, volume=volume_1m, volume_increase=increase, price_change=change)
        metrics.volume_spikes.append(spike)
        if change <= 0:
            return None
        metrics.pump_count += 1
        metrics.last_pump_time = now
        metrics.last_pump_price = history[-1][1] if history else None
        metrics.pump_times.append(now)
        return spike

    def _prune_pumps(self, now: int) -> None:
        cutoff = now - self._config.pump_window_ms
        while self.metrics.pump_times and self.metrics.pump_times[0] < cutoff:
            self.metrics.pump_times.popleft()


__all__ = [
    "PricePoint",
    "PumpMetrics",
    "PumpTracker",
    "VolumeSpike",
    "gain_rate",
    "highest_gain_rate",
    "price_acceleration",
    "price_change_pct",
    "price_velocity",
    "volatility",
    "volume_increase",
    "window_samples",
]
