"""Recovery quality: how convincingly a token is climbing back from its trough."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from statistics import mean, pstdev
from typing import Deque, Iterable, List, Optional, Sequence

from .pump import PricePoint

RECENT_SAMPLES = 5
STRUCTURE_SAMPLES = 10

# Recovery strength and buy pressure boundaries between phases (fractions).
MIN_RECOVERY_STRENGTH = 0.1
EXPANSION_STRENGTH = 0.3
DISTRIBUTION_STRENGTH = 0.5
ACCUMULATION_BUY_PRESSURE = 0.6
ACCUMULATION_SCORE = 0.7
DISTRIBUTION_BUY_PRESSURE = 0.4


class MarketStructure(str, Enum):
    UNKNOWN = "unknown"
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class RecoveryPhase(str, Enum):
    NONE = "none"
    ACCUMULATION = "accumulation"
    EXPANSION = "expansion"
    DISTRIBUTION = "distribution"


@dataclass(frozen=True, slots=True)
class RecoveryMetrics:
    """Ratios are fractions, not percent."""

    drawdown_depth: float = 0.0
    recovery_strength: float = 0.0
    recovery_volume: float = 0.0
    buy_pressure: float = 0.0
    accumulation_score: float = 0.0
    market_structure: MarketStructure = MarketStructure.UNKNOWN
    phase: RecoveryPhase = RecoveryPhase.NONE
    updated_at: Optional[int] = None


def market_structure(prices: Sequence[float]) -> MarketStructure:
    """Compare the last two swing highs and swing lows of ``prices``."""

    if len(prices) < STRUCTURE_SAMPLES:
        return MarketStructure.UNKNOWN
    recent = list(prices[-STRUCTURE_SAMPLES:])
    highs: List[float] = []
    lows: List[float] = []
    for previous, current, following in zip(recent, recent[1:], recent[2:]):
        if current > previous and current > following:
            highs.append(current)
        elif current < previous and current < following:
            lows.append(current)
    if len(highs) < 2 or len(lows) < 2:
        return MarketStructure.UNKNOWN
    higher_highs = highs[-1] > highs[-2]
    higher_lows = lows[-1] > lows[-2]
    if higher_highs and higher_lows:
        return MarketStructure.BULLISH
    if not higher_highs and not higher_lows:
        return MarketStructure.BEARISH
    return MarketStructure.NEUTRAL


def accumulation_score(volumes: Sequence[float]) -> float:
    """0-1 score for steady, rising and occasionally spiking trade volume."""

    if len(volumes) < 2:
        return 0.0
    average = mean(volumes)
    if average <= 0:
        return 0.0
    variation = min(pstdev(volumes) / average, 1.0)
    score = (1.0 - variation) * 0.3
    middle = len(volumes) // 2
    older, newer = mean(volumes[:middle]), mean(volumes[middle:])
    if newer > older * 1.1:
        score += 0.4
    elif newer >= older * 0.9:
        score += 0.2
    if max(volumes) > average * 1.5:
        score += 0.3
    return min(score, 1.0)


def buy_pressure(prices: Sequence[float]) -> float:
    """Share of rising steps among the last few samples."""

    recent = list(prices[-RECENT_SAMPLES:])
    if len(recent) < 2:
        return 0.0
    rising = sum(1 for previous, current in zip(recent, recent[1:]) if current > previous)
    return rising / (len(recent) - 1)


def next_phase(
    previous: RecoveryPhase,
    *,
    strength: float,
    pressure: float,
    accumulation: float,
    structure: MarketStructure,
) -> RecoveryPhase:
    """Advance the phase; a reading that fits no phase keeps the previous one."""

    if strength < MIN_RECOVERY_STRENGTH:
        return RecoveryPhase.NONE
    if strength < EXPANSION_STRENGTH and pressure > ACCUMULATION_BUY_PRESSURE and accumulation > ACCUMULATION_SCORE:
        return RecoveryPhase.ACCUMULATION
    if strength >= DISTRIBUTION_STRENGTH and pressure < DISTRIBUTION_BUY_PRESSURE:
        return RecoveryPhase.DISTRIBUTION
    if strength >= EXPANSION_STRENGTH and structure is MarketStructure.BULLISH:
        return RecoveryPhase.EXPANSION
    return previous


class RecoveryTracker:
    """Recomputes :class:`RecoveryMetrics` after every trade once enough samples exist."""

    def __init__(self, volume_samples: int = STRUCTURE_SAMPLES) -> None:
        self._volumes: Deque[float] = deque(maxlen=volume_samples)
        self.metrics = RecoveryMetrics()

    @property
    def phase(self) -> RecoveryPhase:
        return self.metrics.phase

    def update(self, history: Iterable[PricePoint], volume_sol: float, peak_price: float, now: int) -> RecoveryMetrics:
        self._volumes.append(volume_sol)
        prices = [price for _, price in history]
        if len(prices) < RECENT_SAMPLES:
            return self.metrics
        recent = prices[-RECENT_SAMPLES:]
        lowest = min(recent)
        current = prices[-1]
        strength = (current - lowest) / lowest if lowest > 0 else 0.0
        pressure = buy_pressure(recent)
        volumes = list(self._volumes)
        accumulation = accumulation_score(volumes)
        structure = market_structure(prices)
        self.metrics = RecoveryMetrics(
            drawdown_depth=(peak_price - lowest) / peak_price if peak_price > 0 else 0.0,
            recovery_strength=strength,
            recovery_volume=sum(volumes[-RECENT_SAMPLES:]),
            buy_pressure=pressure,
            accumulation_score=accumulation,
            market_structure=structure,
            phase=next_phase(
                self.metrics.phase,
                strength=strength,
                pressure=pressure,
                accumulation=accumulation,
                structure=structure,
            ),
            updated_at=now,
        )
        return self.metrics


__all__ = [
    "DISTRIBUTION_BUY_PRESSURE",
    "MarketStructure",
    "RecoveryMetrics",
    "RecoveryPhase",
    "RecoveryTracker",
    "accumulation_score",
    "buy_pressure",
    "market_structure",
    "next_phase",
]
