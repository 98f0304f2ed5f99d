"""Position sizing."""

from __future__ import annotations

from ..config.settings import PositionConfig


def calculate_position_size(market_cap_sol: float, config: PositionConfig, volatility: float = 0.0) -> float:
    """Market-cap proportional size in SOL, clamped to the configured limits.

    With dynamic sizing enabled the raw size shrinks by
    ``1 - volatility * volatility_scaling_factor`` before clamping.
    """

    size = market_cap_sol * config.position_size_market_cap_ratio
    if config.use_dynamic_sizing:
        size *= max(0.0, 1.0 - volatility * config.volatility_scaling_factor)
    return min(max(size, config.min_position_size_sol), config.max_position_size_sol)


__all__ = ["calculate_position_size"]
