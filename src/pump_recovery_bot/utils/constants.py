"""Shared constants and clock helpers."""

import time
from datetime import datetime, timezone


# Utility function to get timezone-aware UTC datetime
def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Wall-clock milliseconds since the epoch."""
    return int(time.time() * 1000)


def ms_to_datetime(value: float) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, timezone.utc)


MS_PER_SECOND = 1_000
MS_PER_MINUTE = 60_000

# Tolerance applied when a value is compared against a configured boundary.
BOUNDARY_EPSILON = 1e-9

# Pseudo-holder standing in for the bonding curve reserve.
BONDING_CURVE_ACCOUNT = "bonding-curve"

__all__ = [
    "utc_now",
    "now_ms",
    "ms_to_datetime",
    "MS_PER_SECOND",
    "MS_PER_MINUTE",
    "BOUNDARY_EPSILON",
    "BONDING_CURVE_ACCOUNT",
]
