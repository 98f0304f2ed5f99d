"""Rolling SOL volume windows (1m / 5m / 30m / 24h)."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Tuple

from ..utils.constants import MS_PER_MINUTE

WINDOWS_MS: Dict[str, int] = {
    "1m": MS_PER_MINUTE,
    "5m": 5 * MS_PER_MINUTE,
    "30m": 30 * MS_PER_MINUTE,
    "24h": 24 * 60 * MS_PER_MINUTE,
}


@dataclass(frozen=True, slots=True)
class VolumeBucket:
    """Totals for one window at query time."""

    window_ms: int
    total_sol: float
    buy_sol: float
    sell_sol: float
    trade_count: int


class _RollingBucket:
    def __init__(self, window_ms: int) -> None:
        self.window_ms = window_ms
        self._samples: Deque[Tuple[int, float, bool]] = deque()
        self._buy = 0.0
        self._sell = 0.0

    def add(self, timestamp: int, volume_sol: float, is_buy: bool) -> None:
        self._samples.append((timestamp, volume_sol, is_buy))
        if is_buy:
            self._buy += volume_sol
        else:
            self._sell += volume_sol

    def prune(self, now: int) -> None:
        cutoff = now - self.window_ms
        samples = self._samples
        while samples and samples[0][0] < cutoff:
            _, volume, is_buy = samples.popleft()
            if is_buy:
                self._buy -= volume
            else:
                self._sell -= volume
        if not samples:
            self._buy = 0.0
            self._sell = 0.0

    def snapshot(self) -> VolumeBucket:
        buy = max(self._buy, 0.0)
        sell = max(self._sell, 0.0)
        return VolumeBucket(self.window_ms, buy + sell, buy, sell, len(self._samples))

    def samples(self) -> Deque[Tuple[int, float, bool]]:
        return self._samples


class VolumeWindow:
    """Per-token trade volume over fixed rolling windows.

    Trades are expected in non-decreasing timestamp order; each window holds
    exactly the trades with ``now - window <= timestamp <= now`` after
    :meth:`prune`.
    """

    def __init__(self) -> None:
        self._buckets: Dict[str, _RollingBucket] = {
            name: _RollingBucket(window) for name, window in WINDOWS_MS.items()
        }
        self._last_timestamp = 0

    @property
    def last_timestamp(self) -> int:
        return self._last_timestamp

    def record(self, timestamp: int, volume_sol: float, *, is_buy: bool) -> None:
        volume = abs(float(volume_sol))
        for bucket in self._buckets.values():
            bucket.add(timestamp, volume, is_buy)
        self._last_timestamp = max(self._last_timestamp, timestamp)
        self.prune(self._last_timestamp)

    def prune(self, now: int) -> None:
        for bucket in self._buckets.values():
            bucket.prune(now)

    def bucket(self, name: str, now: int) -> VolumeBucket:
        try:
            rolling = self._buckets[name]
        except KeyError as exc:
            raise KeyError(f"unknown volume window {name!r}") from exc
        rolling.prune(now)
        return rolling.snapshot()

    def buckets(self, now: int) -> Dict[str, VolumeBucket]:
        return {name: self.bucket(name, now) for name in self._buckets}

    def volume(self, name: str, now: int) -> float:
        return self.bucket(name, now).total_sol

    def volume_between(self, start_ms: int, end_ms: int) -> float:
        """Total volume with ``start_ms <= timestamp <= end_ms`` (within the last 24h)."""

        return sum(
            volume
            for timestamp, volume, _ in self._buckets["24h"].samples()
            if start_ms <= timestamp <= end_ms
        )

    def recent_volume(self, window_ms: int, now: int) -> float:
        return self.volume_between(now - window_ms, now)


__all__ = ["VolumeBucket", "VolumeWindow", "WINDOWS_MS"]
