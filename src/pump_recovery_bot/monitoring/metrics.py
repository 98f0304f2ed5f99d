"""Thread-safe counters, gauges and capped latency histograms.

Names are dotted (``safety.rejected.MIN_HOLDERS``); the Prometheus export maps
them onto ``[a-zA-Z0-9_:]`` and prefixes the configured namespace.
"""

from __future__ import annotations

import math
import re
import threading
from collections import defaultdict, deque
from statistics import mean
from typing import Deque, Dict, Iterable, List, MutableMapping

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_:]")
QUANTILES = (0.5, 0.9, 0.99)


def prometheus_name(name: str, namespace: str = "") -> str:
    sanitized = _INVALID_NAME_CHARS.sub("_", f"{namespace}_{name}" if namespace else name)
    if not sanitized or sanitized[0].isdigit():
        sanitized = f"_{sanitized}"
    return sanitized


class MetricsRegistry:
    """Process-local metrics shared by the pipeline components it is injected into."""

    def __init__(self, *, max_hist_samples: int = 1024, namespace: str = "") -> None:
        self._lock = threading.RLock()
        self._namespace = namespace
        self._counters: MutableMapping[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._histograms: MutableMapping[str, Deque[float]] = defaultdict(lambda: deque(maxlen=max_hist_samples))

    def increment(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self._counters[name] += amount

    def get(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def counters(self, prefix: str = "") -> Dict[str, float]:
        """Counters whose name starts with ``prefix``, keyed by the remainder."""

        with self._lock:
            return {
                name[len(prefix):]: value for name, value in sorted(self._counters.items()) if name.startswith(prefix)
            }

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = float(value)

    def get_gauge(self, name: str) -> float:
        with self._lock:
            return self._gauges.get(name, 0.0)

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self._histograms[name].append(float(value))

    def samples(self, name: str) -> List[float]:
        with self._lock:
            return list(self._histograms.get(name, ()))

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": {name: histogram_stats(values) for name, values in self._histograms.items()},
            }

    def export_prometheus(self) -> str:
        snap = self.snapshot()
        lines: List[str] = []
        for kind in ("counters", "gauges"):
            metric_type = "counter" if kind == "counters" else "gauge"
            for name, value in sorted(snap[kind].items()):
                exported = prometheus_name(name, self._namespace)
                lines.extend((f"# TYPE {exported} {metric_type}", f"{exported} {value}"))
        for name, stats in sorted(snap["histograms"].items()):
            if not stats:
                continue
            exported = prometheus_name(name, self._namespace)
            lines.append(f"# TYPE {exported} summary")
            for quantile in QUANTILES:
                lines.append(f'{exported}{{quantile="{quantile}"}} {stats[_quantile_key(quantile)]}')
            lines.append(f"{exported}_count {int(stats['count'])}")
            lines.append(f"{exported}_sum {stats['sum']}")
        return "\n".join(lines) + "\n"


def _quantile_key(quantile: float) -> str:
    return f"p{round(quantile * 100)}"


def histogram_stats(values: Iterable[float]) -> Dict[str, float]:
    """Summarise ``values`` as count, sum, avg and nearest-rank p50/p90/p99."""

    data = sorted(values)
    if not data:
        return {}
    stats = {"count": float(len(data)), "sum": float(sum(data)), "avg": mean(data)}
    for quantile in QUANTILES:
        rank = max(math.ceil(quantile * len(data)) - 1, 0)
        stats[_quantile_key(quantile)] = float(data[min(rank, len(data) - 1)])
    return stats


__all__ = ["MetricsRegistry", "histogram_stats", "prometheus_name"]
