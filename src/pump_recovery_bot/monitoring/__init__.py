"""Monitoring package exports and helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..config.settings import AppConfig, get_app_config
from .alerts import AlertManager
from .event_bus import EventBus
from .logger import configure_logging
from .metrics import MetricsRegistry


@dataclass(slots=True)
class Observability:
    """Bundle of the observability components wired at startup."""

    bus: EventBus
    metrics: MetricsRegistry
    alerts: AlertManager


def bootstrap_observability(config: Optional[AppConfig] = None) -> Observability:
    """Configure logging and build an event bus wired to metrics and alert routing."""

    app_config = config or get_app_config()
    configure_logging(app_config.monitoring)
    metrics = MetricsRegistry(max_hist_samples=app_config.monitoring.max_hist_samples)
    manager = AlertManager(app_config.monitoring)
    bus = EventBus(
        app_config.monitoring.event_history_size,
        metrics=metrics,
        alerts=manager,
    )
    return Observability(bus=bus, metrics=metrics, alerts=manager)


__all__ = ["Observability", "bootstrap_observability"]
