"""Operator alerts for errors and missed opportunities, posted to Slack and webhooks."""

from __future__ import annotations

import time
from dataclasses import asdict
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from ..config.settings import MonitoringConfig, get_app_config
from .event_bus import ErrorRaised, Event, EventSeverity, MissedOpportunityDetected
from .logger import get_logger

ALERTING_SEVERITIES = frozenset({EventSeverity.WARNING, EventSeverity.ERROR, EventSeverity.CRITICAL})


def describe(event: Event) -> Optional[Tuple[str, str]]:
    """Alert ``(message, throttle key)`` for ``event``, or ``None`` if it is not alert-worthy."""

    payload = event.payload
    if isinstance(payload, MissedOpportunityDetected):
        checks = ", ".join(payload.failed_checks) or "unknown"
        message = (
            f"Missed opportunity on {payload.mint}: +{payload.gain_pct:.1f}% in "
            f"{payload.time_to_peak_ms / 1_000:.0f}s (~{payload.potential_profit_sol:.3f} SOL, rejected by {checks})"
        )
        return message, f"missed:{payload.mint}"
    if isinstance(payload, ErrorRaised) and event.severity in ALERTING_SEVERITIES:
        return f"{event.severity.value.upper()}: {payload.message}", f"error:{payload.kind}"
    return None


class AlertManager:
    """Posts alerts with per-key throttling; does nothing when no endpoint is configured."""

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        *,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or get_app_config().monitoring
        self._session = session or requests.Session()
        self._clock = clock
        self._last_sent: Dict[str, float] = {}
        self._logger = get_logger(__name__)

    @property
    def enabled(self) -> bool:
        return bool(self._config.slack_webhook_url or self._config.webhook_urls)

    def notify(self, event: Event) -> bool:
        """Event-bus hook: alert on errors and missed opportunities."""

        described = describe(event)
        if described is None:
            return False
        message, key = described
        return self.send(message, severity=event.severity, key=key, extra=asdict(event.payload))

    def send(
        self,
        message: str,
        *,
        severity: EventSeverity = EventSeverity.INFO,
        key: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if not self.enabled or self._throttled(key or message):
            return False
        if self._config.slack_webhook_url:
            self._post(str(self._config.slack_webhook_url), {"text": f"[{severity.value.upper()}] {message}"})
        body = {"message": message, "severity": severity.value, "extra": extra or {}}
        for url in self._config.webhook_urls:
            self._post(str(url), body)
        return True

    def _throttled(self, key: str) -> bool:
        now = self._clock()
        last = self._last_sent.get(key)
        if last is not None and now - last < self._config.alert_throttle_seconds:
            return True
        self._last_sent[key] = now
        return False

    def _post(self, url: str, payload: Dict[str, Any]) -> None:
        try:
            self._session.post(url, json=payload, timeout=5).raise_for_status()
        except requests.RequestException as exc:
            self._logger.warning("Alert delivery to %s failed: %s", url, exc)


__all__ = ["AlertManager", "describe"]
