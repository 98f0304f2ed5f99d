"""Append-only JSON-lines journal of position activity and missed opportunities."""

from __future__ import annotations

import json
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict

from ..monitoring.event_bus import (
    Event,
    MissedOpportunityDetected,
    PartialExit,
    PositionClosed,
    PositionOpened,
)
from ..monitoring.logger import get_logger
from ..utils.rotation import Clock, RotationPolicy, utc_clock


class TradeJournal:
    """JSON-lines journal of position activity and missed opportunities.

    One file per UTC day (``trades-YYYY-MM-DD.jsonl``); each file is rotated by
    :class:`RotationPolicy` once it exceeds the configured size.
    """

    def __init__(
        self,
        directory: Path,
        *,
        max_bytes: int = 100 * 1024 * 1024,
        clock: Clock = utc_clock,
    ) -> None:
        self._directory = Path(directory)
        self._policy = RotationPolicy(max_bytes=max_bytes, clock=clock)
        self._clock = clock
        self._lock = threading.Lock()
        self._logger = get_logger(__name__)

    @property
    def directory(self) -> Path:
        return self._directory

    def current_path(self) -> Path:
        return self._directory / f"trades-{self._clock().strftime('%Y-%m-%d')}.jsonl"

    def record(self, kind: str, payload: Dict[str, Any]) -> Path:
        entry = {"kind": kind, "logged_at": self._clock().isoformat(), **payload}
        line = json.dumps(entry, default=str, sort_keys=True)
        with self._lock:
            self._directory.mkdir(parents=True, exist_ok=True)
            path = self.current_path()
            if self._policy.should_rotate(path):
                rotated = self._policy.rotate(path)
                self._logger.info("Rotated trade journal to %s", rotated)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        return path

    def handle_event(self, event: Event) -> None:
        """Event bus subscriber recording trade lifecycle events."""

        payload = event.payload
        if isinstance(payload, PositionOpened):
            kind = "position_opened"
        elif isinstance(payload, PartialExit):
            kind = "partial_exit"
        elif isinstance(payload, PositionClosed):
            kind = "position_closed"
        elif isinstance(payload, MissedOpportunityDetected):
            kind = "missed_opportunity"
        else:
            return
        try:
            self.record(kind, asdict(payload))
        except OSError as exc:
            self._logger.error("Failed to write trade journal entry: %s", exc, extra={"kind": kind})


__all__ = ["TradeJournal"]
