"""Typed event bus for outbound trading events."""

from __future__ import annotations

import asyncio
import inspect
import logging
import queue
import threading
import time
from collections import defaultdict, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional, Tuple, Type, Union

from .metrics import MetricsRegistry

if TYPE_CHECKING:
    from .alerts import AlertManager


class EventType(str, Enum):
    """Outbound event categories, one per payload variant."""

    TOKEN_ADDED = "token_added"
    TOKEN_STATE_CHANGED = "token_state_changed"
    POSITION_OPENED = "position_opened"
    PARTIAL_EXIT = "partial_exit"
    POSITION_CLOSED = "position_closed"
    MISSED_OPPORTUNITY = "missed_opportunity"
    ERROR = "error"
    BALANCE_UPDATED = "balance_updated"
    PUMP_DETECTED = "pump_detected"


class EventSeverity(str, Enum):
    """Severity levels associated with events."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class TokenAdded:
    mint: str
    symbol: str
    name: str
    market_cap_sol: float
    created_at: int


@dataclass(frozen=True, slots=True)
class TokenStateChanged:
    mint: str
    from_state: str
    to_state: str
    timestamp: int
    reason: str


@dataclass(frozen=True, slots=True)
class PumpDetected:
    mint: str
    timestamp: int
    volume_increase: float
    price_change: float
    pump_count: int


@dataclass(frozen=True, slots=True)
class PositionOpened:
    mint: str
    entry_price: float
    size_sol: float
    entry_time: int
    slippage: float
    execution_delay_ms: float


@dataclass(frozen=True, slots=True)
class PartialExit:
    mint: str
    reason: str
    portion: float
    execution_price: float
    pnl_sol: float
    remaining_size: float
    timestamp: int


@dataclass(frozen=True, slots=True)
class PositionClosed:
    mint: str
    reason: str
    exit_price: float
    realized_pnl_sol: float
    realized_pnl_usd: float
    hold_time_ms: int
    timestamp: int


@dataclass(frozen=True, slots=True)
class MissedOpportunityDetected:
    mint: str
    gain_pct: float
    potential_profit_sol: float
    time_to_peak_ms: int
    failed_checks: Tuple[str, ...]
    suggestions: Dict[str, float] = field(default_factory=dict)
    risk_level: str = "LOW"


@dataclass(frozen=True, slots=True)
class ErrorRaised:
    kind: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class BalanceUpdated:
    balance_sol: float
    change_sol: float
    reason: str


EventPayload = Union[
    TokenAdded,
    TokenStateChanged,
    PumpDetected,
    PositionOpened,
    PartialExit,
    PositionClosed,
    MissedOpportunityDetected,
    ErrorRaised,
    BalanceUpdated,
]

_PAYLOAD_TYPES: Dict[Type[Any], EventType] = {
    TokenAdded: EventType.TOKEN_ADDED,
    TokenStateChanged: EventType.TOKEN_STATE_CHANGED,
    PumpDetected: EventType.PUMP_DETECTED,
    PositionOpened: EventType.POSITION_OPENED,
    PartialExit: EventType.PARTIAL_EXIT,
    PositionClosed: EventType.POSITION_CLOSED,
    MissedOpportunityDetected: EventType.MISSED_OPPORTUNITY,
    ErrorRaised: EventType.ERROR,
    BalanceUpdated: EventType.BALANCE_UPDATED,
}


def event_type_for(payload: EventPayload) -> EventType:
    try:
        return _PAYLOAD_TYPES[type(payload)]
    except KeyError as exc:
        raise TypeError(f"Unsupported event payload: {type(payload).__name__}") from exc


@dataclass(slots=True)
class Event:
    """Envelope around a typed payload."""

    type: EventType
    payload: EventPayload
    severity: EventSeverity = EventSeverity.INFO
    correlation_id: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
            "labels": dict(self.labels),
            "payload": asdict(self.payload),
        }


Subscriber = Callable[[Event], Union[None, Any]]
_STOP = object()


class EventBus:
    """Fans typed events out to subscribers from a single worker thread.

    ``publish`` only enqueues, so a slow or failing handler never stalls the
    caller. Handlers registered for ``None`` receive every event.
    """

    def __init__(
        self,
        history_size: int = 500,
        *,
        metrics: Optional[MetricsRegistry] = None,
        alerts: Optional["AlertManager"] = None,
    ) -> None:
        self._pending: "queue.Queue[object]" = queue.Queue()
        self._handlers: Dict[Optional[EventType], List[Subscriber]] = defaultdict(list)
        self._recent: Deque[Event] = deque(maxlen=history_size)
        self._guard = threading.RLock()
        self._metrics = metrics
        self._alerts = alerts
        self._logger = logging.getLogger(__name__)
        self._thread = threading.Thread(target=self._consume, name="event-bus", daemon=True)
        self._thread.start()

    def subscribe(self, event_type: Optional[EventType], handler: Subscriber) -> None:
        with self._guard:
            self._handlers[event_type].append(handler)

    def publish(
        self,
        payload: EventPayload,
        *,
        severity: EventSeverity = EventSeverity.INFO,
        correlation_id: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> Event:
        """Queue ``payload`` for dispatch and return its envelope."""

        event = Event(
            event_type_for(payload),
            payload,
            severity=severity,
            correlation_id=correlation_id,
            labels=dict(labels or {}),
        )
        self._pending.put(event)
        return event

    def history(self, limit: int = 100, event_type: Optional[EventType] = None) -> List[Event]:
        with self._guard:
            recent = [event for event in self._recent if event_type is None or event.type == event_type]
        return recent[-limit:]

    def flush(self, timeout: float = 1.0) -> bool:
        """Wait up to ``timeout`` seconds for queued events to be dispatched."""

        deadline = time.monotonic() + timeout
        while self._pending.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def close(self, timeout: float = 1.0) -> None:
        self.flush(timeout)
        self._pending.put(_STOP)
        self._thread.join(timeout)

    def _consume(self) -> None:
        while True:
            item = self._pending.get()
            try:
                if item is _STOP:
                    return
                self._dispatch(item)  # type: ignore[arg-type]
            except Exception:  # pragma: no cover
                self._logger.exception("Event dispatch failed")
            finally:
                self._pending.task_done()

    def _dispatch(self, event: Event) -> None:
        with self._guard:
            self._recent.append(event)
            targets = [*self._handlers.get(event.type, ()), *self._handlers.get(None, ())]
        self._record(event)
        if self._alerts:
            self._alerts.notify(event)
        for handler in targets:
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    asyncio.run(outcome)
            except Exception:
                name = getattr(handler, "__name__", repr(handler))
                self._logger.exception("Subscriber %s raised on %s", name, event.type.value)

    def _record(self, event: Event) -> None:
        if not self._metrics:
            return
        self._metrics.increment(f"events.{event.type.value}")
        payload = event.payload
        if isinstance(payload, ErrorRaised):
            self._metrics.increment(f"errors.{payload.kind}")
        elif isinstance(payload, (PartialExit, PositionClosed)):
            self._metrics.increment(f"exits.{payload.reason}")
        elif isinstance(payload, TokenStateChanged):
            self._metrics.increment(f"transitions.{payload.from_state}.{payload.to_state}")
        elif isinstance(payload, BalanceUpdated):
            self._metrics.gauge("wallet_balance_sol", payload.balance_sol)


__all__ = [
    "BalanceUpdated",
    "ErrorRaised",
    "Event",
    "EventBus",
    "EventPayload",
    "EventSeverity",
    "EventType",
    "MissedOpportunityDetected",
    "PartialExit",
    "PositionClosed",
    "PositionOpened",
    "PumpDetected",
    "TokenAdded",
    "TokenStateChanged",
    "event_type_for",
]
