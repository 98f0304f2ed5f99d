from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

import pytest

from pump_recovery_bot.config.settings import MonitoringConfig
from pump_recovery_bot.monitoring.alerts import AlertManager, describe
from pump_recovery_bot.monitoring.event_bus import (
    ErrorRaised,
    Event,
    EventBus,
    EventSeverity,
    EventType,
    MissedOpportunityDetected,
    PositionOpened,
    TokenStateChanged,
)
from pump_recovery_bot.monitoring.logger import StructuredFormatter, correlation_scope, current_correlation_id
from pump_recovery_bot.monitoring.metrics import MetricsRegistry, histogram_stats


class RecordingSession:
    def __init__(self) -> None:
        self.posts: List[Dict[str, Any]] = []

    def post(self, url: str, json: Dict[str, Any], timeout: float) -> "RecordingSession":
        self.posts.append({"url": url, "json": json})
        return self

    def raise_for_status(self) -> None:
        return None


def _opened(mint: str = "MintA") -> PositionOpened:
    return PositionOpened(
        mint=mint,
        entry_price=0.05,
        size_sol=0.5,
        entry_time=1_000,
        slippage=0.01,
        execution_delay_ms=450.0,
    )


def test_event_bus_routes_typed_events_and_counts_them() -> None:
    metrics = MetricsRegistry()
    bus = EventBus(metrics=metrics)
    opened: List[Event] = []
    everything: List[Event] = []
    bus.subscribe(EventType.POSITION_OPENED, opened.append)
    bus.subscribe(None, everything.append)

    bus.publish(_opened(), correlation_id="MintA")
    bus.publish(TokenStateChanged(mint="MintA", from_state="NEW", to_state="HEATING_UP", timestamp=5, reason="mc"))
    assert bus.flush()

    assert [event.type for event in opened] == [EventType.POSITION_OPENED]
    assert opened[0].correlation_id == "MintA"
    assert len(everything) == 2
    assert metrics.get("events.position_opened") == 1
    assert metrics.get("transitions.NEW.HEATING_UP") == 1
    assert len(bus.history(event_type=EventType.TOKEN_STATE_CHANGED)) == 1
    assert everything[0].to_dict()["payload"]["mint"] == "MintA"
    bus.close()


def test_failing_subscriber_does_not_block_others() -> None:
    bus = EventBus()
    received: List[Event] = []

    def broken(event: Event) -> None:
        raise RuntimeError("subscriber bug")

    bus.subscribe(None, broken)
    bus.subscribe(None, received.append)
    bus.publish(ErrorRaised(kind="unknown_mint", message="no such mint", context={"mint": "X"}))
    assert bus.flush()

    assert len(received) == 1
    bus.close()


def test_publish_rejects_unknown_payloads() -> None:
    bus = EventBus()
    with pytest.raises(TypeError, match="Unsupported event payload"):
        bus.publish({"message": "untyped"})  # type: ignore[arg-type]
    bus.close()


def test_prometheus_export_sanitizes_metric_names() -> None:
    metrics = MetricsRegistry()
    metrics.increment("safety.rejected.MIN_HOLDERS")
    metrics.gauge("feed_queue_depth", 3)
    metrics.observe("latency.feed_end_to_end_ms", 0.5)
    output = metrics.export_prometheus()
    lines = [line for line in output.splitlines() if line]

    assert "# TYPE safety_rejected_MIN_HOLDERS counter" in lines
    assert "safety.rejected" not in output
    assert any(line.startswith("feed_queue_depth ") for line in lines)
    assert 'latency_feed_end_to_end_ms{quantile="0.99"} 0.5' in lines
    assert "latency_feed_end_to_end_ms_count 1" in lines


def test_histogram_stats_percentiles() -> None:
    stats = histogram_stats(float(value) for value in range(1, 101))

    assert stats["count"] == 100
    assert stats["p50"] == 50.0
    assert stats["p99"] == 99.0
    assert histogram_stats([]) == {}


def test_histograms_keep_newest_samples() -> None:
    metrics = MetricsRegistry(max_hist_samples=3)
    for value in range(5):
        metrics.observe("latency", value)

    assert metrics.samples("latency") == [2.0, 3.0, 4.0]


def test_alert_manager_throttles_per_key() -> None:
    session = RecordingSession()
    now = [0.0]
    manager = AlertManager(
        MonitoringConfig(webhook_urls=["https://hooks.example.com/bot"], alert_throttle_seconds=60),
        session=session,  # type: ignore[arg-type]
        clock=lambda: now[0],
    )

    assert manager.send("first", severity=EventSeverity.ERROR, key="error:x")
    assert not manager.send("again", severity=EventSeverity.ERROR, key="error:x")
    now[0] = 61.0
    assert manager.send("later", severity=EventSeverity.ERROR, key="error:x")
    assert [post["json"]["message"] for post in session.posts] == ["first", "later"]


def test_alert_manager_without_endpoints_is_disabled() -> None:
    manager = AlertManager(MonitoringConfig(), session=RecordingSession())  # type: ignore[arg-type]

    assert not manager.enabled
    assert not manager.send("ignored")


def test_bus_forwards_missed_opportunities_and_errors_to_alerts() -> None:
    session = RecordingSession()
    manager = AlertManager(
        MonitoringConfig(webhook_urls=["https://hooks.example.com/bot"], alert_throttle_seconds=0),
        session=session,  # type: ignore[arg-type]
    )
    bus = EventBus(alerts=manager)
    bus.publish(
        MissedOpportunityDetected(
            mint="MintA",
            gain_pct=60.0,
            potential_profit_sol=0.3,
            time_to_peak_ms=90_000,
            failed_checks=("MIN_HOLDERS",),
        )
    )
    bus.publish(ErrorRaised(kind="persistence_failure", message="disk full"), severity=EventSeverity.ERROR)
    bus.publish(_opened())
    assert bus.flush()
    bus.close()

    messages = [post["json"]["message"] for post in session.posts]
    assert len(messages) == 2
    assert messages[0].startswith("Missed opportunity on MintA")
    assert messages[1] == "ERROR: disk full"


def test_structured_formatter_includes_correlation_and_extra() -> None:
    record = logging.LogRecord("pump", logging.INFO, __file__, 1, "opened %s", ("MintA",), None)
    record.correlation_id = "MintA"
    record.mint = "MintA"
    payload = json.loads(StructuredFormatter().format(record))

    assert payload["message"] == "opened MintA"
    assert payload["correlation_id"] == "MintA"
    assert payload["extra"]["mint"] == "MintA"


def test_correlation_scope_restores_previous_id() -> None:
    assert current_correlation_id() == "-"
    with correlation_scope("MintA"):
        assert current_correlation_id() == "MintA"
        with correlation_scope("MintB"):
            assert current_correlation_id() == "MintB"
        assert current_correlation_id() == "MintA"
    assert current_correlation_id() == "-"


def test_counters_by_prefix_and_namespace() -> None:
    metrics = MetricsRegistry(namespace="pump")
    metrics.increment("safety.rejected.MIN_HOLDERS", 2)
    metrics.increment("safety.rejected.PUMP_DYNAMICS")
    metrics.increment("safety.approved")

    assert metrics.counters("safety.rejected.") == {"MIN_HOLDERS": 2.0, "PUMP_DYNAMICS": 1.0}
    assert "pump_safety_approved 1.0" in metrics.export_prometheus().splitlines()


def test_routine_events_are_not_alert_worthy() -> None:
    assert describe(Event(type=EventType.POSITION_OPENED, payload=_opened())) is None
    warning = Event(
        type=EventType.ERROR,
        payload=ErrorRaised(kind="malformed_event", message="missing mint"),
        severity=EventSeverity.WARNING,
    )
    assert describe(warning) == ("WARNING: missing mint", "error:malformed_event")
