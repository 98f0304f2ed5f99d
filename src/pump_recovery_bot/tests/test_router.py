from __future__ import annotations

import asyncio
from typing import List, Tuple

from pump_recovery_bot.ingestion.events import CreateEvent, TradeEvent, parse_feed_record
from pump_recovery_bot.ingestion.feed import FeedItem, FeedQueue
from pump_recovery_bot.ingestion.router import EventRouter
from pump_recovery_bot.monitoring.alerts import describe
from pump_recovery_bot.monitoring.event_bus import Event, EventBus, EventSeverity, EventType
from pump_recovery_bot.monitoring.metrics import MetricsRegistry
from pump_recovery_bot.tests.factories import create_record, make_registry, trade_record
from pump_recovery_bot.utils.errors import InsufficientBalance, SimulatorCancelled


def test_trades_apply_in_order_per_mint() -> None:
    metrics = MetricsRegistry()
    registry = make_registry()
    feed = FeedQueue(100)
    handled: List[Tuple[str, int]] = []
    created: List[str] = []

    async def on_trade(event: TradeEvent, _received_at: float) -> None:
        await asyncio.sleep(0)
        handled.append((event.mint, event.timestamp))

    def on_create(event: CreateEvent) -> None:
        created.append(event.mint)

    router = EventRouter(feed, registry, on_trade, on_create=on_create, metrics=metrics)
    feed.put_nowait(create_record("MintA"))
    feed.put_nowait(create_record("MintB"))
    for mint, timestamp in (("MintA", 1), ("MintB", 2), ("MintA", 3), ("MintB", 4), ("MintA", 5)):
        feed.put_nowait(trade_record(mint, timestamp=timestamp, v_sol=30.0))
    feed.put_nowait({"txType": "buy", "mint": "MintA"})
    feed.put_nowait(trade_record("MintZ", timestamp=6, v_sol=30.0))
    feed.close()

    async def scenario() -> None:
        await router.start()
        await router.wait_drained()
        await router.shutdown(1.0)

    asyncio.run(scenario())

    assert created == ["MintA", "MintB"]
    assert [timestamp for mint, timestamp in handled if mint == "MintA"] == [1, 3, 5]
    assert [timestamp for mint, timestamp in handled if mint == "MintB"] == [2, 4]
    assert metrics.get("events.create") == 2
    assert metrics.get("events.malformed") == 1
    assert metrics.get("events.unknown_mint") == 1
    assert router.active_mints() == []


def test_errors_stay_inside_the_failing_mint() -> None:
    metrics = MetricsRegistry()
    bus = EventBus()
    errors: List[Event] = []
    bus.subscribe(EventType.ERROR, errors.append)
    registry = make_registry()
    feed = FeedQueue(100)
    handled: List[Tuple[str, int]] = []

    async def on_trade(event: TradeEvent, _received_at: float) -> None:
        if event.mint == "MintA" and event.timestamp == 1:
            raise InsufficientBalance("wallet empty", context={"required_sol": 1.0})
        if event.mint == "MintA" and event.timestamp == 2:
            raise RuntimeError("boom")
        handled.append((event.mint, event.timestamp))

    router = EventRouter(feed, registry, on_trade, bus=bus, metrics=metrics)
    feed.put_nowait(create_record("MintA"))
    feed.put_nowait(create_record("MintB"))
    for mint, timestamp in (("MintA", 1), ("MintB", 1), ("MintA", 2), ("MintA", 3)):
        feed.put_nowait(trade_record(mint, timestamp=timestamp, v_sol=30.0))
    feed.close()

    async def scenario() -> None:
        await router.start()
        await router.wait_drained()
        await router.shutdown(1.0)

    asyncio.run(scenario())
    assert bus.flush()
    bus.close()

    assert sorted(handled) == [("MintA", 3), ("MintB", 1)]
    assert metrics.get("router.errors.insufficient_balance") == 1
    assert metrics.get("router.errors.internal") == 1
    assert [event.payload.kind for event in errors] == ["insufficient_balance", "internal"]
    assert errors[0].correlation_id == "MintA"
    assert errors[0].payload.context["required_sol"] == 1.0


def test_shutdown_cancels_workers_past_the_deadline() -> None:
    registry = make_registry()
    feed = FeedQueue(100)

    async def on_trade(_event: TradeEvent, _received_at: float) -> None:
        await asyncio.Event().wait()

    router = EventRouter(feed, registry, on_trade)
    feed.put_nowait(create_record("MintA"))
    feed.put_nowait(trade_record("MintA", timestamp=1, v_sol=30.0))

    async def scenario() -> bool:
        await router.start()
        while not router.active_mints():
            await asyncio.sleep(0)
        return await router.shutdown(0.05)

    assert asyncio.run(scenario()) is False
    assert not router.accepting
    assert router.active_mints() == []
    assert feed.closed


def test_retire_stops_a_mint_worker() -> None:
    registry = make_registry()
    feed = FeedQueue(100)
    handled: List[int] = []

    async def on_trade(event: TradeEvent, _received_at: float) -> None:
        handled.append(event.timestamp)

    router = EventRouter(feed, registry, on_trade)
    registry.admit(parse_feed_record(create_record("MintA")))

    async def scenario() -> None:
        router.dispatch(FeedItem(trade_record("MintA", timestamp=1, v_sol=30.0)))
        await router.retire("MintA")

    asyncio.run(scenario())

    assert handled == [1]
    assert router.active_mints() == []


def test_cancelled_fills_are_reported_without_alerting() -> None:
    metrics = MetricsRegistry()
    bus = EventBus()
    errors: List[Event] = []
    bus.subscribe(EventType.ERROR, errors.append)
    registry = make_registry()
    feed = FeedQueue(100)

    async def on_trade(_event: TradeEvent, _received_at: float) -> None:
        raise SimulatorCancelled("simulated transaction was cancelled", context={"delay_ms": 500})

    router = EventRouter(feed, registry, on_trade, bus=bus, metrics=metrics)
    feed.put_nowait(create_record("MintA"))
    feed.put_nowait(trade_record("MintA", timestamp=1, v_sol=30.0))
    feed.close()

    async def scenario() -> None:
        await router.start()
        await router.wait_drained()
        await router.shutdown(1.0)

    asyncio.run(scenario())
    assert bus.flush()
    bus.close()

    assert metrics.get("router.errors.simulator_cancelled") == 1
    assert [(event.payload.kind, event.severity) for event in errors] == [("simulator_cancelled", EventSeverity.INFO)]
    assert describe(errors[0]) is None
