from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List

import pytest

from pump_recovery_bot.analytics.performance import TRADE_EXECUTION, TradingAnalytics
from pump_recovery_bot.config.settings import PersistenceConfig
from pump_recovery_bot.datalake.journal import TradeJournal
from pump_recovery_bot.datalake.schemas import (
    ANALYTICS_KIND,
    POSITIONS_KIND,
    PositionsSnapshot,
    WalletRecord,
)
from pump_recovery_bot.datalake.storage import (
    SnapshotStore,
    SnapshotWriter,
    decode_record,
    encode_record,
    load_analytics,
    load_positions,
)
from pump_recovery_bot.execution.position import Position
from pump_recovery_bot.monitoring.event_bus import Event, EventBus, EventType, PositionClosed, TokenAdded
from pump_recovery_bot.utils.errors import PersistenceFailure, SnapshotCorruption

FAST_RETRY = PersistenceConfig(max_write_attempts=2, retry_backoff_min_seconds=0.0, retry_backoff_max_seconds=0.0)


def _positions_snapshot() -> PositionsSnapshot:
    position = Position("MintA", size=0.5, entry_price=0.1, entry_time=1_000, slippage=0.02)
    position.open()
    position.update_price(0.18, timestamp=2_000)
    position.apply_exit(0.3, execution_price=0.17, reason="TAKE_PROFIT_1", timestamp=2_500, tier=1)
    return PositionsSnapshot(active=position.to_record(), wallet=WalletRecord(balance_sol=2.5, total_trades=3))


def test_snapshot_round_trip_is_byte_identical(tmp_path: Path) -> None:
    store = SnapshotStore(tmp_path / "positions.snapshot", POSITIONS_KIND, FAST_RETRY)
    snapshot = _positions_snapshot()

    written = store.save(snapshot.to_dict())
    loaded = load_positions(store)

    assert loaded == snapshot
    assert store.save(loaded.to_dict()) == written
    assert store.path.read_bytes() == written
    assert int.from_bytes(written[:4], "big") == len(written) - 4
    assert not (tmp_path / "positions.snapshot.tmp").exists()


def test_decode_rejects_damaged_records() -> None:
    data = encode_record(POSITIONS_KIND, {"active": None})

    with pytest.raises(SnapshotCorruption):
        decode_record(data[:2])
    with pytest.raises(SnapshotCorruption):
        decode_record(data[:-1])
    with pytest.raises(SnapshotCorruption):
        decode_record(len(b"not json").to_bytes(4, "big") + b"not json")
    assert decode_record(data) == (POSITIONS_KIND, 1, {"active": None})


def test_load_rejects_wrong_kind_and_invalid_payload(tmp_path: Path) -> None:
    path = tmp_path / "analytics.snapshot"
    path.write_bytes(encode_record(POSITIONS_KIND, {}))
    with pytest.raises(SnapshotCorruption):
        load_analytics(SnapshotStore(path, ANALYTICS_KIND, FAST_RETRY))

    path.write_bytes(encode_record(ANALYTICS_KIND, {"unknown_field": 1}))
    with pytest.raises(SnapshotCorruption):
        load_analytics(SnapshotStore(path, ANALYTICS_KIND, FAST_RETRY))

    assert load_positions(SnapshotStore(tmp_path / "missing.snapshot", POSITIONS_KIND, FAST_RETRY)) is None


def test_save_raises_persistence_failure_after_retries(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    store = SnapshotStore(blocker / "positions.snapshot", POSITIONS_KIND, FAST_RETRY)

    with pytest.raises(PersistenceFailure):
        store.save({"active": None})


def test_writer_flushes_latest_snapshots(tmp_path: Path) -> None:
    positions = SnapshotStore(tmp_path / "positions.snapshot", POSITIONS_KIND, FAST_RETRY)
    analytics_store = SnapshotStore(tmp_path / "analytics.snapshot", ANALYTICS_KIND, FAST_RETRY)
    writer = SnapshotWriter(positions, analytics_store)
    analytics = TradingAnalytics(PersistenceConfig(latency_sample_cap=2))
    for latency in (5.0, 6.0, 7.0):
        analytics.record_latency(TRADE_EXECUTION, latency)

    async def scenario() -> None:
        await writer.start()
        writer.submit(PositionsSnapshot(wallet=WalletRecord(balance_sol=9.0)))
        writer.submit(_positions_snapshot())
        writer.submit(analytics.to_snapshot())
        await writer.stop()

    asyncio.run(scenario())

    assert load_positions(positions) == _positions_snapshot()
    restored = TradingAnalytics(PersistenceConfig(latency_sample_cap=2))
    restored.restore(load_analytics(analytics_store))
    assert restored.latencies(TRADE_EXECUTION) == [6.0, 7.0]


def test_writer_reports_failures_on_the_bus(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("x")
    bus = EventBus()
    errors: List[Event] = []
    bus.subscribe(EventType.ERROR, errors.append)
    writer = SnapshotWriter(
        SnapshotStore(blocker / "positions.snapshot", POSITIONS_KIND, FAST_RETRY),
        SnapshotStore(tmp_path / "analytics.snapshot", ANALYTICS_KIND, FAST_RETRY),
        bus=bus,
    )
    writer.submit(PositionsSnapshot())
    asyncio.run(writer.flush())

    assert bus.flush()
    bus.close()
    assert [event.payload.kind for event in errors] == ["persistence_failure"]


def test_journal_records_trade_events_and_rotates(tmp_path: Path) -> None:
    fixed = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    journal = TradeJournal(tmp_path / "logs", max_bytes=1_024, clock=lambda: fixed)
    closed = PositionClosed(
        mint="MintA",
        reason="STOP_LOSS",
        exit_price=0.09,
        realized_pnl_sol=-0.05,
        realized_pnl_usd=-5.0,
        hold_time_ms=60_000,
        timestamp=61_000,
    )

    for _ in range(12):
        journal.handle_event(Event(type=EventType.POSITION_CLOSED, payload=closed))
    journal.handle_event(
        Event(
            type=EventType.TOKEN_ADDED,
            payload=TokenAdded(mint="MintB", symbol="B", name="B", market_cap_sol=30.0, created_at=0),
        )
    )

    current = journal.current_path()
    assert current.name == "trades-2024-05-01.jsonl"
    rotated = sorted(path.name for path in (tmp_path / "logs").iterdir() if path != current)
    assert rotated and rotated[0].startswith("trades-2024-05-01.20240501T120000")
    lines = current.read_text().splitlines()
    entry = json.loads(lines[-1])
    assert entry["kind"] == "position_closed"
    assert entry["mint"] == "MintA"
    assert all("MintB" not in path.read_text() for path in (tmp_path / "logs").iterdir())
