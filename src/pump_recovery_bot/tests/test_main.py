from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List

import pytest

from pump_recovery_bot import main as entrypoint
from pump_recovery_bot.config.settings import (
    AppConfig,
    PersistenceConfig,
    PumpDetectionConfig,
    SafetyConfig,
    SimulationModeConfig,
    SolPriceConfig,
    TransactionConfig,
)
from pump_recovery_bot.datalake.schemas import POSITIONS_KIND
from pump_recovery_bot.datalake.storage import SnapshotStore, load_positions
from pump_recovery_bot.monitoring.metrics import MetricsRegistry
from pump_recovery_bot.tests.factories import create_record, trade_record


def _config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        safety=SafetyConfig(
            min_token_age_seconds=0.0,
            min_holders=1,
            max_top_holder_concentration=100.0,
            post_pump_dump_pct=100.0,
            pump_detection=PumpDetectionConfig(min_pump_count=0),
        ),
        transaction=TransactionConfig(simulation_mode=SimulationModeConfig(enabled=False)),
        persistence=PersistenceConfig(
            data_dir=tmp_path / "data",
            journal_dir=tmp_path / "logs",
            retry_backoff_min_seconds=0.0,
            retry_backoff_max_seconds=0.0,
        ),
        sol_price=SolPriceConfig(static_price_usd=100.0),
    )


def _write_feed(path: Path, records: List[Dict[str, Any]]) -> Path:
    path.write_text("".join(json.dumps(record) + "\n" for record in records))
    return path


def _recovery_trade_feed(path: Path) -> Path:
    return _write_feed(
        path,
        [
            create_record("MintA"),
            trade_record("MintA", timestamp=1_000, v_sol=130.0, trader="pumper"),
            trade_record("MintA", timestamp=2_000, v_sol=91.0, trader="dumper"),
            trade_record("MintA", timestamp=3_000, v_sol=101.0, trader="dipbuyer"),
            trade_record("MintA", timestamp=5_000, v_sol=200.0, trader="chaser"),
            trade_record("MintA", timestamp=6_000, v_sol=80.0, side="sell", trader="chaser", new_balance=0.0),
        ],
    )


def test_replay_enters_and_exits_a_recovering_token(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config = _config(tmp_path)
    feed = _recovery_trade_feed(tmp_path / "feed.jsonl")

    code = asyncio.run(entrypoint.run_async(config, replay=feed))

    assert code == entrypoint.EXIT_OK
    store = SnapshotStore(config.persistence.positions_path, POSITIONS_KIND, config.persistence)
    snapshot = load_positions(store)
    assert snapshot.active is None
    assert snapshot.wallet.total_trades == 1
    assert snapshot.wallet.total_pnl_sol > 0
    assert snapshot.wallet.balance_sol == pytest.approx(3.0 + snapshot.wallet.total_pnl_sol)
    assert snapshot.wallet.winning_trades == 1

    journal_entries = [
        json.loads(line)
        for path in sorted((tmp_path / "logs").glob("trades-*.jsonl"))
        for line in path.read_text().splitlines()
    ]
    assert [entry["kind"] for entry in journal_entries] == ["position_opened", "partial_exit", "position_closed"]
    assert journal_entries[-1]["reason"] == "STOP_LOSS"
    assert config.persistence.analytics_path.exists()

    assert entrypoint.print_stats(config) == entrypoint.EXIT_OK
    report = json.loads(capsys.readouterr().out)
    assert report["wallet"]["total_trades"] == 1
    assert report["active_position"] is None


def test_dry_run_writes_nothing(tmp_path: Path) -> None:
    config = _config(tmp_path)
    feed = _recovery_trade_feed(tmp_path / "feed.jsonl")

    assert asyncio.run(entrypoint.run_async(config, replay=feed, persist=False)) == entrypoint.EXIT_OK

    assert not (tmp_path / "data").exists()
    assert not (tmp_path / "logs").exists()


def test_corrupt_snapshot_exits_with_emergency_flush(tmp_path: Path) -> None:
    config = _config(tmp_path)
    config.persistence.positions_path.parent.mkdir(parents=True)
    config.persistence.positions_path.write_bytes(b"\x00\x00\x00\x09garbage!!")
    feed = _write_feed(tmp_path / "feed.jsonl", [create_record("MintA")])

    code = asyncio.run(entrypoint.run_async(config, replay=feed))

    assert code == entrypoint.EXIT_FATAL
    emergency = config.persistence.analytics_path.with_name("analytics.snapshot.emergency")
    assert emergency.exists()
    assert entrypoint.print_stats(config) == entrypoint.EXIT_FATAL


def test_parser_defaults_to_run() -> None:
    parser = entrypoint.build_parser()

    args = parser.parse_args([])
    assert (args.command, args.replay, args.dry_run, args.config) == ("run", None, False, None)

    args = parser.parse_args(["run", "--replay", "feed.jsonl", "--dry-run"])
    assert args.replay == Path("feed.jsonl")
    assert args.dry_run

    args = parser.parse_args(["stats", "--config", "app.toml"])
    assert (args.command, args.config) == ("stats", Path("app.toml"))


def test_reload_config_applies_new_thresholds(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runtime = entrypoint.build_runtime(_config(tmp_path), persist=False)
    config_path = tmp_path / "app.toml"
    config_path.write_text("[default.SAFETY]\nMIN_HOLDERS = 40\n\n[default.THRESHOLDS]\nHEATING_UP_USD = 8000\n")
    monkeypatch.setenv("APP_CONFIG_FILE", str(config_path))

    reloaded = entrypoint.reload_config(runtime)

    assert reloaded.safety.min_holders == 40
    assert runtime.config is reloaded
    assert runtime.safety.config.min_holders == 40
    assert runtime.registry.thresholds.heating_up_usd == 8_000.0
    runtime.observability.bus.close()


def test_timed_phase_records_duration_even_on_failure() -> None:
    metrics = MetricsRegistry()

    with entrypoint.timed_phase("replay", metrics):
        pass
    with pytest.raises(RuntimeError):
        with entrypoint.timed_phase("replay", metrics):
            raise RuntimeError("feed vanished")

    assert metrics.get("run.replay.count") == 2
    assert len(metrics.samples("run.replay.seconds")) == 2


def test_live_mode_runs_the_websocket_feed(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    started: List[List[Dict[str, Any]]] = []

    class StubFeed:
        def __init__(self, queue, subscriptions, config, *, metrics=None) -> None:
            self.subscriptions = subscriptions

        async def run(self, stop: asyncio.Event) -> None:
            started.append(self.subscriptions.resubscribe_messages())
            stop.set()

    monkeypatch.setattr(entrypoint, "PumpPortalFeed", StubFeed)

    assert asyncio.run(entrypoint.run_async(_config(tmp_path), persist=False)) == entrypoint.EXIT_OK
    assert started == [[{"method": "subscribeNewToken"}]]
