"""Entrypoint for the pump recovery trading agent."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterator, List, Optional

from .analysis.traders import TraderBook
from .analytics.performance import TradingAnalytics
from .config.settings import (
    CONFIG_FILE_ENV_VAR,
    MODE_ENV_VAR,
    AppConfig,
    AppMode,
    ConfigStore,
    get_app_config,
)
from .datalake.journal import TradeJournal
from .datalake.schemas import ANALYTICS_KIND, POSITIONS_KIND
from .datalake.storage import SnapshotStore, SnapshotWriter, load_analytics, load_positions
from .execution.position_manager import PositionManager
from .execution.simulator import TransactionSimulator
from .execution.wallet import Wallet
from .ingestion.feed import FeedQueue, SubscriptionSet
from .ingestion.pumpportal import PumpPortalFeed, ReplayFeed
from .ingestion.router import EventRouter
from .ingestion.sol_price import SolPriceOracle
from .ingestion.token_registry import TokenRegistry
from .monitoring import Observability, bootstrap_observability
from .monitoring.logger import get_logger
from .monitoring.metrics import MetricsRegistry
from .strategy import ExitEngine, MissedOpportunityTracker, SafetyChecker, TradingCoordinator
from .utils.constants import now_ms
from .utils.errors import PersistenceFailure, SnapshotCorruption

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FATAL = 2


@contextmanager
def timed_phase(phase: str, metrics: MetricsRegistry) -> Iterator[None]:
    """Record how long a run phase (restore, replay, final snapshot) took, in seconds."""

    started = time.monotonic()
    try:
        yield
    finally:
        metrics.observe(f"run.{phase}.seconds", time.monotonic() - started)
        metrics.increment(f"run.{phase}.count")


@dataclass(slots=True)
class TradingRuntime:
    """Every long-lived component of one run, wired together."""

    config_store: ConfigStore
    observability: Observability
    sol_price: SolPriceOracle
    subscriptions: SubscriptionSet
    feed_queue: FeedQueue
    registry: TokenRegistry
    simulator: TransactionSimulator
    wallet: Wallet
    analytics: TradingAnalytics
    positions: PositionManager
    safety: SafetyChecker
    missed: MissedOpportunityTracker
    coordinator: TradingCoordinator
    router: EventRouter
    positions_store: Optional[SnapshotStore] = None
    analytics_store: Optional[SnapshotStore] = None
    writer: Optional[SnapshotWriter] = None
    journal: Optional[TradeJournal] = None

    @property
    def config(self) -> AppConfig:
        return self.config_store.current


def build_runtime(
    config: AppConfig,
    *,
    persist: bool = True,
    observability: Optional[Observability] = None,
    simulator: Optional[TransactionSimulator] = None,
) -> TradingRuntime:
    """Construct and wire the trading pipeline for ``config``."""

    obs = observability or bootstrap_observability(config)
    bus, metrics = obs.bus, obs.metrics
    store = ConfigStore(config)

    positions_store = analytics_store = None
    writer = None
    journal = None
    if persist:
        persistence = config.persistence
        positions_store = SnapshotStore(persistence.positions_path, POSITIONS_KIND, persistence)
        analytics_store = SnapshotStore(persistence.analytics_path, ANALYTICS_KIND, persistence)
        writer = SnapshotWriter(positions_store, analytics_store, bus=bus, metrics=metrics)
        journal = TradeJournal(persistence.journal_dir, max_bytes=persistence.max_journal_bytes)
        bus.subscribe(None, journal.handle_event)

    sol_price = SolPriceOracle(config.sol_price)
    subscriptions = SubscriptionSet()
    feed_queue = FeedQueue(config.feed.max_queue_size, metrics=metrics)
    registry = TokenRegistry(
        subscriptions=subscriptions,
        sol_price=sol_price,
        config=config.registry,
        thresholds=config.thresholds,
        pump_config=config.safety.pump_detection,
        traders=TraderBook(config.safety.trader_analysis, metrics=metrics),
        bus=bus,
        metrics=metrics,
    )
    feed_queue.set_protection(registry.is_protected)
    simulator = simulator or TransactionSimulator(config.transaction.simulation_mode, metrics=metrics)
    wallet = Wallet(config.wallet, bus=bus)
    analytics = TradingAnalytics(config.persistence, metrics=metrics)
    positions = PositionManager(
        wallet=wallet,
        simulator=simulator,
        registry=registry,
        sol_price=sol_price,
        exit_engine=ExitEngine(config.exit_strategies),
        config=config.position,
        manager_config=config.position_manager,
        analytics=analytics,
        snapshots=writer,
        bus=bus,
        metrics=metrics,
    )
    safety = SafetyChecker(config.safety, metrics=metrics)
    missed = MissedOpportunityTracker(
        config.safety.missed_opportunity,
        position_config=config.position,
        bus=bus,
        metrics=metrics,
    )
    coordinator = TradingCoordinator(
        registry=registry,
        positions=positions,
        safety=safety,
        missed=missed,
        sol_price=sol_price,
        analytics=analytics,
        bus=bus,
        metrics=metrics,
    )
    router = EventRouter(
        feed_queue,
        registry,
        coordinator.on_trade,
        on_create=coordinator.on_create,
        bus=bus,
        metrics=metrics,
    )

    def _reconfigure_execution(previous: AppConfig, new: AppConfig) -> None:
        simulator.reconfigure(new.transaction.simulation_mode)

    store.subscribe(coordinator.apply_config)
    store.subscribe(_reconfigure_execution)

    return TradingRuntime(
        config_store=store,
        observability=obs,
        sol_price=sol_price,
        subscriptions=subscriptions,
        feed_queue=feed_queue,
        registry=registry,
        simulator=simulator,
        wallet=wallet,
        analytics=analytics,
        positions=positions,
        safety=safety,
        missed=missed,
        coordinator=coordinator,
        router=router,
        positions_store=positions_store,
        analytics_store=analytics_store,
        writer=writer,
        journal=journal,
    )


def restore_state(runtime: TradingRuntime) -> None:
    """Load persisted analytics and positions; raises :class:`SnapshotCorruption`."""

    if runtime.positions_store is None or runtime.analytics_store is None:
        return
    if runtime.config.position_manager.clear_on_startup:
        runtime.positions_store.clear()
        runtime.analytics_store.clear()
        logger.info("Cleared persisted snapshots on startup")
        return
    analytics = load_analytics(runtime.analytics_store)
    if analytics is not None:
        runtime.analytics.restore(analytics)
    positions = load_positions(runtime.positions_store)
    if positions is not None:
        runtime.positions.restore(positions)


def emergency_flush(runtime: TradingRuntime) -> Optional[Path]:
    """Write the in-memory analytics next to the regular snapshot before a fatal exit."""

    if runtime.analytics_store is None:
        return None
    source = runtime.analytics_store.path
    target = source.with_name(source.name + ".emergency")
    store = SnapshotStore(target, ANALYTICS_KIND, runtime.config.persistence)
    try:
        store.save(runtime.analytics.to_snapshot().to_dict())
    except PersistenceFailure as exc:
        logger.error("Emergency analytics flush failed: %s", exc, extra=exc.context)
        return None
    logger.warning("Emergency analytics snapshot written to %s", target)
    return target


def reload_config(runtime: TradingRuntime, *, reason: str = "reload") -> AppConfig:
    """Re-read the configuration sources and apply them to the running pipeline."""

    get_app_config.cache_clear()
    try:
        config = get_app_config()
    except ValueError as exc:
        logger.error("Rejected configuration reload: %s", exc)
        return runtime.config
    runtime.config_store.apply_new_config(config, reason=reason)
    return config


async def _periodically(
    stop: asyncio.Event,
    interval: Callable[[], float],
    action: Callable[[], Awaitable[None]],
) -> None:
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=max(interval(), 0.1))
        except asyncio.TimeoutError:
            await action()


async def sweep_registry(runtime: TradingRuntime) -> List[str]:
    removed = runtime.registry.sweep()
    for mint in removed:
        await runtime.router.retire(mint)
    return removed


async def submit_snapshots(runtime: TradingRuntime, *, validate: bool = True) -> None:
    if validate:
        runtime.positions.validate_positions(now_ms())
    runtime.positions.submit_snapshot()
    if runtime.writer is not None:
        runtime.writer.submit(runtime.analytics.to_snapshot())


def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop, stop: asyncio.Event, runtime: TradingRuntime
) -> List[int]:
    installed: List[int] = []
    handlers = [(signal.SIGINT, stop.set), (signal.SIGTERM, stop.set)]
    if hasattr(signal, "SIGHUP"):
        handlers.append((signal.SIGHUP, lambda: reload_config(runtime, reason="SIGHUP")))
    for signum, handler in handlers:
        try:
            loop.add_signal_handler(signum, handler)
        except (NotImplementedError, RuntimeError, ValueError):
            logger.debug("Signal %s handler unavailable on this platform", signum)
            continue
        installed.append(signum)
    return installed


async def shutdown(runtime: TradingRuntime, background: List["asyncio.Task[None]"]) -> bool:
    """Cancel pending fills, drain the router, flush the final snapshot and close the bus."""

    cancelled = runtime.simulator.cancel_pending()
    drained = await runtime.router.shutdown(runtime.config.feed.shutdown_deadline_seconds)
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)
    with timed_phase("final_snapshot", runtime.observability.metrics):
        await submit_snapshots(runtime, validate=False)
        if runtime.writer is not None:
            await runtime.writer.stop()
    logger.info(
        "Shutdown complete (drained=%s, cancelled fills=%d)",
        drained,
        cancelled,
        extra=runtime.wallet.stats(),
    )
    runtime.observability.bus.close()
    return drained


async def run_async(
    config: AppConfig,
    *,
    replay: Optional[Path] = None,
    persist: bool = True,
    observability: Optional[Observability] = None,
    simulator: Optional[TransactionSimulator] = None,
) -> int:
    runtime = build_runtime(config, persist=persist, observability=observability, simulator=simulator)
    metrics = runtime.observability.metrics
    try:
        with timed_phase("restore", metrics):
            restore_state(runtime)
    except SnapshotCorruption as exc:
        logger.critical("Snapshot corrupted at startup: %s", exc, extra=exc.context)
        emergency_flush(runtime)
        runtime.observability.bus.close()
        return EXIT_FATAL

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = _install_signal_handlers(loop, stop, runtime)
    if runtime.writer is not None:
        await runtime.writer.start()
    await runtime.router.start()

    runtime.subscriptions.subscribe_new_tokens()
    background: List["asyncio.Task[None]"] = [
        asyncio.create_task(runtime.sol_price.run(stop), name="sol-price"),
        asyncio.create_task(
            _periodically(
                stop,
                lambda: runtime.config.registry.sweep_interval_seconds,
                lambda: sweep_registry(runtime),
            ),
            name="registry-sweep",
        ),
        asyncio.create_task(
            _periodically(
                stop,
                lambda: runtime.config.position_manager.snapshot_interval_seconds,
                lambda: submit_snapshots(runtime, validate=replay is None),
            ),
            name="snapshots",
        ),
    ]
    try:
        if replay is not None:
            feed = ReplayFeed(replay, runtime.feed_queue, metrics=metrics)
            with timed_phase("replay", metrics):
                count = await feed.run(stop)
                await runtime.router.wait_drained()
            logger.info("Replayed %d feed records", count, extra=runtime.analytics.summary())
        else:
            live_feed = PumpPortalFeed(runtime.feed_queue, runtime.subscriptions, config.feed, metrics=metrics)
            background.append(asyncio.create_task(live_feed.run(stop), name="pumpportal-feed"))
            await stop.wait()
    finally:
        stop.set()
        await shutdown(runtime, background)
        for signum in installed:
            loop.remove_signal_handler(signum)
    return EXIT_OK


def print_stats(config: AppConfig) -> int:
    """Print the persisted analytics and wallet statistics as JSON."""

    persistence = config.persistence
    try:
        analytics_snapshot = load_analytics(SnapshotStore(persistence.analytics_path, ANALYTICS_KIND, persistence))
        positions_snapshot = load_positions(SnapshotStore(persistence.positions_path, POSITIONS_KIND, persistence))
    except SnapshotCorruption as exc:
        logger.critical("Cannot read snapshots: %s", exc, extra=exc.context)
        return EXIT_FATAL
    analytics = TradingAnalytics(persistence)
    if analytics_snapshot is not None:
        analytics.restore(analytics_snapshot)
    report = {"analytics": analytics.summary(), "wallet": None, "active_position": None}
    if positions_snapshot is not None:
        if positions_snapshot.wallet is not None:
            wallet = Wallet(config.wallet)
            wallet.restore(positions_snapshot.wallet)
            report["wallet"] = wallet.stats()
        if positions_snapshot.active is not None:
            report["active_position"] = positions_snapshot.active.to_dict()
    print(json.dumps(report, indent=2, sort_keys=True, default=str))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=Path, default=None, help="Path to the TOML configuration file.")

    parser = argparse.ArgumentParser(description="Run the pump recovery trading agent")
    commands = parser.add_subparsers(dest="command")
    run_parser = commands.add_parser("run", parents=[common], help="Trade the live or replayed feed.")
    run_parser.add_argument(
        "--replay",
        type=Path,
        default=None,
        help="Replay recorded JSON-lines feed records instead of connecting to PumpPortal.",
    )
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="Do not read or write snapshots and the trade journal.",
    )
    commands.add_parser("stats", parents=[common], help="Print persisted trading statistics.")
    parser.set_defaults(command="run", config=None, replay=None, dry_run=False)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    if args.config is not None:
        os.environ[CONFIG_FILE_ENV_VAR] = str(args.config)
    if args.replay is not None:
        os.environ.setdefault(MODE_ENV_VAR, AppMode.REPLAY.value)
    get_app_config.cache_clear()
    config = get_app_config()
    if args.command == "stats":
        code = print_stats(config)
    else:
        code = asyncio.run(run_async(config, replay=args.replay, persist=not args.dry_run))
    if code != EXIT_OK:
        raise SystemExit(code)


if __name__ == "__main__":
    main()
