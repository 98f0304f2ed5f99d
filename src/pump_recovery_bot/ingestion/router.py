"""Event router: validates feed records and serialises work per mint."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from ..monitoring.event_bus import ErrorRaised, EventBus, EventSeverity
from ..monitoring.logger import correlation_scope, get_logger
from ..monitoring.metrics import MetricsRegistry
from ..utils.errors import BotError, MalformedEvent
from .events import CreateEvent, TradeEvent, parse_feed_record
from .feed import FeedItem, FeedQueue
from .token_registry import TokenRegistry

TradeHandler = Callable[[TradeEvent, float], Awaitable[None]]
CreateHandler = Callable[[CreateEvent], None]


@dataclass(slots=True)
class _MintWorker:
    queue: "asyncio.Queue[Tuple[TradeEvent, float]]"
    task: "asyncio.Task[None]"


class EventRouter:
    """Pulls records off the feed queue and hands them to per-mint workers.

    Each mint gets its own worker task and FIFO, so trades for one mint apply
    strictly in arrival order while different mints proceed concurrently. Any
    error raised while handling a trade stays inside that mint's worker.
    """

    def __init__(
        self,
        feed: FeedQueue,
        registry: TokenRegistry,
        on_trade: TradeHandler,
        *,
        on_create: Optional[CreateHandler] = None,
        bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._feed = feed
        self._registry = registry
        self._on_trade = on_trade
        self._on_create = on_create
        self._bus = bus
        self._metrics = metrics
        self._workers: Dict[str, _MintWorker] = {}
        self._accepting = True
        self._task: Optional[asyncio.Task[None]] = None
        self._logger = get_logger(__name__)

    @property
    def accepting(self) -> bool:
        return self._accepting

    def active_mints(self) -> List[str]:
        return list(self._workers)

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="event-router")

    async def run(self) -> None:
        """Consume the feed queue until it is closed and drained."""

        while True:
            item = await self._feed.get()
            if item is None:
                return
            if not self._accepting:
                continue
            self.dispatch(item)

    def dispatch(self, item: FeedItem) -> None:
        try:
            event = parse_feed_record(item.record)
        except MalformedEvent as exc:
            self._count("events.malformed")
            self._logger.warning("Dropping malformed feed record: %s", exc, extra=exc.context)
            return
        if isinstance(event, CreateEvent):
            self._handle_create(event)
            return
        if not self._registry.is_known(event.mint):
            self._count("events.unknown_mint")
            return
        worker = self._workers.get(event.mint)
        if worker is None:
            worker = self._spawn(event.mint)
        worker.queue.put_nowait((event, item.received_at))

    def _handle_create(self, event: CreateEvent) -> None:
        self._count("events.create")
        with correlation_scope(event.mint):
            if self._registry.admit(event) is None:
                return
            if self._on_create is not None:
                try:
                    self._on_create(event)
                except BotError as exc:
                    self._report(event.mint, exc)

    def _spawn(self, mint: str) -> _MintWorker:
        queue: "asyncio.Queue[Tuple[TradeEvent, float]]" = asyncio.Queue()
        task = asyncio.create_task(self._work(mint, queue), name=f"mint-{mint}")
        worker = _MintWorker(queue=queue, task=task)
        self._workers[mint] = worker
        return worker

    async def _work(self, mint: str, queue: "asyncio.Queue[Tuple[TradeEvent, float]]") -> None:
        with correlation_scope(mint):
            while True:
                event, received_at = await queue.get()
                try:
                    await self._on_trade(event, received_at)
                except BotError as exc:
                    self._report(mint, exc)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001 - errors never cross the per-mint boundary
                    self._logger.exception("Unhandled error processing %s", mint, extra={"mint": mint})
                    self._report(mint, BotError(str(exc), context={"mint": mint}))
                finally:
                    queue.task_done()
                    if self._metrics:
                        self._metrics.observe("router.handle_seconds", time.monotonic() - received_at)

    def _report(self, mint: str, exc: BotError) -> None:
        self._count(f"router.errors.{exc.kind}")
        context = {"mint": mint, **exc.context}
        if exc.routine:
            self._logger.info("%s on %s: %s", exc.kind, mint, exc, extra={"kind": exc.kind})
        else:
            self._logger.error("Error handling %s: %s", mint, exc, extra={"kind": exc.kind})
        if self._bus:
            self._bus.publish(
                ErrorRaised(kind=exc.kind, message=str(exc), context=context),
                severity=EventSeverity.INFO if exc.routine else EventSeverity.ERROR,
                correlation_id=mint,
            )

    def _count(self, name: str) -> None:
        if self._metrics:
            self._metrics.increment(name)

    async def wait_drained(self) -> None:
        """Wait for the feed to close and every routed trade to be handled."""

        if self._task is not None:
            await self._task
        for worker in list(self._workers.values()):
            await worker.queue.join()

    async def retire(self, mint: str) -> None:
        """Stop the worker for ``mint`` after its pending trades are handled."""

        worker = self._workers.pop(mint, None)
        if worker is None:
            return
        await worker.queue.join()
        worker.task.cancel()
        try:
            await worker.task
        except asyncio.CancelledError:
            pass

    async def shutdown(self, deadline: float) -> bool:
        """Stop accepting, drain in-flight mints within ``deadline`` seconds, then cancel.

        Returns True when every worker drained before the deadline.
        """

        self._accepting = False
        self._feed.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        workers = list(self._workers.values())
        drained = True
        if workers:
            joins = [asyncio.ensure_future(worker.queue.join()) for worker in workers]
            _, pending = await asyncio.wait(joins, timeout=max(deadline, 0.0))
            drained = not pending
            for join in pending:
                join.cancel()
            if not drained:
                self._logger.warning("Shutdown deadline reached with %d mints still busy", len(pending))
        for worker in workers:
            worker.task.cancel()
        for worker in workers:
            try:
                await worker.task
            except asyncio.CancelledError:
                pass
        self._workers.clear()
        return drained


__all__ = ["EventRouter"]
