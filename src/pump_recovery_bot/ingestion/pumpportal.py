"""Feed adapters: PumpPortal websocket stream and JSONL replay."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..config.settings import FeedConfig, get_app_config
from ..monitoring.logger import get_logger
from ..monitoring.metrics import MetricsRegistry
from ..utils.constants import now_ms
from .feed import FeedQueue, SubscriptionSet

Connector = Callable[..., Any]


def subscription_message(action: str, mint: Optional[str]) -> Dict[str, Any]:
    if action == "subscribe_new":
        return {"method": "subscribeNewToken"}
    if action == "subscribe":
        return {"method": "subscribeTokenTrade", "keys": [mint]}
    if action == "unsubscribe":
        return {"method": "unsubscribeTokenTrade", "keys": [mint]}
    raise ValueError(f"unknown subscription action {action!r}")


class PumpPortalFeed:
    """Streams PumpPortal create/trade records into the feed queue.

    The adapter mirrors :class:`SubscriptionSet` changes onto the socket and
    replays the full set after every reconnect.
    """

    def __init__(
        self,
        queue: FeedQueue,
        subscriptions: SubscriptionSet,
        config: Optional[FeedConfig] = None,
        *,
        metrics: Optional[MetricsRegistry] = None,
        connect: Connector = websockets.connect,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._queue = queue
        self._subscriptions = subscriptions
        self._config = config or get_app_config().feed
        self._metrics = metrics
        self._connect = connect
        self._clock = clock
        self._outbox: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self._connected = False
        self._reconnects = 0
        self._logger = get_logger(__name__)
        subscriptions.add_listener(self._on_subscription_change)

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def reconnects(self) -> int:
        return self._reconnects

    def _on_subscription_change(self, action: str, mint: Optional[str]) -> None:
        if self._connected:
            self._outbox.put_nowait(subscription_message(action, mint))

    def handle_message(self, raw: Any) -> bool:
        """Decode one socket message and enqueue it if it is a feed record."""

        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            self._count("feed.undecodable")
            self._logger.warning("Ignoring undecodable feed message")
            return False
        if not isinstance(data, dict) or "txType" not in data:
            # Subscription acknowledgements and notices.
            return False
        data.setdefault("timestamp", self._clock())
        self._count("feed.received")
        return self._queue.put_nowait(data)

    async def run(self, stop: asyncio.Event) -> None:
        """Connect, subscribe and pump messages until ``stop`` is set."""

        delay = self._config.reconnect_delay_seconds
        while not stop.is_set():
            try:
                async with self._connect(
                    self._config.url,
                    ping_interval=self._config.ping_interval_seconds,
                    ping_timeout=self._config.ping_interval_seconds,
                    close_timeout=5,
                ) as socket:
                    self._connected = True
                    self._drain_outbox()
                    for message in self._subscriptions.resubscribe_messages():
                        await socket.send(json.dumps(message))
                    self._logger.info("Connected to %s", self._config.url)
                    delay = self._config.reconnect_delay_seconds
                    await self._pump(socket, stop)
            except (ConnectionClosed, WebSocketException, OSError, asyncio.TimeoutError) as exc:
                self._logger.warning("Feed connection lost: %s", exc)
            finally:
                self._connected = False
            if stop.is_set():
                break
            self._reconnects += 1
            self._count("feed.reconnects")
            self._logger.info("Reconnecting in %.1fs (attempt %d)", delay, self._reconnects)
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            delay = min(max(delay, 0.1) * 2, self._config.max_reconnect_delay_seconds)

    async def _pump(self, socket: Any, stop: asyncio.Event) -> None:
        sender = asyncio.create_task(self._send_loop(socket))
        stopper = asyncio.create_task(stop.wait())
        try:
            while not stop.is_set():
                receiver = asyncio.ensure_future(socket.recv())
                done, _ = await asyncio.wait({receiver, stopper}, return_when=asyncio.FIRST_COMPLETED)
                if receiver not in done:
                    receiver.cancel()
                    break
                self.handle_message(receiver.result())
        finally:
            for task in (sender, stopper):
                task.cancel()
            await asyncio.gather(sender, stopper, return_exceptions=True)

    async def _send_loop(self, socket: Any) -> None:
        while True:
            message = await self._outbox.get()
            await socket.send(json.dumps(message))

    def _drain_outbox(self) -> None:
        while not self._outbox.empty():
            self._outbox.get_nowait()

    def _count(self, name: str) -> None:
        if self._metrics:
            self._metrics.increment(name)


class ReplayFeed:
    """Replays recorded JSON-lines feed records for backtests."""

    def __init__(
        self,
        path: Path,
        queue: FeedQueue,
        *,
        metrics: Optional[MetricsRegistry] = None,
        close_on_end: bool = True,
    ) -> None:
        self._path = Path(path)
        self._queue = queue
        self._metrics = metrics
        self._close_on_end = close_on_end
        self._logger = get_logger(__name__)

    async def run(self, stop: Optional[asyncio.Event] = None) -> int:
        """Feed every record into the queue; returns the number enqueued."""

        enqueued = 0
        with self._path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                if stop is not None and stop.is_set():
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except ValueError:
                    self._logger.warning("Skipping undecodable replay line %d", line_number)
                    if self._metrics:
                        self._metrics.increment("feed.undecodable")
                    continue
                await self._queue.wait_for_space()
                if self._queue.put_nowait(record):
                    enqueued += 1
                await asyncio.sleep(0)
        self._logger.info("Replay of %s finished: %d records", self._path, enqueued)
        if self._close_on_end:
            self._queue.close()
        return enqueued


__all__ = ["PumpPortalFeed", "ReplayFeed", "subscription_message"]
