"""Bounded inbound feed queue and the durable subscription set."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Set

from ..monitoring.logger import get_logger
from ..monitoring.metrics import MetricsRegistry

ProtectionCheck = Callable[[str], bool]


@dataclass(slots=True)
class FeedItem:
    """A raw feed record stamped with its local receive time."""

    record: Mapping[str, Any]
    received_at: float = field(default_factory=time.monotonic)

    @property
    def mint(self) -> Optional[str]:
        value = self.record.get("mint") if isinstance(self.record, Mapping) else None
        return str(value) if value is not None else None

    @property
    def is_create(self) -> bool:
        return isinstance(self.record, Mapping) and str(self.record.get("txType", "")).lower() == "create"


class FeedQueue:
    """Bounded FIFO between the feed adapter and the event router.

    When full, the oldest trade for an unprotected mint is evicted to make
    room. Create records and trades for protected mints are never dropped, so
    the queue may briefly exceed ``max_size`` to hold them.
    """

    def __init__(
        self,
        max_size: int,
        *,
        is_protected: Optional[ProtectionCheck] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self._max_size = max_size
        self._items: Deque[FeedItem] = deque()
        self._is_protected = is_protected or (lambda _mint: False)
        self._metrics = metrics
        self._not_empty = asyncio.Event()
        self._not_full = asyncio.Event()
        self._closed = False
        self._dropped = 0
        self._logger = get_logger(__name__)

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def set_protection(self, check: ProtectionCheck) -> None:
        self._is_protected = check

    def __len__(self) -> int:
        return len(self._items)

    def _must_keep(self, item: FeedItem) -> bool:
        mint = item.mint
        return item.is_create or (mint is not None and self._is_protected(mint))

    def put_nowait(self, record: Mapping[str, Any], *, received_at: Optional[float] = None) -> bool:
        """Enqueue ``record``; returns False if it (or nothing) could be kept."""

        if self._closed:
            return False
        item = FeedItem(record) if received_at is None else FeedItem(record, received_at)
        if len(self._items) >= self._max_size and not self._evict_one():
            if not self._must_keep(item):
                self._record_drop(item)
                return False
        self._items.append(item)
        self._not_empty.set()
        if self._metrics:
            self._metrics.gauge("feed_queue_depth", float(len(self._items)))
        return True

    def _evict_one(self) -> bool:
        for index, candidate in enumerate(self._items):
            if not self._must_keep(candidate):
                del self._items[index]
                self._record_drop(candidate)
                return True
        return False

    def _record_drop(self, item: FeedItem) -> None:
        self._dropped += 1
        if self._metrics:
            self._metrics.increment("feed.dropped")
        self._logger.debug("Dropped feed record for %s under backpressure", item.mint)

    async def get(self) -> Optional[FeedItem]:
        """Next item, or ``None`` once the queue is closed and drained."""

        while not self._items:
            if self._closed:
                return None
            self._not_empty.clear()
            await self._not_empty.wait()
        item = self._items.popleft()
        if len(self._items) < self._max_size:
            self._not_full.set()
        if self._metrics:
            self._metrics.gauge("feed_queue_depth", float(len(self._items)))
        return item

    async def wait_for_space(self) -> None:
        """Block until the queue is below capacity (used by paced producers)."""

        while len(self._items) >= self._max_size and not self._closed:
            self._not_full.clear()
            await self._not_full.wait()

    def close(self) -> None:
        """Stop accepting records; pending ones remain readable."""

        self._closed = True
        self._not_empty.set()
        self._not_full.set()


SubscriptionListener = Callable[[str, Optional[str]], None]


class SubscriptionSet:
    """The core's view of what the feed adapter should be subscribed to.

    Listeners receive ``(action, mint)`` with action one of ``subscribe_new``,
    ``subscribe`` or ``unsubscribe``. The set survives adapter reconnects.
    """

    def __init__(self) -> None:
        self._new_tokens = False
        self._mints: Set[str] = set()
        self._listeners: List[SubscriptionListener] = []

    @property
    def new_tokens(self) -> bool:
        return self._new_tokens

    def mints(self) -> Set[str]:
        return set(self._mints)

    def __contains__(self, mint: object) -> bool:
        return mint in self._mints

    def add_listener(self, listener: SubscriptionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SubscriptionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def subscribe_new_tokens(self) -> None:
        if self._new_tokens:
            return
        self._new_tokens = True
        self._notify("subscribe_new", None)

    def subscribe_token_trades(self, mint: str) -> None:
        if mint in self._mints:
            return
        self._mints.add(mint)
        self._notify("subscribe", mint)

    def unsubscribe_token_trades(self, mint: str) -> None:
        if mint not in self._mints:
            return
        self._mints.discard(mint)
        self._notify("unsubscribe", mint)

    def resubscribe_messages(self) -> List[Dict[str, Any]]:
        """PumpPortal-style messages that rebuild the subscriptions after a reconnect."""

        messages: List[Dict[str, Any]] = []
        if self._new_tokens:
            messages.append({"method": "subscribeNewToken"})
        if self._mints:
            messages.append({"method": "subscribeTokenTrade", "keys": sorted(self._mints)})
        return messages

    def _notify(self, action: str, mint: Optional[str]) -> None:
        for listener in list(self._listeners):
            listener(action, mint)


__all__ = ["FeedItem", "FeedQueue", "SubscriptionSet"]
