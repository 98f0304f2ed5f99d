"""Crash-safe snapshot files and the background snapshot writer."""

from __future__ import annotations

import asyncio
import json
import os
import struct
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from tenacity import RetryError, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config.settings import PersistenceConfig, get_app_config
from ..monitoring.event_bus import ErrorRaised, EventBus, EventSeverity
from ..monitoring.logger import get_logger
from ..monitoring.metrics import MetricsRegistry
from ..utils.errors import PersistenceFailure, SnapshotCorruption
from .schemas import (
    ANALYTICS_KIND,
    POSITIONS_KIND,
    SNAPSHOT_VERSION,
    AnalyticsSnapshot,
    PositionsSnapshot,
)

_LENGTH = struct.Struct(">I")

Snapshot = Union[PositionsSnapshot, AnalyticsSnapshot]


def encode_record(kind: str, payload: Dict[str, Any], *, version: int = SNAPSHOT_VERSION) -> bytes:
    """Frame ``payload`` as a 4-byte big-endian length followed by canonical JSON."""

    body = json.dumps(
        {"kind": kind, "version": version, "payload": payload},
        sort_keys=True,
        separators=(",", ":"),
        allow_nan=False,
    ).encode("utf-8")
    return _LENGTH.pack(len(body)) + body


def decode_record(data: bytes) -> Tuple[str, int, Dict[str, Any]]:
    if len(data) < _LENGTH.size:
        raise SnapshotCorruption("snapshot shorter than its length prefix", context={"size": len(data)})
    (length,) = _LENGTH.unpack_from(data)
    body = data[_LENGTH.size :]
    if len(body) != length:
        raise SnapshotCorruption(
            "snapshot length prefix does not match body",
            context={"expected": length, "actual": len(body)},
        )
    try:
        document = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SnapshotCorruption(f"snapshot body is not valid JSON: {exc}") from exc
    if not isinstance(document, dict) or not {"kind", "version", "payload"} <= document.keys():
        raise SnapshotCorruption("snapshot record is missing kind/version/payload")
    payload = document["payload"]
    if not isinstance(payload, dict):
        raise SnapshotCorruption("snapshot payload must be an object")
    return str(document["kind"]), int(document["version"]), payload


class SnapshotStore:
    """One snapshot file written atomically via temp file + fsync + rename."""

    def __init__(
        self,
        path: Path,
        kind: str,
        config: Optional[PersistenceConfig] = None,
    ) -> None:
        self._path = Path(path)
        self._kind = kind
        self._config = config or get_app_config().persistence
        self._logger = get_logger(__name__)
        self._write_with_retry = retry(
            wait=wait_exponential(
                multiplier=self._config.retry_backoff_min_seconds,
                min=self._config.retry_backoff_min_seconds,
                max=self._config.retry_backoff_max_seconds,
            ),
            stop=stop_after_attempt(self._config.max_write_attempts),
            retry=retry_if_exception_type(OSError),
        )(self._write_once)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def kind(self) -> str:
        return self._kind

    def save(self, payload: Dict[str, Any]) -> bytes:
        """Persist ``payload`` and return the bytes written."""

        data = encode_record(self._kind, payload)
        try:
            self._write_with_retry(data)
        except RetryError as exc:
            cause = exc.last_attempt.exception()
            raise PersistenceFailure(
                f"failed to write {self._path} after {self._config.max_write_attempts} attempts: {cause}",
                context={"path": str(self._path)},
            ) from cause
        return data

    def load(self) -> Optional[Dict[str, Any]]:
        if not self._path.exists():
            return None
        data = self._path.read_bytes()
        kind, version, payload = decode_record(data)
        if kind != self._kind:
            raise SnapshotCorruption(
                f"expected {self._kind} snapshot, found {kind}", context={"path": str(self._path)}
            )
        if version > SNAPSHOT_VERSION:
            raise SnapshotCorruption(
                f"unsupported snapshot version {version}", context={"path": str(self._path)}
            )
        return payload

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)

    def _write_once(self, data: bytes) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        with tmp_path.open("wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self._path)


def load_positions(store: SnapshotStore) -> Optional[PositionsSnapshot]:
    payload = store.load()
    if payload is None:
        return None
    try:
        return PositionsSnapshot.from_dict(payload)
    except (TypeError, KeyError, ValueError) as exc:
        raise SnapshotCorruption(f"invalid positions snapshot: {exc}", context={"path": str(store.path)}) from exc


def load_analytics(store: SnapshotStore) -> Optional[AnalyticsSnapshot]:
    payload = store.load()
    if payload is None:
        return None
    try:
        return AnalyticsSnapshot.from_dict(payload)
    except (TypeError, KeyError, ValueError) as exc:
        raise SnapshotCorruption(f"invalid analytics snapshot: {exc}", context={"path": str(store.path)}) from exc


class SnapshotWriter:
    """Dedicated task that owns the snapshot files.

    Callers :meth:`submit` snapshots; only the latest pending snapshot per kind
    is written. Disk I/O runs in a worker thread so the event loop never blocks.
    """

    def __init__(
        self,
        positions: SnapshotStore,
        analytics: SnapshotStore,
        *,
        bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._stores: Dict[str, SnapshotStore] = {
            POSITIONS_KIND: positions,
            ANALYTICS_KIND: analytics,
        }
        self._bus = bus
        self._metrics = metrics
        self._pending: Dict[str, Dict[str, Any]] = {}
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._write_lock: Optional[asyncio.Lock] = None
        self._logger = get_logger(__name__)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(self, snapshot: Snapshot) -> None:
        kind = POSITIONS_KIND if isinstance(snapshot, PositionsSnapshot) else ANALYTICS_KIND
        self._pending[kind] = snapshot.to_dict()
        if self._wakeup is not None:
            self._wakeup.set()

    async def start(self) -> None:
        if self.running:
            return
        self._wakeup = asyncio.Event()
        self._write_lock = asyncio.Lock()
        if self._pending:
            self._wakeup.set()
        self._task = asyncio.create_task(self._run(self._wakeup), name="snapshot-writer")

    async def stop(self) -> None:
        """Stop the writer task and flush whatever is still pending."""

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()

    async def flush(self) -> None:
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        async with self._write_lock:
            pending, self._pending = self._pending, {}
            try:
                for kind, payload in list(pending.items()):
                    await self._write(kind, payload)
                    del pending[kind]
            finally:
                # Requeue whatever a cancellation interrupted; newer submissions win.
                for kind, payload in pending.items():
                    self._pending.setdefault(kind, payload)

    async def _run(self, wakeup: asyncio.Event) -> None:
        while True:
            await wakeup.wait()
            wakeup.clear()
            await self.flush()

    async def _write(self, kind: str, payload: Dict[str, Any]) -> None:
        store = self._stores[kind]
        try:
            await asyncio.to_thread(store.save, payload)
        except PersistenceFailure as exc:
            self._report(exc)
            return
        if self._metrics:
            self._metrics.increment(f"snapshots.{kind}")

    def _report(self, exc: PersistenceFailure) -> None:
        self._logger.error("Snapshot write failed: %s", exc, extra=exc.context)
        if self._bus:
            self._bus.publish(
                ErrorRaised(kind=exc.kind, message=str(exc), context=dict(exc.context)),
                severity=EventSeverity.ERROR,
            )


__all__ = [
    "SnapshotStore",
    "SnapshotWriter",
    "decode_record",
    "encode_record",
    "load_analytics",
    "load_positions",
]
