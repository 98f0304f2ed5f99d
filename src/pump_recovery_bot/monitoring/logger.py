"""JSON logging with a per-mint correlation id.

Each per-token worker runs inside :func:`correlation_scope` so every line it
logs carries the mint it was handling.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ..config.settings import MonitoringConfig, get_app_config
from ..utils.rotation import RotationPolicy

NO_CORRELATION = "-"
_correlation_id: ContextVar[str] = ContextVar("correlation_id", default=NO_CORRELATION)
_RESERVED = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "correlation_id"}


class _CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = _correlation_id.get()
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record; ``extra=`` fields are nested under ``extra``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", NO_CORRELATION),
        }
        extra = {key: value for key, value in vars(record).items() if key not in _RESERVED and not key.startswith("_")}
        if extra:
            entry["extra"] = extra
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class SizeRotatingFileHandler(logging.FileHandler):
    """Appends to ``filename`` and moves it aside once it reaches ``max_bytes``."""

    def __init__(self, filename: Path, max_bytes: int) -> None:
        path = Path(filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(path, mode="a", encoding="utf-8", delay=True)
        self._path = path
        self._policy = RotationPolicy(max_bytes=max_bytes)

    def emit(self, record: logging.LogRecord) -> None:
        if self._policy.should_rotate(self._path):
            try:
                self.close()
                self._policy.rotate(self._path)
            except OSError:
                self.handleError(record)
        super().emit(record)


def configure_logging(config: Optional[MonitoringConfig] = None, *, force: bool = False) -> None:
    """Install JSON handlers on the root logger; later calls are no-ops unless ``force``."""

    root = logging.getLogger()
    if getattr(root, "_pump_configured", False) and not force:
        return
    cfg = config or get_app_config().monitoring
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if cfg.log_file is not None:
        handlers.append(SizeRotatingFileHandler(cfg.log_file, cfg.max_log_bytes))
    formatter = StructuredFormatter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_CorrelationFilter())
    for stale in list(root.handlers):
        root.removeHandler(stale)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(getattr(logging, cfg.log_level.upper(), logging.INFO))
    logging.captureWarnings(True)
    root._pump_configured = True  # type: ignore[attr-defined]


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def current_correlation_id() -> str:
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: Optional[str]) -> Iterator[None]:
    token = _correlation_id.set(correlation_id or NO_CORRELATION)
    try:
        yield
    finally:
        _correlation_id.reset(token)


__all__ = [
    "SizeRotatingFileHandler",
    "StructuredFormatter",
    "configure_logging",
    "correlation_scope",
    "current_correlation_id",
    "get_logger",
]
