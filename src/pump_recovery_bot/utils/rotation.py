"""Size-based file rotation shared by the log file and the trade journal."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class RotationPolicy:
    """Cap a file at ``max_bytes`` and move it aside with a timestamp suffix."""

    max_bytes: int
    clock: Clock = utc_clock

    def should_rotate(self, path: Path) -> bool:
        try:
            return path.stat().st_size >= self.max_bytes
        except FileNotFoundError:
            return False

    def rotated_name(self, path: Path) -> Path:
        stamp = self.clock().strftime("%Y%m%dT%H%M%S")
        candidate = path.with_name(f"{path.stem}.{stamp}{path.suffix}")
        counter = 1
        while candidate.exists():
            candidate = path.with_name(f"{path.stem}.{stamp}-{counter}{path.suffix}")
            counter += 1
        return candidate

    def rotate(self, path: Path) -> Optional[Path]:
        """Rename ``path`` aside; returns the new location or ``None`` if absent."""

        if not path.exists():
            return None
        target = self.rotated_name(path)
        path.rename(target)
        return target


__all__ = ["Clock", "RotationPolicy", "utc_clock"]
