"""Error kinds raised across the trading pipeline."""

from __future__ import annotations

from typing import Any, Dict, Optional


class BotError(RuntimeError):
    """Base class for recoverable pipeline errors."""

    kind = "internal"
    # Routine kinds are expected during normal operation and never alert.
    routine = False

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.context: Dict[str, Any] = dict(context or {})


class MalformedEvent(BotError):
    """A feed record is missing required fields or carries invalid values."""

    kind = "malformed_event"


class UnknownMint(BotError):
    """A trade arrived for a mint the registry never admitted."""

    kind = "unknown_mint"


class InsufficientBalance(BotError):
    kind = "insufficient_balance"


class IllegalPositionState(BotError):
    kind = "illegal_position_state"


class IllegalStateTransition(BotError):
    """A token lifecycle transition outside the transition table."""

    kind = "illegal_state_transition"


class SimulatorCancelled(BotError):
    """A simulated confirmation was cancelled by shutdown."""

    kind = "simulator_cancelled"
    routine = True


class PersistenceFailure(BotError):
    kind = "persistence_failure"


class SnapshotCorruption(BotError):
    """A snapshot file could not be decoded; fatal at startup."""

    kind = "snapshot_corruption"


class SafetyCheckError(BotError):
    kind = "safety_check_error"


__all__ = [
    "BotError",
    "IllegalPositionState",
    "IllegalStateTransition",
    "InsufficientBalance",
    "MalformedEvent",
    "PersistenceFailure",
    "SafetyCheckError",
    "SimulatorCancelled",
    "SnapshotCorruption",
    "UnknownMint",
]
