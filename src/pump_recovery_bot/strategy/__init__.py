"""Strategy package exports."""

from .coordinator import TradingCoordinator
from .exits import ExitContext, ExitDecision, ExitEngine, ExitReason
from .missed_opportunities import MissedOpportunity, MissedOpportunityTracker
from .safety import FailedCheck, SafetyChecker, SafetyPhase, SafetyResult
from .sizing import calculate_position_size

__all__ = [
    "ExitContext",
    "ExitDecision",
    "ExitEngine",
    "ExitReason",
    "FailedCheck",
    "MissedOpportunity",
    "MissedOpportunityTracker",
    "SafetyChecker",
    "SafetyPhase",
    "SafetyResult",
    "TradingCoordinator",
    "calculate_position_size",
]
