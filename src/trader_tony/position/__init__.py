"""
Position lifecycle: models, exit evaluation, scale-in planning, the
position manager and the tick-driven monitor.

PositionManager and PositionMonitor live in trader_tony.position.manager and
trader_tony.position.monitor; only models and errors are re-exported here.
"""

from trader_tony.position.errors import (
    ConcurrencyViolation,
    EntryRejectedError,
    InvalidInputError,
    PriceUnavailableError,
    StorageCorruptionError,
    TradeExecutionError,
    TraderError,
)
from trader_tony.position.models import (
    Action,
    ActionType,
    ExitReason,
    ExitRules,
    PartialProfitLevel,
    Position,
    PositionStatus,
    ScaleInPhase,
    ScaleInPlan,
    TrailingStopRule,
)


__all__ = [
    # Models
    "Action",
    "ActionType",
    "ExitReason",
    "ExitRules",
    "PartialProfitLevel",
    "Position",
    "PositionStatus",
    "ScaleInPhase",
    "ScaleInPlan",
    "TrailingStopRule",
    # Errors
    "ConcurrencyViolation",
    "EntryRejectedError",
    "InvalidInputError",
    "PriceUnavailableError",
    "StorageCorruptionError",
    "TradeExecutionError",
    "TraderError",
]
