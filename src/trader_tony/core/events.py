"""
Event definitions for the position engine.

Events are plain dataclasses published on the EventBus by the position
manager and the strategy trader. Notification and bookkeeping handlers
subscribe to them by class.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


# ============================================================================
# Base Event Classes
# ============================================================================

@dataclass
class Event:
    """Base class for all events."""
    timestamp: datetime
    metadata: Dict[str, Any]

    @property
    def event_name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        data = {
            key: value for key, value in self.__dict__.items()
            if key not in ("timestamp", "metadata")
        }
        data["event"] = self.event_name
        data["timestamp"] = self.timestamp.isoformat()
        if self.metadata:
            data["metadata"] = self.metadata
        return data


# ============================================================================
# Position Events
# ============================================================================

@dataclass
class PositionOpened(Event):
    """Entry buy completed and the position is under monitoring."""
    position_id: str
    token_id: str
    entry_price: float
    amount: float
    quote_amount: float
    strategy_id: Optional[str] = None
    tx_ref: Optional[str] = None


@dataclass
class PositionClosed(Event):
    """Position fully closed (amount_remaining reached zero)."""
    position_id: str
    token_id: str
    entry_price: float
    cost_basis: float
    exit_price: float
    amount: float
    exit_reason: str
    realized_pnl_pct: float
    realized_profit: float
    hold_duration_seconds: float
    strategy_id: Optional[str] = None
    tx_ref: Optional[str] = None


@dataclass
class PartialCloseExecuted(Event):
    """A partial profit level was sold."""
    position_id: str
    token_id: str
    level_id: str
    amount_sold: float
    price: float
    quote_received: float
    amount_remaining: float
    strategy_id: Optional[str] = None
    tx_ref: Optional[str] = None


@dataclass
class ScaleInExecuted(Event):
    """A scale-in phase was bought."""
    position_id: str
    token_id: str
    phase_number: int
    amount_bought: float
    price: float
    quote_spent: float
    new_cost_basis: float
    strategy_id: Optional[str] = None
    tx_ref: Optional[str] = None


# ============================================================================
# Failure Events
# ============================================================================

@dataclass
class ActionFailed(Event):
    """An action exhausted its retries and needs manual intervention."""
    position_id: str
    token_id: str
    action: str
    attempts: int
    error: str
    strategy_id: Optional[str] = None


@dataclass
class EntryFailed(Event):
    """A strategy entry buy did not complete."""
    strategy_id: str
    token_id: str
    quote_amount: float
    error: str
