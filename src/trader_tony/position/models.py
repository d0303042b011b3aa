"""
Position data models and state management.

This module defines the Position dataclass, its exit-rule and scale-in
snapshots, and the Action value the evaluators hand to the position manager.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from trader_tony.position.errors import InvalidInputError
from trader_tony.utils.time_utils import format_timestamp, now_utc, parse_timestamp


SCHEMA_VERSION = 1

# Float tolerance for fraction sums (0.2 + 0.3 + 0.5 style inputs)
FRACTION_EPSILON = 1e-9


class PositionStatus(str, Enum):
    """Position lifecycle states."""
    OPEN = "open"                          # Full amount held and monitored
    PARTIALLY_CLOSED = "partially_closed"  # Some amount sold, rest monitored
    CLOSED = "closed"                      # Nothing left, kept for history


class ExitReason(str, Enum):
    """Reason for a sell."""
    STOP_LOSS = "stop_loss"
    MAX_HOLD_TIME = "max_hold_time"
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"
    PARTIAL_TAKE_PROFIT = "partial_take_profit"
    MANUAL = "manual"


class ActionType(str, Enum):
    """Kinds of action the evaluators can request."""
    FULL_CLOSE = "full_close"
    PARTIAL_CLOSE = "partial_close"
    SCALE_IN = "scale_in"


# ============================================================================
# Exit Rules (immutable snapshot taken at position creation)
# ============================================================================

@dataclass(frozen=True)
class TrailingStopRule:
    """Trailing stop that arms once the peak crosses trigger_percent profit."""
    enabled: bool = False
    trigger_percent: float = 0.0
    distance_percent: float = 0.0

    def __post_init__(self):
        if self.trigger_percent < 0:
            raise InvalidInputError("trailing stop trigger_percent must be >= 0")
        if self.enabled and self.distance_percent <= 0:
            raise InvalidInputError("trailing stop distance_percent must be > 0 when enabled")


@dataclass(frozen=True)
class PartialProfitLevel:
    """Sell sell_fraction of the total amount once profit reaches threshold_percent."""
    threshold_percent: float
    sell_fraction: float

    def __post_init__(self):
        if self.threshold_percent <= 0:
            raise InvalidInputError("partial level threshold_percent must be > 0")
        if not 0 < self.sell_fraction <= 1:
            raise InvalidInputError("partial level sell_fraction must be in (0, 1]")

    @property
    def level_id(self) -> str:
        return f"tp_{self.threshold_percent:g}"


@dataclass(frozen=True)
class ExitRules:
    """
    Exit rule snapshot.

    Any threshold left as None is disabled. Partial levels are kept sorted by
    threshold so the evaluator can walk them lowest first.
    """
    stop_loss_percent: Optional[float] = None
    take_profit_percent: Optional[float] = None
    trailing_stop: TrailingStopRule = field(default_factory=TrailingStopRule)
    partial_profit_levels: Tuple[PartialProfitLevel, ...] = ()
    max_hold_time_seconds: Optional[float] = None

    def __post_init__(self):
        levels = tuple(sorted(self.partial_profit_levels, key=lambda lvl: lvl.threshold_percent))
        object.__setattr__(self, "partial_profit_levels", levels)

        if self.stop_loss_percent is not None and self.stop_loss_percent <= 0:
            raise InvalidInputError("stop_loss_percent must be > 0")
        if self.take_profit_percent is not None and self.take_profit_percent <= 0:
            raise InvalidInputError("take_profit_percent must be > 0")
        if self.max_hold_time_seconds is not None and self.max_hold_time_seconds <= 0:
            raise InvalidInputError("max_hold_time_seconds must be > 0")

        level_ids = [lvl.level_id for lvl in levels]
        if len(set(level_ids)) != len(level_ids):
            raise InvalidInputError("partial profit thresholds must be unique")

        total_fraction = sum(lvl.sell_fraction for lvl in levels)
        if total_fraction > 1.0 + FRACTION_EPSILON:
            raise InvalidInputError(
                f"partial profit sell fractions sum to {total_fraction:.4f} (> 1.0)"
            )

    def get_level(self, level_id: str) -> Optional[PartialProfitLevel]:
        for level in self.partial_profit_levels:
            if level.level_id == level_id:
                return level
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stop_loss_percent": self.stop_loss_percent,
            "take_profit_percent": self.take_profit_percent,
            "trailing_stop": {
                "enabled": self.trailing_stop.enabled,
                "trigger_percent": self.trailing_stop.trigger_percent,
                "distance_percent": self.trailing_stop.distance_percent,
            },
            "partial_profit_levels": [
                {"threshold_percent": lvl.threshold_percent, "sell_fraction": lvl.sell_fraction}
                for lvl in self.partial_profit_levels
            ],
            "max_hold_time_seconds": self.max_hold_time_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExitRules":
        trailing = data.get("trailing_stop") or {}
        return cls(
            stop_loss_percent=data.get("stop_loss_percent"),
            take_profit_percent=data.get("take_profit_percent"),
            trailing_stop=TrailingStopRule(
                enabled=trailing.get("enabled", False),
                trigger_percent=trailing.get("trigger_percent", 0.0),
                distance_percent=trailing.get("distance_percent", 0.0),
            ),
            partial_profit_levels=tuple(
                PartialProfitLevel(lvl["threshold_percent"], lvl["sell_fraction"])
                for lvl in data.get("partial_profit_levels", [])
            ),
            max_hold_time_seconds=data.get("max_hold_time_seconds"),
        )


# ============================================================================
# Scale-In Plan
# ============================================================================

@dataclass
class ScaleInPhase:
    """One planned averaging-down buy."""
    phase_number: int
    trigger_drop_percent: float
    size_fraction: float
    executed: bool = False
    executed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase_number": self.phase_number,
            "trigger_drop_percent": self.trigger_drop_percent,
            "size_fraction": self.size_fraction,
            "executed": self.executed,
            "executed_at": format_timestamp(self.executed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScaleInPhase":
        return cls(
            phase_number=data["phase_number"],
            trigger_drop_percent=data["trigger_drop_percent"],
            size_fraction=data["size_fraction"],
            executed=data.get("executed", False),
            executed_at=parse_timestamp(data.get("executed_at")),
        )


@dataclass
class ScaleInPlan:
    """
    Ordered scale-in phases for a single position.

    budget is the quote amount (SOL) the strategy set aside for the whole
    position; each phase buys size_fraction of it. Whatever the phases do not
    claim is the initial entry tranche.
    """
    phases: List[ScaleInPhase]
    budget: float
    enabled: bool = True
    current_phase: int = 0

    def __post_init__(self):
        if self.budget <= 0:
            raise InvalidInputError("scale-in budget must be > 0")
        if not self.phases:
            raise InvalidInputError("scale-in plan needs at least one phase")

        self.phases = sorted(self.phases, key=lambda p: p.phase_number)
        numbers = [p.phase_number for p in self.phases]
        if len(set(numbers)) != len(numbers):
            raise InvalidInputError("scale-in phase numbers must be unique")

        previous_drop = 0.0
        for phase in self.phases:
            if phase.trigger_drop_percent <= 0 or phase.trigger_drop_percent >= 100:
                raise InvalidInputError("scale-in trigger_drop_percent must be in (0, 100)")
            if phase.trigger_drop_percent < previous_drop:
                raise InvalidInputError("scale-in trigger drops must not decrease between phases")
            if not 0 < phase.size_fraction <= 1:
                raise InvalidInputError("scale-in size_fraction must be in (0, 1]")
            previous_drop = phase.trigger_drop_percent

        if self.planned_fraction > 1.0 + FRACTION_EPSILON:
            raise InvalidInputError(
                f"scale-in size fractions sum to {self.planned_fraction:.4f} (> 1.0)"
            )
        if not 0 <= self.current_phase <= len(self.phases):
            raise InvalidInputError("scale-in current_phase out of range")

    @property
    def planned_fraction(self) -> float:
        return sum(p.size_fraction for p in self.phases)

    @property
    def executed_fraction(self) -> float:
        return sum(p.size_fraction for p in self.phases if p.executed)

    @property
    def initial_fraction(self) -> float:
        """Share of the budget spent on the entry buy."""
        return max(0.0, 1.0 - self.planned_fraction)

    @property
    def is_complete(self) -> bool:
        return self.current_phase >= len(self.phases)

    def pending_phase(self) -> Optional[ScaleInPhase]:
        """Next phase in line, or None when the plan is exhausted."""
        if self.is_complete:
            return None
        return self.phases[self.current_phase]

    def phase_amount(self, phase: ScaleInPhase) -> float:
        """Quote amount a phase buys."""
        return phase.size_fraction * self.budget

    def mark_executed(self, phase_number: int, when: datetime) -> None:
        pending = self.pending_phase()
        if pending is None or pending.phase_number != phase_number:
            raise InvalidInputError(
                f"phase {phase_number} is not the next pending scale-in phase"
            )
        pending.executed = True
        pending.executed_at = when
        self.current_phase += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phases": [p.to_dict() for p in self.phases],
            "budget": self.budget,
            "enabled": self.enabled,
            "current_phase": self.current_phase,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScaleInPlan":
        return cls(
            phases=[ScaleInPhase.from_dict(p) for p in data["phases"]],
            budget=data["budget"],
            enabled=data.get("enabled", True),
            current_phase=data.get("current_phase", 0),
        )


# ============================================================================
# Actions and trade history
# ============================================================================

@dataclass(frozen=True)
class Action:
    """An action requested by the exit evaluator or the scale-in planner."""
    action_type: ActionType
    reason: Optional[ExitReason] = None
    fraction: Optional[float] = None
    level_id: Optional[str] = None
    phase_number: Optional[int] = None
    price: Optional[float] = None

    @property
    def key(self) -> str:
        """Identity used for pending-action guards and retry counters."""
        if self.action_type == ActionType.PARTIAL_CLOSE:
            return f"{self.action_type.value}:{self.level_id}"
        if self.action_type == ActionType.SCALE_IN:
            return f"{self.action_type.value}:{self.phase_number}"
        return self.action_type.value


@dataclass
class TradeRecord:
    """A completed buy or sell on a position."""
    kind: str              # entry, scale_in, partial_close, full_close
    amount: float          # token amount bought or sold
    price: float           # price per token in quote units
    quote_amount: float    # quote spent (buys) or received (sells)
    tx_ref: Optional[str] = None
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=now_utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "amount": self.amount,
            "price": self.price,
            "quote_amount": self.quote_amount,
            "tx_ref": self.tx_ref,
            "reason": self.reason,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeRecord":
        return cls(
            kind=data["kind"],
            amount=data["amount"],
            price=data["price"],
            quote_amount=data["quote_amount"],
            tx_ref=data.get("tx_ref"),
            reason=data.get("reason"),
            timestamp=parse_timestamp(data.get("timestamp")) or now_utc(),
        )


# ============================================================================
# Position
# ============================================================================

@dataclass
class Position:
    """
    Represents a monitored token holding.

    entry_price is the price of the first buy and never changes; it anchors
    the scale-in triggers. cost_basis is the volume-weighted average price of
    every buy and is what stop-loss, take-profit and trailing arming measure
    profit against.
    """

    RECORD_KIND: ClassVar[str] = "position"

    # ========================================================================
    # Identity
    # ========================================================================
    position_id: str
    token_id: str
    entry_price: float
    entry_time: datetime

    # ========================================================================
    # Amounts
    # ========================================================================
    amount_total: float
    amount_remaining: float

    # ========================================================================
    # Rules
    # ========================================================================
    exit_rules: ExitRules = field(default_factory=ExitRules)
    scale_in_plan: Optional[ScaleInPlan] = None

    # ========================================================================
    # State Management
    # ========================================================================
    status: PositionStatus = PositionStatus.OPEN
    pending_action: Optional[str] = None
    executed_levels: Dict[str, datetime] = field(default_factory=dict)
    failed_attempts: Dict[str, int] = field(default_factory=dict)
    last_error: Optional[str] = None

    # ========================================================================
    # Tracking & Monitoring
    # ========================================================================
    current_price: Optional[float] = None
    highest_price: Optional[float] = None
    trailing_armed: bool = False

    # ========================================================================
    # Cost basis & P&L
    # ========================================================================
    cost_basis: Optional[float] = None
    invested_quote: float = 0.0
    realized_quote: float = 0.0
    realized_pnl_pct: Optional[float] = None

    # ========================================================================
    # Exit Information
    # ========================================================================
    exit_price: Optional[float] = None
    exit_time: Optional[datetime] = None
    exit_reason: Optional[ExitReason] = None

    # ========================================================================
    # Linkage & Metadata
    # ========================================================================
    strategy_id: Optional[str] = None
    trades: List[TradeRecord] = field(default_factory=list)
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)
    metadata: Dict[str, Any] = field(default_factory=dict)
    schema_version: int = SCHEMA_VERSION

    def __post_init__(self):
        if self.cost_basis is None:
            self.cost_basis = self.entry_price
        if self.highest_price is None:
            self.highest_price = self.entry_price
        if not self.invested_quote:
            self.invested_quote = self.entry_price * self.amount_total

    @property
    def record_id(self) -> str:
        return self.position_id

    @property
    def is_active(self) -> bool:
        return self.status in (PositionStatus.OPEN, PositionStatus.PARTIALLY_CLOSED)

    # ========================================================================
    # Price tracking (monitoring loop only)
    # ========================================================================

    def update_price(self, new_price: float) -> bool:
        """
        Record a fresh price.

        The trailing stop arms when an observed price reaches the trigger
        against the cost basis at that moment. A later scale-in lowers the
        cost basis but never re-judges old peaks.

        Returns:
            True when the price made a new high
        """
        self.current_price = new_price
        self.updated_at = now_utc()

        new_high = new_price > self.highest_price
        if new_high:
            self.highest_price = new_price

        if self.reaches_trailing_trigger(new_price):
            self.trailing_armed = True

        return new_high

    def reaches_trailing_trigger(self, price: float) -> bool:
        trailing = self.exit_rules.trailing_stop
        return trailing.enabled and self.profit_percent(price) >= trailing.trigger_percent

    def profit_percent(self, price: float) -> float:
        """Profit at price relative to the VWAP cost basis."""
        return (price - self.cost_basis) / self.cost_basis * 100

    def drop_from_entry_percent(self, price: float) -> float:
        """Drop at price relative to the original entry price."""
        return (self.entry_price - price) / self.entry_price * 100

    def hold_seconds(self, now: datetime) -> float:
        return (now - self.entry_time).total_seconds()

    @property
    def executed_sell_fraction(self) -> float:
        return sum(
            lvl.sell_fraction for lvl in self.exit_rules.partial_profit_levels
            if lvl.level_id in self.executed_levels
        )

    # ========================================================================
    # Trade application (position manager only)
    # ========================================================================

    def apply_sell(
        self,
        amount: float,
        price: float,
        quote_amount: float,
        tx_ref: Optional[str],
        kind: str,
        reason: Optional[str] = None,
    ) -> None:
        """Decrease the held amount after a confirmed sell."""
        amount = min(amount, self.amount_remaining)
        self.amount_remaining = max(0.0, self.amount_remaining - amount)
        # Float residue from fractional sells counts as fully sold
        if self.amount_remaining <= self.amount_total * FRACTION_EPSILON:
            self.amount_remaining = 0.0
        self.realized_quote += quote_amount
        self.trades.append(TradeRecord(kind, amount, price, quote_amount, tx_ref, reason))

        if self.amount_remaining <= 0:
            self.status = PositionStatus.CLOSED
        else:
            self.status = PositionStatus.PARTIALLY_CLOSED
        self.updated_at = now_utc()

    def apply_buy(
        self,
        amount: float,
        price: float,
        quote_amount: float,
        tx_ref: Optional[str],
        kind: str = "scale_in",
        reason: Optional[str] = None,
    ) -> None:
        """Increase the held amount and fold the buy into the VWAP cost basis."""
        held_cost = self.cost_basis * self.amount_total
        self.amount_total += amount
        self.amount_remaining += amount
        self.cost_basis = (held_cost + price * amount) / self.amount_total
        self.invested_quote += quote_amount
        self.trades.append(TradeRecord(kind, amount, price, quote_amount, tx_ref, reason))
        self.updated_at = now_utc()

    def mark_as_closed(self, exit_price: float, exit_reason: ExitReason, when: datetime) -> None:
        """Stamp exit information and final P&L."""
        self.status = PositionStatus.CLOSED
        self.amount_remaining = 0.0
        self.exit_price = exit_price
        self.exit_reason = exit_reason
        self.exit_time = when
        self.pending_action = None
        if self.invested_quote > 0 and self.realized_quote > 0:
            self.realized_pnl_pct = self.realized_profit / self.invested_quote * 100
        else:
            self.realized_pnl_pct = self.profit_percent(exit_price)
        self.updated_at = when

    @property
    def realized_profit(self) -> float:
        """Quote received from sells minus quote spent on buys."""
        return self.realized_quote - self.invested_quote

    # ========================================================================
    # Serialization
    # ========================================================================

    def to_dict(self) -> Dict[str, Any]:
        """Convert position to dictionary for persistence (pending_action is transient)."""
        return {
            "schema_version": self.schema_version,
            "position_id": self.position_id,
            "token_id": self.token_id,
            "entry_price": self.entry_price,
            "entry_time": format_timestamp(self.entry_time),
            "amount_total": self.amount_total,
            "amount_remaining": self.amount_remaining,
            "exit_rules": self.exit_rules.to_dict(),
            "scale_in_plan": self.scale_in_plan.to_dict() if self.scale_in_plan else None,
            "status": self.status.value,
            "executed_levels": {k: format_timestamp(v) for k, v in self.executed_levels.items()},
            "failed_attempts": dict(self.failed_attempts),
            "last_error": self.last_error,
            "current_price": self.current_price,
            "highest_price": self.highest_price,
            "trailing_armed": self.trailing_armed,
            "cost_basis": self.cost_basis,
            "invested_quote": self.invested_quote,
            "realized_quote": self.realized_quote,
            "realized_pnl_pct": self.realized_pnl_pct,
            "exit_price": self.exit_price,
            "exit_time": format_timestamp(self.exit_time),
            "exit_reason": self.exit_reason.value if self.exit_reason else None,
            "strategy_id": self.strategy_id,
            "trades": [t.to_dict() for t in self.trades],
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        """
        Create Position from dictionary.

        Raises:
            KeyError, ValueError, TypeError: when the record is malformed
        """
        plan = data.get("scale_in_plan")
        exit_reason = data.get("exit_reason")

        return cls(
            position_id=data["position_id"],
            token_id=data["token_id"],
            entry_price=float(data["entry_price"]),
            entry_time=parse_timestamp(data["entry_time"]),
            amount_total=float(data["amount_total"]),
            amount_remaining=float(data["amount_remaining"]),
            exit_rules=ExitRules.from_dict(data.get("exit_rules") or {}),
            scale_in_plan=ScaleInPlan.from_dict(plan) if plan else None,
            status=PositionStatus(data["status"]),
            executed_levels={
                k: parse_timestamp(v) for k, v in (data.get("executed_levels") or {}).items()
            },
            failed_attempts=dict(data.get("failed_attempts") or {}),
            last_error=data.get("last_error"),
            current_price=data.get("current_price"),
            highest_price=data.get("highest_price"),
            trailing_armed=data.get("trailing_armed", False),
            cost_basis=data.get("cost_basis"),
            invested_quote=data.get("invested_quote", 0.0),
            realized_quote=data.get("realized_quote", 0.0),
            realized_pnl_pct=data.get("realized_pnl_pct"),
            exit_price=data.get("exit_price"),
            exit_time=parse_timestamp(data.get("exit_time")),
            exit_reason=ExitReason(exit_reason) if exit_reason else None,
            strategy_id=data.get("strategy_id"),
            trades=[TradeRecord.from_dict(t) for t in data.get("trades", [])],
            created_at=parse_timestamp(data.get("created_at")) or now_utc(),
            updated_at=parse_timestamp(data.get("updated_at")) or now_utc(),
            metadata=data.get("metadata", {}),
            schema_version=data.get("schema_version", SCHEMA_VERSION),
        )
