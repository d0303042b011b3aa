"""
Strategy data models.

A Strategy is a sizing and exit template: how much SOL a position may use,
how many positions may be open at once, and the exit rules / scale-in plan
each new position starts with.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, Optional, Tuple

from trader_tony.config.settings import StrategyConfig
from trader_tony.position.errors import InvalidInputError
from trader_tony.position.models import (
    SCHEMA_VERSION,
    ExitRules,
    ScaleInPhase,
    ScaleInPlan,
)
from trader_tony.utils.time_utils import format_timestamp, now_utc, parse_timestamp


@dataclass(frozen=True)
class ScaleInTemplate:
    """Scale-in phases as (trigger_drop_percent, size_fraction) pairs."""
    enabled: bool = False
    phases: Tuple[Tuple[float, float], ...] = ()

    def __post_init__(self):
        if self.enabled and not self.phases:
            raise InvalidInputError("enabled scale-in template needs phases")
        if sum(fraction for _, fraction in self.phases) >= 1.0:
            raise InvalidInputError("scale-in phases must leave room for the entry buy")

    @property
    def initial_fraction(self) -> float:
        """Share of the position size spent on the entry buy."""
        if not self.enabled:
            return 1.0
        return 1.0 - sum(fraction for _, fraction in self.phases)

    def build_plan(self, budget: float) -> Optional[ScaleInPlan]:
        if not self.enabled:
            return None
        return ScaleInPlan(
            phases=[
                ScaleInPhase(number, trigger, fraction)
                for number, (trigger, fraction) in enumerate(self.phases, start=1)
            ],
            budget=budget,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "phases": [list(p) for p in self.phases]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScaleInTemplate":
        return cls(
            enabled=data.get("enabled", False),
            phases=tuple((float(t), float(f)) for t, f in data.get("phases", [])),
        )


@dataclass
class StrategyStats:
    """Running totals for a strategy."""
    total_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0
    closed_positions: int = 0
    winning_positions: int = 0
    profit: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrategyStats":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class Strategy:
    """A named configuration template governing position sizing and exits."""

    RECORD_KIND: ClassVar[str] = "strategy"

    strategy_id: str
    name: str
    enabled: bool = True
    max_concurrent_positions: int = 3
    max_position_size: float = 0.1
    total_budget: float = 1.0
    exit_rules: ExitRules = field(default_factory=ExitRules)
    scale_in: ScaleInTemplate = field(default_factory=ScaleInTemplate)
    stats: StrategyStats = field(default_factory=StrategyStats)
    created_at: datetime = field(default_factory=now_utc)
    last_run: Optional[datetime] = None
    schema_version: int = SCHEMA_VERSION

    def __post_init__(self):
        if not self.strategy_id:
            raise InvalidInputError("strategy_id is required")
        if self.max_concurrent_positions < 1:
            raise InvalidInputError("max_concurrent_positions must be >= 1")
        if self.max_position_size <= 0:
            raise InvalidInputError("max_position_size must be > 0")
        if self.total_budget <= 0:
            raise InvalidInputError("total_budget must be > 0")

    @property
    def record_id(self) -> str:
        return self.strategy_id

    @classmethod
    def from_config(cls, config: StrategyConfig) -> "Strategy":
        return cls(
            strategy_id=config.strategy_id,
            name=config.name or config.strategy_id,
            enabled=config.enabled,
            max_concurrent_positions=config.max_concurrent_positions,
            max_position_size=config.max_position_size,
            total_budget=config.total_budget,
            exit_rules=config.exit_rules.to_exit_rules(),
            scale_in=ScaleInTemplate(
                enabled=config.scale_in.enabled,
                phases=tuple(
                    (phase.trigger_drop_percent, phase.size_fraction)
                    for phase in config.scale_in.phases
                ),
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "strategy_id": self.strategy_id,
            "name": self.name,
            "enabled": self.enabled,
            "max_concurrent_positions": self.max_concurrent_positions,
            "max_position_size": self.max_position_size,
            "total_budget": self.total_budget,
            "exit_rules": self.exit_rules.to_dict(),
            "scale_in": self.scale_in.to_dict(),
            "stats": self.stats.to_dict(),
            "created_at": format_timestamp(self.created_at),
            "last_run": format_timestamp(self.last_run),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Strategy":
        return cls(
            strategy_id=data["strategy_id"],
            name=data.get("name", data["strategy_id"]),
            enabled=data.get("enabled", True),
            max_concurrent_positions=data.get("max_concurrent_positions", 3),
            max_position_size=data.get("max_position_size", 0.1),
            total_budget=data.get("total_budget", 1.0),
            exit_rules=ExitRules.from_dict(data.get("exit_rules") or {}),
            scale_in=ScaleInTemplate.from_dict(data.get("scale_in") or {}),
            stats=StrategyStats.from_dict(data.get("stats") or {}),
            created_at=parse_timestamp(data.get("created_at")) or now_utc(),
            last_run=parse_timestamp(data.get("last_run")),
            schema_version=data.get("schema_version", SCHEMA_VERSION),
        )
