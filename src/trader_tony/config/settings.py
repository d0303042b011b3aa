"""
Configuration models using Pydantic for type-safe validation.

This module defines all configuration models for the position engine:
- SystemConfig: Environment, logging, data directory, API server
- MonitorConfig: Tick period, oracle concurrency, price cache
- ExecutionConfig: Trading mode, retry cap, per-action slippage and fees
- SimulationConfig / JupiterConfig: Price oracle and executor backends
- StorageConfig: DuckDB location
- ExitRulesConfig / ScaleInConfig: Default exit and scale-in templates
- StrategyConfig: Strategies seeded at start-up
- NotificationConfig: SendGrid settings and batching
"""

from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from trader_tony.position.models import (
    ExitRules,
    PartialProfitLevel,
    ScaleInPhase,
    ScaleInPlan,
    TrailingStopRule,
)


# ============================================================================
# Enums for Configuration
# ============================================================================

class Environment(str, Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging level."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class TradingMode(str, Enum):
    """Which oracle/executor backend to wire in."""
    SIMULATION = "simulation"
    LIVE = "live"


# ============================================================================
# System Configuration
# ============================================================================

class SystemConfig(BaseModel):
    """System-wide settings."""

    model_config = ConfigDict(use_enum_values=True)

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment"
    )

    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level"
    )

    json_logs: bool = Field(
        default=True,
        description="Emit JSON log lines instead of plain text"
    )

    log_file: Optional[str] = Field(
        default=None,
        description="Optional log file path"
    )

    data_dir: Path = Field(
        default=Path("data"),
        description="Data storage directory"
    )

    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )

    api_port: int = Field(
        default=8000,
        ge=1024,
        le=65535,
        description="API server port"
    )


# ============================================================================
# Monitoring Configuration
# ============================================================================

class MonitorConfig(BaseModel):
    """Monitoring loop settings."""

    tick_interval_seconds: float = Field(
        default=8.0,
        gt=0.0,
        le=3600.0,
        description="Seconds between monitoring ticks"
    )

    max_concurrent_checks: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Maximum concurrent price lookups per tick"
    )

    price_cache_ttl_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="How long a fetched price may be reused"
    )

    price_change_log_threshold_pct: float = Field(
        default=1.0,
        ge=0.0,
        description="Log a price line when a token moves more than this between ticks"
    )

    @model_validator(mode="after")
    def cache_expires_before_next_tick(self):
        # Every tick must re-price; a longer-lived cache would replay the last tick's price
        if self.price_cache_ttl_seconds >= self.tick_interval_seconds:
            raise ValueError(
                f"price_cache_ttl_seconds ({self.price_cache_ttl_seconds}) must be shorter "
                f"than tick_interval_seconds ({self.tick_interval_seconds})"
            )
        return self


# ============================================================================
# Execution Configuration
# ============================================================================

class ExecutionConfig(BaseModel):
    """Trade execution settings."""

    model_config = ConfigDict(use_enum_values=True)

    mode: TradingMode = Field(
        default=TradingMode.SIMULATION,
        description="simulation or live"
    )

    max_action_retries: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Failed attempts per action before it is escalated"
    )

    executor_max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries inside a single executor call"
    )

    stop_loss_slippage_percent: float = Field(default=5.0, gt=0.0, le=50.0)
    full_close_slippage_percent: float = Field(default=2.0, gt=0.0, le=50.0)
    partial_close_slippage_percent: float = Field(default=2.5, gt=0.0, le=50.0)
    buy_slippage_percent: float = Field(default=5.0, gt=0.0, le=50.0)

    urgent_priority_fee_lamports: int = Field(
        default=100_000,
        ge=0,
        description="Priority fee for stop-loss sells"
    )

    priority_fee_lamports: int = Field(
        default=40_000,
        ge=0,
        description="Priority fee for every other trade"
    )


class SimulationConfig(BaseModel):
    """Simulated market settings."""

    seed: Optional[int] = Field(default=None, description="Random seed (None = nondeterministic)")
    volatility_percent: float = Field(default=3.0, ge=0.0, le=100.0)
    drift_percent: float = Field(default=0.0, ge=-50.0, le=50.0)
    failure_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    latency_seconds: float = Field(default=0.0, ge=0.0)
    initial_prices: Dict[str, float] = Field(
        default_factory=dict,
        description="Starting price per token (SOL)"
    )


class JupiterConfig(BaseModel):
    """Jupiter aggregator settings."""

    api_url: str = Field(default="https://quote-api.jup.ag/v6")
    quote_mint: str = Field(
        default="So11111111111111111111111111111111111111112",
        description="Mint prices and trades are denominated in (SOL)"
    )
    wallet_public_key: Optional[str] = Field(default=None)
    slippage_bps: int = Field(default=50, ge=1, le=5000)
    timeout_seconds: float = Field(default=10.0, gt=0.0)
    requests_per_second: float = Field(default=10.0, gt=0.0)
    retry_delay_seconds: float = Field(default=1.0, ge=0.0)
    default_token_decimals: int = Field(default=9, ge=0, le=18)
    token_decimals: Dict[str, int] = Field(default_factory=dict)


class StorageConfig(BaseModel):
    """Persistence settings."""

    database_path: str = Field(
        default="data/trader_tony.duckdb",
        description="DuckDB file, or :memory:"
    )


# ============================================================================
# Exit Rule / Scale-In Templates
# ============================================================================

class TrailingStopConfig(BaseModel):
    """Trailing stop template."""

    enabled: bool = False
    trigger_percent: float = Field(default=20.0, ge=0.0)
    distance_percent: float = Field(default=12.0, gt=0.0, le=100.0)


class PartialLevelConfig(BaseModel):
    """One partial profit-taking level."""

    threshold_percent: float = Field(gt=0.0)
    sell_fraction: float = Field(gt=0.0, le=1.0)


def _default_partial_levels() -> List[PartialLevelConfig]:
    return [
        PartialLevelConfig(threshold_percent=30.0, sell_fraction=0.2),
        PartialLevelConfig(threshold_percent=50.0, sell_fraction=0.3),
        PartialLevelConfig(threshold_percent=100.0, sell_fraction=0.4),
    ]


class ExitRulesConfig(BaseModel):
    """Exit rule template copied onto each new position."""

    stop_loss_percent: Optional[float] = Field(default=10.0, gt=0.0, le=100.0)
    take_profit_percent: Optional[float] = Field(default=30.0, gt=0.0)
    trailing_stop: TrailingStopConfig = Field(default_factory=TrailingStopConfig)
    partial_profit_levels: List[PartialLevelConfig] = Field(default_factory=_default_partial_levels)
    max_hold_time_minutes: Optional[float] = Field(
        default=None,
        gt=0.0,
        description="Force-close after this many minutes (None = no limit)"
    )

    @field_validator("partial_profit_levels")
    @classmethod
    def fractions_within_total(cls, v):
        if sum(level.sell_fraction for level in v) > 1.0 + 1e-9:
            raise ValueError("partial profit sell fractions must sum to <= 1.0")
        return v

    def to_exit_rules(self) -> ExitRules:
        return ExitRules(
            stop_loss_percent=self.stop_loss_percent,
            take_profit_percent=self.take_profit_percent,
            trailing_stop=TrailingStopRule(
                enabled=self.trailing_stop.enabled,
                trigger_percent=self.trailing_stop.trigger_percent,
                distance_percent=self.trailing_stop.distance_percent,
            ),
            partial_profit_levels=tuple(
                PartialProfitLevel(level.threshold_percent, level.sell_fraction)
                for level in self.partial_profit_levels
            ),
            max_hold_time_seconds=(
                self.max_hold_time_minutes * 60 if self.max_hold_time_minutes else None
            ),
        )


class ScaleInPhaseConfig(BaseModel):
    """One scale-in phase."""

    trigger_drop_percent: float = Field(gt=0.0, lt=100.0)
    size_fraction: float = Field(gt=0.0, le=1.0)


def _default_scale_in_phases() -> List[ScaleInPhaseConfig]:
    return [
        ScaleInPhaseConfig(trigger_drop_percent=10.0, size_fraction=0.3),
        ScaleInPhaseConfig(trigger_drop_percent=20.0, size_fraction=0.3),
    ]


class ScaleInConfig(BaseModel):
    """Scale-in template; the entry buys whatever share the phases leave."""

    enabled: bool = False
    phases: List[ScaleInPhaseConfig] = Field(default_factory=_default_scale_in_phases)

    @model_validator(mode="after")
    def check_phases(self):
        if self.enabled and not self.phases:
            raise ValueError("enabled scale-in needs at least one phase")
        if sum(phase.size_fraction for phase in self.phases) >= 1.0:
            raise ValueError("scale-in phase fractions must leave room for the entry buy")
        return self

    @property
    def initial_fraction(self) -> float:
        if not self.enabled:
            return 1.0
        return 1.0 - sum(phase.size_fraction for phase in self.phases)

    def to_plan(self, budget: float) -> Optional[ScaleInPlan]:
        if not self.enabled:
            return None
        return ScaleInPlan(
            phases=[
                ScaleInPhase(number, phase.trigger_drop_percent, phase.size_fraction)
                for number, phase in enumerate(self.phases, start=1)
            ],
            budget=budget,
        )


# ============================================================================
# Strategy Configuration
# ============================================================================

class StrategyConfig(BaseModel):
    """A strategy seeded into the strategy store at start-up."""

    strategy_id: str = Field(min_length=1)
    name: str = Field(default="")
    enabled: bool = True
    max_concurrent_positions: int = Field(default=3, ge=1, le=100)
    max_position_size: float = Field(default=0.1, gt=0.0, description="SOL per position")
    total_budget: float = Field(default=1.0, gt=0.0, description="SOL across all positions")
    exit_rules: ExitRulesConfig = Field(default_factory=ExitRulesConfig)
    scale_in: ScaleInConfig = Field(default_factory=ScaleInConfig)


# ============================================================================
# Notification Configuration
# ============================================================================

class NotificationConfig(BaseModel):
    """Notification system configuration."""

    enabled: bool = True
    use_mock: bool = Field(default=True, description="Log emails instead of sending them")
    api_key_env: str = Field(
        default="SENDGRID_API_KEY",
        description="Environment variable for SendGrid API key"
    )
    from_email: str = Field(default="trader-tony@localhost")
    to_emails: List[str] = Field(default_factory=list)
    warning_batch_interval_seconds: int = Field(default=300, ge=1, le=3600)
    info_batch_interval_seconds: int = Field(default=600, ge=1, le=3600)
    max_per_hour: Dict[str, int] = Field(
        default_factory=lambda: {"critical": 50, "warning": 20, "info": 10}
    )


# ============================================================================
# Complete Application Configuration
# ============================================================================

class AppConfig(BaseModel):
    """Complete application configuration."""

    model_config = ConfigDict(use_enum_values=True)

    system: SystemConfig = Field(default_factory=SystemConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)
    jupiter: JupiterConfig = Field(default_factory=JupiterConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    exit_rules: ExitRulesConfig = Field(
        default_factory=ExitRulesConfig,
        description="Default exit rules for positions opened without a strategy"
    )
    strategies: List[StrategyConfig] = Field(default_factory=list)
    notification: NotificationConfig = Field(default_factory=NotificationConfig)

    @field_validator("strategies")
    @classmethod
    def unique_strategy_ids(cls, v):
        ids = [s.strategy_id for s in v]
        if len(set(ids)) != len(ids):
            raise ValueError("strategy ids must be unique")
        return v
