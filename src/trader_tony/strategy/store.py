"""
Strategy Store - owned collection of strategies with persistence.

Strategies live in memory keyed by id and are written through to the
record store under kind "strategy" on every change.
"""

import dataclasses
import logging
import uuid
from typing import Any, Dict, List, Optional

from trader_tony.config.settings import StrategyConfig
from trader_tony.position.errors import InvalidInputError, StorageCorruptionError
from trader_tony.position.models import ExitRules
from trader_tony.storage.duckdb_store import DuckDBStore
from trader_tony.strategy.models import ScaleInTemplate, Strategy
from trader_tony.utils.time_utils import now_utc

logger = logging.getLogger(__name__)


UPDATABLE_FIELDS = {
    "name",
    "enabled",
    "max_concurrent_positions",
    "max_position_size",
    "total_budget",
    "exit_rules",
    "scale_in",
}


class StrategyStore:
    """CRUD and running statistics for strategies."""

    def __init__(self, store: Optional[DuckDBStore] = None):
        self.store = store
        self._strategies: Dict[str, Strategy] = {}

    # ========================================================================
    # Loading
    # ========================================================================

    def load(self) -> int:
        """
        Load persisted strategies.

        Raises:
            StorageCorruptionError: If a persisted strategy cannot be decoded
        """
        if self.store is None:
            return 0

        for raw in self.store.load_all(Strategy.RECORD_KIND):
            record_id = str(raw.get("strategy_id", "<unknown>"))
            try:
                strategy = Strategy.from_dict(raw)
            except (KeyError, ValueError, TypeError, InvalidInputError) as e:
                raise StorageCorruptionError(Strategy.RECORD_KIND, record_id, str(e)) from e
            self._strategies[strategy.strategy_id] = strategy

        logger.info(f"Loaded {len(self._strategies)} strategies from storage")
        return len(self._strategies)

    def seed(self, configs: List[StrategyConfig]) -> int:
        """Create configured strategies that do not exist yet."""
        created = 0
        for config in configs:
            if config.strategy_id in self._strategies:
                continue
            self._add(Strategy.from_config(config))
            created += 1
        if created:
            logger.info(f"Seeded {created} strategies from configuration")
        return created

    # ========================================================================
    # CRUD
    # ========================================================================

    def create_strategy(
        self,
        name: str,
        strategy_id: Optional[str] = None,
        enabled: bool = True,
        max_concurrent_positions: int = 3,
        max_position_size: float = 0.1,
        total_budget: float = 1.0,
        exit_rules: Optional[ExitRules] = None,
        scale_in: Optional[ScaleInTemplate] = None,
    ) -> Strategy:
        strategy_id = strategy_id or f"strat_{uuid.uuid4().hex[:8]}"
        if strategy_id in self._strategies:
            raise InvalidInputError(f"Strategy {strategy_id} already exists")

        strategy = Strategy(
            strategy_id=strategy_id,
            name=name or strategy_id,
            enabled=enabled,
            max_concurrent_positions=max_concurrent_positions,
            max_position_size=max_position_size,
            total_budget=total_budget,
            exit_rules=exit_rules or ExitRules(),
            scale_in=scale_in or ScaleInTemplate(),
        )
        self._add(strategy)
        logger.info(f"New trading strategy created: {strategy_id} - {strategy.name}")
        return strategy

    def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        return self._strategies.get(strategy_id)

    def list_strategies(self) -> List[Strategy]:
        return list(self._strategies.values())

    def update_strategy(self, strategy_id: str, **updates: Any) -> Strategy:
        """
        Update strategy settings; stats are not updatable here.

        Raises:
            InvalidInputError: For an unknown strategy or field
        """
        strategy = self._require(strategy_id)

        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidInputError(f"Cannot update strategy fields: {sorted(unknown)}")

        try:
            if isinstance(updates.get("exit_rules"), dict):
                updates["exit_rules"] = ExitRules.from_dict(updates["exit_rules"])
            if isinstance(updates.get("scale_in"), dict):
                updates["scale_in"] = ScaleInTemplate.from_dict(updates["scale_in"])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInputError(f"Malformed rules for strategy {strategy_id}: {e!r}") from e

        updated = dataclasses.replace(strategy, **updates)
        self._strategies[strategy_id] = updated
        self._save(updated)
        logger.info(f"Strategy {strategy_id} updated ({', '.join(sorted(updates))})")
        return updated

    def delete_strategy(self, strategy_id: str) -> bool:
        if self._strategies.pop(strategy_id, None) is None:
            return False
        if self.store is not None:
            self.store.delete(Strategy.RECORD_KIND, strategy_id)
        logger.info(f"Strategy {strategy_id} deleted")
        return True

    # ========================================================================
    # Statistics
    # ========================================================================

    def record_trade(self, strategy_id: str, success: bool) -> None:
        """Count an entry attempt."""
        strategy = self._require(strategy_id)
        strategy.stats.total_trades += 1
        if success:
            strategy.stats.successful_trades += 1
        else:
            strategy.stats.failed_trades += 1
        strategy.last_run = now_utc()
        self._save(strategy)

    def record_exit(self, strategy_id: str, profit: float) -> None:
        """Credit a closed position's realized profit (SOL)."""
        strategy = self._strategies.get(strategy_id)
        if strategy is None:
            logger.warning(f"Closed position belongs to unknown strategy {strategy_id}")
            return
        strategy.stats.closed_positions += 1
        if profit > 0:
            strategy.stats.winning_positions += 1
        strategy.stats.profit += profit
        self._save(strategy)

    def get_performance_stats(self) -> Dict[str, Any]:
        """Aggregate statistics over all strategies."""
        strategies = self.list_strategies()
        total_trades = sum(s.stats.total_trades for s in strategies)
        successful_trades = sum(s.stats.successful_trades for s in strategies)
        failed_trades = sum(s.stats.failed_trades for s in strategies)
        closed_positions = sum(s.stats.closed_positions for s in strategies)
        winning_positions = sum(s.stats.winning_positions for s in strategies)

        return {
            "strategy_count": len(strategies),
            "active_strategies": sum(1 for s in strategies if s.enabled),
            "total_trades": total_trades,
            "successful_trades": successful_trades,
            "failed_trades": failed_trades,
            "win_rate": (successful_trades / total_trades * 100) if total_trades else 0.0,
            "closed_positions": closed_positions,
            "profitable_exit_rate": (
                winning_positions / closed_positions * 100 if closed_positions else 0.0
            ),
            "total_profit": sum(s.stats.profit for s in strategies),
        }

    # ========================================================================
    # Helpers
    # ========================================================================

    def _require(self, strategy_id: str) -> Strategy:
        strategy = self._strategies.get(strategy_id)
        if strategy is None:
            raise InvalidInputError(f"Unknown strategy {strategy_id!r}")
        return strategy

    def _add(self, strategy: Strategy) -> None:
        self._strategies[strategy.strategy_id] = strategy
        self._save(strategy)

    def _save(self, strategy: Strategy) -> None:
        if self.store is None:
            return
        try:
            self.store.save(strategy)
        except Exception as e:
            logger.error(f"Failed to persist strategy {strategy.strategy_id}: {e}")
