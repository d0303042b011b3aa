"""
Strategy Trader - opens positions on behalf of strategies.

Enforces a strategy's enabled flag, concurrency cap and budget, buys the
entry tranche and hands the filled position to the PositionManager. Realized
profit flows back to the owning strategy through PositionClosed events.
"""

import logging
from typing import Callable, Optional

from trader_tony.config.settings import ExecutionConfig
from trader_tony.core.event_bus import EventBus
from trader_tony.core.events import EntryFailed, PositionClosed
from trader_tony.integrations.dex.aggregator_adapter import TradeExecutor, TradeOptions
from trader_tony.position.errors import (
    EntryRejectedError,
    InvalidInputError,
    TradeExecutionError,
)
from trader_tony.position.manager import PositionManager
from trader_tony.position.models import Position
from trader_tony.strategy.store import StrategyStore
from trader_tony.utils.time_utils import now_utc

logger = logging.getLogger(__name__)


# Entries are refused when less than this share of max_position_size is left
MIN_BUDGET_FRACTION = 0.5


class StrategyTrader:
    """Applies strategies to tokens chosen by an operator or a scanner."""

    def __init__(
        self,
        strategies: StrategyStore,
        manager: PositionManager,
        executor: TradeExecutor,
        event_bus: Optional[EventBus] = None,
        execution_config: Optional[ExecutionConfig] = None,
        clock: Callable = now_utc,
    ):
        self.strategies = strategies
        self.manager = manager
        self.executor = executor
        self.event_bus = event_bus
        self.config = execution_config or ExecutionConfig()
        self.clock = clock

        if event_bus is not None:
            event_bus.subscribe(PositionClosed, self.on_position_closed)

    def committed_budget(self, strategy_id: str) -> float:
        """SOL reserved by the strategy's open positions, scale-in budget included."""
        committed = 0.0
        for position in self.manager.get_open_positions():
            if position.strategy_id != strategy_id:
                continue
            if position.scale_in_plan is not None:
                committed += position.scale_in_plan.budget
            else:
                committed += position.metadata.get("allocated_quote", position.invested_quote)
        return committed

    async def open_position(self, strategy_id: str, token_id: str) -> Position:
        """
        Buy into token_id under a strategy.

        Raises:
            InvalidInputError: Unknown strategy or empty token
            EntryRejectedError: The strategy refused the entry
            TradeExecutionError: The entry buy failed
        """
        strategy = self.strategies.get_strategy(strategy_id)
        if strategy is None:
            raise InvalidInputError(f"Unknown strategy {strategy_id!r}")
        if not token_id:
            raise InvalidInputError("token_id is required")
        if not strategy.enabled:
            raise EntryRejectedError(strategy_id, "strategy is disabled")

        open_count = sum(
            1 for p in self.manager.get_open_positions() if p.strategy_id == strategy_id
        )
        if open_count >= strategy.max_concurrent_positions:
            raise EntryRejectedError(
                strategy_id,
                f"at max concurrent positions ({strategy.max_concurrent_positions})",
            )

        available = strategy.total_budget - self.committed_budget(strategy_id)
        if available < strategy.max_position_size * MIN_BUDGET_FRACTION:
            raise EntryRejectedError(
                strategy_id, f"insufficient remaining budget ({available:.4f} SOL)"
            )

        size = min(strategy.max_position_size, available)
        entry_quote = size * strategy.scale_in.initial_fraction
        options = TradeOptions(
            slippage_percent=self.config.buy_slippage_percent,
            max_retries=self.config.executor_max_retries,
            priority_fee_lamports=self.config.priority_fee_lamports,
        )

        logger.info(
            f"Strategy {strategy_id} entering {token_id}: {entry_quote:.4f} SOL "
            f"of {size:.4f} SOL position",
            extra={"strategy_id": strategy_id, "token_id": token_id},
        )

        error = None
        try:
            result = await self.executor.buy(token_id, entry_quote, options)
        except Exception as e:
            result = None
            error = f"buy raised {e.__class__.__name__}: {e}"
        else:
            if result is None:
                error = "executor returned no result"
            elif not result.success or result.amount_out <= 0:
                error = result.error or "no tokens received"

        if error is not None:
            self.strategies.record_trade(strategy_id, success=False)
            self._emit_entry_failed(strategy_id, token_id, entry_quote, error)
            logger.warning(
                f"Entry into {token_id} failed: {error}",
                extra={"strategy_id": strategy_id, "token_id": token_id},
            )
            raise TradeExecutionError(f"entry buy failed: {error}")

        spent = result.amount_in or entry_quote
        position = self.manager.create_position(
            token_id=token_id,
            entry_price=spent / result.amount_out,
            amount=result.amount_out,
            exit_rules=strategy.exit_rules,
            scale_in_plan=strategy.scale_in.build_plan(size),
            strategy_id=strategy_id,
            quote_amount=spent,
            tx_ref=result.tx_ref,
            metadata={"allocated_quote": size},
        )
        self.strategies.record_trade(strategy_id, success=True)
        return position

    async def on_position_closed(self, event: PositionClosed) -> None:
        if event.strategy_id:
            self.strategies.record_exit(event.strategy_id, event.realized_profit)

    def _emit_entry_failed(self, strategy_id: str, token_id: str, quote: float, error: str) -> None:
        if self.event_bus is None:
            return
        self.event_bus.emit(EntryFailed(
            timestamp=self.clock(),
            metadata={},
            strategy_id=strategy_id,
            token_id=token_id,
            quote_amount=quote,
            error=error,
        ))
