"""
Trading Application - wires every component together.

Start-up order:
    config -> storage -> event bus -> oracle/executor -> position manager
    (restores open positions) -> monitor -> strategies -> notifications

Shutdown runs in reverse so that the last tick's actions and events are
flushed before the event bus and the store go away.
"""

import logging
import math
from typing import Any, Dict, Optional

from trader_tony.config.settings import AppConfig, TradingMode
from trader_tony.core.event_bus import EventBus
from trader_tony.integrations.dex.aggregator_adapter import PriceOracle, TradeExecutor
from trader_tony.integrations.dex.jupiter_adapter import JupiterAdapter, TransactionSender
from trader_tony.integrations.dex.simulator import SimulatedMarket
from trader_tony.notifications.service import NotificationSystem
from trader_tony.position.errors import (
    ConcurrencyViolation,
    InvalidInputError,
    PriceUnavailableError,
)
from trader_tony.position.manager import PositionManager
from trader_tony.position.models import ExitReason, Position
from trader_tony.position.monitor import PositionMonitor
from trader_tony.storage.duckdb_store import DuckDBStore
from trader_tony.strategy.store import StrategyStore
from trader_tony.strategy.trader import StrategyTrader
from trader_tony.utils.time_utils import format_timestamp, now_utc

logger = logging.getLogger(__name__)


def build_backend(
    config: AppConfig,
    transaction_sender: Optional[TransactionSender] = None,
):
    """
    Create the price oracle and trade executor for the configured mode.

    Both roles are served by one object: a SimulatedMarket in simulation
    mode, a JupiterAdapter in live mode.
    """
    if config.execution.mode == TradingMode.LIVE.value:
        jupiter = config.jupiter
        adapter = JupiterAdapter(
            api_url=jupiter.api_url,
            quote_mint=jupiter.quote_mint,
            wallet_public_key=jupiter.wallet_public_key or None,
            transaction_sender=transaction_sender,
            token_decimals=jupiter.token_decimals,
            default_decimals=jupiter.default_token_decimals,
            slippage_bps=jupiter.slippage_bps,
            timeout_seconds=jupiter.timeout_seconds,
            requests_per_second=jupiter.requests_per_second,
            retry_delay_seconds=jupiter.retry_delay_seconds,
        )
        if transaction_sender is None:
            logger.warning("Live mode without a transaction sender: prices only, trades will fail")
        return adapter, adapter

    sim = config.simulation
    market = SimulatedMarket(
        seed=sim.seed,
        volatility_percent=sim.volatility_percent,
        drift_percent=sim.drift_percent,
        failure_rate=sim.failure_rate,
        latency_seconds=sim.latency_seconds,
    )
    for token_id, price in sim.initial_prices.items():
        market.set_price(token_id, price)
    return market, market


class TradingApplication:
    """
    Owns the running system.

    Usage:
        app = TradingApplication(get_app_config())
        await app.start()
        ...
        await app.stop()
    """

    def __init__(
        self,
        config: AppConfig,
        oracle: Optional[PriceOracle] = None,
        executor: Optional[TradeExecutor] = None,
        store: Optional[DuckDBStore] = None,
        transaction_sender: Optional[TransactionSender] = None,
    ):
        self.config = config

        if oracle is None or executor is None:
            default_oracle, default_executor = build_backend(config, transaction_sender)
            oracle = oracle or default_oracle
            executor = executor or default_executor
        self.oracle = oracle
        self.executor = executor

        self.store = store if store is not None else DuckDBStore(config.storage.database_path)
        self.event_bus = EventBus()

        self.manager = PositionManager(
            executor,
            store=self.store,
            event_bus=self.event_bus,
            execution_config=config.execution,
        )
        self.monitor = PositionMonitor(self.manager, oracle, config.monitor)
        self.strategies = StrategyStore(self.store)
        self.trader = StrategyTrader(
            self.strategies,
            self.manager,
            executor,
            event_bus=self.event_bus,
            execution_config=config.execution,
        )

        self.notifications: Optional[NotificationSystem] = None
        if config.notification.enabled:
            self.notifications = NotificationSystem.from_config(self.event_bus, config.notification)

        self.started_at = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """
        Restore state and start the always-on components.

        Raises:
            StorageCorruptionError: If persisted positions or strategies cannot be decoded
        """
        if self._running:
            logger.warning("TradingApplication already running")
            return

        logger.info(f"Starting Trader Tony ({self.config.execution.mode} mode)")

        restored = self.manager.load_positions()
        self.strategies.load()
        self.strategies.seed(self.config.strategies)

        await self.event_bus.start()
        if self.notifications is not None:
            await self.notifications.start()
        await self.monitor.start()

        self._running = True
        self.started_at = now_utc()
        logger.info(
            f"Trader Tony started: {restored} open positions, "
            f"{len(self.strategies.list_strategies())} strategies"
        )

    async def stop(self) -> None:
        """Stop components in reverse order and release resources."""
        if not self._running:
            return

        logger.info("Stopping Trader Tony...")
        await self.monitor.stop()
        await self.event_bus.drain()
        if self.notifications is not None:
            await self.notifications.stop()
        await self.event_bus.stop()

        await self.executor.close()
        if self.oracle is not self.executor:
            await self.oracle.close()
        self.store.close()

        self._running = False
        logger.info("Trader Tony stopped")

    # ========================================================================
    # Operator actions
    # ========================================================================

    async def close_position(self, position_id: str) -> bool:
        """
        Manually sell everything left in a position at the current price.

        Manual closes ignore the retry cap.

        Raises:
            InvalidInputError: Unknown or already closed position
            ConcurrencyViolation: Another action is in flight for the position
            PriceUnavailableError: No usable price could be fetched
        """
        position = self.manager.get_position(position_id)
        if position is None or not position.is_active:
            raise InvalidInputError(f"No open position with id {position_id!r}")
        if position.pending_action is not None:
            raise ConcurrencyViolation(position_id, position.pending_action, "full_close")

        price = await self.oracle.get_price(position.token_id)
        if not isinstance(price, (int, float)) or not math.isfinite(price) or price <= 0:
            raise PriceUnavailableError(
                position.token_id, f"oracle returned unusable price {price!r}"
            )
        logger.info(
            f"Manual close requested for {position_id} at {price:.10g}",
            extra={"position_id": position_id, "token_id": position.token_id, "price": price},
        )
        return await self.manager.apply_full_close(position_id, price, ExitReason.MANUAL)

    def describe_position(self, position: Position) -> Dict[str, Any]:
        """Position snapshot with derived figures for the API."""
        data = position.to_dict()
        data["pending_action"] = position.pending_action
        if position.is_active and position.current_price:
            data["profit_percent"] = position.profit_percent(position.current_price)
        return data

    def get_stats(self) -> Dict[str, Any]:
        stats = {
            "timestamp": format_timestamp(now_utc()),
            "started_at": format_timestamp(self.started_at),
            "mode": self.config.execution.mode,
            "executor": self.executor.name,
            "positions": self.manager.get_stats(),
            "monitor": self.monitor.get_stats(),
            "strategies": self.strategies.get_performance_stats(),
            "event_bus": self.event_bus.get_stats(),
        }
        if self.notifications is not None:
            stats["notifications"] = self.notifications.get_stats()
        return stats
