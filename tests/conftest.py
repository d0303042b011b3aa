"""
Shared fixtures for the test suite.

FakeMarket stands in for both collaborator seams (price oracle and trade
executor) with fully scripted behaviour: prices are set by the test, trades
fill at the current price, and failures or stalls are switched on per side.
"""

import asyncio
from typing import Dict, List, Optional, Tuple

import pytest

from trader_tony.config.settings import ExecutionConfig, MonitorConfig
from trader_tony.core.event_bus import EventBus
from trader_tony.integrations.dex.aggregator_adapter import (
    PriceOracle,
    TradeExecutor,
    TradeOptions,
    TradeResult,
)
from trader_tony.position.errors import PriceUnavailableError
from trader_tony.position.manager import PositionManager
from trader_tony.position.monitor import PositionMonitor
from trader_tony.storage.duckdb_store import MEMORY_DATABASE, DuckDBStore


class FakeMarket(PriceOracle, TradeExecutor):
    """Deterministic oracle + executor."""

    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self.prices: Dict[str, float] = dict(prices or {})
        self.unavailable: set = set()
        self.fail_buys = False
        self.fail_sells = False
        self.raise_on_trade: Optional[Exception] = None

        # When set, trades wait on the gate before filling
        self.gate: Optional[asyncio.Event] = None

        self.price_calls: List[str] = []
        self.trades: List[Tuple[str, str, float, TradeOptions]] = []
        self._tx = 0

    @property
    def name(self) -> str:
        return "fake"

    def set_price(self, token_id: str, price: float) -> None:
        self.prices[token_id] = price

    async def get_price(self, token_id: str) -> float:
        self.price_calls.append(token_id)
        if token_id in self.unavailable or token_id not in self.prices:
            raise PriceUnavailableError(token_id, "no quote")
        return self.prices[token_id]

    async def buy(self, token_id: str, amount: float, options: TradeOptions) -> TradeResult:
        return await self._trade("buy", token_id, amount, options)

    async def sell(self, token_id: str, amount: float, options: TradeOptions) -> TradeResult:
        return await self._trade("sell", token_id, amount, options)

    async def _trade(self, side, token_id, amount, options) -> TradeResult:
        self.trades.append((side, token_id, amount, options))
        if self.gate is not None:
            await self.gate.wait()
        if self.raise_on_trade is not None:
            raise self.raise_on_trade

        failing = self.fail_buys if side == "buy" else self.fail_sells
        if failing:
            return TradeResult(success=False, error=f"{side} rejected")

        price = self.prices[token_id]
        self._tx += 1
        amount_out = amount / price if side == "buy" else amount * price
        return TradeResult(
            success=True,
            amount_in=amount,
            amount_out=amount_out,
            tx_ref=f"tx-{self._tx}",
        )

    def trades_for(self, side: str) -> list:
        return [trade for trade in self.trades if trade[0] == side]


@pytest.fixture
def market():
    """Fake market with MINT priced at 100."""
    return FakeMarket({"MINT": 100.0})


@pytest.fixture
def store():
    """In-memory DuckDB store."""
    db = DuckDBStore(MEMORY_DATABASE)
    yield db
    db.close()


@pytest.fixture
def event_bus():
    """Event bus that is never started; tests drain() it."""
    return EventBus(max_queue_size=100)


@pytest.fixture
def manager(market, store, event_bus):
    return PositionManager(
        market,
        store=store,
        event_bus=event_bus,
        execution_config=ExecutionConfig(max_action_retries=3),
    )


@pytest.fixture
def monitor(manager, market):
    return PositionMonitor(manager, market, MonitorConfig(price_cache_ttl_seconds=0))
