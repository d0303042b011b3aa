"""
Simulated market for paper trading.

SimulatedMarket implements both PriceOracle and TradeExecutor: prices follow
a seeded random walk per token and trades fill at the current simulated
price, failing at a configurable rate. It is selected by configuration
(execution.mode == "simulation") and plugged in where JupiterAdapter would be.
"""

import asyncio
import logging
import random
import uuid
from typing import Dict, Optional

from trader_tony.integrations.dex.aggregator_adapter import (
    PriceOracle,
    TradeExecutor,
    TradeOptions,
    TradeResult,
)
from trader_tony.position.errors import PriceUnavailableError

logger = logging.getLogger(__name__)


class SimulatedMarket(PriceOracle, TradeExecutor):
    """Random-walk price oracle and instant-fill executor."""

    def __init__(
        self,
        seed: Optional[int] = None,
        volatility_percent: float = 3.0,
        drift_percent: float = 0.0,
        failure_rate: float = 0.0,
        latency_seconds: float = 0.0,
        initial_price_range: tuple = (0.000001, 0.001),
    ):
        if not 0 <= failure_rate <= 1:
            raise ValueError("failure_rate must be between 0 and 1")

        self._rng = random.Random(seed)
        self.volatility_percent = volatility_percent
        self.drift_percent = drift_percent
        self.failure_rate = failure_rate
        self.latency_seconds = latency_seconds
        self.initial_price_range = initial_price_range

        self._prices: Dict[str, float] = {}
        self._unavailable: set = set()
        self.trades_executed = 0
        self.trades_failed = 0

        logger.info(
            f"SimulatedMarket initialized (seed={seed}, volatility={volatility_percent}%, "
            f"failure_rate={failure_rate:.0%})"
        )

    @property
    def name(self) -> str:
        return "simulator"

    # ========================================================================
    # Test / operator controls
    # ========================================================================

    def set_price(self, token_id: str, price: float) -> None:
        if price <= 0:
            raise ValueError("price must be > 0")
        self._prices[token_id] = price

    def set_unavailable(self, token_id: str, unavailable: bool = True) -> None:
        if unavailable:
            self._unavailable.add(token_id)
        else:
            self._unavailable.discard(token_id)

    def current_price(self, token_id: str) -> float:
        if token_id not in self._prices:
            low, high = self.initial_price_range
            self._prices[token_id] = self._rng.uniform(low, high)
        return self._prices[token_id]

    # ========================================================================
    # PriceOracle
    # ========================================================================

    async def get_price(self, token_id: str) -> float:
        """Advance the token's random walk one step and return the new price."""
        await self._simulate_latency()

        if token_id in self._unavailable:
            raise PriceUnavailableError(token_id, "simulated price outage")

        price = self.current_price(token_id)
        change_pct = self._rng.gauss(self.drift_percent, self.volatility_percent)
        # Floor the step so the walk never reaches zero
        price *= max(0.05, 1 + change_pct / 100)
        self._prices[token_id] = price
        return price

    # ========================================================================
    # TradeExecutor
    # ========================================================================

    async def buy(self, token_id: str, amount: float, options: TradeOptions) -> TradeResult:
        await self._simulate_latency()
        if self._should_fail():
            return self._failure(token_id, "buy")

        price = self.current_price(token_id)
        return self._fill(amount_in=amount, amount_out=amount / price, side="buy", price=price)

    async def sell(self, token_id: str, amount: float, options: TradeOptions) -> TradeResult:
        await self._simulate_latency()
        if self._should_fail():
            return self._failure(token_id, "sell")

        price = self.current_price(token_id)
        return self._fill(amount_in=amount, amount_out=amount * price, side="sell", price=price)

    # ========================================================================
    # Helpers
    # ========================================================================

    def _should_fail(self) -> bool:
        return self.failure_rate > 0 and self._rng.random() < self.failure_rate

    def _failure(self, token_id: str, side: str) -> TradeResult:
        self.trades_failed += 1
        logger.info(f"Simulated {side} of {token_id} failed")
        return TradeResult(success=False, error=f"simulated {side} failure")

    def _fill(self, amount_in: float, amount_out: float, side: str, price: float) -> TradeResult:
        self.trades_executed += 1
        return TradeResult(
            success=True,
            amount_in=amount_in,
            amount_out=amount_out,
            tx_ref=f"sim-{uuid.uuid4().hex[:16]}",
            metadata={"simulated": True, "side": side, "price": price},
        )

    async def _simulate_latency(self) -> None:
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)
