"""
DEX integrations: collaborator interfaces plus live and simulated backends.
"""

from trader_tony.integrations.dex.aggregator_adapter import (
    AggregatorError,
    ExecutionError,
    PriceOracle,
    QuoteError,
    TradeExecutor,
    TradeOptions,
    TradeResult,
)
from trader_tony.integrations.dex.jupiter_adapter import JupiterAdapter
from trader_tony.integrations.dex.simulator import SimulatedMarket

__all__ = [
    "AggregatorError",
    "ExecutionError",
    "JupiterAdapter",
    "PriceOracle",
    "QuoteError",
    "SimulatedMarket",
    "TradeExecutor",
    "TradeOptions",
    "TradeResult",
]
