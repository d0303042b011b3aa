"""
DEX Aggregator Adapter - collaborator interfaces for the position engine.

This module defines the two seams the core talks through:
- PriceOracle: current SOL-denominated price of a token
- TradeExecutor: buy/sell a token against SOL

Implementations:
- JupiterAdapter (live, Solana via Jupiter)
- SimulatedMarket (random-walk prices, simulated fills)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional


# ============================================================================
# Trade Models
# ============================================================================

@dataclass(frozen=True)
class TradeOptions:
    """Execution options for a single buy or sell."""
    slippage_percent: float = 2.0
    max_retries: int = 2
    priority_fee_lamports: Optional[int] = None
    skip_preflight: bool = False

    @property
    def slippage_bps(self) -> int:
        return int(round(self.slippage_percent * 100))


@dataclass
class TradeResult:
    """
    Outcome of a buy or sell.

    amount_in is what was spent (SOL for buys, tokens for sells) and
    amount_out is what came back (tokens for buys, SOL for sells).
    """
    success: bool
    amount_in: float = 0.0
    amount_out: float = 0.0
    tx_ref: Optional[str] = None
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


# ============================================================================
# Collaborator Interfaces
# ============================================================================

class PriceOracle(ABC):
    """Source of current token prices."""

    @abstractmethod
    async def get_price(self, token_id: str) -> float:
        """
        Get the current price of one token in SOL.

        Raises:
            PriceUnavailableError: If no usable price can be produced
        """
        pass

    async def close(self) -> None:
        """Release any held resources."""
        pass


class TradeExecutor(ABC):
    """Executes swaps between SOL and a token."""

    @abstractmethod
    async def buy(self, token_id: str, amount: float, options: TradeOptions) -> TradeResult:
        """
        Spend `amount` SOL on token_id.

        Returns:
            TradeResult; success=False (never an exception) for ordinary failures
        """
        pass

    @abstractmethod
    async def sell(self, token_id: str, amount: float, options: TradeOptions) -> TradeResult:
        """
        Sell `amount` tokens of token_id for SOL.

        Returns:
            TradeResult; success=False (never an exception) for ordinary failures
        """
        pass

    async def close(self) -> None:
        """Release any held resources."""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name})"


# ============================================================================
# Exception Classes
# ============================================================================

class AggregatorError(Exception):
    """Base exception for aggregator errors."""
    pass


class QuoteError(AggregatorError):
    """Exception raised when getting quote fails."""
    pass


class ExecutionError(AggregatorError):
    """Exception raised when swap execution fails."""
    pass
