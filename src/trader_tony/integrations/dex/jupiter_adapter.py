"""
Jupiter Aggregator Adapter (Solana)

Live price oracle and trade executor backed by the Jupiter quote/swap API.
Prices are SOL per token. Swaps are built by Jupiter; signing and sending the
returned transaction is delegated to an injected async transaction_sender,
since wallet handling lives outside this package.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from trader_tony.integrations.dex.aggregator_adapter import (
    ExecutionError,
    PriceOracle,
    QuoteError,
    TradeExecutor,
    TradeOptions,
    TradeResult,
)
from trader_tony.position.errors import PriceUnavailableError

logger = logging.getLogger(__name__)


SOL_MINT = "So11111111111111111111111111111111111111112"
LAMPORTS_PER_SOL = 1_000_000_000
DEFAULT_TOKEN_DECIMALS = 9

# SOL spent on the forward quote used when the reverse quote fails
PRICE_PROBE_SOL = 0.01

# (serialized_transaction, options) -> tx signature
TransactionSender = Callable[[str, TradeOptions], Awaitable[str]]


class JupiterAdapter(PriceOracle, TradeExecutor):
    """
    Jupiter DEX aggregator adapter for Solana.

    Features:
    - SOL-denominated token prices from quotes
    - Swap transaction building with per-trade slippage and priority fee
    - Client-side rate limiting
    """

    def __init__(
        self,
        api_url: str = "https://quote-api.jup.ag/v6",
        quote_mint: str = SOL_MINT,
        wallet_public_key: Optional[str] = None,
        transaction_sender: Optional[TransactionSender] = None,
        token_decimals: Optional[Dict[str, int]] = None,
        default_decimals: int = DEFAULT_TOKEN_DECIMALS,
        slippage_bps: int = 50,
        timeout_seconds: float = 10.0,
        requests_per_second: float = 10.0,
        retry_delay_seconds: float = 1.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.quote_mint = quote_mint
        self.wallet_public_key = wallet_public_key
        self.transaction_sender = transaction_sender
        self.token_decimals = dict(token_decimals or {})
        self.default_decimals = default_decimals
        self.slippage_bps = slippage_bps
        self.timeout_seconds = timeout_seconds
        self.retry_delay_seconds = retry_delay_seconds

        # Request session
        self.session = session
        self._owns_session = session is None

        # Rate limiting
        self.requests_per_second = requests_per_second
        self.last_request_time = 0.0

        logger.info(f"Jupiter adapter initialized ({self.api_url})")

    @property
    def name(self) -> str:
        return "jupiter"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self.session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self.session

    # ========================================================================
    # Quotes
    # ========================================================================

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount_units: int,
        slippage_bps: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Request a quote for amount_units (smallest units) of input_mint.

        Raises:
            QuoteError: On a non-200 response or a quote without outAmount
        """
        await self._rate_limit()
        session = await self._get_session()

        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount_units),
            "slippageBps": str(slippage_bps if slippage_bps is not None else self.slippage_bps),
            "onlyDirectRoutes": "false",
        }

        async with session.get(f"{self.api_url}/quote", params=params) as response:
            if response.status != 200:
                error_text = await response.text()
                raise QuoteError(f"Jupiter quote failed: {response.status} - {error_text}")
            data = await response.json()

        if not isinstance(data, dict) or "outAmount" not in data:
            raise QuoteError(f"Jupiter quote missing outAmount: {data!r}")
        return data

    # ========================================================================
    # PriceOracle
    # ========================================================================

    async def get_price(self, token_id: str) -> float:
        """
        Price of one token in SOL.

        Quotes one whole token into SOL; if that fails, quotes a small SOL
        amount into the token and inverts it.
        """
        decimals = self._decimals(token_id)

        try:
            quote = await self.get_quote(token_id, self.quote_mint, 10 ** decimals)
            price = int(quote["outAmount"]) / LAMPORTS_PER_SOL
            if price > 0:
                return price
            logger.debug(f"Reverse quote for {token_id} returned zero, trying forward quote")
        except Exception as e:
            logger.debug(f"Reverse quote for {token_id} failed: {e}")

        try:
            probe_units = int(PRICE_PROBE_SOL * LAMPORTS_PER_SOL)
            quote = await self.get_quote(self.quote_mint, token_id, probe_units)
            tokens_out = int(quote["outAmount"]) / (10 ** decimals)
        except Exception as e:
            raise PriceUnavailableError(token_id, f"Jupiter price lookup failed: {e}") from e

        if tokens_out <= 0:
            raise PriceUnavailableError(token_id, "Jupiter returned zero output")
        return PRICE_PROBE_SOL / tokens_out

    # ========================================================================
    # TradeExecutor
    # ========================================================================

    async def buy(self, token_id: str, amount: float, options: TradeOptions) -> TradeResult:
        """Spend `amount` SOL on token_id."""
        units = int(amount * LAMPORTS_PER_SOL)
        result = await self._execute(self.quote_mint, token_id, units, options)
        if result.success:
            result.amount_in = amount
            result.amount_out = self._units_to_amount(int(result.metadata["out_amount"]), token_id)
        return result

    async def sell(self, token_id: str, amount: float, options: TradeOptions) -> TradeResult:
        """Sell `amount` tokens of token_id for SOL."""
        units = self._amount_to_units(amount, token_id)
        result = await self._execute(token_id, self.quote_mint, units, options)
        if result.success:
            result.amount_in = amount
            result.amount_out = int(result.metadata["out_amount"]) / LAMPORTS_PER_SOL
        return result

    async def _execute(
        self, input_mint: str, output_mint: str, amount_units: int, options: TradeOptions
    ) -> TradeResult:
        if self.transaction_sender is None or not self.wallet_public_key:
            return TradeResult(success=False, error="No wallet configured for live swaps")
        if amount_units <= 0:
            return TradeResult(success=False, error=f"Swap amount too small: {amount_units} units")

        last_error = "unknown error"
        for attempt in range(options.max_retries + 1):
            try:
                quote = await self.get_quote(
                    input_mint, output_mint, amount_units, options.slippage_bps
                )
                swap_transaction = await self._build_swap_transaction(quote, options)
                tx_ref = await self.transaction_sender(swap_transaction, options)

                logger.info(
                    f"Jupiter swap sent: {input_mint} -> {output_mint} "
                    f"({amount_units} units) tx={tx_ref}"
                )
                return TradeResult(
                    success=True,
                    tx_ref=tx_ref,
                    metadata={
                        "out_amount": quote["outAmount"],
                        "price_impact_pct": float(quote.get("priceImpactPct", 0) or 0),
                        "attempts": attempt + 1,
                    },
                )

            except Exception as e:
                last_error = str(e) or e.__class__.__name__
                logger.warning(
                    f"Jupiter swap attempt {attempt + 1}/{options.max_retries + 1} failed: {last_error}"
                )
                if attempt < options.max_retries:
                    await asyncio.sleep(self.retry_delay_seconds)

        return TradeResult(success=False, error=last_error)

    async def _build_swap_transaction(self, quote: Dict[str, Any], options: TradeOptions) -> str:
        await self._rate_limit()
        session = await self._get_session()

        swap_request = {
            "quoteResponse": quote,
            "userPublicKey": self.wallet_public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": options.priority_fee_lamports or "auto",
        }

        async with session.post(
            f"{self.api_url}/swap",
            json=swap_request,
            headers={"Content-Type": "application/json"},
        ) as response:
            if response.status != 200:
                error_text = await response.text()
                raise ExecutionError(f"Jupiter swap failed: {response.status} - {error_text}")
            swap_data = await response.json()

        swap_transaction = swap_data.get("swapTransaction")
        if not swap_transaction:
            raise ExecutionError("Jupiter swap response missing swapTransaction")
        return swap_transaction

    # ========================================================================
    # Helpers
    # ========================================================================

    def _decimals(self, token_id: str) -> int:
        return self.token_decimals.get(token_id, self.default_decimals)

    def _amount_to_units(self, amount: float, token_id: str) -> int:
        """Convert human-readable amount to token units."""
        return int(amount * (10 ** self._decimals(token_id)))

    def _units_to_amount(self, units: int, token_id: str) -> float:
        """Convert token units to human-readable amount."""
        return units / (10 ** self._decimals(token_id))

    async def _rate_limit(self):
        loop = asyncio.get_running_loop()
        time_since_last = loop.time() - self.last_request_time
        min_interval = 1.0 / self.requests_per_second

        if time_since_last < min_interval:
            await asyncio.sleep(min_interval - time_since_last)

        self.last_request_time = loop.time()

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
        self.session = None
        logger.info("Jupiter adapter cleanup completed")
