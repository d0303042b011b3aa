"""
Main entry point for Trader Tony.

Runs the trading application behind a FastAPI server for monitoring and
operator control.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, model_validator

from trader_tony import __version__
from trader_tony.app import TradingApplication
from trader_tony.config import get_app_config
from trader_tony.config.settings import AppConfig
from trader_tony.position.errors import (
    ConcurrencyViolation,
    EntryRejectedError,
    InvalidInputError,
    PriceUnavailableError,
    TradeExecutionError,
)
from trader_tony.utils.logger import setup_logging
from trader_tony.utils.time_utils import format_timestamp, now_utc

logger = logging.getLogger(__name__)


# ============================================================================
# Request Models
# ============================================================================

class OpenPositionRequest(BaseModel):
    """
    Open a position.

    Either strategy_id (the strategy buys the entry tranche) or an already
    filled entry (entry_price + amount) registered directly.
    """

    token_id: str = Field(min_length=1)
    strategy_id: Optional[str] = None
    entry_price: Optional[float] = Field(default=None, gt=0)
    amount: Optional[float] = Field(default=None, gt=0)
    quote_amount: Optional[float] = Field(default=None, gt=0)
    tx_ref: Optional[str] = None

    @model_validator(mode="after")
    def strategy_or_fill(self):
        if self.strategy_id is None and (self.entry_price is None or self.amount is None):
            raise ValueError("provide strategy_id, or entry_price and amount")
        return self


# ============================================================================
# App Factory
# ============================================================================

def create_app(
    config: Optional[AppConfig] = None,
    application: Optional[TradingApplication] = None,
) -> FastAPI:
    """
    Build the FastAPI app around a TradingApplication.

    Args:
        config: Application config (loaded from config/ when omitted)
        application: Pre-built application, mainly for tests
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        trading = application
        if trading is None:
            trading = TradingApplication(config or get_app_config())
        app.state.trading = trading
        await trading.start()
        try:
            yield
        finally:
            await trading.stop()

    app = FastAPI(
        title="Trader Tony",
        version=__version__,
        description="Position engine for Solana DEX tokens",
        lifespan=lifespan,
    )

    def trading_app(request: Request) -> TradingApplication:
        return request.app.state.trading

    @app.get("/")
    async def root(request: Request):
        trading = trading_app(request)
        return {
            "name": "Trader Tony",
            "version": __version__,
            "mode": trading.config.execution.mode,
            "components": {
                "event_bus": "active" if trading.event_bus.is_running else "inactive",
                "position_monitor": "active" if trading.monitor.is_running else "inactive",
                "notifications": (
                    "active" if trading.notifications and trading.notifications.is_running
                    else "inactive"
                ),
            },
        }

    @app.get("/health")
    async def health_check(request: Request):
        trading = trading_app(request)
        monitor_stats = trading.monitor.get_stats()
        return {
            "status": "healthy" if trading.is_running else "stopped",
            "timestamp": format_timestamp(now_utc()),
            "components": {
                "event_bus": {
                    "status": "running" if trading.event_bus.is_running else "stopped",
                    "queue_size": trading.event_bus.queue_size,
                },
                "position_monitor": {
                    "status": monitor_stats["state"] if trading.monitor.is_running else "stopped",
                    "last_tick_at": monitor_stats["last_tick_at"],
                    "open_positions": len(trading.manager.get_open_positions()),
                },
            },
        }

    @app.get("/stats")
    async def get_stats(request: Request):
        return trading_app(request).get_stats()

    @app.get("/positions")
    async def get_positions(request: Request, include_closed: bool = False):
        trading = trading_app(request)
        positions = trading.manager.get_open_positions()
        if include_closed:
            positions = positions + trading.manager.get_closed_positions()
        return {
            "count": len(positions),
            "positions": [trading.describe_position(p) for p in positions],
        }

    @app.get("/positions/{position_id}")
    async def get_position(position_id: str, request: Request):
        trading = trading_app(request)
        position = trading.manager.get_position(position_id)
        if position is None:
            raise HTTPException(status_code=404, detail=f"Position {position_id} not found")
        return trading.describe_position(position)

    @app.post("/positions", status_code=201)
    async def open_position(body: OpenPositionRequest, request: Request):
        trading = trading_app(request)
        try:
            if body.strategy_id is not None:
                position = await trading.trader.open_position(body.strategy_id, body.token_id)
            else:
                position = trading.manager.create_position(
                    token_id=body.token_id,
                    entry_price=body.entry_price,
                    amount=body.amount,
                    exit_rules=trading.config.exit_rules.to_exit_rules(),
                    quote_amount=body.quote_amount,
                    tx_ref=body.tx_ref,
                )
        except InvalidInputError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except EntryRejectedError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except TradeExecutionError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return trading.describe_position(position)

    @app.post("/positions/{position_id}/close")
    async def close_position(position_id: str, request: Request):
        trading = trading_app(request)
        try:
            closed = await trading.close_position(position_id)
        except InvalidInputError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ConcurrencyViolation as e:
            raise HTTPException(status_code=409, detail=str(e))
        except PriceUnavailableError as e:
            raise HTTPException(status_code=503, detail=str(e))

        position = trading.manager.get_position(position_id)
        if not closed:
            detail = position.last_error if position is not None else None
            raise HTTPException(status_code=502, detail=detail or "close did not complete")
        return trading.describe_position(position)

    @app.post("/positions/{position_id}/reset-failures")
    async def reset_failures(position_id: str, request: Request, action: Optional[str] = None):
        trading = trading_app(request)
        try:
            trading.manager.reset_failures(position_id, action)
        except InvalidInputError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"position_id": position_id, "reset": action or "all"}

    @app.get("/strategies")
    async def get_strategies(request: Request):
        trading = trading_app(request)
        return {
            "strategies": [s.to_dict() for s in trading.strategies.list_strategies()],
            "performance": trading.strategies.get_performance_stats(),
        }

    @app.patch("/strategies/{strategy_id}")
    async def update_strategy(strategy_id: str, updates: Dict[str, Any], request: Request):
        trading = trading_app(request)
        try:
            strategy = trading.strategies.update_strategy(strategy_id, **updates)
        except InvalidInputError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return strategy.to_dict()

    return app


def main():
    """Entry point for the application."""
    import uvicorn

    config = get_app_config()
    setup_logging(
        log_level=config.system.log_level,
        log_file=config.system.log_file,
        json_format=config.system.json_logs,
    )

    logger.info(
        f"Trader Tony {__version__} - API on http://{config.system.api_host}:{config.system.api_port}"
    )
    uvicorn.run(
        create_app(config),
        host=config.system.api_host,
        port=config.system.api_port,
        log_level=str(config.system.log_level).lower(),
    )


if __name__ == "__main__":
    main()
