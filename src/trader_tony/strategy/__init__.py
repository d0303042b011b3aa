"""Strategies: sizing and exit templates, their store and the entry trader."""

from trader_tony.strategy.models import ScaleInTemplate, Strategy, StrategyStats
from trader_tony.strategy.store import StrategyStore
from trader_tony.strategy.trader import StrategyTrader

__all__ = ["Strategy", "StrategyStats", "ScaleInTemplate", "StrategyStore", "StrategyTrader"]
