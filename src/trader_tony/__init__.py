"""
Trader Tony - position engine for Solana DEX tokens.

Watches open token positions on a fixed tick, applies stop-loss, take-profit,
trailing-stop and partial-profit exits, buys scale-in phases on dips, and
executes trades through the Jupiter aggregator or a simulated market.
"""

__version__ = "0.1.0"
