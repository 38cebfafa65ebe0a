"""
Strategy Engine Module.

============================================================
Strategy Engine - Hypothesis Generator
============================================================

PURPOSE
-------
Generate Trade Intents from market data. This module acts as a
hypothesis generator, NOT a decision maker: every intent still
passes through the Risk Manager.

DESIGN PRINCIPLES
-----------------
1. Strategies are a capability (typing.Protocol), not a base class
2. Deterministic: same window and position, same intents
3. Stale or missing data: no intents

COMPONENTS
----------
- types: TradeIntent, MarketState, OrderOutcome
- config: MACDConfig, SignalEngineConfig
- engine: SignalEngine (windows, staleness, suspension)
- strategies: Strategy protocol and MACDMomentumStrategy
"""

from .types import MarketState, OrderOutcome, TradeIntent
from .config import MACDConfig, SignalEngineConfig
from .engine import SignalEngine
from .strategies import MACDMomentumStrategy, Strategy


__all__ = [
    "MarketState",
    "OrderOutcome",
    "TradeIntent",
    "MACDConfig",
    "SignalEngineConfig",
    "SignalEngine",
    "MACDMomentumStrategy",
    "Strategy",
]
