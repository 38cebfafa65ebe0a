"""
Strategy Engine - Strategy Contract.

============================================================
PURPOSE
============================================================
The capability every trading strategy provides.

A strategy:
- Is deterministic for a given MarketState and position
- Has no side effects and performs no I/O
- Returns zero or more TradeIntents

============================================================
"""

from typing import Optional, Protocol, Sequence, runtime_checkable

from position_tracker.types import PositionView
from strategy_engine.types import MarketState, TradeIntent


@runtime_checkable
class Strategy(Protocol):
    """Pluggable strategy contract."""
    
    @property
    def name(self) -> str:
        ...
    
    def evaluate(
        self,
        market: MarketState,
        position: Optional[PositionView],
    ) -> Sequence[TradeIntent]:
        ...
