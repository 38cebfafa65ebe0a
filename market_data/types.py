"""
Market Data - Types.

Normalized market data events. Ticks are immutable once built.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple


PriceLevel = Tuple[Decimal, Decimal]
"""(price, quantity)"""


@dataclass(frozen=True)
class DepthSnapshot:
    """Top of the order book, best levels first."""
    
    bids: Tuple[PriceLevel, ...] = ()
    asks: Tuple[PriceLevel, ...] = ()
    
    def bid_volume_above(self, price: Decimal) -> Decimal:
        """Total bid quantity priced strictly above ``price``."""
        return sum((q for p, q in self.bids if p > price), Decimal("0"))
    
    def ask_volume_below(self, price: Decimal) -> Decimal:
        """Total ask quantity priced strictly below ``price``."""
        return sum((q for p, q in self.asks if p < price), Decimal("0"))


@dataclass(frozen=True)
class Tick:
    """Normalized market snapshot for one symbol at one instant."""
    
    symbol: str
    timestamp: datetime
    bid: Decimal
    ask: Decimal
    last: Decimal
    depth: Optional[DepthSnapshot] = None
    
    @property
    def mid_price(self) -> Decimal:
        if self.bid > 0 and self.ask > 0:
            return (self.bid + self.ask) / 2
        return self.last
    
    @property
    def spread_pct(self) -> Decimal:
        """Bid/ask spread as a percentage of the bid."""
        if self.bid <= 0:
            return Decimal("0")
        return (self.ask - self.bid) / self.bid * 100


@dataclass(frozen=True)
class StreamGap:
    """
    Explicit marker that market data stopped for some symbols.
    
    No ticks are synthesised while a gap is open; the next accepted
    tick for a symbol closes its gap.
    """
    
    symbols: Tuple[str, ...]
    started_at: datetime
    reason: str = field(default="disconnected")
