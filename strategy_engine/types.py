"""
Strategy Engine - Type Definitions.

============================================================
PURPOSE
============================================================
Data contracts between the Signal Engine, strategies, the
Risk Manager and the Order Execution Engine.

============================================================
CORE CONCEPTS
============================================================
1. MARKET STATE: Immutable rolling window handed to a strategy
2. TRADE INTENT: Proposed, not yet approved trading action
3. ORDER OUTCOME: Last terminal order result per symbol

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from execution_engine.types import OrderSide, OrderState, OrderType
from market_data.types import Tick


# ============================================================
# TRADE INTENT
# ============================================================

@dataclass(frozen=True)
class TradeIntent:
    """
    A proposed trading action.
    
    Strategies emit intents; only the Risk Manager can approve them.
    """
    
    symbol: str
    side: OrderSide
    quantity: Decimal
    """Target quantity in base units."""
    
    rationale: str = ""
    """Short tag describing why the intent exists (e.g. "macd_cross_up")."""
    
    reference_price: Optional[Decimal] = None
    """Price the strategy saw; used for sizing market orders."""
    
    order_type: OrderType = OrderType.MARKET
    
    limit_price: Optional[Decimal] = None
    
    reduce_only: bool = False
    
    forced: bool = False
    """Liquidation emitted by the Risk Manager; bypasses sizing checks."""
    
    take_profit_price: Optional[Decimal] = None
    """Exchange-side take-profit trigger attached to an entry."""
    
    stop_loss_price: Optional[Decimal] = None
    """Exchange-side stop-loss trigger attached to an entry."""
    
    @property
    def price(self) -> Optional[Decimal]:
        """Best known price for the intent."""
        if self.order_type == OrderType.LIMIT and self.limit_price is not None:
            return self.limit_price
        return self.reference_price
    
    def with_quantity(self, quantity: Decimal) -> "TradeIntent":
        return TradeIntent(
            symbol=self.symbol,
            side=self.side,
            quantity=quantity,
            rationale=self.rationale,
            reference_price=self.reference_price,
            order_type=self.order_type,
            limit_price=self.limit_price,
            reduce_only=self.reduce_only,
            forced=self.forced,
            take_profit_price=self.take_profit_price,
            stop_loss_price=self.stop_loss_price,
        )


# ============================================================
# MARKET STATE
# ============================================================

@dataclass(frozen=True)
class OrderOutcome:
    """Terminal result of the most recent order in a symbol."""
    
    client_order_id: str
    side: OrderSide
    state: OrderState
    filled_quantity: Decimal
    average_price: Optional[Decimal]
    rationale: str
    completed_at: datetime


@dataclass(frozen=True)
class MarketState:
    """
    Immutable view of recent market data for one symbol.
    
    Ticks are ordered oldest first.
    """
    
    symbol: str
    ticks: Tuple[Tick, ...] = field(default_factory=tuple)
    last_outcome: Optional[OrderOutcome] = None
    
    @property
    def latest(self) -> Optional[Tick]:
        return self.ticks[-1] if self.ticks else None
    
    @property
    def prices(self) -> Tuple[Decimal, ...]:
        return tuple(t.last for t in self.ticks)
    
    def __len__(self) -> int:
        return len(self.ticks)
