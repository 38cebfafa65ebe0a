"""
Position Tracker - Types.

============================================================
PURPOSE
============================================================
Position accounting and the immutable read model handed to
every component other than the tracker.

ACCOUNTING RULES (weighted average):
- Increasing:  avg' = (|q|·avg + f·p) / (|q| + f)
- Reducing:    avg unchanged, realized += (p − avg)·closed·sign(q)
- Crossing 0:  avg' = fill price of the new side
- Flat:        avg = 0

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping, Optional

from execution_engine.types import AccountBalance, Fill


ZERO = Decimal("0")


def _sign(value: Decimal) -> int:
    if value > 0:
        return 1
    if value < 0:
        return -1
    return 0


# ============================================================
# POSITION
# ============================================================

@dataclass
class Position:
    """
    Net position in one symbol.
    
    Mutated only by the PositionTracker.
    """
    
    symbol: str
    
    quantity: Decimal = ZERO
    """Signed: positive long, negative short."""
    
    average_entry_price: Decimal = ZERO
    
    realized_pnl: Decimal = ZERO
    
    fees_paid: Decimal = ZERO
    
    mark_price: Optional[Decimal] = None
    
    def apply_fill(self, fill: Fill) -> Decimal:
        """
        Apply one fill.
        
        Returns:
            Realized P&L booked by this fill
        """
        q = self.quantity
        d = fill.signed_quantity
        price = fill.price
        realized = ZERO
        
        self.fees_paid += fill.fee
        
        if q == 0 or _sign(q) == _sign(d):
            new_q = q + d
            self.average_entry_price = (
                (abs(q) * self.average_entry_price + abs(d) * price) / abs(new_q)
            )
            self.quantity = new_q
            return realized
        
        closed = min(abs(d), abs(q))
        realized = (price - self.average_entry_price) * closed * _sign(q)
        self.realized_pnl += realized
        
        new_q = q + d
        if new_q == 0:
            self.average_entry_price = ZERO
        elif _sign(new_q) != _sign(q):
            self.average_entry_price = price
        self.quantity = new_q
        return realized
    
    @property
    def is_flat(self) -> bool:
        return self.quantity == 0
    
    @property
    def notional(self) -> Decimal:
        price = self.mark_price if self.mark_price is not None else self.average_entry_price
        return abs(self.quantity) * price
    
    @property
    def unrealized_pnl(self) -> Decimal:
        if self.mark_price is None or self.quantity == 0:
            return ZERO
        return (self.mark_price - self.average_entry_price) * self.quantity
    
    @property
    def unrealized_pnl_pct(self) -> Decimal:
        """Unrealized P&L as a percentage of entry notional."""
        cost = abs(self.quantity) * self.average_entry_price
        if cost == 0:
            return ZERO
        return self.unrealized_pnl / cost * 100
    
    def freeze(self) -> "PositionView":
        return PositionView(
            symbol=self.symbol,
            quantity=self.quantity,
            average_entry_price=self.average_entry_price,
            realized_pnl=self.realized_pnl,
            mark_price=self.mark_price,
            unrealized_pnl=self.unrealized_pnl,
            unrealized_pnl_pct=self.unrealized_pnl_pct,
            notional=self.notional,
        )


@dataclass(frozen=True)
class PositionView:
    """Immutable copy of a Position."""
    
    symbol: str
    quantity: Decimal
    average_entry_price: Decimal
    realized_pnl: Decimal
    mark_price: Optional[Decimal]
    unrealized_pnl: Decimal
    unrealized_pnl_pct: Decimal
    notional: Decimal
    
    @property
    def is_flat(self) -> bool:
        return self.quantity == 0
    
    @property
    def is_long(self) -> bool:
        return self.quantity > 0
    
    @property
    def is_short(self) -> bool:
        return self.quantity < 0


# ============================================================
# ACCOUNT VIEW
# ============================================================

@dataclass(frozen=True)
class AccountView:
    """
    Immutable account read model.
    
    Built by PositionTracker.view(); safe to hold across awaits.
    """
    
    quote_asset: str = "USDT"
    
    free_balance: Decimal = ZERO
    """Free quote balance from the last snapshot."""
    
    equity: Decimal = ZERO
    
    reserved: Decimal = ZERO
    """Quote amount held for in-flight and unsettled orders."""
    
    reserved_notional: Decimal = ZERO
    """Notional of in-flight orders not yet filled."""
    
    balances: Mapping[str, AccountBalance] = field(default_factory=lambda: MappingProxyType({}))
    
    positions: Mapping[str, PositionView] = field(default_factory=lambda: MappingProxyType({}))
    
    snapshot_at: Optional[datetime] = None
    
    snapshot_age_seconds: float = float("inf")
    
    stale: bool = True
    
    stale_reason: Optional[str] = "no snapshot"
    
    blocked_reason: Optional[str] = None
    
    @property
    def available_balance(self) -> Decimal:
        """Free balance not yet promised to in-flight orders."""
        return self.free_balance - self.reserved
    
    @property
    def is_blocked(self) -> bool:
        return self.blocked_reason is not None
    
    def position(self, symbol: str) -> Optional[PositionView]:
        return self.positions.get(symbol)
    
    def position_quantity(self, symbol: str) -> Decimal:
        position = self.positions.get(symbol)
        return position.quantity if position else ZERO
    
    def mark_price(self, symbol: str) -> Optional[Decimal]:
        position = self.positions.get(symbol)
        return position.mark_price if position else None
    
    @property
    def gross_exposure(self) -> Decimal:
        return sum((p.notional for p in self.positions.values()), ZERO)
    
    @property
    def committed_exposure(self) -> Decimal:
        """Gross position exposure plus in-flight order notional."""
        return self.gross_exposure + self.reserved_notional
