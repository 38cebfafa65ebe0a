"""
Position Tracker - Account State Tracker.

============================================================
PURPOSE
============================================================
Single owner of local account, position and reservation state.

- Fills are applied strictly in the order they are reported
- Snapshots re-baseline positions to the exchange's numbers
- Other components only ever see an immutable AccountView
- Staleness and submission blocks are recorded here and
  enforced by the Risk Manager

Every mutation is synchronous, so under the single event loop
each one is atomic. Reconciliation additionally holds ``lock``
while it fetches and swaps state.

============================================================
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Deque, Dict, Iterable, List, Optional, Tuple

from core.clock import ClockProtocol, SystemClock
from execution_engine.types import AccountSnapshot, Fill, OrderRecord
from market_data.types import Tick

from .types import ZERO, AccountView, Position


logger = logging.getLogger(__name__)


@dataclass
class Reservation:
    """Quote balance and exposure held for one in-flight order."""
    
    client_order_id: str
    symbol: str
    amount: Decimal
    per_unit: Decimal
    """Reserved amount per unit of order quantity."""
    
    notional: Decimal = ZERO
    """Order notional not yet filled; counts toward aggregate exposure."""
    
    notional_per_unit: Decimal = ZERO


class PositionTracker:
    """Authoritative local state: positions, balances, reservations."""
    
    def __init__(
        self,
        clock: Optional[ClockProtocol] = None,
        quote_asset: str = "USDT",
        history_size: int = 1000,
    ):
        self._clock = clock or SystemClock()
        self._quote_asset = quote_asset
        
        self._snapshot: Optional[AccountSnapshot] = None
        self._positions: Dict[str, Position] = {}
        self._reservations: Dict[str, Reservation] = {}
        self._unsettled: List[Tuple[datetime, Decimal]] = []
        
        self._stale_reason: Optional[str] = "no snapshot"
        self._blocked_reason: Optional[str] = None
        
        self._history: Deque[OrderRecord] = deque(maxlen=history_size)
        self._fills_applied = 0
        
        self.lock = asyncio.Lock()
    
    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------
    
    @property
    def quote_asset(self) -> str:
        return self._quote_asset
    
    @property
    def fills_applied(self) -> int:
        return self._fills_applied
    
    @property
    def order_history(self) -> List[OrderRecord]:
        return list(self._history)
    
    def position(self, symbol: str) -> Position:
        """Mutable position; tracker-internal callers only."""
        if symbol not in self._positions:
            self._positions[symbol] = Position(symbol=symbol)
        return self._positions[symbol]
    
    def position_quantity(self, symbol: str) -> Decimal:
        position = self._positions.get(symbol)
        return position.quantity if position else ZERO
    
    # --------------------------------------------------------
    # SNAPSHOTS
    # --------------------------------------------------------
    
    def record_snapshot(
        self,
        snapshot: AccountSnapshot,
        skip_symbols: Iterable[str] = (),
    ) -> None:
        """
        Install a fresh exchange snapshot as the new baseline.
        
        Args:
            snapshot: Snapshot fetched from the exchange
            skip_symbols: Symbols with in-flight orders; their local
                positions are left alone until a quiet cycle
        """
        skip = set(skip_symbols)
        symbols = set(self._positions) | set(snapshot.positions)
        
        for symbol in symbols:
            if symbol in skip:
                continue
            remote = snapshot.positions.get(symbol)
            position = self.position(symbol)
            if remote is None:
                position.quantity = ZERO
                position.average_entry_price = ZERO
            else:
                position.quantity = remote.quantity
                position.average_entry_price = remote.entry_price
                if remote.mark_price is not None:
                    position.mark_price = remote.mark_price
        
        self._snapshot = snapshot
        self._unsettled = [(ts, amt) for ts, amt in self._unsettled if ts > snapshot.fetched_at]
        
        if self._stale_reason is not None:
            logger.info(f"Account state fresh again (was stale: {self._stale_reason})")
        self._stale_reason = None
    
    def mark_stale(self, reason: str) -> None:
        """Flag local state as untrustworthy until the next snapshot."""
        if self._stale_reason is None:
            logger.warning(f"Account state marked stale: {reason}")
        self._stale_reason = reason
    
    def block(self, reason: str) -> None:
        if self._blocked_reason != reason:
            logger.critical(f"Order submission blocked: {reason}")
        self._blocked_reason = reason
    
    def unblock(self) -> None:
        if self._blocked_reason is not None:
            logger.info(f"Order submission unblocked (was: {self._blocked_reason})")
        self._blocked_reason = None
    
    # --------------------------------------------------------
    # FILLS AND MARKS
    # --------------------------------------------------------
    
    def apply_fill(self, fill: Fill) -> Decimal:
        """
        Apply a fill to its symbol's position.
        
        Reserved balance for the order moves to "unsettled" until a
        snapshot taken after the fill replaces it.
        
        Returns:
            Realized P&L booked by the fill
        """
        realized = self.position(fill.symbol).apply_fill(fill)
        self._fills_applied += 1
        
        reservation = self._reservations.get(fill.client_order_id)
        if reservation is not None:
            portion = min(reservation.amount, reservation.per_unit * fill.quantity)
            reservation.amount -= portion
            reservation.notional -= min(reservation.notional, reservation.notional_per_unit * fill.quantity)
            if portion > 0:
                self._unsettled.append((fill.timestamp, portion))
        
        logger.debug(
            f"Fill {fill.client_order_id} {fill.side.value} {fill.quantity} {fill.symbol} "
            f"@ {fill.price} -> position {self.position_quantity(fill.symbol)}"
        )
        return realized
    
    def mark_to_market(self, tick: Tick) -> None:
        self.position(tick.symbol).mark_price = tick.mid_price
    
    # --------------------------------------------------------
    # RESERVATIONS
    # --------------------------------------------------------
    
    def reserve(self, order: OrderRecord, amount: Decimal, notional: Decimal = ZERO) -> None:
        """
        Hold quote balance and exposure for ``order`` while it is in flight.
        
        Args:
            order: The order being submitted
            amount: Quote balance the order may consume
            notional: Exposure the order adds once filled
        """
        if (amount <= 0 and notional <= 0) or order.quantity <= 0:
            return
        self._reservations[order.client_order_id] = Reservation(
            client_order_id=order.client_order_id,
            symbol=order.symbol,
            amount=max(amount, ZERO),
            per_unit=max(amount, ZERO) / order.quantity,
            notional=max(notional, ZERO),
            notional_per_unit=max(notional, ZERO) / order.quantity,
        )
    
    def release(self, client_order_id: str) -> None:
        """Drop what is left of an order's reservation."""
        self._reservations.pop(client_order_id, None)
    
    @property
    def reserved_total(self) -> Decimal:
        held = sum((r.amount for r in self._reservations.values()), ZERO)
        unsettled = sum((amount for _, amount in self._unsettled), ZERO)
        return held + unsettled
    
    @property
    def reserved_notional(self) -> Decimal:
        return sum((r.notional for r in self._reservations.values()), ZERO)
    
    # --------------------------------------------------------
    # ORDER HISTORY
    # --------------------------------------------------------
    
    def record_terminal_order(self, order: OrderRecord) -> None:
        self.release(order.client_order_id)
        self._history.append(order)
    
    # --------------------------------------------------------
    # READ MODEL
    # --------------------------------------------------------
    
    def view(self) -> AccountView:
        """Immutable snapshot of the current state."""
        snapshot = self._snapshot
        
        if snapshot is None:
            balances = {}
            free = ZERO
            equity = ZERO
            age = float("inf")
            snapshot_at = None
        else:
            balances = dict(snapshot.balances)
            quote = snapshot.get_balance(self._quote_asset)
            free = quote.free
            equity = quote.total
            snapshot_at = snapshot.fetched_at
            age = self._clock.seconds_since(snapshot_at)
        
        return AccountView(
            quote_asset=self._quote_asset,
            free_balance=free,
            equity=equity,
            reserved=self.reserved_total,
            reserved_notional=self.reserved_notional,
            balances=MappingProxyType(balances),
            positions=MappingProxyType({
                symbol: position.freeze()
                for symbol, position in self._positions.items()
                if not position.is_flat or position.realized_pnl != 0
            }),
            snapshot_at=snapshot_at,
            snapshot_age_seconds=age,
            stale=self._stale_reason is not None,
            stale_reason=self._stale_reason,
            blocked_reason=self._blocked_reason,
        )
