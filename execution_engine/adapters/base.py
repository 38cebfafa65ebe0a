"""
Execution Engine - Exchange Adapter Base.

============================================================
PURPOSE
============================================================
Abstract interface for exchange adapters.

DESIGN PRINCIPLES:
- Exchange-agnostic interface; exchange codes stay in the adapter
- Failures are typed exceptions from adapters.errors
- Fully testable with the mock adapter

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncIterator, Dict, List, Optional, Sequence

from market_data.types import Tick

from ..types import (
    AccountSnapshot,
    ExchangeOrder,
    OrderSide,
    OrderState,
    OrderType,
    SymbolRules,
)


logger = logging.getLogger(__name__)


# ============================================================
# STATUS MAPPING
# ============================================================

_STATUS_MAPPING = {
    "NEW": OrderState.SUBMITTED,
    "PENDING": OrderState.SUBMITTED,
    "OPEN": OrderState.SUBMITTED,
    "WORKING": OrderState.SUBMITTED,
    "PARTIALLY_FILLED": OrderState.PARTIALLY_FILLED,
    "FILLED": OrderState.FILLED,
    "CANCELED": OrderState.CANCELLED,
    "CANCELLED": OrderState.CANCELLED,
    "REJECTED": OrderState.REJECTED,
    "FAILED": OrderState.REJECTED,
    "EXPIRED": OrderState.EXPIRED,
}


def map_exchange_status_to_order_state(status: str) -> OrderState:
    """
    Map exchange status string to OrderState.
    
    Unknown strings map to SUBMITTED: the order exists on the
    exchange and the next refresh will classify it.
    """
    state = _STATUS_MAPPING.get((status or "").upper())
    if state is None:
        logger.warning(f"Unknown exchange order status {status!r}, treating as SUBMITTED")
        return OrderState.SUBMITTED
    return state


# ============================================================
# ADAPTER REQUEST/RESPONSE TYPES
# ============================================================

@dataclass
class SubmitOrderRequest:
    """Request to submit an order."""
    
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    client_order_id: str
    """Idempotency key; the exchange rejects duplicates of it."""
    
    price: Optional[Decimal] = None
    """Limit price."""
    
    reduce_only: bool = False
    
    take_profit_price: Optional[Decimal] = None
    """Trigger price of a TAKE_PROFIT_MARKET order closing the position."""
    
    stop_loss_price: Optional[Decimal] = None
    """Trigger price of a STOP_MARKET order closing the position."""


@dataclass
class SubmitOrderResponse:
    """Response from an accepted order submission."""
    
    exchange_order_id: str
    client_order_id: str
    status: OrderState = OrderState.SUBMITTED


@dataclass
class QueryOrderRequest:
    """Query by exchange order id, or by client order id when not yet known."""
    
    symbol: str
    exchange_order_id: Optional[str] = None
    client_order_id: Optional[str] = None


@dataclass
class QueryOrderResponse:
    """Response from order query."""
    
    found: bool
    """False when the exchange positively confirms it does not know the order."""
    
    order: Optional[ExchangeOrder] = None


@dataclass
class CancelOrderRequest:
    """Request to cancel an order."""
    
    symbol: str
    exchange_order_id: Optional[str] = None
    client_order_id: Optional[str] = None


@dataclass
class CancelOrderResponse:
    """Response from order cancellation."""
    
    exchange_order_id: Optional[str] = None
    status: OrderState = OrderState.CANCELLED


# ============================================================
# ABSTRACT EXCHANGE ADAPTER
# ============================================================

class ExchangeAdapter(ABC):
    """
    Abstract interface for exchange adapters.
    
    Implementations:
    - BingXAdapter: BingX USDT-M perpetual swap
    - MockExchangeAdapter: In-memory, for tests
    """
    
    @property
    @abstractmethod
    def exchange_id(self) -> str:
        pass
    
    @property
    @abstractmethod
    def is_connected(self) -> bool:
        pass
    
    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------
    
    @abstractmethod
    async def connect(self) -> None:
        """Open sessions. Raises NetworkError."""
        pass
    
    @abstractmethod
    async def disconnect(self) -> None:
        """Close sessions and any open stream."""
        pass
    
    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------
    
    @abstractmethod
    async def submit_order(self, request: SubmitOrderRequest) -> SubmitOrderResponse:
        """
        Submit an order to the exchange.
        
        Raises:
            RateLimitedError: Capacity not available in time
            OrderRejectedError: Exchange-logical rejection
            NetworkError: Transport failure after retries
            AuthenticationError: Credentials rejected
        """
        pass
    
    @abstractmethod
    async def cancel_order(self, request: CancelOrderRequest) -> CancelOrderResponse:
        """
        Cancel an order.
        
        Raises:
            OrderNotFoundError, OrderAlreadyTerminalError, NetworkError
        """
        pass
    
    @abstractmethod
    async def query_order(self, request: QueryOrderRequest) -> QueryOrderResponse:
        """
        Query order status.
        
        Returns ``found=False`` when the exchange confirms the order is
        unknown. Raises NetworkError when it cannot tell.
        """
        pass
    
    @abstractmethod
    async def get_open_orders(self, symbol: Optional[str] = None) -> List[ExchangeOrder]:
        """Open orders, excluding stop loss / take profit brackets."""
        pass
    
    @abstractmethod
    async def cancel_all_orders(self, symbol: str) -> None:
        """Cancel every open order of ``symbol``, brackets included."""
        pass
    
    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> None:
        """
        Set the exchange leverage used for new positions in ``symbol``.
        
        Raises:
            OrderRejectedError: Leverage not allowed for the symbol
            NetworkError, AuthenticationError
        """
        pass
    
    # --------------------------------------------------------
    # ACCOUNT AND MARKET
    # --------------------------------------------------------
    
    @abstractmethod
    async def fetch_account_snapshot(self) -> AccountSnapshot:
        """
        Fetch balances, positions and open orders.
        
        Raises:
            AuthenticationError, NetworkError
        """
        pass
    
    @abstractmethod
    async def get_symbol_rules(self) -> Dict[str, SymbolRules]:
        pass
    
    @abstractmethod
    async def get_current_price(self, symbol: str) -> Decimal:
        pass
    
    @abstractmethod
    def stream_market_data(self, symbols: Sequence[str]) -> AsyncIterator[Tick]:
        """
        Subscribe to market data for ``symbols``.
        
        Yields Ticks until the connection drops, then raises
        StreamDisconnectedError. Calling again resubscribes.
        """
        pass
