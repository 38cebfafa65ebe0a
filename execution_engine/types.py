"""
Execution Engine - Types.

============================================================
PURPOSE
============================================================
All type definitions for the Execution Engine and the exchange
adapter contract: orders, fills, account snapshots, symbol rules
and execution results.

CRITICAL PRINCIPLE:
    "Execution Engine is REACTIVE, not decision-making."
    "It only executes intents the Risk Manager approved."

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# ORDER TYPES
# ============================================================

class OrderSide(Enum):
    """Order side."""
    
    BUY = "BUY"
    SELL = "SELL"
    
    @property
    def sign(self) -> int:
        """+1 for BUY, -1 for SELL."""
        return 1 if self is OrderSide.BUY else -1


class OrderType(Enum):
    """Order type."""
    
    MARKET = "MARKET"
    """Execute at current market price."""
    
    LIMIT = "LIMIT"
    """Execute at specified price or better."""


# ============================================================
# ORDER LIFECYCLE STATES
# ============================================================

class OrderState(Enum):
    """
    Order lifecycle state.
    
    State Machine:
    
    PENDING ────────────────► REJECTED
       │  └─────────────────► EXPIRED
       ▼
    SUBMITTED ──────────────► REJECTED
       │   └────────────────► FILLED
       ▼
    PARTIALLY_FILLED ───────► FILLED
    
    SUBMITTED / PARTIALLY_FILLED can also go to:
    - CANCELLED (by us or the exchange)
    - EXPIRED (timed out and confirmed unknown by the exchange)
    """
    
    PENDING = "PENDING"
    """Created locally, not yet acknowledged by the exchange."""
    
    SUBMITTED = "SUBMITTED"
    """Acknowledged by the exchange, no fills yet."""
    
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    """Order partially executed."""
    
    # Terminal states
    FILLED = "FILLED"
    """Order fully executed."""
    
    CANCELLED = "CANCELLED"
    """Order cancelled (by us or the exchange)."""
    
    REJECTED = "REJECTED"
    """Order rejected by exchange or refused locally."""
    
    EXPIRED = "EXPIRED"
    """Order never reached / no longer exists on the exchange."""
    
    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in {
            OrderState.FILLED,
            OrderState.CANCELLED,
            OrderState.REJECTED,
            OrderState.EXPIRED,
        }
    
    def is_active(self) -> bool:
        """Check if order is still active."""
        return not self.is_terminal()
    
    def allows_cancel(self) -> bool:
        """Check if order can be cancelled on the exchange."""
        return self in {
            OrderState.SUBMITTED,
            OrderState.PARTIALLY_FILLED,
        }


# ============================================================
# EXECUTION RESULT TYPES
# ============================================================

class ExecutionResultCode(Enum):
    """Execution result codes."""
    
    # Success
    SUCCESS = "SUCCESS"
    """Order accepted (and possibly filled)."""
    
    CANCELLED = "CANCELLED"
    """Cancel request completed or order already terminal."""
    
    # Rejections
    REJECTED_BY_EXCHANGE = "REJECTED_BY_EXCHANGE"
    """Exchange-logical rejection (margin, quantity, symbol...)."""
    
    REJECTED_RATE_LIMITED = "REJECTED_RATE_LIMITED"
    """Rate limiter could not grant capacity in time."""
    
    # Failures
    FAILED_VALIDATION = "FAILED_VALIDATION"
    """Local validation failed (quantity below minimum, unknown symbol)."""
    
    FAILED_NETWORK = "FAILED_NETWORK"
    """Network failure; exchange confirmed the order does not exist."""
    
    FAILED_DISCREPANCY = "FAILED_DISCREPANCY"
    """Outcome unknown; reconciliation will resolve the order."""
    
    # Blocked
    BLOCKED_SHUTDOWN = "BLOCKED_SHUTDOWN"
    """Engine is shutting down and refuses new submissions."""
    
    def is_success(self) -> bool:
        """Check if this is a success code."""
        return self in {
            ExecutionResultCode.SUCCESS,
            ExecutionResultCode.CANCELLED,
        }


# ============================================================
# FILLS AND ORDERS
# ============================================================

@dataclass(frozen=True)
class Fill:
    """A partial or complete execution of an order."""
    
    client_order_id: str
    symbol: str
    side: OrderSide
    quantity: Decimal
    price: Decimal
    fee: Decimal = Decimal("0")
    timestamp: datetime = field(default_factory=utcnow)
    trade_id: Optional[str] = None
    
    @property
    def signed_quantity(self) -> Decimal:
        return self.quantity * self.side.sign
    
    @property
    def notional(self) -> Decimal:
        return self.quantity * self.price


@dataclass
class OrderRecord:
    """
    Internal order record with full lifecycle tracking.
    
    Only the Order Execution Engine mutates it.
    """
    
    client_order_id: str
    """Idempotency key sent to the exchange."""
    
    symbol: str
    side: OrderSide
    quantity: Decimal
    order_type: OrderType = OrderType.MARKET
    price: Optional[Decimal] = None
    reduce_only: bool = False
    
    take_profit_price: Optional[Decimal] = None
    stop_loss_price: Optional[Decimal] = None
    """Exchange-side brackets sent with the order."""
    
    exchange_order_id: Optional[str] = None
    """Exchange-assigned order ID; None until acknowledged."""
    
    state: OrderState = OrderState.PENDING
    previous_state: Optional[OrderState] = None
    
    fills: List[Fill] = field(default_factory=list)
    
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    
    rationale: str = ""
    """Strategy rationale tag carried from the intent."""
    
    reference_price: Optional[Decimal] = None
    """Price used for reservation / validation of market orders."""
    
    imported: bool = False
    """Adopted from the exchange during reconciliation."""
    
    submit_attempts: int = 0
    needs_reconciliation: bool = False
    last_error: Optional[str] = None
    
    @property
    def filled_quantity(self) -> Decimal:
        return sum((f.quantity for f in self.fills), Decimal("0"))
    
    @property
    def average_fill_price(self) -> Optional[Decimal]:
        filled = self.filled_quantity
        if filled == 0:
            return None
        return sum((f.notional for f in self.fills), Decimal("0")) / filled
    
    @property
    def total_fee(self) -> Decimal:
        return sum((f.fee for f in self.fills), Decimal("0"))
    
    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal()


@dataclass(frozen=True)
class ExchangeOrder:
    """
    Order status as reported by the exchange.
    
    Quantities are cumulative; the engine derives Fills from deltas.
    """
    
    symbol: str
    side: OrderSide
    status: OrderState
    quantity: Decimal
    exchange_order_id: Optional[str] = None
    client_order_id: Optional[str] = None
    order_type: OrderType = OrderType.MARKET
    price: Optional[Decimal] = None
    executed_quantity: Decimal = Decimal("0")
    average_price: Optional[Decimal] = None
    fee: Decimal = Decimal("0")
    """Cumulative commission, positive."""
    reduce_only: bool = False
    updated_at: Optional[datetime] = None


# ============================================================
# ACCOUNT STATE
# ============================================================

@dataclass(frozen=True)
class AccountBalance:
    """Account balance for an asset."""
    
    asset: str = ""
    
    free: Decimal = Decimal("0")
    """Free (available) margin."""
    
    locked: Decimal = Decimal("0")
    """Margin in use by positions and orders."""
    
    equity: Optional[Decimal] = None
    """Equity including unrealized P&L, when the exchange reports it."""
    
    @property
    def total(self) -> Decimal:
        return self.equity if self.equity is not None else self.free + self.locked


@dataclass(frozen=True)
class ExchangePosition:
    """Position as reported by the exchange."""
    
    symbol: str
    quantity: Decimal
    """Signed: positive long, negative short."""
    entry_price: Decimal = Decimal("0")
    unrealized_pnl: Decimal = Decimal("0")
    mark_price: Optional[Decimal] = None
    leverage: int = 1


@dataclass
class AccountSnapshot:
    """
    Account state fetched from the exchange at one instant.
    
    The reconciliation baseline.
    """
    
    fetched_at: datetime = field(default_factory=utcnow)
    balances: Dict[str, AccountBalance] = field(default_factory=dict)
    positions: Dict[str, ExchangePosition] = field(default_factory=dict)
    open_orders: List[ExchangeOrder] = field(default_factory=list)
    
    def get_balance(self, asset: str) -> AccountBalance:
        return self.balances.get(asset, AccountBalance(asset=asset))
    
    def get_position(self, symbol: str) -> Optional[ExchangePosition]:
        return self.positions.get(symbol)


# ============================================================
# EXCHANGE RULES
# ============================================================

@dataclass(frozen=True)
class SymbolRules:
    """Exchange rules for a trading symbol."""
    
    symbol: str
    base_asset: str = ""
    quote_asset: str = "USDT"
    
    min_quantity: Decimal = Decimal("0")
    quantity_precision: int = 8
    price_precision: int = 8
    
    min_notional: Decimal = Decimal("0")
    """Minimum order value in quote currency."""
    
    @property
    def quantity_step(self) -> Decimal:
        return Decimal(1).scaleb(-self.quantity_precision)
    
    @property
    def price_step(self) -> Decimal:
        return Decimal(1).scaleb(-self.price_precision)
    
    def round_quantity(self, quantity: Decimal) -> Decimal:
        """Round quantity down to the step size."""
        step = self.quantity_step
        return (quantity // step) * step
    
    def round_price(self, price: Decimal) -> Decimal:
        """Round price to the tick size."""
        return price.quantize(self.price_step)
    
    def is_quantity_valid(self, quantity: Decimal) -> bool:
        return quantity > 0 and quantity >= self.min_quantity
    
    def is_notional_valid(self, quantity: Decimal, price: Optional[Decimal]) -> bool:
        if price is None or self.min_notional == 0:
            return True
        return quantity * price >= self.min_notional


# ============================================================
# EXECUTION RESULT
# ============================================================

@dataclass
class ExecutionResult:
    """
    Outcome of a submit or cancel call.
    
    Errors are reported here rather than raised.
    """
    
    client_order_id: str
    result_code: ExecutionResultCode
    order_state: OrderState
    
    symbol: str = ""
    side: Optional[OrderSide] = None
    requested_quantity: Decimal = Decimal("0")
    filled_quantity: Decimal = Decimal("0")
    average_fill_price: Optional[Decimal] = None
    exchange_order_id: Optional[str] = None
    
    error_message: Optional[str] = None
    attempts: int = 0
    
    @property
    def is_success(self) -> bool:
        return self.result_code.is_success()
    
    @classmethod
    def from_order(
        cls,
        order: OrderRecord,
        code: ExecutionResultCode,
        error_message: Optional[str] = None,
    ) -> "ExecutionResult":
        return cls(
            client_order_id=order.client_order_id,
            result_code=code,
            order_state=order.state,
            symbol=order.symbol,
            side=order.side,
            requested_quantity=order.quantity,
            filled_quantity=order.filled_quantity,
            average_fill_price=order.average_fill_price,
            exchange_order_id=order.exchange_order_id,
            error_message=error_message or order.last_error,
            attempts=order.submit_attempts,
        )
