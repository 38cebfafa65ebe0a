"""
Execution Engine - Mock Exchange Adapter.

============================================================
PURPOSE
============================================================
In-memory exchange implementing the full adapter contract,
used by the test suite and for local wiring checks.

FEATURES:
- Scripted failure injection per operation
- "Accepted but response lost" submissions
- Immediate or manual fills
- Position / balance tracking with per-symbol leverage
- Stop loss / take profit brackets recorded per symbol
- Scriptable market stream with injectable disconnects

============================================================
"""

import asyncio
import logging
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Deque, Dict, List, Optional, Sequence, Set, Tuple

from core.clock import ClockProtocol, SystemClock
from market_data.types import Tick

from ..types import (
    AccountBalance,
    AccountSnapshot,
    ExchangeOrder,
    ExchangePosition,
    OrderSide,
    OrderState,
    OrderType,
    SymbolRules,
)
from .base import (
    CancelOrderRequest,
    CancelOrderResponse,
    ExchangeAdapter,
    QueryOrderRequest,
    QueryOrderResponse,
    SubmitOrderRequest,
    SubmitOrderResponse,
)
from .errors import (
    ErrorCategory,
    ExchangeErrorInfo,
    ExchangeException,
    OrderAlreadyTerminalError,
    OrderNotFoundError,
    OrderRejectedError,
    RetryEligibility,
    create_network_error,
    create_stream_disconnect,
)


logger = logging.getLogger(__name__)


# ============================================================
# MOCK CONFIGURATION
# ============================================================

@dataclass
class MockConfig:
    """Configuration for mock adapter."""
    
    initial_balance: Decimal = Decimal("1000")
    """Initial USDT balance."""
    
    quote_asset: str = "USDT"
    
    default_price: Decimal = Decimal("50000")
    """Price for symbols without an explicit one."""
    
    immediate_fill: bool = True
    """Whether market orders fill on submission."""
    
    fee_rate: Decimal = Decimal("0.0005")
    
    leverage: int = 1
    """Leverage of symbols never passed to set_leverage()."""
    
    symbol_rules: Dict[str, SymbolRules] = field(default_factory=dict)
    """Rules by symbol; symbols not listed get permissive defaults."""


# ============================================================
# MOCK ORDER
# ============================================================

@dataclass
class MockOrder:
    """Mock order state."""
    
    order_id: str
    client_order_id: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    price: Optional[Decimal]
    reduce_only: bool
    created_at: datetime
    
    status: OrderState = OrderState.SUBMITTED
    filled_quantity: Decimal = Decimal("0")
    filled_notional: Decimal = Decimal("0")
    fee: Decimal = Decimal("0")
    
    take_profit_price: Optional[Decimal] = None
    stop_loss_price: Optional[Decimal] = None
    
    @property
    def average_price(self) -> Optional[Decimal]:
        if self.filled_quantity == 0:
            return None
        return self.filled_notional / self.filled_quantity
    
    def to_exchange_order(self) -> ExchangeOrder:
        return ExchangeOrder(
            symbol=self.symbol,
            side=self.side,
            status=self.status,
            quantity=self.quantity,
            exchange_order_id=self.order_id,
            client_order_id=self.client_order_id,
            order_type=self.order_type,
            price=self.price,
            executed_quantity=self.filled_quantity,
            average_price=self.average_price,
            fee=self.fee,
            reduce_only=self.reduce_only,
        )


@dataclass
class _ScriptedFailure:
    error: ExchangeException
    after_accept: bool = False


_DISCONNECT = object()


# ============================================================
# MOCK EXCHANGE ADAPTER
# ============================================================

class MockExchangeAdapter(ExchangeAdapter):
    """
    Mock exchange adapter for testing.
    
    Failures are scripted with fail_next(); nothing is random.
    """
    
    def __init__(
        self,
        config: Optional[MockConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._config = config or MockConfig()
        self._clock = clock or SystemClock()
        self._connected = False
        
        self._cash = self._config.initial_balance
        self._positions: Dict[str, ExchangePosition] = {}
        self._orders: Dict[str, MockOrder] = {}
        self._prices: Dict[str, Decimal] = {}
        self.leverages: Dict[str, int] = {}
        # Open brackets by symbol: (take profit, stop loss)
        self.brackets: Dict[str, Tuple[Optional[Decimal], Optional[Decimal]]] = {}
        
        self._failures: Dict[str, Deque[_ScriptedFailure]] = defaultdict(deque)
        
        self._stream_queues: List[tuple[Set[str], asyncio.Queue]] = []
        self.stream_subscriptions = 0
        self.submit_calls = 0
        self.query_calls = 0
        self.cancel_calls = 0
        self.cancel_all_calls = 0
    
    @property
    def exchange_id(self) -> str:
        return "mock"
    
    @property
    def is_connected(self) -> bool:
        return self._connected
    
    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------
    
    async def connect(self) -> None:
        self._check_failure("connect")
        self._connected = True
        logger.info("MockExchangeAdapter connected")
    
    async def disconnect(self) -> None:
        self._connected = False
        self.disconnect_stream()
        logger.info("MockExchangeAdapter disconnected")
    
    # --------------------------------------------------------
    # SCRIPTING
    # --------------------------------------------------------
    
    def fail_next(
        self,
        operation: str,
        error: Optional[ExchangeException] = None,
        times: int = 1,
        after_accept: bool = False,
    ) -> None:
        """
        Make the next ``times`` calls of ``operation`` raise ``error``.
        
        Args:
            operation: Adapter method name (e.g. "submit_order")
            error: Exception to raise (defaults to a NetworkError)
            times: Number of consecutive calls affected
            after_accept: submit_order only; the order is created on the
                exchange before the error is raised (lost response)
        """
        for _ in range(times):
            self._failures[operation].append(_ScriptedFailure(
                error=error or create_network_error("Injected network failure", operation),
                after_accept=after_accept,
            ))
    
    def _pop_failure(self, operation: str) -> Optional[_ScriptedFailure]:
        queue = self._failures.get(operation)
        if queue:
            return queue.popleft()
        return None
    
    def _check_failure(self, operation: str) -> None:
        failure = self._pop_failure(operation)
        if failure is not None:
            raise failure.error
    
    def set_position(self, symbol: str, quantity: Decimal, entry_price: Decimal) -> None:
        if quantity == 0:
            self._positions.pop(symbol, None)
        else:
            self._positions[symbol] = ExchangePosition(
                symbol=symbol, quantity=quantity, entry_price=entry_price
            )
    
    def add_open_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
        client_order_id: Optional[str] = None,
    ) -> MockOrder:
        """Place an order directly on the mock exchange (e.g. from a previous run)."""
        order = self._create_order(SubmitOrderRequest(
            symbol=symbol,
            side=side,
            order_type=OrderType.LIMIT,
            quantity=quantity,
            client_order_id=client_order_id or f"EXT_{uuid.uuid4().hex[:12]}",
            price=price,
        ))
        return order
    
    def get_order(self, client_order_id: str) -> Optional[MockOrder]:
        for order in self._orders.values():
            if order.client_order_id == client_order_id:
                return order
        return None
    
    @property
    def orders(self) -> List[MockOrder]:
        return list(self._orders.values())
    
    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------
    
    async def submit_order(self, request: SubmitOrderRequest) -> SubmitOrderResponse:
        self.submit_calls += 1
        await asyncio.sleep(0)
        
        failure = self._pop_failure("submit_order")
        if failure is not None and not failure.after_accept:
            raise failure.error
        
        if self.get_order(request.client_order_id) is not None:
            raise OrderRejectedError(ExchangeErrorInfo(
                category=ErrorCategory.INVALID_ORDER,
                code="MOCK_DUPLICATE_CLIENT_ID",
                message=f"Duplicate clientOrderID {request.client_order_id}",
                retry_eligible=RetryEligibility.NO_RETRY,
            ))
        
        order = self._create_order(request)
        
        if failure is not None:
            raise failure.error
        
        return SubmitOrderResponse(
            exchange_order_id=order.order_id,
            client_order_id=order.client_order_id,
            status=order.status,
        )
    
    def _create_order(self, request: SubmitOrderRequest) -> MockOrder:
        order = MockOrder(
            order_id=str(uuid.uuid4().int)[:18],
            client_order_id=request.client_order_id,
            symbol=request.symbol,
            side=request.side,
            order_type=request.order_type,
            quantity=request.quantity,
            price=request.price,
            reduce_only=request.reduce_only,
            created_at=self._clock.now(),
            take_profit_price=request.take_profit_price,
            stop_loss_price=request.stop_loss_price,
        )
        self._orders[order.order_id] = order
        if request.take_profit_price is not None or request.stop_loss_price is not None:
            self.brackets[request.symbol] = (request.take_profit_price, request.stop_loss_price)
        
        if self._config.immediate_fill and request.order_type == OrderType.MARKET:
            self.fill_order(order.client_order_id, request.quantity)
        
        logger.debug(f"Mock order {order.client_order_id} created: {order.status.value}")
        return order
    
    def fill_order(
        self,
        client_order_id: str,
        quantity: Decimal,
        price: Optional[Decimal] = None,
    ) -> None:
        """Execute ``quantity`` of an open order at ``price`` (default: current price)."""
        order = self.get_order(client_order_id)
        if order is None or order.status.is_terminal():
            raise KeyError(f"No open mock order {client_order_id}")
        
        quantity = min(quantity, order.quantity - order.filled_quantity)
        price = price or order.price or self._get_price(order.symbol)
        fee = quantity * price * self._config.fee_rate
        
        order.filled_quantity += quantity
        order.filled_notional += quantity * price
        order.fee += fee
        order.status = (
            OrderState.FILLED if order.filled_quantity >= order.quantity
            else OrderState.PARTIALLY_FILLED
        )
        
        self._cash -= fee
        self._apply_position(order.symbol, quantity * order.side.sign, price)
    
    async def query_order(self, request: QueryOrderRequest) -> QueryOrderResponse:
        self.query_calls += 1
        await asyncio.sleep(0)
        self._check_failure("query_order")
        
        order = None
        if request.exchange_order_id:
            order = self._orders.get(request.exchange_order_id)
        elif request.client_order_id:
            order = self.get_order(request.client_order_id)
        
        if order is None:
            return QueryOrderResponse(found=False)
        return QueryOrderResponse(found=True, order=order.to_exchange_order())
    
    async def cancel_order(self, request: CancelOrderRequest) -> CancelOrderResponse:
        self.cancel_calls += 1
        await asyncio.sleep(0)
        self._check_failure("cancel_order")
        
        order = None
        if request.exchange_order_id:
            order = self._orders.get(request.exchange_order_id)
        elif request.client_order_id:
            order = self.get_order(request.client_order_id)
        
        if order is None:
            raise OrderNotFoundError(ExchangeErrorInfo(
                category=ErrorCategory.ORDER_NOT_FOUND,
                code="MOCK_ORDER_NOT_FOUND",
                message="Order not found",
                retry_eligible=RetryEligibility.NO_RETRY,
            ))
        
        if order.status.is_terminal():
            raise OrderAlreadyTerminalError(ExchangeErrorInfo(
                category=ErrorCategory.ORDER_ALREADY_TERMINAL,
                code="MOCK_ORDER_TERMINAL",
                message=f"Order already {order.status.value}",
                retry_eligible=RetryEligibility.NO_RETRY,
            ))
        
        order.status = OrderState.CANCELLED
        return CancelOrderResponse(exchange_order_id=order.order_id, status=order.status)
    
    async def get_open_orders(self, symbol: Optional[str] = None) -> List[ExchangeOrder]:
        await asyncio.sleep(0)
        self._check_failure("get_open_orders")
        return [
            o.to_exchange_order()
            for o in self._orders.values()
            if not o.status.is_terminal() and (symbol is None or o.symbol == symbol)
        ]
    
    async def cancel_all_orders(self, symbol: str) -> None:
        self.cancel_all_calls += 1
        await asyncio.sleep(0)
        self._check_failure("cancel_all_orders")
        
        for order in self._orders.values():
            if order.symbol == symbol and not order.status.is_terminal():
                order.status = OrderState.CANCELLED
        self.brackets.pop(symbol, None)
    
    async def set_leverage(self, symbol: str, leverage: int) -> None:
        await asyncio.sleep(0)
        self._check_failure("set_leverage")
        self.leverages[symbol] = leverage
    
    # --------------------------------------------------------
    # ACCOUNT AND MARKET
    # --------------------------------------------------------
    
    async def fetch_account_snapshot(self) -> AccountSnapshot:
        await asyncio.sleep(0)
        self._check_failure("fetch_account_snapshot")
        
        margin = sum(
            (
                abs(p.quantity) * p.entry_price / self.leverages.get(s, self._config.leverage)
                for s, p in self._positions.items()
            ),
            Decimal("0"),
        )
        unrealized = sum(
            ((self._get_price(s) - p.entry_price) * p.quantity for s, p in self._positions.items()),
            Decimal("0"),
        )
        asset = self._config.quote_asset
        
        return AccountSnapshot(
            fetched_at=self._clock.now(),
            balances={
                asset: AccountBalance(
                    asset=asset,
                    free=self._cash - margin,
                    locked=margin,
                    equity=self._cash + unrealized,
                ),
            },
            positions=dict(self._positions),
            open_orders=[
                o.to_exchange_order() for o in self._orders.values() if not o.status.is_terminal()
            ],
        )
    
    async def get_symbol_rules(self) -> Dict[str, SymbolRules]:
        self._check_failure("get_symbol_rules")
        return dict(self._config.symbol_rules)
    
    async def get_current_price(self, symbol: str) -> Decimal:
        self._check_failure("get_current_price")
        return self._get_price(symbol)
    
    def _get_price(self, symbol: str) -> Decimal:
        return self._prices.get(symbol, self._config.default_price)
    
    def _apply_position(self, symbol: str, delta: Decimal, price: Decimal) -> None:
        current = self._positions.get(symbol)
        old_qty = current.quantity if current else Decimal("0")
        old_avg = current.entry_price if current else Decimal("0")
        new_qty = old_qty + delta
        
        if old_qty != 0 and (old_qty > 0) != (delta > 0):
            closed = min(abs(delta), abs(old_qty))
            self._cash += (price - old_avg) * closed * (1 if old_qty > 0 else -1)
        
        if new_qty == 0:
            self._positions.pop(symbol, None)
            return
        
        if old_qty == 0 or (old_qty > 0) != (new_qty > 0):
            entry = price
        elif abs(new_qty) > abs(old_qty):
            entry = (abs(old_qty) * old_avg + abs(delta) * price) / abs(new_qty)
        else:
            entry = old_avg
        
        self._positions[symbol] = ExchangePosition(symbol=symbol, quantity=new_qty, entry_price=entry)
    
    # --------------------------------------------------------
    # MARKET STREAM
    # --------------------------------------------------------
    
    async def stream_market_data(self, symbols: Sequence[str]) -> AsyncIterator[Tick]:
        """Yield pushed ticks for ``symbols`` until disconnect_stream() is called."""
        self._check_failure("stream_market_data")
        
        wanted = set(symbols)
        queue: asyncio.Queue = asyncio.Queue()
        entry = (wanted, queue)
        self._stream_queues.append(entry)
        self.stream_subscriptions += 1
        
        try:
            while True:
                item = await queue.get()
                if item is _DISCONNECT:
                    raise create_stream_disconnect("Mock stream disconnected")
                self._prices[item.symbol] = item.last
                yield item
        finally:
            self._stream_queues.remove(entry)
    
    @property
    def active_streams(self) -> int:
        return len(self._stream_queues)
    
    def push_tick(self, tick: Tick) -> None:
        """Deliver ``tick`` to every subscription covering its symbol."""
        for wanted, queue in self._stream_queues:
            if tick.symbol in wanted:
                queue.put_nowait(tick)
    
    def disconnect_stream(self, symbol: Optional[str] = None) -> None:
        """Drop subscriptions (all, or those covering ``symbol``)."""
        for wanted, queue in list(self._stream_queues):
            if symbol is None or symbol in wanted:
                queue.put_nowait(_DISCONNECT)
    
    async def wait_for_streams(self, count: int = 1, timeout: float = 1.0) -> None:
        """Wait until at least ``count`` subscriptions are active."""
        async def _poll() -> None:
            while len(self._stream_queues) < count:
                await asyncio.sleep(0.001)
        
        await asyncio.wait_for(_poll(), timeout=timeout)
